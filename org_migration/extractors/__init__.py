"""Record extractors."""

from .base import BaseExtractor, ExtractionResult, MAX_BATCH_SIZE
from .record_extractor import RecordExtractor, RelationshipInfo

__all__ = [
    "BaseExtractor",
    "ExtractionResult",
    "MAX_BATCH_SIZE",
    "RecordExtractor",
    "RelationshipInfo",
]
