"""Record loaders."""

from .base import BaseLoader, LoadResult
from .record_loader import RecordLoader

__all__ = [
    "BaseLoader",
    "LoadResult",
    "RecordLoader",
]
