"""Base extractor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional
from datetime import datetime
import logging

from ..models.migration import DEFAULT_BATCH_SIZE

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 2000


@dataclass
class ExtractionResult:
    """Result of an extraction operation."""
    object_type: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    total_extracted: int = 0
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "object_type": self.object_type,
            "total_extracted": self.total_extracted,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "metadata": self.metadata,
        }


class BaseExtractor(ABC):
    """
    Base class for record extractors.

    Extractors pull the records of one object type out of a source org in
    bounded batches.
    """

    def __init__(self, object_type: str, batch_size: int = DEFAULT_BATCH_SIZE):
        """
        Initialize the extractor.

        Args:
            object_type: Object type to extract
            batch_size: Default batch size, capped at MAX_BATCH_SIZE
        """
        self.object_type = object_type
        self.batch_size = self.clamp_batch_size(batch_size)
        self._warnings: List[str] = []

    @staticmethod
    def clamp_batch_size(batch_size: Optional[int]) -> int:
        if not batch_size or batch_size < 1:
            return DEFAULT_BATCH_SIZE
        return min(batch_size, MAX_BATCH_SIZE)

    @abstractmethod
    async def extract_batch(self, offset: int = 0, limit: int = DEFAULT_BATCH_SIZE) -> List[Dict[str, Any]]:
        """
        Extract a batch of records.

        Args:
            offset: Starting offset
            limit: Maximum records to extract

        Returns:
            List of source records
        """
        pass

    @abstractmethod
    async def get_record_count(self) -> int:
        """Count the records the extractor would return."""
        pass

    async def stream_batches(self, batch_size: Optional[int] = None) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Stream records in batches.

        A batch shorter than requested is the last one, so no trailing empty
        query is issued. The iterator is finite and not restartable.

        Args:
            batch_size: Size of each batch (defaults to the extractor's)

        Yields:
            Batches of source records
        """
        batch_size = self.clamp_batch_size(batch_size or self.batch_size)
        offset = 0

        while True:
            batch = await self.extract_batch(offset=offset, limit=batch_size)
            if not batch:
                break

            yield batch
            offset += len(batch)

            if len(batch) < batch_size:
                break

    async def extract_all(self) -> ExtractionResult:
        """Extract every record into one result."""
        started_at = datetime.utcnow()
        records: List[Dict[str, Any]] = []
        async for batch in self.stream_batches():
            records.extend(batch)

        result = self.get_extraction_result(records)
        result.started_at = started_at
        result.completed_at = datetime.utcnow()
        logger.info(f"Extracted {len(records)} {self.object_type} records")
        return result

    def add_warning(self, message: str) -> None:
        """Add a warning to the extraction."""
        self._warnings.append(message)
        logger.warning(f"Extraction warning: {message}")

    def get_extraction_result(self, records: List[Dict[str, Any]]) -> ExtractionResult:
        return ExtractionResult(
            object_type=self.object_type,
            records=records,
            total_extracted=len(records),
            warnings=self._warnings.copy(),
        )

    def reset(self) -> None:
        """Reset the extractor state."""
        self._warnings = []
