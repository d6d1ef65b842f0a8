"""Base loader interface for target orgs."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from ..clients.connection import OrgConnection
from ..models.record import LoadError, LoadOutcome

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """
    Result of a load operation.

    success_count counts records created by this load, existing_count
    records that were upserted onto a record already in the target.
    """
    object_type: str
    success_count: int = 0
    existing_count: int = 0
    error_count: int = 0
    errors: List[LoadError] = field(default_factory=list)
    id_mapping: Dict[str, str] = field(default_factory=dict)  # Source id -> target id
    outcomes: List[LoadOutcome] = field(default_factory=list)
    used_bulk_api: bool = False
    stopped: bool = False  # A failure ended the load early
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_ids: List[str] = field(default_factory=list)  # For rollback

    @property
    def total_attempted(self) -> int:
        return self.success_count + self.existing_count + self.error_count

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return (self.success_count + self.existing_count) / self.total_attempted

    def add_outcome(self, outcome: LoadOutcome) -> None:
        self.outcomes.append(outcome)
        if not outcome.success:
            self.error_count += 1
            if outcome.error:
                self.errors.append(outcome.error)
            return

        if outcome.created:
            self.success_count += 1
            if outcome.target_id:
                self.created_ids.append(outcome.target_id)
        else:
            self.existing_count += 1
        if outcome.source_id and outcome.target_id:
            self.id_mapping[outcome.source_id] = outcome.target_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_type": self.object_type,
            "success_count": self.success_count,
            "existing_count": self.existing_count,
            "error_count": self.error_count,
            "success_rate": self.success_rate,
            "used_bulk_api": self.used_bulk_api,
            "stopped": self.stopped,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "created_ids": self.created_ids,
            "errors": [e.to_dict() for e in self.errors],
        }


class BaseLoader(ABC):
    """
    Base class for loaders.

    Loaders write transformed records into a target org and remember the
    records they created so a run can be rolled back.
    """

    def __init__(self, connection: OrgConnection, dry_run: bool = False):
        """
        Initialize the loader.

        Args:
            connection: Target org connection
            dry_run: If True, simulate without making changes
        """
        self.connection = connection
        self.dry_run = dry_run
        self._created_records: Dict[str, List[str]] = {}  # object type -> ids, in load order

    @abstractmethod
    async def load(self, *args: Any, **kwargs: Any) -> LoadResult:
        """Load records into the target org."""
        pass

    def track_created(self, object_type: str, record_ids: List[str]) -> None:
        if record_ids:
            self._created_records.setdefault(object_type, []).extend(record_ids)

    async def delete_record(self, object_type: str, record_id: str) -> bool:
        return await self.connection.delete(object_type, record_id)

    async def rollback(self, object_type: Optional[str] = None) -> Dict[str, int]:
        """
        Delete records created by this loader.

        Object types are rolled back newest first so children go before
        their parents.

        Args:
            object_type: Specific object type to roll back, or None for all

        Returns:
            Dictionary of object type -> number of records deleted
        """
        deleted_counts = {}

        object_types = [object_type] if object_type else list(reversed(list(self._created_records.keys())))

        for obj in object_types:
            if obj not in self._created_records:
                continue

            count = 0
            remaining = []
            for record_id in self._created_records[obj]:
                try:
                    if await self.delete_record(obj, record_id):
                        count += 1
                    else:
                        remaining.append(record_id)
                except Exception as e:
                    logger.error(f"Failed to delete {obj} {record_id}: {e}")
                    remaining.append(record_id)

            if remaining:
                self._created_records[obj] = remaining
            else:
                del self._created_records[obj]
            deleted_counts[obj] = count
            logger.info(f"Rolled back {count} {obj} records")

        return deleted_counts

    def get_rollback_data(self) -> Dict[str, List[str]]:
        """Get data needed for rollback."""
        return {k: list(v) for k, v in self._created_records.items()}
