"""Per-record outcome models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import uuid


class RecordStatus(str, Enum):
    """Outcome of migrating one source record."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class MigrationRecord:
    """The outcome of one source record within a session. Never mutated."""
    session_id: str
    source_record_id: str
    status: RecordStatus
    target_record_id: Optional[str] = None
    error_message: Optional[str] = None
    record_data: Dict[str, Any] = field(default_factory=dict)
    already_existed: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "source_record_id": self.source_record_id,
            "target_record_id": self.target_record_id,
            "status": self.status.value,
            "error_message": self.error_message,
            "already_existed": self.already_existed,
            "record_data": self.record_data,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class LoadError:
    """A record that could not be written to the target org."""
    index: int  # Batch index the record belonged to
    source_id: Optional[str]
    message: str
    fields: List[str] = field(default_factory=list)
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "index": self.index,
            "source_id": self.source_id,
            "message": self.message,
            "fields": self.fields,
            "error_code": self.error_code,
        }


@dataclass
class LoadOutcome:
    """Result of writing one record."""
    source_id: Optional[str]
    success: bool
    target_id: Optional[str] = None
    created: bool = True
    error: Optional[LoadError] = None
    record_data: Dict[str, Any] = field(default_factory=dict)
