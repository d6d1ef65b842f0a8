"""Migration project, session and result models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
from datetime import datetime
import uuid


DEFAULT_BATCH_SIZE = 200
DEFAULT_BULK_API_THRESHOLD = 1000


class MigrationStatus(str, Enum):
    """Status of a per-object migration session."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationStatus.COMPLETED, MigrationStatus.FAILED, MigrationStatus.CANCELLED)


@dataclass
class MigrationOptions:
    """Execution options for a migration run."""
    batch_size: int = DEFAULT_BATCH_SIZE
    bulk_api_threshold: int = DEFAULT_BULK_API_THRESHOLD
    use_bulk_api: Optional[bool] = None  # None lets the record count decide
    preserve_relationships: bool = True
    allow_partial_success: bool = False
    max_concurrent_batches: int = 1
    enable_validation: bool = True
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "batch_size": self.batch_size,
            "bulk_api_threshold": self.bulk_api_threshold,
            "use_bulk_api": self.use_bulk_api,
            "preserve_relationships": self.preserve_relationships,
            "allow_partial_success": self.allow_partial_success,
            "max_concurrent_batches": self.max_concurrent_batches,
            "enable_validation": self.enable_validation,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationOptions":
        """Create from dictionary representation."""
        return cls(
            batch_size=data.get("batch_size", DEFAULT_BATCH_SIZE),
            bulk_api_threshold=data.get("bulk_api_threshold", DEFAULT_BULK_API_THRESHOLD),
            use_bulk_api=data.get("use_bulk_api"),
            preserve_relationships=data.get("preserve_relationships", True),
            allow_partial_success=data.get("allow_partial_success", False),
            max_concurrent_batches=data.get("max_concurrent_batches", 1),
            enable_validation=data.get("enable_validation", True),
            dry_run=data.get("dry_run", False),
        )


@dataclass(frozen=True)
class MigrationProject:
    """The immutable input of a migration run."""
    source_org_id: str
    target_org_id: str
    object_types: Tuple[str, ...]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    options: MigrationOptions = field(default_factory=MigrationOptions)
    template_id: Optional[str] = None
    # Object type -> extra WHERE clause applied to extraction
    filters: Dict[str, str] = field(default_factory=dict)
    # Object type -> source ids substituted into {selectedRecordIds}
    selected_record_ids: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "source_org_id": self.source_org_id,
            "target_org_id": self.target_org_id,
            "object_types": list(self.object_types),
            "options": self.options.to_dict(),
            "template_id": self.template_id,
            "filters": dict(self.filters),
            "selected_record_ids": {k: list(v) for k, v in self.selected_record_ids.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationProject":
        """Create from dictionary representation."""
        kwargs = {}
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(
            source_org_id=data["source_org_id"],
            target_org_id=data["target_org_id"],
            object_types=tuple(data.get("object_types", [])),
            name=data.get("name", ""),
            options=MigrationOptions.from_dict(data.get("options", {})),
            template_id=data.get("template_id"),
            filters=data.get("filters", {}),
            selected_record_ids=data.get("selected_record_ids", {}),
            **kwargs,
        )


@dataclass
class MigrationSession:
    """Execution state of one object type within a run."""
    project_id: str
    object_type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    current_batch: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_log: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "object_type": self.object_type,
            "status": self.status.value,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "current_batch": self.current_batch,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error_log": self.error_log,
        }


@dataclass
class MigrationProgress:
    """Point-in-time progress snapshot of a session."""
    session_id: str
    object_type: str
    status: MigrationStatus
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    percent_complete: int
    current_batch: int = 0
    elapsed_seconds: float = 0.0
    estimated_seconds_remaining: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "session_id": self.session_id,
            "object_type": self.object_type,
            "status": self.status.value,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "percent_complete": self.percent_complete,
            "current_batch": self.current_batch,
            "elapsed_seconds": self.elapsed_seconds,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
        }


@dataclass
class MigrationResult:
    """Consolidated outcome of a migration run, returned to callers."""
    session_id: str
    success: bool = False
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    existing_records: int = 0  # Upserted onto a record already in the target
    duration: float = 0.0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    object_order: List[str] = field(default_factory=list)
    sessions: Dict[str, str] = field(default_factory=dict)  # Object type -> session id
    object_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "session_id": self.session_id,
            "success": self.success,
            "total_records": self.total_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "existing_records": self.existing_records,
            "duration": self.duration,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "object_order": self.object_order,
            "sessions": self.sessions,
            "object_results": self.object_results,
        }
