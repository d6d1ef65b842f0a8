"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime

from ..models.migration import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_BULK_API_THRESHOLD,
    MigrationOptions,
    MigrationProject,
)


class SessionStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecordStatusEnum(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


# Request Models
class MigrationOptionsModel(BaseModel):
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, gt=0)
    bulk_api_threshold: int = Field(default=DEFAULT_BULK_API_THRESHOLD, gt=0)
    use_bulk_api: Optional[bool] = None
    preserve_relationships: bool = True
    allow_partial_success: bool = False
    max_concurrent_batches: int = Field(default=1, gt=0)
    enable_validation: bool = True
    dry_run: bool = False

    def to_options(self) -> MigrationOptions:
        return MigrationOptions.from_dict(self.model_dump())


class MigrationExecuteRequest(BaseModel):
    source_org_id: str
    target_org_id: str
    object_types: List[str] = Field(default_factory=list)
    name: str = ""
    template_id: Optional[str] = None
    filters: Dict[str, str] = Field(default_factory=dict)
    selected_record_ids: Dict[str, List[str]] = Field(default_factory=dict)
    options: MigrationOptionsModel = Field(default_factory=MigrationOptionsModel)

    def to_project(self) -> MigrationProject:
        data = self.model_dump()
        data["options"] = self.options.to_options().to_dict()
        return MigrationProject.from_dict(data)


# Response Models
class MigrationExecuteResponse(BaseModel):
    status: str
    project_id: str


class CancelResponse(BaseModel):
    cancelled: bool


class SessionErrorModel(BaseModel):
    timestamp: str
    message: str
    record_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class SessionResponse(BaseModel):
    id: str
    project_id: str
    object_type: str
    status: SessionStatusEnum
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    current_batch: int
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error_log: List[SessionErrorModel] = Field(default_factory=list)


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int


class ProgressResponse(BaseModel):
    session_id: str
    object_type: str
    status: SessionStatusEnum
    total_records: int
    processed_records: int
    successful_records: int
    failed_records: int
    percent_complete: int
    current_batch: int
    elapsed_seconds: float
    estimated_seconds_remaining: Optional[float] = None


class RecordResponse(BaseModel):
    id: str
    session_id: str
    source_record_id: str
    target_record_id: Optional[str] = None
    status: RecordStatusEnum
    error_message: Optional[str] = None
    already_existed: bool = False
    record_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class RecordListResponse(BaseModel):
    records: List[RecordResponse]
    total: int


class MigrationResultResponse(BaseModel):
    session_id: str
    success: bool
    total_records: int
    successful_records: int
    failed_records: int
    existing_records: int
    duration: float
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    cancelled: bool = False
    object_order: List[str] = Field(default_factory=list)
    sessions: Dict[str, str] = Field(default_factory=dict)
    object_results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
