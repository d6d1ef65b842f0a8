"""Data models for the migration engine."""

from .schema import (
    FieldDescribe,
    ObjectDescribe,
    FieldMapping,
    ObjectMapping,
    TransformationKind,
)
from .migration import (
    MigrationOptions,
    MigrationProject,
    MigrationSession,
    MigrationProgress,
    MigrationResult,
    MigrationStatus,
)
from .record import (
    MigrationRecord,
    RecordStatus,
    LoadError,
    LoadOutcome,
)
from .template import (
    MigrationTemplate,
    ETLStep,
    LifecyclePoint,
    HookAction,
)

__all__ = [
    "FieldDescribe",
    "ObjectDescribe",
    "FieldMapping",
    "ObjectMapping",
    "TransformationKind",
    "MigrationOptions",
    "MigrationProject",
    "MigrationSession",
    "MigrationProgress",
    "MigrationResult",
    "MigrationStatus",
    "MigrationRecord",
    "RecordStatus",
    "LoadError",
    "LoadOutcome",
    "MigrationTemplate",
    "ETLStep",
    "LifecyclePoint",
    "HookAction",
]
