"""Service layer for the migration engine."""

from .dependency import DependencyResolver
from .field_mapping import FieldMappingEngine, find_matching_field
from .identity import ExternalIdResolver, ExternalIdConfig
from .retry import RetryPolicy
from .session_tracker import SessionTracker, SessionStore, InMemorySessionStore, SessionEvent
from .validation import ValidationEngine, ValidationResult, ValidationIssue

__all__ = [
    "DependencyResolver",
    "FieldMappingEngine",
    "find_matching_field",
    "ExternalIdResolver",
    "ExternalIdConfig",
    "RetryPolicy",
    "SessionTracker",
    "SessionStore",
    "InMemorySessionStore",
    "SessionEvent",
    "ValidationEngine",
    "ValidationResult",
    "ValidationIssue",
]
