"""Error types raised by the migration engine."""

from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base class for all migration engine errors."""


class ConfigurationError(MigrationError):
    """Raised when a project or template cannot be executed as configured."""


class NoIdentityFieldError(ConfigurationError):
    """Raised when an object type has none of the external identity fields."""

    def __init__(self, object_type: str, org_id: str, candidates: List[str]):
        self.object_type = object_type
        self.org_id = org_id
        self.candidates = candidates
        super().__init__(
            f"No external ID field found for {object_type} in org {org_id} "
            f"(tried: {', '.join(candidates)})"
        )


class SchemaResolutionError(ConfigurationError):
    """Raised when an object schema cannot be described in an org."""

    def __init__(self, object_type: str, org_id: str, reason: str = ""):
        self.object_type = object_type
        self.org_id = org_id
        message = f"Unable to resolve schema for {object_type} in org {org_id}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class CircularDependencyError(MigrationError):
    """Raised when the requested object types reference each other in a cycle."""

    def __init__(self, object_type: str):
        self.object_type = object_type
        super().__init__(f"Circular dependency detected involving {object_type}")


class InvalidStateTransitionError(MigrationError):
    """Raised when a session is moved to a state its current state does not allow."""

    def __init__(self, session_id: str, current: str, attempted: str):
        self.session_id = session_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Session {session_id} cannot move from {current} to {attempted}"
        )


class SessionNotFoundError(MigrationError):
    """Raised when a session id is unknown to the session store."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class ValidationBlockedError(MigrationError):
    """Raised when blocking validation errors prevent an object type from loading."""

    def __init__(self, object_type: str, issues: Optional[List[Dict[str, Any]]] = None):
        self.object_type = object_type
        self.issues = issues or []
        summary = "; ".join(issue.get("message", "") for issue in self.issues[:5])
        super().__init__(f"Validation failed for {object_type}: {summary}")


class MigrationCancelledError(MigrationError):
    """Raised inside a run when cancellation has been requested."""


class MigrationInProgressError(MigrationError):
    """Raised when a second run is started on an engine that is already running."""
