"""
Org Migration Engine

Moves business records of a set of object types from a source SaaS org to a
target org of the same platform, preserving the relationships between them.

Supports:
- Dependency-ordered migration of object types
- Automatic field mapping across managed/unmanaged package namespaces
- Stable external identities so re-runs upsert instead of duplicating
- Pre-flight validation driven by declarative ETL templates
- Per-record and bulk load paths with error-code driven retry
- Per-object session tracking with progress and ETA
"""

__version__ = "0.1.0"
