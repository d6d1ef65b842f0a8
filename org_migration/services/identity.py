"""External identity field detection and cross-org identity handling."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from ..clients.connection import OrgConnection
from ..exceptions import NoIdentityFieldError
from ..models.template import EXTERNAL_ID_PLACEHOLDER

logger = logging.getLogger(__name__)

MANAGED_EXTERNAL_ID_FIELD = "tc9_edc__External_ID_Data_Creation__c"
UNMANAGED_EXTERNAL_ID_FIELD = "External_ID_Data_Creation__c"
FALLBACK_EXTERNAL_ID_FIELD = "External_Id__c"

IDENTITY_FIELD_CANDIDATES = [
    MANAGED_EXTERNAL_ID_FIELD,
    UNMANAGED_EXTERNAL_ID_FIELD,
    FALLBACK_EXTERNAL_ID_FIELD,
]

_RELATIONSHIP_PLACEHOLDER = re.compile(r"(\w+__r)\." + re.escape(EXTERNAL_ID_PLACEHOLDER))


class IdentityStrategy(str, Enum):
    AUTO_DETECT = "auto-detect"
    MANUAL = "manual"
    CROSS_ENVIRONMENT = "cross-environment"


class PackageType(str, Enum):
    MANAGED = "managed"
    UNMANAGED = "unmanaged"


@dataclass
class ExternalIdConfig:
    """Identity fields used on each side of a migration for one object type."""
    source_field: str
    target_field: str
    managed_field: str = MANAGED_EXTERNAL_ID_FIELD
    unmanaged_field: str = UNMANAGED_EXTERNAL_ID_FIELD
    fallback_field: str = FALLBACK_EXTERNAL_ID_FIELD
    strategy: IdentityStrategy = IdentityStrategy.AUTO_DETECT
    source_package_type: Optional[PackageType] = None
    target_package_type: Optional[PackageType] = None

    @property
    def is_cross_environment(self) -> bool:
        return self.strategy == IdentityStrategy.CROSS_ENVIRONMENT

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "managed_field": self.managed_field,
            "unmanaged_field": self.unmanaged_field,
            "fallback_field": self.fallback_field,
            "strategy": self.strategy.value,
            "source_package_type": self.source_package_type.value if self.source_package_type else None,
            "target_package_type": self.target_package_type.value if self.target_package_type else None,
        }


@dataclass
class EnvironmentIdentityInfo:
    """What identity fields an org has for an object type."""
    package_type: PackageType
    external_id_field: Optional[str]
    detected_fields: List[str] = field(default_factory=list)
    fallback_used: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "package_type": self.package_type.value,
            "external_id_field": self.external_id_field,
            "detected_fields": self.detected_fields,
            "fallback_used": self.fallback_used,
        }


@dataclass
class IdentityIssue:
    severity: str  # error, warning, info
    message: str
    affected_objects: List[str] = field(default_factory=list)
    suggested_action: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "message": self.message,
            "affected_objects": self.affected_objects,
            "suggested_action": self.suggested_action,
        }


@dataclass
class IdentityCompatibilityReport:
    source: EnvironmentIdentityInfo
    target: EnvironmentIdentityInfo
    cross_environment_detected: bool
    issues: List[IdentityIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(issue.severity == "error" for issue in self.issues)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "cross_environment_detected": self.cross_environment_detected,
            "has_errors": self.has_errors,
            "issues": [i.to_dict() for i in self.issues],
            "recommendations": self.recommendations,
        }


def replace_placeholders(text: str, external_id_field: str) -> str:
    """Replace every {externalIdField} placeholder in text."""
    return text.replace(EXTERNAL_ID_PLACEHOLDER, external_id_field)


def build_cross_environment_query(
    base_query: str,
    source_field: str,
    relationship_fields: Optional[List[str]] = None
) -> str:
    """
    Resolve identity placeholders in a query that spans package namespaces.

    Relationship placeholders (Parent__r.{externalIdField}) expand to every
    identity candidate so the parent's identity can be read whichever field
    the source org populated. Remaining placeholders become source_field.
    """
    candidates = relationship_fields or IDENTITY_FIELD_CANDIDATES

    def _expand(match: "re.Match") -> str:
        relationship = match.group(1)
        return ", ".join(f"{relationship}.{f}" for f in candidates)

    query = _RELATIONSHIP_PLACEHOLDER.sub(_expand, base_query)
    return replace_placeholders(query, source_field)


def extract_external_id_value(
    record: Dict[str, Any],
    relationship_name: str,
    preferred_field: str
) -> Optional[str]:
    """Read a related record's identity, trying the preferred field then every candidate."""
    related = record.get(relationship_name)
    if not related:
        return None

    if related.get(preferred_field):
        return related[preferred_field]

    for candidate in IDENTITY_FIELD_CANDIDATES:
        if related.get(candidate):
            return related[candidate]

    return None


def identity_value(source_record: Dict[str, Any], source_field: Optional[str]) -> Optional[str]:
    """
    The stable identity written to the target for a source record.

    A populated business identity in the source wins; otherwise the source
    record's own id is used, so the same source record always maps to the
    same identity value.
    """
    if source_field:
        value = source_record.get(source_field)
        if value not in (None, ""):
            return str(value)
    record_id = source_record.get("Id")
    return str(record_id) if record_id else None


class ExternalIdResolver:
    """
    Detects which identity field an object type carries in an org.

    Candidates are probed in order: managed package field, unmanaged field,
    generic fallback. Results are cached per (object type, org) for the life
    of the resolver, which the engine creates once per run.
    """

    def __init__(self, candidates: Optional[List[str]] = None):
        self.candidates = candidates or list(IDENTITY_FIELD_CANDIDATES)
        self._detected: Dict[Tuple[str, str], List[str]] = {}

    async def field_exists(self, connection: OrgConnection, object_type: str, field_name: str) -> bool:
        """Probe for a field with a one-row query. Any failure counts as absent."""
        try:
            await connection.query(f"SELECT {field_name} FROM {object_type} LIMIT 1")
            return True
        except Exception as e:
            logger.debug(f"Field {object_type}.{field_name} not available in {connection.org_id}: {e}")
            return False

    async def detect_fields(self, connection: OrgConnection, object_type: str) -> List[str]:
        """Get every identity candidate present on the object type, in priority order."""
        key = (object_type, connection.org_id)
        if key not in self._detected:
            detected = []
            for candidate in self.candidates:
                if await self.field_exists(connection, object_type, candidate):
                    detected.append(candidate)
            self._detected[key] = detected
            logger.debug(f"Identity fields for {object_type} in {connection.org_id}: {detected}")
        return self._detected[key]

    async def resolve(self, object_type: str, connection: OrgConnection) -> str:
        """
        Get the identity field for an object type in an org.

        Raises:
            NoIdentityFieldError: If none of the candidates exist
        """
        detected = await self.detect_fields(connection, object_type)
        if not detected:
            raise NoIdentityFieldError(object_type, connection.org_id, self.candidates)
        return detected[0]

    async def detect_environment_info(
        self,
        connection: OrgConnection,
        object_type: str
    ) -> EnvironmentIdentityInfo:
        detected = await self.detect_fields(connection, object_type)
        chosen = detected[0] if detected else None
        package_type = PackageType.MANAGED if chosen == MANAGED_EXTERNAL_ID_FIELD else PackageType.UNMANAGED
        return EnvironmentIdentityInfo(
            package_type=package_type,
            external_id_field=chosen,
            detected_fields=list(detected),
            fallback_used=chosen == FALLBACK_EXTERNAL_ID_FIELD,
        )

    async def build_config(
        self,
        object_type: str,
        source: OrgConnection,
        target: OrgConnection,
        target_object: Optional[str] = None
    ) -> ExternalIdConfig:
        """
        Resolve identity fields on both sides.

        Differing fields switch the config to the cross-environment strategy:
        source queries use the source field, target lookups and writes the
        target field.
        """
        target_object = target_object or object_type
        source_field = await self.resolve(object_type, source)
        target_field = await self.resolve(target_object, target)
        source_info = await self.detect_environment_info(source, object_type)
        target_info = await self.detect_environment_info(target, target_object)

        strategy = IdentityStrategy.AUTO_DETECT
        if source_field != target_field:
            strategy = IdentityStrategy.CROSS_ENVIRONMENT
            logger.info(
                f"Cross-environment identity for {object_type}: "
                f"{source_field} ({source_info.package_type.value}) -> "
                f"{target_field} ({target_info.package_type.value})"
            )

        return ExternalIdConfig(
            source_field=source_field,
            target_field=target_field,
            strategy=strategy,
            source_package_type=source_info.package_type,
            target_package_type=target_info.package_type,
        )

    @staticmethod
    def manual_config(source_field: str, target_field: Optional[str] = None) -> ExternalIdConfig:
        return ExternalIdConfig(
            source_field=source_field,
            target_field=target_field or source_field,
            strategy=IdentityStrategy.MANUAL,
        )

    async def validate_cross_environment(
        self,
        object_type: str,
        source: OrgConnection,
        target: OrgConnection
    ) -> IdentityCompatibilityReport:
        """Report identity configuration problems between two orgs before a run."""
        source_info = await self.detect_environment_info(source, object_type)
        target_info = await self.detect_environment_info(target, object_type)
        cross = source_info.package_type != target_info.package_type
        report = IdentityCompatibilityReport(source_info, target_info, cross)

        if source_info.fallback_used:
            report.issues.append(IdentityIssue(
                severity="warning",
                message=f"Source environment is using fallback external ID field: {source_info.external_id_field}",
                affected_objects=[object_type],
                suggested_action="Verify that external ID values are populated in the source org",
            ))

        if target_info.fallback_used:
            report.issues.append(IdentityIssue(
                severity="warning",
                message=f"Target environment is using fallback external ID field: {target_info.external_id_field}",
                affected_objects=[object_type],
                suggested_action="Verify the target org's external ID field configuration",
            ))

        if cross:
            report.issues.append(IdentityIssue(
                severity="info",
                message=(
                    f"Cross-environment migration detected: "
                    f"{source_info.package_type.value} -> {target_info.package_type.value}"
                ),
                affected_objects=[object_type],
                suggested_action="Ensure external ID values are mapped between environments",
            ))
            report.recommendations.extend([
                f"Source external ID field: {source_info.external_id_field}",
                f"Target external ID field: {target_info.external_id_field}",
                "Verify that all related objects have been migrated with consistent external IDs",
            ])

        for side, info in (("source", source_info), ("target", target_info)):
            if not info.detected_fields:
                report.issues.append(IdentityIssue(
                    severity="error",
                    message=f"No external ID fields detected for {object_type} in {side} environment",
                    affected_objects=[object_type],
                    suggested_action="Add an external ID field to the object before migrating",
                ))

        return report

    def clear_cache(self) -> None:
        self._detected.clear()
