"""Automatic field mapping between source and target object types."""

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from dateutil import parser as date_parser

from ..clients.connection import OrgConnection
from ..models.schema import (
    COMPOUND_TYPES,
    FieldDescribe,
    FieldMapping,
    ObjectDescribe,
    ObjectMapping,
    TransformationKind,
)
from ..models.template import (
    ETLStep,
    LookupMapping,
    RecordTypeMapping,
)
from .identity import replace_placeholders
from .soql import chunked, format_id_list

logger = logging.getLogger(__name__)

# System fields never copied between orgs
SKIP_FIELDS: FrozenSet[str] = frozenset([
    "Id",
    "CreatedDate",
    "CreatedById",
    "LastModifiedDate",
    "LastModifiedById",
    "SystemModstamp",
    "IsDeleted",
    "LastViewedDate",
    "LastReferencedDate",
    "LastActivityDate",
    "SetupOwnerId",
])

# Symmetric: a pair is compatible if either side lists the other
TYPE_COMPATIBILITY: Dict[str, FrozenSet[str]] = {
    "string": frozenset(["textarea", "email", "phone", "url"]),
    "textarea": frozenset(["string"]),
    "double": frozenset(["currency", "percent", "int"]),
    "currency": frozenset(["double", "percent"]),
    "percent": frozenset(["double", "currency"]),
    "int": frozenset(["double"]),
    "boolean": frozenset(["checkbox"]),
    "checkbox": frozenset(["boolean"]),
    "date": frozenset(["datetime"]),
    "datetime": frozenset(["date"]),
}

PLACEHOLDER_EMAIL = "noreply@example.com"

TEMPLATE_FORMULA_TYPES = {"boolean", "number", "picklist", "uppercase", "lowercase", "trim"}


def types_compatible(source_type: str, target_type: str) -> bool:
    """Check whether a source field type can be written to a target field type."""
    if source_type == target_type:
        return True
    return (
        target_type in TYPE_COMPATIBILITY.get(source_type, frozenset())
        or source_type in TYPE_COMPATIBILITY.get(target_type, frozenset())
    )


def strip_namespace(name: str) -> str:
    """Drop a package namespace prefix: ns__Field__c -> Field__c."""
    parts = name.split("__")
    if len(parts) >= 3:
        return "__".join(parts[-2:])
    return name


# Tried in order; the first level that yields an accepted candidate wins
MATCH_LEVELS: List[Tuple[str, Callable[[str], str]]] = [
    ("exact", lambda name: name),
    ("case_insensitive", lambda name: name.lower()),
    ("underscore_stripped", lambda name: name.lower().replace("_", "")),
    ("namespace_stripped", lambda name: strip_namespace(name).lower()),
]


def match_field_at_level(
    level: int,
    source_field_name: str,
    target_candidates: Iterable[str],
    accept: Optional[Callable[[str], bool]] = None
) -> Optional[str]:
    """Find the first candidate equal to the source name under one normalization level."""
    normalize = MATCH_LEVELS[level][1]
    wanted = normalize(source_field_name)
    for candidate in target_candidates:
        if normalize(candidate) == wanted and (accept is None or accept(candidate)):
            return candidate
    return None


def find_matching_field(
    source_field_name: str,
    target_candidates: Iterable[str],
    accept: Optional[Callable[[str], bool]] = None
) -> Optional[str]:
    """
    Find the best target field for a source field name.

    Tries exact, case-insensitive, underscore-stripped and then
    namespace-stripped matches. Works in both directions, so a namespaced
    source field matches an un-namespaced target field and vice versa.

    Args:
        source_field_name: Field name in the source org
        target_candidates: Field names in the target org
        accept: Optional predicate a candidate must satisfy (writable, compatible)

    Returns:
        The matching target field name, or None
    """
    candidates = list(target_candidates)
    for level in range(len(MATCH_LEVELS)):
        match = match_field_at_level(level, source_field_name, candidates, accept)
        if match:
            return match
    return None


def default_value_for(field_def: FieldDescribe) -> Any:
    """Get the value written to a required field that has no source value."""
    if field_def.default_value is not None:
        return field_def.default_value

    field_type = field_def.type
    if field_type in ("string", "textarea", "phone", "url", "picklist"):
        return ""
    if field_type in ("boolean", "checkbox"):
        return False
    if field_type in ("int", "double", "currency", "percent"):
        return 0
    if field_type == "date":
        return date.today().isoformat()
    if field_type == "datetime":
        return datetime.now(timezone.utc).isoformat()
    if field_type == "email":
        return PLACEHOLDER_EMAIL
    return None


def coerce_value(value: Any, source_type: Optional[str], target_type: Optional[str]) -> Any:
    """Convert a value between compatible field types where the wire format differs."""
    if value is None or source_type == target_type or not source_type or not target_type:
        return value

    if source_type == "date" and target_type == "datetime":
        return date_parser.parse(str(value)).replace(tzinfo=timezone.utc).isoformat()
    if source_type == "datetime" and target_type == "date":
        return date_parser.parse(str(value)).date().isoformat()
    if target_type == "int" and isinstance(value, float):
        return int(value)
    return value


def apply_formula(value: Any, config: Dict[str, Any]) -> Any:
    """Apply a simple value formula (uppercase, lowercase, trim, boolean, number, picklist)."""
    if value is None:
        return None

    formula = (config or {}).get("type")
    if formula == "uppercase":
        return str(value).upper()
    if formula == "lowercase":
        return str(value).lower()
    if formula == "trim":
        return str(value).strip()
    if formula == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "y")
        return bool(value)
    if formula == "number":
        number = float(value)
        return int(number) if number.is_integer() else number
    if formula == "picklist":
        return config.get("mapping", {}).get(value, value)
    return value


class FieldMappingEngine:
    """
    Builds and applies object mappings.

    Mappings are cached per object type for the life of the engine instance,
    which the orchestrator creates once per run.
    """

    def __init__(self):
        self._mappings: Dict[str, ObjectMapping] = {}
        self._lookup_cache: Dict[Tuple[str, str, str], Dict[str, Optional[str]]] = {}

    def generate_mapping(self, source: ObjectDescribe, target: ObjectDescribe) -> ObjectMapping:
        """
        Generate field mappings between two object describes.

        Args:
            source: Source object describe
            target: Target object describe

        Returns:
            ObjectMapping keyed by source field name
        """
        source_fields = [
            f for f in source.fields.values()
            if f.name not in SKIP_FIELDS and f.type not in COMPOUND_TYPES
        ]
        target_names = [f.name for f in target.fields.values() if f.name not in SKIP_FIELDS]

        matches: Dict[str, str] = {}
        used_targets = set()

        # Level by level across all fields so an exact match is never
        # taken by a looser match on another field
        for level in range(len(MATCH_LEVELS)):
            for source_field in source_fields:
                if source_field.name in matches:
                    continue

                def accept(candidate: str, sf: FieldDescribe = source_field) -> bool:
                    target_field = target.fields[candidate]
                    return (
                        candidate not in used_targets
                        and target_field.createable
                        and types_compatible(sf.type, target_field.type)
                    )

                match = match_field_at_level(level, source_field.name, target_names, accept)
                if match:
                    matches[source_field.name] = match
                    used_targets.add(match)

        mapping = ObjectMapping(source_object=source.name, target_object=target.name)

        for source_field in source_fields:
            target_name = matches.get(source_field.name)
            if not target_name:
                continue

            target_field = target.fields[target_name]
            kind = TransformationKind.LOOKUP if source_field.is_reference else TransformationKind.DIRECT
            mapping.field_mappings[source_field.name] = FieldMapping(
                source_field=source_field.name,
                target_field=target_name,
                transformation_kind=kind,
                required=target_field.required,
                default_value=default_value_for(target_field),
                source_type=source_field.type,
                target_type=target_field.type,
            )
            if kind == TransformationKind.LOOKUP:
                mapping.relationships[source_field.name] = target_name

        # Required target fields nothing feeds get a type default
        for target_field in target.fields.values():
            if (
                not target_field.required
                or target_field.name in SKIP_FIELDS
                or target_field.name in used_targets
                or target_field.is_reference
            ):
                continue

            default = default_value_for(target_field)
            if default is None:
                logger.warning(f"Required field {target.name}.{target_field.name} has no source and no default")
                continue

            mapping.constants[target_field.name] = FieldMapping(
                source_field=target_field.name,
                target_field=target_field.name,
                transformation_kind=TransformationKind.CONSTANT,
                required=True,
                default_value=default,
                target_type=target_field.type,
            )

        logger.info(
            f"Mapped {len(mapping.field_mappings)} fields for {source.name} -> {target.name} "
            f"({len(mapping.constants)} defaults, {len(mapping.relationships)} relationships)"
        )
        return mapping

    def mapping_from_template(
        self,
        step: ETLStep,
        source: ObjectDescribe,
        target: ObjectDescribe,
        source_external_id_field: str,
        target_external_id_field: str
    ) -> ObjectMapping:
        """Build an object mapping from a template step's field mapping table."""
        mapping = ObjectMapping(source_object=source.name, target_object=target.name)

        for row in step.transform_config.field_mappings:
            source_name = replace_placeholders(row.source_field, source_external_id_field)
            target_name = replace_placeholders(row.target_field, target_external_id_field)
            source_field = source.get_field(source_name)
            target_field = target.get_field(target_name)

            kind_name = row.transformation_type
            config = dict(row.transformation_config)
            if kind_name in TEMPLATE_FORMULA_TYPES:
                config.setdefault("type", kind_name)
                kind = TransformationKind.FORMULA
            elif kind_name in (k.value for k in TransformationKind):
                kind = TransformationKind(kind_name)
            else:
                kind = TransformationKind.DIRECT

            if source_field is not None and source_field.is_reference and kind == TransformationKind.DIRECT:
                kind = TransformationKind.LOOKUP

            mapping.field_mappings[source_name] = FieldMapping(
                source_field=source_name,
                target_field=target_name,
                transformation_kind=kind,
                required=row.is_required,
                default_value=default_value_for(target_field) if target_field else None,
                transformation_config=config,
                source_type=source_field.type if source_field else None,
                target_type=target_field.type if target_field else None,
            )
            if kind == TransformationKind.LOOKUP:
                mapping.relationships[source_name] = target_name

        return mapping

    async def get_mapping(
        self,
        object_type: str,
        source: OrgConnection,
        target: OrgConnection,
        target_object: Optional[str] = None
    ) -> ObjectMapping:
        """Generate the mapping for an object type once per run."""
        if object_type not in self._mappings:
            source_describe = await source.describe(object_type)
            target_describe = await target.describe(target_object or object_type)
            self._mappings[object_type] = self.generate_mapping(source_describe, target_describe)
        return self._mappings[object_type]

    def cache_mapping(self, object_type: str, mapping: ObjectMapping) -> None:
        self._mappings[object_type] = mapping

    def transform_record(
        self,
        source_record: Dict[str, Any],
        mapping: ObjectMapping,
        id_remap: Dict[str, str]
    ) -> Dict[str, Any]:
        """
        Transform a source record into a target record.

        Args:
            source_record: Record as extracted from the source org
            mapping: Object mapping to apply
            id_remap: Source id -> target id for records already migrated

        Returns:
            Target record containing only non-null values
        """
        transformed: Dict[str, Any] = {}

        for source_name, field_mapping in mapping.field_mappings.items():
            kind = field_mapping.transformation_kind
            if kind == TransformationKind.SKIP:
                continue

            value = source_record.get(source_name)

            if kind == TransformationKind.DIRECT:
                value = coerce_value(value, field_mapping.source_type, field_mapping.target_type)
            elif kind == TransformationKind.LOOKUP:
                # A reference is only ever written through the remap
                value = id_remap.get(value) if value else None
            elif kind == TransformationKind.CONSTANT:
                value = field_mapping.transformation_config.get("value", field_mapping.default_value)
            elif kind == TransformationKind.FORMULA:
                value = apply_formula(value, field_mapping.transformation_config)

            if value is None and field_mapping.required and kind != TransformationKind.LOOKUP:
                value = field_mapping.default_value

            if value is not None:
                transformed[field_mapping.target_field] = value

        for target_name, constant in mapping.constants.items():
            if transformed.get(target_name) is None:
                transformed[target_name] = constant.transformation_config.get("value", constant.default_value)

        return transformed

    @staticmethod
    def apply_record_type_mapping(
        source_record: Dict[str, Any],
        transformed: Dict[str, Any],
        record_type_mapping: Optional[RecordTypeMapping]
    ) -> Dict[str, Any]:
        """Translate a record type value through the template's dictionary."""
        if not record_type_mapping:
            return transformed

        value = source_record.get(record_type_mapping.source_field)
        if value is not None and value in record_type_mapping.mapping_dictionary:
            transformed[record_type_mapping.target_field] = record_type_mapping.mapping_dictionary[value]
        else:
            transformed.pop(record_type_mapping.target_field, None)
        return transformed

    async def apply_lookup_mappings(
        self,
        source_records: List[Dict[str, Any]],
        transformed_records: List[Dict[str, Any]],
        lookups: List[LookupMapping],
        target: OrgConnection
    ) -> None:
        """
        Resolve template lookups against the target org, in place.

        Each lookup reads the source value, queries the target for the record
        whose lookup_key_field equals it and writes lookup_value_field into
        target_field. Unresolved values use fallback_value, or are dropped.
        """
        for lookup in lookups:
            values = sorted({
                str(r.get(lookup.source_field)) for r in source_records
                if r.get(lookup.source_field) not in (None, "")
            })
            resolved = await self._resolve_lookup_values(lookup, values, target)

            for source_record, transformed in zip(source_records, transformed_records):
                value = source_record.get(lookup.source_field)
                target_value = resolved.get(str(value)) if value not in (None, "") else None

                if target_value is None:
                    target_value = lookup.fallback_value

                if target_value is None:
                    transformed.pop(lookup.target_field, None)
                    if not lookup.allow_null and value not in (None, ""):
                        logger.warning(
                            f"Lookup {lookup.lookup_object}.{lookup.lookup_key_field}={value} "
                            f"not found in target"
                        )
                else:
                    transformed[lookup.target_field] = target_value

    async def _resolve_lookup_values(
        self,
        lookup: LookupMapping,
        values: List[str],
        target: OrgConnection
    ) -> Dict[str, Optional[str]]:
        cache_key = (lookup.lookup_object, lookup.lookup_key_field, lookup.lookup_value_field)
        cache = self._lookup_cache.setdefault(cache_key, {}) if lookup.cache_results else {}

        missing = [v for v in values if v not in cache]
        for chunk in chunked(missing):
            id_list = format_id_list(chunk)
            soql = (
                f"SELECT {lookup.lookup_key_field}, {lookup.lookup_value_field} "
                f"FROM {lookup.lookup_object} WHERE {lookup.lookup_key_field} IN ({id_list})"
            )
            for row in await target.query_all(soql):
                key = row.get(lookup.lookup_key_field)
                if key is not None:
                    cache[str(key)] = row.get(lookup.lookup_value_field)
            for value in chunk:
                cache.setdefault(value, None)

        return {v: cache.get(v) for v in values}

    def clear_cache(self) -> None:
        self._mappings.clear()
        self._lookup_cache.clear()
