"""Pre-flight validation of source batches before they are loaded."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from ..clients.connection import OrgConnection
from ..models.schema import ObjectDescribe
from ..models.template import (
    SELECTED_IDS_PLACEHOLDER,
    DataIntegrityCheck,
    DependencyCheck,
    ETLStep,
    ExpectedResult,
    PicklistValidationCheck,
    PreValidationQuery,
    Severity,
)
from .field_mapping import strip_namespace
from .identity import ExternalIdConfig, extract_external_id_value, replace_placeholders
from .soql import chunked, format_id_list

logger = logging.getLogger(__name__)


@dataclass
class ValidationIssue:
    """A single finding of a validation check."""
    check_name: str
    message: str
    severity: Severity
    record_id: Optional[str] = None
    record_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "check_name": self.check_name,
            "message": self.message,
            "severity": self.severity.value,
            "record_id": self.record_id,
            "record_name": self.record_name,
        }


@dataclass
class ValidationSummary:
    total_checks: int = 0
    passed_checks: int = 0
    failed_checks: int = 0
    warning_checks: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_checks": self.total_checks,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "warning_checks": self.warning_checks,
        }


@dataclass
class ValidationResult:
    """
    Outcome of validating one batch.

    A result is valid only when no issue has error severity. Summary
    counters count checks: a check with any error is failed, a check with
    warnings but no error is a warning check, the rest passed.
    """
    is_valid: bool = True
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    info: List[ValidationIssue] = field(default_factory=list)
    summary: ValidationSummary = field(default_factory=ValidationSummary)
    _checks_run: List[str] = field(default_factory=list, repr=False)

    def add(self, issue: ValidationIssue) -> None:
        if issue.severity == Severity.ERROR:
            self.errors.append(issue)
        elif issue.severity == Severity.WARNING:
            self.warnings.append(issue)
        else:
            self.info.append(issue)

    def mark_check(self, check_name: str) -> None:
        if check_name not in self._checks_run:
            self._checks_run.append(check_name)

    def merge(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)
        self.info.extend(other.info)
        for name in other._checks_run:
            self.mark_check(name)
        self.finalize()

    def finalize(self) -> "ValidationResult":
        """Recompute is_valid and the summary counters."""
        failed = {i.check_name for i in self.errors}
        warned = {i.check_name for i in self.warnings} - failed
        for name in failed | warned:
            self.mark_check(name)

        self.is_valid = not self.errors
        self.summary.total_checks = len(self._checks_run)
        self.summary.failed_checks = len(failed)
        self.summary.warning_checks = len(warned)
        self.summary.passed_checks = max(
            self.summary.total_checks - self.summary.failed_checks - self.summary.warning_checks, 0
        )
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "is_valid": self.is_valid,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
            "info": [i.to_dict() for i in self.info],
            "summary": self.summary.to_dict(),
        }


def default_cache_key(object_name: str) -> str:
    """Cache key a dependency check on object_name reads when it names none."""
    return f"target_{strip_namespace(object_name).lower().replace('__c', '')}"


def get_field_value(record: Dict[str, Any], field_path: str) -> Any:
    """Read a possibly dotted field path (Parent__r.Name) from a record."""
    value: Any = record
    for part in field_path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def format_message(template: str, source_value: Any, record: Dict[str, Any]) -> str:
    """Fill {sourceValue} and {recordName} in a check message."""
    return (
        template
        .replace("{sourceValue}", "null" if source_value in (None, "") else str(source_value))
        .replace("{recordName}", str(record_name(record) or ""))
    )


def record_name(record: Dict[str, Any]) -> Optional[str]:
    return record.get("Name") or record.get("Id")


class ValidationEngine:
    """
    Runs a template step's validation config against a batch of source records.

    Supports:
    - Dependency checks: a referenced value must exist in the target org
    - Data integrity checks: query-shaped assertions on the source org
    - Picklist checks: source values must be active values in the target
    - Record level checks: required fields, max length, duplicate identities

    Pre-validation query results and dependency lookups are cached for the
    life of the engine, which the orchestrator creates once per run.
    """

    def __init__(self, source: OrgConnection, target: OrgConnection):
        self.source = source
        self.target = target
        self._cache: Dict[str, List[Dict[str, Any]]] = {}
        self._known_values: Dict[Tuple[str, str], Set[str]] = {}
        self._checked_values: Dict[Tuple[str, str], Set[str]] = {}
        self._integrity_done: Set[Tuple[str, str]] = set()

    async def validate_batch(
        self,
        step: ETLStep,
        records: List[Dict[str, Any]],
        identity: Optional[ExternalIdConfig] = None,
        selected_ids: Optional[List[str]] = None
    ) -> ValidationResult:
        """
        Validate a batch of source records for one step.

        Args:
            step: Template step whose validation config applies
            records: Source records of the batch
            identity: Identity fields of the object type, for placeholders
            selected_ids: Ids substituted into {selectedRecordIds}; defaults to the batch ids

        Returns:
            ValidationResult for the batch
        """
        result = ValidationResult()
        config = step.validation_config
        if config is None:
            return result.finalize()

        await self._run_pre_validation_queries(config.pre_validation_queries, identity, result)

        if config.enable_dependency_checks:
            for check in config.dependency_checks:
                await self._run_dependency_check(check, records, identity, result)

        if config.enable_integrity_checks:
            ids = selected_ids if selected_ids else [r["Id"] for r in records if r.get("Id")]
            for check in config.data_integrity_checks:
                await self._run_integrity_check(step.step_name, check, ids, identity, result)

        if config.enable_picklist_checks:
            for check in config.picklist_validation_checks:
                await self._run_picklist_check(check, records, result)

        result.finalize()
        if result.errors:
            logger.error(f"Validation for {step.step_name} found {len(result.errors)} blocking issues")
        elif result.warnings:
            logger.warning(f"Validation for {step.step_name} found {len(result.warnings)} warnings")
        return result

    async def _run_pre_validation_queries(
        self,
        queries: List[PreValidationQuery],
        identity: Optional[ExternalIdConfig],
        result: ValidationResult
    ) -> None:
        for query in queries:
            if query.cache_key in self._cache:
                continue
            soql = query.soql_query
            if identity:
                soql = replace_placeholders(soql, identity.target_field)
            try:
                self._cache[query.cache_key] = await self.target.query_all(soql)
                logger.debug(f"Cached {len(self._cache[query.cache_key])} rows under {query.cache_key}")
            except Exception as e:
                logger.error(f"Pre-validation query {query.query_name} failed: {e}")
                result.add(ValidationIssue(
                    check_name=query.query_name,
                    message=f"Failed to execute pre-validation query {query.query_name}: {e}",
                    severity=Severity.ERROR,
                ))

    async def _run_dependency_check(
        self,
        check: DependencyCheck,
        records: List[Dict[str, Any]],
        identity: Optional[ExternalIdConfig],
        result: ValidationResult
    ) -> None:
        result.mark_check(check.check_name)
        source_field = check.source_field
        target_field = check.target_field
        if identity:
            source_field = replace_placeholders(source_field, identity.source_field)
            target_field = replace_placeholders(target_field, identity.target_field)

        values: Dict[int, Any] = {}
        for index, record in enumerate(records):
            values[index] = self._read_source_value(record, source_field)

        present = {str(v) for v in values.values() if v not in (None, "")}
        known = await self._existing_target_values(check, target_field, present)

        for index, record in enumerate(records):
            value = values[index]
            if value in (None, ""):
                if check.is_required:
                    result.add(self._issue(check.check_name, check.error_message, value, record, Severity.ERROR))
                continue

            if str(value) in known:
                continue

            if check.is_required:
                result.add(self._issue(check.check_name, check.error_message, value, record, Severity.ERROR))
            elif check.warning_message:
                result.add(self._issue(check.check_name, check.warning_message, value, record, Severity.WARNING))

    @staticmethod
    def _read_source_value(record: Dict[str, Any], source_field: str) -> Any:
        value = get_field_value(record, source_field)
        if value is None and "." in source_field:
            relationship, related_field = source_field.split(".", 1)
            value = extract_external_id_value(record, relationship, related_field)
        return value

    async def _existing_target_values(
        self,
        check: DependencyCheck,
        target_field: str,
        values: Set[str]
    ) -> Set[str]:
        """
        Target values among `values` that exist.

        Uses the pre-validation cache when one is registered for the check,
        otherwise queries the target for the values not yet looked up.
        """
        cache_key = check.cache_key or default_cache_key(check.target_object)
        if cache_key in self._cache:
            cached = {
                str(row.get(target_field)) for row in self._cache[cache_key]
                if row.get(target_field) is not None
            }
            return cached & values

        lookup_key = (check.target_object, target_field)
        known = self._known_values.setdefault(lookup_key, set())
        checked = self._checked_values.setdefault(lookup_key, set())
        missing = sorted(values - checked)

        for chunk in chunked(missing):
            soql = (
                f"SELECT {target_field} FROM {check.target_object} "
                f"WHERE {target_field} IN ({format_id_list(chunk)})"
            )
            for row in await self.target.query_all(soql):
                if row.get(target_field) is not None:
                    known.add(str(row[target_field]))
            checked.update(chunk)

        return known & values

    async def _run_integrity_check(
        self,
        step_name: str,
        check: DataIntegrityCheck,
        selected_ids: List[str],
        identity: Optional[ExternalIdConfig],
        result: ValidationResult
    ) -> None:
        # Checks that do not depend on the batch run once per step
        per_batch = SELECTED_IDS_PLACEHOLDER in check.validation_query
        done_key = (step_name, check.check_name)
        if not per_batch and done_key in self._integrity_done:
            return
        self._integrity_done.add(done_key)
        result.mark_check(check.check_name)

        soql = check.validation_query
        if identity:
            soql = replace_placeholders(soql, identity.source_field)
        if per_batch:
            soql = soql.replace(SELECTED_IDS_PLACEHOLDER, format_id_list(selected_ids) or "''")

        try:
            query_result = await self.source.query(soql)
        except Exception as e:
            logger.error(f"Integrity check {check.check_name} failed to run: {e}")
            result.add(ValidationIssue(
                check_name=check.check_name,
                message=f"Failed to execute integrity check: {e}",
                severity=Severity.ERROR,
            ))
            return

        count = query_result.total_size
        if check.expected_result == ExpectedResult.EMPTY:
            passed = count == 0
        elif check.expected_result == ExpectedResult.NON_EMPTY:
            passed = count > 0
        else:
            passed = check.expected_count is None or count == check.expected_count

        if not passed:
            message = check.error_message or f"Integrity check {check.check_name} failed ({count} rows)"
            result.add(ValidationIssue(check_name=check.check_name, message=message, severity=check.severity))

    async def _run_picklist_check(
        self,
        check: PicklistValidationCheck,
        records: List[Dict[str, Any]],
        result: ValidationResult
    ) -> None:
        result.mark_check(check.check_name)

        if check.validate_against_target:
            describe = await self.target.describe(check.object_name)
            target_field = describe.get_field(check.field_name)
            if target_field is None:
                result.add(ValidationIssue(
                    check_name=check.check_name,
                    message=f"Picklist field {check.object_name}.{check.field_name} not found in target",
                    severity=check.severity,
                ))
                return
            allowed = set(target_field.picklist_values)
        else:
            allowed = set(check.allowed_values)

        for record in records:
            value = record.get(check.field_name)
            if value in (None, ""):
                continue
            # Multi-select values are ; separated
            for single in str(value).split(";"):
                if single not in allowed:
                    result.add(self._issue(check.check_name, check.error_message, single, record, check.severity))

    def check_records(
        self,
        source_records: List[Dict[str, Any]],
        transformed_records: List[Dict[str, Any]],
        target_describe: ObjectDescribe,
        identity_field: Optional[str] = None
    ) -> List[ValidationIssue]:
        """
        Record level checks on transformed records.

        Flags records missing a required target field, string values longer
        than the target field allows, and identity values duplicated within
        the batch (every occurrence after the first). Issues carry the source
        record id so the caller can fail just those records.
        """
        issues: List[ValidationIssue] = []
        seen_identities: Dict[str, str] = {}

        for source_record, record in zip(source_records, transformed_records):
            record_id = source_record.get("Id")
            name = record_name(source_record)

            for target_field in target_describe.fields.values():
                if not target_field.required or target_field.name == "Id":
                    continue
                # Type defaults such as "" count as populated
                if record.get(target_field.name) is None:
                    issues.append(ValidationIssue(
                        check_name="required_fields",
                        message=f"Required field {target_field.name} is missing",
                        severity=Severity.ERROR,
                        record_id=record_id,
                        record_name=name,
                    ))

            for field_name, value in record.items():
                target_field = target_describe.get_field(field_name)
                if target_field and target_field.length and isinstance(value, str) and len(value) > target_field.length:
                    issues.append(ValidationIssue(
                        check_name="max_length",
                        message=f"Value of {field_name} exceeds max length of {target_field.length}",
                        severity=Severity.ERROR,
                        record_id=record_id,
                        record_name=name,
                    ))

            if identity_field and record.get(identity_field):
                key = str(record[identity_field])
                if key in seen_identities:
                    issues.append(ValidationIssue(
                        check_name="duplicate_identity",
                        message=f"Duplicate {identity_field} value {key} (also on {seen_identities[key]})",
                        severity=Severity.ERROR,
                        record_id=record_id,
                        record_name=name,
                    ))
                else:
                    seen_identities[key] = record_id

        return issues

    @staticmethod
    def _issue(
        check_name: str,
        template: str,
        value: Any,
        record: Dict[str, Any],
        severity: Severity
    ) -> ValidationIssue:
        return ValidationIssue(
            check_name=check_name,
            message=format_message(template, value, record),
            severity=severity,
            record_id=record.get("Id"),
            record_name=record.get("Name"),
        )

    def cached_rows(self, cache_key: str) -> Optional[List[Dict[str, Any]]]:
        return self._cache.get(cache_key)

    def clear_cache(self) -> None:
        self._cache.clear()
        self._known_values.clear()
        self._checked_values.clear()
        self._integrity_done.clear()
