"""Declarative ETL template models."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum


EXTERNAL_ID_PLACEHOLDER = "{externalIdField}"
SELECTED_IDS_PLACEHOLDER = "{selectedRecordIds}"

DEFAULT_RETRYABLE_ERRORS = [
    "UNABLE_TO_LOCK_ROW",
    "REQUEST_LIMIT_EXCEEDED",
    "INSUFFICIENT_ACCESS_ON_CROSS_REFERENCE_ENTITY",
]


class LoadOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ExpectedResult(str, Enum):
    EMPTY = "empty"
    NON_EMPTY = "non-empty"
    COUNT_MATCH = "count-match"


class LifecyclePoint(str, Enum):
    """Points in a run where template hooks are dispatched."""
    PRE_MIGRATION = "pre_migration"
    PRE_OBJECT = "pre_object"
    POST_OBJECT = "post_object"
    POST_MIGRATION = "post_migration"


class HookAction(str, Enum):
    """Fixed set of actions a template can attach to a lifecycle point."""
    CLEAR_VALIDATION_CACHE = "clear_validation_cache"
    LOG_SUMMARY = "log_summary"
    WRITE_REPORT = "write_report"


@dataclass
class ExtractConfig:
    """How source records of one object type are queried."""
    object_api_name: str
    soql_query: Optional[str] = None
    filter_criteria: Optional[str] = None
    order_by: Optional[str] = None
    batch_size: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractConfig":
        return cls(
            object_api_name=data["object_api_name"],
            soql_query=data.get("soql_query"),
            filter_criteria=data.get("filter_criteria"),
            order_by=data.get("order_by"),
            batch_size=data.get("batch_size"),
        )


@dataclass
class TemplateFieldMapping:
    """A field mapping row of a template's transform table."""
    source_field: str
    target_field: str
    is_required: bool = False
    transformation_type: str = "direct"
    transformation_config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TemplateFieldMapping":
        return cls(
            source_field=data["source_field"],
            target_field=data["target_field"],
            is_required=data.get("is_required", False),
            transformation_type=data.get("transformation_type", "direct"),
            transformation_config=data.get("transformation_config", {}),
        )


@dataclass
class LookupMapping:
    """Resolve a source value to a target record id by querying the target org."""
    source_field: str
    target_field: str
    lookup_object: str
    lookup_key_field: str
    lookup_value_field: str = "Id"
    cache_results: bool = True
    fallback_value: Optional[str] = None
    allow_null: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LookupMapping":
        return cls(
            source_field=data["source_field"],
            target_field=data["target_field"],
            lookup_object=data["lookup_object"],
            lookup_key_field=data["lookup_key_field"],
            lookup_value_field=data.get("lookup_value_field", "Id"),
            cache_results=data.get("cache_results", True),
            fallback_value=data.get("fallback_value"),
            allow_null=data.get("allow_null", False),
        )


@dataclass
class RecordTypeMapping:
    """Translate record type values between orgs through a fixed dictionary."""
    source_field: str
    target_field: str
    mapping_dictionary: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordTypeMapping":
        return cls(
            source_field=data["source_field"],
            target_field=data["target_field"],
            mapping_dictionary=data.get("mapping_dictionary", {}),
        )


@dataclass
class TransformConfig:
    field_mappings: List[TemplateFieldMapping] = field(default_factory=list)
    lookup_mappings: List[LookupMapping] = field(default_factory=list)
    record_type_mapping: Optional[RecordTypeMapping] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformConfig":
        record_type = data.get("record_type_mapping")
        return cls(
            field_mappings=[TemplateFieldMapping.from_dict(m) for m in data.get("field_mappings", [])],
            lookup_mappings=[LookupMapping.from_dict(m) for m in data.get("lookup_mappings", [])],
            record_type_mapping=RecordTypeMapping.from_dict(record_type) if record_type else None,
        )


@dataclass
class RetryConfig:
    """Error-code driven retry policy for load calls."""
    max_retries: int = 3
    retry_wait_seconds: float = 1.0
    retryable_errors: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            max_retries=data.get("max_retries", 3),
            retry_wait_seconds=data.get("retry_wait_seconds", 1.0),
            retryable_errors=data.get("retryable_errors", list(DEFAULT_RETRYABLE_ERRORS)),
        )


@dataclass
class LoadConfig:
    target_object: str
    operation: LoadOperation = LoadOperation.UPSERT
    external_id_field: str = EXTERNAL_ID_PLACEHOLDER
    use_bulk_api: Optional[bool] = None
    batch_size: Optional[int] = None
    allow_partial_success: Optional[bool] = None
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoadConfig":
        return cls(
            target_object=data["target_object"],
            operation=LoadOperation(data.get("operation", "upsert")),
            external_id_field=data.get("external_id_field", EXTERNAL_ID_PLACEHOLDER),
            use_bulk_api=data.get("use_bulk_api"),
            batch_size=data.get("batch_size"),
            allow_partial_success=data.get("allow_partial_success"),
            retry_config=RetryConfig.from_dict(data.get("retry_config", {})),
        )


@dataclass
class DependencyCheck:
    """Every referenced value must exist in the target org."""
    check_name: str
    source_field: str
    target_object: str
    target_field: str
    is_required: bool = True
    error_message: str = "Referenced record {sourceValue} not found in target for {recordName}"
    warning_message: Optional[str] = None
    description: str = ""
    cache_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DependencyCheck":
        return cls(
            check_name=data["check_name"],
            source_field=data["source_field"],
            target_object=data["target_object"],
            target_field=data["target_field"],
            is_required=data.get("is_required", True),
            error_message=data.get("error_message", cls.error_message),
            warning_message=data.get("warning_message"),
            description=data.get("description", ""),
            cache_key=data.get("cache_key"),
        )


@dataclass
class DataIntegrityCheck:
    """A query-shaped assertion run against the source org."""
    check_name: str
    validation_query: str
    expected_result: ExpectedResult = ExpectedResult.EMPTY
    error_message: str = ""
    severity: Severity = Severity.ERROR
    description: str = ""
    expected_count: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataIntegrityCheck":
        return cls(
            check_name=data["check_name"],
            validation_query=data["validation_query"],
            expected_result=ExpectedResult(data.get("expected_result", "empty")),
            error_message=data.get("error_message", ""),
            severity=Severity(data.get("severity", "error")),
            description=data.get("description", ""),
            expected_count=data.get("expected_count"),
        )


@dataclass
class PicklistValidationCheck:
    """Source picklist values must be active values in the target."""
    check_name: str
    field_name: str
    object_name: str
    validate_against_target: bool = True
    allowed_values: List[str] = field(default_factory=list)
    error_message: str = "Invalid picklist value {sourceValue} on {recordName}"
    severity: Severity = Severity.WARNING
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PicklistValidationCheck":
        return cls(
            check_name=data["check_name"],
            field_name=data["field_name"],
            object_name=data["object_name"],
            validate_against_target=data.get("validate_against_target", True),
            allowed_values=data.get("allowed_values", []),
            error_message=data.get("error_message", cls.error_message),
            severity=Severity(data.get("severity", "warning")),
            description=data.get("description", ""),
        )


@dataclass
class PreValidationQuery:
    """A target-org query whose rows are cached under cache_key for dependency checks."""
    query_name: str
    soql_query: str
    cache_key: str
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreValidationQuery":
        return cls(
            query_name=data["query_name"],
            soql_query=data["soql_query"],
            cache_key=data["cache_key"],
            description=data.get("description", ""),
        )


@dataclass
class ValidationConfig:
    dependency_checks: List[DependencyCheck] = field(default_factory=list)
    data_integrity_checks: List[DataIntegrityCheck] = field(default_factory=list)
    picklist_validation_checks: List[PicklistValidationCheck] = field(default_factory=list)
    pre_validation_queries: List[PreValidationQuery] = field(default_factory=list)
    enable_dependency_checks: bool = True
    enable_integrity_checks: bool = True
    enable_picklist_checks: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationConfig":
        return cls(
            dependency_checks=[DependencyCheck.from_dict(c) for c in data.get("dependency_checks", [])],
            data_integrity_checks=[DataIntegrityCheck.from_dict(c) for c in data.get("data_integrity_checks", [])],
            picklist_validation_checks=[
                PicklistValidationCheck.from_dict(c) for c in data.get("picklist_validation_checks", [])
            ],
            pre_validation_queries=[PreValidationQuery.from_dict(q) for q in data.get("pre_validation_queries", [])],
            enable_dependency_checks=data.get("enable_dependency_checks", True),
            enable_integrity_checks=data.get("enable_integrity_checks", True),
            enable_picklist_checks=data.get("enable_picklist_checks", True),
        )


@dataclass
class ETLStep:
    """Extract, transform, load and validation settings for one object type."""
    step_name: str
    step_order: int
    extract_config: ExtractConfig
    load_config: LoadConfig
    transform_config: TransformConfig = field(default_factory=TransformConfig)
    validation_config: Optional[ValidationConfig] = None
    dependencies: List[str] = field(default_factory=list)

    @property
    def object_type(self) -> str:
        return self.extract_config.object_api_name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ETLStep":
        validation = data.get("validation_config")
        return cls(
            step_name=data["step_name"],
            step_order=data.get("step_order", 0),
            extract_config=ExtractConfig.from_dict(data["extract_config"]),
            load_config=LoadConfig.from_dict(data["load_config"]),
            transform_config=TransformConfig.from_dict(data.get("transform_config", {})),
            validation_config=ValidationConfig.from_dict(validation) if validation else None,
            dependencies=data.get("dependencies", []),
        )


@dataclass
class MigrationTemplate:
    """A named, versioned set of ETL steps. Loaded once and treated as read-only."""
    id: str
    name: str
    etl_steps: List[ETLStep] = field(default_factory=list)
    execution_order: List[str] = field(default_factory=list)
    description: str = ""
    category: str = "custom"
    version: str = "1.0.0"
    hooks: Dict[LifecyclePoint, List[HookAction]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def get_step(self, step_name: str) -> Optional[ETLStep]:
        for step in self.etl_steps:
            if step.step_name == step_name:
                return step
        return None

    def step_for_object(self, object_type: str) -> Optional[ETLStep]:
        """Get the step that extracts the given object type."""
        for step in self.etl_steps:
            if step.object_type.lower() == object_type.lower():
                return step
        return None

    def ordered_steps(self) -> List[ETLStep]:
        """Steps in execution order, falling back to step_order."""
        if self.execution_order:
            steps = [self.get_step(name) for name in self.execution_order]
            return [s for s in steps if s is not None]
        return sorted(self.etl_steps, key=lambda s: s.step_order)

    def hook_actions(self, point: LifecyclePoint) -> List[HookAction]:
        return self.hooks.get(point, [])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationTemplate":
        """Create from dictionary representation."""
        hooks = {
            LifecyclePoint(point): [HookAction(a) for a in actions]
            for point, actions in data.get("hooks", {}).items()
        }
        return cls(
            id=data["id"],
            name=data["name"],
            etl_steps=[ETLStep.from_dict(s) for s in data.get("etl_steps", [])],
            execution_order=data.get("execution_order", []),
            description=data.get("description", ""),
            category=data.get("category", "custom"),
            version=data.get("version", "1.0.0"),
            hooks=hooks,
            metadata=data.get("metadata", {}),
        )

    @classmethod
    def from_json_file(cls, file_path: str) -> "MigrationTemplate":
        """Load a template from a JSON file."""
        with open(file_path) as f:
            data = json.load(f)
        return cls.from_dict(data)
