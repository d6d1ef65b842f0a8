"""Object describe and field mapping models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum


REFERENCE_TYPE = "reference"
COMPOUND_TYPES = {"address", "location"}


class TransformationKind(str, Enum):
    """How a source field value becomes a target field value."""
    DIRECT = "direct"
    LOOKUP = "lookup"  # Reference id remapped through the run's id map
    FORMULA = "formula"  # uppercase / lowercase / trim
    CONSTANT = "constant"  # Type default for an unmapped required field
    SKIP = "skip"


@dataclass
class FieldDescribe:
    """A field as described by an org."""
    name: str
    type: str = "string"
    label: str = ""
    createable: bool = True
    updateable: bool = True
    nillable: bool = True
    defaulted_on_create: bool = False
    default_value: Optional[Any] = None
    reference_to: List[str] = field(default_factory=list)
    relationship_name: Optional[str] = None
    picklist_values: List[str] = field(default_factory=list)
    length: Optional[int] = None
    external_id: bool = False
    unique: bool = False
    calculated: bool = False

    @property
    def required(self) -> bool:
        """A createable field that cannot be null and has no server default."""
        return self.createable and not self.nillable and not self.defaulted_on_create

    @property
    def is_reference(self) -> bool:
        return self.type == REFERENCE_TYPE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "type": self.type,
            "label": self.label,
            "createable": self.createable,
            "updateable": self.updateable,
            "nillable": self.nillable,
            "defaultedOnCreate": self.defaulted_on_create,
            "defaultValue": self.default_value,
            "referenceTo": self.reference_to,
            "relationshipName": self.relationship_name,
            "picklistValues": [{"value": v, "active": True} for v in self.picklist_values],
            "length": self.length,
            "externalId": self.external_id,
            "unique": self.unique,
            "calculated": self.calculated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDescribe":
        """Create from a describe payload (camelCase keys) or a snake_case dict."""
        picklist = []
        for entry in data.get("picklistValues", data.get("picklist_values", [])) or []:
            if isinstance(entry, dict):
                if entry.get("active", True):
                    picklist.append(entry.get("value"))
            else:
                picklist.append(entry)

        nillable = data.get("nillable", True)
        # Allow hand-written schemas to say "required" directly
        if data.get("required"):
            nillable = False

        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            label=data.get("label", ""),
            createable=data.get("createable", True),
            updateable=data.get("updateable", True),
            nillable=nillable,
            defaulted_on_create=data.get("defaultedOnCreate", data.get("defaulted_on_create", False)),
            default_value=data.get("defaultValue", data.get("default_value")),
            reference_to=list(data.get("referenceTo", data.get("reference_to", [])) or []),
            relationship_name=data.get("relationshipName", data.get("relationship_name")),
            picklist_values=picklist,
            length=data.get("length"),
            external_id=data.get("externalId", data.get("external_id", False)),
            unique=data.get("unique", False),
            calculated=data.get("calculated", False),
        )


@dataclass
class ObjectDescribe:
    """An object type as described by an org."""
    name: str
    fields: Dict[str, FieldDescribe] = field(default_factory=dict)
    label: str = ""
    createable: bool = True
    queryable: bool = True

    def get_field(self, name: str) -> Optional[FieldDescribe]:
        """Get a field by name, falling back to a case-insensitive match."""
        if name in self.fields:
            return self.fields[name]
        lowered = name.lower()
        for field_name, field_def in self.fields.items():
            if field_name.lower() == lowered:
                return field_def
        return None

    def has_field(self, name: str) -> bool:
        return self.get_field(name) is not None

    def reference_fields(self) -> List[FieldDescribe]:
        """Get all reference (lookup / master-detail) fields."""
        return [f for f in self.fields.values() if f.is_reference]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "label": self.label,
            "createable": self.createable,
            "queryable": self.queryable,
            "fields": [f.to_dict() for f in self.fields.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectDescribe":
        """Create from a describe payload; fields may be a list or a name-keyed dict."""
        raw_fields = data.get("fields", [])
        if isinstance(raw_fields, dict):
            raw_fields = [{"name": name, **f} for name, f in raw_fields.items()]

        fields = {}
        for field_data in raw_fields:
            field_def = FieldDescribe.from_dict(field_data)
            fields[field_def.name] = field_def

        return cls(
            name=data["name"],
            fields=fields,
            label=data.get("label", ""),
            createable=data.get("createable", True),
            queryable=data.get("queryable", True),
        )


@dataclass
class FieldMapping:
    """Mapping from one source field to one target field."""
    source_field: str
    target_field: str
    transformation_kind: TransformationKind = TransformationKind.DIRECT
    required: bool = False
    default_value: Optional[Any] = None
    transformation_config: Dict[str, Any] = field(default_factory=dict)
    source_type: Optional[str] = None
    target_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "transformation_kind": self.transformation_kind.value,
            "required": self.required,
            "default_value": self.default_value,
            "transformation_config": self.transformation_config,
            "source_type": self.source_type,
            "target_type": self.target_type,
        }


@dataclass
class ObjectMapping:
    """
    Field mappings between a source and a target object type.

    field_mappings is keyed by source field name. constants holds the
    defaults for required target fields no source field feeds, keyed by
    target field name. relationships maps each source reference field to
    the target reference field it feeds.
    """
    source_object: str
    target_object: str
    field_mappings: Dict[str, FieldMapping] = field(default_factory=dict)
    constants: Dict[str, FieldMapping] = field(default_factory=dict)
    relationships: Dict[str, str] = field(default_factory=dict)

    def target_fields(self) -> List[str]:
        """Get the target fields written by this mapping."""
        return [
            m.target_field for m in self.field_mappings.values()
            if m.transformation_kind != TransformationKind.SKIP
        ] + list(self.constants)

    def source_fields(self) -> List[str]:
        """Get the source fields read by this mapping (constants read nothing)."""
        return [
            name for name, m in self.field_mappings.items()
            if m.transformation_kind not in (TransformationKind.SKIP, TransformationKind.CONSTANT)
        ]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_object": self.source_object,
            "target_object": self.target_object,
            "field_mappings": {k: v.to_dict() for k, v in self.field_mappings.items()},
            "constants": {k: v.to_dict() for k, v in self.constants.items()},
            "relationships": dict(self.relationships),
        }
