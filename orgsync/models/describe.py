"""Object and field metadata models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum


class FieldType(str, Enum):
    """Supported field types."""
    ID = "id"
    STRING = "string"
    TEXTAREA = "textarea"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    PICKLIST = "picklist"
    MULTIPICKLIST = "multipicklist"
    COMBOBOX = "combobox"
    ENCRYPTEDSTRING = "encryptedstring"
    REFERENCE = "reference"
    BOOLEAN = "boolean"
    INT = "int"
    LONG = "long"
    DOUBLE = "double"
    CURRENCY = "currency"
    PERCENT = "percent"
    DATE = "date"
    DATETIME = "datetime"
    TIME = "time"
    ANYTYPE = "anyType"


TEXTUAL_FIELD_TYPES = {
    FieldType.STRING,
    FieldType.TEXTAREA,
    FieldType.EMAIL,
    FieldType.PHONE,
    FieldType.URL,
    FieldType.PICKLIST,
    FieldType.MULTIPICKLIST,
    FieldType.COMBOBOX,
    FieldType.ENCRYPTEDSTRING,
}

NUMERIC_FIELD_TYPES = {
    FieldType.DOUBLE,
    FieldType.CURRENCY,
    FieldType.PERCENT,
}

INTEGER_FIELD_TYPES = {
    FieldType.INT,
    FieldType.LONG,
}


@dataclass
class FieldDescribe:
    """Metadata of a single object field."""
    name: str
    type: FieldType = FieldType.STRING
    label: str = ""
    length: int = 0
    creatable: bool = True
    updateable: bool = True
    nillable: bool = True
    reference_to: List[str] = field(default_factory=list)
    relationship_name: Optional[str] = None
    master_detail: bool = False
    auto_number: bool = False
    calculated: bool = False
    person: bool = False

    @property
    def is_lookup(self) -> bool:
        return self.type == FieldType.REFERENCE and bool(self.reference_to)

    @property
    def is_master_detail(self) -> bool:
        return self.is_lookup and self.master_detail

    @property
    def is_polymorphic(self) -> bool:
        return self.is_lookup and len(self.reference_to) > 1

    @property
    def is_textual(self) -> bool:
        return self.type in TEXTUAL_FIELD_TYPES

    @property
    def is_readonly(self) -> bool:
        return not self.creatable and not self.updateable

    @property
    def referenced_object_name(self) -> Optional[str]:
        """Name of the first object this lookup points to."""
        return self.reference_to[0] if self.reference_to else None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "type": self.type.value,
            "label": self.label,
            "length": self.length,
            "createable": self.creatable,
            "updateable": self.updateable,
            "nillable": self.nillable,
            "referenceTo": list(self.reference_to),
            "relationshipName": self.relationship_name,
            "cascadeDelete": self.master_detail,
            "autoNumber": self.auto_number,
            "calculated": self.calculated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldDescribe":
        """Create from a describe payload entry."""
        field_type = data.get("type", "string")
        try:
            field_type = FieldType(field_type)
        except ValueError:
            field_type = FieldType.STRING

        name = data.get("name", "")
        return cls(
            name=name,
            type=field_type,
            label=data.get("label", ""),
            length=data.get("length") or 0,
            creatable=data.get("createable", data.get("creatable", True)),
            updateable=data.get("updateable", True),
            nillable=data.get("nillable", True),
            reference_to=list(data.get("referenceTo") or []),
            relationship_name=data.get("relationshipName"),
            master_detail=bool(
                data.get("cascadeDelete") or data.get("relationshipOrder") is not None
            ),
            auto_number=data.get("autoNumber", False),
            calculated=data.get("calculated", False),
            person=name.endswith("__pc") or name.startswith("Person"),
        )


@dataclass
class ChildRelationship:
    """A relationship pointing from a child object back to this object."""
    child_object: str
    field: str
    relationship_name: Optional[str] = None


@dataclass
class ObjectDescribe:
    """Metadata of an object."""
    name: str
    label: str = ""
    creatable: bool = True
    updateable: bool = True
    deletable: bool = True
    fields: Dict[str, FieldDescribe] = field(default_factory=dict)
    child_relationships: List[ChildRelationship] = field(default_factory=list)

    def get_field(self, name: str) -> Optional[FieldDescribe]:
        return self.fields.get(name)

    def has_field(self, name: str) -> bool:
        return name in self.fields

    @property
    def is_person_account_enabled(self) -> bool:
        return self.name == "Account" and "IsPersonAccount" in self.fields

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectDescribe":
        """Create from a describe payload."""
        fields = {}
        for field_data in data.get("fields", []):
            field_describe = FieldDescribe.from_dict(field_data)
            fields[field_describe.name] = field_describe

        child_relationships = [
            ChildRelationship(
                child_object=rel.get("childSObject", ""),
                field=rel.get("field", ""),
                relationship_name=rel.get("relationshipName"),
            )
            for rel in data.get("childRelationships", [])
        ]

        return cls(
            name=data.get("name", ""),
            label=data.get("label", ""),
            creatable=data.get("createable", True),
            updateable=data.get("updateable", True),
            deletable=data.get("deletable", True),
            fields=fields,
            child_relationships=child_relationships,
        )

    @classmethod
    def from_field_names(cls, name: str, field_names: List[str]) -> "ObjectDescribe":
        """Create a permissive describe for an object known only by its field names."""
        fields = {}
        for field_name in field_names:
            if "." in field_name:
                continue
            field_type = FieldType.ID if field_name == "Id" else FieldType.STRING
            fields[field_name] = FieldDescribe(
                name=field_name,
                type=field_type,
                creatable=field_name != "Id",
                updateable=field_name != "Id",
            )
        return cls(name=name, fields=fields)
