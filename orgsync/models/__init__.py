"""Data models for migration jobs."""

from .describe import (
    FieldType,
    FieldDescribe,
    ObjectDescribe,
    ChildRelationship,
)
from .script import (
    Operation,
    DataMedia,
    ScriptOrg,
    ScriptObject,
    Script,
    MockField,
    FieldMappingRule,
    AddonDeclaration,
)
from .migration import (
    MigrationRun,
    MigrationStep,
    MigrationStatus,
    CrudSummary,
)
from .task_data import TaskOrgData
from .processed_data import ProcessedData

__all__ = [
    "FieldType",
    "FieldDescribe",
    "ObjectDescribe",
    "ChildRelationship",
    "Operation",
    "DataMedia",
    "ScriptOrg",
    "ScriptObject",
    "Script",
    "MockField",
    "FieldMappingRule",
    "AddonDeclaration",
    "MigrationRun",
    "MigrationStep",
    "MigrationStatus",
    "CrudSummary",
    "TaskOrgData",
    "ProcessedData",
]
