"""Script models describing what a migration job does."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from ..constants import (
    COMPLEX_FIELDS_SEPARATOR,
    DEFAULT_API_VERSION,
    DEFAULT_BULK_API_THRESHOLD_RECORDS,
    DEFAULT_BULK_API_V1_BATCH_SIZE,
    DEFAULT_BULK_API_VERSION,
    DEFAULT_EXTERNAL_ID_FIELD_NAME,
    DEFAULT_EXTERNAL_IDS,
    DEFAULT_POLLING_INTERVAL_MS,
    DEFAULT_POLLING_TIMEOUT_MS,
    DEFAULT_REST_API_BATCH_SIZE,
    ID_FIELD_NAME,
    MAX_QUERY_CHARACTER_LENGTH,
    SPECIAL_OBJECTS,
)
from ..query.soql import ParsedQuery
from .describe import ObjectDescribe


class Operation(str, Enum):
    """CRUD operation configured for an object."""
    INSERT = "Insert"
    UPDATE = "Update"
    UPSERT = "Upsert"
    ADD = "Add"
    MERGE = "Merge"
    DELETE = "Delete"
    HARD_DELETE = "HardDelete"
    READONLY = "Readonly"

    @classmethod
    def parse(cls, value: Any) -> "Operation":
        """Parse an operation name case-insensitively."""
        if isinstance(value, Operation):
            return value
        text = str(value or "").strip().lower()
        for operation in cls:
            if operation.value.lower() == text:
                return operation
        raise ValueError(f"Unknown operation: {value}")


INSERT_OPERATIONS = {Operation.INSERT, Operation.UPSERT, Operation.ADD}
UPDATE_OPERATIONS = {Operation.UPDATE, Operation.UPSERT, Operation.MERGE}


class DataMedia(str, Enum):
    """Where an org's records live."""
    ORG = "org"
    FILE = "csvfile"


@dataclass
class ScriptOrg:
    """Connection settings of a source or target org."""
    name: str
    media: DataMedia = DataMedia.ORG
    instance_url: Optional[str] = None
    access_token: Optional[str] = None
    api_version: str = DEFAULT_API_VERSION

    @property
    def is_file_media(self) -> bool:
        return self.media == DataMedia.FILE

    @property
    def is_org_media(self) -> bool:
        return self.media == DataMedia.ORG

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "media": self.media.value,
            "instanceUrl": self.instance_url,
            "apiVersion": self.api_version,
        }


@dataclass
class MockField:
    """Masking rule for one field."""
    name: str
    pattern: str
    excluded_regex: str = ""
    included_regex: str = ""
    exclude_names: List[str] = field(default_factory=list)


@dataclass
class FieldMappingRule:
    """Renames the target object or a single field."""
    target_object: str = ""
    source_field: str = ""
    target_field: str = ""


@dataclass
class AddonDeclaration:
    """Reference to a registered add-on module and its arguments."""
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    description: str = ""


@dataclass
class ScriptObject:
    """
    Declarative description of one migrated object.

    The configuration part is set once at load time. The job fills in the
    runtime part (describes, parent objects, process-all flags) during setup.
    """
    query: str
    operation: Operation = Operation.READONLY
    external_id: str = ""
    delete_query: str = ""
    source_records_filter: str = ""
    target_records_filter: str = ""
    delete_old_data: bool = False
    delete_from_source: bool = False
    delete_by_hierarchy: bool = False
    hard_delete: bool = False
    update_with_mock_data: bool = False
    mock_fields: List[MockField] = field(default_factory=list)
    use_values_mapping: bool = False
    use_field_mapping: bool = False
    field_mapping: List[FieldMappingRule] = field(default_factory=list)
    master: bool = True
    excluded: bool = False
    excluded_fields: List[str] = field(default_factory=list)
    excluded_from_update_fields: List[str] = field(default_factory=list)
    skip_existing_records: bool = False
    skip_records_comparison: bool = False
    query_all_target: bool = False
    all_or_none: Optional[bool] = None
    always_use_rest_api: bool = False
    always_use_bulk_api: bool = False
    bulk_api_v1_batch_size: Optional[int] = None
    rest_api_batch_size: Optional[int] = None
    before_addons: List[AddonDeclaration] = field(default_factory=list)
    after_addons: List[AddonDeclaration] = field(default_factory=list)
    before_update_addons: List[AddonDeclaration] = field(default_factory=list)
    after_update_addons: List[AddonDeclaration] = field(default_factory=list)
    filter_records_addons: List[AddonDeclaration] = field(default_factory=list)

    # Runtime state, filled by the job
    process_all_source: bool = field(default=False, init=False)
    process_all_target: bool = field(default=False, init=False)
    parent_lookup_object_names: List[str] = field(default_factory=list, init=False)
    parent_master_detail_object_names: List[str] = field(default_factory=list, init=False)
    describe: Optional[ObjectDescribe] = field(default=None, init=False)
    target_describe: Optional[ObjectDescribe] = field(default=None, init=False)

    def __post_init__(self):
        self.operation = Operation.parse(self.operation)
        self._parsed = ParsedQuery.parse(self.query)
        if not self.external_id:
            self.external_id = DEFAULT_EXTERNAL_IDS.get(self.name, DEFAULT_EXTERNAL_ID_FIELD_NAME)
        if self.operation == Operation.DELETE:
            self.external_id = ID_FIELD_NAME
        self._ensure_query_fields()

    def _ensure_query_fields(self) -> None:
        """Make sure Id and the external id parts are always selected."""
        fields = [f for f in self._parsed.fields if f not in self.excluded_fields]
        required = [ID_FIELD_NAME] + [f for f in self.external_id_field_names if f != ID_FIELD_NAME]
        self._parsed.fields = required + [f for f in fields if f not in required]
        self.query = self._parsed.compose()

    def remove_fields(self, field_names: List[str]) -> None:
        """Drop fields from the query; Id and the external id parts stay."""
        required = [ID_FIELD_NAME] + self.external_id_field_names
        self._parsed.fields = [f for f in self._parsed.fields if f not in field_names or f in required]
        self.query = self._parsed.compose()

    @property
    def name(self) -> str:
        return self._parsed.object_name

    @property
    def parsed_query(self) -> ParsedQuery:
        return self._parsed.copy()

    @property
    def field_names(self) -> List[str]:
        return list(self._parsed.fields)

    @property
    def external_id_field_names(self) -> List[str]:
        return [f.strip() for f in self.external_id.split(COMPLEX_FIELDS_SEPARATOR) if f.strip()]

    @property
    def has_complex_external_id(self) -> bool:
        return len(self.external_id_field_names) > 1

    @property
    def has_autonumber_external_id(self) -> bool:
        if not self.describe or self.has_complex_external_id:
            return False
        ext_field = self.describe.get_field(self.external_id)
        return bool(ext_field and ext_field.auto_number)

    @property
    def is_id_mapped(self) -> bool:
        """True when records are matched on the Id field itself."""
        return self.external_id == ID_FIELD_NAME

    @property
    def is_readonly_object(self) -> bool:
        return self.operation == Operation.READONLY

    @property
    def is_special_object(self) -> bool:
        return self.name in SPECIAL_OBJECTS

    @property
    def is_deleted_from_source_operation(self) -> bool:
        return self.operation == Operation.DELETE and self.delete_from_source

    @property
    def is_hierarchical_delete_operation(self) -> bool:
        return self.operation == Operation.DELETE and self.delete_by_hierarchy

    @property
    def is_limited_query(self) -> bool:
        return self._parsed.has_limits

    @property
    def is_object_without_relationships(self) -> bool:
        return not self.parent_lookup_object_names

    @property
    def target_object_name(self) -> str:
        if self.use_field_mapping:
            for rule in self.field_mapping:
                if rule.target_object:
                    return rule.target_object
        return self.name

    def map_field_to_target(self, field_name: str) -> str:
        """Return the target-side name of a source field."""
        if not self.use_field_mapping:
            return field_name
        for rule in self.field_mapping:
            if rule.source_field and rule.source_field == field_name and rule.target_field:
                return rule.target_field
        return field_name

    @property
    def target_external_id(self) -> str:
        return COMPLEX_FIELDS_SEPARATOR.join(
            self.map_field_to_target(name) for name in self.external_id_field_names
        )


@dataclass
class Script:
    """Top-level job description loaded from the script file."""
    objects: List[ScriptObject] = field(default_factory=list)
    source_org: Optional[ScriptOrg] = None
    target_org: Optional[ScriptOrg] = None
    simulation_mode: bool = False
    all_or_none: bool = False
    bulk_threshold: int = DEFAULT_BULK_API_THRESHOLD_RECORDS
    bulk_api_version: str = DEFAULT_BULK_API_VERSION
    bulk_api_v1_batch_size: int = DEFAULT_BULK_API_V1_BATCH_SIZE
    rest_api_batch_size: int = DEFAULT_REST_API_BATCH_SIZE
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    polling_timeout_ms: int = DEFAULT_POLLING_TIMEOUT_MS
    api_version: str = DEFAULT_API_VERSION
    keep_object_order_while_execute: bool = False
    allow_field_truncation: bool = False
    create_target_csv_files: bool = True
    always_use_rest_api: bool = False
    always_use_bulk_api: bool = False
    mock_locale: str = "en_US"
    encryption_passphrase: Optional[str] = None
    prompt_on_missing_parent_objects: bool = False
    query_max_length: int = MAX_QUERY_CHARACTER_LENGTH
    base_path: str = "."

    # Runtime state
    is_person_account_enabled: bool = field(default=False, init=False)

    @property
    def active_objects(self) -> List[ScriptObject]:
        return [obj for obj in self.objects if not obj.excluded]

    @property
    def bulk_api_major_version(self) -> int:
        try:
            return int(float(self.bulk_api_version))
        except (TypeError, ValueError):
            return 2

    def get_object(self, name: str) -> Optional[ScriptObject]:
        for obj in self.active_objects:
            if obj.name == name:
                return obj
        return None
