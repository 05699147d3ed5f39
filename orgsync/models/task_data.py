"""Per-task, per-side in-memory record store."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..constants import (
    DEFAULT_BULK_API_THRESHOLD_RECORDS,
    GROUP_OBJECT_NAME,
    USER_OBJECT_NAME,
)
from .describe import FieldDescribe
from .record import Record
from .script import ScriptOrg

DEFAULT_LOOKUP_MAP_KEY = "__default__"
USER_LOOKUP_MAP_KEY = "__user__"
GROUP_LOOKUP_MAP_KEY = "__group__"
MERGED_LOOKUP_MAP_KEY = "__merged__"


@dataclass
class TaskOrgData:
    """
    Records of one task on one side (source or target).

    Attributes:
        org: Org the records come from
        is_source: True for the source side
        id_records_map: Record id -> record; the first seen record wins
        ext_id_to_record_id_map: External id value -> record id; last write wins
        ext_id_to_record_map: External id value -> record; last write wins
        lookup_id_maps: Field name -> map key -> {lookup value -> id}
        queried_values: Field name -> values already used in filtered queries
    """
    org: Optional[ScriptOrg] = None
    is_source: bool = True
    id_records_map: Dict[str, Record] = field(default_factory=dict)
    ext_id_to_record_id_map: Dict[str, str] = field(default_factory=dict)
    ext_id_to_record_map: Dict[str, Record] = field(default_factory=dict)
    lookup_id_maps: Dict[str, Dict[str, Dict[str, str]]] = field(default_factory=dict)
    queried_values: Dict[str, Set[str]] = field(default_factory=dict)
    query_count: int = 0
    total_record_count: int = 0
    bulk_threshold: int = DEFAULT_BULK_API_THRESHOLD_RECORDS
    always_use_rest_api: bool = False
    always_use_bulk_api: bool = False

    @property
    def records(self) -> List[Record]:
        return list(self.id_records_map.values())

    @property
    def is_file_media(self) -> bool:
        return bool(self.org and self.org.is_file_media)

    @property
    def is_org_media(self) -> bool:
        return bool(self.org and self.org.is_org_media)

    @property
    def use_bulk_query_api(self) -> bool:
        """Decide whether large reads go through the bulk query API."""
        if self.always_use_rest_api:
            return False
        if self.always_use_bulk_api:
            return True
        return self.total_record_count > self.bulk_threshold

    def ensure_lookup_map(self, field_name: str, map_key: str = DEFAULT_LOOKUP_MAP_KEY) -> Dict[str, str]:
        """Return the lookup map for a field, creating it when missing."""
        by_key = self.lookup_id_maps.setdefault(field_name, {})
        return by_key.setdefault(map_key, {})

    def get_lookup_map(self, field: FieldDescribe, referenced_type: Optional[str] = None) -> Dict[str, str]:
        """
        Resolve the lookup map of a possibly polymorphic field.

        Non-polymorphic fields use the default map. Polymorphic fields dispatch
        on the referenced type, and fall back to a merged view when the type is
        not known.
        """
        if not field.is_polymorphic:
            return self.ensure_lookup_map(field.name)
        if referenced_type == USER_OBJECT_NAME:
            return self.ensure_lookup_map(field.name, USER_LOOKUP_MAP_KEY)
        if referenced_type == GROUP_OBJECT_NAME:
            return self.ensure_lookup_map(field.name, GROUP_LOOKUP_MAP_KEY)
        merged: Dict[str, str] = {}
        for key, values in self.lookup_id_maps.get(field.name, {}).items():
            if key != MERGED_LOOKUP_MAP_KEY:
                merged.update(values)
        self.ensure_lookup_map(field.name, MERGED_LOOKUP_MAP_KEY).update(merged)
        return self.lookup_id_maps[field.name][MERGED_LOOKUP_MAP_KEY]

    def get_queried_values(self, field_name: str) -> Set[str]:
        return self.queried_values.setdefault(field_name, set())

    def reset(self) -> None:
        """Clear all records and caches."""
        self.id_records_map.clear()
        self.ext_id_to_record_id_map.clear()
        self.ext_id_to_record_map.clear()
        self.lookup_id_maps.clear()
        self.queried_values.clear()
        self.query_count = 0
        self.total_record_count = 0
