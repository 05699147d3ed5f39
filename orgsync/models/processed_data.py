"""Per-pass container of records prepared for the target."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..constants import INTERNAL_ID_FIELD_NAME
from .describe import FieldDescribe
from .record import Record

MISSING_PARENT_REPORT_COLUMNS = [
    "Date update",
    "Record Id",
    "Lookup field name",
    "Lookup reference field name",
    "sObject name",
    "Parent SObject name",
    "Parent ExternalId field name",
    "Missing parent External Id value",
]


@dataclass
class ProcessedData:
    """
    Working set of one update pass.

    Created at the start of a pass and discarded at its end.
    """
    process_person_accounts: bool = False
    fields: List[FieldDescribe] = field(default_factory=list)
    clone_to_source: List[Tuple[Record, Record]] = field(default_factory=list)
    _source_by_clone: Dict[int, Record] = field(default_factory=dict, repr=False)
    records_to_insert: List[Record] = field(default_factory=list)
    records_to_update: List[Record] = field(default_factory=list)
    missing_parent_lookups: List[Dict[str, Any]] = field(default_factory=list)
    non_processed_records_amount: int = 0

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def lookup_id_fields(self) -> List[FieldDescribe]:
        return [f for f in self.fields if f.is_lookup]

    @property
    def clones(self) -> List[Record]:
        return [clone for clone, _ in self.clone_to_source]

    def add_pair(self, clone: Record, source: Record) -> None:
        self.clone_to_source.append((clone, source))
        self._source_by_clone[id(clone)] = source

    def source_of(self, clone: Record) -> Optional[Record]:
        return self._source_by_clone.get(id(clone))

    def accept_clones(self, clones: List[Record]) -> None:
        """
        Keep the clones returned by a filter or an add-on.

        Returned records are paired with their source by identity first, then
        by the internal id copied from the source. Clones that are not
        returned are dropped, and so are returned records matching no source.
        """
        by_identity = {id(c): s for c, s in self.clone_to_source}
        by_internal_id: Dict[Any, Record] = {}
        for _, source in self.clone_to_source:
            internal_id = source.get(INTERNAL_ID_FIELD_NAME)
            if internal_id is not None:
                by_internal_id.setdefault(internal_id, source)

        pairs = []
        used = set()
        for clone in clones:
            source = by_identity.get(id(clone))
            if source is None:
                source = by_internal_id.get(clone.get(INTERNAL_ID_FIELD_NAME))
            if source is None or id(source) in used:
                continue
            used.add(id(source))
            pairs.append((clone, source))
        self.clone_to_source = pairs
        self._source_by_clone = {id(c): s for c, s in pairs}

    def replace_clones(self, clones: List[Record]) -> None:
        """Swap in clones produced by a transformation, paired with sources by position."""
        sources = [source for _, source in self.clone_to_source]
        self.clone_to_source = list(zip(clones, sources))
        self._source_by_clone = {id(c): s for c, s in self.clone_to_source}
