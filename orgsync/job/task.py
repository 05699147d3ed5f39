"""Migration job task - retrieves, transforms and writes the records of one object."""

import logging
from datetime import datetime
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from ..addons import AddonEvent
from ..constants import (
    ACCOUNT_OBJECT_NAME,
    COMPLEX_FIELDS_SEPARATOR,
    CONTACT_OBJECT_NAME,
    ERRORS_FIELD_NAME,
    FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_BUSINESS_ACCOUNT,
    FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_BUSINESS_CONTACT,
    FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_PERSON_ACCOUNT,
    ID_FIELD_NAME,
    INTERNAL_ID_FIELD_NAME,
    IS_PROCESSED_FIELD_NAME,
    MODE_BACKWARDS,
    MODE_FORWARDS,
    MODE_TARGET,
    SOURCE_ID_FIELD_NAME,
    SYSTEM_FIELD_NAMES,
    USER_OBJECT_NAME,
    GROUP_OBJECT_NAME,
)
from ..engines import ApiEngineOptions, CrudResult
from ..errors import InitializationError
from ..models.describe import FieldDescribe
from ..models.migration import CrudSummary
from ..models.processed_data import MISSING_PARENT_REPORT_COLUMNS, ProcessedData
from ..models.record import (
    Record,
    RecordMap,
    clone_record,
    get_complex_value,
    is_empty,
    is_person_record,
    make_id,
)
from ..models.script import INSERT_OPERATIONS, UPDATE_OPERATIONS, Operation
from ..models.task_data import TaskOrgData
from ..query.planner import QueryPlanner, chunk_in_clause
from ..services.transformer import filter_records, map_record_fields, truncate_records

if TYPE_CHECKING:
    from ..connection import OrgConnection
    from ..models.script import ScriptObject
    from .job import MigrationJob

logger = logging.getLogger(__name__)

# Key prefixes of the ids of polymorphic lookup targets
USER_ID_PREFIX = "005"
GROUP_ID_PREFIX = "00G"
MAX_SELF_REFERENCE_ITERATIONS = 10


def values_equal(left: Any, right: Any) -> bool:
    """Compare a transformed value with a target value, ignoring representation."""
    if is_empty(left) and is_empty(right):
        return True
    if is_empty(left) or is_empty(right):
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return str(left).lower() == str(right).lower()
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return float(left) == float(right)
    return str(left) == str(right)


def referenced_type_of(record_id: Any) -> Optional[str]:
    """Guess the object of a polymorphic lookup from its id prefix."""
    text = str(record_id or "")
    if text.startswith(USER_ID_PREFIX):
        return USER_OBJECT_NAME
    if text.startswith(GROUP_ID_PREFIX):
        return GROUP_OBJECT_NAME
    return None


class MigrationJobTask:
    """
    Processing unit of one object.

    Owns the source and target record stores of the object, plans and runs
    its queries, links source records to target records and writes the
    inserts, updates and deletes of each pass.
    """

    def __init__(
        self,
        job: "MigrationJob",
        script_object: "ScriptObject",
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the task.

        Args:
            job: Job the task belongs to
            script_object: Object the task processes
            logger: Logger to use instead of the module logger
        """
        self.job = job
        self.script_object = script_object
        self.logger = logger or logging.getLogger(__name__)

        script = job.script
        self.source_data = TaskOrgData(
            org=script.source_org,
            is_source=True,
            bulk_threshold=script.bulk_threshold,
            always_use_rest_api=script.always_use_rest_api or script_object.always_use_rest_api,
            always_use_bulk_api=script.always_use_bulk_api or script_object.always_use_bulk_api,
        )
        self.target_data = TaskOrgData(
            org=script.target_org,
            is_source=False,
            bulk_threshold=script.bulk_threshold,
            always_use_rest_api=script.always_use_rest_api or script_object.always_use_rest_api,
            always_use_bulk_api=script.always_use_bulk_api or script_object.always_use_bulk_api,
        )
        self.source_to_target_record_map = RecordMap()
        self.processed_data: Optional[ProcessedData] = None
        self.planner = QueryPlanner(self, script.query_max_length, self.logger)
        self.missing_parent_lookups: List[Dict[str, Any]] = []
        self._source_fully_queried = False
        self._reported_missing_parents: Set[Tuple[int, str]] = set()
        self._target_fully_queried = False

    def __repr__(self) -> str:
        return f"MigrationJobTask({self.name})"

    @property
    def name(self) -> str:
        return self.script_object.name

    @property
    def operation(self) -> Operation:
        return self.script_object.operation

    @property
    def lookup_fields(self) -> List[FieldDescribe]:
        """Lookup fields among the queried fields."""
        describe = self.script_object.describe
        if not describe:
            return []
        fields = []
        for name in self.script_object.field_names:
            field = describe.get_field(name)
            if field and field.is_lookup:
                fields.append(field)
        return fields

    @property
    def prev_tasks(self) -> List["MigrationJobTask"]:
        tasks = self.job.tasks
        return tasks[:tasks.index(self)] if self in tasks else []

    @property
    def next_tasks(self) -> List["MigrationJobTask"]:
        tasks = self.job.tasks
        return tasks[tasks.index(self) + 1:] if self in tasks else []

    @property
    def is_person_account_or_contact(self) -> bool:
        return self.job.script.is_person_account_enabled and self.name in (ACCOUNT_OBJECT_NAME, CONTACT_OBJECT_NAME)

    # Retrieval

    def retrieve_records(self, mode: str = MODE_FORWARDS, reversed: bool = False) -> int:
        """
        Retrieve records for one retrieval pass.

        Args:
            mode: "forwards" or "backwards" for the source, "target" for the target
            reversed: Query source records pointed to by child records

        Returns:
            Number of new records registered
        """
        obj = self.script_object
        if obj.operation == Operation.DELETE and not (
            obj.is_deleted_from_source_operation or obj.is_hierarchical_delete_operation
        ):
            return 0

        if mode != MODE_TARGET:
            return self._retrieve_source_records(mode, reversed)
        if obj.is_deleted_from_source_operation:
            return 0
        return self._retrieve_target_records()

    def _retrieve_source_records(self, mode: str, reversed: bool) -> int:
        obj = self.script_object
        data = self.source_data

        if data.is_file_media:
            if self._source_fully_queried:
                return 0
            self._source_fully_queried = True
            records = self.job.csv_store.read_object(obj.name, obj.describe)
            records = filter_records(records, obj.target_records_filter, self.job.evaluator)
            count = self.register_records(records, data, False)
            self.logger.info(f"{obj.name}: read {len(records)} records from the source CSV file")
            return count

        connection = self.job.source_connection
        if obj.process_all_source:
            if self._source_fully_queried:
                return 0
            self._source_fully_queried = True
            queries = [self.planner.create_query()]
        else:
            queries = self.planner.create_filtered_queries(mode, reversed)

        count = 0
        for query in queries:
            records = self._run_query(connection, query, data, False)
            count += self.register_records(records, data, False)
        count += self._retrieve_self_references(connection)

        if queries:
            self.logger.info(
                f"{obj.name}: {count} new source records retrieved ({mode}{', reversed' if reversed else ''})"
            )
        return count

    def _retrieve_self_references(self, connection: "OrgConnection") -> int:
        """Retrieve source records referenced by self lookups that are not retrieved yet."""
        obj = self.script_object
        self_lookups = [f for f in self.lookup_fields if obj.name in f.reference_to]
        if not self_lookups or obj.process_all_source:
            return 0

        count = 0
        for _ in range(MAX_SELF_REFERENCE_ITERATIONS):
            missing = set()
            for record in self.source_data.records:
                for field in self_lookups:
                    value = record.get(field.name)
                    if not is_empty(value) and value not in self.source_data.id_records_map:
                        missing.add(str(value))
            queries = self.planner.create_self_reference_queries(sorted(missing))
            if not queries:
                break
            new_records = 0
            for query in queries:
                records = self._run_query(connection, query, self.source_data, False)
                new_records += self.register_records(records, self.source_data, False)
            count += new_records
            if not new_records:
                break
        return count

    def _retrieve_target_records(self) -> int:
        obj = self.script_object
        data = self.target_data
        if data.is_file_media or obj.operation == Operation.INSERT:
            return 0

        connection = self.job.target_connection
        if obj.process_all_target:
            if self._target_fully_queried:
                return 0
            self._target_fully_queried = True
            queries = [self.planner.create_query(None, False, True)]
        else:
            queries = self.planner.create_filtered_queries(MODE_TARGET, False)

        count = 0
        for query in queries:
            records = self._run_query(connection, query, data, obj.query_all_target)
            count += self.register_records(records, data, True)

        if queries:
            self.logger.info(f"{obj.name}: {count} new target records retrieved")
        return count

    def _run_query(
        self,
        connection: "OrgConnection",
        query: str,
        data: TaskOrgData,
        query_all: bool,
    ) -> List[Record]:
        if connection is None:
            raise InitializationError(f"{self.name}: no connection to query {data.org.name if data.org else 'org'}")
        data.query_count += 1
        self.logger.debug(f"{self.name}: {query}")
        return connection.query_records(query, use_bulk=data.use_bulk_query_api, query_all=query_all)

    def register_records(self, records: List[Record], org_data: TaskOrgData, is_target: bool) -> int:
        """
        Store retrieved records and link target records to source records.

        Args:
            records: Retrieved records
            org_data: Store of the side the records come from
            is_target: True for target records

        Returns:
            Number of records not registered before
        """
        obj = self.script_object
        ext_field = obj.target_external_id if is_target else obj.external_id
        count = 0
        for record in records:
            record_id = record.get(ID_FIELD_NAME)
            if is_empty(record_id):
                # CSV sources may come without an Id column
                record_id = make_id(18)
                record[ID_FIELD_NAME] = record_id
            ext_value = get_complex_value(record, ext_field)
            ext_key = None if is_empty(ext_value) else str(ext_value)

            if ext_key is not None:
                org_data.ext_id_to_record_id_map[ext_key] = record_id
                org_data.ext_id_to_record_map[ext_key] = record

            if record_id in org_data.id_records_map:
                continue
            org_data.id_records_map[record_id] = record
            record[INTERNAL_ID_FIELD_NAME] = record_id
            count += 1

            if is_target and ext_key is not None:
                source = self.source_data.ext_id_to_record_map.get(ext_key)
                if source is not None:
                    self.source_to_target_record_map.setdefault(source, record)

        self._register_lookup_values(records, org_data, is_target)
        org_data.total_record_count = len(org_data.id_records_map)
        return count

    def _register_lookup_values(self, records: List[Record], org_data: TaskOrgData, is_target: bool) -> None:
        """Feed the relationship external id -> lookup id maps."""
        obj = self.script_object
        for field in self.lookup_fields:
            if not field.relationship_name:
                continue
            field_name = obj.map_field_to_target(field.name) if is_target else field.name
            for record in records:
                lookup_id = record.get(field_name)
                key = self._relationship_key(record, field)
                if is_empty(lookup_id) or key is None:
                    continue
                org_data.get_lookup_map(field, referenced_type_of(lookup_id))[key] = lookup_id

    def _relationship_key(self, record: Record, field: FieldDescribe) -> Optional[str]:
        """External id value of a lookup read through its relationship fields."""
        prefix = f"{field.relationship_name}."
        parts = [
            str(value) for name, value in record.items()
            if name.startswith(prefix) and not is_empty(value)
        ]
        return COMPLEX_FIELDS_SEPARATOR.join(parts) if parts else None

    def accept_addon_records(self, records: List[Record], org_data: TaskOrgData, is_target: bool) -> None:
        """
        Replace the stored records of one side with the records an add-on returned.

        Returned records are matched to stored ones by identity or by internal
        id, so add-ons may return copies. Copies overwrite the stored values,
        stored records that were not returned are forgotten and returned
        records matching nothing are registered as new records.
        """
        by_internal_id = {
            record.get(INTERNAL_ID_FIELD_NAME): record_id
            for record_id, record in org_data.id_records_map.items()
        }
        kept_ids: Set[str] = set()
        new_records = []
        for record in records:
            record_id = by_internal_id.get(record.get(INTERNAL_ID_FIELD_NAME))
            if record_id is None:
                new_records.append(record)
                continue
            stored = org_data.id_records_map[record_id]
            if stored is not record:
                stored.update(record)
            kept_ids.add(record_id)

        for record_id in list(org_data.id_records_map):
            if record_id in kept_ids:
                continue
            dropped = org_data.id_records_map.pop(record_id)
            for key in [k for k, r in org_data.ext_id_to_record_map.items() if r is dropped]:
                del org_data.ext_id_to_record_map[key]
                org_data.ext_id_to_record_id_map.pop(key, None)

        if new_records:
            self.register_records(new_records, org_data, is_target)
        org_data.total_record_count = len(org_data.id_records_map)

    # Update

    def update_records(self, mode: str = MODE_FORWARDS) -> CrudSummary:
        """
        Write the records of one update pass to the target.

        Args:
            mode: "forwards" for the main pass, "backwards" for the lookup passes

        Returns:
            Counts of inserted, updated and deleted records
        """
        obj = self.script_object
        summary = CrudSummary()

        if obj.is_deleted_from_source_operation:
            if mode == MODE_FORWARDS:
                summary.deleted = self.delete_source_records()
            return summary

        if obj.is_readonly_object or obj.operation in (Operation.DELETE, Operation.HARD_DELETE):
            return summary

        if self.target_data.is_file_media:
            if mode == MODE_FORWARDS:
                summary.add(self._update_file_target())
            return summary

        summary.add(self._update_pass(mode, False))
        if self.is_person_account_or_contact:
            summary.add(self._update_pass(mode, True))
        return summary

    def _update_pass(self, mode: str, process_person_accounts: bool) -> CrudSummary:
        obj = self.script_object
        summary = CrudSummary()
        data = self._create_processed_data(mode, process_person_accounts)
        if data is None:
            return summary
        self.processed_data = data

        self._update_lookup_id_fields(data, mode)
        if data.missing_parent_lookups:
            self.missing_parent_lookups.extend(data.missing_parent_lookups)
            self.logger.warning(
                f"{obj.name}: {len(data.missing_parent_lookups)} lookups have no parent record in the target"
            )

        if data.clones and self.job.addon_manager.has_addons(AddonEvent.ON_BEFORE_UPDATE, obj.name):
            data.accept_clones(self.job.addon_manager.trigger(AddonEvent.ON_BEFORE_UPDATE, obj.name, data.clones))

        data.replace_clones(map_record_fields(data.clones, obj))
        self._classify(data, mode)
        data.non_processed_records_amount = len(data.clone_to_source) - (
            len(data.records_to_insert) + len(data.records_to_update)
        )

        if data.records_to_insert:
            result = self._execute(Operation.INSERT, data.records_to_insert, process_person_accounts)
            summary.inserted = result.total_succeeded
            self._register_inserted(data)
            if (
                process_person_accounts
                and obj.name == ACCOUNT_OBJECT_NAME
                and obj.operation in (Operation.INSERT, Operation.UPSERT)
            ):
                self._link_person_contacts(data)

        if data.records_to_update:
            result = self._execute(Operation.UPDATE, data.records_to_update, process_person_accounts)
            summary.updated = result.total_succeeded
            self._register_updated(data)

        processed = data.records_to_insert + data.records_to_update
        if processed and self.job.addon_manager.has_addons(AddonEvent.ON_AFTER_UPDATE, obj.name):
            self.job.addon_manager.trigger(AddonEvent.ON_AFTER_UPDATE, obj.name, processed)

        if not summary.is_empty:
            label = "person" if process_person_accounts else "business"
            self.logger.info(
                f"{obj.name}: {mode} pass ({label}) inserted {summary.inserted}, updated {summary.updated}, "
                f"skipped {data.non_processed_records_amount}"
            )
        return summary

    def _create_processed_data(self, mode: str, process_person_accounts: bool) -> Optional[ProcessedData]:
        """Select the records of a pass and run the transformation pipeline on their clones."""
        obj = self.script_object
        fields = self._get_fields_to_update(mode)
        if self.is_person_account_or_contact:
            fields = self._filter_person_account_fields(fields, process_person_accounts)
            if fields is None:
                return None
        if mode == MODE_BACKWARDS and not fields:
            return None

        data = ProcessedData(process_person_accounts=process_person_accounts, fields=fields)
        field_names = [ID_FIELD_NAME, INTERNAL_ID_FIELD_NAME] + [f.name for f in fields]
        relationship_names = self._relationship_field_names(fields)

        for source in self.source_data.records:
            if self.is_person_account_or_contact and is_person_record(source) != process_person_accounts:
                continue
            if mode == MODE_BACKWARDS and source not in self.source_to_target_record_map:
                continue
            clone = clone_record(source, field_names + relationship_names)
            self._update_person_account_fields(data, source, clone, process_person_accounts)
            data.add_pair(clone, source)

        if not data.clone_to_source:
            return data

        if mode == MODE_FORWARDS:
            self._transform(data)
        return data

    def _transform(self, data: ProcessedData) -> None:
        """Filter, mask, truncate and remap the clones of a forwards pass."""
        obj = self.script_object
        script = self.job.script
        addon_manager = self.job.addon_manager

        clones = data.clones
        if addon_manager.has_addons(AddonEvent.FILTER_RECORDS, obj.name):
            clones = addon_manager.trigger(AddonEvent.FILTER_RECORDS, obj.name, clones)
        clones = filter_records(clones, obj.target_records_filter, self.job.evaluator)
        data.accept_clones(clones)

        if obj.update_with_mock_data and obj.mock_fields:
            data.replace_clones(
                self.job.mocker.mock_records(data.clones, obj.mock_fields, data.field_names, obj.name)
            )

        if script.allow_field_truncation:
            truncate_records(data.clones, self._target_fields(data.fields))

        if obj.use_values_mapping and self.job.value_mapper.has_mappings(obj.name):
            self.job.value_mapper.map_records(obj.name, data.clones, self._relink_remapped_lookup)

    def _relink_remapped_lookup(self, record: Record, field_name: str, value: Any) -> None:
        """Point a lookup at the parent matching a remapped relationship external id."""
        if "." not in field_name or is_empty(value):
            return
        relationship_name = field_name.split(".", 1)[0]
        for field in self.lookup_fields:
            if field.relationship_name != relationship_name:
                continue
            parent_task = self.job.get_task(field.referenced_object_name)
            if parent_task is None:
                return
            parent_id = parent_task.source_data.ext_id_to_record_id_map.get(str(value))
            if parent_id:
                record[field.name] = parent_id
            return

    def _get_fields_to_update(self, mode: str) -> List[FieldDescribe]:
        """Writable fields of the pass; backwards passes only carry deferred lookups."""
        obj = self.script_object
        describe = obj.describe
        if not describe:
            return []
        fields = []
        for name in obj.field_names:
            if name == ID_FIELD_NAME or "." in name or name in SYSTEM_FIELD_NAMES:
                continue
            field = describe.get_field(name)
            if not field or field.is_readonly or field.calculated:
                continue
            if field.is_lookup and not self._can_resolve_lookup(field):
                self.logger.debug(f"{obj.name}.{name}: lookup skipped, its parent is not part of the job")
                continue
            fields.append(field)
        if mode == MODE_BACKWARDS:
            fields = [f for f in fields if f.is_lookup and self._is_deferred_lookup(f)]
        return fields

    def _can_resolve_lookup(self, field: FieldDescribe) -> bool:
        if any(self.job.get_task(name) for name in field.reference_to):
            return True
        prefix = f"{field.relationship_name}."
        return bool(field.relationship_name) and any(
            name.startswith(prefix) for name in self.script_object.field_names
        )

    def _is_deferred_lookup(self, field: FieldDescribe) -> bool:
        """True when the parent is written after this object, so the lookup is set by a backwards pass."""
        update_tasks = self.job.update_tasks
        if self not in update_tasks:
            return False
        own_index = update_tasks.index(self)
        for name in field.reference_to:
            parent_task = self.job.get_task(name)
            if parent_task is None or parent_task not in update_tasks:
                continue
            if parent_task is self or update_tasks.index(parent_task) > own_index:
                return True
        return False

    def _relationship_field_names(self, fields: List[FieldDescribe]) -> List[str]:
        names = []
        prefixes = [f"{f.relationship_name}." for f in fields if f.is_lookup and f.relationship_name]
        for name in self.script_object.field_names:
            if any(name.startswith(prefix) for prefix in prefixes):
                names.append(name)
        return names

    def _target_fields(self, fields: List[FieldDescribe]) -> List[FieldDescribe]:
        """Describe of the fields on the target side, when it is known."""
        target_describe = self.script_object.target_describe
        if not target_describe:
            return fields
        resolved = []
        for field in fields:
            target_field = target_describe.get_field(self.script_object.map_field_to_target(field.name))
            resolved.append(replace(field, length=target_field.length) if target_field else field)
        return resolved

    def _update_lookup_id_fields(self, data: ProcessedData, mode: str) -> None:
        """Replace source lookup ids with the ids of the matching target parents."""
        if self.target_data.is_file_media:
            return
        obj = self.script_object
        for field in data.lookup_id_fields:
            deferred = self._is_deferred_lookup(field)
            for clone, source in data.clone_to_source:
                value = clone.get(field.name, source.get(field.name))
                if is_empty(value):
                    continue
                if deferred and mode == MODE_FORWARDS:
                    clone.pop(field.name, None)
                    continue
                clone[field.name] = None
                target_id = self._resolve_target_lookup_id(field, clone, value)
                if target_id:
                    clone[field.name] = target_id
                    continue
                report_key = (id(source), field.name)
                if report_key not in self._reported_missing_parents:
                    self._reported_missing_parents.add(report_key)
                    data.missing_parent_lookups.append(self._missing_parent_row(field, source, value))
        for clone in data.clones:
            for name in self._relationship_field_names(data.lookup_id_fields):
                clone.pop(name, None)
        self.logger.debug(f"{obj.name}: {len(data.missing_parent_lookups)} unresolved lookups")

    def _resolve_target_lookup_id(self, field: FieldDescribe, source: Record, value: Any) -> Optional[str]:
        for parent_name in field.reference_to:
            parent_task = self.job.get_task(parent_name)
            if parent_task is None:
                continue
            parent_source = parent_task.source_data.id_records_map.get(str(value))
            if parent_source is None:
                continue
            parent_target = parent_task.source_to_target_record_map.get(parent_source)
            if parent_target is not None and not is_empty(parent_target.get(ID_FIELD_NAME)):
                return parent_target[ID_FIELD_NAME]

        key = self._relationship_key(source, field) if field.relationship_name else None
        if key is not None:
            lookup_map = self.target_data.get_lookup_map(field, referenced_type_of(value))
            return lookup_map.get(key)
        return None

    def _missing_parent_row(self, field: FieldDescribe, source: Record, value: Any) -> Dict[str, Any]:
        parent_name = field.referenced_object_name or ""
        parent_task = self.job.get_task(parent_name)
        parent_ext_field = parent_task.script_object.external_id if parent_task else ""
        parent_ext_value = None
        if parent_task:
            parent_source = parent_task.source_data.id_records_map.get(str(value))
            if parent_source is not None:
                parent_ext_value = get_complex_value(parent_source, parent_ext_field)
        if parent_ext_value is None and field.relationship_name:
            parent_ext_value = self._relationship_key(source, field)
        values = [
            datetime.now().isoformat(timespec="seconds"),
            source.get(ID_FIELD_NAME) or source.get(INTERNAL_ID_FIELD_NAME),
            field.name,
            f"{field.relationship_name}.{parent_ext_field}" if field.relationship_name else "",
            self.name,
            parent_name,
            parent_ext_field,
            parent_ext_value if parent_ext_value is not None else value,
        ]
        return dict(zip(MISSING_PARENT_REPORT_COLUMNS, values))

    def _classify(self, data: ProcessedData, mode: str) -> None:
        """Sort the clones of a pass into inserts and updates."""
        obj = self.script_object
        target_describe = obj.target_describe or obj.describe
        excluded_from_update = set(obj.map_field_to_target(n) for n in obj.excluded_from_update_fields)

        for clone, source in data.clone_to_source:
            target = self.source_to_target_record_map.get(source)

            if mode == MODE_FORWARDS and obj.skip_existing_records and target is not None:
                source[IS_PROCESSED_FIELD_NAME] = True
                continue

            if target is None:
                if mode == MODE_FORWARDS and obj.operation in INSERT_OPERATIONS:
                    if not obj.is_id_mapped:
                        clone.pop(ID_FIELD_NAME, None)
                    self._strip_fields(clone, target_describe, creatable=True)
                    clone[SOURCE_ID_FIELD_NAME] = source.get(ID_FIELD_NAME)
                    data.records_to_insert.append(clone)
                continue

            if mode == MODE_FORWARDS and obj.operation not in UPDATE_OPERATIONS:
                continue
            clone[ID_FIELD_NAME] = target.get(ID_FIELD_NAME)
            self._strip_fields(clone, target_describe, creatable=False)
            for name in excluded_from_update:
                clone.pop(name, None)
            if obj.skip_records_comparison or obj.is_id_mapped or self._is_different(clone, target):
                clone[SOURCE_ID_FIELD_NAME] = source.get(ID_FIELD_NAME)
                data.records_to_update.append(clone)

    @staticmethod
    def _strip_fields(record: Record, describe, creatable: bool) -> None:
        """Remove fields the target does not accept for an insert or an update."""
        if not describe:
            return
        for name in list(record.keys()):
            if name == ID_FIELD_NAME or name in SYSTEM_FIELD_NAMES:
                continue
            field = describe.get_field(name)
            if field is None:
                continue
            allowed = field.creatable if creatable else field.updateable
            if not allowed:
                record.pop(name)

    @staticmethod
    def _is_different(clone: Record, target: Record) -> bool:
        for name, value in clone.items():
            if name == ID_FIELD_NAME or name in SYSTEM_FIELD_NAMES:
                continue
            if not values_equal(value, target.get(name)):
                return True
        return False

    def _execute(self, operation: Operation, records: List[Record], person: bool = False) -> CrudResult:
        """Send records to the target and write the target CSV file of the operation."""
        executor = self.job.create_executor(self, self.job.target_connection)
        try:
            result = executor.execute(operation, records)
        finally:
            self._write_target_csv(operation, records, person)
        self._record_failures(result)
        return result

    def _record_failures(self, result: CrudResult) -> None:
        if not result.total_failed:
            return
        step = self.job.run.get_step(self.name)
        step.records_failed += result.total_failed
        step.errors.extend(result.errors)
        self.logger.warning(f"{self.name}: {result.total_failed} records failed, last error: {result.last_error}")

    def _write_target_csv(self, operation: Operation, records: List[Record], person: bool = False) -> None:
        if not self.job.script.create_target_csv_files or not records:
            return
        path = self.job.csv_store.operation_file_path(self.script_object.target_object_name, operation.value, person)
        self.job.csv_store.write_target_records(path, records)

    def _register_inserted(self, data: ProcessedData) -> None:
        """Store inserted records as target records and link them to their sources."""
        for clone in data.records_to_insert:
            if clone.get(ERRORS_FIELD_NAME) or is_empty(clone.get(ID_FIELD_NAME)):
                continue
            source = data.source_of(clone)
            target = self._stored_values(clone)
            target[INTERNAL_ID_FIELD_NAME] = target[ID_FIELD_NAME]
            self.target_data.id_records_map[target[ID_FIELD_NAME]] = target
            if source is not None:
                self.source_to_target_record_map.set(source, target)
                source[IS_PROCESSED_FIELD_NAME] = True
        self.target_data.total_record_count = len(self.target_data.id_records_map)

    def _register_updated(self, data: ProcessedData) -> None:
        """Copy updated values onto the stored target records."""
        for clone in data.records_to_update:
            if clone.get(ERRORS_FIELD_NAME):
                continue
            source = data.source_of(clone)
            target = self.source_to_target_record_map.get(source) if source is not None else None
            if target is not None:
                target.update(self._stored_values(clone))
            if source is not None:
                source[IS_PROCESSED_FIELD_NAME] = True

    @staticmethod
    def _stored_values(clone: Record) -> Record:
        return {k: v for k, v in clone.items() if k != ERRORS_FIELD_NAME and k not in SYSTEM_FIELD_NAMES}

    # Person accounts

    def _filter_person_account_fields(
        self,
        fields: List[FieldDescribe],
        process_person_accounts: bool,
    ) -> Optional[List[FieldDescribe]]:
        """Fields valid for the business or the person pass; None when the pass is skipped."""
        if not process_person_accounts:
            if self.name == ACCOUNT_OBJECT_NAME:
                return [
                    f for f in fields
                    if not f.person and f.name not in FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_BUSINESS_ACCOUNT
                ]
            return [f for f in fields if f.name not in FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_BUSINESS_CONTACT]

        if self.name == ACCOUNT_OBJECT_NAME:
            return [f for f in fields if f.name not in FIELDS_TO_EXCLUDE_FROM_UPDATE_FOR_PERSON_ACCOUNT]
        # Person contacts are created together with their person account
        return None

    def _update_person_account_fields(
        self,
        data: ProcessedData,
        source: Record,
        clone: Record,
        process_person_accounts: bool,
    ) -> None:
        """Fill the name fields an account needs for its pass."""
        if self.name != ACCOUNT_OBJECT_NAME or not self.is_person_account_or_contact:
            return
        field_names = data.field_names
        if process_person_accounts:
            if "FirstName" in field_names and is_empty(clone.get("FirstName")) and is_empty(clone.get("LastName")):
                parts = str(source.get("Name") or "").split()
                clone["FirstName"] = parts[0] if parts else ""
                clone["LastName"] = parts[1] if len(parts) > 1 else ""
                if not clone["FirstName"] and not clone["LastName"]:
                    clone["FirstName"] = make_id(10)
            return

        if "Name" not in field_names:
            return
        if is_empty(clone.get("Name")):
            first = str(source.get("FirstName") or "").strip()
            last = str(source.get("LastName") or "").strip()
            clone["Name"] = " ".join(part for part in (first, last) if part)
        if not str(clone.get("Name") or "").strip():
            clone["Name"] = make_id(10)

    def _link_person_contacts(self, data: ProcessedData) -> int:
        """
        Link source person contacts to the contacts the target created with their accounts.

        Returns:
            Number of contacts linked
        """
        contact_task = self.job.get_task(CONTACT_OBJECT_NAME)
        if contact_task is None or not contact_task.target_data.is_org_media:
            return 0

        target_account_ids: Dict[str, Record] = {}
        for source_contact in contact_task.source_data.records:
            account_id = source_contact.get("AccountId")
            if is_empty(account_id) or source_contact in contact_task.source_to_target_record_map:
                continue
            source_account = self.source_data.id_records_map.get(str(account_id))
            if source_account is None:
                continue
            target_account = self.source_to_target_record_map.get(source_account)
            if target_account is None or is_empty(target_account.get(ID_FIELD_NAME)):
                continue
            target_account_ids[target_account[ID_FIELD_NAME]] = source_contact

        if not target_account_ids:
            return 0

        account_field = contact_task.script_object.map_field_to_target("AccountId")
        base_query = contact_task.planner.create_query(None, True, True)
        records: List[Record] = []
        for query in chunk_in_clause(base_query, account_field, target_account_ids.keys(), self.job.script.query_max_length):
            records.extend(
                contact_task._run_query(
                    self.job.target_connection, query, contact_task.target_data, contact_task.script_object.query_all_target
                )
            )
        contact_task.register_records(records, contact_task.target_data, True)

        linked = 0
        for target_contact in records:
            source_contact = target_account_ids.get(target_contact.get(account_field))
            if source_contact is None or source_contact in contact_task.source_to_target_record_map:
                continue
            contact_task.source_to_target_record_map.set(source_contact, target_contact)
            source_contact[IS_PROCESSED_FIELD_NAME] = True
            linked += 1
        self.logger.info(f"{self.name}: linked {linked} person contacts")
        return linked

    # File target

    def _update_file_target(self) -> CrudSummary:
        """Write the transformed source records to the target CSV file."""
        obj = self.script_object
        summary = CrudSummary()
        fields = self._get_fields_to_update(MODE_FORWARDS)
        data = ProcessedData(fields=fields)
        field_names = [ID_FIELD_NAME, INTERNAL_ID_FIELD_NAME] + [f.name for f in fields]
        for source in self.source_data.records:
            data.add_pair(clone_record(source, field_names), source)
        if not data.clone_to_source:
            return summary

        self.processed_data = data
        self._transform(data)
        if self.job.addon_manager.has_addons(AddonEvent.ON_BEFORE_UPDATE, obj.name):
            data.accept_clones(self.job.addon_manager.trigger(AddonEvent.ON_BEFORE_UPDATE, obj.name, data.clones))
        data.replace_clones(map_record_fields(data.clones, obj))

        for clone, source in data.clone_to_source:
            self.source_to_target_record_map.set(source, clone)

        records = data.clones
        self.job.csv_store.write_target_records(self.job.csv_store.target_file_path(obj.target_object_name), records)
        self._write_target_csv(obj.operation, records)

        if obj.operation == Operation.INSERT:
            summary.inserted = len(records)
        else:
            summary.updated = len(records)
        self.logger.info(f"{obj.name}: {len(records)} records written to the target CSV file")
        return summary

    # Delete

    def delete_old_records(self) -> int:
        """
        Delete target records selected by the delete query before the migration.

        Returns:
            Number of records deleted
        """
        obj = self.script_object
        if not obj.delete_old_data or obj.is_readonly_object or not self.target_data.is_org_media:
            return 0

        query = self.planner.create_delete_query()
        records = self._run_query(self.job.target_connection, query, self.target_data, obj.query_all_target or obj.hard_delete)
        if not records:
            self.logger.info(f"{obj.name}: no old target records to delete")
            return 0

        self.logger.info(f"{obj.name}: deleting {len(records)} old target records")
        to_delete = [{ID_FIELD_NAME: r[ID_FIELD_NAME]} for r in records if not is_empty(r.get(ID_FIELD_NAME))]
        operation = Operation.HARD_DELETE if obj.hard_delete else Operation.DELETE
        executor = self.job.create_executor(self, self.job.target_connection)
        try:
            result = executor.execute(operation, to_delete, update_record_id=False)
        finally:
            self._write_target_csv(operation, to_delete)
        self._record_failures(result)
        return result.total_succeeded

    def delete_records(self) -> int:
        """
        Delete the target records matching the retrieved source records.

        Returns:
            Number of records deleted
        """
        obj = self.script_object
        if not obj.is_hierarchical_delete_operation or not self.target_data.is_org_media:
            return 0

        targets = []
        for source in self.source_data.records:
            target = self.source_to_target_record_map.get(source)
            if target is not None and not is_empty(target.get(ID_FIELD_NAME)):
                targets.append(target)
        if not targets:
            self.logger.info(f"{obj.name}: nothing to delete in the target")
            return 0

        to_delete = [{ID_FIELD_NAME: t[ID_FIELD_NAME]} for t in targets]
        operation = Operation.HARD_DELETE if obj.hard_delete else Operation.DELETE
        executor = self.job.create_executor(self, self.job.target_connection)
        try:
            result = executor.execute(operation, to_delete, update_record_id=False)
        finally:
            self._write_target_csv(operation, to_delete)
        self._record_failures(result)

        for record in to_delete:
            if not record.get(ERRORS_FIELD_NAME):
                self.target_data.id_records_map.pop(record[ID_FIELD_NAME], None)
        return result.total_succeeded

    def delete_source_records(self) -> int:
        """
        Delete the retrieved source records from the source org.

        Returns:
            Number of records deleted
        """
        obj = self.script_object
        if not self.source_data.is_org_media:
            self.logger.warning(f"{obj.name}: records can only be deleted from a source org")
            return 0
        to_delete = [
            {ID_FIELD_NAME: r[ID_FIELD_NAME]} for r in self.source_data.records if not is_empty(r.get(ID_FIELD_NAME))
        ]
        if not to_delete:
            return 0

        operation = Operation.HARD_DELETE if obj.hard_delete else Operation.DELETE
        executor = self.job.create_executor(self, self.job.source_connection, obj.name)
        result = executor.execute(operation, to_delete, update_record_id=False)
        self._record_failures(result)
        self.logger.info(f"{obj.name}: deleted {result.total_succeeded} records from the source")
        return result.total_succeeded

    def create_executor_options(self) -> ApiEngineOptions:
        return ApiEngineOptions.from_script(self.job.script, self.script_object)

    def reset(self) -> None:
        """Forget every retrieved record."""
        self.source_data.reset()
        self.target_data.reset()
        self.source_to_target_record_map.clear()
        self.missing_parent_lookups = []
        self._reported_missing_parents = set()
        self.processed_data = None
        self._source_fully_queried = False
        self._target_fully_queried = False
