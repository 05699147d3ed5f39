"""Migration job - coordinates the tasks of all objects through the migration phases."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..addons import AddonEvent, AddonManager, AddonRegistry
from ..connection import OrgConnection
from ..constants import (
    ACCOUNT_OBJECT_NAME,
    MISSING_PARENT_LOOKUP_RECORDS_ERRORS_FILENAME,
    MODE_BACKWARDS,
    MODE_FORWARDS,
    MODE_TARGET,
    SPECIAL_OBJECT_DELETE_ORDER,
    SPECIAL_OBJECT_QUERY_ORDER,
    SPECIAL_OBJECT_UPDATE_ORDER,
    VALUE_MAPPING_CSV_FILENAME,
)
from ..csv_store import CsvStore
from ..engines import ApiEngineExecutor, create_engine
from ..engines.executor import EngineFactory
from ..errors import AbortedByAddonError, AbortedByUserError, InitializationError, OrgSyncError
from ..models.describe import FieldDescribe, ObjectDescribe
from ..models.migration import CrudSummary, MigrationRun, MigrationStatus
from ..models.processed_data import MISSING_PARENT_REPORT_COLUMNS
from ..models.script import Operation, Script, ScriptObject, ScriptOrg
from ..services import ExpressionEvaluator, MockGenerator, ValueMapper
from .graph import (
    MAX_REORDER_ITERATIONS,
    apply_special_task_order,
    build_task_chain,
    put_master_details_before,
    update_query_task_order,
)
from .task import MigrationJobTask

logger = logging.getLogger(__name__)

MIN_BACKWARDS_PASSES = 2


class MigrationJob:
    """
    Runs a migration script.

    Handles:
    - Object metadata and task ordering
    - Deleting old target data
    - Multi-pass record retrieval
    - Forwards and backwards update passes
    - Hierarchical deletes
    - Add-on events
    - Missing parent report and run summary
    """

    def __init__(
        self,
        script: Script,
        source_connection: Optional[OrgConnection] = None,
        target_connection: Optional[OrgConnection] = None,
        csv_store: Optional[CsvStore] = None,
        addon_manager: Optional[AddonManager] = None,
        addon_registry: Optional[AddonRegistry] = None,
        value_mapper: Optional[ValueMapper] = None,
        mocker: Optional[MockGenerator] = None,
        engine_factory: EngineFactory = create_engine,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the job.

        Args:
            script: Script to run
            source_connection: Connection of the source org, created from the script when None
            target_connection: Connection of the target org, created from the script when None
            csv_store: Store of the CSV files, rooted at the script directory when None
            addon_manager: Add-on manager, created from the registry when None
            addon_registry: Registry of add-on modules
            value_mapper: Value mapping rules, loaded from ValueMapping.csv when None
            mocker: Generator of masked values
            engine_factory: Callable creating API engines
            logger: Logger to use instead of the module logger
        """
        self.script = script
        self.logger = logger or logging.getLogger(__name__)
        self.source_connection = source_connection
        self.target_connection = target_connection
        self.csv_store = csv_store or CsvStore(
            script.base_path, passphrase=script.encryption_passphrase, logger=self.logger
        )
        self.addon_manager = addon_manager or AddonManager(
            registry=addon_registry, simulation_mode=script.simulation_mode, logger=self.logger
        )
        self.addon_manager.job = self
        self.evaluator = ExpressionEvaluator()
        self.value_mapper = value_mapper or ValueMapper(self.evaluator, logger=self.logger)
        self.mocker = mocker or MockGenerator(locale=script.mock_locale, logger=self.logger)
        self.engine_factory = engine_factory

        self.tasks: List[MigrationJobTask] = []
        self.query_tasks: List[MigrationJobTask] = []
        self.update_tasks: List[MigrationJobTask] = []
        self.delete_tasks: List[MigrationJobTask] = []
        self._tasks_by_name: Dict[str, MigrationJobTask] = {}
        self._owned_connections: List[OrgConnection] = []
        self._is_set_up = False
        self.pass_number = 0

        self.run = MigrationRun(simulation=script.simulation_mode)

    # Setup

    def setup(self) -> None:
        """
        Describe the objects, create the tasks and order them.

        Raises:
            InitializationError: When the orgs or objects cannot be set up
            MetadataError: When an object cannot be described
        """
        objects = self.script.active_objects
        if not objects:
            raise InitializationError("The script has no active objects")
        if not self.script.source_org or not self.script.target_org:
            raise InitializationError("Both a source and a target must be set")

        self._open_connections()
        for obj in objects:
            self._describe_object(obj)

        account = self.script.get_object(ACCOUNT_OBJECT_NAME)
        self.script.is_person_account_enabled = bool(
            account
            and account.describe
            and account.describe.is_person_account_enabled
            and (account.target_describe is None or account.target_describe.is_person_account_enabled)
        )

        names = {obj.name for obj in objects}
        for obj in objects:
            self._set_parent_objects(obj, names)
            self._set_process_all_flags(obj)

        self._tasks_by_name = {obj.name: MigrationJobTask(self, obj, self.logger) for obj in objects}
        self._create_task_chains(objects)

        self.addon_manager.load(self.script)
        self._load_value_mapping(objects)

        self.logger.info(f"Query order: {', '.join(t.name for t in self.query_tasks)}")
        self.logger.info(f"Update order: {', '.join(t.name for t in self.update_tasks)}")
        if self.delete_tasks:
            self.logger.info(f"Delete order: {', '.join(t.name for t in self.delete_tasks)}")
        self._is_set_up = True

    def _open_connections(self) -> None:
        source_org = self.script.source_org
        target_org = self.script.target_org
        if self.source_connection is None and source_org.is_org_media:
            self.source_connection = self._create_connection(source_org)
        if self.target_connection is None and target_org.is_org_media:
            if source_org.is_org_media and source_org.name == target_org.name:
                self.target_connection = self.source_connection
            else:
                self.target_connection = self._create_connection(target_org)

    def _create_connection(self, org: ScriptOrg) -> OrgConnection:
        connection = OrgConnection(
            org,
            polling_interval_ms=self.script.polling_interval_ms,
            polling_timeout_ms=self.script.polling_timeout_ms,
            logger=self.logger,
        )
        self._owned_connections.append(connection)
        return connection

    def _describe_object(self, obj: ScriptObject) -> None:
        """Fetch the metadata of an object on both sides and drop unknown fields."""
        if self.source_connection is not None and self.script.source_org.is_org_media:
            obj.describe = self.source_connection.describe(obj.name)
        if self.target_connection is not None and self.script.target_org.is_org_media:
            obj.target_describe = self.target_connection.describe(obj.target_object_name)

        if obj.describe is None:
            obj.describe = obj.target_describe or ObjectDescribe.from_field_names(obj.name, obj.field_names)

        if self.script.source_org.is_org_media:
            unknown = [
                name for name in obj.field_names
                if "." not in name and not obj.describe.has_field(name)
            ]
            if unknown:
                self.logger.warning(f"{obj.name}: fields not found in the source and removed from the query: {', '.join(unknown)}")
                obj.remove_fields(unknown)

    def _set_parent_objects(self, obj: ScriptObject, names: set) -> None:
        lookups: List[FieldDescribe] = [
            f for f in (obj.describe.get_field(n) for n in obj.field_names) if f is not None and f.is_lookup
        ]
        obj.parent_lookup_object_names = []
        obj.parent_master_detail_object_names = []
        for field in lookups:
            for parent_name in field.reference_to:
                if parent_name not in names or parent_name == obj.name:
                    continue
                if parent_name not in obj.parent_lookup_object_names:
                    obj.parent_lookup_object_names.append(parent_name)
                if field.is_master_detail and parent_name not in obj.parent_master_detail_object_names:
                    obj.parent_master_detail_object_names.append(parent_name)

    @staticmethod
    def _set_process_all_flags(obj: ScriptObject) -> None:
        if obj.master or obj.is_special_object or obj.is_object_without_relationships:
            obj.process_all_source = True
            obj.process_all_target = True
        else:
            obj.process_all_source = False
            obj.process_all_target = obj.has_complex_external_id or obj.has_autonumber_external_id

    def _create_task_chains(self, objects: List[ScriptObject]) -> None:
        tasks_by_name = self._tasks_by_name
        keep_order = self.script.keep_object_order_while_execute
        updateable = [o for o in objects if not o.is_readonly_object and o.operation != Operation.DELETE]
        deletable = [o for o in objects if o.operation == Operation.DELETE or o.delete_old_data]
        updateable_names = {o.name for o in updateable}
        deletable_names = {o.name for o in deletable}

        self.tasks = build_task_chain(objects, tasks_by_name, keep_order)
        if keep_order:
            self.query_tasks = list(self.tasks)
            self.update_tasks = [t for t in self.tasks if t.name in updateable_names]
            self.delete_tasks = [t for t in self.tasks if t.name in deletable_names]
            return

        put_master_details_before(self.tasks)

        first = [t for t in self.tasks if t.script_object.process_all_source or t.script_object.is_limited_query]
        self.query_tasks = first + [t for t in self.tasks if t not in first]
        for _ in range(MAX_REORDER_ITERATIONS):
            if not update_query_task_order(self.query_tasks, SPECIAL_OBJECT_QUERY_ORDER):
                break

        self.update_tasks = build_task_chain(updateable, tasks_by_name)
        put_master_details_before(self.update_tasks)
        apply_special_task_order(self.update_tasks, SPECIAL_OBJECT_UPDATE_ORDER)

        self.delete_tasks = build_task_chain(deletable, tasks_by_name)
        put_master_details_before(self.delete_tasks)
        self.delete_tasks.reverse()
        apply_special_task_order(self.delete_tasks, SPECIAL_OBJECT_DELETE_ORDER)

    def _load_value_mapping(self, objects: List[ScriptObject]) -> None:
        names = [o.name for o in objects if o.use_values_mapping]
        if not names or self.value_mapper.has_any_mappings():
            return
        path = Path(self.script.base_path) / VALUE_MAPPING_CSV_FILENAME
        if not path.exists():
            self.logger.warning(f"Value mapping is enabled but {path} was not found")
            return
        self.value_mapper.load_csv(path, names)

    # Lookups between tasks

    def get_task(self, object_name: Optional[str]) -> Optional[MigrationJobTask]:
        if not object_name:
            return None
        return self._tasks_by_name.get(object_name)

    def get_child_lookups(self, object_name: str) -> List[Tuple[MigrationJobTask, FieldDescribe]]:
        """Lookup fields of other tasks pointing to an object."""
        lookups = []
        for task in self.tasks:
            if task.name == object_name:
                continue
            for field in task.lookup_fields:
                if object_name in field.reference_to:
                    lookups.append((task, field))
        return lookups

    def create_executor(
        self,
        task: MigrationJobTask,
        connection: Optional[OrgConnection],
        object_name: Optional[str] = None,
    ) -> ApiEngineExecutor:
        """Create the executor writing the records of a task."""
        return ApiEngineExecutor(
            connection,
            object_name or task.script_object.target_object_name,
            task.create_executor_options(),
            engine_factory=self.engine_factory,
            logger=task.logger,
        )

    # Execution

    def execute(self) -> MigrationRun:
        """
        Run the migration.

        Returns:
            MigrationRun with per-object results

        Raises:
            OrgSyncError: When a phase fails; the run is completed with the error first
        """
        self.run.started_at = datetime.utcnow()
        try:
            if not self._is_set_up:
                self.setup()

            self.logger.info("=== PHASE 1: DELETE OLD DATA ===")
            self.run.status = MigrationStatus.DELETING
            self._delete_old_records()

            self.logger.info("=== PHASE 2: RETRIEVE ===")
            self.run.status = MigrationStatus.RETRIEVING
            self._retrieve_records()

            self.logger.info("=== PHASE 3: UPDATE ===")
            self.run.status = MigrationStatus.UPDATING
            self._update_records()

            self.logger.info("=== PHASE 4: DELETE ===")
            self.run.status = MigrationStatus.DELETING
            self._delete_records()

            self._trigger_object_event(AddonEvent.ON_AFTER, self.update_tasks or self.tasks, target=True)

            self.run.status = MigrationStatus.COMPLETED
            self.logger.info("=== MIGRATION COMPLETED ===")

        except (AbortedByAddonError, AbortedByUserError) as e:
            self.logger.error(f"Migration aborted: {e}")
            self._record_error(e)
            self.run.status = MigrationStatus.ABORTED
            raise

        except OrgSyncError as e:
            self.logger.error(f"Migration failed: {e}")
            self._record_error(e)
            self.run.status = MigrationStatus.FAILED
            raise

        finally:
            self.run.completed_at = datetime.utcnow()
            self._write_missing_parent_report()
            self._update_steps()
            self._log_summary()
            self.close()

        return self.run

    def _record_error(self, error: Exception) -> None:
        self.run.errors.append({
            "phase": self.run.status.value,
            "error": str(error),
            "timestamp": datetime.utcnow().isoformat(),
        })

    def _delete_old_records(self) -> None:
        deleted = 0
        for task in self.delete_tasks:
            count = task.delete_old_records()
            if count:
                self.run.get_step(task.name).record_pass("delete old data", CrudSummary(deleted=count))
            deleted += count
        if deleted:
            self.logger.info(f"Deleted {deleted} old target records")
        else:
            self.logger.info("No old target records deleted")

    def _retrieve_records(self) -> None:
        """Query source and target records in the order that lets filtered queries find their parents."""
        passes = [
            (MODE_FORWARDS, False),
            (MODE_BACKWARDS, False),
            (MODE_BACKWARDS, False),
            (MODE_FORWARDS, True),
            (MODE_FORWARDS, True),
            (MODE_TARGET, False),
        ]
        for index, (mode, reversed) in enumerate(passes, start=1):
            retrieved = sum(task.retrieve_records(mode, reversed) for task in self.query_tasks)
            self.logger.info(
                f"Retrieval pass {index} ({mode}{', reversed' if reversed else ''}): {retrieved} new records"
            )

        self._trigger_object_event(AddonEvent.ON_BEFORE, self.query_tasks, target=False)

        for task in self.query_tasks:
            self.logger.info(
                f"{task.name}: {len(task.source_data.id_records_map)} source records "
                f"({task.source_data.query_count} queries), "
                f"{len(task.target_data.id_records_map)} target records "
                f"({task.target_data.query_count} queries)"
            )

    def _update_records(self) -> None:
        has_delete_from_source = any(t.script_object.is_deleted_from_source_operation for t in self.tasks)
        tasks = self.delete_tasks if has_delete_from_source else self.update_tasks

        self.pass_number = 0
        total = self._run_update_pass(tasks, MODE_FORWARDS, "forwards")
        self.run.passes_executed += 1
        self.logger.info(f"Forwards pass processed {total} records")

        if not self.script.target_org.is_org_media:
            return

        max_passes = max(MIN_BACKWARDS_PASSES, len(tasks))
        for number in range(1, max_passes + 1):
            self.pass_number = number
            total = self._run_update_pass(tasks, MODE_BACKWARDS, f"backwards {number}")
            self.run.passes_executed += 1
            self.logger.info(f"Backwards pass {number} processed {total} records")
            if total == 0:
                break

    def _run_update_pass(self, tasks: List[MigrationJobTask], mode: str, label: str) -> int:
        total = 0
        for task in tasks:
            summary = task.update_records(mode)
            if not summary.is_empty:
                self.run.get_step(task.name).record_pass(label, summary)
            total += summary.total
        return total

    def _delete_records(self) -> None:
        deleted = 0
        for task in self.delete_tasks:
            if not task.script_object.is_hierarchical_delete_operation:
                continue
            count = task.delete_records()
            if count:
                self.run.get_step(task.name).record_pass("delete", CrudSummary(deleted=count))
            deleted += count
        if deleted:
            self.logger.info(f"Deleted {deleted} target records by hierarchy")

    def _trigger_object_event(self, event: AddonEvent, tasks: List[MigrationJobTask], target: bool) -> None:
        """Run an object-level add-on event over the records of each task."""
        for task in tasks:
            if not self.addon_manager.has_addons(event, task.name):
                continue
            org_data = task.target_data if target else task.source_data
            records = org_data.records
            kept = self.addon_manager.trigger(event, task.name, records)
            task.accept_addon_records(kept, org_data, is_target=target)

    # Reporting

    def _write_missing_parent_report(self) -> None:
        if not self.script.target_org or self.script.target_org.is_file_media:
            return
        rows = []
        for task in self.tasks:
            rows.extend(task.missing_parent_lookups)
        if rows and self.script.prompt_on_missing_parent_objects:
            self.logger.warning(
                f"{len(rows)} records have missing parent lookups, "
                f"see {MISSING_PARENT_LOOKUP_RECORDS_ERRORS_FILENAME}"
            )
        self.csv_store.write_report(MISSING_PARENT_LOOKUP_RECORDS_ERRORS_FILENAME, rows, MISSING_PARENT_REPORT_COLUMNS)

    def _update_steps(self) -> None:
        for task in self.tasks:
            step = self.run.get_step(task.name)
            step.source_records = len(task.source_data.id_records_map)
            step.target_records = len(task.target_data.id_records_map)
            step.missing_parent_lookups = len(task.missing_parent_lookups)
            if self.run.status == MigrationStatus.COMPLETED:
                step.status = MigrationStatus.FAILED if step.records_failed else MigrationStatus.COMPLETED
            else:
                step.status = self.run.status

    def _log_summary(self) -> None:
        self.logger.info("=== SUMMARY ===")
        for step in self.run.steps:
            passes = ", ".join(
                f"{label}: +{s.inserted} ~{s.updated} -{s.deleted}" for label, s in step.passes.items()
            ) or "no changes"
            self.logger.info(
                f"{step.object_name}: {passes}; failed {step.records_failed}, "
                f"missing parents {step.missing_parent_lookups}"
            )
        duration = self.run.duration_seconds
        self.logger.info(
            f"Status: {self.run.status.value}, passes: {self.run.passes_executed}, "
            f"records processed: {self.run.total_records_processed}"
            + (f", duration: {duration:.1f}s" if duration is not None else "")
        )

    def close(self) -> None:
        """Close the connections the job opened."""
        for connection in self._owned_connections:
            connection.close()
        self._owned_connections = []
