"""Runs CRUD operations through the selected engine."""

import logging
import re
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional

from ..constants import ERRORS_FIELD_NAME, ID_FIELD_NAME
from ..errors import ExecutionError
from ..models.record import Record, make_id
from ..models.script import Operation
from .base import ApiEngineBase, ApiEngineOptions, CrudResult, EngineType
from .factory import create_engine

if TYPE_CHECKING:
    from ..connection import OrgConnection

logger = logging.getLogger(__name__)

_FEATURE_NOT_ENABLED = re.compile(r"FeatureNotEnabled", re.IGNORECASE)
_HARD_DELETE = re.compile(r"hardDelete", re.IGNORECASE)

EngineFactory = Callable[..., ApiEngineBase]


def should_fallback_to_rest(operation: Operation, engine: ApiEngineBase, error: Exception) -> bool:
    """True when a bulk HardDelete failed because the feature is not enabled for the user."""
    if operation != Operation.HARD_DELETE or engine.is_rest_engine:
        return False
    message = str(error)
    return bool(_FEATURE_NOT_ENABLED.search(message) and _HARD_DELETE.search(message))


class ApiEngineExecutor:
    """
    Executes an operation for one object.

    Picks the engine, retries a bulk HardDelete through REST when the org
    refuses it, enforces all-or-none semantics and short-circuits the API in
    simulation mode.
    """

    def __init__(
        self,
        connection: Optional["OrgConnection"],
        object_name: str,
        options: ApiEngineOptions,
        engine_factory: EngineFactory = create_engine,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the executor.

        Args:
            connection: Connection of the target org, None in simulation mode
            object_name: Object the records belong to
            options: Engine settings
            engine_factory: Callable creating engines, same signature as create_engine
            logger: Logger to use instead of the module logger
        """
        self.connection = connection
        self.object_name = object_name
        self.options = options
        self.engine_factory = engine_factory
        self.logger = logger or logging.getLogger(__name__)
        self.last_result: Optional[CrudResult] = None

    def execute(
        self,
        operation: Operation,
        records: List[Record],
        update_record_id: bool = True,
    ) -> CrudResult:
        """
        Execute an operation over records, updating them in place.

        Args:
            operation: Insert, Update, Delete or HardDelete
            records: Records to send
            update_record_id: Store the new ids of inserted records

        Returns:
            CrudResult of the operation

        Raises:
            ExecutionError: When the job fails, or when any record fails under all-or-none
        """
        if self.options.simulation_mode:
            result = self._simulate(operation, records, update_record_id)
            self.last_result = result
            return result

        engine = self.engine_factory(
            self.connection,
            self.object_name,
            operation,
            len(records),
            self.options,
            logger=self.logger,
        )
        self.logger.info(f"{self.object_name}: using {engine.engine_name} for {operation.value}")
        try:
            result = engine.execute_crud(operation, records, update_record_id)
        except ExecutionError as e:
            if not should_fallback_to_rest(operation, engine, e):
                raise
            self.logger.warning(
                f"{self.object_name}: HardDelete via bulk API is not enabled for this user, falling back to REST API"
            )
            engine = self.engine_factory(
                self.connection,
                self.object_name,
                operation,
                len(records),
                self.options,
                engine_type=EngineType.REST,
                logger=self.logger,
            )
            result = engine.execute_crud(operation, records, update_record_id)

        self.last_result = result
        if self.options.all_or_none and result.total_failed:
            committed_ids = self._roll_back(operation, records, update_record_id, result)
            failed_records = [r for r in records if r.get(ERRORS_FIELD_NAME)]
            outcome = (
                f"failed with {len(committed_ids)} records already committed" if committed_ids else "rolled back"
            )
            raise ExecutionError(
                f"{self.object_name}: {operation.value} {outcome}, "
                f"{result.total_failed} of {result.total_attempted} records failed: {result.last_error}",
                object_name=self.object_name,
                failed_records=failed_records,
                committed_ids=committed_ids,
            )
        return result

    def _roll_back(
        self,
        operation: Operation,
        records: List[Record],
        update_record_id: bool,
        result: CrudResult,
    ) -> List[str]:
        """
        Undo what earlier batches of a failed all-or-none operation committed.

        Inserted records are deleted again. Updates and deletes cannot be
        undone through the API.

        Returns:
            Ids of the committed records that are still in the org
        """
        committed = [r for r in records if not r.get(ERRORS_FIELD_NAME) and r.get(ID_FIELD_NAME)]
        remaining = [r[ID_FIELD_NAME] for r in committed]
        if committed and operation == Operation.INSERT:
            remaining = self._delete_inserted(remaining)
        if operation == Operation.INSERT and update_record_id:
            for record in committed:
                record.pop(ID_FIELD_NAME, None)
        if remaining:
            self.logger.error(
                f"{self.object_name}: {len(remaining)} records committed by {operation.value} could not be rolled back"
            )
        result.total_succeeded = 0
        result.completed_at = result.completed_at or datetime.utcnow()
        return remaining

    def _delete_inserted(self, record_ids: List[str]) -> List[str]:
        """Delete inserted records, returning the ids that could not be deleted."""
        self.logger.warning(f"{self.object_name}: deleting {len(record_ids)} records inserted before the failure")
        payload = [{ID_FIELD_NAME: record_id} for record_id in record_ids]
        engine = self.engine_factory(
            self.connection,
            self.object_name,
            Operation.DELETE,
            len(payload),
            replace(self.options, all_or_none=False),
            logger=self.logger,
        )
        try:
            engine.execute_crud(Operation.DELETE, payload, update_record_id=False)
        except ExecutionError as e:
            self.logger.error(f"{self.object_name}: rollback delete failed: {e}")
            return record_ids
        return [item[ID_FIELD_NAME] for item in payload if item.get(ERRORS_FIELD_NAME)]

    def _simulate(self, operation: Operation, records: List[Record], update_record_id: bool) -> CrudResult:
        """Pretend the operation succeeded, assigning fake ids to inserted records."""
        result = CrudResult(
            object_name=self.object_name,
            operation=operation.value,
            engine="simulation",
            records=records,
            started_at=datetime.utcnow(),
        )
        for record in records:
            if operation == Operation.INSERT and update_record_id and not record.get(ID_FIELD_NAME):
                record[ID_FIELD_NAME] = make_id(18)
            record[ERRORS_FIELD_NAME] = None
        result.total_attempted = len(records)
        result.total_succeeded = len(records)
        result.completed_at = datetime.utcnow()
        self.logger.info(f"{self.object_name}: {operation.value} of {len(records)} records simulated")
        return result
