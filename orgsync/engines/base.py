"""Base API engine interface for CRUD operations against an org."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import zip_longest
from typing import TYPE_CHECKING, Any, Dict, List, Optional
import logging

from ..constants import (
    DEFAULT_BULK_API_THRESHOLD_RECORDS,
    DEFAULT_BULK_API_V1_BATCH_SIZE,
    DEFAULT_BULK_API_VERSION,
    DEFAULT_POLLING_INTERVAL_MS,
    DEFAULT_POLLING_TIMEOUT_MS,
    DEFAULT_REST_API_BATCH_SIZE,
    ERRORS_FIELD_NAME,
    ID_FIELD_NAME,
    NULL_VALUE_MARKER,
    OLD_ID_FIELD_NAME,
    REST_API_JOB_ID,
)
from ..models.record import Record
from ..models.script import Operation

if TYPE_CHECKING:
    from ..connection import OrgConnection
    from ..models.script import Script, ScriptObject

logger = logging.getLogger(__name__)

RESULT_NOT_FOUND_MESSAGE = "Record result was not returned by the API"


class EngineType(str, Enum):
    """Available API engines."""
    REST = "REST API"
    BULK_V1 = "BULK API V1"
    BULK_V2 = "BULK API V2"


@dataclass
class ApiEngineOptions:
    """Settings shared by the engines and the executor."""
    all_or_none: bool = False
    simulation_mode: bool = False
    bulk_threshold: int = DEFAULT_BULK_API_THRESHOLD_RECORDS
    bulk_api_version: str = DEFAULT_BULK_API_VERSION
    always_use_rest_api: bool = False
    always_use_bulk_api: bool = False
    bulk_api_v1_batch_size: int = DEFAULT_BULK_API_V1_BATCH_SIZE
    rest_api_batch_size: int = DEFAULT_REST_API_BATCH_SIZE
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    polling_timeout_ms: int = DEFAULT_POLLING_TIMEOUT_MS

    @property
    def bulk_api_major_version(self) -> int:
        try:
            return int(float(self.bulk_api_version))
        except (TypeError, ValueError):
            return 1

    @classmethod
    def from_script(cls, script: "Script", script_object: Optional["ScriptObject"] = None) -> "ApiEngineOptions":
        """Build options from the script, applying the object-level overrides."""
        options = cls(
            all_or_none=script.all_or_none,
            simulation_mode=script.simulation_mode,
            bulk_threshold=script.bulk_threshold,
            bulk_api_version=script.bulk_api_version,
            always_use_rest_api=script.always_use_rest_api,
            always_use_bulk_api=script.always_use_bulk_api,
            bulk_api_v1_batch_size=script.bulk_api_v1_batch_size,
            rest_api_batch_size=script.rest_api_batch_size,
            polling_interval_ms=script.polling_interval_ms,
            polling_timeout_ms=script.polling_timeout_ms,
        )
        if script_object is not None:
            if script_object.all_or_none is not None:
                options.all_or_none = script_object.all_or_none
            options.always_use_rest_api = options.always_use_rest_api or script_object.always_use_rest_api
            options.always_use_bulk_api = options.always_use_bulk_api or script_object.always_use_bulk_api
            if script_object.bulk_api_v1_batch_size:
                options.bulk_api_v1_batch_size = script_object.bulk_api_v1_batch_size
            if script_object.rest_api_batch_size:
                options.rest_api_batch_size = script_object.rest_api_batch_size
        return options


@dataclass
class RecordResult:
    """Outcome of one record in an API call."""
    id: Optional[str] = None
    success: bool = True
    created: bool = False
    error: Optional[str] = None


@dataclass
class CrudResult:
    """Result of a CRUD operation."""
    object_name: str
    operation: str
    engine: str = ""
    job_ids: List[str] = field(default_factory=list)
    records: List[Record] = field(default_factory=list)
    total_attempted: int = 0
    total_succeeded: int = 0
    total_failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def success_rate(self) -> float:
        if self.total_attempted == 0:
            return 0.0
        return self.total_succeeded / self.total_attempted

    @property
    def last_error(self) -> Optional[str]:
        return self.errors[-1]["error"] if self.errors else None


def format_errors(errors: Any) -> Optional[str]:
    """Join the error payloads of a record result into one message."""
    if not errors:
        return None
    if isinstance(errors, str):
        return errors
    messages = []
    for error in errors:
        if isinstance(error, str):
            messages.append(error)
        elif isinstance(error, dict):
            code = error.get("statusCode")
            message = error.get("message") or "Unknown error"
            messages.append(f"{code}: {message}" if code else message)
    return "; ".join(m for m in messages if m) or None


class ApiEngineBase(ABC):
    """
    Base class for API engines.

    An engine executes one operation over a list of records: the records are
    split into batches, each batch is sent through a job and the per-record
    results are written back onto the records (new ``Id`` on insert, the
    ``Errors`` field on failure).
    """

    ENGINE_TYPE: EngineType = EngineType.REST

    def __init__(
        self,
        connection: "OrgConnection",
        object_name: str,
        options: Optional[ApiEngineOptions] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the engine.

        Args:
            connection: Connection of the org the records are written to
            object_name: Object the records belong to
            options: Engine settings
            logger: Logger to use instead of the module logger
        """
        self.connection = connection
        self.object_name = object_name
        self.options = options or ApiEngineOptions()
        self.logger = logger or logging.getLogger(__name__)

    @property
    def engine_name(self) -> str:
        return self.ENGINE_TYPE.value

    @property
    def is_rest_engine(self) -> bool:
        return self.ENGINE_TYPE == EngineType.REST

    def execute_crud(
        self,
        operation: Operation,
        records: List[Record],
        update_record_id: bool = True,
    ) -> CrudResult:
        """
        Execute an operation over records.

        Args:
            operation: Insert, Update, Delete or HardDelete
            records: Records to send; updated in place with the results
            update_record_id: Store the new ids of inserted records

        Returns:
            CrudResult with counts and per-record errors

        Raises:
            ExecutionError: When a job fails as a whole
        """
        result = CrudResult(
            object_name=self.object_name,
            operation=operation.value,
            engine=self.engine_name,
            records=records,
            started_at=datetime.utcnow(),
        )
        if not records:
            result.completed_at = datetime.utcnow()
            return result

        self.logger.info(
            f"{self.object_name}: {operation.value} of {len(records)} records started using {self.engine_name}"
        )

        job_id = self.open_job(operation)
        if job_id:
            result.job_ids.append(job_id)
        for batch in self.split_batches(operation, records):
            payload = [self.build_payload(operation, record) for record in batch]
            outcomes = self.execute_batch(job_id, operation, payload)
            self._apply_results(operation, batch, outcomes, update_record_id, result)
        self.close_job(job_id)

        result.completed_at = datetime.utcnow()
        log = self.logger.warning if result.total_failed else self.logger.info
        log(
            f"{self.object_name}: {operation.value} finished, "
            f"{result.total_succeeded} succeeded, {result.total_failed} failed "
            f"({result.success_rate:.0%} in {result.duration_seconds:.1f}s)"
        )
        return result

    def open_job(self, operation: Operation) -> Optional[str]:
        """Open a job shared by all batches; engines without jobs return a marker id."""
        return REST_API_JOB_ID

    def close_job(self, job_id: Optional[str]) -> None:
        pass

    @abstractmethod
    def split_batches(self, operation: Operation, records: List[Record]) -> List[List[Record]]:
        """Split records into the batches sent in one call."""
        pass

    @abstractmethod
    def execute_batch(
        self,
        job_id: Optional[str],
        operation: Operation,
        payload: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        """
        Send one batch.

        Returns:
            One result per payload entry, in the same order
        """
        pass

    def build_payload(self, operation: Operation, record: Record) -> Dict[str, Any]:
        """Keep the fields the API accepts for the operation."""
        if operation in (Operation.DELETE, Operation.HARD_DELETE):
            return {ID_FIELD_NAME: record.get(ID_FIELD_NAME)}

        payload = {}
        for key, value in record.items():
            if key.startswith("___") or "." in key or key in (ERRORS_FIELD_NAME, OLD_ID_FIELD_NAME):
                continue
            if key == ID_FIELD_NAME and operation == Operation.INSERT:
                continue
            payload[key] = None if value == NULL_VALUE_MARKER else value
        return payload

    def _apply_results(
        self,
        operation: Operation,
        batch: List[Record],
        outcomes: List[RecordResult],
        update_record_id: bool,
        result: CrudResult,
    ) -> None:
        for record, outcome in zip_longest(batch, outcomes):
            if record is None:
                break
            result.total_attempted += 1
            if outcome is None:
                outcome = RecordResult(success=False, error=RESULT_NOT_FOUND_MESSAGE)

            if outcome.success and not outcome.error:
                record[ERRORS_FIELD_NAME] = None
                if operation == Operation.INSERT and update_record_id and outcome.id:
                    record[ID_FIELD_NAME] = outcome.id
                result.total_succeeded += 1
            else:
                message = outcome.error or "Unknown error"
                record[ERRORS_FIELD_NAME] = message
                result.total_failed += 1
                result.errors.append({"record_id": record.get(ID_FIELD_NAME), "error": message})
