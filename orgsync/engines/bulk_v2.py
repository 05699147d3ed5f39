"""Bulk API 2.0 engine using CSV ingest jobs."""

import csv
import io
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..connection import parse_csv_records, response_error_message
from ..constants import BULK_API_V2_MAX_CSV_SIZE_IN_BYTES, ID_FIELD_NAME, NULL_VALUE_MARKER
from ..errors import ExecutionError
from ..models.record import Record
from ..models.script import Operation
from .base import RESULT_NOT_FOUND_MESSAGE, ApiEngineBase, EngineType, RecordResult
from .bulk_v1 import BULK_OPERATIONS

JOB_FINAL_STATES = ("JobComplete", "Failed", "Aborted")
UNPROCESSED_RECORD_MESSAGE = "Record was not processed"


def render_value(value: Any, operation: Operation) -> str:
    """Render a value as Bulk API CSV text; None clears the field on update."""
    if value is None:
        return NULL_VALUE_MARKER if operation == Operation.UPDATE else ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render_csv(columns: List[str], rows: List[List[str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(columns)
    writer.writerows(rows)
    return buffer.getvalue()


class BulkApiV2Engine(ApiEngineBase):
    """
    Engine sending records through Bulk API 2.0 ingest jobs.

    Records are uploaded as CSV, one job per chunk, each chunk kept under the
    maximum upload size. The job is closed, polled until it reaches a final
    state, and the successful, failed and unprocessed result files are
    matched back to the records: by Id for update and delete, by the
    uploaded row content for insert.
    """

    ENGINE_TYPE = EngineType.BULK_V2

    def __init__(self, *args, max_csv_size: int = BULK_API_V2_MAX_CSV_SIZE_IN_BYTES, **kwargs):
        super().__init__(*args, **kwargs)
        self.max_csv_size = max_csv_size

    def open_job(self, operation: Operation) -> Optional[str]:
        return None

    def split_batches(self, operation: Operation, records: List[Record]) -> List[List[Record]]:
        """Split records so that each uploaded CSV stays under the size limit."""
        batches: List[List[Record]] = []
        current: List[Record] = []
        size = 0
        for record in records:
            payload = self.build_payload(operation, record)
            line = render_csv(list(payload.keys()), [[render_value(v, operation) for v in payload.values()]])
            line_size = len(line.encode("utf-8"))
            if current and size + line_size > self.max_csv_size:
                batches.append(current)
                current = []
                size = 0
            current.append(record)
            size += line_size
        if current:
            batches.append(current)
        return batches

    def execute_batch(
        self,
        job_id: Optional[str],
        operation: Operation,
        payload: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        columns: List[str] = []
        for item in payload:
            for key in item.keys():
                if key not in columns:
                    columns.append(key)
        rows = [[render_value(item.get(c), operation) for c in columns] for item in payload]

        try:
            job_id = self._create_job(operation)
            self.connection.request(
                "PUT",
                f"jobs/ingest/{job_id}/batches",
                data=render_csv(columns, rows).encode("utf-8"),
                headers={"Content-Type": "text/csv"},
            )
            self.connection.request_json("PATCH", f"jobs/ingest/{job_id}", json={"state": "UploadComplete"})
            self.logger.debug(f"{self.object_name}: job {job_id} data uploaded")

            info = self._wait_for_job(job_id)
            if info.get("state") != "JobComplete":
                raise ExecutionError(
                    f"{self.object_name}: job {job_id} {info.get('state')}: {info.get('errorMessage', '')}",
                    object_name=self.object_name,
                )
            successful = parse_csv_records(self.connection.request("GET", f"jobs/ingest/{job_id}/successfulResults").text)
            failed = parse_csv_records(self.connection.request("GET", f"jobs/ingest/{job_id}/failedResults").text)
            unprocessed = parse_csv_records(
                self.connection.request("GET", f"jobs/ingest/{job_id}/unprocessedrecords").text
            )
        except requests.exceptions.HTTPError as e:
            raise ExecutionError(
                f"{self.object_name}: {operation.value} failed: {response_error_message(e.response)}",
                object_name=self.object_name,
            ) from e

        for row in unprocessed:
            row["sf__Error"] = row.get("sf__Error") or UNPROCESSED_RECORD_MESSAGE
        return self._match_results(operation, columns, rows, successful + failed + unprocessed)

    def _create_job(self, operation: Operation) -> str:
        body = {
            "object": self.object_name,
            "operation": BULK_OPERATIONS[operation],
            "contentType": "CSV",
            "lineEnding": "LF",
        }
        if operation == Operation.UPSERT:
            body["externalIdFieldName"] = ID_FIELD_NAME
        job = self.connection.request_json("POST", "jobs/ingest", json=body)
        self.logger.info(f"{self.object_name}: job {job['id']} created ({self.engine_name})")
        return job["id"]

    def _wait_for_job(self, job_id: str) -> Dict[str, Any]:
        started = time.time()
        last_progress: Tuple[Any, Any] = (None, None)
        while True:
            info = self.connection.request_json("GET", f"jobs/ingest/{job_id}")
            progress = (info.get("numberRecordsProcessed"), info.get("numberRecordsFailed"))
            if progress != last_progress:
                last_progress = progress
                self.logger.info(
                    f"{self.object_name}: job {job_id} {info.get('state')}, "
                    f"{progress[0] or 0} processed, {progress[1] or 0} failed"
                )
            if info.get("state") in JOB_FINAL_STATES:
                return info
            if (time.time() - started) * 1000 > self.options.polling_timeout_ms:
                return {"id": job_id, "state": "Failed", "errorMessage": "Bulk API v2 poll timeout"}
            time.sleep(self.options.polling_interval_ms / 1000.0)

    def _match_results(
        self,
        operation: Operation,
        columns: List[str],
        rows: List[List[str]],
        results: List[Record],
    ) -> List[RecordResult]:
        use_id = operation != Operation.INSERT and ID_FIELD_NAME in columns
        pending: Dict[Any, List[Record]] = {}
        for result in results:
            if use_id:
                key = result.get(ID_FIELD_NAME) or result.get("sf__Id")
            else:
                key = tuple(result.get(c) or "" for c in columns)
            pending.setdefault(key, []).append(result)

        outcomes = []
        id_index = columns.index(ID_FIELD_NAME) if use_id else -1
        for row in rows:
            if use_id:
                key = row[id_index]
            else:
                key = tuple("" if value == NULL_VALUE_MARKER else value for value in row)
            candidates = pending.get(key)
            if not candidates:
                outcomes.append(RecordResult(success=False, error=RESULT_NOT_FOUND_MESSAGE))
                continue
            result = candidates.pop(0)
            error = result.get("sf__Error")
            outcomes.append(RecordResult(
                id=result.get("sf__Id") or result.get(ID_FIELD_NAME),
                success=not error,
                created=str(result.get("sf__Created", "")).lower() == "true",
                error=error or None,
            ))
        return outcomes
