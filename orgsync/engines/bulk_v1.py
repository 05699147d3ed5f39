"""Bulk API 1.0 engine using JSON batches."""

import time
from typing import Any, Dict, List, Optional

import requests

from ..connection import response_error_message
from ..errors import ExecutionError
from ..models.record import Record
from ..models.script import Operation
from .base import ApiEngineBase, EngineType, RecordResult, format_errors

BATCH_FINAL_STATES = ("Completed", "Failed", "Not Processed")

BULK_OPERATIONS = {
    Operation.INSERT: "insert",
    Operation.UPDATE: "update",
    Operation.UPSERT: "upsert",
    Operation.DELETE: "delete",
    Operation.HARD_DELETE: "hardDelete",
}


class BulkApiV1Engine(ApiEngineBase):
    """
    Engine sending records through a Bulk API 1.0 job.

    One job is opened per operation. Each batch is uploaded as JSON, polled
    at a fixed interval until it finishes and its results are read back in
    upload order.
    """

    ENGINE_TYPE = EngineType.BULK_V1

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-SFDC-Session": self.connection.org.access_token or ""}

    def _job_url(self, path: str = "") -> str:
        base = f"{self.connection.async_url}/job"
        return f"{base}/{path}" if path else base

    def split_batches(self, operation: Operation, records: List[Record]) -> List[List[Record]]:
        size = max(1, self.options.bulk_api_v1_batch_size)
        return [records[i:i + size] for i in range(0, len(records), size)]

    def open_job(self, operation: Operation) -> Optional[str]:
        body = {
            "operation": BULK_OPERATIONS[operation],
            "object": self.object_name,
            "contentType": "JSON",
        }
        if operation == Operation.UPSERT:
            body["externalIdFieldName"] = "Id"
        try:
            job = self.connection.request_json("POST", self._job_url(), json=body, headers=self._headers)
        except requests.exceptions.HTTPError as e:
            raise ExecutionError(
                f"{self.object_name}: cannot create {operation.value} job: {response_error_message(e.response)}",
                object_name=self.object_name,
            ) from e
        self.logger.info(f"{self.object_name}: job {job['id']} created ({self.engine_name})")
        return job["id"]

    def close_job(self, job_id: Optional[str]) -> None:
        if not job_id:
            return
        try:
            self.connection.request_json(
                "POST", self._job_url(job_id), json={"state": "Closed"}, headers=self._headers
            )
        except requests.exceptions.HTTPError as e:
            self.logger.warning(f"{self.object_name}: cannot close job {job_id}: {response_error_message(e.response)}")

    def execute_batch(
        self,
        job_id: Optional[str],
        operation: Operation,
        payload: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        try:
            batch = self.connection.request_json(
                "POST", self._job_url(f"{job_id}/batch"), json=payload, headers=self._headers
            )
            batch_id = batch["id"]
            self.logger.debug(f"{self.object_name}: batch {batch_id} of {len(payload)} records uploaded")
            info = self._wait_for_batch(job_id, batch_id)
            if info.get("state") != "Completed":
                raise ExecutionError(
                    f"{self.object_name}: batch {batch_id} {info.get('state')}: {info.get('stateMessage', '')}",
                    object_name=self.object_name,
                )
            results = self.connection.request_json(
                "GET", self._job_url(f"{job_id}/batch/{batch_id}/result"), headers=self._headers
            )
        except requests.exceptions.HTTPError as e:
            raise ExecutionError(
                f"{self.object_name}: {operation.value} failed: {response_error_message(e.response)}",
                object_name=self.object_name,
            ) from e

        return [
            RecordResult(
                id=item.get("id"),
                success=bool(item.get("success")) and not format_errors(item.get("errors")),
                created=bool(item.get("created", False)),
                error=format_errors(item.get("errors")),
            )
            for item in (results or [])
        ]

    def _wait_for_batch(self, job_id: str, batch_id: str) -> Dict[str, Any]:
        started = time.time()
        while True:
            info = self.connection.request_json(
                "GET", self._job_url(f"{job_id}/batch/{batch_id}"), headers=self._headers
            )
            if info.get("state") in BATCH_FINAL_STATES:
                return info
            if (time.time() - started) * 1000 > self.options.polling_timeout_ms:
                raise ExecutionError(
                    f"{self.object_name}: batch {batch_id} timed out", object_name=self.object_name
                )
            self.logger.debug(
                f"{self.object_name}: batch {batch_id} {info.get('state')}, "
                f"{info.get('numberRecordsProcessed', 0)} processed"
            )
            time.sleep(self.options.polling_interval_ms / 1000.0)
