"""REST API engine using sObject collection calls."""

from typing import Any, Dict, List, Optional

import requests

from ..connection import response_error_message
from ..constants import ID_FIELD_NAME
from ..errors import ExecutionError
from ..models.record import Record
from ..models.script import Operation
from .base import ApiEngineBase, EngineType, RecordResult, format_errors

COLLECTION_ENDPOINT = "composite/sobjects"
MAX_RECORDS_PER_CALL = 200


class RestApiEngine(ApiEngineBase):
    """
    Engine sending records through the sObject collections resource.

    Each call carries at most 200 records and the all-or-none flag.
    HardDelete is executed as a regular delete.
    """

    ENGINE_TYPE = EngineType.REST

    def split_batches(self, operation: Operation, records: List[Record]) -> List[List[Record]]:
        size = min(self.options.rest_api_batch_size or MAX_RECORDS_PER_CALL, MAX_RECORDS_PER_CALL)
        return [records[i:i + size] for i in range(0, len(records), size)]

    def execute_batch(
        self,
        job_id: Optional[str],
        operation: Operation,
        payload: List[Dict[str, Any]],
    ) -> List[RecordResult]:
        try:
            if operation in (Operation.DELETE, Operation.HARD_DELETE):
                ids = [str(item[ID_FIELD_NAME]) for item in payload if item.get(ID_FIELD_NAME)]
                data = self.connection.request_json(
                    "DELETE",
                    COLLECTION_ENDPOINT,
                    params={
                        "ids": ",".join(ids),
                        "allOrNone": "true" if self.options.all_or_none else "false",
                    },
                )
            else:
                method = "POST" if operation == Operation.INSERT else "PATCH"
                body = {
                    "allOrNone": self.options.all_or_none,
                    "records": [
                        {"attributes": {"type": self.object_name}, **item}
                        for item in payload
                    ],
                }
                data = self.connection.request_json(method, COLLECTION_ENDPOINT, json=body)
        except requests.exceptions.HTTPError as e:
            raise ExecutionError(
                f"{self.object_name}: {operation.value} failed: {response_error_message(e.response)}",
                object_name=self.object_name,
            ) from e

        return [self._parse_result(item) for item in (data or [])]

    @staticmethod
    def _parse_result(item: Dict[str, Any]) -> RecordResult:
        error = format_errors(item.get("errors"))
        return RecordResult(
            id=item.get("id"),
            success=bool(item.get("success")) and not error,
            created=bool(item.get("created", False)),
            error=error,
        )
