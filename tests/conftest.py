"""Shared fixtures: an in-memory org and an engine writing into it."""

import re
from itertools import count
from typing import Any, Dict, List, Optional

import pytest

from orgsync.engines.base import ApiEngineBase, EngineType, RecordResult
from orgsync.errors import MetadataError
from orgsync.models.describe import FieldDescribe, FieldType, ObjectDescribe
from orgsync.models.script import DataMedia, Operation, Script, ScriptObject, ScriptOrg
from orgsync.query.soql import ParsedQuery

IN_PREDICATE = re.compile(r"(\w+)\s+IN\s+\(([^)]*)\)", re.IGNORECASE)
EQUALS_PREDICATE = re.compile(r"(\w+)\s*=\s*'((?:[^'\\]|\\.)*)'")
QUOTED_VALUE = re.compile(r"'((?:[^'\\]|\\.)*)'")

REJECTED_VALUE = "REJECT"
REJECTED_ERROR = "FIELD_CUSTOM_VALIDATION_EXCEPTION: rejected"
ROLLED_BACK_ERROR = "ALL_OR_NONE_OPERATION_ROLLED_BACK: rolled back"


def _unescape(value: str) -> str:
    return value.replace("\\'", "'").replace("\\\\", "\\")


class FakeOrg:
    """
    In-memory org standing in for a connection.

    Understands ``Field IN (...)`` and ``Field = '...'`` predicates; any
    other part of a WHERE clause is ignored. Records whose Name or LastName
    equals ``REJECT`` fail on insert and update.
    """

    def __init__(self, describes: Dict[str, ObjectDescribe], records: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.describes = describes
        self.records: Dict[str, List[Dict[str, Any]]] = {
            name: [dict(r) for r in rows] for name, rows in (records or {}).items()
        }
        self.queries: List[str] = []
        self.operations: List[tuple] = []
        self.closed = False
        self._ids = count(1)

    def describe(self, object_name: str) -> ObjectDescribe:
        if object_name not in self.describes:
            raise MetadataError(f"Object {object_name} not found")
        return self.describes[object_name]

    def query_records(self, soql: str, use_bulk: bool = False, query_all: bool = False) -> List[Dict[str, Any]]:
        self.queries.append(soql)
        parsed = ParsedQuery.parse(soql)
        predicates = []
        for field_name, values in IN_PREDICATE.findall(parsed.where):
            predicates.append((field_name, {_unescape(v) for v in QUOTED_VALUE.findall(values)}))
        where_without_in = IN_PREDICATE.sub("", parsed.where)
        for field_name, value in EQUALS_PREDICATE.findall(where_without_in):
            predicates.append((field_name, {_unescape(value)}))

        result = []
        for record in self.records.get(parsed.object_name, []):
            if all(str(record.get(name)) in values for name, values in predicates):
                result.append({name: record.get(name) for name in parsed.fields})
        return result

    def new_id(self, object_name: str) -> str:
        return f"{object_name[:3].upper()}{next(self._ids):012d}"

    def find(self, object_name: str, record_id: str) -> Optional[Dict[str, Any]]:
        for record in self.records.get(object_name, []):
            if record.get("Id") == record_id:
                return record
        return None

    def close(self) -> None:
        self.closed = True


class FakeEngine(ApiEngineBase):
    """
    Engine applying operations to a FakeOrg.

    Batches hold ``rest_api_batch_size`` records. Under all-or-none a batch
    with a rejected record applies nothing.
    """

    ENGINE_TYPE = EngineType.REST

    @staticmethod
    def _is_rejected(item: Dict[str, Any]) -> bool:
        return REJECTED_VALUE in (item.get("Name"), item.get("LastName"))

    def split_batches(self, operation: Operation, records: List[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
        size = self.options.rest_api_batch_size
        return [records[i:i + size] for i in range(0, len(records), size)]

    def execute_batch(self, job_id, operation: Operation, payload: List[Dict[str, Any]]) -> List[RecordResult]:
        org: FakeOrg = self.connection
        org.operations.append((operation, self.object_name, payload))
        if self.options.all_or_none and any(self._is_rejected(item) for item in payload):
            return [
                RecordResult(success=False, error=REJECTED_ERROR if self._is_rejected(item) else ROLLED_BACK_ERROR)
                for item in payload
            ]
        rows = org.records.setdefault(self.object_name, [])
        results = []
        for item in payload:
            if self._is_rejected(item):
                results.append(RecordResult(success=False, error=REJECTED_ERROR))
                continue
            if operation == Operation.INSERT:
                record = dict(item, Id=org.new_id(self.object_name))
                rows.append(record)
                results.append(RecordResult(id=record["Id"], created=True))
            elif operation == Operation.UPDATE:
                existing = org.find(self.object_name, item["Id"])
                if existing is None:
                    results.append(RecordResult(success=False, error="ENTITY_IS_DELETED: not found"))
                    continue
                existing.update(item)
                results.append(RecordResult(id=item["Id"]))
            else:
                existing = org.find(self.object_name, item["Id"])
                if existing is not None:
                    rows.remove(existing)
                results.append(RecordResult(id=item["Id"]))
        return results


def fake_engine_factory(connection, object_name, operation, amount_to_process, options, engine_type=None, logger=None):
    return FakeEngine(connection, object_name, options, logger=logger)


def text_field(name: str, length: int = 255, **kwargs) -> FieldDescribe:
    return FieldDescribe(name=name, type=FieldType.STRING, length=length, **kwargs)


def lookup_field(name: str, reference_to: str, relationship_name: str, master_detail: bool = False) -> FieldDescribe:
    return FieldDescribe(
        name=name,
        type=FieldType.REFERENCE,
        reference_to=[reference_to],
        relationship_name=relationship_name,
        master_detail=master_detail,
    )


def make_describe(name: str, *fields: FieldDescribe) -> ObjectDescribe:
    id_field = FieldDescribe(name="Id", type=FieldType.ID, creatable=False, updateable=False, nillable=False)
    return ObjectDescribe(name=name, fields={f.name: f for f in (id_field,) + fields})


@pytest.fixture
def describes() -> Dict[str, ObjectDescribe]:
    return {
        "Account": make_describe(
            "Account",
            text_field("Name"),
            text_field("Industry"),
            lookup_field("ParentId", "Account", "Parent"),
        ),
        "Contact": make_describe(
            "Contact",
            text_field("LastName"),
            text_field("Email"),
            lookup_field("AccountId", "Account", "Account"),
        ),
    }


@pytest.fixture
def make_script(tmp_path):
    """Build a script between two orgs rooted at the test directory."""

    def _make(*objects: ScriptObject, **settings) -> Script:
        script = Script(
            objects=list(objects),
            source_org=settings.pop("source_org", ScriptOrg(name="source")),
            target_org=settings.pop("target_org", ScriptOrg(name="target")),
            base_path=str(tmp_path),
            **settings,
        )
        return script

    return _make


@pytest.fixture
def csv_org() -> ScriptOrg:
    return ScriptOrg(name="csvfile", media=DataMedia.FILE)
