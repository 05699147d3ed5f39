"""Helpers for working with record dictionaries."""

import random
import string
from typing import Any, Dict, List, Optional, Tuple

from ..constants import (
    COMPLEX_FIELDS_SEPARATOR,
    IS_PERSON_ACCOUNT_FIELD_NAME,
)

Record = Dict[str, Any]

_ID_ALPHABET = string.ascii_letters + string.digits


def make_id(length: int = 18) -> str:
    """Generate a random pseudo id."""
    return "".join(random.choice(_ID_ALPHABET) for _ in range(length))


def clone_record(record: Record, field_names: Optional[List[str]] = None) -> Record:
    """Copy a record, keeping only the given fields when provided."""
    if field_names is None:
        return dict(record)
    return {name: record[name] for name in field_names if name in record}


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def get_complex_value(record: Record, field_name: str) -> Any:
    """
    Read a simple or composite field value.

    A composite field name lists its parts separated by ';'. The value is the
    non-empty part values joined with the same separator.
    """
    value = record.get(field_name)
    if not is_empty(value):
        return value
    if COMPLEX_FIELDS_SEPARATOR not in field_name:
        return value
    parts = [record.get(part.strip()) for part in field_name.split(COMPLEX_FIELDS_SEPARATOR)]
    parts = [str(part) for part in parts if not is_empty(part)]
    return COMPLEX_FIELDS_SEPARATOR.join(parts) if parts else None


def is_person_record(record: Record) -> bool:
    """True when the record is a person account or person contact."""
    value = record.get(IS_PERSON_ACCOUNT_FIELD_NAME)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("true", "1"):
            return True
        if normalized in ("false", "0", ""):
            return False
    return bool(value)


class RecordMap:
    """
    Mapping keyed by record identity.

    Records are plain dictionaries and cannot be hashed, so entries are keyed
    by ``id()``. The key record is kept alongside the value so its identity
    stays valid for the lifetime of the map.
    """

    def __init__(self):
        self._items: Dict[int, Tuple[Record, Record]] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, record: Record) -> bool:
        return id(record) in self._items

    def get(self, record: Record) -> Optional[Record]:
        item = self._items.get(id(record))
        return item[1] if item else None

    def set(self, record: Record, value: Record) -> None:
        self._items[id(record)] = (record, value)

    def setdefault(self, record: Record, value: Record) -> Record:
        """Add the entry only when the record is not mapped yet."""
        item = self._items.get(id(record))
        if item:
            return item[1]
        self._items[id(record)] = (record, value)
        return value

    def items(self) -> List[Tuple[Record, Record]]:
        return list(self._items.values())

    def clear(self) -> None:
        self._items.clear()
