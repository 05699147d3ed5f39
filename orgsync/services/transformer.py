"""Record transformations applied before records are written to the target."""

import csv
import logging
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..constants import (
    FIELD_MAPPING_EVAL_PATTERN_ORIGINAL_VALUE,
    FIELDS_MAPPING_EVAL_PATTERN,
    FIELDS_MAPPING_REGEX_PATTERN,
    SYSTEM_FIELD_NAMES,
)
from ..errors import ExpressionError
from ..models.describe import FieldDescribe
from ..models.record import Record
from ..models.script import ScriptObject
from .expression import ExpressionEvaluator

logger = logging.getLogger(__name__)

_REGEX_KEY = re.compile(FIELDS_MAPPING_REGEX_PATTERN)
_EVAL_VALUE = re.compile(FIELDS_MAPPING_EVAL_PATTERN, re.IGNORECASE | re.DOTALL)
_JS_GROUP_REFERENCE = re.compile(r"\$(\d+)")

# Re-links a record after one of its relationship values was remapped
LookupResolver = Callable[[Record, str, Any], None]


def normalize_mapped_value(value: Any) -> Any:
    """Convert textual booleans and null markers into Python values."""
    if isinstance(value, str):
        trimmed = value.strip()
        if trimmed in ("TRUE", "true"):
            return True
        if trimmed in ("FALSE", "false"):
            return False
        if trimmed in ("null", "NULL", "undefined", "#N/A"):
            return None
    return value


class ValueMapper:
    """
    Rewrites field values through per-object, per-field lookup tables.

    A table maps raw values to new values. A key written as ``/pattern/`` is
    a regular expression whose matches are replaced by the mapped value
    (``$1`` style group references are supported). A mapped value written as
    ``eval(expression)`` is evaluated with the sandboxed expression language,
    with ``RAW_VALUE`` bound to the original value.
    """

    def __init__(
        self,
        evaluator: Optional[ExpressionEvaluator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.evaluator = evaluator or ExpressionEvaluator()
        self.logger = logger or logging.getLogger(__name__)
        self._mappings: Dict[Tuple[str, str], Dict[str, str]] = {}

    def add_mapping(self, object_name: str, field_name: str, raw_value: str, value: str) -> None:
        """Register one raw -> new value rule."""
        self._mappings.setdefault((object_name, field_name), {})[raw_value] = value

    def load_csv(self, file_path: Path, object_names: Optional[List[str]] = None) -> int:
        """
        Load rules from a CSV file with ObjectName, FieldName, RawValue and Value columns.

        Args:
            file_path: Path of the mapping file
            object_names: Only load rules of these objects when given

        Returns:
            Number of rules loaded
        """
        path = Path(file_path)
        if not path.exists():
            return 0

        count = 0
        with open(path, "r", encoding="utf-8", newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                object_name = (row.get("ObjectName") or "").strip()
                field_name = (row.get("FieldName") or "").strip()
                if not object_name or not field_name:
                    continue
                if object_names is not None and object_name not in object_names:
                    continue
                self.add_mapping(
                    object_name,
                    field_name,
                    (row.get("RawValue") or "").strip(),
                    (row.get("Value") or "").strip(),
                )
                count += 1

        self.logger.info(f"Loaded {count} value mapping rules from {path.name}")
        return count

    def has_mappings(self, object_name: str) -> bool:
        return any(key[0] == object_name for key in self._mappings)

    def has_any_mappings(self) -> bool:
        return bool(self._mappings)

    def get_field_mapping(self, object_name: str, field_name: str) -> Dict[str, str]:
        return self._mappings.get((object_name, field_name), {})

    def map_records(
        self,
        object_name: str,
        records: List[Record],
        lookup_resolver: Optional[LookupResolver] = None,
    ) -> List[Record]:
        """
        Apply the value mapping rules of an object to records in place.

        Args:
            object_name: Object the records belong to
            records: Records to update
            lookup_resolver: Called with each record, field and mapped value so
                remapped relationship values can update their id field

        Returns:
            The same list of records
        """
        if not records:
            return records

        field_names = []
        for record in records:
            field_names.extend(f for f in record if f not in SYSTEM_FIELD_NAMES and f not in field_names)
        mapped_fields = []
        for field_name in field_names:
            values_map = self.get_field_mapping(object_name, field_name)
            if not values_map:
                continue
            mapped_fields.append(field_name)
            applied = 0
            for record in records:
                if field_name not in record:
                    continue
                previous = record[field_name]
                new_value = self.map_value(values_map, previous)
                if new_value != previous:
                    applied += 1
                record[field_name] = new_value
                if lookup_resolver:
                    lookup_resolver(record, field_name, new_value)
            self.logger.debug(f"{object_name}.{field_name}: value mapping applied to {applied} records")

        if mapped_fields:
            self.logger.info(f"{object_name}: mapping values of {', '.join(mapped_fields)}")
        return records

    def map_value(self, values_map: Dict[str, str], value: Any) -> Any:
        """Map a single value through a table."""
        raw_value = "" if value is None else str(value).strip()
        new_value: Any = None

        regex_rule = self._find_regex_rule(values_map, raw_value)
        if regex_rule:
            pattern, replacement = regex_rule
            replacement_text = self.evaluate_mapped_value(raw_value, replacement)
            replacement_text = "" if replacement_text is None else str(replacement_text)
            replacement_text = _JS_GROUP_REFERENCE.sub(r"\\g<\1>", replacement_text)
            new_value = pattern.sub(replacement_text, raw_value)

        if new_value:
            mapped = values_map.get(str(new_value))
            if mapped:
                new_value = mapped
        if not new_value:
            mapped = values_map.get(raw_value)
            new_value = mapped if mapped else value

        new_value = normalize_mapped_value(new_value)
        return self.evaluate_mapped_value(raw_value, new_value)

    def evaluate_mapped_value(self, raw_value: str, mapped_value: Any) -> Any:
        """Evaluate an ``eval(...)`` mapped value, returning the raw value on failure."""
        if not isinstance(mapped_value, str):
            return mapped_value
        match = _EVAL_VALUE.match(mapped_value.strip())
        if not match:
            return mapped_value

        placeholder = FIELD_MAPPING_EVAL_PATTERN_ORIGINAL_VALUE
        expression = match.group(1)
        expression = expression.replace(f"'{placeholder}'", placeholder).replace(f'"{placeholder}"', placeholder)
        try:
            return self.evaluator.evaluate(expression, {placeholder: raw_value})
        except ExpressionError as e:
            self.logger.warning(f"Value mapping expression failed, keeping raw value: {e}")
            return raw_value

    @staticmethod
    def _find_regex_rule(values_map: Dict[str, str], raw_value: str) -> Optional[Tuple[re.Pattern, str]]:
        """First ``/pattern/`` rule, in declaration order, matching the value."""
        for key, mapped_value in values_map.items():
            match = _REGEX_KEY.match(key)
            if not match or not mapped_value:
                continue
            try:
                pattern = re.compile(match.group(1), re.IGNORECASE)
            except re.error:
                logger.warning(f"Ignoring invalid value mapping pattern: {key}")
                continue
            if pattern.search(raw_value):
                return pattern, mapped_value
        return None


def filter_records(
    records: List[Record],
    expression: str,
    evaluator: Optional[ExpressionEvaluator] = None,
) -> List[Record]:
    """
    Keep the records for which a predicate expression is truthy.

    Raises:
        ExpressionError: When the expression is invalid
    """
    if not expression or not expression.strip() or not records:
        return records
    compiled = (evaluator or ExpressionEvaluator()).compile(expression)
    return [record for record in records if compiled.evaluate(record)]


def truncate_records(records: List[Record], fields: List[FieldDescribe]) -> List[Record]:
    """Cut textual values to the length their target field allows."""
    limits = {f.name: f.length for f in fields if f.is_textual and f.length > 0}
    if not limits:
        return records
    for record in records:
        for field_name, length in limits.items():
            value = record.get(field_name)
            if isinstance(value, str) and len(value) > length:
                record[field_name] = value[:length]
    return records


def map_record_fields(records: List[Record], script_object: ScriptObject) -> List[Record]:
    """Rename record keys to the field names of the target object."""
    if not script_object.use_field_mapping:
        return records
    mapped = []
    for record in records:
        mapped.append({script_object.map_field_to_target(k): v for k, v in record.items()})
    return mapped
