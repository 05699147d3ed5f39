"""Masking of sensitive field values with generated data."""

import ast
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from faker import Faker

from ..constants import (
    ID_FIELD_NAME,
    INTERNAL_ID_FIELD_NAME,
    IS_PROCESSED_FIELD_NAME,
    MOCK_ALL_FIELDS_PATTERN,
    MOCK_EXPRESSION_ORIGINAL_VALUE,
    MOCK_PATTERN_ENTIRE_ROW_FLAG,
    SOURCE_ID_FIELD_NAME,
)
from ..errors import InitializationError
from ..models.record import Record
from ..models.script import MockField

logger = logging.getLogger(__name__)

ANY_VALUE_PATTERN = "*"
MISSING_VALUE_PATTERN = "^*"
IDS_PATTERN = "ids"
PROTECTED_FIELDS = {ID_FIELD_NAME, INTERNAL_ID_FIELD_NAME, SOURCE_ID_FIELD_NAME, IS_PROCESSED_FIELD_NAME}

DATE_STEPS = {
    "d": relativedelta(days=1),
    "-d": relativedelta(days=-1),
    "m": relativedelta(months=1),
    "-m": relativedelta(months=-1),
    "y": relativedelta(years=1),
    "-y": relativedelta(years=-1),
    "s": relativedelta(seconds=1),
    "-s": relativedelta(seconds=-1),
    "ms": relativedelta(microseconds=1000),
    "-ms": relativedelta(microseconds=-1000),
}

_PATTERN_CALL = re.compile(r"^\s*(?P<name>[A-Za-z_]\w*)\s*(?:\((?P<args>.*)\))?\s*$", re.DOTALL)


@dataclass
class MockRule:
    """Runtime form of a mock field definition."""
    field_name: str
    generator: str
    args: tuple
    excluded_regex: str = ""
    included_regex: str = ""
    disallow_mock_all_record: bool = False
    allow_mock_all_record: bool = False


def parse_pattern(pattern: str) -> tuple:
    """
    Split a generator pattern into its name and literal arguments.

    Examples:
        "email" -> ("email", ())
        "c_seq_number('Acc_', 1, 1)" -> ("c_seq_number", ("Acc_", 1, 1))
    """
    match = _PATTERN_CALL.match(pattern or "")
    if not match:
        raise InitializationError(f"Invalid mock pattern: {pattern}")
    args_text = (match.group("args") or "").strip()
    if not args_text:
        return match.group("name"), ()
    try:
        args = ast.literal_eval(f"({args_text},)")
    except (ValueError, SyntaxError) as e:
        raise InitializationError(f"Invalid mock pattern arguments: {pattern}") from e
    return match.group("name"), tuple(args)


class MockGenerator:
    """
    Replaces field values with generated ones.

    Generators are Faker provider methods (``name``, ``email``,
    ``company``...) plus the sequence commands:

    - ``c_seq_number(prefix, from, step)``: prefix + a counter per field
    - ``c_seq_date(from, step)``: a date advancing by d/m/y/s/ms per record
    - ``c_set_value(value)``: a constant; RAW_VALUE is replaced by the original
    - ``ids``: the record id

    The counters and the Faker seed are reset by :meth:`reset`, so two runs
    over the same input produce identical output.
    """

    def __init__(
        self,
        locale: str = "en_US",
        seed: int = 0,
        logger: Optional[logging.Logger] = None,
    ):
        self.locale = locale
        self.seed = seed
        self.logger = logger or logging.getLogger(__name__)
        self._fakers: Dict[str, Faker] = {}
        self._counters: Dict[str, Any] = {}
        self._commands: Dict[str, Callable] = {
            "c_seq_number": self._seq_number,
            "c_seq_date": self._seq_date,
            "c_set_value": self._set_value,
        }

    def reset(self) -> None:
        """Reset sequence counters and reseed the generators."""
        self._counters = {}
        for faker in self._fakers.values():
            faker.seed_instance(self.seed)

    def get_faker(self, locale: Optional[str] = None) -> Faker:
        """Return the generator of a locale, falling back to the default locale."""
        key = (locale or self.locale).replace("-", "_")
        if key not in self._fakers:
            try:
                faker = Faker(key)
            except AttributeError:
                self.logger.warning(f"Unknown mock locale {key}, using {self.locale}")
                faker = Faker(self.locale)
            faker.seed_instance(self.seed)
            self._fakers[key] = faker
        return self._fakers[key]

    def build_rules(self, mock_fields: List[MockField], field_names: List[str]) -> Dict[str, MockRule]:
        """
        Resolve the mock rule of every field present in the records.

        Args:
            mock_fields: Configured mock fields
            field_names: Fields present in the records

        Returns:
            Dictionary of field name -> rule
        """
        rules: Dict[str, MockRule] = {}
        for field_name in field_names:
            if field_name in PROTECTED_FIELDS:
                continue
            mock_field = self._find_mock_field(mock_fields, field_name)
            if not mock_field or not mock_field.pattern:
                continue
            generator, args = parse_pattern(mock_field.pattern)
            excluded = mock_field.excluded_regex or ""
            included = mock_field.included_regex or ""
            rules[field_name] = MockRule(
                field_name=field_name,
                generator=generator,
                args=args,
                excluded_regex=excluded.split(MOCK_PATTERN_ENTIRE_ROW_FLAG)[0].strip(),
                included_regex=included.split(MOCK_PATTERN_ENTIRE_ROW_FLAG)[0].strip(),
                disallow_mock_all_record=MOCK_PATTERN_ENTIRE_ROW_FLAG in excluded,
                allow_mock_all_record=MOCK_PATTERN_ENTIRE_ROW_FLAG in included,
            )
        return rules

    def mock_records(
        self,
        records: List[Record],
        mock_fields: List[MockField],
        field_names: Optional[List[str]] = None,
        object_name: str = "",
    ) -> List[Record]:
        """
        Return masked copies of the records.

        Args:
            records: Records to mask
            mock_fields: Configured mock fields
            field_names: Fields allowed to be masked, defaults to the record keys
            object_name: Object name used in log messages

        Returns:
            New list of masked records in the same order
        """
        if not records or not mock_fields:
            return records

        self.reset()
        names = field_names if field_names is not None else list(records[0].keys())
        rules = self.build_rules(mock_fields, [n for n in names if n in records[0]])
        if not rules:
            return records

        self.logger.info(f"{object_name}: masking fields {', '.join(rules)}")
        counts = {name: 0 for name in rules}
        masked = []
        for record in records:
            updated = dict(record)
            fields_to_mock = self._select_fields(updated, rules)
            for field_name in fields_to_mock:
                updated[field_name] = self.generate(rules[field_name], updated)
                counts[field_name] += 1
            masked.append(updated)

        for field_name, count in counts.items():
            self.logger.debug(f"{object_name}.{field_name}: {count} values masked")
        return masked

    def generate(self, rule: MockRule, record: Record) -> Any:
        """Generate a value for one field of a record."""
        original = record.get(rule.field_name)
        if rule.generator == IDS_PATTERN:
            return record.get(ID_FIELD_NAME) or record.get(INTERNAL_ID_FIELD_NAME)
        if rule.generator in self._commands:
            return self._commands[rule.generator](rule.field_name, original, *rule.args)

        faker = self.get_faker()
        provider = getattr(faker, rule.generator, None)
        if rule.generator.startswith("_") or not callable(provider):
            raise InitializationError(f"Unknown mock generator: {rule.generator}")
        return provider(*rule.args)

    def _select_fields(self, record: Record, rules: Dict[str, MockRule]) -> List[str]:
        """Decide which fields of a record are masked."""
        do_not_mock = False
        mock_all_record = False
        selected = []
        for field_name, rule in rules.items():
            value = record.get(field_name)
            excluded = bool(rule.excluded_regex) and self._test(rule.excluded_regex, value)
            included = bool(rule.included_regex) and self._test(rule.included_regex, value)
            if included and rule.allow_mock_all_record:
                mock_all_record = True
            if excluded and rule.disallow_mock_all_record:
                do_not_mock = True
                break
            if mock_all_record or ((not rule.excluded_regex or not excluded)
                                   and (not rule.included_regex or included)):
                selected.append(field_name)

        if do_not_mock:
            return []
        if mock_all_record:
            return list(rules.keys())
        return selected

    @staticmethod
    def _test(expression: str, value: Any) -> bool:
        if expression == ANY_VALUE_PATTERN:
            return bool(value)
        if expression == MISSING_VALUE_PATTERN:
            return not value
        return re.search(expression, "" if value is None else str(value), re.IGNORECASE) is not None

    @staticmethod
    def _find_mock_field(mock_fields: List[MockField], field_name: str) -> Optional[MockField]:
        for mock_field in mock_fields:
            if field_name in mock_field.exclude_names:
                continue
            if mock_field.name in (field_name, MOCK_ALL_FIELDS_PATTERN, "*"):
                return mock_field
        return None

    def _seq_number(self, field_name: str, original: Any, prefix: Any = "", start: Any = 1, step: Any = 1) -> str:
        if field_name not in self._counters:
            self._counters[field_name] = int(start) if start not in (None, "") else 1
        else:
            self._counters[field_name] += int(step if step not in (None, "") else 1)
        return f"{prefix or ''}{self._counters[field_name]}"

    def _seq_date(self, field_name: str, original: Any, start: Any = None, step: str = "d") -> str:
        if field_name not in self._counters:
            try:
                current = date_parser.parse(str(start)) if start else datetime(2000, 1, 1)
            except (ValueError, OverflowError):
                current = datetime(2000, 1, 1)
        else:
            current = self._counters[field_name] + DATE_STEPS.get(step or "d", relativedelta())
        self._counters[field_name] = current
        return current.isoformat()

    @staticmethod
    def _set_value(field_name: str, original: Any, value: Any = None) -> Any:
        if isinstance(value, str):
            return value.replace(MOCK_EXPRESSION_ORIGINAL_VALUE, "" if original is None else str(original))
        return value
