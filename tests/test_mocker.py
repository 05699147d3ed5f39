"""Tests for masking with generated values."""

import pytest

from orgsync.errors import InitializationError
from orgsync.models.script import MockField
from orgsync.services.mocker import MockGenerator, parse_pattern

RECORDS = [
    {"Id": "001A", "Name": "Acme", "Email": "info@acme.test", "Phone": "555-0100"},
    {"Id": "001B", "Name": "Globex", "Email": "info@globex.test", "Phone": "555-0101"},
    {"Id": "001C", "Name": "keep Initech", "Email": "", "Phone": "555-0102"},
]


class TestParsePattern:
    def test_plain_generator(self):
        assert parse_pattern("email") == ("email", ())

    def test_arguments_are_literals(self):
        assert parse_pattern("c_seq_number('Acc_', 1, 5)") == ("c_seq_number", ("Acc_", 1, 5))

    def test_invalid_arguments(self):
        with pytest.raises(InitializationError):
            parse_pattern("c_seq_number(os.system)")


class TestMockRecords:
    def test_same_input_same_output(self):
        generator = MockGenerator(seed=42)
        fields = [MockField(name="Email", pattern="email"), MockField(name="Name", pattern="company")]

        first = generator.mock_records(RECORDS, fields)
        second = MockGenerator(seed=42).mock_records(RECORDS, fields)

        assert first == second
        assert first == generator.mock_records(RECORDS, fields)
        assert first[0]["Email"] != RECORDS[0]["Email"]

    def test_originals_untouched_and_ids_protected(self):
        fields = [MockField(name="all", pattern="word")]

        masked = MockGenerator().mock_records(RECORDS, fields)

        assert RECORDS[0]["Name"] == "Acme"
        assert [r["Id"] for r in masked] == ["001A", "001B", "001C"]

    def test_sequence_number(self):
        fields = [MockField(name="Name", pattern="c_seq_number('Acc_', 10, 5)")]

        masked = MockGenerator().mock_records(RECORDS, fields)

        assert [r["Name"] for r in masked] == ["Acc_10", "Acc_15", "Acc_20"]

    def test_sequence_date(self):
        fields = [MockField(name="Phone", pattern="c_seq_date('2024-01-31', 'm')")]

        masked = MockGenerator().mock_records(RECORDS, fields)

        assert [r["Phone"][:10] for r in masked] == ["2024-01-31", "2024-02-29", "2024-03-29"]

    def test_set_value_with_original(self):
        fields = [MockField(name="Name", pattern="c_set_value('X-RAW_VALUE')")]

        masked = MockGenerator().mock_records(RECORDS[:1], fields)

        assert masked[0]["Name"] == "X-Acme"

    def test_ids_pattern(self):
        masked = MockGenerator().mock_records(RECORDS[:1], [MockField(name="Phone", pattern="ids")])
        assert masked[0]["Phone"] == "001A"

    def test_excluded_regex_keeps_value(self):
        fields = [MockField(name="Name", pattern="c_set_value('masked')", excluded_regex="^keep")]

        masked = MockGenerator().mock_records(RECORDS, fields)

        assert [r["Name"] for r in masked] == ["masked", "masked", "keep Initech"]

    def test_included_regex_any_value(self):
        fields = [MockField(name="Email", pattern="c_set_value('hidden')", included_regex="*")]

        masked = MockGenerator().mock_records(RECORDS, fields)

        assert [r["Email"] for r in masked] == ["hidden", "hidden", ""]

    def test_excluded_regex_for_entire_row(self):
        fields = [
            MockField(name="Name", pattern="c_set_value('masked')", excluded_regex="^keep --row"),
            MockField(name="Phone", pattern="c_set_value('000')"),
        ]

        masked = MockGenerator().mock_records(RECORDS, fields)

        assert masked[2] == RECORDS[2]
        assert masked[0]["Phone"] == "000"

    def test_field_excluded_by_name(self):
        fields = [MockField(name="all", pattern="c_set_value('x')", exclude_names=["Phone"])]

        masked = MockGenerator().mock_records(RECORDS[:1], fields, ["Name", "Email", "Phone"])

        assert masked[0]["Phone"] == "555-0100"
        assert masked[0]["Name"] == "x"

    def test_unknown_generator(self):
        fields = [MockField(name="Name", pattern="not_a_provider")]
        with pytest.raises(InitializationError):
            MockGenerator().mock_records(RECORDS, fields)
