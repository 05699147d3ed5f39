"""Tests for value mapping, filtering, truncation and field renaming."""

import pytest

from orgsync.errors import ExpressionError
from orgsync.models.describe import FieldDescribe, FieldType
from orgsync.models.script import FieldMappingRule, ScriptObject
from orgsync.services.transformer import (
    ValueMapper,
    filter_records,
    map_record_fields,
    normalize_mapped_value,
    truncate_records,
)


@pytest.fixture
def mapper():
    return ValueMapper()


class TestValueMapper:
    def test_plain_mapping(self, mapper):
        mapper.add_mapping("Account", "Industry", "Tech", "Technology")
        records = [{"Industry": "Tech"}, {"Industry": "Energy"}]

        mapper.map_records("Account", records)

        assert [r["Industry"] for r in records] == ["Technology", "Energy"]

    def test_regex_mapping_with_group_reference(self, mapper):
        mapper.add_mapping("Account", "Code", "/^(\\w+)-old$/", "$1-new")
        records = [{"Code": "abc-old"}, {"Code": "abc-current"}]

        mapper.map_records("Account", records)

        assert [r["Code"] for r in records] == ["abc-new", "abc-current"]

    def test_first_matching_regex_rule_wins(self, mapper):
        mapper.add_mapping("Account", "Code", "/^A.*$/", "starts-with-a")
        mapper.add_mapping("Account", "Code", "/^B.*$/", "starts-with-b")
        mapper.add_mapping("Account", "Code", "/^A1.*$/", "never")
        records = [{"Code": "A1"}, {"Code": "B2"}, {"Code": "C3"}]

        mapper.map_records("Account", records)

        assert [r["Code"] for r in records] == ["starts-with-a", "starts-with-b", "C3"]

    def test_fields_missing_from_the_first_record_are_mapped(self, mapper):
        mapper.add_mapping("Account", "Industry", "Tech", "Technology")
        records = [{"Name": "Acme"}, {"Name": "Globex", "Industry": "Tech"}]

        mapper.map_records("Account", records)

        assert records == [{"Name": "Acme"}, {"Name": "Globex", "Industry": "Technology"}]

    def test_eval_mapping(self, mapper):
        mapper.add_mapping("Account", "Name", "Acme", "eval(upper(RAW_VALUE) + '!')")
        records = [{"Name": "Acme"}]

        mapper.map_records("Account", records)

        assert records[0]["Name"] == "ACME!"

    def test_textual_booleans_and_nulls(self, mapper):
        mapper.add_mapping("Account", "Active__c", "Yes", "TRUE")
        mapper.add_mapping("Account", "Active__c", "Unknown", "null")
        records = [{"Active__c": "Yes"}, {"Active__c": "Unknown"}]

        mapper.map_records("Account", records)

        assert [r["Active__c"] for r in records] == [True, None]

    def test_lookup_resolver_called_for_mapped_fields(self, mapper):
        mapper.add_mapping("Contact", "Account.Name", "Old Co", "New Co")
        calls = []
        records = [{"Account.Name": "Old Co", "LastName": "Smith"}]

        mapper.map_records("Contact", records, lambda record, field, value: calls.append((field, value)))

        assert calls == [("Account.Name", "New Co")]

    def test_other_objects_untouched(self, mapper):
        mapper.add_mapping("Account", "Industry", "Tech", "Technology")
        records = [{"Industry": "Tech"}]

        mapper.map_records("Contact", records)

        assert records[0]["Industry"] == "Tech"
        assert mapper.has_mappings("Account")
        assert not mapper.has_mappings("Contact")

    def test_load_csv(self, mapper, tmp_path):
        path = tmp_path / "ValueMapping.csv"
        path.write_text(
            "ObjectName,FieldName,RawValue,Value\n"
            "Account,Industry,Tech,Technology\n"
            "Contact,LeadSource,Web,Online\n"
            ",Missing,x,y\n"
        )

        assert mapper.load_csv(path, ["Account"]) == 1
        assert mapper.get_field_mapping("Account", "Industry") == {"Tech": "Technology"}
        assert not mapper.has_mappings("Contact")

    def test_load_missing_file(self, mapper, tmp_path):
        assert mapper.load_csv(tmp_path / "nope.csv") == 0


@pytest.mark.parametrize("value,expected", [
    ("true", True),
    (" FALSE ", False),
    ("#N/A", None),
    ("kept", "kept"),
    (5, 5),
])
def test_normalize_mapped_value(value, expected):
    assert normalize_mapped_value(value) == expected


class TestFilterRecords:
    def test_keeps_matching_records(self):
        records = [{"Amount": 10}, {"Amount": 500}, {"Amount": None}]
        assert filter_records(records, "Amount >= 100") == [{"Amount": 500}]

    def test_empty_expression_keeps_everything(self):
        records = [{"Amount": 10}]
        assert filter_records(records, "  ") is records

    def test_invalid_expression(self):
        with pytest.raises(ExpressionError):
            filter_records([{"Amount": 1}], "Amount ==")


def test_truncate_records():
    fields = [
        FieldDescribe(name="Name", type=FieldType.STRING, length=4),
        FieldDescribe(name="Amount", type=FieldType.DOUBLE, length=2),
    ]
    records = [{"Name": "Acme Corporation", "Amount": "12345"}, {"Name": None}]

    truncate_records(records, fields)

    assert records == [{"Name": "Acme", "Amount": "12345"}, {"Name": None}]


def test_map_record_fields():
    obj = ScriptObject(
        query="SELECT Id, Name FROM Account",
        use_field_mapping=True,
        field_mapping=[FieldMappingRule(source_field="Name", target_field="Title__c")],
    )
    records = [{"Id": "001A", "Name": "Acme"}]

    assert map_record_fields(records, obj) == [{"Id": "001A", "Title__c": "Acme"}]
    obj.use_field_mapping = False
    assert map_record_fields(records, obj) is records
