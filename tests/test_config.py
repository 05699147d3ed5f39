"""Tests for script loading and validation."""

import json

import pytest

from orgsync.config import build_script, env_var_name, load_script, parse_script_config, resolve_org
from orgsync.errors import InitializationError
from orgsync.models.script import DataMedia, Operation

SCRIPT = {
    "orgs": [{"name": "prod", "instanceUrl": "https://prod.example.com", "accessToken": "token"}],
    "sourceOrg": "prod",
    "targetOrg": "csvfile",
    "allOrNone": True,
    "bulkApiVersion": 1.0,
    "createTargetCSVFiles": False,
    "objects": [
        {
            "query": "SELECT Id, Name FROM Account",
            "operation": "upsert",
            "externalId": "Name",
            "mockFields": [{"name": "Name", "pattern": "company"}],
            "beforeAddons": [{"module": "core:FieldValues", "args": {"fields": {"Rating": "Hot"}}}],
        },
        {
            "query": "SELECT Id, LastName, AccountId FROM Contact",
            "operation": "Insert",
            "master": False,
            "excludedFields": ["AccountId"],
        },
        {"query": "SELECT Id FROM Lead", "excluded": True},
    ],
}


class TestBuildScript:
    def test_settings_and_objects(self, tmp_path):
        script = build_script(parse_script_config(SCRIPT), tmp_path)

        assert script.all_or_none is True
        assert script.bulk_api_version == "1.0"
        assert script.create_target_csv_files is False
        assert script.base_path == str(tmp_path)
        assert [o.name for o in script.active_objects] == ["Account", "Contact"]

        account, contact = script.active_objects
        assert account.operation == Operation.UPSERT
        assert account.mock_fields[0].pattern == "company"
        assert account.before_addons[0].args == {"fields": {"Rating": "Hot"}}
        assert contact.master is False
        assert contact.field_names == ["Id", "Name", "LastName"]

    def test_orgs(self, tmp_path):
        script = build_script(parse_script_config(SCRIPT), tmp_path)

        assert script.source_org.instance_url == "https://prod.example.com"
        assert script.source_org.media == DataMedia.ORG
        assert script.target_org.media == DataMedia.FILE

    def test_command_line_orgs_override_script(self, tmp_path):
        script = build_script(parse_script_config(SCRIPT), tmp_path, source_org="csvfile", target_org="prod")

        assert script.source_org.is_file_media
        assert script.target_org.access_token == "token"

    def test_unknown_operation(self):
        data = {"objects": [{"query": "SELECT Id FROM Account", "operation": "Replace"}]}
        with pytest.raises(InitializationError):
            parse_script_config(data)

    def test_query_max_length_lower_bound(self):
        with pytest.raises(InitializationError):
            parse_script_config({"queryMaxLength": 10})

    def test_malformed_query(self):
        config = parse_script_config({"objects": [{"query": "Account"}]})
        with pytest.raises(InitializationError, match="object #1"):
            build_script(config)

    def test_duplicate_objects(self):
        config = parse_script_config({"objects": [
            {"query": "SELECT Id FROM Account"},
            {"query": "SELECT Id, Name FROM Account"},
        ]})
        with pytest.raises(InitializationError, match="Account"):
            build_script(config)


class TestResolveOrg:
    def test_env_var_name(self):
        assert env_var_name("my-org.sandbox", "ACCESS_TOKEN") == "ORGSYNC_MY_ORG_SANDBOX_ACCESS_TOKEN"

    def test_credentials_from_environment(self, monkeypatch):
        monkeypatch.setenv("ORGSYNC_DEV_INSTANCE_URL", "https://dev.example.com")
        monkeypatch.setenv("ORGSYNC_DEV_ACCESS_TOKEN", "dev-token")

        org = resolve_org(parse_script_config({"apiVersion": "60.0"}), "dev")

        assert org.instance_url == "https://dev.example.com"
        assert org.access_token == "dev-token"
        assert org.api_version == "60.0"

    def test_no_name(self):
        assert resolve_org(parse_script_config({}), None) is None


class TestLoadScript:
    def test_load_from_directory(self, tmp_path):
        (tmp_path / "export.json").write_text(json.dumps(SCRIPT))

        script = load_script(tmp_path)

        assert script.base_path == str(tmp_path)
        assert len(script.objects) == 3

    def test_missing_file(self, tmp_path):
        with pytest.raises(InitializationError, match="not found"):
            load_script(tmp_path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "export.json"
        path.write_text("{not json")
        with pytest.raises(InitializationError, match="not valid JSON"):
            load_script(path)
