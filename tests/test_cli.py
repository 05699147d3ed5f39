"""Tests for the command line interface."""

import json

import pytest

from orgsync.cli import build_parser, main
from orgsync.csv_store import CsvStore

SCRIPT = {
    "objects": [
        {"query": "SELECT Id, Name, Industry FROM Account", "operation": "Upsert", "externalId": "Name"},
    ],
}


@pytest.fixture
def script_dir(tmp_path):
    (tmp_path / "export.json").write_text(json.dumps(SCRIPT))
    (tmp_path / "Account.csv").write_text("Id,Name,Industry\n001A,Acme,Tech\n001B,Globex,Energy\n")
    return tmp_path


class TestParser:
    def test_run_arguments(self):
        args = build_parser().parse_args(["run", "--path", "data", "--source", "prod", "--simulation", "--use-rest"])

        assert args.command == "run"
        assert args.path == "data"
        assert args.source == "prod"
        assert args.simulation is True
        assert args.use_rest is True
        assert args.use_bulk is False

    def test_api_flags_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "--use-bulk", "--use-rest"])


class TestMain:
    def test_validate(self, script_dir, capsys):
        assert main(["validate", "--path", str(script_dir)]) == 0
        assert "Script is valid!" in capsys.readouterr().out

    def test_missing_script(self, tmp_path):
        assert main(["run", "--path", str(tmp_path / "missing")]) == 1

    def test_csv_to_csv_run(self, script_dir, capsys):
        report = script_dir / "report.json"

        code = main([
            "run", "--path", str(script_dir),
            "--source", "csvfile", "--target", "csvfile",
            "--report", str(report),
        ])

        assert code == 0
        assert "Status: completed" in capsys.readouterr().out
        records = CsvStore(script_dir).read_records(script_dir / "target" / "Account.csv")
        assert sorted(r["Name"] for r in records) == ["Acme", "Globex"]
        assert json.loads(report.read_text())["status"] == "completed"
