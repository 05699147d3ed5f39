"""End-to-end migration runs against in-memory orgs."""

import csv

import pytest

from conftest import FakeOrg, fake_engine_factory
from orgsync.addons import AddonModule, AddonRegistry
from orgsync.csv_store import CsvStore
from orgsync.errors import AbortedByAddonError, InitializationError
from orgsync.job import MigrationJob
from orgsync.models.migration import MigrationStatus
from orgsync.models.script import AddonDeclaration, Operation, ScriptObject

ACCOUNTS = [
    {"Id": "001A", "Name": "Acme", "Industry": "Tech"},
    {"Id": "001B", "Name": "Globex", "Industry": "Energy"},
]
CONTACTS = [
    {"Id": "003A", "LastName": "Smith", "Email": "smith@acme.test", "AccountId": "001A"},
    {"Id": "003B", "LastName": "Jones", "Email": "jones@globex.test", "AccountId": "001B"},
]


def account_object(**kwargs):
    kwargs.setdefault("operation", Operation.UPSERT)
    return ScriptObject(query="SELECT Id, Name, Industry FROM Account", **kwargs)


def contact_object(**kwargs):
    kwargs.setdefault("operation", Operation.UPSERT)
    kwargs.setdefault("external_id", "LastName")
    return ScriptObject(query="SELECT Id, LastName, Email, AccountId FROM Contact", **kwargs)


def run_job(script, source, target, tmp_path, **kwargs):
    job = MigrationJob(
        script,
        source_connection=source,
        target_connection=target,
        csv_store=CsvStore(tmp_path),
        engine_factory=fake_engine_factory,
        **kwargs,
    )
    return job, job.execute()


def target_names(org, object_name, field_name="Name"):
    return sorted(r.get(field_name) for r in org.records.get(object_name, []))


class TestUpsert:
    def test_inserts_new_and_updates_changed_records(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes, {"Account": [{"Id": "T-ACME", "Name": "Acme", "Industry": "Old"}]})
        script = make_script(account_object())

        job, run = run_job(script, source, target, tmp_path)

        assert run.status == MigrationStatus.COMPLETED
        assert target_names(target, "Account") == ["Acme", "Globex"]
        assert target.find("Account", "T-ACME")["Industry"] == "Tech"
        step = run.get_step("Account")
        assert step.passes["forwards"].inserted == 1
        assert step.passes["forwards"].updated == 1
        assert step.status == MigrationStatus.COMPLETED

    def test_parents_written_before_children_and_lookups_remapped(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS, "Contact": CONTACTS})
        target = FakeOrg(describes)
        # Children declared first on purpose
        script = make_script(contact_object(), account_object())

        job, run = run_job(script, source, target, tmp_path)

        assert [t.name for t in job.update_tasks] == ["Account", "Contact"]
        inserted_objects = [name for operation, name, _ in target.operations if operation == Operation.INSERT]
        assert inserted_objects == ["Account", "Contact"]

        account_ids = {r["Name"]: r["Id"] for r in target.records["Account"]}
        contact_accounts = {r["LastName"]: r["AccountId"] for r in target.records["Contact"]}
        assert contact_accounts == {"Smith": account_ids["Acme"], "Jones": account_ids["Globex"]}
        assert not set(contact_accounts.values()) & {"001A", "001B"}

    def test_second_run_changes_nothing(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS, "Contact": CONTACTS})
        target = FakeOrg(describes)

        run_job(make_script(account_object(), contact_object()), source, target, tmp_path)
        writes = len(target.operations)
        _, run = run_job(make_script(account_object(), contact_object()), source, target, tmp_path)

        assert run.total_records_processed == 0
        assert len(target.operations) == writes
        assert len(target.records["Account"]) == 2
        assert len(target.records["Contact"]) == 2

    def test_inserted_records_carry_the_source_id(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS[:1]})
        target = FakeOrg(describes)

        job, _ = run_job(make_script(account_object()), source, target, tmp_path)

        (_, _, payload), = target.operations
        assert "Id" not in payload[0]
        inserted = job.get_task("Account").processed_data.records_to_insert
        assert inserted[0]["___SourceId"] == "001A"
        assert inserted[0]["Id"] != "001A"

    def test_target_files_written(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes)

        run_job(make_script(account_object()), source, target, tmp_path)

        with open(tmp_path / "target" / "Account_insert_target.csv", newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["Name"] for r in rows] == ["Acme", "Globex"]
        assert {r["Old Id"] for r in rows} == {"001A", "001B"}
        assert list(rows[0].keys())[0] == "Id"
        assert list(rows[0].keys())[-1] == "Errors"


class TestOperations:
    def test_update_does_not_insert_missing_records(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes, {"Account": [{"Id": "T-ACME", "Name": "Acme", "Industry": "Old"}]})

        _, run = run_job(make_script(account_object(operation=Operation.UPDATE)), source, target, tmp_path)

        assert target_names(target, "Account") == ["Acme"]
        assert run.get_step("Account").passes["forwards"].inserted == 0

    def test_insert_does_not_query_the_target(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes, {"Account": [{"Id": "T-ACME", "Name": "Acme", "Industry": "Tech"}]})

        run_job(make_script(account_object(operation=Operation.INSERT)), source, target, tmp_path)

        assert target.queries == []
        assert target_names(target, "Account") == ["Acme", "Acme", "Globex"]

    def test_readonly_object_is_not_written(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes)

        run_job(make_script(account_object(operation=Operation.READONLY)), source, target, tmp_path)

        assert target.operations == []

    def test_skip_existing_records(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes, {"Account": [{"Id": "T-ACME", "Name": "Acme", "Industry": "Old"}]})

        run_job(make_script(account_object(skip_existing_records=True)), source, target, tmp_path)

        assert target.find("Account", "T-ACME")["Industry"] == "Old"
        assert target_names(target, "Account") == ["Acme", "Globex"]

    def test_excluded_from_update_fields_kept_on_update(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS[:1]})
        target = FakeOrg(describes, {"Account": [{"Id": "T-ACME", "Name": "Acme", "Industry": "Old"}]})

        run_job(make_script(account_object(excluded_from_update_fields=["Industry"])), source, target, tmp_path)

        assert target.find("Account", "T-ACME")["Industry"] == "Old"

    def test_delete_old_data_clears_target_first(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes, {"Account": [{"Id": "T-OLD", "Name": "Stale", "Industry": "None"}]})

        _, run = run_job(make_script(account_object(delete_old_data=True)), source, target, tmp_path)

        assert target_names(target, "Account") == ["Acme", "Globex"]
        assert run.get_step("Account").passes["delete old data"].deleted == 1

    def test_delete_by_hierarchy_removes_matching_target_records(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS[:1]})
        target = FakeOrg(describes, {"Account": [dict(ACCOUNTS[0]), dict(ACCOUNTS[1])]})
        obj = account_object(operation=Operation.DELETE, delete_by_hierarchy=True)

        _, run = run_job(make_script(obj), source, target, tmp_path)

        assert target_names(target, "Account") == ["Globex"]
        assert run.get_step("Account").passes["delete"].deleted == 1

    def test_delete_from_source(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": [dict(r) for r in ACCOUNTS]})
        target = FakeOrg(describes, {"Account": [dict(ACCOUNTS[0])]})
        obj = account_object(operation=Operation.DELETE, delete_from_source=True)

        _, run = run_job(make_script(obj), source, target, tmp_path)

        assert source.records["Account"] == []
        assert target_names(target, "Account") == ["Acme"]
        assert run.get_step("Account").passes["forwards"].deleted == 2

    def test_failed_records_reported_on_the_step(self, describes, make_script, tmp_path):
        rows = ACCOUNTS + [{"Id": "001C", "Name": "REJECT", "Industry": "Tech"}]
        source = FakeOrg(describes, {"Account": rows})
        target = FakeOrg(describes)

        _, run = run_job(make_script(account_object()), source, target, tmp_path)

        step = run.get_step("Account")
        assert run.status == MigrationStatus.COMPLETED
        assert step.records_failed == 1
        assert step.status == MigrationStatus.FAILED
        assert "FIELD_CUSTOM_VALIDATION_EXCEPTION" in step.errors[0]["error"]


class TestLookups:
    def test_self_lookup_set_by_backwards_pass(self, describes, make_script, tmp_path):
        rows = [
            {"Id": "001A", "Name": "Parent Co", "Industry": "Tech", "ParentId": None},
            {"Id": "001B", "Name": "Child Co", "Industry": "Tech", "ParentId": "001A"},
        ]
        source = FakeOrg(describes, {"Account": rows})
        target = FakeOrg(describes)
        obj = ScriptObject(query="SELECT Id, Name, Industry, ParentId FROM Account", operation=Operation.UPSERT)

        _, run = run_job(make_script(obj), source, target, tmp_path)

        ids = {r["Name"]: r["Id"] for r in target.records["Account"]}
        child = target.find("Account", ids["Child Co"])
        assert child["ParentId"] == ids["Parent Co"]
        assert run.get_step("Account").passes["backwards 1"].updated == 1
        assert run.passes_executed == 3

    def test_missing_parent_reported(self, describes, make_script, tmp_path):
        contacts = [{"Id": "003A", "LastName": "Orphan", "Email": None, "AccountId": "001MISSING"}]
        source = FakeOrg(describes, {"Account": ACCOUNTS, "Contact": contacts})
        target = FakeOrg(describes)

        job, run = run_job(make_script(account_object(), contact_object()), source, target, tmp_path)

        assert target.records["Contact"][0]["AccountId"] is None
        assert run.get_step("Contact").missing_parent_lookups == 1
        report = tmp_path / "target" / "MissingParentRecordsReport.csv"
        with open(report, newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 1
        assert rows[0]["Lookup field name"] == "AccountId"
        assert rows[0]["Parent SObject name"] == "Account"
        assert rows[0]["Missing parent External Id value"] == "001MISSING"

    def test_child_records_filtered_by_retrieved_parents(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS, "Contact": CONTACTS})
        target = FakeOrg(describes)
        account = ScriptObject(
            query="SELECT Id, Name, Industry FROM Account WHERE Name = 'Acme'",
            operation=Operation.UPSERT,
        )
        contact = contact_object(master=False)

        job, _ = run_job(make_script(account, contact), source, target, tmp_path)

        assert any("AccountId IN ('001A')" in q for q in source.queries)
        assert target_names(target, "Contact", "LastName") == ["Smith"]
        assert any("LastName IN ('Smith')" in q for q in target.queries)


class TestRunModes:
    def test_simulation_leaves_target_untouched(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS, "Contact": CONTACTS})
        target = FakeOrg(describes)
        script = make_script(account_object(), contact_object(), simulation_mode=True)

        _, run = run_job(script, source, target, tmp_path)

        assert run.simulation is True
        assert run.status == MigrationStatus.COMPLETED
        assert target.operations == []
        assert run.get_step("Contact").passes["forwards"].inserted == 2

    def test_csv_source_to_org(self, describes, make_script, csv_org, tmp_path):
        (tmp_path / "Account.csv").write_text("Id,Name,Industry\n001A,Acme,Tech\n001B,Globex,Energy\n")
        target = FakeOrg(describes)
        script = make_script(account_object(), source_org=csv_org)

        _, run = run_job(script, None, target, tmp_path)

        assert run.status == MigrationStatus.COMPLETED
        assert target_names(target, "Account") == ["Acme", "Globex"]

    def test_org_to_csv_target(self, describes, make_script, csv_org, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        script = make_script(account_object(), target_org=csv_org)

        _, run = run_job(script, source, None, tmp_path)

        assert run.passes_executed == 1
        records = CsvStore(tmp_path).read_records(tmp_path / "target" / "Account.csv")
        assert sorted(r["Name"] for r in records) == ["Acme", "Globex"]

    def test_abort_addon_stops_the_run(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes)
        obj = account_object(before_addons=[AddonDeclaration(module="core:Abort", args={"message": "stop here"})])

        job = MigrationJob(
            make_script(obj),
            source_connection=source,
            target_connection=target,
            csv_store=CsvStore(tmp_path),
            engine_factory=fake_engine_factory,
        )
        with pytest.raises(AbortedByAddonError, match="stop here"):
            job.execute()

        assert job.run.status == MigrationStatus.ABORTED
        assert job.run.errors[0]["error"] == "stop here"
        assert target.operations == []

    def test_script_without_objects_fails(self, make_script, tmp_path):
        job = MigrationJob(make_script(), csv_store=CsvStore(tmp_path))

        with pytest.raises(InitializationError):
            job.execute()
        assert job.run.status == MigrationStatus.FAILED


class CopyingAddon(AddonModule):
    """Returns copies of the records, leaving out the ``drop`` name."""

    def run(self, context, records):
        return [dict(r) for r in records if r.get("Name") != self.args.get("drop")]


class TestAddonRecords:
    @pytest.fixture
    def registry(self):
        registry = AddonRegistry()
        registry.register("custom:Copy", CopyingAddon)
        return registry

    def test_copies_returned_by_addons_keep_their_records(self, describes, make_script, registry, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes, {"Account": [{"Id": "T-ACME", "Name": "Acme", "Industry": "Old"}]})
        copy = [AddonDeclaration(module="custom:Copy")]
        obj = account_object(before_addons=copy, filter_records_addons=copy, before_update_addons=copy)

        _, run = run_job(make_script(obj), source, target, tmp_path, addon_registry=registry)

        assert target_names(target, "Account") == ["Acme", "Globex"]
        assert target.find("Account", "T-ACME")["Industry"] == "Tech"
        forwards = run.get_step("Account").passes["forwards"]
        assert (forwards.inserted, forwards.updated) == (1, 1)

    def test_records_left_out_by_a_source_addon_are_not_migrated(self, describes, make_script, registry, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS})
        target = FakeOrg(describes)
        obj = account_object(before_addons=[AddonDeclaration(module="custom:Copy", args={"drop": "Globex"})])

        job, _ = run_job(make_script(obj), source, target, tmp_path, addon_registry=registry)

        assert target_names(target, "Account") == ["Acme"]
        assert list(job.get_task("Account").source_data.id_records_map) == ["001A"]

    def test_records_transform_reads_related_records(self, describes, make_script, tmp_path):
        source = FakeOrg(describes, {"Account": ACCOUNTS, "Contact": CONTACTS})
        target = FakeOrg(describes)
        account = account_object(before_addons=[AddonDeclaration(module="core:RecordsTransform", args={
            "fields": [{"alias": "contactName", "sourceObject": "Contact", "sourceField": "LastName"}],
            "transformations": [{"targetField": "Industry", "formula": "coalesce(contactName, 'none')"}],
        })])
        contact = contact_object(before_update_addons=[AddonDeclaration(module="core:RecordsTransform", args={
            "fields": [{"alias": "accountName", "sourceObject": "Account", "sourceField": "Name"}],
            "transformations": [{"targetField": "Email", "formula": "lower(accountName) + '@corp.test'"}],
        })])

        run_job(make_script(account, contact), source, target, tmp_path)

        industries = {r["Name"]: r["Industry"] for r in target.records["Account"]}
        emails = {r["LastName"]: r["Email"] for r in target.records["Contact"]}
        assert industries == {"Acme": "Smith", "Globex": "Jones"}
        assert emails == {"Smith": "acme@corp.test", "Jones": "globex@corp.test"}

    def test_pass_number_reaches_update_addons(self, describes, make_script, registry, tmp_path):
        seen = []

        class PassAddon(AddonModule):
            def run(self, context, records):
                seen.append((context.pass_number, context.is_first_pass))

        registry.register("custom:Pass", PassAddon)
        rows = [
            {"Id": "001A", "Name": "Parent Co", "Industry": "Tech", "ParentId": None},
            {"Id": "001B", "Name": "Child Co", "Industry": "Tech", "ParentId": "001A"},
        ]
        source = FakeOrg(describes, {"Account": rows})
        target = FakeOrg(describes)
        obj = ScriptObject(
            query="SELECT Id, Name, Industry, ParentId FROM Account",
            operation=Operation.UPSERT,
            before_update_addons=[AddonDeclaration(module="custom:Pass")],
        )

        run_job(make_script(obj), source, target, tmp_path, addon_registry=registry)

        assert seen[0] == (0, True)
        assert seen[1] == (1, False)


class TestCsvSources:
    def test_csv_source_without_id_column_updates_by_external_id(self, describes, make_script, csv_org, tmp_path):
        (tmp_path / "Account.csv").write_text("Name,Industry\nAcme,Tech\nGlobex,Energy\n")
        target = FakeOrg(describes, {"Account": [{"Id": "T-ACME", "Name": "Acme", "Industry": "Old"}]})
        script = make_script(account_object(), source_org=csv_org)

        _, run = run_job(script, None, target, tmp_path)

        assert run.status == MigrationStatus.COMPLETED
        assert target_names(target, "Account") == ["Acme", "Globex"]
        assert target.find("Account", "T-ACME")["Industry"] == "Tech"
        assert len(target.records["Account"]) == 2
