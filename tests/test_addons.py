"""Tests for add-on modules and their events."""

import pytest

from orgsync.addons import AddonEvent, AddonManager, AddonModule, AddonRegistry
from orgsync.errors import AbortedByAddonError, InitializationError
from orgsync.models.script import AddonDeclaration, Script, ScriptObject


class TagAddon(AddonModule):
    """Records the contexts it ran with."""

    seen = []

    def run(self, context, records):
        TagAddon.seen.append((context.event, context.object_name, context.simulation_mode))
        return None


def script_with(**addons):
    obj = ScriptObject(query="SELECT Id, Name FROM Account", **addons)
    return Script(objects=[obj])


class TestRegistry:
    def test_unknown_module(self):
        with pytest.raises(InitializationError, match="custom:Missing"):
            AddonRegistry().create(AddonDeclaration(module="custom:Missing"))

    def test_records_filter_requires_expression(self):
        with pytest.raises(InitializationError):
            AddonRegistry().create(AddonDeclaration(module="core:RecordsFilter"))

    def test_records_filter_rejects_invalid_expression(self):
        declaration = AddonDeclaration(module="core:RecordsFilter", args={"expression": "Name.__class__()"})
        with pytest.raises(InitializationError):
            AddonRegistry().create(declaration)

    def test_without_builtins(self):
        assert AddonRegistry().has("core:Abort")
        assert not AddonRegistry(include_builtins=False).has("core:Abort")


class TestManager:
    def test_modules_run_in_declaration_order(self):
        script = script_with(filter_records_addons=[
            AddonDeclaration(module="core:FieldValues", args={"fields": {"Rating": "Hot"}}),
            AddonDeclaration(module="core:RecordsFilter", args={"expression": "Name != 'Globex'"}),
        ])
        manager = AddonManager()
        assert manager.load(script) == 2

        records = [{"Name": "Acme"}, {"Name": "Globex"}]
        kept = manager.trigger(AddonEvent.FILTER_RECORDS, "Account", records)

        assert kept == [{"Name": "Acme", "Rating": "Hot"}]
        assert manager.has_addons(AddonEvent.FILTER_RECORDS, "Account")
        assert not manager.has_addons(AddonEvent.ON_AFTER, "Account")

    def test_event_without_modules_returns_records(self):
        records = [{"Name": "Acme"}]
        assert AddonManager().trigger(AddonEvent.ON_BEFORE, "Account", records) is records

    def test_custom_module_sees_context(self):
        TagAddon.seen = []
        registry = AddonRegistry()
        registry.register("custom:Tag", TagAddon)
        manager = AddonManager(registry=registry, simulation_mode=True)
        manager.load(script_with(after_update_addons=[AddonDeclaration(module="custom:Tag")]))

        records = [{"Name": "Acme"}]
        assert manager.trigger(AddonEvent.ON_AFTER_UPDATE, "Account", records) is records
        assert TagAddon.seen == [(AddonEvent.ON_AFTER_UPDATE, "Account", True)]

    def test_abort(self):
        manager = AddonManager()
        manager.load(script_with(after_addons=[AddonDeclaration(module="core:Abort")]))

        with pytest.raises(AbortedByAddonError, match="Account"):
            manager.trigger(AddonEvent.ON_AFTER, "Account", [])

    def test_context_carries_the_pass_number(self):
        seen = []

        class PassAddon(AddonModule):
            def run(self, context, records):
                seen.append((context.pass_number, context.is_first_pass))

        registry = AddonRegistry()
        registry.register("custom:Pass", PassAddon)
        manager = AddonManager(registry=registry)
        manager.load(script_with(before_update_addons=[AddonDeclaration(module="custom:Pass")]))

        manager.trigger(AddonEvent.ON_BEFORE_UPDATE, "Account", [])
        manager.trigger(AddonEvent.ON_BEFORE_UPDATE, "Account", [], pass_number=2)

        assert seen == [(0, True), (2, False)]


class TestRecordsTransform:
    def test_requires_transformations(self):
        with pytest.raises(InitializationError, match="transformations"):
            AddonRegistry().create(AddonDeclaration(module="core:RecordsTransform", args={"fields": []}))

    def test_rejects_invalid_formula(self):
        args = {"transformations": [{"targetField": "Description", "formula": "Name +"}]}
        with pytest.raises(InitializationError):
            AddonRegistry().create(AddonDeclaration(module="core:RecordsTransform", args=args))

    def test_formula_over_fields_of_the_same_record(self):
        args = {
            "fields": [
                {"alias": "name", "sourceObject": "Account", "sourceField": "Name"},
                {"alias": "suffix", "isConstant": True, "constantValue": " (migrated)"},
            ],
            "transformations": [
                {"targetObject": "Account", "targetField": "Description", "formula": "name + suffix"},
                {"targetObject": "Contact", "targetField": "Title", "formula": "'never'"},
            ],
        }
        manager = AddonManager()
        manager.load(script_with(before_addons=[AddonDeclaration(module="core:RecordsTransform", args=args)]))

        records = manager.trigger(AddonEvent.ON_BEFORE, "Account", [{"Id": "001A", "Name": "Acme"}])

        assert records == [{"Id": "001A", "Name": "Acme", "Description": "Acme (migrated)"}]
