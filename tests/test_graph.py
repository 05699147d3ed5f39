"""Tests for task ordering."""

from types import SimpleNamespace

from orgsync.job.graph import (
    apply_special_task_order,
    build_task_chain,
    put_master_details_before,
    update_query_task_order,
)
from orgsync.models.script import Operation, ScriptObject


def make_object(name, lookups=(), masters=(), operation=Operation.UPSERT, master=True):
    obj = ScriptObject(query=f"SELECT Id FROM {name}", operation=operation, master=master)
    obj.parent_lookup_object_names = list(lookups) + [m for m in masters if m not in lookups]
    obj.parent_master_detail_object_names = list(masters)
    return obj


def chain(objects, keep_object_order=False):
    tasks_by_name = {o.name: SimpleNamespace(name=o.name, script_object=o) for o in objects}
    return build_task_chain(objects, tasks_by_name, keep_object_order)


def names(tasks):
    return [t.name for t in tasks]


class TestBuildTaskChain:
    def test_lookup_parent_declared_later_goes_first(self):
        objects = [make_object("Contact", lookups=["Account"]), make_object("Account")]
        assert names(chain(objects)) == ["Account", "Contact"]

    def test_record_type_and_readonly_objects_lead(self):
        objects = [
            make_object("Account"),
            make_object("User", operation=Operation.READONLY),
            make_object("RecordType", operation=Operation.READONLY),
        ]
        assert names(chain(objects)) == ["RecordType", "User", "Account"]

    def test_grandparents_before_parents(self):
        objects = [
            make_object("Case", lookups=["Contact", "Account"]),
            make_object("Contact", lookups=["Account"]),
            make_object("Account"),
        ]
        assert names(chain(objects)) == ["Account", "Contact", "Case"]

    def test_keep_object_order_only_moves_record_type(self):
        objects = [
            make_object("Contact", lookups=["Account"]),
            make_object("Account"),
            make_object("RecordType", operation=Operation.READONLY),
        ]
        assert names(chain(objects, keep_object_order=True)) == ["RecordType", "Contact", "Account"]

    def test_own_master_is_not_displaced(self):
        # Detail__c is a master-detail child of Master__c, which also looks up Detail__c
        objects = [
            make_object("Master__c", lookups=["Detail__c"]),
            make_object("Detail__c", masters=["Master__c"]),
        ]
        assert names(chain(objects)) == ["Master__c", "Detail__c"]


class TestReordering:
    def test_master_detail_parents_move_ahead(self):
        detail = make_object("Line__c", masters=["Order__c"])
        order = make_object("Order__c")
        tasks = [SimpleNamespace(name=o.name, script_object=o) for o in (detail, order)]

        put_master_details_before(tasks)

        assert names(tasks) == ["Order__c", "Line__c"]

    def test_special_query_order(self):
        objects = [make_object("Account"), make_object("AccountContactRelation")]
        tasks = [SimpleNamespace(name=o.name, script_object=o) for o in objects]

        moved = update_query_task_order(tasks, {"AccountContactRelation": ["Account"]})

        assert moved
        assert names(tasks) == ["AccountContactRelation", "Account"]
        assert not update_query_task_order(tasks, {"AccountContactRelation": ["Account"]})

    def test_special_query_order_skips_non_master_before_master(self):
        objects = [make_object("Account"), make_object("AccountContactRelation", master=False)]
        tasks = [SimpleNamespace(name=o.name, script_object=o) for o in objects]

        assert not update_query_task_order(tasks, {"AccountContactRelation": ["Account"]})
        assert names(tasks) == ["Account", "AccountContactRelation"]

    def test_special_update_order(self):
        objects = [make_object("ProductAttribute"), make_object("ProductAttributeSetProduct")]
        tasks = [SimpleNamespace(name=o.name, script_object=o) for o in objects]

        apply_special_task_order(tasks, {"ProductAttributeSetProduct": ["ProductAttribute"]})

        assert names(tasks) == ["ProductAttributeSetProduct", "ProductAttribute"]
