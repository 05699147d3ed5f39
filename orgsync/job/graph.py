"""Ordering of job tasks by object dependencies."""

from typing import TYPE_CHECKING, Dict, List, Sequence

from ..constants import RECORD_TYPE_OBJECT_NAME
from ..models.script import ScriptObject

if TYPE_CHECKING:
    from .task import MigrationJobTask

MAX_REORDER_ITERATIONS = 10


def build_task_chain(
    objects: Sequence[ScriptObject],
    tasks_by_name: Dict[str, "MigrationJobTask"],
    keep_object_order: bool = False,
) -> List["MigrationJobTask"]:
    """
    Order the tasks of objects so that lookup parents come before children.

    RecordType goes first and read-only objects follow it in declaration
    order. Every other object is inserted before the earliest placed task
    that looks it up, unless that task is one of its own master-detail
    parents, and otherwise appended.

    Args:
        objects: Objects in declaration order
        tasks_by_name: Task of each object name
        keep_object_order: Keep the declaration order, only moving RecordType first

    Returns:
        Ordered list of tasks
    """
    if keep_object_order:
        record_types = [tasks_by_name[o.name] for o in objects if o.name == RECORD_TYPE_OBJECT_NAME]
        others = [tasks_by_name[o.name] for o in objects if o.name != RECORD_TYPE_OBJECT_NAME]
        return record_types + others

    tasks: List["MigrationJobTask"] = []
    lower_index_for_any_objects = 0
    lower_index_for_readonly_objects = 0

    for obj in objects:
        task = tasks_by_name.get(obj.name)
        if task is None:
            continue

        if obj.name == RECORD_TYPE_OBJECT_NAME:
            tasks.insert(0, task)
            lower_index_for_any_objects += 1
            lower_index_for_readonly_objects += 1
            continue

        if obj.is_readonly_object and not obj.is_hierarchical_delete_operation:
            tasks.insert(lower_index_for_readonly_objects, task)
            lower_index_for_readonly_objects += 1
            lower_index_for_any_objects += 1
            continue

        index_to_insert = len(tasks)
        for index in range(len(tasks) - 1, lower_index_for_any_objects - 1, -1):
            placed = tasks[index].script_object
            is_parent_lookup = obj.name in placed.parent_lookup_object_names
            is_own_master = placed.name in obj.parent_master_detail_object_names
            if is_parent_lookup and not is_own_master:
                index_to_insert = index
        tasks.insert(index_to_insert, task)

    return tasks


def put_master_details_before(tasks: List["MigrationJobTask"]) -> None:
    """Move master-detail parents ahead of their children, in place."""
    limit = max(MAX_REORDER_ITERATIONS, len(tasks))
    swapped = True
    iteration = 0
    while swapped and iteration < limit:
        swapped = False
        iteration += 1
        snapshot = list(tasks)
        for left_index, left in enumerate(snapshot[:-1]):
            for right in snapshot[left_index + 1:]:
                right_is_parent = right.script_object.name in left.script_object.parent_master_detail_object_names
                left_position = tasks.index(left)
                right_position = tasks.index(right)
                if right_is_parent and right_position > left_position:
                    tasks.pop(right_position)
                    tasks.insert(left_position, right)
                    swapped = True


def update_query_task_order(tasks: List["MigrationJobTask"], special_order: Dict[str, List[str]]) -> bool:
    """
    Move objects that must be queried before some others, in place.

    An object listed in the special order is moved before the objects it
    names, when it is a master object or both objects are non-master.

    Returns:
        True when any task moved
    """
    swapped = False
    snapshot = list(tasks)
    for left_index, left in enumerate(snapshot[:-1]):
        for right in snapshot[left_index + 1:]:
            children = special_order.get(right.script_object.name) or []
            right_master = right.script_object.master
            left_master = left.script_object.master
            should_move = left.script_object.name in children and (
                right_master or (not left_master and not right_master)
            )
            left_position = tasks.index(left)
            right_position = tasks.index(right)
            if should_move and right_position > left_position:
                tasks.pop(right_position)
                tasks.insert(left_position, right)
                swapped = True
    return swapped


def apply_special_task_order(tasks: List["MigrationJobTask"], special_order: Dict[str, List[str]]) -> None:
    """Move each object listed in the special order before the objects it names, in place."""
    for left_index in range(len(tasks) - 1):
        for right_index in range(left_index + 1, len(tasks)):
            left = tasks[left_index]
            right = tasks[right_index]
            children = special_order.get(right.script_object.name) or []
            if left.script_object.name in children:
                tasks.pop(right_index)
                tasks.insert(left_index, right)
