"""Migration job and its per-object tasks."""

from .job import MigrationJob
from .task import MigrationJobTask
from .graph import (
    apply_special_task_order,
    build_task_chain,
    put_master_details_before,
    update_query_task_order,
)

__all__ = [
    "MigrationJob",
    "MigrationJobTask",
    "apply_special_task_order",
    "build_task_chain",
    "put_master_details_before",
    "update_query_task_order",
]
