"""Query composition and planning."""

from .soql import ParsedQuery, split_field_list
from .planner import QueryPlanner, chunk_in_clause, escape_value

__all__ = [
    "ParsedQuery",
    "split_field_list",
    "QueryPlanner",
    "chunk_in_clause",
    "escape_value",
]
