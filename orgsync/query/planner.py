"""Query planning: base queries, filter merging and IN-clause chunking."""

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from ..constants import (
    GROUP_OBJECT_NAME,
    ID_FIELD_NAME,
    MAX_QUERY_CHARACTER_LENGTH,
    RECORD_TYPE_OBJECT_NAME,
    USER_OBJECT_NAME,
)
from .soql import ParsedQuery

if TYPE_CHECKING:
    from ..job.task import MigrationJobTask

logger = logging.getLogger(__name__)

# Objects that are always read in full and never filtered by IN clauses
OBJECTS_NOT_TO_USE_IN_FILTERED_QUERY_IN_CLAUSE = [
    RECORD_TYPE_OBJECT_NAME,
    USER_OBJECT_NAME,
    GROUP_OBJECT_NAME,
    "DandBCompany",
]


def escape_value(value: str) -> str:
    """Escape a literal for use inside single quotes."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def compose_in_query(base: ParsedQuery, field_name: str, quoted_values: List[str]) -> str:
    """Compose a query with an IN predicate ANDed to its WHERE clause."""
    query = base.copy()
    query.and_where(f"{field_name} IN ({', '.join(quoted_values)})")
    return query.compose()


def chunk_in_clause(
    base_query: str,
    field_name: str,
    values: Iterable[str],
    max_length: int = MAX_QUERY_CHARACTER_LENGTH,
) -> List[str]:
    """
    Split a set of values for one IN predicate into length-bounded queries.

    Values are trimmed, deduplicated, escaped and quoted, then packed
    greedily: a value that would push the composed query past ``max_length``
    starts a new query. A value too long to fit in any query is skipped.

    Args:
        base_query: Query the predicate is merged into
        field_name: Field tested by the IN predicate
        values: Literal values
        max_length: Maximum length of each composed query

    Returns:
        List of query strings, empty when there are no values
    """
    base = ParsedQuery.parse(base_query)
    quoted = []
    seen = set()
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        quoted.append(f"'{escape_value(text)}'")

    queries = []
    current: List[str] = []
    for literal in quoted:
        if len(compose_in_query(base, field_name, [literal])) > max_length:
            logger.warning(
                f"{field_name}: value {literal[:50]} does not fit in a query of {max_length} characters, skipped"
            )
            continue
        candidate = current + [literal]
        if current and len(compose_in_query(base, field_name, candidate)) > max_length:
            queries.append(compose_in_query(base, field_name, current))
            current = [literal]
        else:
            current = candidate
    if current:
        queries.append(compose_in_query(base, field_name, current))
    return queries


class QueryPlanner:
    """
    Builds the queries a task runs against its source and target.

    The planner reads the state of the owning task and of the other tasks in
    the job (already retrieved ids and external ids) to restrict queries to
    the records that are actually related.
    """

    def __init__(
        self,
        task: "MigrationJobTask",
        max_length: int = MAX_QUERY_CHARACTER_LENGTH,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the planner.

        Args:
            task: Task the queries are planned for
            max_length: Maximum length of a single query
            logger: Logger to use instead of the module logger
        """
        self.task = task
        self.max_length = max_length
        self.logger = logger or logging.getLogger(__name__)

    @property
    def script_object(self):
        return self.task.script_object

    def create_query(
        self,
        field_names: Optional[List[str]] = None,
        remove_limits: bool = False,
        is_target_query: bool = False,
    ) -> str:
        """
        Build the base query of the object.

        Args:
            field_names: Fields to select instead of the configured ones
            remove_limits: Strip ORDER BY/LIMIT/OFFSET
            is_target_query: Build the query for the target side

        Returns:
            Query string
        """
        obj = self.script_object
        query = obj.parsed_query
        if field_names:
            query.fields = list(field_names)

        if is_target_query:
            query.object_name = obj.target_object_name
            if field_names is None:
                query.fields = self._map_fields_to_target(query.fields)
            if obj.is_hierarchical_delete_operation or obj.query_all_target:
                query.remove_where()
                query.remove_limits()
            else:
                query.remove_is_deleted()
        else:
            query.and_where(obj.source_records_filter)

        if remove_limits:
            query.remove_limits()
        return query.compose()

    def create_delete_query(self) -> str:
        """Build the query selecting target records to delete before the migration."""
        obj = self.script_object
        if obj.delete_query:
            return obj.delete_query
        query = obj.parsed_query
        query.object_name = obj.target_object_name
        query.fields = [ID_FIELD_NAME]
        query.where = self._map_where_to_target(query.where)
        query.remove_limits()
        return query.compose()

    def create_filtered_queries(
        self,
        mode: str,
        reversed: bool,
        field_names: Optional[List[str]] = None,
    ) -> List[str]:
        """
        Build IN-filtered queries for the current retrieval pass.

        Args:
            mode: "forwards", "backwards" or "target"
            reversed: Query by child records pointing back to this object
            field_names: Fields to select instead of the configured ones

        Returns:
            List of length-bounded query strings
        """
        task = self.task
        obj = self.script_object
        is_source = mode != "target"
        values_by_field: Dict[str, List[str]] = {}
        excluded = [name.lower() for name in OBJECTS_NOT_TO_USE_IN_FILTERED_QUERY_IN_CLAUSE]

        if reversed:
            if obj.name.lower() not in excluded:
                values: List[str] = []
                for child_task, lookup in task.job.get_child_lookups(obj.name):
                    for record in child_task.source_data.records:
                        value = record.get(lookup.name)
                        if value not in (None, ""):
                            values.append(str(value))
                if values:
                    values_by_field[ID_FIELD_NAME] = values
        elif is_source:
            for lookup in task.lookup_fields:
                parent_name = lookup.referenced_object_name
                if not parent_name or parent_name.lower() in excluded or lookup.is_polymorphic:
                    continue
                parent_task = task.job.get_task(parent_name)
                if not parent_task or parent_task is task:
                    continue
                if mode == "forwards":
                    related = parent_task in task.next_tasks
                else:
                    related = parent_task in task.prev_tasks
                if related:
                    values_by_field[lookup.name] = list(parent_task.source_data.id_records_map.keys())
        elif not obj.has_complex_external_id:
            values_by_field[obj.external_id] = list(task.source_data.ext_id_to_record_id_map.keys())

        base_query = self.create_query(field_names, False, not is_source)
        org_data = task.source_data if is_source else task.target_data
        queries: List[str] = []
        for field_name, values in values_by_field.items():
            cache = org_data.get_queried_values(field_name)
            new_values = []
            for value in values:
                text = str(value)
                if text and text not in cache:
                    cache.add(text)
                    new_values.append(text)
            if not new_values:
                continue
            query_field = field_name if is_source else obj.map_field_to_target(field_name)
            self.logger.debug(
                f"Query planning ({mode}) for {obj.name}: field={query_field} values={len(new_values)}"
            )
            queries.extend(chunk_in_clause(base_query, query_field, new_values, self.max_length))

        self.logger.debug(
            f"Query planning ({mode}) for {obj.name}: generated {len(queries)} queries (reversed={reversed})"
        )
        return queries

    def create_self_reference_queries(self, missing_ids: List[str]) -> List[str]:
        """Build queries for records referenced by self lookups but not yet retrieved."""
        if not missing_ids:
            return []
        cache = self.task.source_data.get_queried_values(ID_FIELD_NAME)
        new_ids = [value for value in missing_ids if value not in cache]
        cache.update(new_ids)
        base_query = self.create_query(None, True, False)
        return chunk_in_clause(base_query, ID_FIELD_NAME, new_ids, self.max_length)

    def _map_fields_to_target(self, fields: List[str]) -> List[str]:
        obj = self.script_object
        return [obj.map_field_to_target(name) for name in fields]

    def _map_where_to_target(self, where: str) -> str:
        obj = self.script_object
        if not where or not obj.use_field_mapping:
            return where
        for rule in obj.field_mapping:
            if rule.source_field and rule.target_field:
                where = where.replace(rule.source_field, rule.target_field)
        return where
