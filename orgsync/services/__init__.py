"""Record transformation services."""

from .expression import ExpressionEvaluator, CompiledExpression
from .mocker import MockGenerator
from .transformer import (
    ValueMapper,
    filter_records,
    truncate_records,
    map_record_fields,
    normalize_mapped_value,
)

__all__ = [
    "ExpressionEvaluator",
    "CompiledExpression",
    "MockGenerator",
    "ValueMapper",
    "filter_records",
    "truncate_records",
    "map_record_fields",
    "normalize_mapped_value",
]
