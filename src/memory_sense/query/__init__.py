"""Path traversal, filter DSL and record queries."""

from memory_sense.query.engine import QueryEngine
from memory_sense.query.filters import Filter, evaluate_filter, parse_filter, parse_filters
from memory_sense.query.paths import get_value_by_path, iter_values_by_path, parse_path

__all__ = [
    "Filter",
    "QueryEngine",
    "evaluate_filter",
    "get_value_by_path",
    "iter_values_by_path",
    "parse_filter",
    "parse_filters",
    "parse_path",
]
