"""Filter DSL: parsing and in-process evaluation.

Filters come either as strings ("path op value") or as mappings with
`path`, `operator` and `value` keys:

    'status = "confirmed"'
    'eventOccurences[].date = "2025-07-24"'
    'price >= 10'
    'venue ~ "Riga Conference Centre"'      # entity, full cascade
    'venue entity_is "Conference Center"'   # entity, canonical name only
    'venue entity_like "KTMC"'              # entity, alias only

Entity operators are resolved by the query engine against alignments;
everything else is evaluated here against the stored value.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from memory_sense.errors import InvalidFilterError
from memory_sense.models.enums import FilterOperator
from memory_sense.query.paths import (
    MISSING,
    get_value_by_path,
    is_array_path,
    iter_values_by_path,
    parse_path,
)

# Symbol operators are tried longest first so ">=" never parses as ">"
_FILTER_RE = re.compile(
    r"""
    ^\s*(?P<path>[^\s=!<>~]+)
    (?:
        \s*(?P<symbol>>=|<=|!=|=|>|<|~)\s*
      | \s+(?P<word>contains|starts_with|ends_with|entity_is|entity_like)\s+
    )
    (?P<value>.*?)\s*$
    """,
    re.IGNORECASE | re.VERBOSE | re.DOTALL,
)

_OPERATOR_ALIASES: dict[str, FilterOperator] = {
    **{op.value: op for op in FilterOperator},
    "==": FilterOperator.EQ,
    "~": FilterOperator.ENTITY_FUZZY,
    "CONTAINS": FilterOperator.CONTAINS,
    "STARTS_WITH": FilterOperator.STARTS_WITH,
    "ENDS_WITH": FilterOperator.ENDS_WITH,
    "ENTITY_IS": FilterOperator.ENTITY_EXACT,
    "ENTITY_LIKE": FilterOperator.ENTITY_ALIAS,
}

_INT_RE = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class Filter:
    """A parsed filter predicate."""

    path: str
    operator: FilterOperator
    value: Any

    @property
    def is_entity(self) -> bool:
        return self.operator.is_entity

    @property
    def is_array(self) -> bool:
        return is_array_path(self.path)

    def __str__(self) -> str:
        return f"{self.path} {self.operator.value} {self.value!r}"


def parse_operator(raw: str) -> FilterOperator:
    op = _OPERATOR_ALIASES.get(raw.strip().upper())
    if op is None:
        raise InvalidFilterError(f"Unknown filter operator '{raw}'", details={"operator": raw})
    return op


def parse_value(raw: str) -> Any:
    """Interpret the value part of a filter string.

    Quoted strings lose their quotes, true/false become booleans, null
    becomes None, finite numbers become int or float; anything else is kept
    as a bare string.
    """
    text = raw.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    if _INT_RE.match(text):
        return int(text)
    try:
        number = float(text)
    except ValueError:
        return text
    return number if math.isfinite(number) else text


def parse_filter(spec: str | Mapping[str, Any] | Filter) -> Filter:
    """Parse one filter from its string or mapping form.

    Raises:
        InvalidFilterError: On unknown operators, missing path or value, or
            invalid array path syntax.
    """
    if isinstance(spec, Filter):
        parse_path(spec.path)
        return spec

    if isinstance(spec, str):
        match = _FILTER_RE.match(spec)
        if match is None:
            raise InvalidFilterError(
                f"Invalid filter expression '{spec}'", details={"filter": spec}
            )
        raw_value = match["value"]
        if not raw_value:
            raise InvalidFilterError(
                f"Filter '{spec}' is missing a value", details={"filter": spec}
            )
        path = match["path"]
        operator = parse_operator(match["symbol"] or match["word"])
        value = parse_value(raw_value)
    elif isinstance(spec, Mapping):
        path = spec.get("path")
        if not path or not isinstance(path, str):
            raise InvalidFilterError("Filter is missing a path", details={"filter": dict(spec)})
        if "operator" not in spec:
            raise InvalidFilterError(
                "Filter is missing an operator", details={"filter": dict(spec)}
            )
        if "value" not in spec:
            raise InvalidFilterError("Filter is missing a value", details={"filter": dict(spec)})
        operator = parse_operator(str(spec["operator"]))
        value = spec["value"]
    else:
        raise InvalidFilterError(f"Unsupported filter type: {type(spec).__name__}")

    parse_path(path)
    return Filter(path=path, operator=operator, value=value)


def parse_filters(
    specs: Sequence[str | Mapping[str, Any] | Filter] | None,
) -> list[Filter]:
    """Parse a list of filters; an empty or missing list yields []."""
    return [parse_filter(spec) for spec in specs or []]


def compare(actual: Any, operator: FilterOperator, expected: Any) -> bool:
    """Apply a non-entity operator to one value.

    Comparisons across incompatible types are false rather than errors.
    """
    if operator is FilterOperator.EQ:
        return actual == expected
    if operator is FilterOperator.NE:
        return actual != expected
    if operator is FilterOperator.CONTAINS:
        if isinstance(actual, list):
            return expected in actual
        if isinstance(actual, str):
            return str(expected) in actual
        return False
    if operator is FilterOperator.STARTS_WITH:
        return isinstance(actual, str) and actual.startswith(str(expected))
    if operator is FilterOperator.ENDS_WITH:
        return isinstance(actual, str) and actual.endswith(str(expected))
    if operator.is_entity:
        raise InvalidFilterError(
            f"Entity operator {operator.value} cannot be evaluated against a raw value"
        )

    try:
        if operator is FilterOperator.GT:
            return actual > expected
        if operator is FilterOperator.GTE:
            return actual >= expected
        if operator is FilterOperator.LT:
            return actual < expected
        if operator is FilterOperator.LTE:
            return actual <= expected
    except TypeError:
        return False
    return False


def evaluate_filter(record_value: Any, flt: Filter) -> bool:
    """Evaluate a non-entity filter against a stored value.

    Array paths are existential: the record matches when any element's value
    satisfies the operator. Plain paths compare the first value found.
    An absent value satisfies only "!=".
    """
    if flt.is_array:
        values = list(iter_values_by_path(record_value, flt.path))
        if not values:
            return flt.operator is FilterOperator.NE
        return any(compare(v, flt.operator, flt.value) for v in values)

    actual = get_value_by_path(record_value, flt.path, MISSING)
    if actual is MISSING:
        return flt.operator is FilterOperator.NE
    return compare(actual, flt.operator, flt.value)


def matches_all(record_value: Any, filters: Sequence[Filter]) -> bool:
    """True when every filter matches (AND semantics)."""
    return all(evaluate_filter(record_value, flt) for flt in filters)
