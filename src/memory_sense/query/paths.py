"""Dot-notation paths over JSON-like values.

Syntax:
    name            object key (searches list elements implicitly)
    name[]          every element of an array; must be followed by a field
    name[3]         one element of an array
    a.b[].c.d       segments joined with dots

Two read policies are provided:
    get_value_by_path   first defined value wins (element order)
    iter_values_by_path every value, used for existential array filters
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Literal

from memory_sense.errors import InvalidFilterError

_SEGMENT_RE = re.compile(r"^(?P<name>[^\[\]]+)(?P<brackets>(?:\[\d*\])*)$")
_BRACKET_RE = re.compile(r"\[(\d*)\]")

# Sentinel distinguishing "absent" from a stored null
MISSING: Any = object()


@dataclass(frozen=True)
class PathSegment:
    """One step of a parsed path."""

    kind: Literal["key", "each", "index"]
    name: str = ""
    index: int = 0


@lru_cache(maxsize=1024)
def parse_path(path: str) -> tuple[PathSegment, ...]:
    """Parse a dot-notation path into segments.

    Raises:
        InvalidFilterError: For empty paths or segments, a leading "[]",
            or a path ending in "[]".
    """
    if not path or not path.strip():
        raise InvalidFilterError("Path must not be empty", details={"path": path})

    segments: list[PathSegment] = []
    for part in path.strip().split("."):
        if not part:
            raise InvalidFilterError(
                f"Invalid path '{path}': empty segment", details={"path": path}
            )
        match = _SEGMENT_RE.match(part)
        if match is None:
            raise InvalidFilterError(
                f"Invalid array path syntax in '{path}'", details={"path": path}
            )
        segments.append(PathSegment("key", name=match["name"]))
        for digits in _BRACKET_RE.findall(match["brackets"]):
            if digits:
                segments.append(PathSegment("index", index=int(digits)))
            else:
                segments.append(PathSegment("each"))

    if segments[-1].kind == "each":
        raise InvalidFilterError(
            f"Array path '{path}' must specify a field within the array elements",
            details={"path": path},
        )
    return tuple(segments)


def is_array_path(path: str) -> bool:
    return any(seg.kind == "each" for seg in parse_path(path))


def field_path_pattern(path: str) -> re.Pattern[str]:
    """Regex matching stored field paths produced from `path`.

    Alignments are stored with concrete indexes ("speakers[0].name"), so an
    array marker in a filter path matches any index.
    """
    parse_path(path)
    escaped = re.escape(path).replace(r"\[\]", r"\[\d+\]")
    return re.compile(f"^{escaped}$")


def _walk(node: Any, segments: tuple[PathSegment, ...]) -> Iterator[Any]:
    if not segments:
        yield node
        return

    head, rest = segments[0], segments[1:]

    if head.kind == "key":
        if isinstance(node, dict):
            if head.name in node:
                yield from _walk(node[head.name], rest)
        elif isinstance(node, list):
            if head.name.isdigit():
                idx = int(head.name)
                if idx < len(node):
                    yield from _walk(node[idx], rest)
            else:
                # Implicit traversal: search each element for the key
                for element in node:
                    yield from _walk(element, segments)
    elif head.kind == "each":
        if isinstance(node, list):
            for element in node:
                yield from _walk(element, rest)
    elif isinstance(node, list) and head.index < len(node):
        yield from _walk(node[head.index], rest)


def iter_values_by_path(obj: Any, path: str) -> Iterator[Any]:
    """Yield every value reachable through `path`, in element order."""
    yield from _walk(obj, parse_path(path))


def get_value_by_path(obj: Any, path: str, default: Any = None) -> Any:
    """Return the first defined value at `path`.

    For array paths the remainder is evaluated against each element and the
    first element that produces a value wins. A stored null counts as a value.

    Args:
        obj: JSON-like value (dicts, lists, scalars).
        path: Dot-notation path.
        default: Returned when nothing is found.
    """
    return next(iter_values_by_path(obj, path), default)
