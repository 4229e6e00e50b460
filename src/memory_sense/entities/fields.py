"""Entity field specs: which parts of a record are entity references.

A spec maps field paths to an entity type with an optional threshold:

    {
        "venue": "venue",
        "organizer.name": "organization:0.7",
        "speakers[].name": "person",
    }

Array paths expand to one field per element ("speakers[0].name", ...), so
every element gets its own alignment row.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from memory_sense.errors import InvalidEntitySpecError
from memory_sense.query.paths import field_path_pattern, get_value_by_path, parse_path

EntityFieldSpec = Mapping[str, str]


@dataclass(frozen=True)
class EntityField:
    """One record field to resolve to an entity."""

    field_path: str
    entity_type: str
    value: str
    threshold: float | None = None


def parse_entity_type_spec(spec: str) -> tuple[str, float | None]:
    """Split 'type' or 'type:threshold'.

    Raises:
        InvalidEntitySpecError: If the format is wrong or the threshold is not
            a number in [0, 1].
    """
    parts = spec.split(":")
    if len(parts) == 1 and parts[0].strip():
        return parts[0].strip(), None
    if len(parts) != 2 or not parts[0].strip():
        raise InvalidEntitySpecError(
            f"Invalid entity type specification '{spec}'. "
            "Expected format: 'type' or 'type:threshold'",
            details={"spec": spec},
        )

    entity_type, raw_threshold = parts[0].strip(), parts[1].strip()
    try:
        threshold = float(raw_threshold)
    except ValueError:
        threshold = float("nan")
    if not 0.0 <= threshold <= 1.0:
        raise InvalidEntitySpecError(
            f"Invalid threshold '{raw_threshold}' in entity spec '{spec}'. "
            "Threshold must be a number between 0 and 1.",
            details={"spec": spec},
        )
    return entity_type, threshold


def expand_field_path(value: Any, path: str) -> list[str]:
    """Expand each "[]" in `path` into concrete indexes present in `value`.

    "sessions[].speakers[].name" becomes "sessions[0].speakers[0].name",
    "sessions[0].speakers[1].name", ... Paths without "[]" are returned as is.
    """
    marker = path.find("[]")
    if marker == -1:
        return [path]

    prefix, rest = path[:marker], path[marker + 2 :]
    array = get_value_by_path(value, prefix)
    if not isinstance(array, list):
        return []

    expanded: list[str] = []
    for index in range(len(array)):
        expanded.extend(expand_field_path(value, f"{prefix}[{index}]{rest}"))
    return expanded


def parse_entity_fields(value: Any, spec: EntityFieldSpec | None) -> list[EntityField]:
    """Collect the entity fields of a record.

    Only non-empty string values are returned; other values are skipped.
    """
    if not spec:
        return []

    fields: list[EntityField] = []
    for path, type_spec in spec.items():
        parse_path(path)
        entity_type, threshold = parse_entity_type_spec(type_spec)
        for field_path in expand_field_path(value, path):
            field_value = get_value_by_path(value, field_path)
            if isinstance(field_value, str) and field_value.strip():
                fields.append(EntityField(field_path, entity_type, field_value, threshold))
    return fields


def stale_field_paths(
    previous_paths: Iterable[str],
    current_fields: Iterable[EntityField],
    spec: EntityFieldSpec,
) -> list[str]:
    """Aligned paths covered by `spec` that no longer hold an entity value.

    Used when a record is rewritten: an array that shrank, or a field that
    was cleared, leaves alignments behind that must be removed.
    """
    current = {f.field_path for f in current_fields}
    patterns = [field_path_pattern(path) for path in spec]
    return sorted(
        path
        for path in set(previous_paths)
        if path not in current and any(p.fullmatch(path) for p in patterns)
    )
