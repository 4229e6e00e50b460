"""Entity identity resolution.

Submodules:
- store: tenant-scoped persistence for entities, aliases and alignments
- finder: ordered matching cascade (exact, alias, text, embedding)
- fields: entity field specs and array path expansion
- alignment: field → entity alignment and operator overrides
"""

from memory_sense.entities.alignment import EntityAlignmentService, FieldAlignment
from memory_sense.entities.fields import EntityField, parse_entity_fields
from memory_sense.entities.finder import EntityFinder, EntityMatch
from memory_sense.entities.store import EntityStats, EntityStore

__all__ = [
    "EntityAlignmentService",
    "EntityField",
    "EntityFinder",
    "EntityMatch",
    "EntityStats",
    "EntityStore",
    "FieldAlignment",
    "parse_entity_fields",
]
