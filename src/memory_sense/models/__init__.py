"""Database models for MemorySense."""

from memory_sense.models.alignment import EntityAlignment
from memory_sense.models.base import Base
from memory_sense.models.entity import Entity, EntityAlias
from memory_sense.models.enums import AlignmentConfidence, FilterOperator, MatchStrategy
from memory_sense.models.record import MemoryRecord, MemoryTag

__all__ = [
    "AlignmentConfidence",
    "Base",
    "Entity",
    "EntityAlias",
    "EntityAlignment",
    "FilterOperator",
    "MatchStrategy",
    "MemoryRecord",
    "MemoryTag",
]
