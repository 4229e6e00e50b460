"""Enumerations for the MemorySense data model."""

from enum import Enum


class AlignmentConfidence(str, Enum):
    """Coarse confidence band recorded on an alignment.

    Raw similarity floats drive decisions; the band is what gets stored.
    """

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MatchStrategy(str, Enum):
    """Which step of the finder cascade produced a match."""

    EXACT = "exact"
    ALIAS = "alias"
    TEXT_SIMILARITY = "text_similarity"
    EMBEDDING = "embedding"
    CREATED = "created"  # No match; a new entity was created


class FilterOperator(str, Enum):
    """Operators accepted by the filter DSL."""

    EQ = "="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    CONTAINS = "CONTAINS"
    STARTS_WITH = "STARTS_WITH"
    ENDS_WITH = "ENDS_WITH"
    ENTITY_FUZZY = "ENTITY_FUZZY"  # Full finder cascade
    ENTITY_EXACT = "ENTITY_EXACT"  # Canonical name only
    ENTITY_ALIAS = "ENTITY_ALIAS"  # Alias set only

    @property
    def is_entity(self) -> bool:
        return self in (
            FilterOperator.ENTITY_FUZZY,
            FilterOperator.ENTITY_EXACT,
            FilterOperator.ENTITY_ALIAS,
        )
