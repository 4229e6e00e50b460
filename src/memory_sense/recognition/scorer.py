"""Confidence scoring between a candidate record and a stored one.

For every (field path, entity type) pair both values are read with the
first-match path rule and resolved through the entity finder. A field
scores 1.0 when the two entity-id sets intersect and 0.0 otherwise; the
final confidence is the unweighted mean over the fields present on both
sides. Without a finder, fields are compared with a normalized string ratio.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from uuid import UUID

from memory_sense.entities.fields import parse_entity_type_spec
from memory_sense.query.paths import get_value_by_path
from memory_sense.utils.text import text_similarity_ratio

if TYPE_CHECKING:
    from memory_sense.entities.finder import EntityFinder

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> str | None:
    """Scalar field value as text; None for empty or structured values."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


class ConfidenceScorer:
    """Scores duplicate likelihood in [0, 1].

    Finder lookups are memoized for the lifetime of the scorer, so scoring
    many stored records against one candidate resolves each distinct value
    once. Create one scorer per recognition call.

    Usage:
        scorer = ConfidenceScorer(finder)
        score = await scorer.calculate_confidence(
            candidate, stored, {"venue": "location"}, tenant_id="acme"
        )
    """

    def __init__(self, finder: EntityFinder | None = None) -> None:
        self._finder = finder
        self._cache: dict[tuple[str, str, float | None, str], frozenset[UUID]] = {}

    async def calculate_confidence(
        self,
        candidate: Any,
        stored: Any,
        entity_fields: Mapping[str, str],
        *,
        tenant_id: str,
    ) -> float:
        """Unweighted mean of per-field entity agreement.

        Args:
            candidate: The new record.
            stored: A stored record to compare against.
            entity_fields: Field path -> entity type spec ('type' or
                'type:threshold').
            tenant_id: Tenant scope for entity lookups.

        Returns:
            Confidence in [0, 1]; 0.0 when no field could be compared.
        """
        finder = self._finder
        scores: list[float] = []

        for field_path, type_spec in entity_fields.items():
            entity_type, threshold = parse_entity_type_spec(type_spec)
            candidate_value = _as_text(get_value_by_path(candidate, field_path))
            stored_value = _as_text(get_value_by_path(stored, field_path))
            if candidate_value is None or stored_value is None:
                continue

            if finder is None:
                score = text_similarity_ratio(candidate_value, stored_value)
            else:
                candidate_ids = await self._resolve(
                    finder, candidate_value, entity_type, threshold, tenant_id
                )
                stored_ids = await self._resolve(
                    finder, stored_value, entity_type, threshold, tenant_id
                )
                score = 1.0 if candidate_ids & stored_ids else 0.0

            logger.debug(
                "Field %s: '%s' vs '%s' → %.2f", field_path, candidate_value, stored_value, score
            )
            scores.append(score)

        if not scores:
            return 0.0
        return sum(scores) / len(scores)

    async def _resolve(
        self,
        finder: EntityFinder,
        value: str,
        entity_type: str,
        threshold: float | None,
        tenant_id: str,
    ) -> frozenset[UUID]:
        key = (value, entity_type, threshold, tenant_id)
        cached = self._cache.get(key)
        if cached is None:
            cached = frozenset(
                await finder.find_matching_entity_ids(
                    value, entity_type, tenant_id, threshold=threshold
                )
            )
            self._cache[key] = cached
        return cached
