"""Recognition: is this candidate record already in memory?

Three steps:

1. Shortlist stored records (deduplicated by key, at most `limit`):
   records aligned to the candidate's entities (union of matches per field,
   intersected across fields), then records sharing a tag, or the most
   recently updated records when neither entities nor tags are given.
2. Score each shortlisted record with the ConfidenceScorer and keep the best.
3. Three-zone decision around the threshold:
       score >= upper  → match, no LLM
       score <  lower  → no match, no LLM
       otherwise       → the LLM disambiguator decides
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol
from uuid import UUID

from sqlalchemy import select

from memory_sense.config import settings
from memory_sense.entities.fields import parse_entity_type_spec
from memory_sense.errors import UpstreamFailureError
from memory_sense.models import MemoryRecord, MemoryTag
from memory_sense.query.paths import iter_values_by_path
from memory_sense.recognition.scorer import ConfidenceScorer

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from memory_sense.entities.finder import EntityFinder
    from memory_sense.recognition.schemas import DisambiguationVerdict

logger = logging.getLogger(__name__)


class Disambiguator(Protocol):
    """Anything that can arbitrate an ambiguous pair (see LLMDisambiguator)."""

    async def disambiguate(
        self,
        candidate: Any,
        existing: Any,
        confidence: float,
        *,
        custom_prompt: str | None = None,
        agent_goal: str | None = None,
    ) -> DisambiguationVerdict: ...


@dataclass
class CandidateMatch:
    """A shortlisted stored record and its score."""

    key: str
    data: Any
    confidence: float = 0.0


@dataclass
class RecognitionResult:
    """Outcome of a recognition call."""

    is_match: bool
    confidence: float
    matching_key: str | None = None
    matching_data: Any = None
    used_llm: bool = False
    explanation: str | None = None


def llm_bounds(
    threshold: float,
    lower: float | None = None,
    upper: float | None = None,
) -> tuple[float, float]:
    """Uncertainty band around `threshold`; either bound may be overridden."""
    band = settings.recognition_llm_band
    resolved_lower = max(0.0, threshold - band) if lower is None else lower
    resolved_upper = min(1.0, threshold + band) if upper is None else upper
    return resolved_lower, resolved_upper


class RecognitionService:
    """Shortlist, score and decide whether a candidate is already known.

    Usage:
        service = RecognitionService(session, finder=finder, disambiguator=LLMDisambiguator())
        result = await service.recognize(
            {"title": "Jazz Night", "venue": "KTMC"},
            "acme",
            entities={"venue": "location"},
        )
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        finder: EntityFinder | None = None,
        disambiguator: Disambiguator | None = None,
    ) -> None:
        self._session = session
        self._finder = finder
        self._disambiguator = disambiguator

    async def recognize(
        self,
        candidate: Any,
        tenant_id: str,
        *,
        entities: Mapping[str, str] | None = None,
        tags: Sequence[str] | None = None,
        threshold: float | None = None,
        llm_lower_bound: float | None = None,
        llm_upper_bound: float | None = None,
        limit: int | None = None,
        custom_prompt: str | None = None,
        agent_goal: str | None = None,
    ) -> RecognitionResult:
        """Decide whether `candidate` duplicates a stored record.

        Args:
            candidate: The new record (JSON-like).
            tenant_id: Tenant scope.
            entities: Field path -> entity type spec used for shortlisting and
                scoring.
            tags: Shortlist records carrying any of these tags.
            threshold: Recognition threshold (default 0.75).
            llm_lower_bound: Scores below this are rejected without the LLM.
            llm_upper_bound: Scores at or above this match without the LLM.
            limit: Maximum shortlisted records (default 50).
            custom_prompt: Prompt template for the LLM step.
            agent_goal: Context for the LLM step.

        Returns:
            The decision. Never raises for LLM failures: those yield a
            non-match with confidence 0 and an explanation.
        """
        entity_fields = dict(entities or {})
        tag_list = list(tags or [])
        threshold = settings.recognition_threshold if threshold is None else threshold
        limit = settings.recognition_limit if limit is None else limit
        lower, upper = llm_bounds(threshold, llm_lower_bound, llm_upper_bound)

        shortlist = await self._shortlist(candidate, entity_fields, tag_list, limit, tenant_id)
        if not shortlist:
            logger.debug("No candidates shortlisted for tenant %s", tenant_id)
            return RecognitionResult(is_match=False, confidence=0.0, used_llm=False)

        best = await self._score(candidate, shortlist, entity_fields, tenant_id)
        logger.debug(
            "Best candidate %s scored %.3f (band %.2f-%.2f, %d shortlisted)",
            best.key, best.confidence, lower, upper, len(shortlist)
        )

        if best.confidence >= upper:
            return RecognitionResult(
                is_match=True,
                confidence=best.confidence,
                matching_key=best.key,
                matching_data=best.data,
                used_llm=False,
            )
        if best.confidence < lower:
            return RecognitionResult(is_match=False, confidence=best.confidence, used_llm=False)

        return await self._ask_llm(candidate, best, custom_prompt, agent_goal)

    async def _ask_llm(
        self,
        candidate: Any,
        best: CandidateMatch,
        custom_prompt: str | None,
        agent_goal: str | None,
    ) -> RecognitionResult:
        if self._disambiguator is None:
            return RecognitionResult(
                is_match=False,
                confidence=0.0,
                used_llm=True,
                explanation="LLM disambiguation unavailable: no disambiguator configured",
            )

        try:
            verdict = await self._disambiguator.disambiguate(
                candidate,
                best.data,
                best.confidence,
                custom_prompt=custom_prompt,
                agent_goal=agent_goal,
            )
        except UpstreamFailureError as exc:
            logger.warning("LLM disambiguation failed for %s: %s", best.key, exc)
            return RecognitionResult(
                is_match=False,
                confidence=0.0,
                used_llm=True,
                explanation=f"LLM disambiguation failed: {exc.message}",
            )

        return RecognitionResult(
            is_match=verdict.is_match,
            confidence=verdict.confidence,
            matching_key=best.key if verdict.is_match else None,
            matching_data=best.data if verdict.is_match else None,
            used_llm=True,
            explanation=verdict.reasoning,
        )

    async def _score(
        self,
        candidate: Any,
        shortlist: list[CandidateMatch],
        entity_fields: Mapping[str, str],
        tenant_id: str,
    ) -> CandidateMatch:
        """Score every shortlisted record; ties keep shortlist order."""
        scorer = ConfidenceScorer(self._finder)
        for match in shortlist:
            match.confidence = await scorer.calculate_confidence(
                candidate, match.data, entity_fields, tenant_id=tenant_id
            )
        # max() keeps the first of equal scores
        return max(shortlist, key=lambda match: match.confidence)

    # ── Shortlisting ─────────────────────────────────────────────────────────

    async def _shortlist(
        self,
        candidate: Any,
        entity_fields: Mapping[str, str],
        tags: list[str],
        limit: int,
        tenant_id: str,
    ) -> list[CandidateMatch]:
        records: list[MemoryRecord] = []

        if entity_fields:
            keys = await self._keys_by_entities(candidate, entity_fields, tenant_id)
            if keys:
                records.extend(
                    await self._load(
                        tenant_id, limit, MemoryRecord.key.in_(sorted(keys))
                    )
                )

        if tags:
            records.extend(
                await self._load(
                    tenant_id, limit, MemoryRecord.tag_rows.any(MemoryTag.tag.in_(tags))
                )
            )

        if not entity_fields and not tags:
            records.extend(await self._load(tenant_id, limit))

        unique: dict[str, CandidateMatch] = {}
        for record in records:
            if record.key not in unique:
                unique[record.key] = CandidateMatch(key=record.key, data=record.value)
        return list(unique.values())[:limit]

    async def _keys_by_entities(
        self,
        candidate: Any,
        entity_fields: Mapping[str, str],
        tenant_id: str,
    ) -> set[str]:
        """Keys aligned to the candidate's entities, ANDed across fields."""
        if self._finder is None:
            return set()

        matched: set[str] | None = None
        for field_path, type_spec in entity_fields.items():
            entity_type, threshold = parse_entity_type_spec(type_spec)
            values = [
                str(v).strip()
                for v in iter_values_by_path(candidate, field_path)
                if isinstance(v, (str, int, float)) and str(v).strip()
            ]
            if not values:
                continue

            entity_ids: set[UUID] = set()
            for value in dict.fromkeys(values):
                entity_ids |= await self._finder.find_matching_entity_ids(
                    value, entity_type, tenant_id, threshold=threshold
                )
            keys = await self._finder.store.keys_for_entities(entity_ids, tenant_id)
            matched = keys if matched is None else matched & keys

        return matched or set()

    async def _load(self, tenant_id: str, limit: int, *conditions: Any) -> list[MemoryRecord]:
        stmt = (
            select(MemoryRecord)
            .where(MemoryRecord.tenant_id == tenant_id, *conditions)
            .order_by(MemoryRecord.updated_at.desc(), MemoryRecord.key)
            .limit(limit)
        )
        return list((await self._session.execute(stmt)).scalars().all())
