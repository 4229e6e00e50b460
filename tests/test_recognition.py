"""Tests for RecognitionService: shortlisting and the three-zone decision."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from memory_sense.entities.alignment import EntityAlignmentService
from memory_sense.entities.fields import parse_entity_fields
from memory_sense.errors import UpstreamFailureError
from memory_sense.models import MemoryRecord, MemoryTag
from memory_sense.recognition.schemas import DisambiguationVerdict
from memory_sense.recognition.service import CandidateMatch, RecognitionService, llm_bounds

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

TENANT = "acme"

VENUE_CITY = {"venue": "venue", "city": "city"}


async def remember(
    service: EntityAlignmentService,
    key: str,
    value: Any,
    spec: dict[str, str] | None = None,
    *,
    tags: list[str] | None = None,
    tenant_id: str = TENANT,
) -> None:
    record = MemoryRecord(tenant_id=tenant_id, key=key, value=value)
    record.tag_rows = [MemoryTag(tag=tag) for tag in tags or []]
    service.store.session.add(record)
    await service.store.session.flush()
    await service.align_entity_fields(key, parse_entity_fields(value, spec), tenant_id=tenant_id)


def make_disambiguator(
    *, is_match: bool = True, confidence: float = 0.9, error: Exception | None = None
) -> MagicMock:
    disambiguator = MagicMock()
    if error is not None:
        disambiguator.disambiguate = AsyncMock(side_effect=error)
    else:
        disambiguator.disambiguate = AsyncMock(
            return_value=DisambiguationVerdict(
                reasoning="Same venue, abbreviated.", is_match=is_match, confidence=confidence
            )
        )
    return disambiguator


@pytest.fixture
def alignment(db_session: AsyncSession) -> EntityAlignmentService:
    return EntityAlignmentService(db_session)


@pytest.fixture
async def half_match(alignment: EntityAlignmentService) -> dict[str, Any]:
    """A stored record sharing the venue but not the city with the candidate."""
    await alignment.store.create_entity(TENANT, "city", "Riga")
    await remember(
        alignment,
        "event:1",
        {"title": "Jazz Night", "venue": "Riga Hall", "city": "Jurmala"},
        VENUE_CITY,
        tags=["music"],
    )
    # Score of this candidate against event:1 is 0.5
    return {"title": "Jazz Night", "venue": "riga hall", "city": "Riga"}


class TestLLMBounds:
    """Tests for llm_bounds()."""

    def test_default_band(self) -> None:
        lower, upper = llm_bounds(0.75)
        assert lower == pytest.approx(0.64)
        assert upper == pytest.approx(0.86)

    def test_clamped(self) -> None:
        assert llm_bounds(0.05) == (0.0, pytest.approx(0.16))
        assert llm_bounds(0.95) == (pytest.approx(0.84), 1.0)

    def test_overrides(self) -> None:
        assert llm_bounds(0.75, 0.2, 0.3) == (0.2, 0.3)


class TestShortlist:
    """Tests for candidate shortlisting."""

    async def test_empty_shortlist(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        disambiguator = make_disambiguator()
        service = RecognitionService(
            db_session, finder=alignment.finder, disambiguator=disambiguator
        )

        result = await service.recognize(
            {"venue": "Riga Hall"}, TENANT, entities={"venue": "venue"}
        )

        assert not result.is_match
        assert result.confidence == 0.0
        assert not result.used_llm
        disambiguator.disambiguate.assert_not_awaited()

    async def test_other_tenant_not_shortlisted(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        await remember(
            alignment, "event:1", {"venue": "Riga Hall"}, {"venue": "venue"}, tenant_id="other"
        )
        service = RecognitionService(db_session, finder=alignment.finder)

        result = await service.recognize(
            {"venue": "Riga Hall"}, TENANT, entities={"venue": "venue"}
        )

        assert not result.is_match
        assert result.matching_key is None

    async def test_entity_and_tag_matches_deduplicated(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        spec = {"venue": "venue"}
        await remember(alignment, "event:1", {"venue": "Riga Hall"}, spec, tags=["music"])
        await remember(alignment, "event:2", {"venue": "Opera"}, spec, tags=["music"])
        await remember(alignment, "event:3", {"venue": "Opera"}, spec, tags=["sport"])
        service = RecognitionService(db_session, finder=alignment.finder)

        shortlist = await service._shortlist(
            {"venue": "Riga Hall"}, {"venue": "venue"}, ["music"], 50, TENANT
        )

        # Entity matches first, then tag matches
        assert [match.key for match in shortlist] == ["event:1", "event:2"]

    async def test_entity_matches_intersect_across_fields(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        await remember(alignment, "event:1", {"venue": "Riga Hall", "city": "Riga"}, VENUE_CITY)
        await remember(alignment, "event:2", {"venue": "Riga Hall", "city": "Jurmala"}, VENUE_CITY)
        service = RecognitionService(db_session, finder=alignment.finder)

        shortlist = await service._shortlist(
            {"venue": "Riga Hall", "city": "Riga"}, VENUE_CITY, [], 50, TENANT
        )

        assert [match.key for match in shortlist] == ["event:1"]

    async def test_array_values_are_unioned(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        spec = {"speakers[].name": "person"}
        await remember(alignment, "talk:1", {"speakers": [{"name": "Ann"}]}, spec)
        await remember(alignment, "talk:2", {"speakers": [{"name": "Bob"}]}, spec)
        await remember(alignment, "talk:3", {"speakers": [{"name": "Cid"}]}, spec)
        service = RecognitionService(db_session, finder=alignment.finder)

        shortlist = await service._shortlist(
            {"speakers": [{"name": "Ann"}, {"name": "Bob"}]}, spec, [], 50, TENANT
        )

        assert sorted(match.key for match in shortlist) == ["talk:1", "talk:2"]

    async def test_limit(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        for i in range(5):
            await remember(alignment, f"note:{i}", {"n": i}, tags=["memo"])
        service = RecognitionService(db_session, finder=alignment.finder)

        shortlist = await service._shortlist({}, {}, ["memo"], 3, TENANT)

        assert [match.key for match in shortlist] == ["note:4", "note:3", "note:2"]

    async def test_recency_fallback_prefers_latest(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        await remember(alignment, "note:1", {"text": "first"})
        await remember(alignment, "note:2", {"text": "second"})
        service = RecognitionService(db_session, finder=alignment.finder)

        # No fields to compare: every candidate scores 0, ties keep shortlist order
        result = await service.recognize(
            {"text": "anything"}, TENANT, llm_lower_bound=0.0, llm_upper_bound=0.0
        )

        assert result.is_match
        assert result.matching_key == "note:2"
        assert not result.used_llm

    async def test_zero_limit_shortlists_nothing(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        await remember(alignment, "event:1", {"venue": "Riga Hall"}, {"venue": "venue"})
        disambiguator = make_disambiguator()
        service = RecognitionService(
            db_session, finder=alignment.finder, disambiguator=disambiguator
        )

        result = await service.recognize(
            {"venue": "Riga Hall"}, TENANT, entities={"venue": "venue"}, limit=0
        )

        assert not result.is_match
        assert result.confidence == 0.0
        assert not result.used_llm
        disambiguator.disambiguate.assert_not_awaited()


class TestScoring:
    """Tests for picking the best shortlisted candidate."""

    async def test_highest_score_wins_and_ties_keep_order(
        self, db_session: AsyncSession
    ) -> None:
        service = RecognitionService(db_session)
        shortlist = [
            CandidateMatch("event:1", {"venue": "Opera House"}),
            CandidateMatch("event:2", {"venue": "Riga Hall"}),
            CandidateMatch("event:3", {"venue": "Riga Hall"}),
        ]

        best = await service._score(
            {"venue": "Riga Hall"}, shortlist, {"venue": "venue"}, TENANT
        )

        assert best.key == "event:2"
        assert best.confidence == 1.0
        assert shortlist[0].confidence < 1.0


class TestThreeZones:
    """Tests for the auto-match / LLM / auto-reject decision."""

    async def test_high_score_matches_without_llm(
        self, db_session: AsyncSession, alignment: EntityAlignmentService
    ) -> None:
        await remember(
            alignment, "event:1", {"venue": "Conference Center"}, {"venue": "venue"}
        )
        disambiguator = make_disambiguator()
        service = RecognitionService(
            db_session, finder=alignment.finder, disambiguator=disambiguator
        )

        result = await service.recognize(
            {"venue": "conference center, riga"}, TENANT, entities={"venue": "venue"}
        )

        assert result.is_match
        assert result.confidence == 1.0
        assert result.matching_key == "event:1"
        assert result.matching_data == {"venue": "Conference Center"}
        assert not result.used_llm
        disambiguator.disambiguate.assert_not_awaited()

    async def test_low_score_rejects_without_llm(
        self,
        db_session: AsyncSession,
        half_match: dict[str, Any],
        alignment: EntityAlignmentService,
    ) -> None:
        disambiguator = make_disambiguator()
        service = RecognitionService(
            db_session, finder=alignment.finder, disambiguator=disambiguator
        )

        result = await service.recognize(half_match, TENANT, entities=VENUE_CITY, tags=["music"])

        assert not result.is_match
        assert result.confidence == pytest.approx(0.5)
        assert result.matching_key is None
        assert not result.used_llm
        disambiguator.disambiguate.assert_not_awaited()

    async def test_ambiguous_score_asks_llm(
        self,
        db_session: AsyncSession,
        half_match: dict[str, Any],
        alignment: EntityAlignmentService,
    ) -> None:
        disambiguator = make_disambiguator(is_match=True, confidence=0.83)
        service = RecognitionService(
            db_session, finder=alignment.finder, disambiguator=disambiguator
        )

        result = await service.recognize(
            half_match,
            TENANT,
            entities=VENUE_CITY,
            tags=["music"],
            threshold=0.5,
            agent_goal="deduplicate event listings",
        )

        assert result.is_match
        assert result.used_llm
        assert result.confidence == 0.83
        assert result.matching_key == "event:1"
        assert result.explanation == "Same venue, abbreviated."
        disambiguator.disambiguate.assert_awaited_once_with(
            half_match,
            {"title": "Jazz Night", "venue": "Riga Hall", "city": "Jurmala"},
            0.5,
            custom_prompt=None,
            agent_goal="deduplicate event listings",
        )

    async def test_llm_rejection(
        self,
        db_session: AsyncSession,
        half_match: dict[str, Any],
        alignment: EntityAlignmentService,
    ) -> None:
        service = RecognitionService(
            db_session,
            finder=alignment.finder,
            disambiguator=make_disambiguator(is_match=False, confidence=0.7),
        )

        result = await service.recognize(
            half_match, TENANT, entities=VENUE_CITY, tags=["music"], threshold=0.5
        )

        assert not result.is_match
        assert result.used_llm
        assert result.confidence == 0.7
        assert result.matching_key is None
        assert result.matching_data is None

    async def test_boundaries(
        self,
        db_session: AsyncSession,
        half_match: dict[str, Any],
        alignment: EntityAlignmentService,
    ) -> None:
        disambiguator = make_disambiguator()
        service = RecognitionService(
            db_session, finder=alignment.finder, disambiguator=disambiguator
        )
        options: dict[str, Any] = {"entities": VENUE_CITY, "tags": ["music"]}

        # score == upper → match without LLM
        at_upper = await service.recognize(
            half_match, TENANT, llm_lower_bound=0.3, llm_upper_bound=0.5, **options
        )
        assert at_upper.is_match and not at_upper.used_llm

        # score == lower → LLM decides
        at_lower = await service.recognize(
            half_match, TENANT, llm_lower_bound=0.5, llm_upper_bound=0.9, **options
        )
        assert at_lower.used_llm

        # score just below lower → reject
        below = await service.recognize(
            half_match, TENANT, llm_lower_bound=0.51, llm_upper_bound=0.9, **options
        )
        assert not below.is_match and not below.used_llm

        disambiguator.disambiguate.assert_awaited_once()

    async def test_llm_failure_is_a_non_match(
        self,
        db_session: AsyncSession,
        half_match: dict[str, Any],
        alignment: EntityAlignmentService,
    ) -> None:
        service = RecognitionService(
            db_session,
            finder=alignment.finder,
            disambiguator=make_disambiguator(error=UpstreamFailureError("model timed out")),
        )

        result = await service.recognize(
            half_match, TENANT, entities=VENUE_CITY, tags=["music"], threshold=0.5
        )

        assert not result.is_match
        assert result.confidence == 0.0
        assert result.used_llm
        assert result.explanation is not None and "model timed out" in result.explanation

    async def test_missing_disambiguator_is_a_non_match(
        self,
        db_session: AsyncSession,
        half_match: dict[str, Any],
        alignment: EntityAlignmentService,
    ) -> None:
        service = RecognitionService(db_session, finder=alignment.finder)

        result = await service.recognize(
            half_match, TENANT, entities=VENUE_CITY, tags=["music"], threshold=0.5
        )

        assert not result.is_match
        assert result.confidence == 0.0
        assert result.used_llm
        assert result.explanation is not None
