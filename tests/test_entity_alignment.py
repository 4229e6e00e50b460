"""Tests for EntityAlignmentService.

Covers the alignment cascade, alias accumulation, upsert idempotence,
graceful degradation on embedding failures and the operator overrides.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from memory_sense.entities.alignment import EntityAlignmentService, confidence_for
from memory_sense.entities.finder import EntityMatch
from memory_sense.errors import NotFoundError
from memory_sense.models import AlignmentConfidence, Entity, EntityAlignment, MatchStrategy

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tests.conftest import MakeEmbedFn, MakeField, MakeVector

TENANT = "acme"


async def count_alignments(session: AsyncSession) -> int:
    stmt = select(func.count()).select_from(EntityAlignment)
    return (await session.execute(stmt)).scalar_one()


class TestConfidenceFor:
    """Tests for the confidence band mapping."""

    @pytest.mark.parametrize(
        ("strategy", "similarity", "expected"),
        [
            (MatchStrategy.EXACT, 1.0, AlignmentConfidence.HIGH),
            (MatchStrategy.ALIAS, 1.0, AlignmentConfidence.HIGH),
            (MatchStrategy.TEXT_SIMILARITY, 1.0, AlignmentConfidence.MEDIUM),
            (MatchStrategy.EMBEDDING, 0.96, AlignmentConfidence.HIGH),
            (MatchStrategy.EMBEDDING, 0.95, AlignmentConfidence.MEDIUM),
            (MatchStrategy.EMBEDDING, 0.86, AlignmentConfidence.MEDIUM),
            (MatchStrategy.EMBEDDING, 0.85, AlignmentConfidence.LOW),
            (MatchStrategy.EMBEDDING, 0.61, AlignmentConfidence.LOW),
        ],
    )
    def test_bands(
        self, strategy: MatchStrategy, similarity: float, expected: AlignmentConfidence
    ) -> None:
        match = EntityMatch(uuid4(), "x", strategy, similarity)
        assert confidence_for(match) is expected


class TestAlignEntityFields:
    """Tests for align_entity_fields()."""

    async def test_creates_entity_when_nothing_matches(
        self, db_session: AsyncSession, make_field: MakeField
    ) -> None:
        service = EntityAlignmentService(db_session)
        results = await service.align_entity_fields(
            "event:1", [make_field("Conference Center")], tenant_id=TENANT
        )

        alignment = results["venue"]
        assert alignment is not None
        assert alignment.created
        assert alignment.confidence is AlignmentConfidence.HIGH
        assert alignment.canonical_name == "Conference Center"

    async def test_conference_center_scenario(
        self, db_session: AsyncSession, make_field: MakeField
    ) -> None:
        service = EntityAlignmentService(db_session)
        first = await service.align_entity_fields(
            "event:1", [make_field("Conference Center")], tenant_id=TENANT
        )
        second = await service.align_entity_fields(
            "event:2", [make_field("conference center, riga")], tenant_id=TENANT
        )

        assert first["venue"] is not None and second["venue"] is not None
        assert second["venue"].entity_id == first["venue"].entity_id
        assert second["venue"].strategy is MatchStrategy.TEXT_SIMILARITY
        assert second["venue"].confidence is AlignmentConfidence.MEDIUM

        aliases = await service.store.get_aliases(first["venue"].entity_id)
        assert "Conference Center" in aliases
        assert "conference center, riga" in aliases

    async def test_realigning_same_field_keeps_one_row(
        self, db_session: AsyncSession, make_field: MakeField
    ) -> None:
        service = EntityAlignmentService(db_session)
        for value in ["Riga", "RIGA", "Tallinn"]:
            await service.align_entity_fields(
                "event:1", [make_field(value, field_path="city", entity_type="city")],
                tenant_id=TENANT,
            )

        assert await count_alignments(db_session) == 1
        alignments = await service.get_alignments("event:1", TENANT)
        assert alignments["city"].canonical_name == "Tallinn"
        assert alignments["city"].original_value == "Tallinn"

    async def test_auto_create_disabled(
        self, db_session: AsyncSession, make_field: MakeField
    ) -> None:
        service = EntityAlignmentService(db_session)
        results = await service.align_entity_fields(
            "event:1", [make_field("Nowhere Hall")], auto_create=False, tenant_id=TENANT
        )

        assert results == {"venue": None}
        assert await count_alignments(db_session) == 0

    async def test_tenant_isolation(
        self, db_session: AsyncSession, make_field: MakeField
    ) -> None:
        service = EntityAlignmentService(db_session)
        a = await service.align_entity_fields(
            "event:1", [make_field("Conference Center")], tenant_id="tenant-a"
        )
        b = await service.align_entity_fields(
            "event:1", [make_field("Conference Center")], tenant_id="tenant-b"
        )

        assert a["venue"] is not None and b["venue"] is not None
        assert a["venue"].entity_id != b["venue"].entity_id
        assert b["venue"].created
        assert await count_alignments(db_session) == 2

    async def test_default_tenant(
        self, db_session: AsyncSession, make_field: MakeField
    ) -> None:
        service = EntityAlignmentService(db_session, default_tenant_id="fallback")
        await service.align_entity_fields("event:1", [make_field("Riga")])
        assert "venue" in await service.get_alignments("event:1", "fallback")
        assert await service.get_alignments("event:1", TENANT) == {}

    async def test_embedding_match_adds_alias(
        self,
        db_session: AsyncSession,
        make_field: MakeField,
        make_vector: MakeVector,
        make_embed_fn: MakeEmbedFn,
    ) -> None:
        embed = make_embed_fn(
            {
                "Latvian National Opera": make_vector((0, 1.0)),
                "LNO": make_vector((0, 1.0), (1, 0.5)),
            }
        )
        service = EntityAlignmentService(db_session, embed_fn=embed)
        first = await service.align_entity_fields(
            "event:1", [make_field("Latvian National Opera")], tenant_id=TENANT
        )
        second = await service.align_entity_fields(
            "event:2", [make_field("LNO")], tenant_id=TENANT
        )

        assert first["venue"] is not None and second["venue"] is not None
        assert second["venue"].entity_id == first["venue"].entity_id
        assert second["venue"].strategy is MatchStrategy.EMBEDDING
        assert second["venue"].confidence is AlignmentConfidence.MEDIUM
        assert "LNO" in await service.store.get_aliases(first["venue"].entity_id)

    async def test_threshold_priority(
        self,
        db_session: AsyncSession,
        make_field: MakeField,
        make_vector: MakeVector,
        make_embed_fn: MakeEmbedFn,
    ) -> None:
        # cosine("LNO", "Latvian National Opera") ~ 0.894
        embed = make_embed_fn(
            {
                "Latvian National Opera": make_vector((0, 1.0)),
                "LNO": make_vector((0, 1.0), (1, 0.5)),
            }
        )
        service = EntityAlignmentService(db_session, embed_fn=embed)
        await service.align_entity_fields(
            "event:1", [make_field("Latvian National Opera")], tenant_id=TENANT
        )

        # Call threshold above the similarity: no match
        strict = await service.align_entity_fields(
            "event:2", [make_field("LNO")], threshold=0.95, auto_create=False, tenant_id=TENANT
        )
        assert strict == {"venue": None}

        # Field threshold beats the call threshold
        lenient = await service.align_entity_fields(
            "event:3",
            [make_field("LNO", threshold=0.5)],
            threshold=0.95,
            tenant_id=TENANT,
        )
        assert lenient["venue"] is not None
        assert lenient["venue"].strategy is MatchStrategy.EMBEDDING

    async def test_embedding_failure_does_not_abort_other_fields(
        self,
        db_session: AsyncSession,
        make_field: MakeField,
        make_embed_fn: MakeEmbedFn,
    ) -> None:
        service = EntityAlignmentService(
            db_session, embed_fn=make_embed_fn(failing={"Opera House"})
        )
        results = await service.align_entity_fields(
            "event:1",
            [
                make_field("Opera House"),
                make_field("Riga", field_path="city", entity_type="city"),
            ],
            tenant_id=TENANT,
        )

        assert results["venue"] is not None and results["venue"].created
        assert results["city"] is not None and results["city"].created
        venue = await db_session.get(Entity, results["venue"].entity_id)
        assert venue is not None and venue.embedding is None
        assert await count_alignments(db_session) == 2

    async def test_embedding_failure_without_auto_create(
        self,
        db_session: AsyncSession,
        make_field: MakeField,
        make_embed_fn: MakeEmbedFn,
    ) -> None:
        service = EntityAlignmentService(
            db_session, embed_fn=make_embed_fn(failing={"Opera House"})
        )
        results = await service.align_entity_fields(
            "event:1", [make_field("Opera House")], auto_create=False, tenant_id=TENANT
        )
        assert results == {"venue": None}


class TestOperatorOverrides:
    """Tests for unlink_entity(), force_realign() and get_entity_stats()."""

    async def test_unlink(self, db_session: AsyncSession, make_field: MakeField) -> None:
        service = EntityAlignmentService(db_session)
        await service.align_entity_fields("event:1", [make_field("Riga")], tenant_id=TENANT)

        assert await service.unlink_entity("event:1", "venue", TENANT)
        assert not await service.unlink_entity("event:1", "venue", TENANT)
        assert await service.get_alignments("event:1", TENANT) == {}

    async def test_force_realign(self, db_session: AsyncSession, make_field: MakeField) -> None:
        service = EntityAlignmentService(db_session)
        results = await service.align_entity_fields(
            "event:1", [make_field("KTMC")], tenant_id=TENANT
        )
        target = await service.store.create_entity(TENANT, "venue", "Conference Center")

        realigned = await service.force_realign("event:1", "venue", target.entity_id, TENANT)

        assert realigned.entity_id == target.entity_id
        assert realigned.confidence is AlignmentConfidence.HIGH
        assert realigned.original_value == "KTMC"
        stored = await service.get_alignments("event:1", TENANT)
        assert stored["venue"].entity_id == target.entity_id
        assert stored["venue"].entity_id != results["venue"].entity_id  # type: ignore[union-attr]
        assert await count_alignments(db_session) == 1

    async def test_force_realign_without_prior_alignment(self, db_session: AsyncSession) -> None:
        service = EntityAlignmentService(db_session)
        target = await service.store.create_entity(TENANT, "venue", "Conference Center")

        realigned = await service.force_realign("event:9", "venue", target.entity_id, TENANT)

        assert realigned.original_value == "Conference Center"
        assert "venue" in await service.get_alignments("event:9", TENANT)

    async def test_force_realign_unknown_entity(self, db_session: AsyncSession) -> None:
        service = EntityAlignmentService(db_session)
        with pytest.raises(NotFoundError):
            await service.force_realign("event:1", "venue", uuid4(), TENANT)

    async def test_force_realign_other_tenant_entity(self, db_session: AsyncSession) -> None:
        service = EntityAlignmentService(db_session)
        foreign = await service.store.create_entity("other", "venue", "Conference Center")
        with pytest.raises(NotFoundError):
            await service.force_realign("event:1", "venue", foreign.entity_id, TENANT)

    async def test_stats(self, db_session: AsyncSession, make_field: MakeField) -> None:
        service = EntityAlignmentService(db_session)
        await service.align_entity_fields(
            "event:1",
            [
                make_field("Conference Center"),
                make_field("Riga", field_path="city", entity_type="city"),
            ],
            tenant_id=TENANT,
        )
        await service.align_entity_fields(
            "event:2", [make_field("Opera House")], tenant_id=TENANT
        )
        await service.align_entity_fields(
            "event:1", [make_field("Elsewhere")], tenant_id="other"
        )

        stats = await service.get_entity_stats(tenant_id=TENANT)
        assert stats.total_entities == 3
        assert stats.total_alignments == 3
        assert stats.entities_by_type == {"city": 1, "venue": 2}

        venue_stats = await service.get_entity_stats("venue", TENANT)
        assert venue_stats.total_entities == 2
        assert venue_stats.total_alignments == 2
        assert venue_stats.entities_by_type == {"venue": 2}
