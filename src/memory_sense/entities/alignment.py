"""Entity alignment: map record fields to canonical entities.

For each field the finder cascade runs in order (exact, alias, text
similarity, embedding). The first hit wins and the surface form is added to
the entity's aliases. With no hit a new entity is created (or, with
auto_create off, the field is left unaligned). Every decision is stored as
a single upserted alignment row per (tenant, record, field).

Confidence bands:
    exact / alias       high
    text similarity     medium
    embedding           high > 0.95, medium > 0.85, else low
    newly created       high
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from memory_sense.config import settings
from memory_sense.entities.finder import EntityFinder, EntityMatch
from memory_sense.entities.store import EntityStats, EntityStore
from memory_sense.errors import NotFoundError, UpstreamFailureError
from memory_sense.models.base import utcnow
from memory_sense.models.enums import AlignmentConfidence, MatchStrategy

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from memory_sense.clients.embeddings import EmbedFn
    from memory_sense.entities.fields import EntityField

logger = logging.getLogger(__name__)

# Strategies tried before the embedding step
LEXICAL_STRATEGIES = (
    MatchStrategy.EXACT,
    MatchStrategy.ALIAS,
    MatchStrategy.TEXT_SIMILARITY,
)


@dataclass
class FieldAlignment:
    """Result of aligning one field."""

    field_path: str
    entity_id: UUID
    canonical_name: str
    original_value: str
    confidence: AlignmentConfidence
    strategy: MatchStrategy | None = None
    similarity: float = 1.0
    aligned_at: datetime = field(default_factory=utcnow)

    @property
    def created(self) -> bool:
        return self.strategy is MatchStrategy.CREATED


def confidence_for(match: EntityMatch) -> AlignmentConfidence:
    """Map a finder match to the stored confidence band."""
    if match.strategy in (MatchStrategy.EXACT, MatchStrategy.ALIAS):
        return AlignmentConfidence.HIGH
    if match.strategy is MatchStrategy.TEXT_SIMILARITY:
        return AlignmentConfidence.MEDIUM
    if match.similarity > settings.alignment_high_similarity:
        return AlignmentConfidence.HIGH
    if match.similarity > settings.alignment_medium_similarity:
        return AlignmentConfidence.MEDIUM
    return AlignmentConfidence.LOW


class EntityAlignmentService:
    """Resolves entity fields and records alignments.

    Runs on the caller's session; fields are processed one after another
    because an AsyncSession is not safe for concurrent use.

    Usage:
        service = EntityAlignmentService(session, embed_fn=client.embed)
        results = await service.align_entity_fields(
            "event:001", fields, tenant_id="acme"
        )
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        embed_fn: EmbedFn | None = None,
        default_threshold: float | None = None,
        default_tenant_id: str | None = None,
    ) -> None:
        """Initialize the alignment service.

        Args:
            session: Database session the store and finder run on.
            embed_fn: Optional async text -> vector function for the
                embedding strategy and for new entities' embeddings.
            default_threshold: Embedding threshold when neither the field nor
                the call gives one.
            default_tenant_id: Tenant used when a call passes none.
        """
        self._store = EntityStore(session)
        self._finder = EntityFinder(self._store, embed_fn)
        self._default_threshold = (
            settings.alignment_default_threshold if default_threshold is None else default_threshold
        )
        self._default_tenant_id = default_tenant_id or settings.default_tenant_id

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def finder(self) -> EntityFinder:
        return self._finder

    async def align_entity_fields(
        self,
        memory_key: str,
        fields: list[EntityField],
        *,
        threshold: float | None = None,
        auto_create: bool = True,
        tenant_id: str | None = None,
    ) -> dict[str, FieldAlignment | None]:
        """Align every field of a record.

        Threshold priority: field threshold > `threshold` > service default.

        Args:
            memory_key: Key of the record the fields belong to.
            fields: Fields to resolve.
            threshold: Call-level embedding threshold.
            auto_create: Create an entity when nothing matches.
            tenant_id: Tenant scope.

        Returns:
            Mapping of field path to its alignment, or None when nothing
            matched and auto_create is off. A failed embedding call counts
            as no match.
        """
        tenant = tenant_id or self._default_tenant_id
        results: dict[str, FieldAlignment | None] = {}

        for entity_field in fields:
            if entity_field.threshold is not None:
                field_threshold = entity_field.threshold
            elif threshold is not None:
                field_threshold = threshold
            else:
                field_threshold = self._default_threshold

            results[entity_field.field_path] = await self._align_single(
                memory_key, entity_field, field_threshold, auto_create, tenant
            )

        return results

    async def _align_single(
        self,
        memory_key: str,
        entity_field: EntityField,
        threshold: float,
        auto_create: bool,
        tenant_id: str,
    ) -> FieldAlignment | None:
        value = entity_field.value
        logger.debug(
            "Aligning '%s' (type: %s, threshold: %.2f)", value, entity_field.entity_type, threshold
        )

        matches = await self._finder.find_matches(
            value, entity_field.entity_type, tenant_id, strategies=LEXICAL_STRATEGIES
        )

        embedding: list[float] | None = None
        if not matches and self._finder.can_embed:
            try:
                embedding = await self._finder.embed(value)
            except UpstreamFailureError as exc:
                # Treated as "no match"; the field still gets created or left unaligned
                logger.warning("Failed to generate embedding for '%s': %s", value, exc)
            else:
                matches = await self._finder.match_embedding(
                    embedding, entity_field.entity_type, tenant_id, threshold
                )

        if matches:
            best = matches[0]
            confidence = confidence_for(best)
            await self._store.add_alias(best.entity_id, value, tenant_id)
            logger.debug(
                "'%s' → '%s' via %s (%s)",
                value, best.canonical_name, best.strategy.value, confidence.value
            )
            alignment = FieldAlignment(
                field_path=entity_field.field_path,
                entity_id=best.entity_id,
                canonical_name=best.canonical_name,
                original_value=value,
                confidence=confidence,
                strategy=best.strategy,
                similarity=best.similarity,
            )
        elif auto_create:
            entity = await self._store.create_entity(
                tenant_id, entity_field.entity_type, value, embedding=embedding
            )
            alignment = FieldAlignment(
                field_path=entity_field.field_path,
                entity_id=entity.entity_id,
                canonical_name=entity.canonical_name,
                original_value=value,
                confidence=AlignmentConfidence.HIGH,
                strategy=MatchStrategy.CREATED,
            )
        else:
            logger.debug("No match for '%s' and auto-create disabled", value)
            return None

        await self._store.upsert_alignment(
            tenant_id=tenant_id,
            memory_key=memory_key,
            field_path=alignment.field_path,
            entity_id=alignment.entity_id,
            original_value=value,
            confidence=alignment.confidence,
        )
        return alignment

    # ── Operator overrides ───────────────────────────────────────────────────

    async def unlink_entity(
        self, memory_key: str, field_path: str, tenant_id: str | None = None
    ) -> bool:
        """Remove one alignment. Returns True if a row was deleted."""
        tenant = tenant_id or self._default_tenant_id
        deleted = await self._store.delete_alignment(memory_key, field_path, tenant)
        logger.info("Unlinked %s:%s (%d rows)", memory_key, field_path, deleted)
        return deleted > 0

    async def force_realign(
        self,
        memory_key: str,
        field_path: str,
        new_entity_id: UUID,
        tenant_id: str | None = None,
    ) -> FieldAlignment:
        """Point a field at a specific entity with high confidence.

        Raises:
            NotFoundError: If the entity does not exist for the tenant.
        """
        tenant = tenant_id or self._default_tenant_id
        entity = await self._store.get_entity(new_entity_id, tenant)
        if entity is None:
            raise NotFoundError(
                f"Entity with ID {new_entity_id} not found",
                details={"entity_id": str(new_entity_id), "tenant_id": tenant},
            )

        existing = await self._store.get_alignment(memory_key, field_path, tenant)
        original_value = existing.original_value if existing else entity.canonical_name

        await self._store.upsert_alignment(
            tenant_id=tenant,
            memory_key=memory_key,
            field_path=field_path,
            entity_id=entity.entity_id,
            original_value=original_value,
            confidence=AlignmentConfidence.HIGH,
        )
        logger.info("Realigned %s:%s → %s", memory_key, field_path, entity.entity_id)
        return FieldAlignment(
            field_path=field_path,
            entity_id=entity.entity_id,
            canonical_name=entity.canonical_name,
            original_value=original_value,
            confidence=AlignmentConfidence.HIGH,
        )

    async def get_entity_stats(
        self, entity_type: str | None = None, tenant_id: str | None = None
    ) -> EntityStats:
        return await self._store.stats(tenant_id or self._default_tenant_id, entity_type)

    async def get_alignments(
        self, memory_key: str, tenant_id: str | None = None
    ) -> dict[str, FieldAlignment]:
        """Current alignments of a record, keyed by field path."""
        tenant = tenant_id or self._default_tenant_id
        rows = await self._store.get_alignments(memory_key, tenant)
        return {
            alignment.field_path: FieldAlignment(
                field_path=alignment.field_path,
                entity_id=entity.entity_id,
                canonical_name=entity.canonical_name,
                original_value=alignment.original_value,
                confidence=alignment.confidence,
                aligned_at=alignment.aligned_at,
            )
            for alignment, entity in rows
        }
