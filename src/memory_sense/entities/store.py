"""Repository for entities, aliases and alignments.

All queries are scoped to one tenant. The store owns no transaction: it
runs on the caller's AsyncSession and only flushes.

Writes that must be atomic under concurrency use dialect upserts:
- alias append:     INSERT ... ON CONFLICT (entity_id, alias) DO NOTHING
- alignment upsert: INSERT ... ON CONFLICT (tenant_id, memory_key, field_path) DO UPDATE
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import numpy as np
from sqlalchemy import ColumnElement, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from memory_sense.errors import MemorySenseError
from memory_sense.models import AlignmentConfidence, Entity, EntityAlias, EntityAlignment
from memory_sense.models.base import utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for mismatched or zero vectors.

    Same scale as pgvector's `1 - (a <=> b)`.
    """
    a_np = np.asarray(a, dtype=np.float64)
    b_np = np.asarray(b, dtype=np.float64)
    if a_np.shape != b_np.shape:
        return 0.0

    norm_a = np.linalg.norm(a_np)
    norm_b = np.linalg.norm(b_np)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a_np, b_np) / (norm_a * norm_b))


def _scope(tenant_id: str, entity_type: str | None) -> list[ColumnElement[bool]]:
    """Tenant filter plus an optional entity type filter."""
    conditions = [Entity.tenant_id == tenant_id]
    if entity_type is not None:
        conditions.append(Entity.entity_type == entity_type)
    return conditions


@dataclass
class EntityStats:
    """Counts for one tenant, optionally restricted to an entity type."""

    total_entities: int
    total_alignments: int
    entities_by_type: dict[str, int] = field(default_factory=dict)


class EntityStore:
    """Tenant-scoped persistence for entities and alignments.

    Usage:
        store = EntityStore(session)
        entity = await store.create_entity("acme", "venue", "Conference Center")
        await store.add_alias(entity.entity_id, "KTMC", "acme")
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def dialect(self) -> str:
        return self._session.get_bind().dialect.name

    def _insert(self, table: Any) -> Any:
        if self.dialect == "postgresql":
            return pg_insert(table)
        if self.dialect == "sqlite":
            return sqlite_insert(table)
        raise MemorySenseError(f"Unsupported database dialect: {self.dialect}")

    # ── Entities ─────────────────────────────────────────────────────────────

    async def get_entity(self, entity_id: UUID, tenant_id: str) -> Entity | None:
        stmt = select(Entity).where(
            Entity.entity_id == entity_id,
            Entity.tenant_id == tenant_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_exact(
        self, value: str, entity_type: str | None, tenant_id: str
    ) -> list[Entity]:
        """Entities whose canonical name equals `value`, ignoring case."""
        stmt = (
            select(Entity)
            .where(
                *_scope(tenant_id, entity_type),
                func.lower(Entity.canonical_name) == value.lower(),
            )
            .order_by(Entity.created_at, Entity.entity_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_alias(
        self, value: str, entity_type: str | None, tenant_id: str
    ) -> list[Entity]:
        """Entities with `value` in their alias set."""
        stmt = (
            select(Entity)
            .join(EntityAlias, EntityAlias.entity_id == Entity.entity_id)
            .where(
                *_scope(tenant_id, entity_type),
                EntityAlias.alias == value,
            )
            .order_by(Entity.created_at, Entity.entity_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().unique().all())

    async def list_with_aliases(
        self, entity_type: str | None, tenant_id: str
    ) -> list[tuple[Entity, list[str]]]:
        """Entities (of one type, or all types) with their aliases, oldest first."""
        entities_stmt = (
            select(Entity)
            .where(*_scope(tenant_id, entity_type))
            .order_by(Entity.created_at, Entity.entity_id)
        )
        entities = list((await self._session.execute(entities_stmt)).scalars().all())
        if not entities:
            return []

        aliases_stmt = (
            select(EntityAlias.entity_id, EntityAlias.alias)
            .where(EntityAlias.entity_id.in_([e.entity_id for e in entities]))
            .order_by(EntityAlias.created_at, EntityAlias.alias)
        )
        aliases: dict[UUID, list[str]] = {}
        for entity_id, alias in (await self._session.execute(aliases_stmt)).all():
            aliases.setdefault(entity_id, []).append(alias)

        return [(entity, aliases.get(entity.entity_id, [])) for entity in entities]

    async def get_aliases(self, entity_id: UUID) -> list[str]:
        stmt = (
            select(EntityAlias.alias)
            .where(EntityAlias.entity_id == entity_id)
            .order_by(EntityAlias.created_at, EntityAlias.alias)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def rank_by_embedding(
        self,
        embedding: Sequence[float],
        entity_type: str | None,
        tenant_id: str,
        *,
        threshold: float,
        limit: int | None = None,
    ) -> list[tuple[Entity, float]]:
        """Entities whose embedding similarity exceeds `threshold`.

        Returns (entity, similarity) pairs, most similar first. PostgreSQL
        ranks with pgvector's cosine distance; other dialects score in process.
        """
        if self.dialect == "postgresql":
            similarity = (1 - Entity.embedding.cosine_distance(embedding)).label("similarity")
            stmt = (
                select(Entity, similarity)
                .where(
                    *_scope(tenant_id, entity_type),
                    Entity.embedding.is_not(None),
                    similarity > threshold,
                )
                .order_by(similarity.desc(), Entity.created_at)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await self._session.execute(stmt)
            return [(entity, float(score)) for entity, score in result.all()]

        stmt = (
            select(Entity)
            .where(
                *_scope(tenant_id, entity_type),
                Entity.embedding.is_not(None),
            )
            .order_by(Entity.created_at, Entity.entity_id)
        )
        entities = (await self._session.execute(stmt)).scalars().all()
        scored = [(entity, cosine_similarity(embedding, entity.embedding)) for entity in entities]
        ranked = sorted(
            (pair for pair in scored if pair[1] > threshold),
            key=lambda pair: pair[1],
            reverse=True,
        )
        return ranked[:limit] if limit is not None else ranked

    async def create_entity(
        self,
        tenant_id: str,
        entity_type: str,
        canonical_name: str,
        *,
        embedding: Sequence[float] | None = None,
        confidence: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> Entity:
        """Create an entity whose alias set starts with its canonical name."""
        entity = Entity(
            entity_id=uuid4(),
            tenant_id=tenant_id,
            entity_type=entity_type,
            canonical_name=canonical_name,
            embedding=list(embedding) if embedding is not None else None,
            confidence=confidence,
            metadata_=metadata or {},
        )
        self._session.add(entity)
        await self._session.flush()
        await self.add_alias(entity.entity_id, canonical_name, tenant_id)
        logger.debug(
            "Created entity %s (%s) '%s' for tenant %s",
            entity.entity_id, entity_type, canonical_name, tenant_id
        )
        return entity

    async def add_alias(self, entity_id: UUID, alias: str, tenant_id: str) -> bool:
        """Append `alias` to the entity unless already present.

        Returns:
            True if a new alias row was written.
        """
        stmt = (
            self._insert(EntityAlias)
            .values(entity_id=entity_id, alias=alias, tenant_id=tenant_id, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["entity_id", "alias"])
        )
        result = await self._session.execute(stmt)
        return bool(result.rowcount)

    # ── Alignments ───────────────────────────────────────────────────────────

    async def upsert_alignment(
        self,
        *,
        tenant_id: str,
        memory_key: str,
        field_path: str,
        entity_id: UUID,
        original_value: str,
        confidence: AlignmentConfidence,
    ) -> None:
        """Write the single alignment row for (tenant, record, field)."""
        aligned_at = utcnow()
        stmt = self._insert(EntityAlignment).values(
            alignment_id=uuid4(),
            tenant_id=tenant_id,
            memory_key=memory_key,
            field_path=field_path,
            entity_id=entity_id,
            original_value=original_value,
            confidence=confidence,
            aligned_at=aligned_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "memory_key", "field_path"],
            set_={
                "entity_id": entity_id,
                "original_value": original_value,
                "confidence": confidence,
                "aligned_at": aligned_at,
            },
        )
        await self._session.execute(stmt)

    async def get_alignment(
        self, memory_key: str, field_path: str, tenant_id: str
    ) -> EntityAlignment | None:
        stmt = select(EntityAlignment).where(
            EntityAlignment.tenant_id == tenant_id,
            EntityAlignment.memory_key == memory_key,
            EntityAlignment.field_path == field_path,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_alignments(
        self, memory_key: str, tenant_id: str
    ) -> list[tuple[EntityAlignment, Entity]]:
        """Alignments of one record joined with their entities."""
        stmt = (
            select(EntityAlignment, Entity)
            .join(Entity, Entity.entity_id == EntityAlignment.entity_id)
            .where(
                EntityAlignment.tenant_id == tenant_id,
                EntityAlignment.memory_key == memory_key,
            )
            .order_by(EntityAlignment.field_path)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [(alignment, entity) for alignment, entity in result.all()]

    async def delete_alignment(self, memory_key: str, field_path: str, tenant_id: str) -> int:
        stmt = delete(EntityAlignment).where(
            EntityAlignment.tenant_id == tenant_id,
            EntityAlignment.memory_key == memory_key,
            EntityAlignment.field_path == field_path,
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def delete_alignments_for_key(self, memory_key: str, tenant_id: str) -> int:
        stmt = delete(EntityAlignment).where(
            EntityAlignment.tenant_id == tenant_id,
            EntityAlignment.memory_key == memory_key,
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def keys_for_entities(
        self,
        entity_ids: Iterable[UUID],
        tenant_id: str,
        *,
        field_pattern: re.Pattern[str] | None = None,
    ) -> set[str]:
        """Record keys with an alignment to any of `entity_ids`.

        Args:
            entity_ids: Entities to look up.
            tenant_id: Tenant scope.
            field_pattern: When given, only alignments whose field path fully
                matches the pattern count.
        """
        ids = list(entity_ids)
        if not ids:
            return set()

        stmt = select(EntityAlignment.memory_key, EntityAlignment.field_path).where(
            EntityAlignment.tenant_id == tenant_id,
            EntityAlignment.entity_id.in_(ids),
        )
        rows = (await self._session.execute(stmt)).all()
        return {
            memory_key
            for memory_key, field_path in rows
            if field_pattern is None or field_pattern.fullmatch(field_path)
        }

    async def stats(self, tenant_id: str, entity_type: str | None = None) -> EntityStats:
        """Entity and alignment counts for a tenant."""
        by_type_stmt = (
            select(Entity.entity_type, func.count())
            .where(Entity.tenant_id == tenant_id)
            .group_by(Entity.entity_type)
            .order_by(Entity.entity_type)
        )
        alignments_stmt = (
            select(func.count())
            .select_from(EntityAlignment)
            .join(Entity, Entity.entity_id == EntityAlignment.entity_id)
            .where(EntityAlignment.tenant_id == tenant_id)
        )
        if entity_type is not None:
            by_type_stmt = by_type_stmt.where(Entity.entity_type == entity_type)
            alignments_stmt = alignments_stmt.where(Entity.entity_type == entity_type)

        by_type = {
            name: int(count) for name, count in (await self._session.execute(by_type_stmt)).all()
        }
        total_alignments = (await self._session.execute(alignments_stmt)).scalar_one()

        return EntityStats(
            total_entities=sum(by_type.values()),
            total_alignments=int(total_alignments),
            entities_by_type=by_type,
        )
