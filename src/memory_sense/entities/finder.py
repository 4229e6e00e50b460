"""Entity finder: resolve a raw value to existing entities.

Strategies run in a fixed order and the first non-empty result wins:

1. exact            canonical name equal, ignoring case
2. alias            value is one of the entity's aliases
3. text_similarity  normalized / core-term similarity with the canonical
                    name or any alias
4. embedding        cosine similarity above a threshold (only when an
                    embedding function is configured)

Given the same stored entities, the same value always yields the same set.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import UUID

from memory_sense.config import settings
from memory_sense.errors import ServiceUnavailableError, UpstreamFailureError
from memory_sense.models.enums import MatchStrategy
from memory_sense.utils.text import texts_similar

if TYPE_CHECKING:
    from memory_sense.clients.embeddings import EmbedFn
    from memory_sense.entities.store import EntityStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityMatch:
    """One entity found for a value, with how it was found."""

    entity_id: UUID
    canonical_name: str
    strategy: MatchStrategy
    similarity: float = 1.0


StrategyFn = Callable[[str, str | None, str, float], Awaitable[list[EntityMatch]]]


class EntityFinder:
    """Ordered cascade of matching strategies over an EntityStore.

    Usage:
        finder = EntityFinder(store, embed_fn=client.embed)
        ids = await finder.find_matching_entity_ids("KTMC", "venue", "acme")
    """

    def __init__(
        self,
        store: EntityStore,
        embed_fn: EmbedFn | None = None,
        *,
        text_overlap: float | None = None,
    ) -> None:
        """Initialize the finder.

        Args:
            store: Entity repository bound to the caller's session.
            embed_fn: Optional async text -> vector function.
            text_overlap: Core-term overlap ratio for text similarity.
        """
        self._store = store
        self._embed_fn = embed_fn
        self._text_overlap = (
            settings.text_overlap_ratio if text_overlap is None else text_overlap
        )
        self._embedding_cache: dict[str, list[float]] = {}
        self._strategies: list[tuple[MatchStrategy, StrategyFn]] = [
            (MatchStrategy.EXACT, self._match_exact),
            (MatchStrategy.ALIAS, self._match_alias),
            (MatchStrategy.TEXT_SIMILARITY, self._match_text),
            (MatchStrategy.EMBEDDING, self._match_embedding),
        ]

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def can_embed(self) -> bool:
        return self._embed_fn is not None

    async def find_matches(
        self,
        value: str,
        entity_type: str | None,
        tenant_id: str,
        *,
        threshold: float | None = None,
        strategies: Collection[MatchStrategy] | None = None,
    ) -> list[EntityMatch]:
        """Run the cascade and return the first non-empty strategy result.

        Args:
            value: Raw surface form.
            entity_type: Entity type to search within, or None for all types.
            tenant_id: Tenant scope.
            threshold: Minimum embedding similarity (exclusive).
            strategies: Restrict the cascade to these strategies.

        Returns:
            Matches from the first strategy that produced any, else [].
        """
        if not value:
            return []

        min_similarity = (
            settings.alignment_default_threshold if threshold is None else threshold
        )
        for strategy, fn in self._strategies:
            if strategies is not None and strategy not in strategies:
                continue
            matches = await fn(value, entity_type, tenant_id, min_similarity)
            if matches:
                logger.debug(
                    "'%s' (%s) matched %d entities via %s",
                    value, entity_type, len(matches), strategy.value
                )
                return matches

        return []

    async def find_matching_entity_ids(
        self,
        value: str,
        entity_type: str | None,
        tenant_id: str,
        *,
        threshold: float | None = None,
        strategies: Collection[MatchStrategy] | None = None,
    ) -> set[UUID]:
        """Entity ids from the first strategy that matched."""
        matches = await self.find_matches(
            value, entity_type, tenant_id, threshold=threshold, strategies=strategies
        )
        return {match.entity_id for match in matches}

    async def embed(self, value: str) -> list[float]:
        """Embed a value, memoized per finder instance.

        Raises:
            ServiceUnavailableError: If no embedding function is configured.
            UpstreamFailureError: If the embedding function fails.
        """
        if self._embed_fn is None:
            raise ServiceUnavailableError("No embedding function configured")

        cached = self._embedding_cache.get(value)
        if cached is not None:
            return cached

        try:
            vector = list(await self._embed_fn(value))
        except UpstreamFailureError:
            raise
        except Exception as exc:
            raise UpstreamFailureError(
                f"Failed to generate embedding for '{value}'", details={"value": value}
            ) from exc

        self._embedding_cache[value] = vector
        return vector

    async def match_embedding(
        self,
        embedding: list[float],
        entity_type: str | None,
        tenant_id: str,
        threshold: float,
    ) -> list[EntityMatch]:
        """Entities whose embedding similarity exceeds `threshold`, best first."""
        ranked = await self._store.rank_by_embedding(
            embedding, entity_type, tenant_id, threshold=threshold
        )
        return [
            EntityMatch(
                entity_id=entity.entity_id,
                canonical_name=entity.canonical_name,
                strategy=MatchStrategy.EMBEDDING,
                similarity=similarity,
            )
            for entity, similarity in ranked
        ]

    # ── Strategies ───────────────────────────────────────────────────────────

    async def _match_exact(
        self, value: str, entity_type: str | None, tenant_id: str, threshold: float
    ) -> list[EntityMatch]:
        entities = await self._store.find_exact(value, entity_type, tenant_id)
        if not entities:
            # Some backends only fold ASCII case in SQL
            target = value.casefold()
            entities = [
                entity
                for entity, _ in await self._store.list_with_aliases(entity_type, tenant_id)
                if entity.canonical_name.casefold() == target
            ]
        return [
            EntityMatch(e.entity_id, e.canonical_name, MatchStrategy.EXACT) for e in entities
        ]

    async def _match_alias(
        self, value: str, entity_type: str | None, tenant_id: str, threshold: float
    ) -> list[EntityMatch]:
        entities = await self._store.find_by_alias(value, entity_type, tenant_id)
        return [
            EntityMatch(e.entity_id, e.canonical_name, MatchStrategy.ALIAS) for e in entities
        ]

    async def _match_text(
        self, value: str, entity_type: str | None, tenant_id: str, threshold: float
    ) -> list[EntityMatch]:
        matches: list[EntityMatch] = []
        for entity, aliases in await self._store.list_with_aliases(entity_type, tenant_id):
            names = [entity.canonical_name, *aliases]
            if any(texts_similar(value, name, min_overlap=self._text_overlap) for name in names):
                matches.append(
                    EntityMatch(
                        entity.entity_id, entity.canonical_name, MatchStrategy.TEXT_SIMILARITY
                    )
                )
        return matches

    async def _match_embedding(
        self, value: str, entity_type: str | None, tenant_id: str, threshold: float
    ) -> list[EntityMatch]:
        if self._embed_fn is None:
            return []
        try:
            embedding = await self.embed(value)
        except UpstreamFailureError as exc:
            logger.warning("Embedding lookup skipped for '%s': %s", value, exc)
            return []
        return await self.match_embedding(embedding, entity_type, tenant_id, threshold)
