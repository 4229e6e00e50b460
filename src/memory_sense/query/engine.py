"""Query engine over stored records.

Entity filters are resolved first: the finder turns each filter value into
entity ids, alignments of those entities on the filter's field path give a
key set, and the key sets of all entity filters are intersected (AND).
Regular filters are then evaluated in process against the stored values.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from memory_sense.config import settings
from memory_sense.errors import QueryError, ServiceUnavailableError
from memory_sense.models import FilterOperator, MatchStrategy, MemoryRecord, MemoryTag
from memory_sense.query.filters import Filter, matches_all, parse_filters
from memory_sense.query.paths import field_path_pattern

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from memory_sense.entities.finder import EntityFinder

logger = logging.getLogger(__name__)

# Finder strategies each entity operator may use (None: full cascade)
OPERATOR_STRATEGIES: dict[FilterOperator, tuple[MatchStrategy, ...] | None] = {
    FilterOperator.ENTITY_EXACT: (MatchStrategy.EXACT,),
    FilterOperator.ENTITY_ALIAS: (MatchStrategy.ALIAS,),
    FilterOperator.ENTITY_FUZZY: None,
}


def key_pattern_to_like(pattern: str) -> str:
    """Translate a key glob ("event:*", "user:?") into a LIKE pattern."""
    escaped = pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped.replace("*", "%").replace("?", "_")


class QueryEngine:
    """Filtered retrieval of memory records for one session.

    Usage:
        engine = QueryEngine(session, finder=finder)
        records = await engine.get_many(
            "acme", filters=['venue ~ "KTMC"', 'status = "confirmed"']
        )
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        finder: EntityFinder | None = None,
        default_limit: int | None = None,
    ) -> None:
        self._session = session
        self._finder = finder
        self._default_limit = (
            settings.query_default_limit if default_limit is None else default_limit
        )

    async def get_many(
        self,
        tenant_id: str,
        *,
        filters: Sequence[str | Mapping[str, Any] | Filter] | None = None,
        tag: str | None = None,
        pattern: str | None = None,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        """Records matching every filter, most recently updated first.

        Args:
            tenant_id: Tenant scope.
            filters: Filter strings, mappings or parsed Filters (ANDed).
            tag: Only records carrying this tag.
            pattern: Key glob with `*` and `?` wildcards.
            limit: Maximum number of records returned.

        Raises:
            InvalidFilterError: If a filter cannot be parsed.
            ServiceUnavailableError: If entity filters are used without a finder.
            QueryError: If the database query fails.
        """
        parsed = parse_filters(filters)
        entity_filters = [f for f in parsed if f.is_entity]
        regular_filters = [f for f in parsed if not f.is_entity]
        max_results = self._default_limit if limit is None else limit

        params = {
            "tenant_id": tenant_id,
            "filters": [str(f) for f in parsed],
            "tag": tag,
            "pattern": pattern,
            "limit": max_results,
        }

        if entity_filters and self._finder is None:
            raise ServiceUnavailableError(
                "Entity service not available for entity-aware queries", details=params
            )

        try:
            keys: set[str] | None = None
            if entity_filters:
                keys = await self._keys_for_entity_filters(self._finder, entity_filters, tenant_id)
                if not keys:
                    return []
                if regular_filters:
                    logger.warning(
                        "Regular filters combined with entity filters are applied in memory "
                        "and may be slower (%d records)",
                        len(keys),
                    )

            stmt = select(MemoryRecord).where(MemoryRecord.tenant_id == tenant_id)
            if keys is not None:
                stmt = stmt.where(MemoryRecord.key.in_(sorted(keys)))
            if tag:
                stmt = stmt.where(MemoryRecord.tag_rows.any(MemoryTag.tag == tag))
            if pattern:
                stmt = stmt.where(MemoryRecord.key.like(key_pattern_to_like(pattern), escape="\\"))
            stmt = stmt.order_by(MemoryRecord.updated_at.desc(), MemoryRecord.key)
            if not regular_filters:
                stmt = stmt.limit(max_results)

            records = list((await self._session.execute(stmt)).scalars().all())
        except SQLAlchemyError as exc:
            raise QueryError(f"Failed to query memory: {exc}", params=params) from exc

        if regular_filters:
            records = [r for r in records if matches_all(r.value, regular_filters)]
        return records[:max_results]

    async def _keys_for_entity_filters(
        self, finder: EntityFinder, entity_filters: list[Filter], tenant_id: str
    ) -> set[str]:
        matched: set[str] | None = None

        for flt in entity_filters:
            entity_ids = await finder.find_matching_entity_ids(
                str(flt.value),
                None,
                tenant_id,
                strategies=OPERATOR_STRATEGIES[flt.operator],
            )
            keys = await finder.store.keys_for_entities(
                entity_ids, tenant_id, field_pattern=field_path_pattern(flt.path)
            )
            logger.debug(
                "Entity filter %s → %d entities, %d records", flt, len(entity_ids), len(keys)
            )
            matched = keys if matched is None else matched & keys
            if not matched:
                return set()

        return matched or set()
