"""Memory store: keyed JSON records with entity alignment and recognition.

Ties the pieces together for one session:

    set        upsert a record, align its entity fields, drop stale alignments
    get        record value, tags and alignments
    delete     record and its alignments
    get_many   filtered retrieval (regular and entity-aware filters)
    recognize  is a candidate already stored?
    enrich     merge new data into a stored record and write it back

The store never commits; the caller owns the transaction.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from memory_sense.config import settings
from memory_sense.entities.alignment import EntityAlignmentService, FieldAlignment
from memory_sense.entities.fields import parse_entity_fields, stale_field_paths
from memory_sense.errors import NotFoundError, ServiceUnavailableError
from memory_sense.models import MemoryRecord, MemoryTag
from memory_sense.models.base import utcnow
from memory_sense.query.engine import QueryEngine
from memory_sense.recognition.enrichment import EnrichmentOutcome, EnrichmentService
from memory_sense.recognition.service import RecognitionResult, RecognitionService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from memory_sense.clients.embeddings import EmbedFn
    from memory_sense.query.filters import Filter
    from memory_sense.recognition.enrichment import Enricher
    from memory_sense.recognition.service import Disambiguator

logger = logging.getLogger(__name__)

_ARRAY_INDEX_RE = re.compile(r"\[\d+\]")


@dataclass
class MemoryEntry:
    """A stored record as returned to callers."""

    key: str
    value: Any
    tags: list[str] = field(default_factory=list)
    alignments: dict[str, FieldAlignment] = field(default_factory=dict)
    updated_at: datetime | None = None

    @classmethod
    def from_record(
        cls, record: MemoryRecord, alignments: dict[str, FieldAlignment] | None = None
    ) -> MemoryEntry:
        return cls(
            key=record.key,
            value=record.value,
            tags=record.tags,
            alignments=alignments or {},
            updated_at=record.updated_at,
        )


class MemoryStore:
    """Tenant-scoped agent memory on one AsyncSession.

    Usage:
        async with async_session_factory() as session:
            memory = MemoryStore(session, embed_fn=EmbeddingClient().embed)
            await memory.set(
                "event:001",
                {"title": "Jazz Night", "venue": "Conference Center"},
                entities={"venue": "venue"},
                tenant_id="acme",
            )
            await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        embed_fn: EmbedFn | None = None,
        disambiguator: Disambiguator | None = None,
        enricher: Enricher | None = None,
        default_tenant_id: str | None = None,
    ) -> None:
        self._session = session
        self._embed_fn = embed_fn
        self._default_tenant_id = default_tenant_id or settings.default_tenant_id
        self._alignment = EntityAlignmentService(
            session, embed_fn=embed_fn, default_tenant_id=self._default_tenant_id
        )
        self._recognition = RecognitionService(
            session, finder=self._alignment.finder, disambiguator=disambiguator
        )
        self._enrichment = EnrichmentService(enricher)

    @property
    def entities(self) -> EntityAlignmentService:
        """Alignment service for operator actions (unlink, realign, stats)."""
        return self._alignment

    def _tenant(self, tenant_id: str | None) -> str:
        return tenant_id or self._default_tenant_id

    async def _load(self, key: str, tenant_id: str) -> MemoryRecord | None:
        stmt = select(MemoryRecord).where(
            MemoryRecord.tenant_id == tenant_id,
            MemoryRecord.key == key,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def set(
        self,
        key: str,
        value: Any,
        *,
        tags: Sequence[str] | None = None,
        entities: Mapping[str, str] | None = None,
        alignment_threshold: float | None = None,
        auto_create_entities: bool = True,
        tenant_id: str | None = None,
    ) -> MemoryEntry:
        """Store `value` under `key`, replacing any previous value.

        Args:
            key: Record key, unique per tenant.
            value: JSON-serializable value.
            tags: Replace the record's tags (None keeps the current ones).
            entities: Entity field spec, path -> 'type' or 'type:threshold'.
            alignment_threshold: Embedding threshold for fields without their own.
            auto_create_entities: Create entities for unmatched values.
            tenant_id: Tenant scope.

        Returns:
            The stored entry with its current alignments.

        Raises:
            InvalidEntitySpecError: If the entity spec is malformed.
            InvalidFilterError: If a spec path is malformed.
        """
        tenant = self._tenant(tenant_id)
        # Validate the entity spec before touching the database
        fields = parse_entity_fields(value, entities)

        record = await self._load(key, tenant)
        if record is None:
            record = MemoryRecord(tenant_id=tenant, key=key, value=value)
            record.tag_rows = [MemoryTag(tag=tag) for tag in dict.fromkeys(tags or [])]
            self._session.add(record)
            logger.debug("Created record %s for tenant %s", key, tenant)
        else:
            record.value = value
            record.updated_at = utcnow()
            if tags is not None:
                self._replace_tags(record, tags)
            logger.debug("Updated record %s for tenant %s", key, tenant)
        await self._session.flush()

        if entities:
            previous = await self._alignment.get_alignments(key, tenant)
            results = await self._alignment.align_entity_fields(
                key,
                fields,
                threshold=alignment_threshold,
                auto_create=auto_create_entities,
                tenant_id=tenant,
            )
            stale = stale_field_paths(previous, fields, entities)
            # Fields that changed value but were left unaligned
            stale.extend(
                path for path, result in results.items() if result is None and path in previous
            )
            for field_path in stale:
                await self._alignment.unlink_entity(key, field_path, tenant)
            await self._session.flush()

        alignments = await self._alignment.get_alignments(key, tenant)
        return MemoryEntry.from_record(record, alignments)

    @staticmethod
    def _replace_tags(record: MemoryRecord, tags: Sequence[str]) -> None:
        wanted = list(dict.fromkeys(tags))
        current = {row.tag: row for row in record.tag_rows}
        record.tag_rows = [current.get(tag) or MemoryTag(tag=tag) for tag in wanted]

    async def get(self, key: str, *, tenant_id: str | None = None) -> MemoryEntry | None:
        """The entry stored under `key`, or None."""
        tenant = self._tenant(tenant_id)
        record = await self._load(key, tenant)
        if record is None:
            return None
        alignments = await self._alignment.get_alignments(key, tenant)
        return MemoryEntry.from_record(record, alignments)

    async def delete(self, key: str, *, tenant_id: str | None = None) -> bool:
        """Delete a record and its alignments. Returns True if it existed."""
        tenant = self._tenant(tenant_id)
        record = await self._load(key, tenant)
        removed = await self._alignment.store.delete_alignments_for_key(key, tenant)
        if record is None:
            return False
        await self._session.delete(record)
        await self._session.flush()
        logger.debug("Deleted record %s (%d alignments) for tenant %s", key, removed, tenant)
        return True

    async def get_many(
        self,
        *,
        filters: Sequence[str | Mapping[str, Any] | Filter] | None = None,
        tag: str | None = None,
        pattern: str | None = None,
        limit: int | None = None,
        tenant_id: str | None = None,
    ) -> list[MemoryEntry]:
        """Entries matching all filters, most recently updated first.

        Alignments are not loaded; use `get` for a single entry's alignments.
        """
        engine = QueryEngine(self._session, finder=self._alignment.finder)
        records = await engine.get_many(
            self._tenant(tenant_id), filters=filters, tag=tag, pattern=pattern, limit=limit
        )
        return [MemoryEntry.from_record(record) for record in records]

    async def recognize(
        self, candidate: Any, *, tenant_id: str | None = None, **options: Any
    ) -> RecognitionResult:
        """Check whether `candidate` is already stored.

        Options are passed to RecognitionService.recognize (entities, tags,
        threshold, llm_lower_bound, llm_upper_bound, limit, custom_prompt,
        agent_goal).

        Raises:
            ServiceUnavailableError: If no embedding function is configured.
        """
        if self._embed_fn is None:
            raise ServiceUnavailableError("Recognition requires an embedding function")
        return await self._recognition.recognize(candidate, self._tenant(tenant_id), **options)

    async def enrich(
        self,
        key: str,
        additional_data: Mapping[str, Any] | Sequence[Any],
        *,
        dry_run: bool = False,
        entities: Mapping[str, str] | None = None,
        force_llm: bool = False,
        custom_prompt: str | None = None,
        focus_fields: Sequence[str] | None = None,
        agent_goal: str | None = None,
        tenant_id: str | None = None,
    ) -> EnrichmentOutcome:
        """Merge new data into the record under `key` and store the result.

        Args:
            key: Key of an existing record.
            additional_data: One object or a list of sources to merge in.
            dry_run: Compute the enriched value without writing it.
            entities: Entity field spec for the write. Defaults to the spec
                implied by the record's current alignments.
            force_llm: Let the LLM merge even when no conflict needs it.
            custom_prompt: Prompt template for the LLM step.
            focus_fields: Fields the LLM should pay attention to.
            agent_goal: Context for the LLM step.
            tenant_id: Tenant scope.

        Returns:
            The outcome; `saved` is True only if the record was rewritten.
            Tags are kept as they are.

        Raises:
            ServiceUnavailableError: If no embedding function is configured,
                or the LLM is needed and no enricher is configured.
            NotFoundError: If no record is stored under `key`.
            UpstreamFailureError: If the LLM call fails; nothing is written.
        """
        if self._embed_fn is None:
            raise ServiceUnavailableError("Enrichment requires an embedding function")

        tenant = self._tenant(tenant_id)
        record = await self._load(key, tenant)
        if record is None:
            raise NotFoundError(
                f"Memory entry '{key}' not found", details={"key": key, "tenant_id": tenant}
            )

        if isinstance(additional_data, Mapping):
            sources: list[Any] = [dict(additional_data)]
        else:
            sources = list(additional_data)

        existing = record.value
        outcome = await self._enrichment.enrich(
            existing,
            sources,
            force_llm=force_llm,
            custom_prompt=custom_prompt,
            focus_fields=focus_fields,
            agent_goal=agent_goal,
        )

        if dry_run or outcome.enriched_data == existing:
            return outcome

        spec = dict(entities) if entities is not None else await self._entity_spec(key, tenant)
        await self.set(key, outcome.enriched_data, entities=spec, tenant_id=tenant)
        outcome.saved = True
        logger.debug(
            "Enriched record %s for tenant %s (%d changes, llm=%s)",
            key, tenant, len(outcome.changes), outcome.used_llm
        )
        return outcome

    async def _entity_spec(self, key: str, tenant_id: str) -> dict[str, str]:
        """Entity spec implied by a record's alignments.

        Element paths widen to their array form: "speakers[0].name" becomes
        "speakers[].name".
        """
        rows = await self._alignment.store.get_alignments(key, tenant_id)
        return {
            _ARRAY_INDEX_RE.sub("[]", alignment.field_path): entity.entity_type
            for alignment, entity in rows
        }
