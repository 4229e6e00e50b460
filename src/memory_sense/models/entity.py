"""Entity model for canonical real-world things."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector  # type: ignore[import-untyped]
from sqlalchemy import DateTime, Float, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from memory_sense.config import settings
from memory_sense.models.base import Base, JSONType, utcnow


class Entity(Base):
    """A canonical thing (venue, person, organisation) owned by one tenant.

    The canonical name is the first surface form that created the entity and
    is never rewritten. Later surface forms confirmed to refer to the same
    thing accumulate as EntityAlias rows. Canonical names are not unique:
    two entities may share one if they were created concurrently.
    """

    __tablename__ = "entities"

    entity_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    entity_type: Mapped[str] = mapped_column(String(255))
    canonical_name: Mapped[str] = mapped_column(String(2048))
    embedding: Mapped[list[Any] | None] = mapped_column(Vector(settings.dim_text_embedding))
    confidence: Mapped[float] = mapped_column(Float, default=1.0)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (Index("ix_entities_tenant_type", "tenant_id", "entity_type"),)


class EntityAlias(Base):
    """A surface form confirmed to refer to an entity.

    The (entity_id, alias) primary key makes appending an alias a single
    conditional insert.
    """

    __tablename__ = "entity_aliases"

    entity_id: Mapped[UUID] = mapped_column(
        ForeignKey("entities.entity_id", ondelete="CASCADE"), primary_key=True
    )
    alias: Mapped[str] = mapped_column(String(2048), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
