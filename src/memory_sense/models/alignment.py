"""Alignment model linking a record field to an entity."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from memory_sense.models.base import Base, utcnow
from memory_sense.models.enums import AlignmentConfidence


class EntityAlignment(Base):
    """Decision that (memory_key, field_path) refers to an entity.

    There is at most one alignment per (tenant, record, field). Re-aligning
    overwrites the row through an upsert on that triple.
    """

    __tablename__ = "entity_alignments"

    alignment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255))
    memory_key: Mapped[str] = mapped_column(String(1024))
    field_path: Mapped[str] = mapped_column(String(1024))
    entity_id: Mapped[UUID] = mapped_column(
        ForeignKey("entities.entity_id", ondelete="CASCADE"), index=True
    )
    original_value: Mapped[str] = mapped_column(Text)
    confidence: Mapped[AlignmentConfidence] = mapped_column(default=AlignmentConfidence.HIGH)
    aligned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "memory_key", "field_path", name="uq_alignment_record_field"
        ),
        Index("ix_alignments_tenant_entity", "tenant_id", "entity_id"),
    )
