"""Stored memory records and their tags."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from memory_sense.models.base import Base, JSONType, utcnow


class MemoryRecord(Base):
    """A JSON value stored under a key for one tenant."""

    __tablename__ = "memory_records"

    record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(255))
    key: Mapped[str] = mapped_column(String(1024))
    value: Mapped[Any] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    # Set python-side so recency ordering is stable across dialects
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    # Relationships
    tag_rows: Mapped[list[MemoryTag]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_memory_records_tenant_key", "tenant_id", "key", unique=True),
        Index("ix_memory_records_tenant_updated", "tenant_id", "updated_at"),
    )

    @property
    def tags(self) -> list[str]:
        return [row.tag for row in self.tag_rows]


class MemoryTag(Base):
    """One tag on a memory record."""

    __tablename__ = "memory_tags"

    record_id: Mapped[UUID] = mapped_column(
        ForeignKey("memory_records.record_id", ondelete="CASCADE"), primary_key=True
    )
    tag: Mapped[str] = mapped_column(String(255), primary_key=True, index=True)

    # Relationships
    record: Mapped[MemoryRecord] = relationship(back_populates="tag_rows")
