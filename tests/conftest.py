"""Shared pytest fixtures for MemorySense tests."""

from __future__ import annotations

import hashlib
from collections.abc import AsyncGenerator, Awaitable, Callable, Mapping
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from memory_sense.config import settings
from memory_sense.db import init_db
from memory_sense.entities.fields import EntityField
from memory_sense.entities.finder import EntityFinder
from memory_sense.entities.store import EntityStore
from memory_sense.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


# In-memory SQLite shared by every connection of one engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

DIM = settings.dim_text_embedding


@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(
    test_engine: AsyncEngine,
) -> AsyncGenerator[AsyncSession, None]:
    """Database session rolled back at the end of each test."""
    async_session_factory = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(db_session: AsyncSession) -> EntityStore:
    return EntityStore(db_session)


@pytest.fixture
def finder(store: EntityStore) -> EntityFinder:
    """Finder without an embedding function (lexical strategies only)."""
    return EntityFinder(store)


# ── Fake embeddings ─────────────────────────────────────────────────────────

EmbedFn = Callable[[str], Awaitable[list[float]]]
MakeVector = Callable[..., list[float]]
MakeEmbedFn = Callable[..., EmbedFn]
MakeField = Callable[..., EntityField]


def one_hot(*weights: tuple[int, float]) -> list[float]:
    """Vector of DIM floats with the given (index, weight) entries set."""
    vector = [0.0] * DIM
    for index, weight in weights:
        vector[index] = weight
    return vector


def hashed_vector(text: str) -> list[float]:
    """Deterministic sparse vector for text without a fixed embedding.

    Eight signed components picked from a SHA-256 digest, so unrelated texts
    are close to orthogonal.
    """
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    vector = [0.0] * DIM
    for i in range(8):
        index = int.from_bytes(digest[2 * i : 2 * i + 2], "big") % DIM
        vector[index] += 1.0 if digest[16 + i] % 2 else -1.0
    return vector


@pytest.fixture
def make_vector() -> MakeVector:
    """Factory fixture for embedding vectors: make_vector((0, 1.0), (1, 0.2))."""
    return one_hot


@pytest.fixture
def make_embed_fn() -> MakeEmbedFn:
    """Factory fixture for fake embedding functions.

    Known texts map to the given vectors, others to a hashed one-hot vector.
    Texts listed in `failing` raise RuntimeError. Every call is recorded in
    the function's `calls` attribute.
    """

    def _make(
        vectors: Mapping[str, list[float]] | None = None,
        *,
        failing: set[str] | None = None,
    ) -> EmbedFn:
        known = dict(vectors or {})
        broken = failing or set()
        calls: list[str] = []

        async def embed(text: str) -> list[float]:
            calls.append(text)
            if text in broken:
                raise RuntimeError(f"embedding backend down for {text!r}")
            return known.get(text) or hashed_vector(text)

        embed.calls = calls  # type: ignore[attr-defined]
        return embed

    return _make


@pytest.fixture
def make_field() -> MakeField:
    """Factory fixture for EntityField instances."""

    def _make(
        value: str,
        *,
        field_path: str = "venue",
        entity_type: str = "venue",
        threshold: float | None = None,
    ) -> EntityField:
        return EntityField(
            field_path=field_path,
            entity_type=entity_type,
            value=value,
            threshold=threshold,
        )

    return _make
