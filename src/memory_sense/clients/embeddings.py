"""Async client wrapper for OpenAI-compatible embedding endpoints."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Sequence

from openai import AsyncOpenAI, OpenAIError

from memory_sense.config import settings
from memory_sense.errors import UpstreamFailureError

logger = logging.getLogger(__name__)

# Signature the finder and recognition service expect: text -> vector
EmbedFn = Callable[[str], Awaitable[list[float]]]


class EmbeddingClient:
    """Async client for generating text embeddings.

    Any OpenAI-compatible endpoint works (local gateway, OpenAI, vLLM).
    `embed` is the single-text form and can be passed wherever an EmbedFn
    is expected.

    Usage:
        client = EmbeddingClient()
        store = MemoryStore(session, embed_fn=client.embed)
    """

    # Maximum items per batch request
    DEFAULT_BATCH_SIZE = 32

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._client = AsyncOpenAI(
            base_url=base_url or settings.embedding_base_url,
            api_key=api_key or settings.embedding_api_key,
        )
        self._model = model or settings.model_text_embedding
        self._batch_size = batch_size

    async def embed(self, text: str) -> list[float]:
        """Embed a single string."""
        vectors = await self.embed_text([text])
        return vectors[0]

    async def embed_text(self, texts: Sequence[str]) -> list[list[float]]:
        """Generate text embeddings.

        Args:
            texts: List of text strings to embed.

        Returns:
            List of embedding vectors, in input order.

        Raises:
            UpstreamFailureError: If the provider rejects or fails the request.
        """
        if not texts:
            return []

        start_time = time.time()
        embeddings: list[list[float]] = []

        for batch in self._batches(list(texts)):
            try:
                response = await self._client.embeddings.create(
                    model=self._model,
                    input=batch,
                )
            except OpenAIError as exc:
                raise UpstreamFailureError(
                    f"Embedding request failed: {exc}", details={"model": self._model}
                ) from exc
            # Results are returned in order of input
            embeddings.extend([item.embedding for item in response.data])

        if settings.log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info(
                "[EMBED] %s (%d items) → %d-dim (%.0fms)",
                self._model, len(texts), len(embeddings[0]) if embeddings else 0, elapsed
            )

        return embeddings

    def _batches(self, items: list[str]) -> list[list[str]]:
        """Split items into batches."""
        return [items[i : i + self._batch_size] for i in range(0, len(items), self._batch_size)]
