"""Clients for external model providers."""

from memory_sense.clients.embeddings import EmbedFn, EmbeddingClient

__all__ = ["EmbedFn", "EmbeddingClient"]
