"""Utility helpers for MemorySense."""

from memory_sense.utils.text import core_terms, normalize, text_similarity_ratio, texts_similar

__all__ = ["core_terms", "normalize", "text_similarity_ratio", "texts_similar"]
