"""MemorySense: identity resolution for a multi-tenant agent-memory store."""

__version__ = "0.1.0"
