"""Pydantic schemas for LLM disambiguation and enrichment output."""

from __future__ import annotations

import json
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field


def _coerce_to_object(v: Any) -> Any:
    """Parse objects the LLM returned as a JSON string."""
    if isinstance(v, str):
        try:
            return json.loads(v)
        except json.JSONDecodeError as exc:
            raise ValueError(f"enriched_data is not valid JSON: {exc}") from exc
    return v


class DisambiguationVerdict(BaseModel):
    """The LLM's decision on whether two records describe the same thing."""

    reasoning: str = Field(description="Brief explanation of the decision")
    is_match: bool = Field(
        description="True only if both objects represent the same real-world entity"
    )
    confidence: float = Field(
        ge=0.0, le=1.0, description="Confidence in this decision, between 0 and 1"
    )


class EnrichmentResult(BaseModel):
    """The LLM's consolidation of a stored record with new data."""

    reasoning: str = Field(description="Brief explanation of how conflicts were resolved")
    enriched_data: Annotated[dict[str, Any], BeforeValidator(_coerce_to_object)] = Field(
        description="The complete consolidated record, as a JSON object"
    )
