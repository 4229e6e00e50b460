"""LLM arbiter for ambiguous recognition decisions.

Only called for scores inside the uncertainty band around the recognition
threshold. The LLM sees both records as JSON, the algorithmic score and,
optionally, the goal of the calling agent.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

from openai import OpenAIError
from pydantic_ai import Agent, NativeOutput
from pydantic_ai.exceptions import AgentRunError
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from memory_sense.config import settings
from memory_sense.errors import UpstreamFailureError
from memory_sense.recognition.schemas import DisambiguationVerdict

logger = logging.getLogger(__name__)

DISAMBIGUATION_SYSTEM_PROMPT = """\
You decide whether two JSON records describe the same real-world entity
(the same event, place, person or thing), possibly with different spellings,
abbreviations, formatting or partially updated details.

Be strict: answer is_match=true only when you are confident both records
refer to the same entity. Return your decision, your confidence in it
(0.0-1.0) and a one or two sentence explanation."""

# Placeholders accepted in custom prompts
CANDIDATE_PLACEHOLDER = "${candidateData}"
EXISTING_PLACEHOLDER = "${existingData}"
CONFIDENCE_PLACEHOLDER = "${confidence}"


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def build_disambiguation_prompt(
    candidate: Any,
    existing: Any,
    confidence: float,
    *,
    custom_prompt: str | None = None,
    agent_goal: str | None = None,
) -> str:
    """Build the user prompt for one comparison.

    A custom prompt replaces the default one; its ${candidateData},
    ${existingData} and ${confidence} placeholders are filled in.
    """
    if custom_prompt:
        return (
            custom_prompt.replace(CANDIDATE_PLACEHOLDER, _to_json(candidate))
            .replace(EXISTING_PLACEHOLDER, _to_json(existing))
            .replace(CONFIDENCE_PLACEHOLDER, str(confidence))
        )

    parts = [
        "Do these two records represent the same real-world entity?\n",
        f"RECORD 1 (candidate):\n{_to_json(candidate)}\n",
        f"RECORD 2 (existing):\n{_to_json(existing)}\n",
        "ANALYSIS CONTEXT:",
        f"- Algorithmic confidence score: {confidence:.3f} "
        "(1.0 = identical, 0.0 = completely different).",
        "- The score is ambiguous: similar, but not clearly the same.",
    ]
    if agent_goal:
        parts.append(f"- This comparison is part of: {agent_goal}")
    parts.extend(
        [
            "",
            "Compare the identifying information (names, titles, locations, dates).",
            "Variations in spelling, abbreviations or formatting can still be a match;",
            "a record with updated details can still be the same entity.",
        ]
    )
    return "\n".join(parts)


def create_disambiguation_agent() -> Agent[None, DisambiguationVerdict]:
    """Create the disambiguation agent.

    Uses NativeOutput (response_format) rather than tool calling, with a
    low temperature for consistent decisions.
    """
    model = OpenAIChatModel(
        settings.model_reasoning,
        provider=OpenAIProvider(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
        ),
    )

    return Agent(
        model,
        output_type=NativeOutput(DisambiguationVerdict),
        system_prompt=DISAMBIGUATION_SYSTEM_PROMPT,
        model_settings={"temperature": settings.llm_temperature},
        retries=2,
    )


class LLMDisambiguator:
    """High-level interface for LLM disambiguation.

    Usage:
        disambiguator = LLMDisambiguator()
        verdict = await disambiguator.disambiguate(candidate, existing, 0.71)
    """

    def __init__(self, agent: Agent[None, DisambiguationVerdict] | None = None) -> None:
        self._agent = agent or create_disambiguation_agent()

    async def disambiguate(
        self,
        candidate: Any,
        existing: Any,
        confidence: float,
        *,
        custom_prompt: str | None = None,
        agent_goal: str | None = None,
    ) -> DisambiguationVerdict:
        """Ask the LLM whether `candidate` and `existing` are the same entity.

        Args:
            candidate: The new record.
            existing: The best-scoring stored record.
            confidence: Algorithmic score of the pair.
            custom_prompt: Prompt template replacing the default prompt.
            agent_goal: What the calling agent is trying to do.

        Returns:
            The LLM's verdict.

        Raises:
            UpstreamFailureError: If the model call fails or returns an
                invalid verdict.
        """
        prompt = build_disambiguation_prompt(
            candidate,
            existing,
            confidence,
            custom_prompt=custom_prompt,
            agent_goal=agent_goal,
        )

        start_time = time.time()
        try:
            result = await self._agent.run(prompt)
        except (AgentRunError, OpenAIError) as exc:
            raise UpstreamFailureError(
                f"LLM disambiguation failed: {exc}", details={"confidence": confidence}
            ) from exc

        if settings.log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info(
                "[LLM] %s disambiguation → match=%s (%.2f) (%.0fms)",
                settings.model_reasoning, result.output.is_match, result.output.confidence, elapsed
            )

        return result.output
