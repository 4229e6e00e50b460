"""Enrichment: consolidate a stored record with new data.

Two steps:

1. Compare the record with every additional source, leaf by leaf (nested
   objects are walked, arrays and scalars are leaves, empty source values
   are ignored):
   - a path missing from the record is an addition; it is simple when all
     sources agree on its value
   - a path whose values differ is a conflict; it is simple when at most one
     value is non-empty, or when strings or arrays clearly differ in length
     (strings: longest more than twice the shortest; arrays: any difference)
   - an object replaced by a scalar (or the reverse) is never simple
2. Simple cases are resolved automatically: additions are copied in,
   conflicts take the only non-empty or the longest value. Anything left
   over, or `force_llm`, hands the partly resolved record to the LLM and its
   output becomes the enriched record.

Records or sources that are not JSON objects always go to the LLM.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import OpenAIError
from pydantic_ai import Agent, NativeOutput
from pydantic_ai.exceptions import AgentRunError
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.providers.openai import OpenAIProvider

from memory_sense.config import settings
from memory_sense.errors import ServiceUnavailableError, UpstreamFailureError
from memory_sense.recognition.schemas import EnrichmentResult

logger = logging.getLogger(__name__)

FieldPath = tuple[str, ...]

_MISSING = object()
_BLOCKED = object()  # A parent along the path is not an object

ENRICHMENT_SYSTEM_PROMPT = """\
You consolidate JSON records about the same real-world entity into a single,
complete record. Keep every field of the base record unless a source clearly
corrects it, add information that only the sources have, and never invent
values that appear in none of the inputs.

Return the complete consolidated record as a JSON object, together with a
one or two sentence explanation of how you resolved conflicts."""

# Placeholders accepted in custom prompts
BASE_PLACEHOLDER = "${baseData}"
ADDITIONAL_PLACEHOLDER = "${additionalData}"
ANALYSIS_PLACEHOLDER = "${analysis}"


@dataclass
class FieldChange:
    """One change made to the stored record.

    action is one of: added, resolved_conflict, updated, removed.
    source is "automatic" or "llm".
    """

    field: str
    action: str
    new_value: Any = None
    old_value: Any = None
    source: str = "automatic"


@dataclass
class FieldDifference:
    """A path where the sources add to or disagree with the record."""

    path: FieldPath
    existing: Any
    values: list[Any]
    is_simple: bool

    @property
    def field(self) -> str:
        return ".".join(self.path)

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "values": self.values, "is_simple": self.is_simple}


@dataclass
class DataAnalysis:
    """Differences between a record and its additional sources."""

    additions: list[FieldDifference] = field(default_factory=list)
    conflicts: list[FieldDifference] = field(default_factory=list)

    @property
    def unresolved(self) -> list[FieldDifference]:
        return [d for d in [*self.additions, *self.conflicts] if not d.is_simple]

    @property
    def has_complex_conflicts(self) -> bool:
        return bool(self.unresolved)

    def to_dict(self) -> dict[str, Any]:
        return {
            "additions": [d.to_dict() for d in self.additions],
            "conflicts": [d.to_dict() for d in self.conflicts],
            "has_complex_conflicts": self.has_complex_conflicts,
        }


@dataclass
class EnrichmentOutcome:
    """Outcome of an enrichment call."""

    enriched_data: Any
    changes: list[FieldChange] = field(default_factory=list)
    used_llm: bool = False
    explanation: str | None = None
    saved: bool = False


# ── Analysis ─────────────────────────────────────────────────────────────────


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def _unique(values: Sequence[Any]) -> list[Any]:
    seen: dict[str, Any] = {}
    for value in values:
        seen.setdefault(json.dumps(value, sort_keys=True, default=str), value)
    return list(seen.values())


def _leaves(obj: dict[str, Any], prefix: FieldPath = ()) -> Iterator[tuple[FieldPath, Any]]:
    for key, value in obj.items():
        path = (*prefix, str(key))
        if isinstance(value, dict) and value:
            yield from _leaves(value, path)
        else:
            yield path, value


def _lookup(obj: Any, path: FieldPath) -> Any:
    node = obj
    for key in path:
        if not isinstance(node, dict):
            return _BLOCKED
        if key not in node:
            return _MISSING
        node = node[key]
    return node


def _set_path(obj: dict[str, Any], path: FieldPath, value: Any) -> None:
    node = obj
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


def is_simple_conflict(values: Sequence[Any]) -> bool:
    """Whether differing values can be resolved without the LLM."""
    filled = [v for v in values if not _is_empty(v)]
    if len(filled) <= 1:
        return True
    if all(isinstance(v, str) for v in filled) or all(isinstance(v, list) for v in filled):
        lengths = [len(v) for v in filled]
        if isinstance(filled[0], str):
            return max(lengths) > 2 * min(lengths)
        return max(lengths) > min(lengths)
    return False


def resolve_simple_conflict(existing: Any, values: Sequence[Any]) -> Any:
    """The only non-empty value, else the longest one (first on ties)."""
    filled = [v for v in values if not _is_empty(v)]
    if not filled:
        return existing
    if len(filled) == 1:
        return filled[0]
    return max(filled, key=len)


def analyze_differences(
    existing: dict[str, Any], sources: Sequence[dict[str, Any]]
) -> DataAnalysis:
    """Classify every source leaf as an addition, a conflict or neither."""
    source_values: dict[FieldPath, list[Any]] = {}
    for source in sources:
        for path, value in _leaves(source):
            if not _is_empty(value):
                source_values.setdefault(path, []).append(value)

    # Sources that disagree on shape: one has a leaf where another has an object
    nested = {path[:i] for path in source_values for i in range(1, len(path))}
    clashes = set(source_values) & nested

    analysis = DataAnalysis()
    for path, values in source_values.items():
        current = _lookup(existing, path)
        shape_changed = (
            current is _BLOCKED
            or (isinstance(current, dict) and bool(current))
            or any(path[:i] in clashes for i in range(1, len(path) + 1))
        )
        if shape_changed:
            existing_value = None if current in (_BLOCKED, _MISSING) else current
            analysis.conflicts.append(
                FieldDifference(path, existing_value, _unique(values), is_simple=False)
            )
        elif current is _MISSING:
            unique = _unique(values)
            analysis.additions.append(
                FieldDifference(path, None, unique, is_simple=len(unique) == 1)
            )
        else:
            unique = _unique([current, *values])
            if len(unique) > 1:
                analysis.conflicts.append(
                    FieldDifference(path, current, unique, is_simple_conflict(unique))
                )
    return analysis


def auto_resolve(
    existing: dict[str, Any], analysis: DataAnalysis
) -> tuple[dict[str, Any], list[FieldChange]]:
    """Apply the simple additions and conflicts to a copy of `existing`."""
    data = copy.deepcopy(existing)
    changes: list[FieldChange] = []

    for diff in analysis.additions:
        if diff.is_simple:
            _set_path(data, diff.path, copy.deepcopy(diff.values[0]))
            changes.append(FieldChange(diff.field, "added", new_value=diff.values[0]))

    for diff in analysis.conflicts:
        if not diff.is_simple:
            continue
        resolved = resolve_simple_conflict(diff.existing, diff.values)
        if resolved != diff.existing:
            _set_path(data, diff.path, copy.deepcopy(resolved))
            changes.append(
                FieldChange(
                    diff.field, "resolved_conflict", new_value=resolved, old_value=diff.existing
                )
            )

    return data, changes


def diff_changes(before: Any, after: Any, *, source: str = "llm") -> list[FieldChange]:
    """Leaf-level changes between two versions of a record."""
    if not (isinstance(before, dict) and isinstance(after, dict)):
        if before == after:
            return []
        return [FieldChange("", "updated", new_value=after, old_value=before, source=source)]

    old = dict(_leaves(before))
    new = dict(_leaves(after))
    changes: list[FieldChange] = []
    for path, value in new.items():
        name = ".".join(path)
        if path not in old:
            changes.append(FieldChange(name, "added", new_value=value, source=source))
        elif old[path] != value:
            changes.append(
                FieldChange(name, "updated", new_value=value, old_value=old[path], source=source)
            )
    for path, value in old.items():
        if path not in new:
            changes.append(
                FieldChange(".".join(path), "removed", old_value=value, source=source)
            )
    return changes


# ── LLM ──────────────────────────────────────────────────────────────────────


def build_enrichment_prompt(
    base: Any,
    sources: Sequence[Any],
    analysis: DataAnalysis,
    *,
    custom_prompt: str | None = None,
    focus_fields: Sequence[str] | None = None,
    agent_goal: str | None = None,
) -> str:
    """Build the user prompt for one enrichment.

    A custom prompt replaces the default one; its ${baseData},
    ${additionalData} and ${analysis} placeholders are filled in.
    """
    if custom_prompt:
        return (
            custom_prompt.replace(BASE_PLACEHOLDER, _to_json(base))
            .replace(ADDITIONAL_PLACEHOLDER, _to_json(list(sources)))
            .replace(ANALYSIS_PLACEHOLDER, _to_json(analysis.to_dict()))
        )

    parts = [
        "Consolidate the base record with the additional sources into one record.\n",
        f"BASE DATA (stored, simple differences already applied):\n{_to_json(base)}\n",
        "ADDITIONAL DATA SOURCES:",
    ]
    for index, source in enumerate(sources, start=1):
        parts.append(f"Source {index}:\n{_to_json(source)}\n")

    parts.append("UNRESOLVED DIFFERENCES:")
    if analysis.unresolved:
        parts.extend(
            f'- "{diff.field}": {len(diff.values)} different values'
            for diff in analysis.unresolved
        )
    else:
        parts.append("- none detected; review the whole record")

    if agent_goal:
        parts.append(f"\nThis enrichment is part of: {agent_goal}")
    if focus_fields:
        parts.append(f"Pay special attention to these fields: {', '.join(focus_fields)}")
    parts.extend(
        [
            "",
            "Resolve conflicts by choosing the most accurate and complete information.",
            "Merge arrays without duplicating items and keep nested objects intact.",
        ]
    )
    return "\n".join(parts)


def create_enrichment_agent() -> Agent[None, EnrichmentResult]:
    """Create the enrichment agent (NativeOutput, see create_disambiguation_agent)."""
    model = OpenAIChatModel(
        settings.model_reasoning,
        provider=OpenAIProvider(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
        ),
    )

    return Agent(
        model,
        output_type=NativeOutput(EnrichmentResult),
        system_prompt=ENRICHMENT_SYSTEM_PROMPT,
        model_settings={"temperature": settings.llm_enrichment_temperature},
        retries=2,
    )


class Enricher(Protocol):
    """Anything that can consolidate records with an LLM (see LLMEnricher)."""

    async def enrich(
        self,
        base: Any,
        sources: Sequence[Any],
        analysis: DataAnalysis,
        *,
        custom_prompt: str | None = None,
        focus_fields: Sequence[str] | None = None,
        agent_goal: str | None = None,
    ) -> EnrichmentResult: ...


class LLMEnricher:
    """High-level interface for LLM enrichment.

    Usage:
        enricher = LLMEnricher()
        result = await enricher.enrich(stored, [update], analyze_differences(stored, [update]))
    """

    def __init__(self, agent: Agent[None, EnrichmentResult] | None = None) -> None:
        self._agent = agent or create_enrichment_agent()

    async def enrich(
        self,
        base: Any,
        sources: Sequence[Any],
        analysis: DataAnalysis,
        *,
        custom_prompt: str | None = None,
        focus_fields: Sequence[str] | None = None,
        agent_goal: str | None = None,
    ) -> EnrichmentResult:
        """Ask the LLM to consolidate `base` with `sources`.

        Raises:
            UpstreamFailureError: If the model call fails or returns an
                invalid record.
        """
        prompt = build_enrichment_prompt(
            base,
            sources,
            analysis,
            custom_prompt=custom_prompt,
            focus_fields=focus_fields,
            agent_goal=agent_goal,
        )

        start_time = time.time()
        try:
            result = await self._agent.run(prompt)
        except (AgentRunError, OpenAIError) as exc:
            raise UpstreamFailureError(
                f"LLM enrichment failed: {exc}",
                details={"fields": [diff.field for diff in analysis.unresolved]},
            ) from exc

        if settings.log_api_calls:
            elapsed = (time.time() - start_time) * 1000  # ms
            logger.info(
                "[LLM] %s enrichment → %d fields (%.0fms)",
                settings.model_reasoning, len(result.output.enriched_data), elapsed
            )

        return result.output


class EnrichmentService:
    """Consolidate a record with new data, calling the LLM only when needed.

    Usage:
        service = EnrichmentService(enricher=LLMEnricher())
        outcome = await service.enrich(stored_value, [{"venue": "KTMC"}])
    """

    def __init__(self, enricher: Enricher | None = None) -> None:
        self._enricher = enricher

    async def enrich(
        self,
        existing: Any,
        additional: Sequence[Any],
        *,
        force_llm: bool = False,
        custom_prompt: str | None = None,
        focus_fields: Sequence[str] | None = None,
        agent_goal: str | None = None,
    ) -> EnrichmentOutcome:
        """Merge `additional` sources into `existing`.

        Args:
            existing: The stored value; never modified.
            additional: New data about the same entity, in any order.
            force_llm: Skip automatic resolution and let the LLM merge.
            custom_prompt: Prompt template for the LLM step.
            focus_fields: Fields the LLM should pay attention to.
            agent_goal: Context for the LLM step.

        Returns:
            The enriched value and the changes made. `saved` is left False.

        Raises:
            ServiceUnavailableError: If the LLM is needed but no enricher
                is configured.
            UpstreamFailureError: If the LLM call fails.
        """
        sources = list(additional)
        structured = isinstance(existing, dict) and all(isinstance(s, dict) for s in sources)
        analysis = analyze_differences(existing, sources) if structured else DataAnalysis()

        if force_llm or not structured:
            resolved: Any = copy.deepcopy(existing)
            changes: list[FieldChange] = []
        else:
            resolved, changes = auto_resolve(existing, analysis)

        if structured and not force_llm and not analysis.has_complex_conflicts:
            logger.debug(
                "Enriched without LLM: %d additions, %d conflicts, %d changes",
                len(analysis.additions), len(analysis.conflicts), len(changes)
            )
            return EnrichmentOutcome(enriched_data=resolved, changes=changes)

        if self._enricher is None:
            raise ServiceUnavailableError(
                "LLM enrichment unavailable: no enricher configured",
                details={"fields": [diff.field for diff in analysis.unresolved]},
            )

        result = await self._enricher.enrich(
            resolved,
            sources,
            analysis,
            custom_prompt=custom_prompt,
            focus_fields=focus_fields,
            agent_goal=agent_goal,
        )
        changes.extend(diff_changes(resolved, result.enriched_data))
        return EnrichmentOutcome(
            enriched_data=result.enriched_data,
            changes=changes,
            used_llm=True,
            explanation=result.reasoning,
        )
