"""Duplicate recognition and enrichment.

Submodules:
- scorer: per-field entity agreement between two records
- disambiguator: LLM arbiter for scores inside the uncertainty band
- service: shortlist, score and three-zone decision
- enrichment: merge new data into a stored record, with the LLM for hard conflicts
"""

from memory_sense.recognition.disambiguator import LLMDisambiguator
from memory_sense.recognition.enrichment import EnrichmentOutcome, EnrichmentService, LLMEnricher
from memory_sense.recognition.schemas import DisambiguationVerdict, EnrichmentResult
from memory_sense.recognition.scorer import ConfidenceScorer
from memory_sense.recognition.service import RecognitionResult, RecognitionService

__all__ = [
    "ConfidenceScorer",
    "DisambiguationVerdict",
    "EnrichmentOutcome",
    "EnrichmentResult",
    "EnrichmentService",
    "LLMDisambiguator",
    "LLMEnricher",
    "RecognitionResult",
    "RecognitionService",
]
