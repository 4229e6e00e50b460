"""Text normalization and lightweight similarity for entity matching.

Everything here is pure and deterministic: the same inputs always produce
the same normalized form, core terms, and similarity verdict.
"""

from __future__ import annotations

import re
import unicodedata
from difflib import SequenceMatcher

from memory_sense.config import settings

# Articles, conjunctions, prepositions and generic venue words that carry no
# identity on their own ("Riga Conference Center" vs "Riga Centre").
STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "a", "an", "and", "or", "of", "at", "in", "on", "for", "with", "not",
        "center", "centre", "ktmc",
    }
)

# Core terms shorter than this are ignored
MIN_CORE_TERM_LENGTH = 3

_QUOTES_RE = re.compile("['\"‘’“”„«»`]")
_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Canonical comparison form of a string.

    Lower-cases, strips diacritics (NFD + drop combining marks), removes
    quote characters, turns remaining punctuation into spaces and collapses
    whitespace. normalize(normalize(x)) == normalize(x).

    Examples:
        >>> normalize("Prūšu ielā 13b, Rīgā")
        'prusu iela 13b riga'
        >>> normalize("  O'Brien's  Pub ")
        'obriens pub'
    """
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _QUOTES_RE.sub("", stripped)
    stripped = _NON_WORD_RE.sub(" ", stripped)
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def core_terms(text: str) -> list[str]:
    """Distinctive tokens of a string, in order of first appearance."""
    terms: list[str] = []
    for word in normalize(text).split(" "):
        if len(word) < MIN_CORE_TERM_LENGTH or word in STOP_WORDS:
            continue
        if word not in terms:
            terms.append(word)
    return terms


def _terms_overlap(a: str, b: str) -> bool:
    return a in b or b in a


def texts_similar(a: str, b: str, *, min_overlap: float | None = None) -> bool:
    """Decide whether two surface forms plausibly name the same thing.

    Similar when any of these hold:
    1. Normalized forms are equal.
    2. Both are single-word or both multi-word, and the core terms of one
       contain those of the other ("conference center" / "conference center
       riga").
    3. Both have more than one core term and at least `min_overlap` of the
       smaller term set substring-matches the other side.
    4. Both have exactly one core term and one contains the other.

    Apart from rule 1, a side without core terms ("of the", "Li") is never
    similar to anything.

    Args:
        a: First surface form.
        b: Second surface form.
        min_overlap: Required share of the smaller core-term set. Defaults to
            settings.text_overlap_ratio.
    """
    ratio = settings.text_overlap_ratio if min_overlap is None else min_overlap

    norm_a = normalize(a)
    norm_b = normalize(b)
    if not norm_a or not norm_b:
        return False
    if norm_a == norm_b:
        return True

    terms_a = core_terms(norm_a)
    terms_b = core_terms(norm_b)
    if not terms_a or not terms_b:
        return False

    # Arity comes from the surface form, containment from the core terms
    core_a = " ".join(terms_a)
    core_b = " ".join(terms_b)
    if (" " in norm_a) == (" " in norm_b) and (core_a in core_b or core_b in core_a):
        return True

    if len(terms_a) > 1 and len(terms_b) > 1:
        overlap = sum(1 for ta in terms_a if any(_terms_overlap(ta, tb) for tb in terms_b))
        return overlap > 0 and overlap >= ratio * min(len(terms_a), len(terms_b))

    if len(terms_a) == 1 and len(terms_b) == 1:
        return _terms_overlap(terms_a[0], terms_b[0])

    return False


def text_similarity_ratio(a: str, b: str) -> float:
    """Graded similarity in [0, 1] between normalized forms."""
    norm_a = normalize(a)
    norm_b = normalize(b)
    if norm_a == norm_b:
        return 1.0
    return SequenceMatcher(None, norm_a, norm_b).ratio()
