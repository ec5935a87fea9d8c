"""
Stdlib text similarity for deduplication and ranking.

Provides normalized text comparison on word tokens:
- **Token Jaccard**: set-overlap of word tokens, used by compaction to
  detect near-duplicate entries.
- **Query coverage**: fraction of query tokens present in a text, used by
  search ranking.

Both are order-insensitive and case-insensitive, without any external
dependency.
"""

from __future__ import annotations

import re
import string
from typing import FrozenSet, Iterable

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Precompiled translation table: strip all punctuation
_PUNCT_TABLE = str.maketrans("", "", string.punctuation)

# Collapse runs of whitespace
_WS_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Normalize text for similarity comparison.

    Steps:
      1. Lowercase
      2. Strip punctuation
      3. Collapse whitespace
      4. Strip leading/trailing whitespace

    Returns empty string for empty/whitespace-only input.
    """
    text = text.lower()
    text = text.translate(_PUNCT_TABLE)
    text = _WS_RE.sub(" ", text)
    return text.strip()


def tokenize(text: str) -> list[str]:
    """Split normalized text into word tokens.

    Operates on already-normalized text (lowercase, no punctuation).
    Returns empty list for empty input.
    """
    if not text:
        return []
    return text.split()


def token_set(text: str) -> FrozenSet[str]:
    """Normalized distinct tokens of text."""
    return frozenset(tokenize(normalize(text)))


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def jaccard(a: str, b: str) -> float:
    """Token-level Jaccard similarity between two texts.

    J(A, B) = |A ∩ B| / |A ∪ B|

    Inputs are normalized internally. Returns 1.0 if both are empty
    (vacuous similarity), 0.0 if one is empty and the other is not.
    """
    tokens_a = token_set(a)
    tokens_b = token_set(b)

    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0

    intersection = tokens_a & tokens_b
    union = tokens_a | tokens_b
    return len(intersection) / len(union)


def coverage(query_tokens: Iterable[str], text: str) -> float:
    """Fraction of distinct query tokens present in text.

    Returns 0.0 for an empty query.
    """
    wanted = set(query_tokens)
    if not wanted:
        return 0.0
    present = wanted & token_set(text)
    return len(present) / len(wanted)


def adds_information(base: str, other: str) -> bool:
    """True when other carries tokens that base lacks."""
    return bool(token_set(other) - token_set(base))
