"""Pluggable description similarity strategies.

The duplicate detector and the historical matcher only depend on the
SimilarityStrategy interface, so the edit-distance metric can be swapped for
a phonetic or token-set variant without touching the windowing logic.

All strategies return a score in [0, 1] and are symmetric:
score(a, b) == score(b, a).
"""

from __future__ import annotations

import unicodedata
from abc import ABC, abstractmethod

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

_SOUNDEX_CODES = {
    **dict.fromkeys("BFPV", "1"),
    **dict.fromkeys("CGJKQSXZ", "2"),
    **dict.fromkeys("DT", "3"),
    "L": "4",
    **dict.fromkeys("MN", "5"),
    "R": "6",
}


def fold(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(stripped.lower().split())


def soundex(text: str) -> str:
    """American Soundex over the whole string, like SQL SOUNDEX().

    Non-letters are skipped and the key is not truncated, so multi-word
    descriptions keep a code for every word. Keys shorter than four
    characters are padded with zeros. Returns "" when there are no letters.
    """
    letters = [c for c in fold(text).upper() if "A" <= c <= "Z"]
    if not letters:
        return ""
    key = letters[0]
    last = _SOUNDEX_CODES.get(letters[0], "")
    for c in letters[1:]:
        code = _SOUNDEX_CODES.get(c)
        if code is None:
            # H and W do not separate equal codes, vowels do
            if c not in "HW":
                last = ""
            continue
        if code != last:
            key += code
        last = code
    return key.ljust(4, "0")


class SimilarityStrategy(ABC):
    """Scores how alike two descriptions are."""

    name: str = "similarity"

    @abstractmethod
    def score(self, a: str, b: str) -> float:
        """Return a symmetric similarity in [0, 1]."""


class LevenshteinSimilarity(SimilarityStrategy):
    """1 - levenshtein(a, b) / max(len(a), len(b)) on folded text."""

    name = "levenshtein"

    def score(self, a: str, b: str) -> float:
        a, b = fold(a), fold(b)
        if not a and not b:
            return 1.0
        if not a or not b:
            return 0.0
        return Levenshtein.normalized_similarity(a, b)


class PhoneticSimilarity(SimilarityStrategy):
    """1.0 when both descriptions share a Soundex key, else 0.0."""

    name = "phonetic"

    def score(self, a: str, b: str) -> float:
        key_a, key_b = soundex(a), soundex(b)
        return 1.0 if key_a and key_a == key_b else 0.0


class TokenSetSimilarity(SimilarityStrategy):
    """Word-order insensitive ratio, for reordered bank descriptions."""

    name = "token_set"

    def score(self, a: str, b: str) -> float:
        a, b = fold(a), fold(b)
        if not a or not b:
            return 1.0 if a == b else 0.0
        return fuzz.token_set_ratio(a, b) / 100.0


class BestOfSimilarity(SimilarityStrategy):
    """Highest score among several strategies."""

    name = "best_of"

    def __init__(self, *strategies: SimilarityStrategy):
        if not strategies:
            raise ValueError("BestOfSimilarity needs at least one strategy")
        self.strategies = strategies

    def score(self, a: str, b: str) -> float:
        return max(s.score(a, b) for s in self.strategies)


def default_similarity() -> SimilarityStrategy:
    """Edit distance or phonetic-key equality, whichever is higher."""
    return BestOfSimilarity(LevenshteinSimilarity(), PhoneticSimilarity())
