"""
Pluggable response scorers.

Each scorer maps a model response and its golden entry to a score in
[0, 1]. The heuristics here are the defaults and test doubles; embedding-
or rubric-based scorers can be installed as plugins under the
``model_canary.scorers.<kind>`` entry-point groups and are picked up by
``default_scorers``.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass
from typing import Iterable, Protocol, runtime_checkable

from model_canary.evals.models import GoldenDatasetEntry

_WORD = re.compile(r"[a-z0-9']+")
_FACT = re.compile(r"\b\d+(?:[.,]\d+)?%?|\b[A-Z][a-zA-Z]+(?:\s+[A-Z][a-zA-Z]+)*")

DEFAULT_BANNED_PHRASES = (
    "as an ai",
    "i cannot",
    "i'm not sure",
    "lorem ipsum",
    "cheap knockoff",
    "guaranteed results",
)


@runtime_checkable
class Scorer(Protocol):
    """Protocol for scorers. Implement with any similarity backend."""

    def score(self, response: str, entry: GoldenDatasetEntry) -> float: ...


def _tokens(text: str) -> list[str]:
    return _WORD.findall(text.lower())


class LexicalSimilarityScorer:
    """Shared words over the longer of the two word counts."""

    def score(self, response: str, entry: GoldenDatasetEntry) -> float:
        response_words = response.lower().split()
        expected_words = entry.expected_output.lower().split()
        if not response_words and not expected_words:
            return 1.0
        expected = set(expected_words)
        common = sum(1 for w in response_words if w in expected)
        return min(common / max(len(response_words), len(expected_words)), 1.0)


class SequenceSemanticScorer:
    """Order-aware token alignment (difflib ratio over normalized tokens)."""

    def score(self, response: str, entry: GoldenDatasetEntry) -> float:
        a, b = _tokens(response), _tokens(entry.expected_output)
        if not a and not b:
            return 1.0
        return difflib.SequenceMatcher(None, a, b, autojunk=False).ratio()


class FactualOverlapScorer:
    """Fraction of the expected output's numbers and proper terms that the
    response repeats. An expected output with no such facts scores 1.0."""

    def score(self, response: str, entry: GoldenDatasetEntry) -> float:
        facts = {f.lower() for f in _FACT.findall(entry.expected_output)}
        if not facts:
            return 1.0
        lowered = response.lower()
        found = sum(1 for f in facts if f in lowered)
        return found / len(facts)


class BrandConsistencyScorer:
    """Starts at 1.0 and loses ``penalty`` per banned phrase present."""

    def __init__(self, banned_phrases: Iterable[str] | None = None, penalty: float = 0.25) -> None:
        phrases = DEFAULT_BANNED_PHRASES if banned_phrases is None else banned_phrases
        self.banned_phrases = tuple(p.lower() for p in phrases)
        self.penalty = penalty

    def score(self, response: str, entry: GoldenDatasetEntry) -> float:
        lowered = response.lower()
        hits = sum(1 for p in self.banned_phrases if p in lowered)
        return max(0.0, 1.0 - self.penalty * hits)


@dataclass
class ScorerSet:
    """The four scoring dimensions used per golden entry."""

    similarity: Scorer
    semantic: Scorer
    factual: Scorer
    brand: Scorer


def default_scorers() -> ScorerSet:
    """Installed plugins where present, heuristics otherwise."""
    from model_canary.providers import get_scorer

    return ScorerSet(
        similarity=get_scorer("similarity"),
        semantic=get_scorer("semantic"),
        factual=get_scorer("factual"),
        brand=get_scorer("brand"),
    )
