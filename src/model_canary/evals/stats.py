"""Score statistics for A/B comparisons and drift baselines."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence


def mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def variance(values: Sequence[float]) -> float:
    """Population variance; 0 for an empty sequence."""
    if not values:
        return 0.0
    m = mean(values)
    return sum((x - m) ** 2 for x in values) / len(values)


def std(values: Sequence[float]) -> float:
    """Sample standard deviation."""
    if len(values) < 2:
        return 0.0
    n = len(values)
    m = sum(values) / n
    return math.sqrt(sum((x - m) ** 2 for x in values) / (n - 1))


def welch_p_value(m1: float, m2: float, s1: float, s2: float, n1: int, n2: int) -> float:
    """Two-sided Welch test, normal approximation of the t distribution."""
    if n1 < 2 or n2 < 2:
        return 1.0
    if s1 == 0 and s2 == 0:
        return 0.0 if m1 != m2 else 1.0
    se = math.sqrt((s1 ** 2) / n1 + (s2 ** 2) / n2)
    if se == 0:
        return 0.0 if m1 != m2 else 1.0
    t = abs(m1 - m2) / se
    return max(0.0, min(1.0, 2.0 * 0.5 * (1.0 + math.erf(-t / math.sqrt(2.0)))))


@dataclass
class ScoreAnalysis:
    mean_a: float
    mean_b: float
    pooled_std: float
    effect_size: float
    p_value: float
    significant: bool
    winner: Optional[str]
    confidence: float


def analyze_scores(
    scores_a: Sequence[float],
    scores_b: Sequence[float],
    confidence_level: float = 0.95,
    minimum_effect_size: float = 0.1,
    name_a: str = "a",
    name_b: str = "b",
) -> ScoreAnalysis:
    """Compare two score samples.

    Significant iff p < 1 - confidence_level and effect size is at least
    ``minimum_effect_size``. Equal means are never significant. The winner
    is the higher-mean side, None on a tie.
    """
    mean_a, mean_b = mean(scores_a), mean(scores_b)
    pooled = math.sqrt((variance(scores_a) + variance(scores_b)) / 2)
    diff = abs(mean_a - mean_b)
    if pooled > 0:
        effect = diff / pooled
    else:
        # zero spread: any difference is total separation
        effect = math.inf if diff > 0 else 0.0

    p = welch_p_value(mean_a, mean_b, std(scores_a), std(scores_b), len(scores_a), len(scores_b))
    significant = diff > 0 and p < (1 - confidence_level) and effect >= minimum_effect_size

    if mean_a > mean_b:
        winner: Optional[str] = name_a
    elif mean_b > mean_a:
        winner = name_b
    else:
        winner = None

    return ScoreAnalysis(
        mean_a=mean_a,
        mean_b=mean_b,
        pooled_std=pooled,
        effect_size=effect,
        p_value=p,
        significant=significant,
        winner=winner,
        confidence=max(0.0, min(1.0, 1.0 - p)),
    )
