"""Data model for golden-dataset evaluation, A/B tests and drift detection."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from model_canary.delivery.models import utcnow


class EntryMetadata(BaseModel):
    category: str
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    agent_type: str = ""
    tags: list[str] = Field(default_factory=list)


class EvaluationCriteria(BaseModel):
    """Per-entry requirements.

    ``similarity`` is the minimum overall score for the entry to pass. The
    factual and brand flags switch those scorers on; when off, the
    dimension scores 1.0.
    """

    similarity: float = Field(default=0.7, ge=0.0, le=1.0)
    semantic_match: bool = True
    factual_accuracy: bool = False
    brand_consistency: bool = False


class GoldenDatasetEntry(BaseModel):
    """A curated prompt / expected-output pair."""

    id: str
    prompt: str
    expected_output: str
    metadata: EntryMetadata
    evaluation_criteria: EvaluationCriteria = Field(default_factory=EvaluationCriteria)


class EvaluationMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    similarity: float = 0.0
    semantic_score: float = 0.0
    factual_score: float = 0.0
    brand_score: float = 0.0
    latency: float = 0.0  # milliseconds
    token_usage: int = 0


class EvaluationResult(BaseModel):
    """Score of one model response against one golden entry."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    entry_id: str
    model_id: str
    score: float = Field(ge=0.0, le=1.0)
    passed: bool
    metrics: EvaluationMetrics
    response: str
    timestamp: datetime = Field(default_factory=utcnow)


class EvaluationSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    average_latency: float = 0.0
    total_cost: float = 0.0


class ModelEvaluation(BaseModel):
    """Outcome of ``evaluate_model``. ``pass_rate`` is a fraction in [0, 1]."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    category: str
    overall_score: float
    pass_rate: float
    results: list[EvaluationResult] = Field(default_factory=list)
    summary: EvaluationSummary = Field(default_factory=EvaluationSummary)


class ComparisonSummary(BaseModel):
    winner_model: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)
    statistical_significance: bool
    p_value: float
    effect_size: float
    mean_a: float
    mean_b: float


class ModelComparison(BaseModel):
    """A/B test between two models on the same golden category."""

    model_config = ConfigDict(protected_namespaces=())

    test_id: str
    model_a: str
    model_b: str
    category: str
    results_a: list[EvaluationResult] = Field(default_factory=list)
    results_b: list[EvaluationResult] = Field(default_factory=list)
    summary: ComparisonSummary
    created_at: datetime = Field(default_factory=utcnow)


class OutputPatterns(BaseModel):
    """Signature of a set of responses: length distribution and frequent words."""

    average_length: float = 0.0
    length_variance: float = 0.0
    common_words: list[str] = Field(default_factory=list)


class BaselineMetrics(BaseModel):
    """Aggregates of a set of evaluation results."""

    average_score: float = 0.0
    average_latency: float = 0.0
    average_cost: float = 0.0
    pass_rate: float = 0.0
    output_patterns: OutputPatterns = Field(default_factory=OutputPatterns)
    sample_count: int = 0


class DriftMetrics(BaseModel):
    quality_drift: float = 0.0
    performance_drift: float = 0.0
    output_drift: float = 0.0
    cost_drift: float = 0.0


BaselineSource = Literal["pinned", "history", "earliest", "none"]


class DriftDetectionResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    time_frame: str
    drift_detected: bool
    drift_score: float
    metrics: DriftMetrics = Field(default_factory=DriftMetrics)
    recommendations: list[str] = Field(default_factory=list)
    threshold: float
    sample_count: int = 0
    baseline_source: BaselineSource = "none"
    checked_at: datetime = Field(default_factory=utcnow)


class TrendPoint(BaseModel):
    window_start: datetime
    average_score: float
    count: int


class EvaluationTrends(BaseModel):
    score_trend: Literal["increasing", "decreasing", "stable"] = "stable"
    volume_trend: Literal["increasing", "decreasing", "stable"] = "stable"
    data: list[TrendPoint] = Field(default_factory=list)


class EvaluationReport(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    time_frame: str
    summary: BaselineMetrics
    trends: EvaluationTrends
    recommendations: list[str] = Field(default_factory=list)


class BenchmarkResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    scores: dict[str, float] = Field(default_factory=dict)
    overall_score: float = 0.0
    ranking: int = 1
    recommendations: list[str] = Field(default_factory=list)


class EvaluationSettings(BaseModel):
    """Tunables for the evaluation framework."""

    baseline_size: int = Field(default=100, ge=1)
    min_drift_samples: int = Field(default=10, ge=0)
    cost_per_1k_tokens: float = Field(default=1.0, ge=0.0)
    parallel_workers: int = Field(default=8, ge=1)
    default_ab_sample_size: int = Field(default=100, ge=1)
    common_word_count: int = Field(default=10, ge=1)
    low_score_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
