"""Golden-dataset evaluation, A/B testing and drift detection for models."""

from model_canary.evals.framework import (
    ModelEvaluationFramework,
    calculate_metrics,
    calculate_trends,
    output_drift,
    relative_change,
)
from model_canary.evals.golden import GoldenDataset, default_creativity_dataset, load_golden_datasets
from model_canary.evals.models import (
    BaselineMetrics,
    BenchmarkResult,
    ComparisonSummary,
    DriftDetectionResult,
    DriftMetrics,
    EntryMetadata,
    EvaluationCriteria,
    EvaluationMetrics,
    EvaluationReport,
    EvaluationResult,
    EvaluationSettings,
    EvaluationSummary,
    EvaluationTrends,
    GoldenDatasetEntry,
    ModelComparison,
    ModelEvaluation,
    OutputPatterns,
    TrendPoint,
)
from model_canary.evals.scorers import (
    BrandConsistencyScorer,
    FactualOverlapScorer,
    LexicalSimilarityScorer,
    Scorer,
    ScorerSet,
    SequenceSemanticScorer,
    default_scorers,
)
from model_canary.evals.stats import ScoreAnalysis, analyze_scores, welch_p_value

__all__ = [
    "BaselineMetrics",
    "BenchmarkResult",
    "BrandConsistencyScorer",
    "ComparisonSummary",
    "DriftDetectionResult",
    "DriftMetrics",
    "EntryMetadata",
    "EvaluationCriteria",
    "EvaluationMetrics",
    "EvaluationReport",
    "EvaluationResult",
    "EvaluationSettings",
    "EvaluationSummary",
    "EvaluationTrends",
    "FactualOverlapScorer",
    "GoldenDataset",
    "GoldenDatasetEntry",
    "LexicalSimilarityScorer",
    "ModelComparison",
    "ModelEvaluation",
    "ModelEvaluationFramework",
    "OutputPatterns",
    "ScoreAnalysis",
    "Scorer",
    "ScorerSet",
    "SequenceSemanticScorer",
    "TrendPoint",
    "analyze_scores",
    "calculate_metrics",
    "calculate_trends",
    "default_creativity_dataset",
    "default_scorers",
    "load_golden_datasets",
    "output_drift",
    "relative_change",
    "welch_p_value",
]
