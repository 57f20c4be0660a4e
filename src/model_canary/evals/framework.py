"""
Model evaluation framework.

Scores models against golden datasets, compares two models with an A/B
test, and watches each model's evaluation history for drift against a
baseline. Every score lands in the injected ``EvaluationHistory`` so drift
detection and reports work from the same record.

Usage:
    framework = ModelEvaluationFramework(registry, invoker)
    framework.load_default_datasets()
    evaluation = framework.evaluate_model("gpt-x", "creativity")
    drift = framework.detect_drift("gpt-x", time_frame_hours=24)
"""

from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from model_canary.delivery.models import utcnow
from model_canary.errors import NotFoundError, UpstreamUnavailableError
from model_canary.evals import stats
from model_canary.evals.golden import GoldenDataset, default_creativity_dataset
from model_canary.evals.models import (
    BaselineMetrics,
    BaselineSource,
    BenchmarkResult,
    ComparisonSummary,
    DriftDetectionResult,
    DriftMetrics,
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
from model_canary.evals.scorers import ScorerSet, default_scorers
from model_canary.events import EventBus, EventType
from model_canary.providers import ModelInfo, ModelInvoker, ModelRegistry
from model_canary.scheduling import PeriodicTask
from model_canary.store import EvaluationHistory, InMemoryEvaluationHistory
from model_canary.telemetry import RolloutMetrics, create_rollout_metrics

logger = logging.getLogger(__name__)

_TREND_WINDOW = timedelta(hours=24)
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Aggregation helpers
# ---------------------------------------------------------------------------


def extract_output_patterns(
    results: Sequence[EvaluationResult], common_word_count: int = 10
) -> OutputPatterns:
    if not results:
        return OutputPatterns()
    lengths = [len(r.response) for r in results]
    counts: Counter[str] = Counter()
    for r in results:
        counts.update(r.response.lower().split())
    return OutputPatterns(
        average_length=stats.mean(lengths),
        length_variance=stats.variance(lengths),
        common_words=[w for w, _ in counts.most_common(common_word_count)],
    )


def calculate_metrics(
    results: Sequence[EvaluationResult],
    cost_per_1k_tokens: float = 1.0,
    common_word_count: int = 10,
) -> BaselineMetrics:
    """Average score, latency, cost, pass rate and output signature."""
    if not results:
        return BaselineMetrics()
    return BaselineMetrics(
        average_score=stats.mean([r.score for r in results]),
        average_latency=stats.mean([r.metrics.latency for r in results]),
        average_cost=stats.mean(
            [r.metrics.token_usage / 1000.0 * cost_per_1k_tokens for r in results]
        ),
        pass_rate=sum(1 for r in results if r.passed) / len(results),
        output_patterns=extract_output_patterns(results, common_word_count),
        sample_count=len(results),
    )


def relative_change(current: float, baseline: float) -> float:
    """|current - baseline| / baseline; a move away from a zero baseline is 1.0."""
    if baseline == 0:
        return 0.0 if current == 0 else 1.0
    return abs(current - baseline) / abs(baseline)


def output_drift(current: OutputPatterns, baseline: OutputPatterns) -> float:
    """Mean of the relative length change and the common-word Jaccard distance."""
    length_change = relative_change(current.average_length, baseline.average_length)
    a, b = set(current.common_words), set(baseline.common_words)
    union = a | b
    word_distance = 1.0 - len(a & b) / len(union) if union else 0.0
    return (length_change + word_distance) / 2


def trend_direction(values: Sequence[float]) -> str:
    """Compare last against first: beyond +/-5% is a trend."""
    if len(values) < 2:
        return "stable"
    first, last = values[0], values[-1]
    if first == 0:
        return "increasing" if last > 0 else "stable"
    change = (last - first) / first
    if change > 0.05:
        return "increasing"
    if change < -0.05:
        return "decreasing"
    return "stable"


def calculate_trends(results: Sequence[EvaluationResult]) -> EvaluationTrends:
    """Group results into 24h windows and report score and volume direction."""
    windows: dict[datetime, list[EvaluationResult]] = {}
    for r in results:
        ts = r.timestamp if r.timestamp.tzinfo else r.timestamp.replace(tzinfo=timezone.utc)
        start = _EPOCH + ((ts - _EPOCH) // _TREND_WINDOW) * _TREND_WINDOW
        windows.setdefault(start, []).append(r)

    data = [
        TrendPoint(
            window_start=start,
            average_score=stats.mean([r.score for r in group]),
            count=len(group),
        )
        for start, group in sorted(windows.items())
    ]
    return EvaluationTrends(
        score_trend=trend_direction([p.average_score for p in data]),
        volume_trend=trend_direction([p.count for p in data]),
        data=data,
    )


# ---------------------------------------------------------------------------
# Framework
# ---------------------------------------------------------------------------


class ModelEvaluationFramework:
    """Golden-dataset scoring, A/B testing and drift detection for models."""

    def __init__(
        self,
        registry: ModelRegistry,
        invoker: ModelInvoker,
        history: Optional[EvaluationHistory] = None,
        scorers: Optional[ScorerSet] = None,
        settings: Optional[EvaluationSettings] = None,
        events: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[RolloutMetrics] = None,
    ) -> None:
        self._registry = registry
        self._invoker = invoker
        self.history = history or InMemoryEvaluationHistory()
        self.scorers = scorers or default_scorers()
        self.settings = settings or EvaluationSettings()
        self.events = events or EventBus()
        self._rng = rng or random.Random()
        self._clock = clock or utcnow
        self._metrics = metrics or create_rollout_metrics()

        self._lock = threading.Lock()
        self._datasets: dict[str, list[GoldenDatasetEntry]] = {}
        self._comparisons: dict[str, ModelComparison] = {}
        self._baselines: dict[str, BaselineMetrics] = {}

    # -- golden datasets -----------------------------------------------------

    def load_golden_dataset(
        self, category: str, entries: Sequence[GoldenDatasetEntry] | GoldenDataset
    ) -> None:
        """Replace the entries for *category*."""
        if isinstance(entries, GoldenDataset):
            entries = entries.entries
        with self._lock:
            self._datasets[category] = list(entries)
        logger.info("Golden dataset loaded: %s (%d entries)", category, len(entries))

    def get_golden_dataset(self, category: str) -> list[GoldenDatasetEntry]:
        with self._lock:
            entries = self._datasets.get(category)
        if entries is None:
            raise NotFoundError("Golden dataset", category)
        return list(entries)

    def categories(self) -> list[str]:
        with self._lock:
            return sorted(self._datasets)

    def load_default_datasets(self) -> None:
        dataset = default_creativity_dataset()
        self.load_golden_dataset(dataset.category, dataset.entries)

    # -- evaluation ----------------------------------------------------------

    def evaluate_model(
        self,
        model_id: str,
        category: str,
        sample_size: Optional[int] = None,
        parallel: bool = False,
    ) -> ModelEvaluation:
        """Score *model_id* on a sample of the *category* golden dataset.

        Raises:
            NotFoundError: unknown dataset or model.
            UpstreamUnavailableError: the registry lookup failed.
        """
        dataset = self.get_golden_dataset(category)
        self._require_model(model_id)

        entries = self._sample(dataset, sample_size)
        logger.info(
            "Starting evaluation: %s on %s (%d entries)", model_id, category, len(entries)
        )

        if parallel and len(entries) > 1:
            workers = min(self.settings.parallel_workers, len(entries))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(lambda e: self._evaluate_entry(model_id, e), entries))
        else:
            results = [self._evaluate_entry(model_id, e) for e in entries]

        self.history.extend(model_id, results)
        evaluation = self._summarize(model_id, category, results)

        self.events.publish(
            EventType.EVALUATION_COMPLETED,
            model_id,
            {
                "category": category,
                "overall_score": round(evaluation.overall_score, 4),
                "pass_rate": round(evaluation.pass_rate, 4),
                "total": evaluation.summary.total,
            },
        )
        return evaluation

    def _sample(
        self, dataset: list[GoldenDatasetEntry], sample_size: Optional[int]
    ) -> list[GoldenDatasetEntry]:
        if sample_size is None or sample_size >= len(dataset):
            return list(dataset)
        return self._rng.sample(dataset, max(sample_size, 0))

    def _evaluate_entry(self, model_id: str, entry: GoldenDatasetEntry) -> EvaluationResult:
        start = time.perf_counter()
        try:
            response = self._invoker.invoke(model_id, entry.prompt)
            latency = (time.perf_counter() - start) * 1000
            content = response.content

            criteria = entry.evaluation_criteria
            similarity = self.scorers.similarity.score(content, entry)
            semantic = self.scorers.semantic.score(content, entry)
            factual = self.scorers.factual.score(content, entry) if criteria.factual_accuracy else 1.0
            brand = self.scorers.brand.score(content, entry) if criteria.brand_consistency else 1.0

            score = (similarity + semantic + factual + brand) / 4
            result = EvaluationResult(
                entry_id=entry.id,
                model_id=model_id,
                score=score,
                passed=score >= criteria.similarity,
                metrics=EvaluationMetrics(
                    similarity=similarity,
                    semantic_score=semantic,
                    factual_score=factual,
                    brand_score=brand,
                    latency=latency,
                    token_usage=response.total_tokens,
                ),
                response=content,
                timestamp=self._clock(),
            )
        except Exception as e:
            latency = (time.perf_counter() - start) * 1000
            logger.warning("Evaluation of entry %s on %s failed: %s", entry.id, model_id, e)
            result = EvaluationResult(
                entry_id=entry.id,
                model_id=model_id,
                score=0.0,
                passed=False,
                metrics=EvaluationMetrics(latency=latency),
                response=f"Error: {e}",
                timestamp=self._clock(),
            )

        self._metrics.evaluation_latency.record(latency, {"model.id": model_id})
        return result

    def _summarize(
        self, model_id: str, category: str, results: list[EvaluationResult]
    ) -> ModelEvaluation:
        total = len(results)
        passed = sum(1 for r in results if r.passed)
        tokens = sum(r.metrics.token_usage for r in results)
        return ModelEvaluation(
            model_id=model_id,
            category=category,
            overall_score=stats.mean([r.score for r in results]),
            pass_rate=passed / total if total else 0.0,
            results=results,
            summary=EvaluationSummary(
                total=total,
                passed=passed,
                failed=total - passed,
                average_latency=stats.mean([r.metrics.latency for r in results]),
                total_cost=tokens / 1000.0 * self.settings.cost_per_1k_tokens,
            ),
        )

    def _require_model(self, model_id: str) -> ModelInfo:
        try:
            model = self._registry.get_model(model_id)
        except Exception as e:
            raise UpstreamUnavailableError("model registry", str(e)) from e
        if model is None:
            raise NotFoundError("Model", model_id)
        return model

    # -- A/B testing ---------------------------------------------------------

    def run_ab_test(
        self,
        model_a: str,
        model_b: str,
        category: str,
        sample_size: Optional[int] = None,
        confidence_level: float = 0.95,
        minimum_effect_size: float = 0.1,
    ) -> ModelComparison:
        """Evaluate both models on the same sample size and compare scores."""
        if not 0 < confidence_level < 1:
            raise ValueError(f"confidence_level must be in (0, 1), got {confidence_level}")
        size = sample_size if sample_size is not None else self.settings.default_ab_sample_size
        test_id = f"ab-test-{uuid.uuid4().hex[:12]}"
        logger.info("Starting A/B test %s: %s vs %s", test_id, model_a, model_b)

        eval_a = self.evaluate_model(model_a, category, sample_size=size)
        eval_b = self.evaluate_model(model_b, category, sample_size=size)
        return self.compare_results(
            model_a,
            model_b,
            category,
            eval_a.results,
            eval_b.results,
            confidence_level=confidence_level,
            minimum_effect_size=minimum_effect_size,
            test_id=test_id,
        )

    def compare_results(
        self,
        model_a: str,
        model_b: str,
        category: str,
        results_a: Sequence[EvaluationResult],
        results_b: Sequence[EvaluationResult],
        confidence_level: float = 0.95,
        minimum_effect_size: float = 0.1,
        test_id: Optional[str] = None,
    ) -> ModelComparison:
        """Statistical comparison of two existing result sets."""
        analysis = stats.analyze_scores(
            [r.score for r in results_a],
            [r.score for r in results_b],
            confidence_level=confidence_level,
            minimum_effect_size=minimum_effect_size,
            name_a=model_a,
            name_b=model_b,
        )
        comparison = ModelComparison(
            test_id=test_id or f"ab-test-{uuid.uuid4().hex[:12]}",
            model_a=model_a,
            model_b=model_b,
            category=category,
            results_a=list(results_a),
            results_b=list(results_b),
            summary=ComparisonSummary(
                winner_model=analysis.winner,
                confidence=analysis.confidence,
                statistical_significance=analysis.significant,
                p_value=analysis.p_value,
                effect_size=analysis.effect_size,
                mean_a=analysis.mean_a,
                mean_b=analysis.mean_b,
            ),
            created_at=self._clock(),
        )
        with self._lock:
            self._comparisons[comparison.test_id] = comparison

        self.events.publish(
            EventType.AB_TEST_COMPLETED,
            comparison.test_id,
            {
                "model_a": model_a,
                "model_b": model_b,
                "winner": analysis.winner,
                "significant": analysis.significant,
                "p_value": round(analysis.p_value, 4),
            },
        )
        return comparison

    def get_comparison(self, test_id: str) -> ModelComparison:
        with self._lock:
            comparison = self._comparisons.get(test_id)
        if comparison is None:
            raise NotFoundError("A/B test", test_id)
        return comparison

    # -- drift ---------------------------------------------------------------

    def pin_baseline(
        self, model_id: str, baseline: Optional[BaselineMetrics] = None
    ) -> BaselineMetrics:
        """Pin a baseline for *model_id*; it takes precedence over history.

        Without an explicit baseline, the earliest results in history are
        frozen as the baseline.
        """
        if baseline is None:
            history = self.history.list(model_id)
            if not history:
                raise NotFoundError("Evaluation history", model_id)
            baseline = self._metrics_of(history[: self.settings.baseline_size])
        with self._lock:
            self._baselines[model_id] = baseline
        logger.info("Baseline pinned for %s (%d samples)", model_id, baseline.sample_count)
        return baseline

    def clear_baseline(self, model_id: str) -> None:
        with self._lock:
            self._baselines.pop(model_id, None)

    def get_baseline(
        self, model_id: str, cutoff: Optional[datetime] = None
    ) -> tuple[BaselineMetrics, BaselineSource]:
        """Pinned baseline if any, else the earliest results older than
        *cutoff*, else the earliest results overall."""
        with self._lock:
            pinned = self._baselines.get(model_id)
        if pinned is not None:
            return pinned, "pinned"

        size = self.settings.baseline_size
        history = self.history.list(model_id)
        if cutoff is not None:
            older = [r for r in history if r.timestamp < cutoff]
            if older:
                return self._metrics_of(older[:size]), "history"
        if history:
            return self._metrics_of(history[:size]), "earliest"
        return BaselineMetrics(), "none"

    def detect_drift(
        self, model_id: str, time_frame_hours: float = 24, threshold: float = 0.1
    ) -> DriftDetectionResult:
        """Compare recent results against the model's baseline.

        Raises:
            NotFoundError: unknown model.
            UpstreamUnavailableError: the registry lookup failed.
        """
        self._require_model(model_id)
        cutoff = self._clock() - timedelta(hours=time_frame_hours)
        recent = self.history.list(model_id, since=cutoff)
        time_frame = f"{time_frame_hours:g}h"

        if not recent:
            logger.info("No recent evaluation results for %s; drift not assessed", model_id)
            self._metrics.drift_checks.add(1, {"detected": False})
            return DriftDetectionResult(
                model_id=model_id,
                time_frame=time_frame,
                drift_detected=False,
                drift_score=0.0,
                recommendations=[
                    f"Insufficient data for drift detection - no evaluation results in the last {time_frame}"
                ],
                threshold=threshold,
                sample_count=0,
                checked_at=self._clock(),
            )
        if len(recent) < self.settings.min_drift_samples:
            logger.warning(
                "Insufficient data for drift detection: %s (%d results)", model_id, len(recent)
            )

        baseline, source = self.get_baseline(model_id, cutoff)
        current = self._metrics_of(recent)
        metrics = DriftMetrics(
            quality_drift=relative_change(current.average_score, baseline.average_score),
            performance_drift=relative_change(current.average_latency, baseline.average_latency),
            output_drift=output_drift(current.output_patterns, baseline.output_patterns),
            cost_drift=relative_change(current.average_cost, baseline.average_cost),
        )
        score = (
            metrics.quality_drift
            + metrics.performance_drift
            + metrics.output_drift
            + metrics.cost_drift
        ) / 4
        detected = score > threshold

        recommendations = []
        if metrics.quality_drift > threshold:
            recommendations.append("Quality degradation detected - review model training data")
        if metrics.performance_drift > threshold:
            recommendations.append("Performance degradation detected - check model infrastructure")
        if metrics.output_drift > threshold:
            recommendations.append("Output pattern drift detected - validate model behavior")
        if metrics.cost_drift > threshold:
            recommendations.append("Cost drift detected - review token usage patterns")

        result = DriftDetectionResult(
            model_id=model_id,
            time_frame=time_frame,
            drift_detected=detected,
            drift_score=score,
            metrics=metrics,
            recommendations=recommendations,
            threshold=threshold,
            sample_count=len(recent),
            baseline_source=source,
            checked_at=self._clock(),
        )
        self._metrics.drift_checks.add(1, {"detected": detected})

        if detected:
            logger.warning("Model drift detected: %s (score: %.3f)", model_id, score)
            self.events.publish(
                EventType.DRIFT_DETECTED,
                model_id,
                {
                    "drift_score": round(score, 4),
                    "threshold": threshold,
                    "baseline_source": source,
                    **metrics.model_dump(),
                },
            )
        return result

    def run_drift_pass(
        self, time_frame_hours: float = 24, threshold: float = 0.1
    ) -> list[DriftDetectionResult]:
        """Check drift for every active model; failures are per model."""
        try:
            models = self._registry.list_active_models()
        except Exception:
            logger.exception("Continuous monitoring error: could not list active models")
            return []

        results = []
        for model in models:
            try:
                results.append(self.detect_drift(model.id, time_frame_hours, threshold))
            except Exception:
                logger.exception("Drift detection failed for model %s", model.id)
        return results

    def start_continuous_monitoring(self, interval_minutes: float = 60) -> PeriodicTask:
        """Run ``run_drift_pass`` every *interval_minutes* on a daemon thread."""
        logger.info("Starting continuous drift monitoring (interval: %gm)", interval_minutes)
        task = PeriodicTask("drift-monitor", interval_minutes * 60, self.run_drift_pass)
        return task.start()

    # -- reports -------------------------------------------------------------

    def generate_evaluation_report(
        self, model_id: str, time_frame_hours: float = 168
    ) -> EvaluationReport:
        cutoff = self._clock() - timedelta(hours=time_frame_hours)
        results = self.history.list(model_id, since=cutoff)
        summary = self._metrics_of(results)
        trends = calculate_trends(results)

        recommendations = []
        if results and summary.pass_rate < 0.8:
            recommendations.append(
                "Pass rate below 80% - consider model retraining or parameter tuning"
            )
        if summary.average_latency > 5000:
            recommendations.append(
                "High latency detected - optimize model inference or infrastructure"
            )
        if trends.score_trend == "decreasing":
            recommendations.append("Quality trend declining - investigate recent changes")
        if trends.volume_trend == "increasing":
            recommendations.append("Request volume increasing - consider scaling infrastructure")

        return EvaluationReport(
            model_id=model_id,
            time_frame=f"{time_frame_hours:g}h",
            summary=summary,
            trends=trends,
            recommendations=recommendations,
        )

    def benchmark_model(
        self,
        model_id: str,
        categories: Optional[Sequence[str]] = None,
        sample_size: int = 50,
    ) -> BenchmarkResult:
        """Evaluate across categories and rank against other models' history."""
        categories = list(categories) if categories is not None else self.categories()
        scores = {
            category: self.evaluate_model(model_id, category, sample_size=sample_size).overall_score
            for category in categories
        }
        overall = stats.mean(list(scores.values()))

        better = 0
        for other in self.history.model_ids():
            if other == model_id:
                continue
            other_mean = stats.mean([r.score for r in self.history.list(other)])
            if other_mean > overall:
                better += 1

        threshold = self.settings.low_score_threshold
        return BenchmarkResult(
            model_id=model_id,
            scores=scores,
            overall_score=overall,
            ranking=better + 1,
            recommendations=[
                f"Low performance in {category} - consider specialized training"
                for category, score in scores.items()
                if score < threshold
            ],
        )

    def _metrics_of(self, results: Sequence[EvaluationResult]) -> BaselineMetrics:
        return calculate_metrics(
            results,
            cost_per_1k_tokens=self.settings.cost_per_1k_tokens,
            common_word_count=self.settings.common_word_count,
        )
