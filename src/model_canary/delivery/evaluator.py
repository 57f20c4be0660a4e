"""Canary performance evaluation.

Turns production and canary snapshots from the metrics provider into a
``MetricsComparison`` with a raw proceed / pause / rollback recommendation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from model_canary.delivery.models import (
    CanaryDeployment,
    CanaryEvaluation,
    MetricsComparison,
    PerformanceSnapshot,
    Recommendation,
    utcnow,
)
from model_canary.errors import NotFoundError, UpstreamUnavailableError
from model_canary.store import CanaryMetricsStore, DeploymentStore, InMemoryCanaryMetricsStore

if TYPE_CHECKING:
    from model_canary.providers import MetricsProvider

logger = logging.getLogger(__name__)


def relative_delta(canary: float, production: float) -> float:
    """(canary - production) / production, or 0 when production is 0."""
    if production == 0:
        return 0.0
    return (canary - production) / production


def rollback_breaches(deployment: CanaryDeployment, canary: PerformanceSnapshot) -> list[str]:
    """Every rollback criterion the canary snapshot violates."""
    criteria = deployment.rollback_criteria
    breaches = []
    if canary.error_rate > criteria.max_error_rate:
        breaches.append(
            f"error rate {canary.error_rate:.3f} exceeds rollback maximum {criteria.max_error_rate:.3f}"
        )
    if canary.success_rate < criteria.min_success_rate:
        breaches.append(
            f"success rate {canary.success_rate:.3f} below rollback minimum {criteria.min_success_rate:.3f}"
        )
    if canary.p95_latency > criteria.max_latency_p95:
        breaches.append(
            f"p95 latency {canary.p95_latency:.0f}ms exceeds rollback maximum {criteria.max_latency_p95:.0f}ms"
        )
    if canary.quality_score < criteria.min_quality_score:
        breaches.append(
            f"quality score {canary.quality_score:.3f} below rollback minimum {criteria.min_quality_score:.3f}"
        )
    return breaches


def success_shortfalls(deployment: CanaryDeployment, canary: PerformanceSnapshot) -> list[str]:
    """Every success criterion the canary snapshot does not yet meet."""
    criteria = deployment.success_criteria
    shortfalls = []
    if canary.error_rate > criteria.max_error_rate:
        shortfalls.append(f"error rate {canary.error_rate:.3f} above target {criteria.max_error_rate:.3f}")
    if canary.success_rate < criteria.min_success_rate:
        shortfalls.append(
            f"success rate {canary.success_rate:.3f} below target {criteria.min_success_rate:.3f}"
        )
    if canary.p95_latency > criteria.max_latency_p95:
        shortfalls.append(
            f"p95 latency {canary.p95_latency:.0f}ms above target {criteria.max_latency_p95:.0f}ms"
        )
    if canary.quality_score < criteria.min_quality_score:
        shortfalls.append(
            f"quality score {canary.quality_score:.3f} below target {criteria.min_quality_score:.3f}"
        )
    return shortfalls


def determine_recommendation(
    deployment: CanaryDeployment,
    canary: PerformanceSnapshot,
) -> tuple[Recommendation, list[str]]:
    """Apply the recommendation precedence: rollback, insufficient sample,
    proceed, then pause for anything borderline.

    A canary that served no requests carries no evidence, so it pauses
    rather than tripping the rollback minimums with its zero rates.
    """
    if canary.requests > 0:
        breaches = rollback_breaches(deployment, canary)
        if breaches:
            return Recommendation.ROLLBACK, breaches

    min_requests = deployment.success_criteria.min_requests
    if canary.requests < min_requests:
        return Recommendation.PAUSE, [
            f"insufficient sample: {canary.requests} of {min_requests} required canary requests"
        ]

    shortfalls = success_shortfalls(deployment, canary)
    if not shortfalls:
        return Recommendation.PROCEED, ["all success criteria met"]
    return Recommendation.PAUSE, shortfalls


def calculate_confidence(canary_requests: int, min_requests: int) -> float:
    """Grows linearly with canary volume, reaching 1.0 at twice min_requests."""
    if min_requests <= 0:
        return 1.0
    return min(canary_requests / (2.0 * min_requests), 1.0)


def alert_hits(
    deployment: CanaryDeployment,
    production: PerformanceSnapshot,
    canary: PerformanceSnapshot,
) -> list[str]:
    thresholds = deployment.rollback_criteria.alert_thresholds
    alerts = []
    error_jump = canary.error_rate - production.error_rate
    if thresholds.error_spike > 0 and error_jump >= thresholds.error_spike:
        alerts.append(f"error spike: canary error rate +{error_jump:.3f} over production")
    latency_jump = canary.p95_latency - production.p95_latency
    if thresholds.latency_spike > 0 and latency_jump >= thresholds.latency_spike:
        alerts.append(f"latency spike: canary p95 +{latency_jump:.0f}ms over production")
    quality_fall = production.quality_score - canary.quality_score
    if thresholds.quality_drop > 0 and quality_fall >= thresholds.quality_drop:
        alerts.append(f"quality drop: canary quality -{quality_fall:.3f} below production")
    return alerts


class PerformanceEvaluator:
    """Compares canary against production over the evaluation window."""

    def __init__(
        self,
        store: DeploymentStore,
        metrics_provider: MetricsProvider,
        metrics_store: CanaryMetricsStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._provider = metrics_provider
        self.metrics_store = metrics_store or InMemoryCanaryMetricsStore()
        self._clock = clock or utcnow

    def evaluate_canary_performance(self, deployment_id: str) -> CanaryEvaluation:
        """Evaluate the canary and append the result to the metrics history.

        Raises:
            NotFoundError: unknown deployment.
            UpstreamUnavailableError: the metrics provider failed.
        """
        deployment = self._store.get(deployment_id)
        if deployment is None:
            raise NotFoundError("Deployment", deployment_id)

        window = deployment.success_criteria.evaluation_window
        window_start = self._clock() - timedelta(minutes=window)

        production = self._fetch(deployment.production_model_id, window_start, is_canary=False)
        canary = self._fetch(deployment.canary_model_id, window_start, is_canary=True)

        recommendation, reasons = determine_recommendation(deployment, canary)
        comparison = MetricsComparison(
            performance_delta=relative_delta(canary.avg_latency, production.avg_latency),
            quality_delta=canary.quality_score - production.quality_score,
            cost_delta=relative_delta(canary.avg_cost, production.avg_cost),
            recommendation=recommendation,
            confidence=calculate_confidence(
                canary.requests, deployment.success_criteria.min_requests
            ),
            reasons=reasons,
        )
        evaluation = CanaryEvaluation(
            deployment_id=deployment_id,
            time_window=f"{window:g}m",
            window_start=window_start,
            production=production,
            canary=canary,
            comparison=comparison,
            alerts=alert_hits(deployment, production, canary),
            evaluated_at=self._clock(),
        )
        self.metrics_store.append(evaluation)

        logger.debug(
            "Evaluated deployment %s: %s (confidence %.2f)",
            deployment_id,
            recommendation.value,
            comparison.confidence,
        )
        return evaluation

    def _fetch(self, model_id: str, window_start: datetime, is_canary: bool) -> PerformanceSnapshot:
        try:
            snapshot = self._provider.get_metrics(model_id, window_start, is_canary)
        except Exception as e:
            raise UpstreamUnavailableError("metrics provider", f"{model_id}: {e}") from e
        return snapshot if snapshot is not None else PerformanceSnapshot.empty()
