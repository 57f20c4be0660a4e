"""OpenTelemetry metric instruments for rollout and evaluation observability.

Instruments come from the global meter provider unless a meter is passed
in, so they are no-ops until an SDK is configured.
"""

from __future__ import annotations

from dataclasses import dataclass

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram, Meter

# ---------------------------------------------------------------------------
# Metric name constants
# ---------------------------------------------------------------------------

METRIC_REQUESTS_ROUTED = "canary.requests.routed"
METRIC_ROLLOUT_DECISIONS = "canary.rollout.decisions"
METRIC_DRIFT_CHECKS = "canary.drift.checks"
METRIC_EVALUATION_LATENCY = "canary.evaluation.latency"
METRIC_REQUEST_LATENCY = "canary.request.latency"

METER_NAME = "model_canary"


@dataclass
class RolloutMetrics:
    """Collection of OpenTelemetry instruments for canary rollouts."""

    requests_routed: Counter
    rollout_decisions: Counter
    drift_checks: Counter
    evaluation_latency: Histogram
    request_latency: Histogram


def create_rollout_metrics(meter: Meter | None = None) -> RolloutMetrics:
    """Create all instruments from a single meter.

    Args:
        meter: OpenTelemetry ``Meter``; defaults to the global provider's
            meter for this package.
    """
    meter = meter or metrics.get_meter(METER_NAME)
    return RolloutMetrics(
        requests_routed=meter.create_counter(
            name=METRIC_REQUESTS_ROUTED,
            description="Requests routed by canary deployments",
            unit="1",
        ),
        rollout_decisions=meter.create_counter(
            name=METRIC_ROLLOUT_DECISIONS,
            description="Rollout decisions executed",
            unit="1",
        ),
        drift_checks=meter.create_counter(
            name=METRIC_DRIFT_CHECKS,
            description="Drift detection runs",
            unit="1",
        ),
        evaluation_latency=meter.create_histogram(
            name=METRIC_EVALUATION_LATENCY,
            description="Latency of model invocations during golden-dataset evaluation",
            unit="ms",
        ),
        request_latency=meter.create_histogram(
            name=METRIC_REQUEST_LATENCY,
            description="Latency of routed requests, by target and outcome",
            unit="ms",
        ),
    )
