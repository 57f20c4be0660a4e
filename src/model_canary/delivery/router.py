"""Per-request weighted routing between production and canary models.

Routing reads immutable deployment snapshots and takes no locks, so it is
safe for unrestricted concurrent use. The realized split matches the
configured split only in aggregate.
"""

from __future__ import annotations

import random
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from model_canary.delivery.models import CanaryDeployment, DeploymentStatus, utcnow
from model_canary.events import EventBus, EventType
from model_canary.store import DeploymentStore
from model_canary.telemetry import RolloutMetrics, create_rollout_metrics


@dataclass
class RouteRequest:
    """An inference request as seen by the router.

    ``model_id`` names the production model the caller would otherwise
    use; it selects the deployment pool. ``deployment_id`` pins a specific
    deployment.
    """

    request_id: str
    model_id: str
    deployment_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RouteDecision:
    is_canary: bool
    selected_model_id: str
    deployment_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_canary": self.is_canary,
            "selected_model_id": self.selected_model_id,
            "deployment_id": self.deployment_id,
        }


@dataclass(frozen=True)
class RequestMetric:
    """Outcome of one routed request, for canary analysis."""

    deployment_id: str
    request_id: str
    model_id: str
    is_canary: bool
    success: bool
    latency: float  # milliseconds
    cost: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)


class TrafficRouter:
    """Stateless weighted assignment based on a deployment's current split."""

    def __init__(
        self,
        store: DeploymentStore,
        rng: random.Random | None = None,
        metrics: RolloutMetrics | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._store = store
        self._rng = rng or random.Random()
        self._metrics = metrics or create_rollout_metrics()
        self._events = events

    def route_request(self, request: RouteRequest) -> RouteDecision:
        deployment = self._find_deployment(request)
        if deployment is None:
            return RouteDecision(is_canary=False, selected_model_id=request.model_id)

        use_canary = self.should_route_to_canary(deployment)
        selected = deployment.canary_model_id if use_canary else deployment.production_model_id
        self._metrics.requests_routed.add(
            1,
            {"deployment.id": deployment.id, "target": "canary" if use_canary else "production"},
        )
        return RouteDecision(
            is_canary=use_canary,
            selected_model_id=selected,
            deployment_id=deployment.id,
        )

    def should_route_to_canary(self, deployment: CanaryDeployment) -> bool:
        """Draw in [0, 100) and compare against the canary percentage.

        Anything other than an active deployment routes to production.
        """
        if deployment.status != DeploymentStatus.ACTIVE:
            return False
        return self._rng.random() * 100.0 < deployment.traffic_split.canary

    def record_request_metric(
        self,
        deployment_id: str,
        request_id: str,
        model_id: str,
        is_canary: bool,
        success: bool,
        latency: float,
        cost: float = 0.0,
    ) -> RequestMetric | None:
        """Record the outcome of a request routed by an active deployment.

        Outcomes for unknown or inactive deployments are dropped and return
        None. Recorded outcomes feed the latency histogram and, when the
        router has an event bus, a ``request_metric_recorded`` event for
        external metric systems.
        """
        deployment = self._store.get(deployment_id)
        if deployment is None or deployment.status != DeploymentStatus.ACTIVE:
            return None

        metric = RequestMetric(
            deployment_id=deployment_id,
            request_id=request_id,
            model_id=model_id,
            is_canary=is_canary,
            success=success,
            latency=latency,
            cost=cost,
        )
        self._metrics.request_latency.record(
            latency,
            {
                "deployment.id": deployment_id,
                "target": "canary" if is_canary else "production",
                "success": success,
            },
        )
        if self._events is not None:
            details = asdict(metric)
            details["timestamp"] = metric.timestamp.isoformat()
            self._events.publish(EventType.REQUEST_METRIC_RECORDED, deployment_id, details)
        return metric

    def _find_deployment(self, request: RouteRequest) -> CanaryDeployment | None:
        if request.deployment_id is not None:
            return self._store.get(request.deployment_id)

        pool = [
            d for d in self._store.list()
            if request.model_id in (d.production_model_id, d.canary_model_id)
            and not d.status.is_terminal
        ]
        if not pool:
            return None
        # Active deployments win over preparing/paused ones; oldest first.
        pool.sort(key=lambda d: (d.status != DeploymentStatus.ACTIVE, d.created_at))
        return pool[0]
