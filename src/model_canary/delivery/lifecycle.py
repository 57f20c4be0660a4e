"""Deployment lifecycle manager: the canonical canary state machine.

    preparing --start--> active --complete--> completed
                           ^  |
                    resume |  | pause
                           |  v
                          paused

    {preparing, active, paused} --rollback--> rolledback
    {preparing, active, paused} --fail------> failed

Transitions on one deployment are serialized by a per-deployment lock and
committed with a compare-and-set on the record's ``version``, so two
concurrent ``pause`` calls cannot both succeed and racing terminal
operations resolve to exactly one outcome.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable

from pydantic import ValidationError

from model_canary.delivery.models import (
    CanaryDeployment,
    CanaryDeploymentConfig,
    CanaryEvaluation,
    DeploymentStatus,
    DeploymentStatusReport,
    TrafficSplit,
    utcnow,
)
from model_canary.errors import (
    DeploymentValidationError,
    InvalidStateTransitionError,
    NotFoundError,
    StaleVersionError,
    UpstreamUnavailableError,
)
from model_canary.events import EventBus, EventType
from model_canary.store import (
    CanaryMetricsStore,
    DecisionLog,
    DeploymentStore,
    InMemoryCanaryMetricsStore,
    InMemoryDecisionLog,
    InMemoryDeploymentStore,
)

if TYPE_CHECKING:
    from model_canary.providers import ModelRegistry

logger = logging.getLogger(__name__)

_NON_TERMINAL = frozenset(
    {DeploymentStatus.PREPARING, DeploymentStatus.ACTIVE, DeploymentStatus.PAUSED}
)

# operation -> (allowed source states, target state, event)
TRANSITIONS: dict[str, tuple[frozenset[DeploymentStatus], DeploymentStatus, EventType]] = {
    "start": (
        frozenset({DeploymentStatus.PREPARING}),
        DeploymentStatus.ACTIVE,
        EventType.DEPLOYMENT_STARTED,
    ),
    "pause": (
        frozenset({DeploymentStatus.ACTIVE}),
        DeploymentStatus.PAUSED,
        EventType.DEPLOYMENT_PAUSED,
    ),
    "resume": (
        frozenset({DeploymentStatus.PAUSED}),
        DeploymentStatus.ACTIVE,
        EventType.DEPLOYMENT_RESUMED,
    ),
    "complete": (
        frozenset({DeploymentStatus.ACTIVE}),
        DeploymentStatus.COMPLETED,
        EventType.DEPLOYMENT_COMPLETED,
    ),
    "rollback": (_NON_TERMINAL, DeploymentStatus.ROLLED_BACK, EventType.DEPLOYMENT_ROLLED_BACK),
    "fail": (_NON_TERMINAL, DeploymentStatus.FAILED, EventType.DEPLOYMENT_FAILED),
}

_MAX_CAS_ATTEMPTS = 3


def _validation_messages(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        messages.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return messages


class DeploymentLifecycleManager:
    """Owns deployment records and enforces valid status transitions."""

    def __init__(
        self,
        registry: ModelRegistry,
        store: DeploymentStore | None = None,
        events: EventBus | None = None,
        metrics_store: CanaryMetricsStore | None = None,
        decision_log: DecisionLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self.store = store or InMemoryDeploymentStore()
        self.events = events or EventBus()
        self.metrics_store = metrics_store or InMemoryCanaryMetricsStore()
        self.decision_log = decision_log or InMemoryDecisionLog()
        self._clock = clock or utcnow
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    # -- creation ---------------------------------------------------------

    def create_deployment(
        self, config: CanaryDeploymentConfig | Mapping[str, Any]
    ) -> CanaryDeployment:
        """Validate *config* and persist a new deployment in ``preparing``.

        Raises:
            DeploymentValidationError: split does not sum to 100, model ids
                are equal, or either model is unknown to the registry.
            UpstreamUnavailableError: the registry lookup failed.
        """
        data = config.model_dump() if isinstance(config, CanaryDeploymentConfig) else dict(config)
        try:
            validated = CanaryDeploymentConfig.model_validate(data)
        except ValidationError as e:
            raise DeploymentValidationError(_validation_messages(e)) from e

        missing = []
        for role, model_id in (
            ("production", validated.production_model_id),
            ("canary", validated.canary_model_id),
        ):
            try:
                model = self._registry.get_model(model_id)
            except Exception as e:
                raise UpstreamUnavailableError("model registry", str(e)) from e
            if model is None:
                missing.append(f"{role} model not found: {model_id}")
        if missing:
            raise DeploymentValidationError(missing)

        now = self.now()
        deployment = CanaryDeployment(**validated.model_dump(), created_at=now, updated_at=now)
        with self._lock_for(deployment.id):
            self.store.insert(deployment)
            self.events.publish(
                EventType.DEPLOYMENT_CREATED,
                deployment.id,
                {
                    "production_model_id": deployment.production_model_id,
                    "canary_model_id": deployment.canary_model_id,
                    "traffic_split": deployment.traffic_split.model_dump(),
                },
                message=f"Canary deployment created: {deployment.id}",
            )
        return deployment

    # -- guarded transitions ----------------------------------------------

    def start(self, deployment_id: str, expected_version: int | None = None) -> CanaryDeployment:
        return self._transition(
            deployment_id, "start", expected_version, lambda d, now: {"started_at": now}
        )

    def pause(self, deployment_id: str, expected_version: int | None = None) -> CanaryDeployment:
        return self._transition(deployment_id, "pause", expected_version)

    def resume(self, deployment_id: str, expected_version: int | None = None) -> CanaryDeployment:
        return self._transition(deployment_id, "resume", expected_version)

    def complete(self, deployment_id: str, expected_version: int | None = None) -> CanaryDeployment:
        """Promote the canary. The split is left as-is; once completed the
        router sends nothing to the canary and promotion is the registry's
        concern, driven by the ``deployment_completed`` event."""
        return self._transition(
            deployment_id, "complete", expected_version, lambda d, now: {"completed_at": now}
        )

    def rollback(
        self,
        deployment_id: str,
        reason: str = "",
        expected_version: int | None = None,
    ) -> CanaryDeployment:
        """Revert to production-only traffic. Allowed from any non-terminal state."""
        return self._transition(
            deployment_id,
            "rollback",
            expected_version,
            lambda d, now: {
                "completed_at": now,
                "rollback_reason": reason,
                "traffic_split": TrafficSplit(production=100.0, canary=0.0),
            },
            details={"reason": reason},
        )

    def mark_failed(
        self,
        deployment_id: str,
        reason: str = "",
        expected_version: int | None = None,
    ) -> CanaryDeployment:
        return self._transition(
            deployment_id,
            "fail",
            expected_version,
            lambda d, now: {
                "completed_at": now,
                "rollback_reason": reason,
                "traffic_split": TrafficSplit(production=100.0, canary=0.0),
            },
            details={"reason": reason},
        )

    def update_traffic_split(
        self,
        deployment_id: str,
        split: TrafficSplit | Mapping[str, float],
        expected_version: int | None = None,
    ) -> CanaryDeployment:
        """Persist a new split for a non-terminal deployment."""
        if not isinstance(split, TrafficSplit):
            try:
                split = TrafficSplit.model_validate(dict(split))
            except ValidationError as e:
                raise DeploymentValidationError(_validation_messages(e)) from e

        def build(current: CanaryDeployment, now: datetime) -> dict[str, Any]:
            limit = current.rollout_strategy.max_traffic_percentage
            if split.canary > limit + 1e-9:
                raise DeploymentValidationError(
                    f"canary share {split.canary} exceeds max_traffic_percentage {limit}"
                )
            return {"traffic_split": split}

        return self._mutate(
            deployment_id,
            "update_traffic_split",
            _NON_TERMINAL,
            None,
            expected_version,
            build,
            EventType.TRAFFIC_SPLIT_UPDATED,
            {"traffic_split": split.model_dump()},
        )

    # -- queries ------------------------------------------------------------

    def get(self, deployment_id: str) -> CanaryDeployment:
        deployment = self.store.get(deployment_id)
        if deployment is None:
            raise NotFoundError("Deployment", deployment_id)
        return deployment

    def list(
        self,
        status: DeploymentStatus | str | None = None,
        production_model_id: str | None = None,
        canary_model_id: str | None = None,
    ) -> list[CanaryDeployment]:
        """Deployments matching every given filter, newest first."""
        deployments = self.store.list()
        if status is not None:
            wanted = DeploymentStatus(status)
            deployments = [d for d in deployments if d.status == wanted]
        if production_model_id is not None:
            deployments = [d for d in deployments if d.production_model_id == production_model_id]
        if canary_model_id is not None:
            deployments = [d for d in deployments if d.canary_model_id == canary_model_id]
        return sorted(deployments, key=lambda d: d.created_at, reverse=True)

    def get_status(self, deployment_id: str, history_limit: int = 20) -> DeploymentStatusReport:
        deployment = self.get(deployment_id)
        history = self.metrics_store.list(deployment_id, limit=history_limit)
        current = history[-1] if history else None
        return DeploymentStatusReport(
            deployment=deployment,
            current_metrics=current,
            metrics_history=history,
            decisions=self.decision_log.list(deployment_id, limit=history_limit),
            recommendations=self._generate_recommendations(deployment, current),
        )

    # -- internals ----------------------------------------------------------

    def _lock_for(self, deployment_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(deployment_id)
            if lock is None:
                lock = self._locks[deployment_id] = threading.Lock()
            return lock

    def _next_timestamp(self, previous: datetime) -> datetime:
        now = self.now()
        if now <= previous:
            now = previous + timedelta(microseconds=1)
        return now

    def _transition(
        self,
        deployment_id: str,
        operation: str,
        expected_version: int | None,
        build: Callable[[CanaryDeployment, datetime], dict[str, Any]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> CanaryDeployment:
        allowed, target, event_type = TRANSITIONS[operation]
        return self._mutate(
            deployment_id, operation, allowed, target, expected_version, build, event_type, details
        )

    def _mutate(
        self,
        deployment_id: str,
        operation: str,
        allowed: frozenset[DeploymentStatus],
        target: DeploymentStatus | None,
        expected_version: int | None,
        build: Callable[[CanaryDeployment, datetime], dict[str, Any]] | None,
        event_type: EventType,
        details: dict[str, Any] | None,
    ) -> CanaryDeployment:
        with self._lock_for(deployment_id):
            for _ in range(_MAX_CAS_ATTEMPTS):
                current = self.get(deployment_id)
                if expected_version is not None and current.version != expected_version:
                    raise StaleVersionError(deployment_id, expected_version, current.version)
                if current.status not in allowed:
                    raise InvalidStateTransitionError(
                        deployment_id,
                        operation,
                        current.status.value,
                        [s.value for s in allowed],
                    )

                now = self._next_timestamp(current.updated_at)
                updates = build(current, now) if build else {}
                updates.update(version=current.version + 1, updated_at=now)
                if target is not None:
                    updates["status"] = target
                updated = current.model_copy(update=updates)

                if self.store.compare_and_set(updated, current.version):
                    break
                logger.debug(
                    "Version conflict on %s for deployment %s, retrying", operation, deployment_id
                )
            else:
                latest = self.get(deployment_id)
                raise StaleVersionError(deployment_id, current.version, latest.version)

            # published under the lock so per-deployment events follow commit order
            payload = {"from_status": current.status.value, "to_status": updated.status.value}
            payload.update(details or {})
            self.events.publish(
                event_type,
                deployment_id,
                payload,
                message=f"Canary deployment {operation}: {deployment_id}",
            )
        return updated

    def _generate_recommendations(
        self,
        deployment: CanaryDeployment,
        evaluation: CanaryEvaluation | None,
    ) -> list[str]:
        recommendations: list[str] = []

        if deployment.status == DeploymentStatus.PREPARING:
            recommendations.append("Start deployment to begin collecting metrics")
            return recommendations
        if deployment.status.is_terminal:
            return recommendations
        if evaluation is None:
            recommendations.append("No evaluation yet - wait for the first rollout decision cycle")
            return recommendations

        canary = evaluation.canary
        comparison = evaluation.comparison
        if canary.requests < deployment.success_criteria.min_requests:
            recommendations.append("Increase traffic to canary to gather sufficient data")
        if comparison.confidence < 0.8:
            recommendations.append("Continue monitoring to improve statistical confidence")
        if comparison.performance_delta > 0.2:
            recommendations.append("Canary showing performance degradation - investigate")
        if comparison.quality_delta < -0.1:
            recommendations.append("Canary showing quality degradation - consider rollback")
        budget = deployment.rollback_criteria.max_error_rate
        if budget > 0 and canary.error_rate >= 0.8 * budget:
            recommendations.append("Error budget nearly exhausted - prepare for rollback")
        for alert in evaluation.alerts:
            recommendations.append(f"Alert threshold exceeded: {alert}")
        return recommendations
