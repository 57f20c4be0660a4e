"""Rollout decision engine.

Combines the evaluator's raw recommendation with rollout-strategy progress
to choose a lifecycle action, and applies it through the lifecycle
manager. Decisions carry the deployment version they were made against;
applying one after the deployment has moved on is a silent no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel, Field

from model_canary.delivery.evaluator import PerformanceEvaluator
from model_canary.delivery.lifecycle import DeploymentLifecycleManager
from model_canary.delivery.models import (
    CanaryDeployment,
    DeploymentStatus,
    Recommendation,
    RolloutAction,
    RolloutDecision,
    RolloutStrategy,
    RolloutStrategyType,
    TrafficSplit,
    round_share,
)
from model_canary.errors import (
    InvalidStateTransitionError,
    StaleVersionError,
    UpstreamUnavailableError,
)
from model_canary.events import EventBus, EventType
from model_canary.scheduling import PeriodicTask
from model_canary.store import DecisionLog
from model_canary.telemetry import RolloutMetrics, create_rollout_metrics

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class DecisionEngineConfig(BaseModel):
    """Tunables for traffic progression and the monitoring loop."""

    default_linear_steps: int = Field(default=10, ge=1)
    exponential_seed_percentage: float = Field(default=5.0, gt=0.0, le=100.0)
    monitoring_interval_seconds: float = Field(default=60.0, gt=0.0)


def next_canary_percentage(
    strategy: RolloutStrategy,
    current: float,
    config: DecisionEngineConfig | None = None,
) -> float | None:
    """Canary share after one more step of *strategy*, capped at its maximum.

    None when the strategy holds: manual rollouts, or already at the cap.
    """
    config = config or DecisionEngineConfig()
    limit = strategy.max_traffic_percentage

    if strategy.type == RolloutStrategyType.MANUAL:
        return None
    if strategy.type == RolloutStrategyType.LINEAR:
        steps = strategy.steps or config.default_linear_steps
        proposed = current + limit / steps
    else:
        proposed = current * 2 if current > 0 else config.exponential_seed_percentage

    proposed = round_share(proposed, limit)
    if proposed <= current + _EPSILON:
        return None
    return proposed


class RolloutDecisionEngine:
    """Decides and executes the next step of each canary rollout."""

    def __init__(
        self,
        lifecycle: DeploymentLifecycleManager,
        evaluator: PerformanceEvaluator,
        decision_log: DecisionLog | None = None,
        config: DecisionEngineConfig | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
        metrics: RolloutMetrics | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.evaluator = evaluator
        self.decision_log = decision_log or lifecycle.decision_log
        self.config = config or DecisionEngineConfig()
        self.events = events or lifecycle.events
        self._metrics = metrics or create_rollout_metrics()
        self._clock = clock or lifecycle.now

    # -- traffic progression -----------------------------------------------

    def next_traffic_split(self, deployment: CanaryDeployment) -> TrafficSplit | None:
        """The split the strategy advances to next, or None when it holds."""
        proposed = next_canary_percentage(
            deployment.rollout_strategy, deployment.traffic_split.canary, self.config
        )
        if proposed is None:
            return None
        return TrafficSplit.for_canary(
            proposed, deployment.rollout_strategy.max_traffic_percentage
        )

    def elapsed_minutes(self, deployment: CanaryDeployment) -> float:
        if deployment.started_at is None:
            return 0.0
        return max((self._clock() - deployment.started_at).total_seconds() / 60.0, 0.0)

    # -- decisions -----------------------------------------------------------

    def make_rollout_decision(self, deployment_id: str) -> RolloutDecision:
        """Evaluate the canary and choose continue / pause / rollback / complete.

        Raises:
            NotFoundError: unknown deployment.
            InvalidStateTransitionError: deployment is not active or paused.
            UpstreamUnavailableError: metrics could not be fetched.
        """
        deployment = self.lifecycle.get(deployment_id)
        if deployment.status not in (DeploymentStatus.ACTIVE, DeploymentStatus.PAUSED):
            raise InvalidStateTransitionError(
                deployment_id,
                "evaluate",
                deployment.status.value,
                [DeploymentStatus.ACTIVE.value, DeploymentStatus.PAUSED.value],
            )

        evaluation = self.evaluator.evaluate_canary_performance(deployment_id)
        comparison = evaluation.comparison
        new_split: TrafficSplit | None = None

        if comparison.recommendation == Recommendation.ROLLBACK:
            action = RolloutAction.ROLLBACK
            reason = "Rollback criteria breached: " + "; ".join(comparison.reasons)
        elif comparison.recommendation == Recommendation.PAUSE:
            action = RolloutAction.PAUSE
            reason = "Rollout held: " + "; ".join(comparison.reasons)
        else:
            action, reason, new_split = self._progress(deployment)

        now = self._clock()
        return RolloutDecision(
            deployment_id=deployment_id,
            action=action,
            reason=reason,
            metrics=evaluation,
            new_traffic_split=new_split,
            deployment_version=deployment.version,
            deployment_updated_at=deployment.updated_at,
            timestamp=now,
            next_evaluation_time=now
            + timedelta(minutes=deployment.success_criteria.evaluation_window),
        )

    def _progress(
        self, deployment: CanaryDeployment
    ) -> tuple[RolloutAction, str, TrafficSplit | None]:
        strategy = deployment.rollout_strategy
        if strategy.type == RolloutStrategyType.MANUAL:
            return (
                RolloutAction.CONTINUE,
                "Performance acceptable - manual strategy awaits operator",
                None,
            )

        at_max = deployment.traffic_split.canary >= strategy.max_traffic_percentage - _EPSILON
        elapsed = self.elapsed_minutes(deployment)
        if at_max and elapsed >= strategy.duration:
            return (
                RolloutAction.COMPLETE,
                f"Success criteria met at {deployment.traffic_split.canary:g}% after "
                f"{elapsed:.0f} minutes - ready for full rollout",
                None,
            )

        new_split = self.next_traffic_split(deployment)
        if new_split is None:
            return (
                RolloutAction.CONTINUE,
                f"Performance acceptable - holding at {deployment.traffic_split.canary:g}% "
                f"until {strategy.duration:g} minutes have elapsed",
                None,
            )
        return (
            RolloutAction.CONTINUE,
            f"Performance acceptable - advancing canary to {new_split.canary:g}%",
            new_split,
        )

    # -- execution -----------------------------------------------------------

    def execute_rollout_decision(self, decision: RolloutDecision) -> bool:
        """Apply *decision*. Returns False when it was stale and ignored."""
        deployment = self.lifecycle.get(decision.deployment_id)
        if (
            deployment.version != decision.deployment_version
            or deployment.updated_at != decision.deployment_updated_at
        ):
            logger.debug(
                "Ignoring stale %s decision for %s (decision v%d, deployment v%d)",
                decision.action.value,
                decision.deployment_id,
                decision.deployment_version,
                deployment.version,
            )
            return False

        try:
            self._apply(deployment, decision)
        except StaleVersionError as e:
            logger.debug("Ignoring stale decision for %s: %s", decision.deployment_id, e)
            return False

        self.decision_log.append(decision)
        self._metrics.rollout_decisions.add(1, {"action": decision.action.value})

        events = self.events
        events.publish(
            EventType.ROLLOUT_DECISION_EXECUTED,
            decision.deployment_id,
            {
                "action": decision.action.value,
                "reason": decision.reason,
                "decision_id": decision.id,
            },
            message=f"Rollout decision executed: {decision.action.value}",
        )
        for alert in decision.metrics.alerts:
            events.publish(EventType.CANARY_ALERT, decision.deployment_id, {"alert": alert})
        return True

    def _apply(self, deployment: CanaryDeployment, decision: RolloutDecision) -> None:
        lifecycle = self.lifecycle
        dep_id = deployment.id
        expected = deployment.version
        paused = deployment.status == DeploymentStatus.PAUSED

        if decision.action == RolloutAction.ROLLBACK:
            lifecycle.rollback(dep_id, decision.reason, expected_version=expected)
        elif decision.action == RolloutAction.PAUSE:
            if not paused:
                lifecycle.pause(dep_id, expected_version=expected)
        elif decision.action == RolloutAction.CONTINUE:
            if paused:
                expected = lifecycle.resume(dep_id, expected_version=expected).version
            if decision.new_traffic_split is not None:
                lifecycle.update_traffic_split(
                    dep_id, decision.new_traffic_split, expected_version=expected
                )
        elif decision.action == RolloutAction.COMPLETE:
            if paused:
                expected = lifecycle.resume(dep_id, expected_version=expected).version
            lifecycle.complete(dep_id, expected_version=expected)

    # -- monitoring ------------------------------------------------------------

    def run_cycle(self) -> list[RolloutDecision]:
        """Decide and execute for every active deployment.

        A failure on one deployment is logged and does not stop the others.
        """
        executed: list[RolloutDecision] = []
        for deployment in self.lifecycle.list(status=DeploymentStatus.ACTIVE):
            try:
                decision = self.make_rollout_decision(deployment.id)
                if self.execute_rollout_decision(decision):
                    executed.append(decision)
            except UpstreamUnavailableError as e:
                logger.warning(
                    "Skipping deployment %s this cycle, will retry next interval: %s",
                    deployment.id,
                    e,
                )
            except Exception:
                logger.exception("Monitoring error for deployment %s", deployment.id)
        return executed

    def start_monitoring(self, interval_seconds: float | None = None) -> PeriodicTask:
        """Run ``run_cycle`` periodically on a background thread."""
        task = PeriodicTask(
            "canary-rollout-monitor",
            interval_seconds or self.config.monitoring_interval_seconds,
            self.run_cycle,
        )
        return task.start()
