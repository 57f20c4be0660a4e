"""Tests for the rollout decision engine."""

import pytest

from model_canary.delivery.decision import (
    DecisionEngineConfig,
    RolloutDecisionEngine,
    next_canary_percentage,
)
from model_canary.delivery.evaluator import PerformanceEvaluator
from model_canary.delivery.lifecycle import DeploymentLifecycleManager
from model_canary.delivery.models import (
    DeploymentStatus,
    RolloutAction,
    RolloutStrategy,
    TrafficSplit,
)
from model_canary.errors import InvalidStateTransitionError
from model_canary.events import EventType
from model_canary.scheduling import PeriodicTask


@pytest.fixture
def lifecycle(registry, clock) -> DeploymentLifecycleManager:
    return DeploymentLifecycleManager(registry, clock=clock)


@pytest.fixture
def engine(lifecycle, metrics_provider, clock) -> RolloutDecisionEngine:
    evaluator = PerformanceEvaluator(
        lifecycle.store, metrics_provider, metrics_store=lifecycle.metrics_store, clock=clock
    )
    return RolloutDecisionEngine(lifecycle, evaluator, clock=clock)


def _active(lifecycle, config):
    return lifecycle.start(lifecycle.create_deployment(config).id)


class TestNextCanaryPercentage:
    def test_linear_uses_steps(self) -> None:
        strategy = RolloutStrategy(type="linear", steps=4)
        assert next_canary_percentage(strategy, 10) == pytest.approx(35)

    def test_linear_default_steps(self) -> None:
        strategy = RolloutStrategy(type="linear", max_traffic_percentage=50)
        assert next_canary_percentage(strategy, 10) == pytest.approx(15)

    def test_exponential_doubles(self) -> None:
        strategy = RolloutStrategy(type="exponential")
        assert next_canary_percentage(strategy, 10) == 20

    def test_exponential_seeds_from_zero(self) -> None:
        strategy = RolloutStrategy(type="exponential")
        assert next_canary_percentage(strategy, 0) == 5
        config = DecisionEngineConfig(exponential_seed_percentage=1)
        assert next_canary_percentage(strategy, 0, config) == 1

    def test_capped_at_max(self) -> None:
        strategy = RolloutStrategy(type="exponential", max_traffic_percentage=50)
        assert next_canary_percentage(strategy, 40) == 50
        assert next_canary_percentage(strategy, 50) is None

    def test_manual_holds(self) -> None:
        assert next_canary_percentage(RolloutStrategy(type="manual"), 10) is None

    @pytest.mark.parametrize("limit", [12.34563, 12.34567])
    def test_rounding_lands_exactly_on_cap(self, limit) -> None:
        strategy = RolloutStrategy(type="linear", steps=1, max_traffic_percentage=limit)
        assert next_canary_percentage(strategy, 10) == limit
        assert next_canary_percentage(strategy, limit) is None
        assert TrafficSplit.for_canary(limit + 0.00004, limit).canary == limit


class TestMakeDecision:
    def test_proceed_advances_split(self, engine, lifecycle, deployment_config) -> None:
        d = _active(lifecycle, deployment_config)
        decision = engine.make_rollout_decision(d.id)
        assert decision.action == RolloutAction.CONTINUE
        assert decision.new_traffic_split == TrafficSplit(production=80, canary=20)
        assert decision.deployment_version == d.version
        assert decision.deployment_updated_at == d.updated_at
        assert decision.next_evaluation_time > decision.timestamp

    def test_insufficient_sample_pauses(self, engine, lifecycle, deployment_config, metrics_provider, healthy) -> None:
        metrics_provider.set("canary-v2", **{**healthy, "requests": 50})
        d = _active(lifecycle, deployment_config)
        decision = engine.make_rollout_decision(d.id)
        assert decision.action == RolloutAction.PAUSE
        assert "insufficient sample" in decision.reason

    def test_breach_rolls_back(self, engine, lifecycle, deployment_config, metrics_provider, healthy) -> None:
        metrics_provider.set("canary-v2", **{**healthy, "error_rate": 0.4})
        d = _active(lifecycle, deployment_config)
        decision = engine.make_rollout_decision(d.id)
        assert decision.action == RolloutAction.ROLLBACK
        assert "error rate" in decision.reason

    def test_complete_at_max_after_duration(self, engine, lifecycle, deployment_config, clock) -> None:
        deployment_config["traffic_split"] = {"production": 0, "canary": 100}
        d = _active(lifecycle, deployment_config)
        clock.advance(minutes=61)
        assert engine.make_rollout_decision(d.id).action == RolloutAction.COMPLETE

    def test_holds_at_max_before_duration(self, engine, lifecycle, deployment_config, clock) -> None:
        deployment_config["traffic_split"] = {"production": 0, "canary": 100}
        d = _active(lifecycle, deployment_config)
        clock.advance(minutes=30)
        decision = engine.make_rollout_decision(d.id)
        assert decision.action == RolloutAction.CONTINUE
        assert decision.new_traffic_split is None

    def test_duration_alone_does_not_complete(self, engine, lifecycle, deployment_config, clock) -> None:
        d = _active(lifecycle, deployment_config)
        clock.advance(minutes=600)
        assert engine.make_rollout_decision(d.id).action == RolloutAction.CONTINUE

    def test_manual_never_completes(self, engine, lifecycle, deployment_config, clock) -> None:
        deployment_config["rollout_strategy"] = {"type": "manual"}
        deployment_config["traffic_split"] = {"production": 0, "canary": 100}
        d = _active(lifecycle, deployment_config)
        clock.advance(minutes=600)
        decision = engine.make_rollout_decision(d.id)
        assert decision.action == RolloutAction.CONTINUE
        assert decision.new_traffic_split is None

    @pytest.mark.parametrize("state", ["preparing", "completed", "rolledback"])
    def test_requires_active_or_paused(self, engine, lifecycle, deployment_config, state) -> None:
        d = lifecycle.create_deployment(deployment_config)
        if state == "completed":
            lifecycle.complete(lifecycle.start(d.id).id)
        elif state == "rolledback":
            lifecycle.rollback(d.id, "test")
        with pytest.raises(InvalidStateTransitionError):
            engine.make_rollout_decision(d.id)


class TestExecuteDecision:
    def test_continue_persists_split(self, engine, lifecycle, deployment_config) -> None:
        d = _active(lifecycle, deployment_config)
        sub = lifecycle.events.subscribe({EventType.ROLLOUT_DECISION_EXECUTED})
        decision = engine.make_rollout_decision(d.id)

        assert engine.execute_rollout_decision(decision) is True
        updated = lifecycle.get(d.id)
        assert updated.traffic_split.canary == 20
        assert updated.traffic_split.production + updated.traffic_split.canary == 100
        assert engine.decision_log.list(d.id) == [decision]
        assert sub.get(timeout=1).details["action"] == "continue"

    def test_pause(self, engine, lifecycle, deployment_config, metrics_provider, healthy) -> None:
        metrics_provider.set("canary-v2", **{**healthy, "requests": 50})
        d = _active(lifecycle, deployment_config)
        assert engine.execute_rollout_decision(engine.make_rollout_decision(d.id))
        assert lifecycle.get(d.id).status == DeploymentStatus.PAUSED

    def test_pause_when_already_paused_is_noop(self, engine, lifecycle, deployment_config, metrics_provider, healthy) -> None:
        metrics_provider.set("canary-v2", **{**healthy, "requests": 50})
        d = lifecycle.pause(_active(lifecycle, deployment_config).id)
        assert engine.execute_rollout_decision(engine.make_rollout_decision(d.id))
        after = lifecycle.get(d.id)
        assert after.status == DeploymentStatus.PAUSED
        assert after.version == d.version

    def test_continue_resumes_paused(self, engine, lifecycle, deployment_config) -> None:
        d = lifecycle.pause(_active(lifecycle, deployment_config).id)
        assert engine.execute_rollout_decision(engine.make_rollout_decision(d.id))
        after = lifecycle.get(d.id)
        assert after.status == DeploymentStatus.ACTIVE
        assert after.traffic_split.canary == 20

    def test_rollback(self, engine, lifecycle, deployment_config, metrics_provider, healthy) -> None:
        metrics_provider.set("canary-v2", **{**healthy, "error_rate": 0.4})
        d = _active(lifecycle, deployment_config)
        assert engine.execute_rollout_decision(engine.make_rollout_decision(d.id))
        after = lifecycle.get(d.id)
        assert after.status == DeploymentStatus.ROLLED_BACK
        assert after.traffic_split.canary == 0
        assert "error rate" in after.rollback_reason

    def test_complete(self, engine, lifecycle, deployment_config, clock) -> None:
        deployment_config["traffic_split"] = {"production": 0, "canary": 100}
        d = _active(lifecycle, deployment_config)
        clock.advance(minutes=61)
        assert engine.execute_rollout_decision(engine.make_rollout_decision(d.id))
        assert lifecycle.get(d.id).status == DeploymentStatus.COMPLETED

    @pytest.mark.parametrize("limit", [12.34563, 12.34567])
    def test_unrounded_cap_completes(self, engine, lifecycle, deployment_config, clock, limit) -> None:
        deployment_config["rollout_strategy"] = {
            "type": "linear",
            "duration": 60,
            "steps": 1,
            "max_traffic_percentage": limit,
        }
        d = _active(lifecycle, deployment_config)

        for _ in range(5):
            clock.advance(minutes=61)
            engine.execute_rollout_decision(engine.make_rollout_decision(d.id))
            if lifecycle.get(d.id).status != DeploymentStatus.ACTIVE:
                break

        final = lifecycle.get(d.id)
        assert final.status == DeploymentStatus.COMPLETED
        assert final.traffic_split.canary == limit

    def test_stale_decision_is_ignored(self, engine, lifecycle, deployment_config) -> None:
        d = _active(lifecycle, deployment_config)
        decision = engine.make_rollout_decision(d.id)
        paused = lifecycle.pause(d.id)

        assert engine.execute_rollout_decision(decision) is False
        assert lifecycle.get(d.id) == paused
        assert engine.decision_log.list(d.id) == []

    def test_alerts_published(self, engine, lifecycle, deployment_config, metrics_provider, healthy) -> None:
        metrics_provider.set("canary-v2", **{**healthy, "quality_score": 0.55})
        d = _active(lifecycle, deployment_config)
        sub = lifecycle.events.subscribe({EventType.CANARY_ALERT})
        engine.execute_rollout_decision(engine.make_rollout_decision(d.id))
        alerts = sub.drain()
        assert len(alerts) == 1
        assert alerts[0].details["alert"].startswith("quality drop")


class TestMonitoring:
    def test_run_cycle_isolates_failures(self, engine, lifecycle, deployment_config, metrics_provider) -> None:
        healthy_dep = _active(lifecycle, deployment_config)
        deployment_config["canary_model_id"] = "canary-v3"
        broken_dep = _active(lifecycle, deployment_config)
        metrics_provider.failing.add("canary-v3")

        executed = engine.run_cycle()

        assert [d.deployment_id for d in executed] == [healthy_dep.id]
        assert lifecycle.get(healthy_dep.id).traffic_split.canary == 20
        assert lifecycle.get(broken_dep.id) == broken_dep

    def test_run_cycle_skips_non_active(self, engine, lifecycle, deployment_config) -> None:
        d = lifecycle.pause(_active(lifecycle, deployment_config).id)
        assert engine.run_cycle() == []
        assert lifecycle.get(d.id) == d

    def test_start_monitoring(self, engine) -> None:
        task = engine.start_monitoring(interval_seconds=3600)
        try:
            assert isinstance(task, PeriodicTask)
            assert task.is_running
        finally:
            task.cancel()
            task.join(timeout=1)
        assert task.cancelled
