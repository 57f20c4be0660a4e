"""Tests for the deployment lifecycle state machine."""

import threading
import time

import pytest

from model_canary.delivery.lifecycle import DeploymentLifecycleManager
from model_canary.delivery.models import DeploymentStatus, TrafficSplit
from model_canary.errors import (
    CanaryError,
    DeploymentValidationError,
    InvalidStateTransitionError,
    NotFoundError,
    StaleVersionError,
    UpstreamUnavailableError,
)
from model_canary.events import EventBus, EventType


@pytest.fixture
def lifecycle(registry, clock) -> DeploymentLifecycleManager:
    return DeploymentLifecycleManager(registry, clock=clock)


def _in_state(lifecycle, config, state: DeploymentStatus):
    d = lifecycle.create_deployment(config)
    if state == DeploymentStatus.PREPARING:
        return d
    if state == DeploymentStatus.ROLLED_BACK:
        return lifecycle.rollback(d.id, "setup")
    if state == DeploymentStatus.FAILED:
        return lifecycle.mark_failed(d.id, "setup")
    d = lifecycle.start(d.id)
    if state == DeploymentStatus.PAUSED:
        return lifecycle.pause(d.id)
    if state == DeploymentStatus.COMPLETED:
        return lifecycle.complete(d.id)
    return d


OPERATIONS = {
    "start": lambda lc, dep_id: lc.start(dep_id),
    "pause": lambda lc, dep_id: lc.pause(dep_id),
    "resume": lambda lc, dep_id: lc.resume(dep_id),
    "complete": lambda lc, dep_id: lc.complete(dep_id),
    "rollback": lambda lc, dep_id: lc.rollback(dep_id, "test"),
    "fail": lambda lc, dep_id: lc.mark_failed(dep_id, "test"),
}

ALLOWED = {
    (DeploymentStatus.PREPARING, "start"): DeploymentStatus.ACTIVE,
    (DeploymentStatus.ACTIVE, "pause"): DeploymentStatus.PAUSED,
    (DeploymentStatus.PAUSED, "resume"): DeploymentStatus.ACTIVE,
    (DeploymentStatus.ACTIVE, "complete"): DeploymentStatus.COMPLETED,
    (DeploymentStatus.PREPARING, "rollback"): DeploymentStatus.ROLLED_BACK,
    (DeploymentStatus.ACTIVE, "rollback"): DeploymentStatus.ROLLED_BACK,
    (DeploymentStatus.PAUSED, "rollback"): DeploymentStatus.ROLLED_BACK,
    (DeploymentStatus.PREPARING, "fail"): DeploymentStatus.FAILED,
    (DeploymentStatus.ACTIVE, "fail"): DeploymentStatus.FAILED,
    (DeploymentStatus.PAUSED, "fail"): DeploymentStatus.FAILED,
}


class TestCreateDeployment:
    def test_created_in_preparing(self, lifecycle, deployment_config) -> None:
        d = lifecycle.create_deployment(deployment_config)
        assert d.status == DeploymentStatus.PREPARING
        assert d.version == 1
        assert d.created_at == d.updated_at
        assert d.id.startswith("canary-")
        assert lifecycle.get(d.id) == d

    def test_split_must_sum_to_100(self, lifecycle, deployment_config) -> None:
        deployment_config["traffic_split"] = {"production": 80, "canary": 10}
        with pytest.raises(DeploymentValidationError) as exc:
            lifecycle.create_deployment(deployment_config)
        assert any("sum to 100" in e for e in exc.value.errors)
        assert lifecycle.list() == []

    def test_model_ids_must_differ(self, lifecycle, deployment_config) -> None:
        deployment_config["canary_model_id"] = "prod-v1"
        with pytest.raises(DeploymentValidationError):
            lifecycle.create_deployment(deployment_config)

    def test_unknown_model_rejected(self, lifecycle, deployment_config) -> None:
        deployment_config["canary_model_id"] = "ghost"
        with pytest.raises(DeploymentValidationError) as exc:
            lifecycle.create_deployment(deployment_config)
        assert exc.value.errors == ["canary model not found: ghost"]
        assert lifecycle.list() == []

    def test_canary_above_max_share_rejected(self, lifecycle, deployment_config) -> None:
        deployment_config["rollout_strategy"]["max_traffic_percentage"] = 5
        with pytest.raises(DeploymentValidationError):
            lifecycle.create_deployment(deployment_config)

    def test_validation_error_is_value_error(self, lifecycle, deployment_config) -> None:
        deployment_config["rollout_strategy"]["type"] = "bluegreen"
        with pytest.raises(ValueError):
            lifecycle.create_deployment(deployment_config)

    def test_registry_failure_is_upstream_error(self, clock, deployment_config) -> None:
        class BrokenRegistry:
            def get_model(self, model_id):
                raise ConnectionError("registry down")

            def list_active_models(self):
                return []

        lifecycle = DeploymentLifecycleManager(BrokenRegistry(), clock=clock)
        with pytest.raises(UpstreamUnavailableError) as exc:
            lifecycle.create_deployment(deployment_config)
        assert exc.value.collaborator == "model registry"
        assert lifecycle.list() == []

    def test_emits_created_event(self, lifecycle, deployment_config) -> None:
        sub = lifecycle.events.subscribe({EventType.DEPLOYMENT_CREATED})
        d = lifecycle.create_deployment(deployment_config)
        event = sub.get(timeout=1)
        assert event.subject_id == d.id
        assert event.details["canary_model_id"] == "canary-v2"


class TestTransitionGrid:
    """Every (state, operation) pair either succeeds or is rejected."""

    @pytest.mark.parametrize("state", list(DeploymentStatus))
    @pytest.mark.parametrize("operation", list(OPERATIONS))
    def test_pair(self, lifecycle, deployment_config, state, operation) -> None:
        before = _in_state(lifecycle, deployment_config, state)
        assert before.status == state

        target = ALLOWED.get((state, operation))
        if target is None:
            with pytest.raises(InvalidStateTransitionError) as exc:
                OPERATIONS[operation](lifecycle, before.id)
            assert exc.value.current == state.value
            assert exc.value.operation == operation
            assert lifecycle.get(before.id) == before
        else:
            after = OPERATIONS[operation](lifecycle, before.id)
            assert after.status == target
            assert after.updated_at > before.updated_at
            assert after.version == before.version + 1


class TestTransitions:
    def test_start_stamps_started_at(self, lifecycle, deployment_config) -> None:
        d = lifecycle.create_deployment(deployment_config)
        started = lifecycle.start(d.id)
        assert started.started_at is not None
        assert started.completed_at is None

    def test_complete_keeps_split(self, lifecycle, deployment_config) -> None:
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)
        done = lifecycle.complete(d.id)
        assert done.completed_at is not None
        assert done.traffic_split == d.traffic_split

    def test_rollback_forces_production_only(self, lifecycle, deployment_config) -> None:
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)
        sub = lifecycle.events.subscribe({EventType.DEPLOYMENT_ROLLED_BACK})
        rolled = lifecycle.rollback(d.id, "error spike")
        assert rolled.traffic_split == TrafficSplit(production=100, canary=0)
        assert rolled.rollback_reason == "error spike"
        assert rolled.completed_at is not None
        assert sub.get(timeout=1).details["reason"] == "error spike"

    @pytest.mark.parametrize("operation", list(OPERATIONS))
    def test_rolled_back_is_terminal(self, lifecycle, deployment_config, operation) -> None:
        d = _in_state(lifecycle, deployment_config, DeploymentStatus.ROLLED_BACK)
        with pytest.raises(InvalidStateTransitionError):
            OPERATIONS[operation](lifecycle, d.id)

    def test_error_reports_allowed_states(self, lifecycle, deployment_config) -> None:
        d = lifecycle.create_deployment(deployment_config)
        with pytest.raises(InvalidStateTransitionError) as exc:
            lifecycle.pause(d.id)
        assert exc.value.allowed == ["active"]
        assert "preparing" in str(exc.value)

    def test_unknown_id(self, lifecycle) -> None:
        with pytest.raises(NotFoundError) as exc:
            lifecycle.start("canary-missing")
        assert isinstance(exc.value, KeyError)
        assert isinstance(exc.value, CanaryError)

    def test_timestamps_advance_with_frozen_clock(self, lifecycle, deployment_config) -> None:
        d = lifecycle.create_deployment(deployment_config)
        a = lifecycle.start(d.id)
        b = lifecycle.pause(d.id)
        c = lifecycle.resume(d.id)
        assert d.updated_at < a.updated_at < b.updated_at < c.updated_at

    def test_events_are_ordered(self, lifecycle, deployment_config) -> None:
        sub = lifecycle.events.subscribe()
        d = lifecycle.create_deployment(deployment_config)
        lifecycle.start(d.id)
        lifecycle.pause(d.id)
        lifecycle.resume(d.id)
        lifecycle.rollback(d.id, "manual")
        events = sub.drain()
        assert [e.event_type for e in events] == [
            EventType.DEPLOYMENT_CREATED,
            EventType.DEPLOYMENT_STARTED,
            EventType.DEPLOYMENT_PAUSED,
            EventType.DEPLOYMENT_RESUMED,
            EventType.DEPLOYMENT_ROLLED_BACK,
        ]
        sequences = [e.sequence for e in events]
        assert sequences == sorted(sequences)


class TestOptimisticVersion:
    def test_expected_version_mismatch(self, lifecycle, deployment_config) -> None:
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)
        with pytest.raises(StaleVersionError) as exc:
            lifecycle.pause(d.id, expected_version=d.version - 1)
        assert exc.value.actual == d.version
        assert lifecycle.get(d.id) == d

    def test_expected_version_match(self, lifecycle, deployment_config) -> None:
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)
        paused = lifecycle.pause(d.id, expected_version=d.version)
        assert paused.status == DeploymentStatus.PAUSED

    def test_concurrent_pauses_one_wins(self, lifecycle, deployment_config) -> None:
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)
        barrier = threading.Barrier(8)
        outcomes: list[str] = []
        guard = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                lifecycle.pause(d.id)
                result = "ok"
            except InvalidStateTransitionError:
                result = "rejected"
            with guard:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("rejected") == 7
        assert lifecycle.get(d.id).version == d.version + 1

    def test_rollback_and_complete_race(self, lifecycle, deployment_config) -> None:
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)
        barrier = threading.Barrier(2)
        successes: list[str] = []

        def run(name: str, op) -> None:
            barrier.wait()
            try:
                op()
                successes.append(name)
            except InvalidStateTransitionError:
                pass

        threads = [
            threading.Thread(target=run, args=("rollback", lambda: lifecycle.rollback(d.id, "race"))),
            threading.Thread(target=run, args=("complete", lambda: lifecycle.complete(d.id))),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        final = lifecycle.get(d.id)
        expected = (
            DeploymentStatus.ROLLED_BACK if successes[0] == "rollback" else DeploymentStatus.COMPLETED
        )
        assert final.status == expected

    def test_events_follow_commit_order_under_contention(
        self, registry, clock, deployment_config
    ) -> None:
        pause_committed = threading.Event()

        class SlowPauseBus(EventBus):
            def publish(self, event_type, *args, **kwargs):
                if event_type == EventType.DEPLOYMENT_PAUSED:
                    pause_committed.set()
                    time.sleep(0.1)
                return super().publish(event_type, *args, **kwargs)

        lifecycle = DeploymentLifecycleManager(registry, events=SlowPauseBus(), clock=clock)
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)

        pauser = threading.Thread(target=lifecycle.pause, args=(d.id,))
        pauser.start()
        assert pause_committed.wait(timeout=5)
        lifecycle.resume(d.id)
        pauser.join(timeout=5)

        types = [e.event_type for e in lifecycle.events.history() if e.subject_id == d.id]
        assert types[-2:] == [EventType.DEPLOYMENT_PAUSED, EventType.DEPLOYMENT_RESUMED]
        assert lifecycle.get(d.id).status == DeploymentStatus.ACTIVE


class TestTrafficSplitUpdate:
    def test_update(self, lifecycle, deployment_config) -> None:
        d = lifecycle.start(lifecycle.create_deployment(deployment_config).id)
        updated = lifecycle.update_traffic_split(d.id, {"production": 75, "canary": 25})
        assert updated.traffic_split.canary == 25
        assert updated.traffic_split.production + updated.traffic_split.canary == 100

    def test_bad_sum(self, lifecycle, deployment_config) -> None:
        d = lifecycle.create_deployment(deployment_config)
        with pytest.raises(DeploymentValidationError):
            lifecycle.update_traffic_split(d.id, {"production": 50, "canary": 25})

    def test_above_max_share(self, lifecycle, deployment_config) -> None:
        deployment_config["rollout_strategy"]["max_traffic_percentage"] = 50
        d = lifecycle.create_deployment(deployment_config)
        with pytest.raises(DeploymentValidationError):
            lifecycle.update_traffic_split(d.id, TrafficSplit.for_canary(60))
        assert lifecycle.get(d.id) == d

    def test_terminal_rejected(self, lifecycle, deployment_config) -> None:
        d = _in_state(lifecycle, deployment_config, DeploymentStatus.COMPLETED)
        with pytest.raises(InvalidStateTransitionError):
            lifecycle.update_traffic_split(d.id, TrafficSplit.for_canary(20))


class TestQueries:
    def test_list_newest_first_and_filters(self, lifecycle, deployment_config, clock) -> None:
        first = lifecycle.create_deployment(deployment_config)
        clock.advance(minutes=1)
        deployment_config["canary_model_id"] = "canary-v3"
        second = lifecycle.create_deployment(deployment_config)
        lifecycle.start(second.id)

        assert [d.id for d in lifecycle.list()] == [second.id, first.id]
        assert [d.id for d in lifecycle.list(status="active")] == [second.id]
        assert [d.id for d in lifecycle.list(canary_model_id="canary-v2")] == [first.id]
        assert len(lifecycle.list(production_model_id="prod-v1")) == 2

    def test_status_report_for_preparing(self, lifecycle, deployment_config) -> None:
        d = lifecycle.create_deployment(deployment_config)
        report = lifecycle.get_status(d.id)
        assert report.deployment == d
        assert report.current_metrics is None
        assert report.recommendations == ["Start deployment to begin collecting metrics"]

    def test_to_config_round_trip(self, lifecycle, deployment_config) -> None:
        d = lifecycle.create_deployment(deployment_config)
        config = d.to_config()
        assert config.canary_model_id == "canary-v2"
        assert config.traffic_split == d.traffic_split
