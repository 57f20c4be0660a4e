"""Shared fakes for model-canary tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from model_canary.delivery.models import PerformanceSnapshot
from model_canary.providers import InMemoryModelRegistry, ModelResponse


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class StaticMetricsProvider:
    """Returns preset snapshots keyed by model id; can be told to fail."""

    def __init__(self) -> None:
        self.snapshots: dict[str, PerformanceSnapshot] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, datetime, bool]] = []

    def set(self, model_id: str, **fields) -> None:
        self.snapshots[model_id] = PerformanceSnapshot(**fields)

    def get_metrics(self, model_id: str, window_start: datetime, is_canary: bool):
        self.calls.append((model_id, window_start, is_canary))
        if model_id in self.failing:
            raise ConnectionError(f"metrics backend unreachable for {model_id}")
        return self.snapshots.get(model_id)


class ScriptedInvoker:
    """Answers prompts from a per-model function; raises for failing models."""

    def __init__(self, default: str = "") -> None:
        self.responses: dict[str, object] = {}
        self.failing: set[str] = set()
        self.default = default

    def invoke(self, model_id: str, prompt: str) -> ModelResponse:
        if model_id in self.failing:
            raise TimeoutError("model endpoint timed out")
        answer = self.responses.get(model_id, self.default)
        content = answer(prompt) if callable(answer) else str(answer)
        return ModelResponse(content=content, total_tokens=len(content.split()) * 2)


HEALTHY = dict(
    requests=500,
    success_rate=0.99,
    error_rate=0.01,
    avg_latency=400.0,
    p95_latency=900.0,
    quality_score=0.9,
    avg_cost=0.002,
)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> InMemoryModelRegistry:
    reg = InMemoryModelRegistry()
    for model_id in ("prod-v1", "canary-v2", "canary-v3"):
        reg.register(model_id)
    return reg


@pytest.fixture
def metrics_provider() -> StaticMetricsProvider:
    provider = StaticMetricsProvider()
    provider.set("prod-v1", **HEALTHY)
    provider.set("canary-v2", **HEALTHY)
    provider.set("canary-v3", **HEALTHY)
    return provider


@pytest.fixture
def deployment_config() -> dict:
    return {
        "name": "v2 rollout",
        "production_model_id": "prod-v1",
        "canary_model_id": "canary-v2",
        "traffic_split": {"production": 90, "canary": 10},
        "rollout_strategy": {"type": "linear", "duration": 60, "steps": 10},
        "success_criteria": {"min_requests": 100},
    }


@pytest.fixture
def healthy() -> dict:
    return dict(HEALTHY)


@pytest.fixture
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()
