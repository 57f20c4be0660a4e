"""Canary deployment data model.

Deployments are immutable pydantic values: every lifecycle change produces
a new copy with an incremented ``version``, which the store uses for
compare-and-set.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def round_share(value: float, limit: float = 100.0) -> float:
    """Round a percentage to 4 places; at or past *limit* it is exactly *limit*."""
    if value >= limit:
        return limit
    return min(round(value, 4), limit)


class DeploymentStatus(str, Enum):
    """Lifecycle status of a canary deployment."""

    PREPARING = "preparing"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ROLLED_BACK = "rolledback"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.COMPLETED, DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED)


class RolloutStrategyType(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    MANUAL = "manual"


class Recommendation(str, Enum):
    PROCEED = "proceed"
    PAUSE = "pause"
    ROLLBACK = "rollback"


class RolloutAction(str, Enum):
    CONTINUE = "continue"
    PAUSE = "pause"
    ROLLBACK = "rollback"
    COMPLETE = "complete"


# --- Configuration ---


class TrafficSplit(BaseModel):
    """Percentage allocation between production and canary."""

    model_config = ConfigDict(frozen=True)

    production: float = Field(ge=0.0, le=100.0)
    canary: float = Field(ge=0.0, le=100.0)

    @model_validator(mode="after")
    def _sums_to_100(self) -> TrafficSplit:
        if not math.isclose(self.production + self.canary, 100.0, abs_tol=1e-6):
            raise ValueError(
                f"traffic split must sum to 100 (got {self.production} + {self.canary})"
            )
        return self

    @classmethod
    def for_canary(cls, canary: float, limit: float = 100.0) -> TrafficSplit:
        canary = round_share(canary, limit)
        return cls(production=100.0 - canary, canary=canary)


class RolloutStrategy(BaseModel):
    """Schedule by which the canary share grows."""

    type: RolloutStrategyType = RolloutStrategyType.LINEAR
    duration: float = Field(default=60.0, ge=0.0, description="Minutes")
    steps: int | None = Field(default=None, ge=1)
    max_traffic_percentage: float = Field(default=100.0, gt=0.0, le=100.0)


class SuccessCriteria(BaseModel):
    """Thresholds that must hold before the rollout may advance."""

    min_requests: int = Field(default=100, ge=0)
    max_error_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    min_success_rate: float = Field(default=0.95, ge=0.0, le=1.0)
    max_latency_p95: float = Field(default=2000.0, ge=0.0, description="Milliseconds")
    min_quality_score: float = Field(default=0.8, ge=0.0, le=1.0)
    evaluation_window: float = Field(default=30.0, gt=0.0, description="Minutes")


class AlertThresholds(BaseModel):
    """Canary-vs-production deltas that raise an alert without forcing rollback."""

    error_spike: float = Field(default=0.2, ge=0.0)
    latency_spike: float = Field(default=5000.0, ge=0.0)
    quality_drop: float = Field(default=0.3, ge=0.0)


class RollbackCriteria(BaseModel):
    """Thresholds whose breach forces reversion to production-only traffic."""

    max_error_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    max_latency_p95: float = Field(default=3000.0, ge=0.0)
    min_success_rate: float = Field(default=0.9, ge=0.0, le=1.0)
    min_quality_score: float = Field(default=0.7, ge=0.0, le=1.0)
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)


class CanaryDeploymentConfig(BaseModel):
    """Everything a caller supplies to create a deployment.

    Can be serialized to/from YAML for config-as-code workflows.
    """

    name: str
    description: str = ""
    created_by: str = ""
    production_model_id: str = Field(min_length=1)
    canary_model_id: str = Field(min_length=1)
    traffic_split: TrafficSplit = Field(
        default_factory=lambda: TrafficSplit(production=90.0, canary=10.0)
    )
    rollout_strategy: RolloutStrategy = Field(default_factory=RolloutStrategy)
    success_criteria: SuccessCriteria = Field(default_factory=SuccessCriteria)
    rollback_criteria: RollbackCriteria = Field(default_factory=RollbackCriteria)

    @model_validator(mode="after")
    def _check_consistency(self) -> CanaryDeploymentConfig:
        if self.production_model_id == self.canary_model_id:
            raise ValueError("production and canary model ids must differ")
        if self.traffic_split.canary > self.rollout_strategy.max_traffic_percentage:
            raise ValueError(
                f"canary share {self.traffic_split.canary} exceeds "
                f"max_traffic_percentage {self.rollout_strategy.max_traffic_percentage}"
            )
        return self

    @classmethod
    def from_yaml(cls, path: str | Path) -> CanaryDeploymentConfig:
        """Load a deployment config from a YAML file."""
        with open(Path(path), encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data)

    def to_yaml(self, path: str | Path) -> None:
        """Save this config to a YAML file."""
        with open(Path(path), "w", encoding="utf-8") as f:
            yaml.dump(self.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)


class CanaryDeployment(CanaryDeploymentConfig):
    """A deployment record. Mutated only through the lifecycle manager."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"canary-{uuid.uuid4().hex[:12]}")
    status: DeploymentStatus = DeploymentStatus.PREPARING
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rollback_reason: str = ""

    @property
    def canary_percentage(self) -> float:
        return self.traffic_split.canary

    def to_config(self) -> CanaryDeploymentConfig:
        return CanaryDeploymentConfig.model_validate(
            self.model_dump(include=set(CanaryDeploymentConfig.model_fields))
        )


# --- Metrics ---


class PerformanceSnapshot(BaseModel):
    """Windowed aggregate performance of one model."""

    model_config = ConfigDict(frozen=True)

    requests: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    avg_latency: float = Field(default=0.0, ge=0.0)
    p95_latency: float = Field(default=0.0, ge=0.0)
    quality_score: float = Field(default=0.0, ge=0.0, le=1.0)
    avg_cost: float = Field(default=0.0, ge=0.0)

    @classmethod
    def empty(cls) -> PerformanceSnapshot:
        return cls()


class MetricsComparison(BaseModel):
    """Canary relative to production, with a raw recommendation."""

    model_config = ConfigDict(frozen=True)

    performance_delta: float = 0.0
    quality_delta: float = 0.0
    cost_delta: float = 0.0
    recommendation: Recommendation = Recommendation.PAUSE
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasons: list[str] = Field(default_factory=list)


class CanaryEvaluation(BaseModel):
    """One evaluation cycle for a deployment."""

    model_config = ConfigDict(frozen=True)

    deployment_id: str
    time_window: str
    window_start: datetime
    production: PerformanceSnapshot
    canary: PerformanceSnapshot
    comparison: MetricsComparison
    alerts: list[str] = Field(default_factory=list)
    evaluated_at: datetime = Field(default_factory=utcnow)


class RolloutDecision(BaseModel):
    """An immutable rollout decision; also the audit record once executed."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    deployment_id: str
    action: RolloutAction
    reason: str
    metrics: CanaryEvaluation
    new_traffic_split: TrafficSplit | None = None
    deployment_version: int
    deployment_updated_at: datetime
    timestamp: datetime = Field(default_factory=utcnow)
    next_evaluation_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class DeploymentStatusReport(BaseModel):
    """Snapshot returned by ``DeploymentLifecycleManager.get_status``."""

    deployment: CanaryDeployment
    current_metrics: CanaryEvaluation | None = None
    metrics_history: list[CanaryEvaluation] = Field(default_factory=list)
    decisions: list[RolloutDecision] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
