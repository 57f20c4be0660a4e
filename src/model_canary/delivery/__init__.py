"""Progressive delivery: canary lifecycle, traffic routing and rollout decisions."""

from model_canary.delivery.decision import (
    DecisionEngineConfig,
    RolloutDecisionEngine,
    next_canary_percentage,
)
from model_canary.delivery.evaluator import PerformanceEvaluator, determine_recommendation
from model_canary.delivery.lifecycle import DeploymentLifecycleManager
from model_canary.delivery.models import (
    AlertThresholds,
    CanaryDeployment,
    CanaryDeploymentConfig,
    CanaryEvaluation,
    DeploymentStatus,
    DeploymentStatusReport,
    MetricsComparison,
    PerformanceSnapshot,
    Recommendation,
    RollbackCriteria,
    RolloutAction,
    RolloutDecision,
    RolloutStrategy,
    RolloutStrategyType,
    SuccessCriteria,
    TrafficSplit,
)
from model_canary.delivery.router import RouteDecision, RouteRequest, TrafficRouter

__all__ = [
    "AlertThresholds",
    "CanaryDeployment",
    "CanaryDeploymentConfig",
    "CanaryEvaluation",
    "DecisionEngineConfig",
    "DeploymentLifecycleManager",
    "DeploymentStatus",
    "DeploymentStatusReport",
    "MetricsComparison",
    "PerformanceEvaluator",
    "PerformanceSnapshot",
    "Recommendation",
    "RollbackCriteria",
    "RolloutAction",
    "RolloutDecision",
    "RolloutDecisionEngine",
    "RolloutStrategy",
    "RolloutStrategyType",
    "RouteDecision",
    "RouteRequest",
    "SuccessCriteria",
    "TrafficRouter",
    "TrafficSplit",
    "determine_recommendation",
    "next_canary_percentage",
]
