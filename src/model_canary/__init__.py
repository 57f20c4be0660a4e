"""Model Canary: progressive delivery and quality evaluation for inference models.

model-canary gates the rollout of a new model version behind measured
evidence. It routes a controlled share of traffic to a canary, compares it
with production, and advances, pauses, completes or rolls back the rollout:

Core concepts
-------------
* **Canary deployment**: two model versions serving concurrently with a
  traffic split. Its lifecycle is a guarded state machine
  (preparing, active, paused, completed, rolledback, failed) in
  ``model_canary.delivery.lifecycle``.

* **Rollout strategy**: linear, exponential or manual growth of the canary
  share, capped at ``max_traffic_percentage``.

* **Success and rollback criteria**: thresholds on error rate, success
  rate, p95 latency and quality. A rollback breach always wins.

* **Golden datasets and drift**: models are scored against curated
  prompt/answer pairs; the history feeds A/B tests and drift detection in
  ``model_canary.evals``.

Quick start::

    from model_canary import DeploymentLifecycleManager, TrafficRouter
    from model_canary.providers import InMemoryModelRegistry

    registry = InMemoryModelRegistry()
    registry.register("model-v1")
    registry.register("model-v2")
    lifecycle = DeploymentLifecycleManager(registry)
    deployment = lifecycle.create_deployment({
        "name": "v2 rollout",
        "production_model_id": "model-v1",
        "canary_model_id": "model-v2",
    })
    lifecycle.start(deployment.id)
"""

from model_canary.delivery import (
    CanaryDeployment,
    CanaryDeploymentConfig,
    DeploymentLifecycleManager,
    DeploymentStatus,
    PerformanceEvaluator,
    RolloutDecisionEngine,
    TrafficRouter,
    TrafficSplit,
)
from model_canary.errors import (
    CanaryError,
    DeploymentValidationError,
    InvalidStateTransitionError,
    NotFoundError,
    StaleVersionError,
    UpstreamUnavailableError,
)
from model_canary.evals import ModelEvaluationFramework
from model_canary.events import EventBus, EventType

__all__ = [
    "CanaryDeployment",
    "CanaryDeploymentConfig",
    "CanaryError",
    "DeploymentLifecycleManager",
    "DeploymentStatus",
    "DeploymentValidationError",
    "EventBus",
    "EventType",
    "InvalidStateTransitionError",
    "ModelEvaluationFramework",
    "NotFoundError",
    "PerformanceEvaluator",
    "RolloutDecisionEngine",
    "StaleVersionError",
    "TrafficRouter",
    "TrafficSplit",
    "UpstreamUnavailableError",
]

__version__ = "0.1.0"
