"""Store abstractions for deployment records, metrics history, decisions
and evaluation history.

Durability is whatever the injected store provides; the in-memory
implementations give read-your-writes consistency within one process and
are used for tests and single-owner embedding.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from model_canary.delivery.models import (
        CanaryDeployment,
        CanaryEvaluation,
        RolloutDecision,
    )
    from model_canary.evals.models import EvaluationResult


@runtime_checkable
class DeploymentStore(Protocol):
    """Keyed deployment records with an optimistic version check."""

    def get(self, deployment_id: str) -> CanaryDeployment | None: ...

    def list(self) -> list[CanaryDeployment]: ...

    def insert(self, deployment: CanaryDeployment) -> None: ...

    def compare_and_set(self, deployment: CanaryDeployment, expected_version: int) -> bool: ...


@runtime_checkable
class CanaryMetricsStore(Protocol):
    def append(self, evaluation: CanaryEvaluation) -> None: ...

    def list(self, deployment_id: str, limit: int | None = None) -> list[CanaryEvaluation]: ...


@runtime_checkable
class DecisionLog(Protocol):
    """Append-only audit trail of executed rollout decisions."""

    def append(self, decision: RolloutDecision) -> None: ...

    def list(self, deployment_id: str, limit: int | None = None) -> list[RolloutDecision]: ...


@runtime_checkable
class EvaluationHistory(Protocol):
    """Append-only per-model evaluation results, oldest first."""

    def extend(self, model_id: str, results: list[EvaluationResult]) -> None: ...

    def list(self, model_id: str, since: datetime | None = None) -> list[EvaluationResult]: ...

    def model_ids(self) -> list[str]: ...


def _tail(items: list, limit: int | None) -> list:
    if limit is None:
        return list(items)
    return list(items[-limit:]) if limit > 0 else []


class InMemoryDeploymentStore:
    """Thread-safe in-memory deployment store.

    Writers publish a fresh tuple snapshot under the lock; readers use the
    snapshot without locking.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, CanaryDeployment] = {}
        self._snapshot: tuple[CanaryDeployment, ...] = ()

    def get(self, deployment_id: str) -> CanaryDeployment | None:
        return self._records.get(deployment_id)

    def list(self) -> list[CanaryDeployment]:
        return list(self._snapshot)

    def insert(self, deployment: CanaryDeployment) -> None:
        with self._lock:
            if deployment.id in self._records:
                raise KeyError(f"Deployment already exists: {deployment.id}")
            self._records[deployment.id] = deployment
            self._snapshot = tuple(self._records.values())

    def compare_and_set(self, deployment: CanaryDeployment, expected_version: int) -> bool:
        """Replace the record only if the stored version still matches."""
        with self._lock:
            current = self._records.get(deployment.id)
            if current is None or current.version != expected_version:
                return False
            self._records[deployment.id] = deployment
            self._snapshot = tuple(self._records.values())
            return True


class InMemoryCanaryMetricsStore:
    """Per-deployment evaluation history, bounded per deployment."""

    def __init__(self, max_per_deployment: int = 1000) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, list[CanaryEvaluation]] = defaultdict(list)
        self._max = max_per_deployment

    def append(self, evaluation: CanaryEvaluation) -> None:
        with self._lock:
            items = self._items[evaluation.deployment_id]
            items.append(evaluation)
            if len(items) > self._max:
                del items[: len(items) - self._max]

    def list(self, deployment_id: str, limit: int | None = None) -> list[CanaryEvaluation]:
        with self._lock:
            return _tail(self._items.get(deployment_id, []), limit)


class InMemoryDecisionLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, list[RolloutDecision]] = defaultdict(list)

    def append(self, decision: RolloutDecision) -> None:
        with self._lock:
            self._items[decision.deployment_id].append(decision)

    def list(self, deployment_id: str, limit: int | None = None) -> list[RolloutDecision]:
        with self._lock:
            return _tail(self._items.get(deployment_id, []), limit)


class InMemoryEvaluationHistory:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, list[EvaluationResult]] = defaultdict(list)

    def extend(self, model_id: str, results: list[EvaluationResult]) -> None:
        with self._lock:
            self._items[model_id].extend(results)

    def list(self, model_id: str, since: datetime | None = None) -> list[EvaluationResult]:
        with self._lock:
            results = list(self._items.get(model_id, []))
        if since is None:
            return results
        return [r for r in results if r.timestamp >= since]

    def model_ids(self) -> list[str]:
        with self._lock:
            return [k for k, v in self._items.items() if v]
