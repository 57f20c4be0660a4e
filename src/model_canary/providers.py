"""External collaborators and plugin discovery.

The model registry, metrics provider and model invoker are protocols; the
rollout and evaluation components never talk to real infrastructure
directly. Scorer implementations can be swapped in by installed packages
through entry points.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Type, runtime_checkable

if TYPE_CHECKING:
    from model_canary.delivery.models import PerformanceSnapshot

logger = logging.getLogger(__name__)


@dataclass
class ModelInfo:
    """Registry view of a model."""

    id: str
    name: str = ""
    status: str = "active"  # active, canary, deprecated
    agent_types: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """Result of invoking a model: content plus token usage."""

    content: str
    total_tokens: int = 0


@runtime_checkable
class ModelRegistry(Protocol):
    def get_model(self, model_id: str) -> ModelInfo | None: ...

    def list_active_models(self) -> list[ModelInfo]: ...


@runtime_checkable
class MetricsProvider(Protocol):
    """Windowed aggregate performance per model.

    Must return a zero-valued snapshot rather than raising when the model
    served no traffic in the window.
    """

    def get_metrics(
        self, model_id: str, window_start: datetime, is_canary: bool
    ) -> PerformanceSnapshot: ...


@runtime_checkable
class ModelInvoker(Protocol):
    def invoke(self, model_id: str, prompt: str) -> ModelResponse: ...


class InMemoryModelRegistry:
    """Dict-backed registry for tests and single-process embedding."""

    def __init__(self, models: list[ModelInfo] | None = None) -> None:
        self._lock = threading.Lock()
        self._models: dict[str, ModelInfo] = {m.id: m for m in (models or [])}

    def register(self, model: ModelInfo | str) -> ModelInfo:
        if isinstance(model, str):
            model = ModelInfo(id=model, name=model)
        with self._lock:
            self._models[model.id] = model
        return model

    def set_status(self, model_id: str, status: str) -> None:
        with self._lock:
            model = self._models.get(model_id)
            if model is not None:
                model.status = status

    def get_model(self, model_id: str) -> ModelInfo | None:
        return self._models.get(model_id)

    def list_active_models(self) -> list[ModelInfo]:
        with self._lock:
            return [m for m in self._models.values() if m.status == "active"]


# ---------------------------------------------------------------------------
# Scorer plugins
# ---------------------------------------------------------------------------

SCORER_KINDS = ("similarity", "semantic", "factual", "brand")

# kind -> plugin class, or None once a lookup found nothing usable
_plugins: Dict[str, Optional[Type]] = {}
_plugins_lock = threading.Lock()


def scorer_group(kind: str) -> str:
    """Entry-point group a package registers a *kind* scorer under."""
    return f"model_canary.scorers.{kind}"


def _plugin_for(kind: str) -> Optional[Type]:
    with _plugins_lock:
        if kind in _plugins:
            return _plugins[kind]

        plugin: Optional[Type] = None
        candidates = list(entry_points(group=scorer_group(kind)))
        if candidates:
            chosen = candidates[0]
            try:
                plugin = chosen.load()
            except Exception:
                logger.warning(
                    "Could not load %s scorer plugin %s (%s); using heuristic",
                    kind,
                    chosen.name,
                    chosen.value,
                    exc_info=True,
                )
            else:
                logger.info("Using %s scorer plugin %s", kind, chosen.name)
        _plugins[kind] = plugin
        return plugin


def get_scorer(kind: str, **kwargs: Any):
    """Instantiate the scorer for *kind*: the first installed plugin, else the
    heuristic from ``model_canary.evals.scorers``."""
    if kind not in SCORER_KINDS:
        raise ValueError(f"Unknown scorer kind: {kind}")

    plugin = _plugin_for(kind)
    if plugin is not None:
        return plugin(**kwargs)

    from model_canary.evals import scorers

    heuristic = {
        "similarity": scorers.LexicalSimilarityScorer,
        "semantic": scorers.SequenceSemanticScorer,
        "factual": scorers.FactualOverlapScorer,
        "brand": scorers.BrandConsistencyScorer,
    }[kind]
    return heuristic(**kwargs)


def list_providers() -> Dict[str, str]:
    """Which backend each scorer kind resolves to: ``plugin`` or ``heuristic``."""
    return {
        kind: "heuristic" if _plugin_for(kind) is None else "plugin" for kind in SCORER_KINDS
    }


def clear_cache() -> None:
    """Forget resolved plugins so the next lookup rescans entry points."""
    with _plugins_lock:
        _plugins.clear()
