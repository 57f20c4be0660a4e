"""Ordered event publishing for lifecycle transitions and quality alerts.

Events are delivered over per-subscriber queues so that consumers
(alerting, audit) never run on the publisher's call stack. Each event is
also logged with structured attributes that OTEL log exporters can pick
up, and attached to the current span when one is recording.

Usage:
    bus = EventBus()
    sub = bus.subscribe({EventType.DEPLOYMENT_ROLLED_BACK})
    ...
    for event in sub.drain():
        notify(event)
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opentelemetry import trace

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of events published by the rollout and evaluation components."""

    DEPLOYMENT_CREATED = "deployment_created"
    DEPLOYMENT_STARTED = "deployment_started"
    DEPLOYMENT_PAUSED = "deployment_paused"
    DEPLOYMENT_RESUMED = "deployment_resumed"
    DEPLOYMENT_ROLLED_BACK = "deployment_rolled_back"
    DEPLOYMENT_COMPLETED = "deployment_completed"
    DEPLOYMENT_FAILED = "deployment_failed"
    TRAFFIC_SPLIT_UPDATED = "traffic_split_updated"
    ROLLOUT_DECISION_EXECUTED = "rollout_decision_executed"
    CANARY_ALERT = "canary_alert"
    EVALUATION_COMPLETED = "evaluation_completed"
    AB_TEST_COMPLETED = "ab_test_completed"
    DRIFT_DETECTED = "drift_detected"
    REQUEST_METRIC_RECORDED = "request_metric_recorded"


_WARNING_EVENTS = {
    EventType.DEPLOYMENT_ROLLED_BACK,
    EventType.DEPLOYMENT_FAILED,
    EventType.CANARY_ALERT,
    EventType.DRIFT_DETECTED,
}

# emitted per request; kept out of INFO logs
_DEBUG_EVENTS = {EventType.REQUEST_METRIC_RECORDED}


@dataclass(frozen=True)
class Event:
    """A published event. ``sequence`` is strictly increasing per bus."""

    sequence: int
    event_type: EventType
    subject_id: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "subject_id": self.subject_id,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class Subscription:
    """A channel of events for one consumer."""

    def __init__(self, bus: EventBus, event_types: set[EventType] | None) -> None:
        self._bus = bus
        self._event_types = event_types
        self._queue: queue.Queue[Event] = queue.Queue()
        self.closed = False

    def accepts(self, event: Event) -> bool:
        return self._event_types is None or event.event_type in self._event_types

    def put(self, event: Event) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> Event | None:
        """Block for the next event; ``None`` when the timeout expires."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        """Return every event queued so far without blocking."""
        events: list[Event] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._bus.unsubscribe(self)
        self.closed = True


class EventBus:
    """Publishes events in order to every matching subscriber."""

    def __init__(self, logger_name: str = "model_canary.events", max_history: int = 10000) -> None:
        self._logger = logging.getLogger(logger_name)
        self._lock = threading.Lock()
        self._sequence = 0
        self._subscribers: list[Subscription] = []
        self._history: list[Event] = []
        self._max_history = max_history

    def subscribe(self, event_types: Iterable[EventType] | None = None) -> Subscription:
        sub = Subscription(self, set(event_types) if event_types is not None else None)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(
        self,
        event_type: EventType,
        subject_id: str,
        details: dict[str, Any] | None = None,
        message: str = "",
    ) -> Event:
        """Publish an event and return it.

        Sequence assignment and fan-out happen under one lock so every
        subscriber observes the same order.
        """
        with self._lock:
            self._sequence += 1
            event = Event(
                sequence=self._sequence,
                event_type=event_type,
                subject_id=subject_id,
                details=dict(details or {}),
            )
            self._history.append(event)
            if len(self._history) > self._max_history:
                del self._history[: len(self._history) - self._max_history]
            for sub in self._subscribers:
                if sub.accepts(event):
                    sub.put(event)

        self._log(event, message)
        return event

    def history(self, event_type: EventType | None = None) -> list[Event]:
        with self._lock:
            events = list(self._history)
        if event_type is None:
            return events
        return [e for e in events if e.event_type == event_type]

    def _log(self, event: Event, message: str) -> None:
        attrs = {
            "event.name": event.event_type.value,
            "event.sequence": event.sequence,
            "canary.subject_id": event.subject_id,
            **{f"canary.{k}": v for k, v in event.details.items()},
        }
        if event.event_type in _WARNING_EVENTS:
            level = logging.WARNING
        elif event.event_type in _DEBUG_EVENTS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        self._logger.log(
            level,
            message or f"{event.event_type.value}: {event.subject_id}",
            extra={"otel_attributes": attrs},
        )

        span = trace.get_current_span()
        if span and span.is_recording():
            # Span events only accept primitive values
            span.add_event(event.event_type.value, {k: str(v) for k, v in attrs.items()})
