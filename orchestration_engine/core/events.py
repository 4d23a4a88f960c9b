"""Event emitters for the orchestration engine."""

import logging
from abc import ABC, abstractmethod
from typing import Iterable

from orchestration_engine.core.events_model import OrchestratorEvent

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "instance.created",
    "instance.started",
    "instance.stopped",
    "instance.crashed",
    "instance.health_changed",
    "instance.deleted",
    "instance.updated",
    "domain.created",
    "domain.deleted",
    "domain.updated",
    "proxy.reloaded",
    "stack.created",
    "stack.deleted",
    "stack.imported",
    "park.added",
    "park.removed",
    "park.refreshed",
    "dns.started",
    "dns.stopped",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Validates and logs events without keeping them (long-running daemon)."""

    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        for event in events:
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")
            if not event.subject_id:
                raise ValueError("Event must have subject_id")

            self._record(event)
            logger.info(f"[EVENT] {event.event_type} | subject={event.subject_id}")

    def _record(self, event: OrchestratorEvent) -> None:
        pass


class RecordingEventEmitter(LoggingEventEmitter):
    """Keeps emitted events in memory and logs them."""

    def __init__(self):
        self.events = []

    def _record(self, event: OrchestratorEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str):
        return [e for e in self.events if e.event_type == event_type]


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when nobody subscribes)."""

    def emit(self, events: Iterable[OrchestratorEvent]) -> None:
        pass
