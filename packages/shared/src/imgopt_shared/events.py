"""
Typed events published by the conversion engine and the batch runner.

Subscribers register per event type. A failing subscriber is logged and
skipped; it never interrupts the publisher.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, TypeVar

from .models import BatchSummary

logger = logging.getLogger(__name__)

ItemOutcome = Literal["completed", "retry", "failed"]


@dataclass(frozen=True)
class BatchStarted:
    batch_number: int
    claimed: int
    job_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class FormatSkipped:
    source_ref: str
    format: str
    reason: str


@dataclass(frozen=True)
class ItemProcessed:
    """One queue job went through the engine."""
    job_id: int
    source_ref: str
    outcome: ItemOutcome
    bytes_saved: int = 0
    elapsed: float = 0.0
    memory_delta: int = 0  # growth of peak RSS while processing; 0 once a larger item has run
    formats: tuple[str, ...] = ()
    errors: dict[str, str] = field(default_factory=dict)
    message: str = ""


@dataclass(frozen=True)
class BatchFinished:
    summary: BatchSummary


E = TypeVar("E")
Subscriber = Callable[[Any], None]


class EventBus:
    """In-process publish/subscribe registry keyed by event class."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[type, list[Subscriber]] = {}

    def subscribe(self, event_type: type[E], callback: Callable[[E], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(event_type, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(type(event), ()))

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, type(event).__name__)
