"""Composition of the worker's components."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial

from imgopt_converter import BackendRegistry, ConversionEngine, ImageBackend
from imgopt_shared.events import EventBus
from imgopt_shared.files import resolve_source_ref
from imgopt_store import ActivityLog, ActivityLogSink, QueueStore, create_db_engine

from .config import WorkerConfig
from .runner import BatchRunner

logger = logging.getLogger(__name__)


@dataclass
class Application:
    """Every long-lived component, built once and passed explicitly."""

    config: WorkerConfig
    events: EventBus
    store: QueueStore
    activity: ActivityLog
    sink: ActivityLogSink
    engine: ConversionEngine
    runner: BatchRunner

    def close(self) -> None:
        self.sink.close()


def create_app(
    config: WorkerConfig,
    backends: list[ImageBackend] | None = None,
) -> Application:
    db_engine = create_db_engine(config.database_url)
    events = EventBus()

    store = QueueStore(db_engine, max_attempts=config.max_attempts)
    activity = ActivityLog(db_engine)
    sink = ActivityLogSink(activity)
    sink.attach(events)

    engine = ConversionEngine(
        registry=BackendRegistry(backends),
        events=events,
        base_dir=config.upload_root,
    )
    runner = BatchRunner(
        store,
        engine,
        events=events,
        resolve_source=partial(resolve_source_ref, base_dir=config.upload_root),
        stale_after=config.stale_after,
    )

    logger.debug("Worker components ready (database %s)", db_engine.url)
    return Application(config, events, store, activity, sink, engine, runner)
