"""
Data types for the image optimization pipeline.

Job lifecycle:
    pending -> processing (claimed by one runner)
    processing -> completed (at least one derivative produced)
    processing -> pending (failure, attempts < max_attempts)
    processing -> failed (failure, attempts >= max_attempts, or invalid input)
    processing -> pending (released unstarted, or claim went stale)
"""
from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Mapping

logger = logging.getLogger(__name__)

TARGET_FORMATS: tuple[str, ...] = ("webp", "avif")

DEFAULT_ALLOWED_MIME_TYPES: tuple[str, ...] = ("image/jpeg", "image/png", "image/gif")

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", ""})


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class QueueJob:
    """One unit of conversion work as read from the queue store."""
    id: int
    source_ref: str
    status: JobStatus
    priority: int = 0
    attempts: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    claimed_at: datetime | None = None
    result_summary: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"Not a boolean: {value!r}")
    return bool(value)


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = value.split(",")
    else:
        parts = list(value)
    return tuple(p.strip().lower() for p in parts if p and p.strip())


@dataclass(frozen=True)
class ConversionSettings:
    """
    Snapshot of the conversion options used for one batch run.

    Numeric fields are clamped on construction: qualities to 1..100,
    compression level to 0..9, dimensions and batch size to at least 1.
    """
    enable_webp: bool = True
    enable_avif: bool = True
    webp_quality: int = 80
    avif_quality: int = 70

    enable_resize: bool = False
    max_width: int = 1920
    max_height: int = 1080

    strip_metadata: bool = True
    compression_level: int = 6

    job_time_budget: float = 60.0
    batch_size: int = 10
    max_execution_time: float = 300.0

    allowed_mime_types: tuple[str, ...] = DEFAULT_ALLOWED_MIME_TYPES
    max_file_size: int = 50 * 1024 * 1024
    max_dimension: int = 10_000

    overwrite_existing: bool = False
    keep_extension: bool = False
    cleanup_originals: bool = False

    def __post_init__(self) -> None:
        normalized = {
            "webp_quality": _clamp(self.webp_quality, 1, 100),
            "avif_quality": _clamp(self.avif_quality, 1, 100),
            "compression_level": _clamp(self.compression_level, 0, 9),
            "max_width": max(1, int(self.max_width)),
            "max_height": max(1, int(self.max_height)),
            "batch_size": _clamp(self.batch_size, 1, 100),
            "max_execution_time": max(1.0, float(self.max_execution_time)),
            "job_time_budget": max(1.0, float(self.job_time_budget)),
            "max_file_size": max(1, int(self.max_file_size)),
            "max_dimension": max(1, int(self.max_dimension)),
            "allowed_mime_types": _as_str_tuple(self.allowed_mime_types),
        }
        for name, value in normalized.items():
            object.__setattr__(self, name, value)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ConversionSettings:
        """Build settings from loosely typed values (JSON, env vars, CLI)."""
        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            raw = data[f.name]
            default = f.default
            if isinstance(default, bool):
                kwargs[f.name] = _as_bool(raw)
            elif isinstance(default, int):
                kwargs[f.name] = int(raw)
            elif isinstance(default, float):
                kwargs[f.name] = float(raw)
            elif isinstance(default, tuple):
                kwargs[f.name] = _as_str_tuple(raw)
            else:
                kwargs[f.name] = raw

        unknown = set(data) - {f.name for f in dataclasses.fields(cls)}
        if unknown:
            logger.debug("Ignoring unknown settings: %s", ", ".join(sorted(unknown)))
        return cls(**kwargs)

    def is_enabled(self, fmt: str) -> bool:
        if fmt == "webp":
            return self.enable_webp
        if fmt == "avif":
            return self.enable_avif
        return False

    def enabled_formats(self) -> tuple[str, ...]:
        return tuple(fmt for fmt in TARGET_FORMATS if self.is_enabled(fmt))

    def quality_for(self, fmt: str) -> int:
        return self.avif_quality if fmt == "avif" else self.webp_quality

    def replace(self, **changes: Any) -> ConversionSettings:
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["allowed_mime_types"] = list(self.allowed_mime_types)
        return d


@dataclass(frozen=True)
class Derivative:
    """One converted output file."""
    output_path: Path
    size_bytes: int
    width: int
    height: int
    reused: bool = False


@dataclass(frozen=True)
class ConversionResult:
    """Outcome of converting one source image."""
    source_ref: str
    original_size_bytes: int
    original_width: int = 0
    original_height: int = 0
    produced: Mapping[str, Derivative] = field(default_factory=dict)
    skipped: frozenset[str] = frozenset()
    errors: Mapping[str, str] = field(default_factory=dict)
    remove_original: bool = False
    elapsed: float = 0.0

    @property
    def total_saved_bytes(self) -> int:
        if not self.produced:
            return 0
        return self.original_size_bytes - sum(d.size_bytes for d in self.produced.values())

    @property
    def succeeded(self) -> bool:
        """True when something was produced, or when there was nothing to produce."""
        return bool(self.produced) or not self.errors

    def summary(self) -> dict[str, Any]:
        """JSON-friendly summary persisted with a completed job."""
        return {
            "original_size_bytes": self.original_size_bytes,
            "total_saved_bytes": self.total_saved_bytes,
            "produced": {
                fmt: {
                    "output_path": str(d.output_path),
                    "size_bytes": d.size_bytes,
                    "width": d.width,
                    "height": d.height,
                    "reused": d.reused,
                }
                for fmt, d in sorted(self.produced.items())
            },
            "skipped": sorted(self.skipped),
            "errors": dict(self.errors),
            "remove_original": self.remove_original,
        }


StopReason = Literal["drained", "stopped", "time_budget", "batch_limit"]


@dataclass
class BatchSummary:
    """Counters for one BatchRunner.run() call."""
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0
    reclaimed: int = 0
    batches: int = 0
    bytes_saved: int = 0
    elapsed: float = 0.0
    stop_reason: StopReason = "drained"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ProcessingState = Literal["idle", "running"]


@dataclass(frozen=True)
class ProcessingStatus:
    """Progress of the batch currently being processed by a runner."""
    state: ProcessingState = "idle"
    current: int = 0
    total: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(self.current / self.total * 100, 2)
