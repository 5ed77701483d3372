"""
Shared types for the image optimization pipeline

The package is a dependency of the converter, the store and the worker:
- Converter uses the settings/result types, errors and file helpers
- Store persists QueueJob and result summaries
- Worker wires everything together through the event bus

Deployment:
    pip install imgopt
"""

from .errors import (
    BackendUnavailable,
    ConversionError,
    InvalidInput,
    OptimizerError,
    StoreUnavailable,
)
from .events import (
    BatchFinished,
    BatchStarted,
    EventBus,
    FormatSkipped,
    ItemProcessed,
)
from .files import (
    ALLOWED_IMG_EXTS,
    collect_images,
    derivative_path,
    is_in_dir,
    mime_type_for,
    resolve_source_ref,
)
from .models import (
    TARGET_FORMATS,
    BatchSummary,
    ConversionResult,
    ConversionSettings,
    Derivative,
    JobStatus,
    ProcessingStatus,
    QueueJob,
)

__all__ = [
    # Errors
    "OptimizerError",
    "InvalidInput",
    "BackendUnavailable",
    "ConversionError",
    "StoreUnavailable",
    # Events
    "EventBus",
    "BatchStarted",
    "BatchFinished",
    "FormatSkipped",
    "ItemProcessed",
    # Files
    "ALLOWED_IMG_EXTS",
    "collect_images",
    "derivative_path",
    "is_in_dir",
    "mime_type_for",
    "resolve_source_ref",
    # Models
    "TARGET_FORMATS",
    "JobStatus",
    "QueueJob",
    "ConversionSettings",
    "ConversionResult",
    "Derivative",
    "BatchSummary",
    "ProcessingStatus",
]
