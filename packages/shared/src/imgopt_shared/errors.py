"""Exception types shared by the converter, the queue store and the worker."""

from __future__ import annotations


class OptimizerError(Exception):
    """Base exception for the image optimization pipeline."""
    pass


class InvalidInput(OptimizerError):
    """Raised when a source is unreadable, of the wrong type or oversized.

    Jobs failing with this error are not retried.
    """

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{reason}: {source}")


class BackendUnavailable(OptimizerError):
    """Raised when no image backend can produce any enabled format."""
    pass


class ConversionError(OptimizerError):
    """Raised when encoding one format for one image fails."""

    def __init__(self, fmt: str, message: str):
        self.format = fmt
        super().__init__(f"{fmt} conversion failed: {message}")


class StoreUnavailable(OptimizerError):
    """Raised when the queue or activity database cannot be reached."""
    pass
