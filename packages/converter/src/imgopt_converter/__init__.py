"""
Image Conversion Engine.

This package is the core WebP/AVIF derivative generation logic.
It is used only by the worker.

This package has no database dependencies. It's pure image processing.

"""

from .backends import (
    BackendInfo,
    BackendRegistry,
    CwebpBackend,
    EncodeOptions,
    ImageBackend,
    PillowBackend,
    detect_backends,
    verify_backend,
)
from .convert import ConversionEngine, fit_within
from .cwebp import CwebpError, encode_webp, run_cwebp
from .validation import SourceInfo, validate_source

__all__ = [
    "BackendInfo",
    "BackendRegistry",
    "EncodeOptions",
    "ImageBackend",
    "PillowBackend",
    "CwebpBackend",
    "detect_backends",
    "verify_backend",
    "ConversionEngine",
    "fit_within",
    "CwebpError",
    "run_cwebp",
    "encode_webp",
    "SourceInfo",
    "validate_source",
]
