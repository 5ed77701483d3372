"""
Image conversion orchestration for WebP/AVIF derivatives.

This module handles the per-image workflow:
1. Validate the source (type, signature, size)
2. Decode once, strip metadata, downscale to the configured bounds
3. Encode each enabled format through the selected backend; a failed
   format is skipped without affecting the others
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path

from PIL import Image, ImageOps

from imgopt_shared.errors import ConversionError, InvalidInput
from imgopt_shared.events import EventBus, FormatSkipped
from imgopt_shared.files import derivative_path
from imgopt_shared.models import TARGET_FORMATS, ConversionResult, ConversionSettings, Derivative

from .backends import BackendRegistry, EncodeOptions, ImageBackend
from .validation import SourceInfo, validate_source

logger = logging.getLogger(__name__)


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """
    Largest size with the same aspect ratio that fits in max_width x max_height.

    Never upscales: sizes already inside the bounds are returned unchanged.
    """
    max_width = max(1, max_width)
    max_height = max(1, max_height)
    if width <= max_width and height <= max_height:
        return width, height

    ratio = min(max_width / width, max_height / height)
    new_width = min(max_width, max(1, round(width * ratio)))
    new_height = min(max_height, max(1, round(height * ratio)))
    return new_width, new_height


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _is_up_to_date(output_path: Path, source_path: Path) -> bool:
    try:
        return output_path.stat().st_mtime >= source_path.stat().st_mtime
    except FileNotFoundError:
        return False


class ConversionEngine:
    """
    Produces optimized derivatives for one source image at a time.

    The engine is stateless between calls apart from the backend registry,
    whose detection results are shared and read-only after the first use.
    """

    def __init__(
        self,
        registry: BackendRegistry | None = None,
        events: EventBus | None = None,
        base_dir: Path | None = None,
    ):
        self.registry = registry or BackendRegistry()
        self._events = events or EventBus()
        self._base_dir = base_dir

    def prepare(self, settings: ConversionSettings) -> ImageBackend:
        """Select the backend for these settings; raises BackendUnavailable."""
        return self.registry.select(settings.enabled_formats())

    def process(
        self,
        source_path: Path,
        settings: ConversionSettings,
        source_ref: str | None = None,
    ) -> ConversionResult:
        """
        Convert one image into every enabled format.

        Raises:
            InvalidInput: If the source cannot be read or is not allowed.
            BackendUnavailable: If no backend supports any enabled format.
        """
        started = time.monotonic()
        source_path = Path(source_path)
        source_ref = source_ref or str(source_path)

        info = validate_source(source_path, settings, self._base_dir)
        backend = self.prepare(settings)

        produced: dict[str, Derivative] = {}
        skipped: set[str] = set()
        errors: dict[str, str] = {}
        pending: list[tuple[str, Path]] = []

        for fmt in TARGET_FORMATS:
            if not settings.is_enabled(fmt):
                skipped.add(fmt)
                continue
            if not self.registry.is_supported(fmt):
                self._skip(source_ref, fmt, "unsupported by backend", skipped, errors)
                continue
            if info.format == fmt:
                # nothing to produce; not an error
                skipped.add(fmt)
                logger.info("Skipping %s for %s: source already in this format", fmt, source_ref)
                self._events.publish(
                    FormatSkipped(source_ref=source_ref, format=fmt, reason="source already in this format")
                )
                continue

            output_path = derivative_path(source_path, fmt, settings.keep_extension)
            if not settings.overwrite_existing and _is_up_to_date(output_path, source_path):
                existing = self._reuse(output_path)
                if existing is not None:
                    produced[fmt] = existing
                    continue
            pending.append((fmt, output_path))

        if pending:
            image, exif, icc_profile = self._load(info, settings)
            try:
                for fmt, output_path in pending:
                    options = EncodeOptions(
                        quality=settings.quality_for(fmt),
                        compression_level=settings.compression_level,
                        exif=exif,
                        icc_profile=icc_profile,
                        timeout=settings.job_time_budget,
                    )
                    fmt_started = time.monotonic()
                    try:
                        derivative = self._write(backend, image, output_path, fmt, options)
                    except (ConversionError, OSError) as e:
                        self._skip(source_ref, fmt, str(e), skipped, errors)
                        continue

                    produced[fmt] = derivative
                    logger.debug(
                        "%s -> %s: %d bytes in %.2fs",
                        source_path.name, fmt, derivative.size_bytes, time.monotonic() - fmt_started,
                    )
            finally:
                image.close()

        elapsed = time.monotonic() - started
        if elapsed > settings.job_time_budget:
            logger.warning("%s took %.1fs, over the %.0fs job budget", source_ref, elapsed, settings.job_time_budget)

        result = ConversionResult(
            source_ref=source_ref,
            original_size_bytes=info.size_bytes,
            original_width=info.width,
            original_height=info.height,
            produced=produced,
            skipped=frozenset(skipped),
            errors=errors,
            remove_original=settings.cleanup_originals and bool(produced),
            elapsed=elapsed,
        )
        logger.info(
            "Processed %s: formats=%s saved=%d bytes in %.2fs",
            source_path.name, ",".join(sorted(produced)) or "none", result.total_saved_bytes, elapsed,
        )
        return result

    def _skip(self, source_ref: str, fmt: str, reason: str, skipped: set[str], errors: dict[str, str]) -> None:
        skipped.add(fmt)
        errors[fmt] = reason
        logger.warning("Skipping %s for %s: %s", fmt, source_ref, reason)
        self._events.publish(FormatSkipped(source_ref=source_ref, format=fmt, reason=reason))

    def _reuse(self, output_path: Path) -> Derivative | None:
        """Existing derivative if it decodes cleanly, else None so it gets re-encoded."""
        try:
            with Image.open(output_path) as img:
                img.load()
                width, height = img.size
            size_bytes = output_path.stat().st_size
        except (OSError, SyntaxError, Image.DecompressionBombError) as e:
            logger.warning("Re-encoding unreadable derivative %s: %s", output_path.name, e)
            return None
        logger.debug("Reusing up-to-date %s", output_path.name)
        return Derivative(output_path, size_bytes, width, height, reused=True)

    def _write(
        self,
        backend: ImageBackend,
        image: Image.Image,
        output_path: Path,
        fmt: str,
        options: EncodeOptions,
    ) -> Derivative:
        """Encode next to output_path, then move the finished file into place."""
        partial = output_path.with_name(f".{output_path.name}.part")
        try:
            width, height = backend.encode(image, partial, fmt, options)
            os.replace(partial, output_path)
        finally:
            partial.unlink(missing_ok=True)
        return Derivative(output_path, output_path.stat().st_size, width, height)

    def _load(
        self,
        info: SourceInfo,
        settings: ConversionSettings,
    ) -> tuple[Image.Image, bytes | None, bytes | None]:
        """Decode the source once and apply orientation, metadata and resize policy."""
        try:
            with Image.open(info.path) as src:
                img = ImageOps.exif_transpose(src)
        except (OSError, Image.DecompressionBombError) as e:
            raise InvalidInput(str(info.path), f"Cannot decode source: {e}") from e

        exif = img.info.get("exif")
        icc_profile = img.info.get("icc_profile")
        if settings.strip_metadata:
            img.info.clear()
            exif = icc_profile = None

        if img.mode not in ("RGB", "RGBA"):
            converted = img.convert("RGBA" if _has_alpha(img) else "RGB")
            img.close()
            img = converted

        if settings.enable_resize:
            width, height = img.size
            target = fit_within(width, height, settings.max_width, settings.max_height)
            if target != (width, height):
                resized = img.resize(target, Image.Resampling.LANCZOS)
                img.close()
                img = resized
                logger.debug("Resized %s from %dx%d to %dx%d", info.path.name, width, height, *target)

        return img, exif, icc_profile
