"""
Image backend detection and selection.

A backend encodes an already decoded Pillow image into one target format.
Detection runs once per registry and encodes a tiny test image in every
format a backend claims, so a registered but broken codec is never used.
The selected backend and the set of formats it cannot produce are cached
for the rest of the session.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, Sequence

import PIL
from PIL import Image

from imgopt_shared.errors import BackendUnavailable, ConversionError
from imgopt_shared.files import derivative_path

from .cwebp import DEFAULT_TIMEOUT, compression_to_method, cwebp_path, cwebp_version, encode_webp

logger = logging.getLogger(__name__)

# Maps our format names to Pillow's registered save handlers.
PILLOW_FORMATS: dict[str, str] = {"webp": "WEBP", "avif": "AVIF"}


@dataclass(frozen=True)
class BackendInfo:
    name: str
    version: str
    formats: frozenset[str]
    failed: frozenset[str] = frozenset()


@dataclass(frozen=True)
class EncodeOptions:
    quality: int = 80
    compression_level: int = 6
    exif: bytes | None = None
    icc_profile: bytes | None = None
    timeout: float = DEFAULT_TIMEOUT


class ImageBackend:
    """Uniform encode interface over an image codec library."""

    name = "base"

    def probe(self) -> BackendInfo | None:
        """Return detection info, or None when the library is missing."""
        raise NotImplementedError

    def encode(self, image: Image.Image, output_path: Path, fmt: str, options: EncodeOptions) -> tuple[int, int]:
        """Write image to output_path in fmt and return the (width, height) written."""
        raise NotImplementedError

    def convert(self, source_path: Path, fmt: str, options: EncodeOptions | None = None) -> Path:
        """Decode source_path and write its sibling derivative in fmt."""
        output_path = derivative_path(source_path, fmt)
        try:
            with Image.open(source_path) as img:
                img.load()
                self.encode(img, output_path, fmt, options or EncodeOptions())
        except ConversionError:
            raise
        except (OSError, ValueError) as e:
            raise ConversionError(fmt, f"{type(e).__name__}: {e}") from e
        return output_path


def _remove_partial(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove partial output %s: %s", path, e)


class PillowBackend(ImageBackend):
    """Full-featured backend: WebP and, when the build has it, AVIF."""

    name = "pillow"

    def probe(self) -> BackendInfo | None:
        try:
            import pillow_avif  # noqa: F401  registers AVIF on Pillow < 11.2
        except ImportError:
            logger.debug("pillow-avif-plugin not installed")

        Image.init()
        formats = frozenset(fmt for fmt, handler in PILLOW_FORMATS.items() if handler in Image.SAVE)
        return BackendInfo(self.name, PIL.__version__, formats)

    def encode(self, image: Image.Image, output_path: Path, fmt: str, options: EncodeOptions) -> tuple[int, int]:
        params: dict[str, object] = {"quality": options.quality}
        if fmt == "webp":
            params["method"] = compression_to_method(options.compression_level)
        elif fmt == "avif":
            params["speed"] = 9 - options.compression_level
        else:
            raise ConversionError(fmt, "format not handled by Pillow backend")

        if options.exif:
            params["exif"] = options.exif
        if options.icc_profile:
            params["icc_profile"] = options.icc_profile

        try:
            image.save(output_path, format=PILLOW_FORMATS[fmt], **params)
        except (OSError, ValueError, KeyError) as e:
            _remove_partial(output_path)
            raise ConversionError(fmt, f"{type(e).__name__}: {e}") from e
        return image.size


class CwebpBackend(ImageBackend):
    """Minimal backend: WebP only, through the cwebp executable."""

    name = "cwebp"

    def probe(self) -> BackendInfo | None:
        if cwebp_path() is None:
            return None
        return BackendInfo(self.name, cwebp_version() or "unknown", frozenset({"webp"}))

    def encode(self, image: Image.Image, output_path: Path, fmt: str, options: EncodeOptions) -> tuple[int, int]:
        if fmt != "webp":
            raise ConversionError(fmt, "cwebp only produces webp")

        fd, tmp_name = tempfile.mkstemp(suffix=".png", dir=output_path.parent)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            save_params: dict[str, object] = {}
            if options.exif:
                save_params["exif"] = options.exif
            if options.icc_profile:
                save_params["icc_profile"] = options.icc_profile
            image.save(tmp_path, format="PNG", **save_params)
            return encode_webp(
                tmp_path,
                output_path,
                quality=options.quality,
                compression_level=options.compression_level,
                keep_metadata=bool(options.exif or options.icc_profile),
                timeout=options.timeout,
            )
        except ConversionError:
            _remove_partial(output_path)
            raise
        except OSError as e:
            _remove_partial(output_path)
            raise ConversionError(fmt, f"{type(e).__name__}: {e}") from e
        finally:
            _remove_partial(tmp_path)


# Fixed preference order, used to break ties between equally capable backends.
DEFAULT_BACKENDS: tuple[type[ImageBackend], ...] = (PillowBackend, CwebpBackend)

SELF_TEST_SIZE = (16, 16)


def verify_backend(backend: ImageBackend, info: BackendInfo) -> BackendInfo:
    """
    Encode a small generated image in every format the backend claims.

    A library can register a format it cannot actually write (a plugin
    built without its codec, a broken binary). Formats that fail here are
    moved from info.formats to info.failed.
    """
    image = Image.new("RGB", SELF_TEST_SIZE, (200, 120, 40))
    failed = set()
    with tempfile.TemporaryDirectory(prefix="imgopt-selftest-") as temp_dir:
        for fmt in sorted(info.formats):
            output_path = Path(temp_dir) / f"selftest.{fmt}"
            try:
                backend.encode(image, output_path, fmt, EncodeOptions())
                if output_path.stat().st_size == 0:
                    raise ConversionError(fmt, "empty output")
            except Exception as e:
                logger.warning("Backend %s failed its %s self-test: %s", info.name, fmt, e)
                failed.add(fmt)
    image.close()

    if not failed:
        return info
    return replace(info, formats=info.formats - failed, failed=frozenset(failed))


def detect_backends(
    candidates: Iterable[ImageBackend] | None = None,
    self_test: bool = True,
) -> list[tuple[ImageBackend, BackendInfo]]:
    """Probe candidates in preference order and return the available ones."""
    if candidates is None:
        candidates = [cls() for cls in DEFAULT_BACKENDS]

    found = []
    for backend in candidates:
        try:
            info = backend.probe()
        except Exception:
            logger.exception("Probing backend %s failed", backend.name)
            continue
        if info is None:
            logger.debug("Backend %s not available", backend.name)
            continue
        if self_test:
            info = verify_backend(backend, info)
        found.append((backend, info))


    logger.info(
        "Image backend detection: %s",
        ", ".join(f"{i.name} {i.version} ({'/'.join(sorted(i.formats)) or 'none'})" for _, i in found)
        or "none",
    )
    return found


class BackendRegistry:
    """Detects backends once and selects one for the whole session."""

    def __init__(self, candidates: Sequence[ImageBackend] | None = None, self_test: bool = True):
        self._candidates = list(candidates) if candidates is not None else None
        self._self_test = self_test
        self._lock = threading.Lock()
        self._detected: list[tuple[ImageBackend, BackendInfo]] | None = None
        self._selected: tuple[ImageBackend, BackendInfo] | None = None
        self._unsupported: set[str] = set()

    def detect(self) -> list[BackendInfo]:
        with self._lock:
            return [info for _, info in self._detect_locked()]

    def describe(self) -> list[dict[str, object]]:
        """Detection results for display, marking the selected backend."""
        detected = self.detect()
        selected = self.selected
        return [
            {
                "name": info.name,
                "version": info.version,
                "formats": sorted(info.formats),
                "failed": sorted(info.failed),
                "selected": selected is not None and info.name == selected.name,
            }
            for info in detected
        ]

    def _detect_locked(self) -> list[tuple[ImageBackend, BackendInfo]]:
        if self._detected is None:
            self._detected = detect_backends(self._candidates, self._self_test)
        return self._detected

    def select(self, requested: Iterable[str]) -> ImageBackend:
        """
        Return the session backend for the requested formats.

        The first call picks the backend supporting the most requested
        formats (ties go to the earlier one in preference order). Formats
        it cannot produce are remembered as unsupported.

        Raises:
            BackendUnavailable: If no requested format can be produced
        """
        wanted = list(dict.fromkeys(requested))
        if not wanted:
            raise BackendUnavailable("No target formats are enabled")

        with self._lock:
            if self._selected is None:
                best = None
                best_score = 0
                for backend, info in self._detect_locked():
                    score = len(info.formats.intersection(wanted))
                    if score > best_score:
                        best, best_score = (backend, info), score
                if best is None:
                    self._unsupported.update(wanted)
                    raise BackendUnavailable(
                        f"No image backend supports any of: {', '.join(wanted)}"
                    )
                self._selected = best
                logger.info("Selected image backend %s %s", best[1].name, best[1].version)

            backend, info = self._selected
            missing = [fmt for fmt in wanted if fmt not in info.formats]
            new_missing = [fmt for fmt in missing if fmt not in self._unsupported]
            if new_missing:
                logger.warning(
                    "Backend %s cannot produce %s; skipping for this session",
                    info.name, ", ".join(new_missing),
                )
                self._unsupported.update(new_missing)
            if len(missing) == len(wanted):
                raise BackendUnavailable(
                    f"Backend {info.name} supports none of: {', '.join(wanted)}"
                )
            return backend

    def is_supported(self, fmt: str) -> bool:
        with self._lock:
            if self._selected is None:
                return False
            return fmt in self._selected[1].formats

    @property
    def selected(self) -> BackendInfo | None:
        with self._lock:
            return self._selected[1] if self._selected else None

    @property
    def unsupported(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._unsupported)

    def redetect(self) -> list[BackendInfo]:
        """Forget cached detection and selection, then probe again."""
        with self._lock:
            self._detected = None
            self._selected = None
            self._unsupported.clear()
        return self.detect()
