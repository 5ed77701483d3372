"""
File handling utilities for the converter and the worker CLI
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

EXTENSION_MIME_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".avif": "image/avif",
}

ALLOWED_IMG_EXTS: frozenset[str] = frozenset(EXTENSION_MIME_TYPES)


def mime_type_for(path: Path) -> str | None:
    """MIME type implied by a file extension."""
    return EXTENSION_MIME_TYPES.get(path.suffix.lower())


def is_in_dir(base: Path, target: Path) -> bool:
    """Check if target path is in base dir."""
    try:
        target.resolve().relative_to(base.resolve())
        return True
    except ValueError:
        return False


def resolve_source_ref(source_ref: str, base_dir: Path | None = None) -> Path:
    """Turn a queued source reference into a filesystem path."""
    path = Path(source_ref).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return path


def derivative_path(source: Path, fmt: str, keep_extension: bool = False) -> Path:
    """Sibling output path for a derivative: photo.jpg -> photo.webp (or photo.jpg.webp)."""
    if keep_extension:
        return source.with_name(f"{source.name}.{fmt}")
    return source.with_suffix(f".{fmt}")


def _is_hidden(path: Path) -> bool:
    return any(part.startswith(".") or part == "__MACOSX" for part in path.parts)


def collect_images(
    paths: Iterable[str | Path],
    recursive: bool = False,
    exts: frozenset[str] = ALLOWED_IMG_EXTS,
) -> list[Path]:
    """Expand files and directories into a sorted, de-duplicated list of images."""
    found: dict[str, Path] = {}

    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_file():
            if path.suffix.lower() in exts:
                found.setdefault(str(path.resolve()), path.resolve())
            else:
                logger.warning("Unsupported file type: %s", path)
            continue

        if not path.is_dir():
            logger.warning("No such file or directory: %s", path)
            continue

        candidates = path.rglob("*") if recursive else path.iterdir()
        for candidate in candidates:
            if not candidate.is_file() or candidate.suffix.lower() not in exts:
                continue
            if _is_hidden(candidate.relative_to(path)):
                continue
            found.setdefault(str(candidate.resolve()), candidate.resolve())

    logger.debug("Collected %d images", len(found))
    return [found[key] for key in sorted(found)]
