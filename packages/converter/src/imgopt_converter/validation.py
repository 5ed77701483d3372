"""Source image validation run before any decode."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from imgopt_shared.errors import InvalidInput
from imgopt_shared.files import is_in_dir, mime_type_for
from imgopt_shared.models import ConversionSettings

logger = logging.getLogger(__name__)

FORMAT_MIME_TYPES: dict[str, str] = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "AVIF": "image/avif",
}


@dataclass(frozen=True)
class SourceInfo:
    path: Path
    mime_type: str
    width: int
    height: int
    size_bytes: int

    @property
    def format(self) -> str:
        return self.mime_type.split("/", 1)[1]


def validate_source(
    path: Path,
    settings: ConversionSettings,
    base_dir: Path | None = None,
) -> SourceInfo:
    """
    Check that path is a readable, allowed and reasonably sized image.

    Only the header is read; pixel data is decoded later by the engine.

    Raises:
        InvalidInput: On any violation
    """
    source = str(path)

    if base_dir is not None and not is_in_dir(base_dir, path):
        raise InvalidInput(source, "Source is outside the upload directory")
    if not path.is_file():
        raise InvalidInput(source, "Source file not found")

    ext_mime = mime_type_for(path)
    if ext_mime is None or ext_mime not in settings.allowed_mime_types:
        raise InvalidInput(source, f"File type not allowed ({path.suffix or 'no extension'})")

    size_bytes = path.stat().st_size
    if size_bytes == 0:
        raise InvalidInput(source, "Source file is empty")
    if size_bytes > settings.max_file_size:
        raise InvalidInput(source, f"Source exceeds {settings.max_file_size} bytes")

    try:
        with Image.open(path) as img:
            content_mime = FORMAT_MIME_TYPES.get(img.format or "")
            width, height = img.size
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise InvalidInput(source, f"Not a readable image ({type(e).__name__})") from e
    except OSError as e:
        raise InvalidInput(source, f"Cannot read source: {e}") from e

    if content_mime != ext_mime:
        raise InvalidInput(source, f"Content is {content_mime or 'unknown'}, extension says {ext_mime}")
    if width <= 0 or height <= 0:
        raise InvalidInput(source, "Image has no pixels")
    if width > settings.max_dimension or height > settings.max_dimension:
        raise InvalidInput(source, f"Image larger than {settings.max_dimension}px")

    logger.debug("Validated %s: %s %dx%d, %d bytes", path.name, content_mime, width, height, size_bytes)
    return SourceInfo(path, content_mime, width, height, size_bytes)
