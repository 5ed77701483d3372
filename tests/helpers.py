from __future__ import annotations

from pathlib import Path
from typing import Iterable

from PIL import Image

from imgopt_converter import BackendInfo, BackendRegistry, EncodeOptions, ImageBackend
from imgopt_shared.errors import ConversionError
from imgopt_store import QueueStore, create_db_engine


def make_image(
    path: Path,
    size: tuple[int, int] = (64, 48),
    fmt: str | None = None,
    mode: str = "RGB",
    exif: bytes | None = None,
) -> Path:
    image = Image.new(mode, size)
    # a gradient so encoders have something to compress
    pixels = image.load()
    for x in range(min(size[0], 64)):
        for y in range(min(size[1], 64)):
            value = (x * 4 % 256, y * 4 % 256, (x + y) % 256)
            pixels[x, y] = value + (255,) if mode == "RGBA" else value
    params = {"exif": exif} if exif else {}
    image.save(path, format=fmt, **params)
    return path


class FakeBackend(ImageBackend):
    """Writes PNG bytes under the derivative name and records every call."""

    def __init__(self, name: str = "fake", formats: Iterable[str] | None = ("webp", "avif"),
                 fail_formats: Iterable[str] = (), scale: float = 1.0):
        self.name = name
        self.formats = None if formats is None else frozenset(formats)
        self.fail_formats = set(fail_formats)
        self.scale = scale
        self.calls: list[tuple[str, tuple[int, int], EncodeOptions]] = []

    def probe(self) -> BackendInfo | None:
        if self.formats is None:
            return None
        return BackendInfo(self.name, "1.0", self.formats)

    def encode(self, image: Image.Image, output_path: Path, fmt: str, options: EncodeOptions) -> tuple[int, int]:
        self.calls.append((fmt, image.size, options))
        if fmt in self.fail_formats:
            raise ConversionError(fmt, "forced failure")
        if self.scale != 1.0:
            # like cwebp shrinking the image on a retry
            size = (max(1, int(image.width * self.scale)), max(1, int(image.height * self.scale)))
            image = image.resize(size)
        image.save(output_path, format="PNG")
        return image.size


def fake_registry(*backends: ImageBackend, self_test: bool = False) -> BackendRegistry:
    return BackendRegistry(list(backends) or [FakeBackend()], self_test=self_test)


def file_store(directory: Path, **kwargs) -> QueueStore:
    engine = create_db_engine(f"sqlite:///{directory / 'queue.db'}")
    return QueueStore(engine, **kwargs)
