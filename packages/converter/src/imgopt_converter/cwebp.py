"""
Wrapper for the cwebp command-line encoder.

Used by the minimal backend when Pillow has no WebP support:
- Maps quality/compression settings to cwebp flags
- Retries with a smaller output size on partition overflow or timeout
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from PIL import Image

from imgopt_shared.errors import ConversionError

logger = logging.getLogger(__name__)

CWEBP = "cwebp"
DEFAULT_TIMEOUT = 120.0


class CwebpError(ConversionError):
    """Raised when cwebp fails to convert an image."""

    def __init__(self, command: list[str], returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__("webp", f"cwebp rc={returncode}: {stderr.strip()}")


def cwebp_path() -> str | None:
    return shutil.which(CWEBP)


def run_cwebp(args: list[str], timeout: float = DEFAULT_TIMEOUT) -> tuple[int, str, str]:
    """Run cwebp with the given arguments."""
    try:
        result = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
            timeout=timeout,
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return 124, "", f"TimeoutExpired after {timeout}s"
    except FileNotFoundError:
        return 127, "", "cwebp not found. Install the webp package."


def cwebp_version(timeout: float = 10.0) -> str | None:
    returncode, stdout, _ = run_cwebp([CWEBP, "-version"], timeout)
    if returncode != 0:
        return None
    return stdout.strip() or None


def compression_to_method(level: int) -> int:
    """Map compression level 0..9 onto the WebP method range 0..6."""
    return round(max(0, min(9, level)) * 6 / 9)


def build_args(quality: int, compression_level: int, keep_metadata: bool) -> list[str]:
    return [
        "-q", str(quality),
        "-m", str(compression_to_method(compression_level)),
        "-metadata", "exif,icc" if keep_metadata else "none",
    ]


def _is_retryable(returncode: int, stderr: str) -> bool:
    if returncode == 124:
        return True
    return bool(stderr) and ("PARTITION0_OVERFLOW" in stderr or "Error code: 6" in stderr)


def _scaled_size(size: tuple[int, int], scale: float) -> tuple[int, int]:
    return max(1, int(size[0] * scale)), max(1, int(size[1] * scale))


def encode_webp(
    input_path: Path,
    output_path: Path,
    quality: int,
    compression_level: int = 6,
    keep_metadata: bool = False,
    max_retries: int = 3,
    timeout: float = DEFAULT_TIMEOUT,
) -> tuple[int, int]:
    """
    Encode input_path to WebP at output_path, shrinking on overflow.

    Returns:
        The (width, height) written, smaller than the input after a shrinking retry

    Raises:
        CwebpError: If all attempts fail
        FileNotFoundError: If input file doesn't exist
    """
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")
    with Image.open(input_path) as img:
        size = written = img.size

    base = [CWEBP, str(input_path), "-o", str(output_path), "-mt"]
    base += build_args(quality, compression_level, keep_metadata)

    cmd = base
    logger.debug("Running: %s", " ".join(cmd))
    returncode, _, stderr = run_cwebp(cmd, timeout)

    for attempt in range(1, max_retries + 1):
        if returncode == 0:
            return written
        if not _is_retryable(returncode, stderr):
            break

        scale = 1.0 - attempt * 0.1
        written = _scaled_size(size, scale)
        cmd = base + ["-resize", str(written[0]), str(written[1])]
        logger.info("cwebp retry %d/%d at scale %.1f", attempt, max_retries, scale)
        returncode, _, stderr = run_cwebp(cmd, timeout)

    if returncode == 0:
        return written
    raise CwebpError(cmd, returncode, stderr)
