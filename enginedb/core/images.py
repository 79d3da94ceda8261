"""
Image collaborator.

The engine treats artwork as opaque blobs with a declared format tag. Pixel
level work is only needed for two things, both delegated here:

1. Validating a blob against its declared format (consistency checks).
2. Re-encoding lossless artwork as JPEG (artwork shrinking).

Both are CPU bound and synchronous; callers run them via `asyncio.to_thread`.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from enginedb.core.db.models import ArtworkFormat

logger = logging.getLogger(__name__)

# Declared tag -> format name reported by Pillow
_PIL_FORMATS: dict[ArtworkFormat, str] = {
    ArtworkFormat.JPEG: "JPEG",
    ArtworkFormat.PNG: "PNG",
    ArtworkFormat.BMP: "BMP",
    ArtworkFormat.GIF: "GIF",
    ArtworkFormat.WEBP: "WEBP",
    ArtworkFormat.TGA: "TGA",
}

# Formats worth converting to JPEG when shrinking artwork
LOSSLESS_FORMATS: frozenset[ArtworkFormat] = frozenset(
    {ArtworkFormat.PNG, ArtworkFormat.BMP, ArtworkFormat.TGA}
)


@dataclass(frozen=True, slots=True)
class ImageCheck:
    """Outcome of validating one blob: `ok`, or not ok with a reason."""

    ok: bool
    reason: str | None = None
    width: int | None = None
    height: int | None = None

    @classmethod
    def valid(cls, width: int, height: int) -> ImageCheck:
        return cls(ok=True, width=width, height=height)

    @classmethod
    def invalid(cls, reason: str) -> ImageCheck:
        return cls(ok=False, reason=reason)


@dataclass(frozen=True, slots=True)
class EncodedImage:
    data: bytes = field(repr=False)
    format: ArtworkFormat
    width: int
    height: int


class ImageValidator(Protocol):
    def validate(self, blob: bytes, declared_format: str | None) -> ImageCheck: ...


def _declared(tag: str | ArtworkFormat | None) -> ArtworkFormat | None:
    if tag is None or isinstance(tag, ArtworkFormat):
        return tag
    try:
        return ArtworkFormat(tag.lower())
    except ValueError:
        return None


class PillowImageValidator:
    """
    Validate artwork blobs with Pillow.

    A blob is valid when Pillow identifies it, its structure verifies, and
    the detected format matches the declared tag.
    """

    def validate(self, blob: bytes, declared_format: str | ArtworkFormat | None) -> ImageCheck:
        if not blob:
            return ImageCheck.invalid("empty image blob")
        if declared_format is None:
            return ImageCheck.invalid("no declared format")

        declared = _declared(declared_format)
        if declared is None:
            return ImageCheck.invalid(f"unknown declared format {declared_format!r}")

        try:
            with Image.open(io.BytesIO(blob)) as img:
                detected = img.format
                width, height = img.size
                img.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError) as e:
            return ImageCheck.invalid(str(e))
        except (OSError, SyntaxError, ValueError) as e:
            # Pillow reports truncated or damaged data with these
            return ImageCheck.invalid(f"{type(e).__name__}: {e}")

        expected = _PIL_FORMATS[declared]
        if detected != expected:
            return ImageCheck.invalid(f"declared {declared.value}, found {detected or 'unknown'}")
        return ImageCheck.valid(width, height)


def image_size(blob: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(blob)) as img:
        return img.size


def encode_jpeg(blob: bytes, *, quality: int = 70) -> EncodedImage:
    """
    Decode any Pillow-readable image and re-encode it as baseline JPEG.

    Transparency is flattened; palette and grayscale images become RGB.
    """
    with Image.open(io.BytesIO(blob)) as img:
        img.load()
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            rgba = img.convert("RGBA")
            rgb = Image.new("RGB", rgba.size, (0, 0, 0))
            rgb.paste(rgba, mask=rgba.getchannel("A"))
        else:
            rgb = img.convert("RGB")

    out = io.BytesIO()
    rgb.save(out, format="JPEG", quality=quality)
    return EncodedImage(
        data=out.getvalue(),
        format=ArtworkFormat.JPEG,
        width=rgb.width,
        height=rgb.height,
    )
