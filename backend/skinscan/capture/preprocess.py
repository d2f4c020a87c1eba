"""
Image preprocessing before upload.

Downsamples a captured blob so its longest side is at most `max_dimension`
and re-encodes it as JPEG. Aspect ratio is preserved and images are never
upscaled.
"""

import io

from PIL import Image, ImageOps, UnidentifiedImageError

from skinscan.core.exceptions import DecodeError
from skinscan.core.logging import get_logger

logger = get_logger("preprocess")

OUTPUT_MIME_TYPE = "image/jpeg"


def _jpeg_quality(quality: float) -> int:
    """Accept 0–1 (canvas style) or 1–100 (Pillow style)."""
    if quality <= 1:
        quality *= 100
    return max(1, min(95, int(round(quality))))


def target_size(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """Size after downscaling; unchanged when already within bounds."""
    ratio = min(1.0, max_dimension / max(width, height))
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def recompress(blob: bytes, max_dimension: int = 1024, quality: float = 0.85) -> bytes:
    """
    Downscale and re-encode `blob` to JPEG.
    Raises DecodeError when the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(blob)) as source:
            source.load()
            img = ImageOps.exif_transpose(source)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeError(f"Could not decode image: {exc}") from exc

    original = img.size
    new_size = target_size(img.width, img.height, max_dimension)
    if new_size != original:
        img = img.resize(new_size, Image.Resampling.LANCZOS)

    # JPEG has no alpha channel; flatten onto white
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, (255, 255, 255))
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        img = canvas
    elif img.mode != "RGB":
        img = img.convert("RGB")

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=_jpeg_quality(quality), optimize=True)
    data = buf.getvalue()

    logger.info(
        "Recompressed image: %dx%d → %dx%d (%d → %d bytes)",
        original[0], original[1], new_size[0], new_size[1], len(blob), len(data),
    )
    return data


def image_size(blob: bytes) -> tuple[int, int]:
    """Pixel dimensions of an encoded image."""
    try:
        with Image.open(io.BytesIO(blob)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as exc:
        raise DecodeError(f"Could not decode image: {exc}") from exc
