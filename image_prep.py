# image_prep.py
"""Image sniffing, box-fit re-encoding and byte-budget compression."""
import base64
import logging
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from errors import ImageDecodeError

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")

# Budget the browser aims for before uploading
CLIENT_MAX_BYTES = 250 * 1024
# Above this the gateway re-encodes on its own to keep the model input small
MODEL_INPUT_MAX_BYTES = 90 * 1024
# Hard upper bound for an upload
UPLOAD_MAX_BYTES = 10 * 1024 * 1024

COMPRESS_ROUNDS = 4
COMPRESS_START_SIZE = 1024
COMPRESS_START_QUALITY = 80
COMPRESS_QUALITY_STEP = 20
COMPRESS_MIN_QUALITY = 30
COMPRESS_MIN_SIZE = 256
THUMBNAIL_SIZE = 256
THUMBNAIL_QUALITY = 50

# (max edge, JPEG quality) steps for the gateway's own resize
SERVER_RESIZE_STEPS = ((1024, 80), (800, 70))


def sniff_mime_type(data: bytes) -> Optional[str]:
    """Detect the image MIME type from magic bytes; None when unknown."""
    if len(data) < 4:
        return None
    if data[0] == 0xFF and data[1] == 0xD8:
        return "image/jpeg"
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:3] == b"GIF":
        return "image/gif"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def resolve_mime_type(data: bytes, declared: Optional[str]) -> str:
    """Prefer what the bytes say; fall back to the declared content type."""
    sniffed = sniff_mime_type(data)
    if sniffed:
        return sniffed
    return (declared or "").split(";")[0].strip().lower()


def to_data_url(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("utf-8")
    return f"data:{mime_type};base64,{encoded}"


def encode_box_fit(data: bytes, max_size: int, quality: int) -> bytes:
    """Re-encode ``data`` as JPEG with its longer side clamped to ``max_size``.

    Aspect ratio is preserved and images are never enlarged. Raises
    ImageDecodeError when Pillow cannot read the input.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            if img.mode not in {"RGB", "L"}:
                img = img.convert("RGB")
            img.thumbnail((max_size, max_size))
            buffer = BytesIO()
            img.save(buffer, format="JPEG", quality=quality)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(message=str(exc)) from exc
    return buffer.getvalue()


def compress_until_under(
    data: bytes,
    max_bytes: int = CLIENT_MAX_BYTES,
    *,
    rounds: int = COMPRESS_ROUNDS,
    start_size: int = COMPRESS_START_SIZE,
    start_quality: int = COMPRESS_START_QUALITY,
    quality_step: int = COMPRESS_QUALITY_STEP,
    min_quality: int = COMPRESS_MIN_QUALITY,
    min_size: int = COMPRESS_MIN_SIZE,
    thumb_size: int = THUMBNAIL_SIZE,
    thumb_quality: int = THUMBNAIL_QUALITY,
) -> bytes:
    """Shrink an image until it fits ``max_bytes``, best effort.

    Every round re-encodes the previous round's output, so compression
    compounds. After ``rounds`` misses a final thumbnail pass is returned
    whatever its size; the ceiling is a target, not a guarantee.
    """
    quality = start_quality
    size_limit = start_size
    current = data
    for attempt in range(rounds):
        compressed = encode_box_fit(current, size_limit, quality)
        logger.debug(
            "Compression round %d: %d bytes (limit %dpx, quality %d)",
            attempt + 1,
            len(compressed),
            size_limit,
            quality,
        )
        if len(compressed) <= max_bytes:
            return compressed
        quality = max(min_quality, quality - quality_step)
        size_limit = max(min_size, size_limit // 2)
        current = compressed
    logger.info("Image still above %d bytes after %d rounds; using thumbnail", max_bytes, rounds)
    return encode_box_fit(current, thumb_size, thumb_quality)


def shrink_for_model(
    data: bytes,
    mime_type: str,
    threshold: int = MODEL_INPUT_MAX_BYTES,
) -> Tuple[bytes, str]:
    """Server-side resize that keeps the model input under ``threshold``.

    Each step starts from the original upload. If Pillow cannot decode the
    image the original bytes go out unchanged.
    """
    if len(data) <= threshold:
        return data, mime_type
    result = data
    for max_edge, quality in SERVER_RESIZE_STEPS:
        try:
            result = encode_box_fit(data, max_edge, quality)
        except ImageDecodeError as exc:
            logger.warning("Server-side resize failed, using original: %s", exc.message)
            return data, mime_type
        if len(result) <= threshold:
            break
    logger.debug("Resized upload from %d to %d bytes for the model", len(data), len(result))
    return result, "image/jpeg"
