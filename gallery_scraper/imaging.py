from __future__ import annotations

import io
import logging
from typing import Optional

from PIL import Image, ImageStat, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_SCREENSHOT_WIDTH = 1600
MAX_SCREENSHOT_HEIGHT = 5000
MIN_ENCODED_BYTES = 10_000

# Blank heuristic: near-uniform pixels that are also near-white or near-black.
BLANK_MAX_STDDEV = 1.5
BLANK_WHITE_MEAN = 250
BLANK_BLACK_MEAN = 5


def is_likely_blank(data: bytes) -> bool:
    """True when the image has almost no variance and is all white or all black."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgb = img.convert("RGB")
            stat = ImageStat.Stat(rgb)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.debug("[imaging] blank check could not decode image: %s", e)
        return False

    mean = sum(stat.mean[:3]) / 3.0
    stddev = sum(stat.stddev[:3]) / 3.0
    return stddev < BLANK_MAX_STDDEV and (mean > BLANK_WHITE_MEAN or mean < BLANK_BLACK_MEAN)


def encode_webp(
    data: bytes,
    *,
    quality: int = 75,
    max_width: int = MAX_SCREENSHOT_WIDTH,
    max_height: int = MAX_SCREENSHOT_HEIGHT,
) -> bytes:
    """Fit inside max_width x max_height (never enlarging) and re-encode as WebP."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail((max_width, max_height), Image.Resampling.LANCZOS)
        out = io.BytesIO()
        img.save(out, format="WEBP", quality=max(1, min(100, int(quality))))
        return out.getvalue()


def encode_screenshot(data: bytes, *, quality: int = 75, min_bytes: int = MIN_ENCODED_BYTES) -> Optional[bytes]:
    """WebP bytes, or None when the encoded image is too small to be a real page."""
    encoded = encode_webp(data, quality=quality)
    if len(encoded) < min_bytes:
        logger.warning("[imaging] encoded screenshot too small (%d bytes)", len(encoded))
        return None
    return encoded
