# services/ingestion/normalizer.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from services.ingestion.payload import ImagePayload, RawImage

logger = logging.getLogger(__name__)

OUTPUT_MIME_TYPE = "image/jpeg"


class UnsupportedImageFormat(ValueError):
    """Input is not a decodable raster image."""


@dataclass(frozen=True)
class NormalizePolicy:
    max_edge: int = 800
    quality: float = 0.6

    def __post_init__(self) -> None:
        if self.max_edge <= 0:
            raise ValueError(f"max_edge must be positive, got {self.max_edge}")
        if not 0.0 < self.quality <= 1.0:
            raise ValueError(f"quality must be in (0, 1], got {self.quality}")


# Thumbnail-grade symptom photos vs. label scans that still need legible text.
PHOTO_POLICY = NormalizePolicy(max_edge=800, quality=0.6)
LABEL_POLICY = NormalizePolicy(max_edge=1600, quality=0.9)


def decode_image_with_exif(contents: bytes) -> np.ndarray:
    try:
        img_pil = Image.open(BytesIO(contents))
        img_pil = ImageOps.exif_transpose(img_pil)
        img_rgb = np.array(img_pil.convert("RGB"))
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise UnsupportedImageFormat(f"Could not decode image: {e}") from e
    return cv2.cvtColor(img_rgb, cv2.COLOR_RGB2BGR)


def target_size(width: int, height: int, max_edge: int) -> tuple[int, int]:
    """Aspect-preserving size whose longer edge is at most max_edge."""
    longest = max(width, height)
    if longest <= max_edge:
        return width, height
    scale = max_edge / longest
    return max(1, round(width * scale)), max(1, round(height * scale))


def resize_if_huge(img: np.ndarray, max_dim: int) -> np.ndarray:
    h, w = img.shape[:2]
    new_w, new_h = target_size(w, h, max_dim)
    if (new_w, new_h) == (w, h):
        return img
    return cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)


def normalize(raw: RawImage, policy: NormalizePolicy = PHOTO_POLICY) -> ImagePayload:
    """
    Decode, bound and re-encode a captured image as JPEG.

    Pure transform: no I/O beyond in-memory decode/encode.
    """
    if not raw.data:
        raise UnsupportedImageFormat("Empty image input.")

    img_bgr = decode_image_with_exif(raw.data)
    if img_bgr is None or img_bgr.size == 0:
        raise UnsupportedImageFormat("Decoded image is empty.")

    img_bgr = resize_if_huge(img_bgr, policy.max_edge)
    ok, buf = cv2.imencode(".jpg", img_bgr, [cv2.IMWRITE_JPEG_QUALITY, int(round(policy.quality * 100))])
    if not ok:
        raise UnsupportedImageFormat("Could not re-encode image.")

    h, w = img_bgr.shape[:2]
    logger.debug("normalized %s image %r to %dx%d", raw.source_kind.value, raw.filename, w, h)
    return ImagePayload(
        mime_type=OUTPUT_MIME_TYPE,
        data=buf.tobytes(),
        width=int(w),
        height=int(h),
        source=raw,
    )
