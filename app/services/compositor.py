"""
No-crop aspect ratio formatting for generated dish photos.

Each output is a two-layer composite on a fixed canvas:

- Background: the source cover-resized to the canvas (center crop), heavily
  blurred. Only this layer ever loses pixels.
- Foreground: the whole source contain-resized into the canvas on a fully
  transparent layer, centered.

The foreground is alpha-blended over the background and flattened to JPEG.
The subject is never cropped and the output size always matches the canvas.
"""

from __future__ import annotations

import asyncio
import logging
from io import BytesIO
from typing import Dict, List, Sequence, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from app.api.v1.schemas import AspectRatio
from app.models.generation import ImageMetadata
from app.services.errors import (
    FileTooLarge,
    ImageProcessingError,
    ImageTooSmall,
    InvalidImageFormat,
)

logger = logging.getLogger(__name__)

# Output canvas (width, height) per aspect ratio, sized for social feeds.
ASPECT_TARGETS: Dict[AspectRatio, Tuple[int, int]] = {
    AspectRatio.PORTRAIT: (1080, 1350),
    AspectRatio.STORY: (1080, 1920),
    AspectRatio.LANDSCAPE: (1920, 1080),
    AspectRatio.SQUARE: (1080, 1080),
}

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MIN_WIDTH = 640
MIN_HEIGHT = 480
ACCEPTED_FORMATS = ("JPEG", "PNG")

BACKGROUND_BLUR_SIGMA = 30
BACKGROUND_JPEG_QUALITY = 80
OUTPUT_JPEG_QUALITY = 88

# DecompressionBombError subclasses Exception directly, not OSError.
DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)


def get_image_metadata(data: bytes) -> ImageMetadata:
    """Identify an encoded image without fully decoding it."""
    try:
        with Image.open(BytesIO(data)) as image:
            width, height = image.size
            fmt = image.format or "unknown"
    except DECODE_ERRORS as exc:
        raise InvalidImageFormat() from exc
    return ImageMetadata(width=width, height=height, format=fmt, size=len(data))


def validate_image(data: bytes) -> ImageMetadata:
    """
    Check an upload before any quota or generation work is done.

    Raises:
        FileTooLarge: more than 10 MiB
        InvalidImageFormat: not a decodable JPEG or PNG
        ImageTooSmall: smaller than 640x480
    """
    if len(data) > MAX_UPLOAD_BYTES:
        raise FileTooLarge()

    metadata = get_image_metadata(data)

    if metadata.format not in ACCEPTED_FORMATS:
        raise InvalidImageFormat()

    if metadata.width < MIN_WIDTH or metadata.height < MIN_HEIGHT:
        raise ImageTooSmall()

    return metadata


def _decode_rgba(data: bytes) -> np.ndarray:
    with Image.open(BytesIO(data)) as image:
        return np.array(image.convert("RGBA"))


def _cover_resize(image: np.ndarray, target_w: int, target_h: int) -> np.ndarray:
    """Scale to fill the canvas, then crop the overflow around the center."""
    h, w = image.shape[:2]
    scale = max(target_w / w, target_h / h)
    new_w = max(target_w, int(round(w * scale)))
    new_h = max(target_h, int(round(h * scale)))

    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LANCZOS4)

    offset_x = (new_w - target_w) // 2
    offset_y = (new_h - target_h) // 2
    return np.ascontiguousarray(resized[offset_y : offset_y + target_h, offset_x : offset_x + target_w])


def _contain_resize(image: np.ndarray, target_w: int, target_h: int) -> np.ndarray:
    """Scale to fit inside the canvas, centered on a fully transparent RGBA layer."""
    h, w = image.shape[:2]
    scale = min(target_w / w, target_h / h)
    new_w = min(target_w, max(1, int(round(w * scale))))
    new_h = min(target_h, max(1, int(round(h * scale))))

    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LANCZOS4)

    canvas = np.zeros((target_h, target_w, 4), dtype=np.uint8)
    offset_x = (target_w - new_w) // 2
    offset_y = (target_h - new_h) // 2
    canvas[offset_y : offset_y + new_h, offset_x : offset_x + new_w] = resized
    return canvas


def _encode_jpeg(rgb: np.ndarray, quality: int, optimize: bool = False) -> bytes:
    buffer = BytesIO()
    Image.fromarray(rgb).save(
        buffer,
        format="JPEG",
        quality=quality,
        optimize=optimize,
        progressive=optimize,
    )
    return buffer.getvalue()


def _build_background(rgba: np.ndarray, target_w: int, target_h: int) -> np.ndarray:
    rgb = np.ascontiguousarray(rgba[:, :, :3])
    cover = _cover_resize(rgb, target_w, target_h)
    blurred = cv2.GaussianBlur(cover, (0, 0), sigmaX=BACKGROUND_BLUR_SIGMA)
    # The backdrop is never focal content; a lossy pass is acceptable.
    encoded = _encode_jpeg(blurred, BACKGROUND_JPEG_QUALITY)
    with Image.open(BytesIO(encoded)) as image:
        return np.array(image.convert("RGB"))


def _alpha_composite(foreground: np.ndarray, background: np.ndarray) -> np.ndarray:
    alpha = foreground[:, :, 3:4].astype(np.float32) / 255.0
    fg = foreground[:, :, :3].astype(np.float32)
    bg = background.astype(np.float32)
    blended = fg * alpha + bg * (1.0 - alpha)
    return np.clip(np.rint(blended), 0, 255).astype(np.uint8)


def format_image(data: bytes, aspect: AspectRatio | str) -> bytes:
    """
    Reformat one encoded image to the canvas for `aspect`, returning JPEG bytes.

    Raises:
        ImageProcessingError: the image cannot be decoded or composited
    """
    target_w, target_h = ASPECT_TARGETS[AspectRatio(aspect)]

    try:
        rgba = _decode_rgba(data)
        background = _build_background(rgba, target_w, target_h)
        foreground = _contain_resize(rgba, target_w, target_h)
        output = _alpha_composite(foreground, background)
        return _encode_jpeg(output, OUTPUT_JPEG_QUALITY, optimize=True)
    except DECODE_ERRORS + (cv2.error,) as exc:
        logger.error("Image processing failed: %s", exc)
        raise ImageProcessingError() from exc


async def format_all(images: Sequence[bytes], aspect: AspectRatio | str) -> List[bytes]:
    """
    Format every image concurrently. Results keep the input order.

    The first failure is propagated and the remaining tasks are cancelled;
    there is no partial result.
    """
    aspect = AspectRatio(aspect)
    tasks = [asyncio.create_task(asyncio.to_thread(format_image, image, aspect)) for image in images]
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        for task in tasks:
            task.cancel()
        raise
