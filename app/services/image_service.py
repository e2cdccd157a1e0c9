"""
Attendance Photo Pipeline
=========================
validate -> read metadata -> recompress to WEBP -> upload -> public URL

- Validation happens on the raw bytes before anything is decoded
  (1KB..10MB, JPEG/PNG/GIF/WEBP/BMP signature).
- Compression: WEBP quality 80, method 6, fit inside 1920x1920, never upscaled.
- Pillow work runs in the threadpool so the event loop keeps serving webhooks.
"""
import io
import logging
import time
from dataclasses import dataclass
from typing import Callable

from PIL import Image, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from app.exceptions import InvalidImageError
from app.validators import validate_image_buffer

logger = logging.getLogger(__name__)

MAX_DIMENSION = 1920
WEBP_QUALITY = 80
WEBP_METHOD = 6


@dataclass
class ImageMetadata:
    width: int
    height: int
    format: str
    size: int

    @property
    def size_kb(self) -> int:
        return round(self.size / 1024)


@dataclass
class ProcessedImage:
    url: str
    metadata: ImageMetadata
    compressed_size: int


def extract_image_metadata(buffer: bytes) -> ImageMetadata:
    try:
        with Image.open(io.BytesIO(buffer)) as img:
            return ImageMetadata(
                width=img.width,
                height=img.height,
                format=(img.format or "unknown").lower(),
                size=len(buffer),
            )
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidImageError(f"Image could not be decoded: {e}")


def compress_to_webp(buffer: bytes) -> bytes:
    """Re-encode as WEBP, shrinking to fit MAX_DIMENSION on both sides."""
    try:
        with Image.open(io.BytesIO(buffer)) as img:
            img.load()
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if "transparency" in img.info or img.mode in ("LA", "PA") else "RGB")
            # thumbnail() only ever shrinks
            img.thumbnail((MAX_DIMENSION, MAX_DIMENSION), Image.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="WEBP", quality=WEBP_QUALITY, method=WEBP_METHOD)
            return out.getvalue()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidImageError(f"Image could not be compressed: {e}")


def build_public_id(user_id: str, now_ms: int) -> str:
    return f"attendance_{user_id}_{now_ms}"


class ImagePipeline:
    """Turns a downloaded attachment into a stored WEBP and its URL."""

    def __init__(
        self,
        uploader: Callable[[bytes, str], str],
        clock: Callable[[], float] = time.time,
    ):
        # uploader(webp_bytes, public_id) -> url
        self.uploader = uploader
        self._clock = clock

    async def process(self, buffer: bytes, user_id: str) -> ProcessedImage:
        is_valid, error = validate_image_buffer(buffer)
        if not is_valid:
            raise InvalidImageError(error)

        metadata = await run_in_threadpool(extract_image_metadata, buffer)
        compressed = await run_in_threadpool(compress_to_webp, buffer)

        ratio = round((1 - len(compressed) / len(buffer)) * 100)
        logger.info(f"Image compressed: {len(buffer)} -> {len(compressed)} bytes ({ratio}% saved)")

        public_id = build_public_id(user_id, int(self._clock() * 1000))
        url = await run_in_threadpool(self.uploader, compressed, public_id)
        return ProcessedImage(url=url, metadata=metadata, compressed_size=len(compressed))
