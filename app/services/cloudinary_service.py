"""
Cloudinary Image Upload Service
Stores compressed attendance photos and returns their public HTTPS URL.

Authentication: CLOUDINARY_CLOUD_NAME / CLOUDINARY_API_KEY / CLOUDINARY_API_SECRET.
"""
import base64
import logging

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

from app.config import Settings
from app.exceptions import ConfigurationError, UpstreamError

# Configure logging
logger = logging.getLogger(__name__)

SERVICE_NAME = "cloudinary"

CONTENT_TYPES = {
    "webp": "image/webp",
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
}


def configure_cloudinary(settings: Settings) -> None:
    """
    Configure the cloudinary SDK from settings.

    Raises ConfigurationError naming the first missing variable.
    """
    if not settings.CLOUDINARY_CLOUD_NAME:
        raise ConfigurationError("CLOUDINARY_CLOUD_NAME environment variable not set")
    if not settings.CLOUDINARY_API_KEY:
        raise ConfigurationError("CLOUDINARY_API_KEY environment variable not set")
    if not settings.CLOUDINARY_API_SECRET:
        raise ConfigurationError("CLOUDINARY_API_SECRET environment variable not set")

    cloudinary.config(
        cloud_name=settings.CLOUDINARY_CLOUD_NAME,
        api_key=settings.CLOUDINARY_API_KEY,
        api_secret=settings.CLOUDINARY_API_SECRET,
        secure=True
    )
    logger.info(f"Cloudinary configured successfully (cloud: {settings.CLOUDINARY_CLOUD_NAME})")


def upload_image_bytes(image_bytes: bytes, public_id: str, folder: str, fmt: str = "webp") -> str:
    """
    Upload raw image bytes with public access.

    Args:
        image_bytes: Encoded image
        public_id: Unique identifier (e.g. "attendance_U123_1704243600000")
        folder: Cloudinary folder
        fmt: Encoding of image_bytes, used for the data URI content type

    Returns:
        Secure HTTPS URL
    """
    full_public_id = f"{folder}/{public_id}" if folder else public_id
    content_type = CONTENT_TYPES.get(fmt, "application/octet-stream")

    logger.info(f"Bytes upload started: {full_public_id} ({len(image_bytes)} bytes)")

    base64_data = base64.b64encode(image_bytes).decode('utf-8')
    data_uri = f"data:{content_type};base64,{base64_data}"

    try:
        result = cloudinary.uploader.upload(
            data_uri,
            public_id=full_public_id,
            overwrite=True,
            resource_type="image",
            type="upload",
        )
    except CloudinaryError as e:
        logger.error(f"Bytes upload failed for {full_public_id}: {e}")
        raise UpstreamError(SERVICE_NAME, message=f"Upload failed: {e}")

    secure_url = result.get('secure_url')
    if not secure_url:
        logger.error(f"Bytes upload failed: No secure_url for {full_public_id}")
        raise UpstreamError(SERVICE_NAME, message="Upload response had no secure_url")

    logger.info(f"Bytes upload successful: {full_public_id} -> {secure_url}")
    return secure_url


def make_uploader(settings: Settings):
    """Uploader callable for ImagePipeline: (webp_bytes, public_id) -> url."""
    def upload(image_bytes: bytes, public_id: str) -> str:
        configure_cloudinary(settings)
        return upload_image_bytes(image_bytes, public_id, settings.CLOUDINARY_FOLDER)
    return upload
