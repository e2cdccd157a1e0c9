"""
Tests for image validation, WEBP compression and the upload pipeline.
Images are generated with Pillow; the uploader is a local function.

Run with: python -m pytest tests/test_image_service.py -v
"""
import io
import unittest

from PIL import Image

from app.exceptions import InvalidImageError
from app.services.image_service import (
    ImagePipeline,
    build_public_id,
    compress_to_webp,
    extract_image_metadata,
)
from app.validators import MAX_IMAGE_BYTES, detect_image_format, validate_image_buffer


def noise_image(width, height, fmt="JPEG"):
    """Noise keeps the encoded file comfortably above the 1KB floor."""
    img = Image.effect_noise((width, height), 80).convert("RGB")
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


class RecordingUploader:
    def __init__(self):
        self.calls = []

    def __call__(self, data, public_id):
        self.calls.append((data, public_id))
        return f"https://res.cloudinary.com/demo/image/upload/{public_id}.webp"


class TestImageValidation(unittest.TestCase):

    def test_accepts_real_jpeg(self):
        self.assertEqual(validate_image_buffer(noise_image(200, 200)), (True, ""))

    def test_rejects_too_small(self):
        ok, error = validate_image_buffer(b"\x89PNG" + b"\0" * 500)
        self.assertFalse(ok)
        self.assertIn("too small", error)

    def test_rejects_too_large(self):
        ok, error = validate_image_buffer(b"\xff\xd8\xff" + b"\0" * MAX_IMAGE_BYTES)
        self.assertFalse(ok)
        self.assertIn("too large", error)

    def test_rejects_unknown_signature(self):
        ok, error = validate_image_buffer(b"%PDF-1.4" + b"\0" * 4096)
        self.assertFalse(ok)
        self.assertEqual(error, "Unsupported image format")

    def test_signatures(self):
        self.assertEqual(detect_image_format(b"\xff\xd8\xff\xe0"), "jpeg")
        self.assertEqual(detect_image_format(b"\x89PNG\r\n"), "png")
        self.assertEqual(detect_image_format(b"GIF89a"), "gif")
        self.assertEqual(detect_image_format(b"RIFF....WEBP"), "webp")
        self.assertEqual(detect_image_format(b"BM6"), "bmp")
        self.assertIsNone(detect_image_format(b"hello"))


class TestCompression(unittest.TestCase):

    def test_large_image_fits_max_dimension(self):
        webp = compress_to_webp(noise_image(2400, 1000))
        with Image.open(io.BytesIO(webp)) as img:
            self.assertEqual(img.format, "WEBP")
            self.assertEqual(img.size, (1920, 800))

    def test_small_image_not_upscaled(self):
        webp = compress_to_webp(noise_image(400, 300, "PNG"))
        with Image.open(io.BytesIO(webp)) as img:
            self.assertEqual(img.size, (400, 300))

    def test_metadata(self):
        data = noise_image(320, 240, "PNG")
        meta = extract_image_metadata(data)
        self.assertEqual((meta.width, meta.height, meta.format, meta.size), (320, 240, "png", len(data)))

    def test_undecodable_bytes(self):
        with self.assertRaises(InvalidImageError):
            extract_image_metadata(b"\x89PNG" + b"\x01" * 2048)


class TestImagePipeline(unittest.IsolatedAsyncioTestCase):

    async def test_process_uploads_webp(self):
        uploader = RecordingUploader()
        pipeline = ImagePipeline(uploader, clock=lambda: 1700000000.5)
        processed = await pipeline.process(noise_image(2400, 1000), "user-1")

        self.assertEqual(len(uploader.calls), 1)
        data, public_id = uploader.calls[0]
        self.assertEqual(public_id, "attendance_user-1_1700000000500")
        self.assertEqual(detect_image_format(data), "webp")
        self.assertEqual(processed.url, "https://res.cloudinary.com/demo/image/upload/attendance_user-1_1700000000500.webp")
        self.assertEqual((processed.metadata.width, processed.metadata.height), (2400, 1000))
        self.assertEqual(processed.compressed_size, len(data))

    async def test_invalid_buffer_never_uploaded(self):
        uploader = RecordingUploader()
        pipeline = ImagePipeline(uploader)
        for bad in (b"", b"\xff\xd8\xff" + b"\0" * 100, b"not an image" * 200):
            with self.assertRaises(InvalidImageError):
                await pipeline.process(bad, "user-1")
        self.assertEqual(uploader.calls, [])

    def test_public_id(self):
        self.assertEqual(build_public_id("u9", 42), "attendance_u9_42")


if __name__ == "__main__":
    unittest.main()
