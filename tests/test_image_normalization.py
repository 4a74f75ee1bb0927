"""Tests for image resizing and decoding helpers."""
import io

import pytest
from PIL import Image

from drone_dataset_generator import (
    DecodeFailedError,
    image_dimensions,
    normalize_image,
    sniff_mime_type,
)


class TestNormalizeImage:

    @pytest.mark.parametrize("source_size,target_size", [
        ((1024, 1024), (640, 640)),
        ((1024, 576), (640, 640)),
        ((300, 200), (1280, 720)),
        ((768, 1024), (416, 832)),
    ])
    def test_output_matches_target_exactly(self, make_image, source_size, target_size):
        source = make_image(*source_size, fmt="PNG")

        result = normalize_image(source, *target_size)

        assert image_dimensions(result) == target_size

    def test_output_is_jpeg(self, make_image):
        result = normalize_image(make_image(100, 100, fmt="PNG"), 64, 64)

        assert sniff_mime_type(result) == "image/jpeg"

    def test_idempotent_dimensions(self, make_image):
        once = normalize_image(make_image(1000, 500), 640, 480)
        twice = normalize_image(once, 640, 480)

        assert image_dimensions(twice) == (640, 480)

    def test_stretches_instead_of_padding(self):
        # Left half red, right half blue; after stretching the split stays in the middle
        source = Image.new("RGB", (200, 100), color=(0, 0, 255))
        source.paste((255, 0, 0), (0, 0, 100, 100))
        buffer = io.BytesIO()
        source.save(buffer, format="PNG")

        result = Image.open(io.BytesIO(normalize_image(buffer.getvalue(), 400, 400)))

        left = result.getpixel((50, 200))
        right = result.getpixel((350, 200))
        corner = result.getpixel((5, 5))
        assert left[0] > 200 and left[2] < 60
        assert right[2] > 200 and right[0] < 60
        # No letterbox bars: the top-left corner is still image content
        assert corner[0] > 200

    def test_accepts_non_rgb_sources(self):
        buffer = io.BytesIO()
        Image.new("RGBA", (50, 80), color=(10, 20, 30, 128)).save(buffer, format="PNG")

        result = normalize_image(buffer.getvalue(), 32, 32)

        assert image_dimensions(result) == (32, 32)

    def test_garbage_raises_decode_failed(self):
        with pytest.raises(DecodeFailedError):
            normalize_image(b"definitely not an image", 640, 640)

    def test_empty_bytes_raise_decode_failed(self):
        with pytest.raises(DecodeFailedError):
            normalize_image(b"", 640, 640)

    def test_truncated_image_raises_decode_failed(self, make_image):
        data = make_image(400, 400, fmt="JPEG")

        with pytest.raises(DecodeFailedError):
            normalize_image(data[: len(data) // 2], 640, 640)

    @pytest.mark.parametrize("width,height", [(0, 640), (640, -1)])
    def test_invalid_target_size(self, make_image, width, height):
        with pytest.raises(ValueError):
            normalize_image(make_image(10, 10), width, height)


class TestImageHelpers:

    def test_sniff_png(self, make_image):
        assert sniff_mime_type(make_image(10, 10, fmt="PNG")) == "image/png"

    def test_sniff_falls_back_to_jpeg(self):
        assert sniff_mime_type(b"???") == "image/jpeg"

    def test_image_dimensions_rejects_garbage(self):
        with pytest.raises(DecodeFailedError):
            image_dimensions(b"nope")
