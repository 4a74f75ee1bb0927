"""Shared fixtures for the drone dataset generator tests."""
import io
import logging

import pytest
from PIL import Image

from drone_dataset_generator import (
    GenerationClient,
    GenerationFailedError,
    NoDetectionResultError,
    PipelineConfig,
    RawDetectionBox,
    ResolvedItemParameters,
)


def _encode_image(width, height, color=(120, 130, 140), fmt="JPEG"):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=color).save(buffer, format=fmt)
    return buffer.getvalue()


class FakeGenerationClient(GenerationClient):
    """Scripted client: fails on chosen call indices, records every call."""

    def __init__(
        self,
        fail_synthesis_at=(),
        fail_detection_at=(),
        box=None,
        image_size=(1024, 768),
        raw_image=None,
        configured=True,
    ):
        self.fail_synthesis_at = set(fail_synthesis_at)
        self.fail_detection_at = set(fail_detection_at)
        self.box = box or RawDetectionBox(ymin=250, xmin=250, ymax=750, xmax=500)
        self.image_size = image_size
        self.raw_image = raw_image
        self.configured = configured
        self.synthesis_calls = []
        self.detection_calls = []

    def is_configured(self):
        return self.configured

    async def synthesize_view(self, reference_image, params, object_description, aspect_ratio="1:1"):
        index = len(self.synthesis_calls)
        self.synthesis_calls.append(
            {"params": params, "object": object_description, "aspect_ratio": aspect_ratio}
        )
        if index in self.fail_synthesis_at:
            raise GenerationFailedError(f"quota exceeded for item {index}")
        if self.raw_image is not None:
            return self.raw_image
        return _encode_image(*self.image_size, fmt="PNG")

    async def detect_object(self, image, object_description):
        index = len(self.detection_calls)
        self.detection_calls.append(image)
        if index in self.fail_detection_at:
            raise NoDetectionResultError("No text response for detection")
        return self.box


@pytest.fixture
def make_image():
    """Factory for encoded solid-color images."""
    return _encode_image


@pytest.fixture
def reference_image():
    return _encode_image(320, 240)


@pytest.fixture
def fake_client_cls():
    return FakeGenerationClient


@pytest.fixture
def resolved_params():
    return ResolvedItemParameters(
        lighting="Sunset, golden hour",
        background="Green grass field",
        altitude="Medium (30m)",
        angle="Top-down (90°)",
        weather="Clear, high visibility",
    )


@pytest.fixture
def pipeline_config(tmp_path):
    return PipelineConfig(
        api_key="test_api_key",
        output_path=tmp_path / "out" / "dataset.zip",
        log_dir=tmp_path / "logs",
        seed=1234,
    )


@pytest.fixture
def test_logger():
    logger = logging.getLogger("tests.drone_dataset_generator")
    logger.setLevel(logging.DEBUG)
    return logger
