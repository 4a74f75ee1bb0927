#!/usr/bin/env python3
"""
Synthetic Drone-View Dataset Generator for YOLO Training

This script builds a labeled object-detection dataset for a single object class.
Starting from one reference photo of the object, it asks Gemini to re-render the
object as seen from a drone under varied environmental conditions, stretches each
render to the exact training resolution, asks Gemini again to localize the object,
and packages everything as a YOLO dataset archive (images, labels, data.yaml).

The pipeline is designed to be:
- Observable: every item carries its own status and the run reports progress per item
- Fault-tolerant: a failed item is recorded and the run moves on to the next one
- Reproducible: environment sampling can be seeded
- Exact: boxes are computed in the same (stretched) frame as the saved image

Usage:
    python drone_dataset_generator.py --reference car.jpg --label car --count 20 -o dataset.zip
"""

import os
import sys
import io
import json
import math
import random
import logging
import argparse
import asyncio
import time
import zipfile
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, field, asdict, replace
from typing import Callable, Iterable, Optional, Sequence, Union
from abc import ABC, abstractmethod
from enum import Enum

# Load .env file if it exists
def _load_env():
    env_path = Path(__file__).parent / ".env"
    if env_path.exists():
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    os.environ.setdefault(key.strip(), value.strip())

_load_env()

# Third-party imports
try:
    import numpy as np
    import yaml
    from PIL import Image, UnidentifiedImageError
    from google import genai
    from google.genai import types
except ImportError as e:
    print(f"Missing required dependency: {e}")
    print("Install with: pip install pillow google-genai numpy pyyaml")
    sys.exit(1)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class PipelineConfig:
    """
    Run-independent settings for the pipeline.

    Everything the user picks per dataset (resolution, count, environment)
    lives in GenerationParameters; this holds the service, output and
    logging knobs.
    """

    # API configuration
    api_key: Optional[str] = None
    synthesis_model: str = "gemini-2.5-flash-image"  # Image generation/editing model
    detection_model: str = "gemini-2.5-flash"  # Fast enough for a single bounding box

    # Output configuration
    output_path: Path = field(default_factory=lambda: Path("./yolo_drone_dataset.zip"))
    log_dir: Path = field(default_factory=lambda: Path("./logs"))
    jpeg_quality: int = 90
    include_metadata: bool = False  # Adds metadata/<id>.json to the archive

    # Seed for environment sampling; None uses system entropy
    seed: Optional[int] = None

    # Logging configuration
    log_level: int = logging.INFO

    def __post_init__(self):
        """Validate and convert paths after initialization."""
        self.output_path = Path(self.output_path)
        self.log_dir = Path(self.log_dir)
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError(f"jpeg_quality must be between 1 and 100, got {self.jpeg_quality}")


def get_api_key_from_env() -> Optional[str]:
    """Read the Gemini credential from GOOGLE_API_KEY, falling back to API_KEY."""
    return os.environ.get("GOOGLE_API_KEY") or os.environ.get("API_KEY")


# =============================================================================
# ERRORS
# =============================================================================

class DatasetGenerationError(Exception):
    """Base class for every error raised by the dataset pipeline."""
    pass


class PreconditionError(DatasetGenerationError):
    """A run-level requirement is not met; no item is started."""
    pass


class MissingCredentialError(PreconditionError):
    """No Gemini API key is configured."""
    pass


class MissingReferenceImageError(PreconditionError):
    """No reference image of the object was supplied."""
    pass


class MissingAngleSelectionError(PreconditionError):
    """The camera-angle selection is empty."""
    pass


class GenerationFailedError(DatasetGenerationError):
    """The synthesis request failed (transport, auth, quota...)."""
    pass


class NoImageReturnedError(GenerationFailedError):
    """The synthesis response contained no image payload."""
    pass


class DetectionFailedError(DatasetGenerationError):
    """The localization request failed."""
    pass


class NoDetectionResultError(DetectionFailedError):
    """The localization response had no parsable bounding box."""
    pass


class DecodeFailedError(DatasetGenerationError):
    """A generated image could not be decoded for resizing."""
    pass


# =============================================================================
# ENVIRONMENT OPTIONS
# =============================================================================

RANDOM_OPTION = "Random"


class LightingCondition(Enum):
    SUNNY = "Sunny, harsh shadows"
    OVERCAST = "Overcast, soft lighting"
    SUNSET = "Sunset, golden hour"
    NIGHT = "Night, artificial street lighting"


class WeatherCondition(Enum):
    CLEAR = "Clear, high visibility"
    FOGGY = "Foggy, heavy smog, atmospheric haze, low visibility"
    DUSTY = "Dusty, sandstorm, particulate matter in air, yellow tint"
    RAINY = "Rainy, wet surfaces, puddles, falling droplets"
    CLOUDY = "Cloudy, overcast sky"


class BackgroundType(Enum):
    URBAN = "Urban street, asphalt"
    CONSTRUCTION = "Construction site, cranes, raw materials, dirt, unfinished structures"
    GRASS = "Green grass field"
    DIRT = "Dirt ground, dry earth"
    CONCRETE = "Concrete pavement"
    SNOW = "Snowy ground"
    SAND = "Sandy desert"


ALTITUDE_OPTIONS = [
    "Low (10m)",
    "Medium (30m)",
    "High (50m)",
    "Very High (100m)",
]

ANGLE_OPTIONS = [
    "Top-down (90°)",
    "Steep (75°)",
    "High Angle (60°)",
    "Standard (45°)",
    "Low Angle (30°)",
    "Grazing (15°)",
]

DEFAULT_ANGLES = ["Standard (45°)"]

OptionSource = Union[Sequence[str], type]


def option_values(options: OptionSource) -> list[str]:
    """Return the concrete values of an option list or an option Enum."""
    if isinstance(options, type) and issubclass(options, Enum):
        return [member.value for member in options]
    return list(options)


def match_option(text: str, options: OptionSource) -> Optional[str]:
    """
    Find the option a user typed.

    Accepts the exact value, an Enum member name ("SUNNY") or the short label
    before the parenthesis ("Standard" for "Standard (45°)"), case-insensitively.
    """
    wanted = text.strip()
    values = option_values(options)
    if wanted in values:
        return wanted

    lowered = wanted.lower()
    if isinstance(options, type) and issubclass(options, Enum):
        for member in options:
            if member.name.lower() == lowered:
                return member.value

    for value in values:
        if value.lower() == lowered or value.split(" (")[0].split(",")[0].lower() == lowered:
            return value
    return None


@dataclass(frozen=True)
class AxisSelection:
    """
    User choice for one environment axis: a fixed value, or "let the system pick".

    A random selection is resolved to a concrete value once per item, so the
    sentinel never reaches prompts or metadata.
    """
    value: Optional[str] = None

    @classmethod
    def randomized(cls) -> "AxisSelection":
        return cls(None)

    @classmethod
    def fixed(cls, value: str) -> "AxisSelection":
        if not value or value == RANDOM_OPTION:
            raise ValueError(f"A fixed selection needs a concrete value, got {value!r}")
        return cls(value)

    @classmethod
    def parse(cls, text: str, options: OptionSource) -> "AxisSelection":
        """Parse CLI/UI text into a selection, raising ValueError on unknown values."""
        if text.strip().lower() == RANDOM_OPTION.lower():
            return cls.randomized()
        value = match_option(text, options)
        if value is None:
            choices = ", ".join(option_values(options))
            raise ValueError(f"'{text}' is not a valid option; use '{RANDOM_OPTION}' or one of: {choices}")
        return cls.fixed(value)

    @property
    def is_random(self) -> bool:
        return self.value is None

    def resolve(self, options: OptionSource, rng: random.Random) -> str:
        if self.is_random:
            return rng.choice(option_values(options))
        return self.value

    def __str__(self) -> str:
        return RANDOM_OPTION if self.is_random else self.value


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class GenerationParameters:
    """
    Everything the user configures for one dataset run.

    The camera angle works differently from the other axes: the user selects
    a set of allowed angles and each item draws one of them uniformly. An
    empty set is accepted here and rejected when the run starts.
    """
    count: int = 3
    width: int = 640
    height: int = 640
    lighting: AxisSelection = field(default_factory=AxisSelection.randomized)
    background: AxisSelection = field(default_factory=AxisSelection.randomized)
    altitude: AxisSelection = field(default_factory=AxisSelection.randomized)
    weather: AxisSelection = field(default_factory=AxisSelection.randomized)
    angles: list[str] = field(default_factory=lambda: list(DEFAULT_ANGLES))

    def __post_init__(self):
        """Validate sizes and the angle set."""
        for name in ("count", "width", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

        self.angles = list(self.angles)
        if any(angle == RANDOM_OPTION for angle in self.angles):
            raise ValueError("Camera angles must be concrete values, not 'Random'")

    def resolve(self, rng: random.Random) -> "ResolvedItemParameters":
        """Sample one concrete environment for a single item."""
        return ResolvedItemParameters(
            lighting=self.lighting.resolve(LightingCondition, rng),
            background=self.background.resolve(BackgroundType, rng),
            altitude=self.altitude.resolve(ALTITUDE_OPTIONS, rng),
            weather=self.weather.resolve(WeatherCondition, rng),
            angle=rng.choice(self.angles),
        )


@dataclass(frozen=True)
class ResolvedItemParameters:
    """The concrete environment one item was generated with."""
    lighting: str
    background: str
    altitude: str
    angle: str
    weather: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class ItemStatus(Enum):
    """
    Per-item lifecycle.

    generating -> detecting -> completed, or generating|detecting -> failed.
    """
    GENERATING = "generating"
    DETECTING = "detecting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.FAILED)


BOX_FIELDS = ("ymin", "xmin", "ymax", "xmax")


@dataclass(frozen=True)
class RawDetectionBox:
    """
    Box as returned by the localization call.

    Corners are either on a 0-1 or a 0-1000 scale; see detect_box_scale().
    """
    ymin: float
    xmin: float
    ymax: float
    xmax: float

    @classmethod
    def from_mapping(cls, data) -> "RawDetectionBox":
        """Build a box from a decoded JSON payload."""
        if not isinstance(data, dict):
            raise NoDetectionResultError(f"Expected a JSON object with {', '.join(BOX_FIELDS)}, got {type(data).__name__}")

        missing = [name for name in BOX_FIELDS if name not in data]
        if missing:
            raise NoDetectionResultError(f"Detection result is missing fields: {', '.join(missing)}")

        values = {}
        for name in BOX_FIELDS:
            raw = data[name]
            if isinstance(raw, bool) or not isinstance(raw, (int, float)) or not math.isfinite(raw):
                raise NoDetectionResultError(f"Detection field '{name}' is not a finite number: {raw!r}")
            values[name] = raw
        return cls(**values)


@dataclass(frozen=True)
class NormalizedBoundingBox:
    """YOLO box: center and size as fractions of the image, each in [0, 1]."""
    x_center: float
    y_center: float
    width: float
    height: float

    def __post_init__(self):
        for name in ("x_center", "y_center", "width", "height"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class DatasetItem:
    """
    One generated sample and where it is in its lifecycle.

    Items are owned by the pipeline; everything handed out to callers is a
    detached copy made with snapshot().
    """
    id: str
    parameters: ResolvedItemParameters
    status: ItemStatus = ItemStatus.GENERATING
    image: Optional[bytes] = None  # JPEG at the target resolution
    bbox: Optional[NormalizedBoundingBox] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def is_exportable(self) -> bool:
        return self.status is ItemStatus.COMPLETED and self.bbox is not None and bool(self.image)

    def snapshot(self) -> "DatasetItem":
        return replace(self)

    def to_metadata(self) -> dict:
        """Describe the item for metadata/<id>.json."""
        return {
            "id": self.id,
            "status": self.status.value,
            "created_at": self.created_at,
            "parameters": self.parameters.to_dict(),
            "bbox": self.bbox.to_dict() if self.bbox else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class GenerationProgress:
    current: int
    total: int

    @property
    def fraction(self) -> float:
        return self.current / self.total if self.total else 0.0


# =============================================================================
# COORDINATE TRANSFORMS
# =============================================================================

DETECTION_SCALE = 1000.0

# Aspect ratios the image model accepts, in tie-break order
ASPECT_RATIOS: list[tuple[str, float]] = [
    ("1:1", 1.0),
    ("3:4", 0.75),
    ("4:3", 1.333),
    ("9:16", 0.5625),
    ("16:9", 1.777),
]


def detect_box_scale(box: RawDetectionBox) -> float:
    """
    Guess which scale a detection box is expressed in.

    Gemini is asked for 0-1000 coordinates but sometimes answers on 0-1. The
    service gives no scale flag, so the scale is inferred from ymax: anything
    above 1 means 0-1000. Known failure mode: a genuine 0-1000 box whose ymax
    is <= 1 (an object hugging the top edge) is read as already normalized.
    """
    return DETECTION_SCALE if box.ymax > 1 else 1.0


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def convert_detection_to_normalized_box(
    box: RawDetectionBox,
    image_width: int,
    image_height: int
) -> NormalizedBoundingBox:
    """
    Convert a corner box from the detector into a YOLO center box.

    The image dimensions are part of the signature so callers pass the frame
    the box belongs to; the corners are already relative, so they do not
    enter the computation. Every output field is clamped into [0, 1], which
    means malformed input yields a degenerate box rather than an error.
    """
    scale = detect_box_scale(box)

    ymin = box.ymin / scale
    xmin = box.xmin / scale
    ymax = box.ymax / scale
    xmax = box.xmax / scale

    box_width = xmax - xmin
    box_height = ymax - ymin
    x_center = xmin + box_width / 2
    y_center = ymin + box_height / 2

    return NormalizedBoundingBox(
        x_center=_clamp_unit(x_center),
        y_center=_clamp_unit(y_center),
        width=_clamp_unit(box_width),
        height=_clamp_unit(box_height),
    )


def resolve_aspect_ratio(width: int, height: int) -> str:
    """Return the supported aspect ratio closest to width/height (first match wins ties)."""
    target = width / height
    best_key, best_value = ASPECT_RATIOS[0]
    for key, value in ASPECT_RATIOS[1:]:
        if abs(value - target) < abs(best_value - target):
            best_key, best_value = key, value
    return best_key


def format_yolo_line(class_id: int, box: NormalizedBoundingBox) -> str:
    """Format one YOLO label line: <class_id> <x_center> <y_center> <width> <height>."""
    return f"{class_id} {box.x_center:.6f} {box.y_center:.6f} {box.width:.6f} {box.height:.6f}"


# =============================================================================
# IMAGE NORMALIZATION
# =============================================================================

def sniff_mime_type(image_bytes: bytes, default: str = "image/jpeg") -> str:
    """Best-effort MIME type of encoded image bytes."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            return Image.MIME.get(image.format, default)
    except (UnidentifiedImageError, OSError):
        return default


def image_dimensions(image_bytes: bytes) -> tuple[int, int]:
    """Return (width, height) of encoded image bytes."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            return image.size
    except (UnidentifiedImageError, OSError) as e:
        raise DecodeFailedError(f"Could not decode image: {e}") from e


def normalize_image(
    image_bytes: bytes,
    target_width: int,
    target_height: int,
    quality: int = 90
) -> bytes:
    """
    Stretch an encoded image to exactly target_width x target_height.

    The aspect ratio is deliberately not preserved (no padding, no crop):
    detection runs on the stretched result, so the saved image and its label
    share one frame. Output is always JPEG.

    Raises:
        DecodeFailedError: if the source bytes cannot be decoded.
    """
    if target_width <= 0 or target_height <= 0:
        raise ValueError(f"Target size must be positive, got {target_width}x{target_height}")

    try:
        with Image.open(io.BytesIO(image_bytes)) as source:
            source.load()
            image = source.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise DecodeFailedError(f"Could not decode generated image: {e}") from e

    target_size = (target_width, target_height)
    if image.size != target_size:
        image = image.resize(target_size, Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


# =============================================================================
# PROMPT CONSTRUCTION
# =============================================================================

class PromptBuilder:
    """Builds the instruction text for both Gemini calls."""

    SYNTHESIS_TEMPLATE = (
        "Generate a photorealistic, high-quality image of the provided object ({object}) "
        "but viewed from a {angle} drone perspective.\n"
        "\n"
        "Context & Environment:\n"
        "- Altitude: {altitude}\n"
        "- Background: {background}\n"
        "- Lighting: {lighting}\n"
        "- Weather/Atmosphere: {weather}\n"
        "- The object should be the main focus but integrated naturally into the environment.\n"
        "- Preserve the visual identity (colors, shape) of the reference object as much as possible.\n"
        "- The output must be a single, clear image."
    )

    DETECTION_TEMPLATE = (
        "Analyze this image and find the bounding box of the {object}.\n"
        "Return the bounding box coordinates [ymin, xmin, ymax, xmax] where values are scaled 0 to 1000.\n"
        "The box should be tight around the object."
    )

    def build_synthesis_prompt(self, params: ResolvedItemParameters, object_description: str) -> str:
        return self.SYNTHESIS_TEMPLATE.format(
            object=object_description,
            angle=params.angle,
            altitude=params.altitude,
            background=params.background,
            lighting=params.lighting,
            weather=params.weather,
        )

    def build_detection_prompt(self, object_description: str) -> str:
        return self.DETECTION_TEMPLATE.format(object=object_description)


# =============================================================================
# API CLIENT - GEMINI
# =============================================================================

class GenerationClient(ABC):
    """
    The two service capabilities the pipeline depends on.

    Implementations make a single attempt per call; the pipeline decides what
    a failure means for the item.
    """

    @abstractmethod
    def is_configured(self) -> bool:
        """Return True when the client has what it needs to make calls."""
        pass

    @abstractmethod
    async def synthesize_view(
        self,
        reference_image: bytes,
        params: ResolvedItemParameters,
        object_description: str,
        aspect_ratio: str = "1:1"
    ) -> bytes:
        """Render the reference object from a drone's viewpoint."""
        pass

    @abstractmethod
    async def detect_object(self, image: bytes, object_description: str) -> RawDetectionBox:
        """Localize the object in an image."""
        pass


# Structured output contract for detection: four required integer corners
DETECTION_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={name: types.Schema(type=types.Type.INTEGER) for name in BOX_FIELDS},
    required=list(BOX_FIELDS),
)


class GeminiGenerationClient(GenerationClient):
    """
    Gemini implementation using the google-genai SDK.

    - Synthesis: gemini-2.5-flash-image, reference image + instruction in,
      one image out, constrained to a supported aspect ratio
    - Detection: gemini-2.5-flash with JSON output constrained to DETECTION_SCHEMA

    The SDK is synchronous, so calls run in the default thread pool.
    """

    def __init__(
        self,
        api_key: Optional[str],
        synthesis_model: str = "gemini-2.5-flash-image",
        detection_model: str = "gemini-2.5-flash",
        prompt_builder: Optional[PromptBuilder] = None
    ):
        self.api_key = api_key
        self.synthesis_model = synthesis_model
        self.detection_model = detection_model
        self.prompt_builder = prompt_builder or PromptBuilder()
        self._client = None

    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def _get_client(self):
        """Lazily create the SDK client, failing fast without a credential."""
        if not self.is_configured():
            raise MissingCredentialError("API Key is missing")
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    @staticmethod
    def _extract_image(response) -> Optional[bytes]:
        """Return the first inline image payload of a response, if any."""
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return None
        content = getattr(candidates[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            inline_data = getattr(part, "inline_data", None)
            # Data is raw bytes, not base64 encoded
            if inline_data is not None and inline_data.data:
                return inline_data.data
        return None

    async def synthesize_view(
        self,
        reference_image: bytes,
        params: ResolvedItemParameters,
        object_description: str,
        aspect_ratio: str = "1:1"
    ) -> bytes:
        client = self._get_client()
        loop = asyncio.get_event_loop()

        prompt = self.prompt_builder.build_synthesis_prompt(params, object_description)
        contents = [
            prompt,
            types.Part.from_bytes(data=reference_image, mime_type=sniff_mime_type(reference_image)),
        ]
        config = types.GenerateContentConfig(
            response_modalities=["IMAGE"],
            image_config=types.ImageConfig(aspect_ratio=aspect_ratio)
        )

        def _generate():
            return client.models.generate_content(
                model=self.synthesis_model,
                contents=contents,
                config=config
            )

        try:
            response = await loop.run_in_executor(None, _generate)
        except Exception as e:
            raise GenerationFailedError(f"Gemini image generation error: {e}") from e

        image_bytes = self._extract_image(response)
        if image_bytes is None:
            raise NoImageReturnedError("No image data returned from model.")
        return image_bytes

    async def detect_object(self, image: bytes, object_description: str) -> RawDetectionBox:
        client = self._get_client()
        loop = asyncio.get_event_loop()

        contents = [
            self.prompt_builder.build_detection_prompt(object_description),
            types.Part.from_bytes(data=image, mime_type=sniff_mime_type(image)),
        ]
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=DETECTION_SCHEMA
        )

        def _detect():
            return client.models.generate_content(
                model=self.detection_model,
                contents=contents,
                config=config
            )

        try:
            response = await loop.run_in_executor(None, _detect)
        except Exception as e:
            raise DetectionFailedError(f"Gemini detection error: {e}") from e

        text = getattr(response, "text", None)
        if not text:
            raise NoDetectionResultError("No text response for detection")

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise NoDetectionResultError(f"Detection response is not valid JSON: {e}") from e

        return RawDetectionBox.from_mapping(payload)


class MockGenerationClient(GenerationClient):
    """
    Offline stand-in for Gemini.

    Synthesis paints a gradient "ground" with a solid red rectangle standing in
    for the object; detection finds that rectangle by color and answers on the
    0-1000 scale. Useful for:
    - Exercising the whole pipeline without API costs
    - Checking that labels line up with the saved images
    """

    MARKER_COLOR = (230, 20, 20)
    LONG_SIDE = 1024

    def __init__(self, delay: float = 0.05, seed: Optional[int] = None):
        self.delay = delay  # Simulate API latency
        self.rng = random.Random(seed)

    def is_configured(self) -> bool:
        return True

    def _canvas_size(self, aspect_ratio: str) -> tuple[int, int]:
        ratio = dict(ASPECT_RATIOS).get(aspect_ratio, 1.0)
        if ratio >= 1.0:
            return self.LONG_SIDE, round(self.LONG_SIDE / ratio)
        return round(self.LONG_SIDE * ratio), self.LONG_SIDE

    async def synthesize_view(
        self,
        reference_image: bytes,
        params: ResolvedItemParameters,
        object_description: str,
        aspect_ratio: str = "1:1"
    ) -> bytes:
        await asyncio.sleep(self.delay)

        width, height = self._canvas_size(aspect_ratio)
        ys, xs = np.mgrid[0:height, 0:width]
        base = self.rng.randint(0, 79)

        # Channels stay clear of the marker color: r < 120, b >= 120
        pixels = np.empty((height, width, 3), dtype=np.uint8)
        pixels[..., 0] = (base + xs // 16) % 80 + 40
        pixels[..., 1] = (base + ys // 16) % 80 + 60
        pixels[..., 2] = (base + (xs + ys) // 32) % 80 + 120

        box_w = int(width * self.rng.uniform(0.15, 0.4))
        box_h = int(height * self.rng.uniform(0.15, 0.4))
        x0 = self.rng.randint(0, width - box_w)
        y0 = self.rng.randint(0, height - box_h)
        pixels[y0:y0 + box_h, x0:x0 + box_w] = self.MARKER_COLOR

        buffer = io.BytesIO()
        Image.fromarray(pixels).save(buffer, format="PNG")
        return buffer.getvalue()

    async def detect_object(self, image: bytes, object_description: str) -> RawDetectionBox:
        await asyncio.sleep(self.delay)

        try:
            with Image.open(io.BytesIO(image)) as source:
                pixels = np.asarray(source.convert("RGB"), dtype=np.int16)
        except (UnidentifiedImageError, OSError) as e:
            raise DetectionFailedError(f"Mock detection could not read image: {e}") from e

        mask = (pixels[..., 0] > 180) & (pixels[..., 1] < 90) & (pixels[..., 2] < 90)
        if not mask.any():
            raise NoDetectionResultError(f"No {object_description} found in image")

        height, width = mask.shape
        rows = np.flatnonzero(mask.any(axis=1))
        cols = np.flatnonzero(mask.any(axis=0))

        return RawDetectionBox(
            ymin=int(round(rows[0] / height * DETECTION_SCALE)),
            xmin=int(round(cols[0] / width * DETECTION_SCALE)),
            ymax=int(round((rows[-1] + 1) / height * DETECTION_SCALE)),
            xmax=int(round((cols[-1] + 1) / width * DETECTION_SCALE)),
        )


# =============================================================================
# MAIN PIPELINE
# =============================================================================

ProgressListener = Callable[[DatasetItem, GenerationProgress], None]


class DroneDatasetPipeline:
    """
    Orchestrates dataset generation, one item at a time.

    For every item: sample an environment, synthesize a drone view, stretch it
    to the target resolution, detect the object, convert the box to YOLO.
    Items are processed strictly in sequence; a failure is recorded on the
    item and the run continues, so partial success is the normal outcome.

    Callers observe the run through snapshots (items, progress) or by
    registering a listener with add_listener().
    """

    def __init__(
        self,
        config: PipelineConfig,
        client: Optional[GenerationClient] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.logger = logger or self._setup_logger()

        if client is None:
            client = GeminiGenerationClient(
                api_key=config.api_key,
                synthesis_model=config.synthesis_model,
                detection_model=config.detection_model
            )
        self.client = client

        self.rng = random.Random(config.seed)
        self.exporter = DatasetExporter(include_metadata=config.include_metadata, logger=self.logger)

        self._items: list[DatasetItem] = []
        self._progress = GenerationProgress(0, 0)
        self._listeners: list[ProgressListener] = []

        self.stats = {"requested": 0, "completed": 0, "failed": 0}

    def _setup_logger(self) -> logging.Logger:
        """Configure logging for the pipeline."""
        logger = logging.getLogger("DroneDatasetPipeline")
        logger.setLevel(self.config.log_level)

        # Avoid duplicate handlers
        if logger.handlers:
            return logger

        # Console handler with formatting
        handler = logging.StreamHandler()
        handler.setLevel(self.config.log_level)
        formatter = logging.Formatter(
            "%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        # File handler for persistent logs
        self.config.log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(
            self.config.log_dir / f"pipeline_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        return logger

    # -- observation ---------------------------------------------------------

    @property
    def items(self) -> tuple[DatasetItem, ...]:
        """Detached copies of every item of the current run, in creation order."""
        return tuple(item.snapshot() for item in self._items)

    @property
    def progress(self) -> GenerationProgress:
        return self._progress

    @property
    def can_export(self) -> bool:
        return any(item.is_exportable for item in self._items)

    def add_listener(self, listener: ProgressListener) -> None:
        """Call listener(item_snapshot, progress) after every item change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        self._listeners.remove(listener)

    def _notify(self, item: DatasetItem) -> None:
        snapshot = item.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot, self._progress)
            except Exception:
                self.logger.exception(f"Progress listener failed for {item.id}")

    def _update(self, item: DatasetItem, **changes) -> None:
        for name, value in changes.items():
            setattr(item, name, value)
        self._notify(item)

    def _fail(self, item: DatasetItem, message: str) -> None:
        self.stats["failed"] += 1
        self._update(item, status=ItemStatus.FAILED, error=message)

    # -- generation ----------------------------------------------------------

    def _check_preconditions(self, reference_image: Optional[bytes], params: GenerationParameters) -> None:
        if not reference_image:
            raise MissingReferenceImageError("A reference image of the object is required")
        if not self.client.is_configured():
            raise MissingCredentialError("API Key is missing")
        if not params.angles:
            raise MissingAngleSelectionError("Please select at least one camera angle.")

    @staticmethod
    def _new_item_id(index: int) -> str:
        return f"img_{int(time.time() * 1000)}_{index}"

    async def process_single_item(
        self,
        index: int,
        reference_image: bytes,
        params: GenerationParameters,
        object_description: str,
        aspect_ratio: str
    ) -> DatasetItem:
        """
        Run one item through synthesis, normalization and detection.

        Never raises for item-level problems: the item ends up either
        completed or failed with the error message attached.
        """
        resolved = params.resolve(self.rng)
        item = DatasetItem(id=self._new_item_id(index), parameters=resolved)

        # Visible to observers before any work starts
        self._items.append(item)
        self._notify(item)
        self.logger.debug(f"Generating {item.id}: {resolved.to_dict()}")

        try:
            raw_image = await self.client.synthesize_view(
                reference_image,
                resolved,
                object_description,
                aspect_ratio
            )

            loop = asyncio.get_event_loop()
            image = await loop.run_in_executor(
                None,
                normalize_image,
                raw_image,
                params.width,
                params.height,
                self.config.jpeg_quality
            )
            self._update(item, status=ItemStatus.DETECTING, image=image)

            raw_box = await self.client.detect_object(image, object_description)
            bbox = convert_detection_to_normalized_box(raw_box, params.width, params.height)

            self.stats["completed"] += 1
            self._update(item, status=ItemStatus.COMPLETED, bbox=bbox)
            self.logger.info(
                f"Completed {item.id} [{resolved.angle}, {resolved.altitude}] -> "
                f"box=({bbox.x_center:.3f}, {bbox.y_center:.3f}, {bbox.width:.3f}, {bbox.height:.3f})"
            )

        except DatasetGenerationError as e:
            self.logger.error(f"Failed to generate item {index} ({item.id}): {e}")
            self._fail(item, str(e) or type(e).__name__)

        except Exception as e:
            self.logger.exception(f"Unexpected error generating item {index} ({item.id}): {e}")
            self._fail(item, str(e) or type(e).__name__)

        return item

    async def run(
        self,
        reference_image: Optional[bytes],
        params: GenerationParameters,
        object_description: str
    ) -> dict:
        """
        Generate a fresh dataset.

        Args:
            reference_image: Encoded photo of the object
            params: Resolution, count and environment selection
            object_description: Label used in prompts (e.g. "car")

        Returns:
            Dictionary of run statistics

        Raises:
            PreconditionError: before any item is created, if the reference
                image, the credential or the angle selection is missing.
        """
        self._check_preconditions(reference_image, params)

        self._items = []
        self._progress = GenerationProgress(0, params.count)
        self.stats = {"requested": params.count, "completed": 0, "failed": 0}

        aspect_ratio = resolve_aspect_ratio(params.width, params.height)

        self.logger.info(
            f"Generating {params.count} images of '{object_description}' at "
            f"{params.width}x{params.height} (model aspect ratio {aspect_ratio})"
        )
        self.logger.info(
            f"Lighting: {params.lighting} | Background: {params.background} | "
            f"Altitude: {params.altitude} | Weather: {params.weather} | Angles: {', '.join(params.angles)}"
        )

        start_time = time.time()

        for index in range(params.count):
            item = await self.process_single_item(
                index,
                reference_image,
                params,
                object_description,
                aspect_ratio
            )

            self._progress = GenerationProgress(index + 1, params.count)
            self._notify(item)
            self.logger.info(
                f"Progress: {self._progress.current}/{self._progress.total} "
                f"({self.stats['completed']} completed, {self.stats['failed']} failed)"
            )

        elapsed = time.time() - start_time
        self.stats["elapsed_seconds"] = elapsed

        self.logger.info("=" * 60)
        self.logger.info("Generation complete!")
        self.logger.info(f"Total time: {elapsed:.1f}s")
        self.logger.info(f"Requested: {self.stats['requested']}")
        self.logger.info(f"Completed: {self.stats['completed']}")
        self.logger.info(f"Failed: {self.stats['failed']}")

        return self.stats

    def export(
        self,
        class_id: int,
        object_label: str,
        output_path: Optional[Path] = None
    ) -> Optional[Path]:
        """Package the completed items of the current run; see DatasetExporter."""
        return self.exporter.build_dataset(
            self._items,
            class_id,
            object_label,
            output_path or self.config.output_path
        )


# =============================================================================
# DATASET EXPORT
# =============================================================================

class DatasetExporter:
    """
    Writes completed items as a YOLO dataset archive.

    Layout:
        data.yaml               class count and {id: name} mapping
        images/<item-id>.jpg    one per completed item
        labels/<item-id>.txt    "<class_id> <xc> <yc> <w> <h>", 6 decimals
        metadata/<item-id>.json only with include_metadata

    The archive is written to a temporary file and renamed into place so an
    interrupted export never leaves a partial zip behind.
    """

    TRAIN_PATH = "../train/images"
    VAL_PATH = "../valid/images"

    def __init__(self, include_metadata: bool = False, logger: Optional[logging.Logger] = None):
        self.include_metadata = include_metadata
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def select_exportable(items: Iterable[DatasetItem]) -> list[DatasetItem]:
        """Completed items that actually carry an image and a box."""
        return [item for item in items if item.is_exportable]

    def build_data_yaml(self, class_id: int, object_label: str) -> str:
        data = {
            "train": self.TRAIN_PATH,
            "val": self.VAL_PATH,
            "nc": class_id + 1,
            "names": {class_id: object_label},
        }
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    def build_dataset(
        self,
        items: Iterable[DatasetItem],
        class_id: int,
        object_label: str,
        output_path: Path
    ) -> Optional[Path]:
        """
        Write the archive for every exportable item.

        Returns the archive path, or None without touching the filesystem
        when no item qualifies.
        """
        if isinstance(class_id, bool) or not isinstance(class_id, int) or class_id < 0:
            raise ValueError(f"class_id must be a non-negative integer, got {class_id!r}")
        if not object_label or not object_label.strip():
            raise ValueError("object_label must not be empty")

        items = list(items)
        exportable = self.select_exportable(items)
        skipped = [item.id for item in items if item.status is ItemStatus.COMPLETED and not item.is_exportable]
        if skipped:
            self.logger.warning(f"Skipping completed items without a box or image: {', '.join(skipped)}")

        if not exportable:
            self.logger.warning("No completed items to export")
            return None

        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = output_path.with_name(output_path.name + ".tmp")

        try:
            with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.writestr("data.yaml", self.build_data_yaml(class_id, object_label))
                for item in exportable:
                    zf.writestr(f"images/{item.id}.jpg", item.image)
                    zf.writestr(f"labels/{item.id}.txt", format_yolo_line(class_id, item.bbox))
                    if self.include_metadata:
                        zf.writestr(f"metadata/{item.id}.json", json.dumps(item.to_metadata(), indent=2))
            temp_path.replace(output_path)
        except Exception:
            # Clean up temp file on failure
            if temp_path.exists():
                temp_path.unlink()
            raise

        self.logger.info(f"Exported {len(exportable)} images as class {class_id} '{object_label}' to {output_path}")
        return output_path


# =============================================================================
# COMMAND LINE INTERFACE
# =============================================================================

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Generate a YOLO drone-view dataset for one object from a single reference photo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Test with mock API (no API calls), 5 images
    python drone_dataset_generator.py -r car.jpg --label car --count 5 --mock

    # Production with Gemini API, 1280x720, two camera angles
    python drone_dataset_generator.py -r car.jpg --label car --count 50 --width 1280 --height 720 \\
        --angle "Top-down (90°)" --angle Standard --api_key YOUR_KEY

    # Fixed environment
    python drone_dataset_generator.py -r car.jpg --label car --lighting NIGHT --weather RAINY

    # Show every accepted option value
    python drone_dataset_generator.py --list-options
        """
    )

    parser.add_argument(
        "--reference", "-r",
        type=Path,
        help="Reference image of the object"
    )

    parser.add_argument(
        "--output", "-o",
        type=Path,
        default=Path("./yolo_drone_dataset.zip"),
        help="Path of the dataset archive (default: ./yolo_drone_dataset.zip)"
    )

    parser.add_argument(
        "--label",
        type=str,
        default="car",
        help="Object name, used in prompts and data.yaml (default: car)"
    )

    parser.add_argument(
        "--class-id",
        type=int,
        default=0,
        help="YOLO class id for the object (default: 0)"
    )

    parser.add_argument("--count", type=int, default=3, help="Number of images to generate (default: 3)")
    parser.add_argument("--width", type=int, default=640, help="Target width in pixels (default: 640)")
    parser.add_argument("--height", type=int, default=640, help="Target height in pixels (default: 640)")

    for axis in ("lighting", "background", "altitude", "weather"):
        parser.add_argument(
            f"--{axis}",
            type=str,
            default=RANDOM_OPTION,
            help=f"{axis.capitalize()} option or '{RANDOM_OPTION}' (default: {RANDOM_OPTION})"
        )

    parser.add_argument(
        "--angle",
        dest="angles",
        action="append",
        default=None,
        help=f"Allowed camera angle, repeatable (default: {DEFAULT_ANGLES[0]})"
    )

    parser.add_argument(
        "--api_key",
        type=str,
        default=get_api_key_from_env(),
        help="Google API key for Gemini (or set GOOGLE_API_KEY env var)"
    )

    parser.add_argument(
        "--synthesis-model",
        type=str,
        default="gemini-2.5-flash-image",
        help="Gemini image model (default: gemini-2.5-flash-image)"
    )

    parser.add_argument(
        "--detection-model",
        type=str,
        default="gemini-2.5-flash",
        help="Gemini model used for bounding boxes (default: gemini-2.5-flash)"
    )

    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use mock API for testing (no actual API calls)"
    )

    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for environment sampling"
    )

    parser.add_argument(
        "--metadata",
        action="store_true",
        help="Also write metadata/<id>.json for every image"
    )

    parser.add_argument(
        "--list-options",
        action="store_true",
        help="Print the accepted environment and angle options and exit"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args(argv)

    if args.list_options:
        return args
    if args.reference is None:
        parser.error("--reference is required")

    try:
        args.params = build_parameters(args)
    except ValueError as e:
        parser.error(str(e))

    return args


def build_parameters(args: argparse.Namespace) -> GenerationParameters:
    """Turn parsed CLI arguments into GenerationParameters."""
    angles = []
    for text in args.angles or DEFAULT_ANGLES:
        angle = match_option(text, ANGLE_OPTIONS)
        if angle is None:
            raise ValueError(f"'{text}' is not a valid camera angle; choose from: {', '.join(ANGLE_OPTIONS)}")
        if angle not in angles:
            angles.append(angle)

    return GenerationParameters(
        count=args.count,
        width=args.width,
        height=args.height,
        lighting=AxisSelection.parse(args.lighting, LightingCondition),
        background=AxisSelection.parse(args.background, BackgroundType),
        altitude=AxisSelection.parse(args.altitude, ALTITUDE_OPTIONS),
        weather=AxisSelection.parse(args.weather, WeatherCondition),
        angles=angles,
    )


def print_options() -> None:
    sections = [
        ("Lighting (--lighting)", LightingCondition),
        ("Background (--background)", BackgroundType),
        ("Altitude (--altitude)", ALTITUDE_OPTIONS),
        ("Weather (--weather)", WeatherCondition),
        ("Camera angle (--angle, repeatable)", ANGLE_OPTIONS),
    ]
    for title, options in sections:
        print(title)
        if isinstance(options, type):
            for member in options:
                print(f"  {member.name:<14} {member.value}")
        else:
            for value in options:
                print(f"  {value}")
    print(f"Every axis except the camera angle also accepts '{RANDOM_OPTION}'.")


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Async entry point for the script; returns the process exit code."""
    args = parse_args(argv)

    if args.list_options:
        print_options()
        return 0

    try:
        reference_image = args.reference.read_bytes()
    except OSError as e:
        print(f"Error: cannot read reference image {args.reference}: {e}")
        return 2

    # Build configuration from arguments
    config = PipelineConfig(
        api_key=args.api_key,
        synthesis_model=args.synthesis_model,
        detection_model=args.detection_model,
        output_path=args.output,
        log_dir=args.output.parent / "logs",
        include_metadata=args.metadata,
        seed=args.seed,
        log_level=logging.DEBUG if args.verbose else logging.INFO
    )

    client = None
    if args.mock:
        client = MockGenerationClient(seed=args.seed)
        print("Running in mock mode (no API calls)")

    pipeline = DroneDatasetPipeline(config=config, client=client)

    try:
        stats = await pipeline.run(reference_image, args.params, args.label)
    except PreconditionError as e:
        print(f"Error: {e}")
        return 2

    archive = pipeline.export(args.class_id, args.label)
    if archive is None:
        print("No images completed; nothing exported.")
        return 1

    print(f"Dataset written to {archive} ({stats['completed']}/{stats['requested']} images)")
    return 0


def main():
    """Main entry point for the script."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        print("\nInterrupted by user. Completed items were not exported.")
        sys.exit(130)


if __name__ == "__main__":
    main()
