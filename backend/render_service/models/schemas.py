"""Pydantic schemas for API requests and responses."""
import math
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

X264_PRESETS = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)

# field name -> (low, high); values outside are pulled to the nearest bound
FLOAT_BOUNDS = {
    "zoom_factor": (1.0, 3.0),
    "rotate_deg": (-180.0, 180.0),
    "contrast": (0.0, 3.0),
    "brightness": (-1.0, 1.0),
    "saturation": (0.0, 3.0),
    "gamma": (0.1, 10.0),
    "sharpen": (0.0, 2.0),
    "blur": (0.0, 20.0),
    "subtitle_size_ratio": (0.005, 0.1),
    "subtitle_margin_ratio": (0.0, 0.4),
    "subtitle_margin_h_ratio": (0.0, 0.4),
    "narration_gain_db": (-30.0, 30.0),
    "bgm_volume": (0.0, 2.0),
    "duck_threshold": (0.001, 1.0),
    "duck_ratio": (1.0, 20.0),
    "duck_attack_ms": (0.01, 2000.0),
    "duck_release_ms": (0.01, 9000.0),
}

INT_BOUNDS = {
    "target_width": (240, 3840),
    "target_height": (240, 3840),
    "subtitle_alignment": (1, 9),
    "bgm_delay_ms": (0, 600_000),
    "crf": (0, 51),
    "threads": (1, 16),
    "keyframe_interval": (1, 600),
}


def clamp_number(value: Any, low: float, high: float, default: Any) -> Any:
    """Coerce value to a number inside [low, high], or return default."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return min(high, max(low, number))


class EffectParameters(BaseModel):
    """Declarative effect settings of a render.

    Every field has a default and numeric fields are clamped into range
    instead of being rejected.
    """

    model_config = ConfigDict(frozen=True)

    # Geometry
    mirror: bool = True
    zoom_factor: float = 1.10
    rotate_deg: float = 3.0
    target_width: int = 1080
    target_height: int = 1920

    # Color
    contrast: float = 1.20
    brightness: float = 0.0
    saturation: float = 1.0
    gamma: float = 1.0
    grayscale: bool = False

    # Detail
    sharpen: float = 0.0
    blur: float = 0.0

    # Subtitles
    subtitles_enabled: bool = True
    subtitle_font: str = Field(default="DejaVu Sans", max_length=64, pattern=r"^[\w .-]+$")
    subtitle_size_ratio: float = 0.01875
    subtitle_margin_ratio: float = 0.025
    subtitle_margin_h_ratio: float = 0.04
    subtitle_alignment: int = 2

    # Audio
    narration_gain_db: Optional[float] = None
    bgm_volume: float = 0.3
    bgm_delay_ms: int = 0
    ducking: bool = True
    duck_threshold: float = 0.03
    duck_ratio: float = 8.0
    duck_attack_ms: float = 20.0
    duck_release_ms: float = 250.0

    # Encoding
    crf: int = 21
    preset: str = "veryfast"
    video_bitrate: Optional[str] = Field(default=None, pattern=r"^\d+(\.\d+)?[kKmM]?$")
    audio_bitrate: str = Field(default="192k", pattern=r"^\d+(\.\d+)?[kKmM]?$")
    threads: int = 2
    keyframe_interval: int = 60
    loop_video: bool = True

    @field_validator(*FLOAT_BOUNDS, mode="before")
    @classmethod
    def _clamp_floats(cls, value: Any, info: ValidationInfo) -> Any:
        low, high = FLOAT_BOUNDS[info.field_name]
        return clamp_number(value, low, high, cls.model_fields[info.field_name].default)

    @field_validator(*INT_BOUNDS, mode="before")
    @classmethod
    def _clamp_ints(cls, value: Any, info: ValidationInfo) -> Any:
        low, high = INT_BOUNDS[info.field_name]
        clamped = clamp_number(value, low, high, cls.model_fields[info.field_name].default)
        return int(round(clamped)) if clamped is not None else clamped

    @field_validator("preset", mode="before")
    @classmethod
    def _known_preset(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower() in X264_PRESETS:
            return value.strip().lower()
        return "veryfast"


class RenderParameters(EffectParameters):
    """Immutable snapshot of a render request: sources plus effect settings."""

    video_url: str = Field(..., min_length=1, pattern=r"^https?://")
    audio_url: str = Field(..., min_length=1, pattern=r"^https?://")
    srt_url: Optional[str] = Field(default=None, pattern=r"^https?://")
    bgm_url: Optional[str] = Field(default=None, pattern=r"^https?://")

    @field_validator("video_url", "audio_url", "srt_url", "bgm_url", mode="before")
    @classmethod
    def _strip_urls(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            # Empty optional URLs mean "not requested"
            return value or None
        return value


class JobSubmitResponse(BaseModel):
    """Schema for job submission response."""
    job_id: str
    status: str
    status_url: str
    result_url: str


class JobStatusResponse(BaseModel):
    """Schema for job status response."""
    job_id: str
    status: str
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    result_url: Optional[str] = None


class JobListResponse(BaseModel):
    """Schema for job list response."""
    jobs: list[JobStatusResponse]
    total: int


class FramesRequest(BaseModel):
    """Schema for frame extraction requests."""
    video_url: str = Field(..., min_length=1, pattern=r"^https?://")
    every_sec: float = 6
    max_frames: int = 10
    scale: int = 1080
    jpg_quality: int = 3
    times: Optional[list[Any]] = None

    @field_validator("every_sec", mode="before")
    @classmethod
    def _clamp_every_sec(cls, value: Any) -> float:
        return clamp_number(value, 1.0, 3600.0, 6.0)

    @field_validator("max_frames", mode="before")
    @classmethod
    def _clamp_max_frames(cls, value: Any) -> int:
        return int(clamp_number(value, 1, 50, 10))

    @field_validator("scale", mode="before")
    @classmethod
    def _clamp_scale(cls, value: Any) -> int:
        return int(clamp_number(value, 240, 2160, 1080))

    @field_validator("jpg_quality", mode="before")
    @classmethod
    def _clamp_quality(cls, value: Any) -> int:
        return int(clamp_number(value, 2, 7, 3))

    def timestamps(self) -> list[float]:
        """Finite, non-negative timestamps, capped at max_frames."""
        result: list[float] = []
        for item in self.times or []:
            if isinstance(item, bool):
                continue
            try:
                value = float(item)
            except (TypeError, ValueError):
                continue
            if math.isfinite(value) and value >= 0:
                result.append(value)
        return result[: self.max_frames]


class FramesResponse(BaseModel):
    """Schema for frame extraction response."""
    frames: list[str]
    count: int
