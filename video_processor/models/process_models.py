"""
Pydantic models for the processing API.

This module defines request/response schemas for:
- Job submission (clips, enhancements, audio layers, transitions)
- Output video settings
- Acknowledgement responses

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts camelCase or snake_case input, ignores unknown fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# ENUMS
# =============================================================================


class AspectRatio(str, Enum):
    """Supported output aspect ratios."""

    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    SQUARE = "1:1"
    CLASSIC = "4:3"


class QualityTier(str, Enum):
    """Encoder quality tiers."""

    HIGH = "high"  # crf 18, preset slow
    MEDIUM = "medium"  # crf 23, preset medium
    LOW = "low"  # crf 28, preset fast


class WatermarkPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"


class WatermarkSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


# =============================================================================
# CLIP SETTINGS
# =============================================================================


class ClipSettings(CamelModel):
    """Per-clip edit settings. Unset fields fall back to defaults at intake."""

    muted: bool | None = None
    volume: float | None = Field(default=None, ge=0, description="Volume multiplier")
    fade_in_seconds: float | None = Field(default=None, ge=0)
    fade_out_seconds: float | None = Field(default=None, ge=0)
    speed: float | None = Field(default=None, gt=0, description="Playback speed")
    trim_start_seconds: float | None = Field(default=None, ge=0)
    trim_end_seconds: float | None = Field(default=None, ge=0)
    display_duration: float | None = Field(
        default=None, gt=0, description="Display time for still images"
    )
    is_image: bool | None = None


class ClipInput(ClipSettings):
    """A clip as sent by the client."""

    id: str | None = None
    source_url: str | None = None
    url: str | None = None

    @property
    def resolved_url(self) -> str | None:
        return self.source_url or self.url


class ClipSettingsEntry(ClipSettings):
    """Settings override addressed to a clip by position."""

    clip_index: int = Field(ge=0)


# =============================================================================
# AUDIO / OVERLAY ASSETS
# =============================================================================


class BackgroundMusicInput(CamelModel):
    audio_url: str | None = None
    volume: float | None = Field(default=None, ge=0)
    fade_in_seconds: float | None = Field(default=None, ge=0)
    fade_out_seconds: float | None = Field(default=None, ge=0)


class AudioTrackInput(CamelModel):
    audio_url: str | None = None
    volume: float | None = Field(default=None, ge=0)
    start_at_seconds: float | None = Field(default=None, ge=0)
    type: str | None = None


class WatermarkInput(CamelModel):
    image_url: str | None = None
    position: WatermarkPosition | None = None
    size: WatermarkSize | None = None
    opacity: float | None = Field(default=None, ge=0, le=1)


class Enhancements(CamelModel):
    """Global enhancement settings."""

    aspect_ratio: str | None = None
    fade_in: bool = False
    fade_out: bool = False
    fade_duration: float | None = Field(default=None, gt=0)
    clip_settings: list[ClipSettingsEntry] = Field(default_factory=list)
    background_music: BackgroundMusicInput | None = None
    audio_track: AudioTrackInput | None = None
    watermark: WatermarkInput | None = None


class VideoSettings(CamelModel):
    """Output settings."""

    format: str | None = Field(default=None, description="Container extension")
    quality: QualityTier | None = None
    resolution: str | None = Field(
        default=None, description="1080p, 720p, 480p or 4k"
    )


# =============================================================================
# MULTI-TRACK TIMELINE
# =============================================================================


class TrimRange(CamelModel):
    start: float | None = None
    end: float | None = None


class TimelineItem(CamelModel):
    id: str
    type: str = "video"
    track: int | None = None
    start_time: float | None = None
    duration: float | None = None
    trim: TrimRange | None = None
    speed: float | None = Field(default=None, gt=0)
    muted: bool = False
    volume: float | None = None


class MultiTrackTimeline(CamelModel):
    items: list[TimelineItem] = Field(default_factory=list)


class CrossLayerTransition(CamelModel):
    from_clip_id: str | None = None
    to_clip_id: str | None = None
    after_clip_index: int | None = None
    type: str = "fade"
    duration_seconds: float | None = Field(default=None, gt=0)


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================


class ProcessRequest(CamelModel):
    """Request to compose and render a video."""

    job_id: str | None = None
    clips: list[ClipInput] | None = None
    enhancements: Enhancements | None = None
    video_settings: VideoSettings | None = None
    multi_track_timeline: MultiTrackTimeline | None = None
    cross_layer_transitions: list[CrossLayerTransition] | None = None
    callback_url: str | None = None

    @field_validator("clips", mode="before")
    @classmethod
    def _non_list_clips_are_missing(cls, value: Any) -> Any:
        # Rejected later by resolve_composition with the usual 400 message.
        return value if isinstance(value, list) else None


class ProcessAcceptedResponse(CamelModel):
    status: str = "processing"
    job_id: str
    message: str = "Video processing started"


def dump_camel(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
