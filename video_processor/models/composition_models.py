"""
Resolved composition settings.

Request payloads carry optional fields everywhere; ``resolve_composition``
applies every default exactly once so that downstream stages (acquisition,
synthesis, encoding) only ever see concrete values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

from video_processor.errors import CompositionValidationError
from video_processor.models.process_models import (
    AspectRatio,
    ClipInput,
    ClipSettings,
    ProcessRequest,
    QualityTier,
    WatermarkPosition,
    WatermarkSize,
)

MIN_CLIP_DURATION = 0.1
DEFAULT_IMAGE_DURATION = 5.0
DEFAULT_GLOBAL_FADE = 1.0

CANVAS_SIZES: dict[str, tuple[int, int]] = {
    AspectRatio.LANDSCAPE.value: (1920, 1080),
    AspectRatio.PORTRAIT.value: (1080, 1920),
    AspectRatio.SQUARE.value: (1080, 1080),
    AspectRatio.CLASSIC.value: (1440, 1080),
}

RESOLUTION_SCALES: dict[str, float] = {
    "1080p": 1.0,
    "720p": 0.667,
    "480p": 0.444,
    "4k": 2.0,
}


class MediaKind(str, Enum):
    VIDEO = "video"
    IMAGE = "image"


@dataclass(frozen=True)
class MediaProbe:
    duration: float = 5.0
    width: int = 1920
    height: int = 1080
    fps: int = 30
    has_audio: bool = False


DEFAULT_PROBE = MediaProbe()


@dataclass(frozen=True)
class ClipEdit:
    muted: bool = False
    volume: float = 1.0
    fade_in: float = 0.0
    fade_out: float = 0.0
    speed: float = 1.0
    trim_start: float = 0.0
    trim_end: float | None = None
    display_duration: float = DEFAULT_IMAGE_DURATION

    @property
    def has_trim(self) -> bool:
        return self.trim_start > 0 or self.trim_end is not None

    @property
    def is_identity(self) -> bool:
        return (
            not self.muted
            and self.volume == 1.0
            and self.fade_in == 0
            and self.fade_out == 0
            and self.speed == 1.0
            and not self.has_trim
        )


@dataclass
class Clip:
    index: int
    source_url: str
    kind: MediaKind = MediaKind.VIDEO
    edit: ClipEdit = field(default_factory=ClipEdit)
    clip_id: str | None = None
    local_path: Path | None = None
    probe: MediaProbe = DEFAULT_PROBE

    @property
    def is_image(self) -> bool:
        return self.kind == MediaKind.IMAGE

    @property
    def speed(self) -> float:
        # Stills are looped to their display duration; speed does not apply.
        return 1.0 if self.is_image else self.edit.speed

    @property
    def raw_duration(self) -> float:
        if self.is_image:
            return self.edit.display_duration
        return self.probe.duration if self.probe.duration > 0 else DEFAULT_PROBE.duration

    @property
    def effective_duration(self) -> float:
        end = self.raw_duration
        if self.edit.trim_end is not None:
            end = min(self.edit.trim_end, end)
        return max((end - self.edit.trim_start) / self.speed, MIN_CLIP_DURATION)

    @property
    def has_usable_audio(self) -> bool:
        return self.probe.has_audio and not self.edit.muted and not self.is_image


@dataclass(frozen=True)
class BackgroundMusic:
    url: str
    volume: float = 0.3
    fade_in: float = 0.0
    fade_out: float = 0.0
    local_path: Path | None = None


@dataclass(frozen=True)
class NarrationTrack:
    url: str
    volume: float = 1.0
    start_at: float = 0.0
    track_type: str = "voice"
    local_path: Path | None = None


@dataclass(frozen=True)
class Watermark:
    url: str
    position: WatermarkPosition = WatermarkPosition.BOTTOM_RIGHT
    size: WatermarkSize = WatermarkSize.MEDIUM
    opacity: float = 0.8
    local_path: Path | None = None


@dataclass
class AudioAssets:
    background_music: BackgroundMusic | None = None
    narration: NarrationTrack | None = None
    watermark: Watermark | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.background_music is None
            and self.narration is None
            and self.watermark is None
        )


@dataclass(frozen=True)
class CompositionSettings:
    aspect_ratio: str = AspectRatio.LANDSCAPE.value
    resolution_scale: float = 1.0
    fade_in: bool = False
    fade_out: bool = False
    fade_duration: float = DEFAULT_GLOBAL_FADE
    output_format: str = "mp4"
    quality: QualityTier = QualityTier.HIGH

    @property
    def canvas(self) -> tuple[int, int]:
        width, height = CANVAS_SIZES.get(self.aspect_ratio, CANVAS_SIZES["16:9"])
        if self.resolution_scale != 1.0:
            # yuv420p needs even dimensions
            width = 2 * round(width * self.resolution_scale / 2)
            height = 2 * round(height * self.resolution_scale / 2)
        return width, height

    @property
    def has_global_fade(self) -> bool:
        return self.fade_in or self.fade_out

    @property
    def is_default_canvas(self) -> bool:
        return self.canvas == CANVAS_SIZES["16:9"]


@dataclass
class Composition:
    """Everything a pipeline run needs, with defaults resolved."""

    clips: list[Clip]
    assets: AudioAssets
    settings: CompositionSettings
    request: ProcessRequest

    @property
    def total_duration(self) -> float:
        return sum(clip.effective_duration for clip in self.clips)


IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "bmp"})


def url_extension(url: str) -> str:
    suffix = Path(urlparse(url).path).suffix
    return suffix[1:].lower() if suffix else ""


def _merge_settings(clip: ClipInput, override: ClipSettings | None) -> dict:
    merged = clip.model_dump(include=set(ClipSettings.model_fields), exclude_unset=True)
    merged = {k: v for k, v in merged.items() if v is not None}
    if override is not None:
        extra = override.model_dump(
            include=set(ClipSettings.model_fields), exclude_unset=True
        )
        merged.update({k: v for k, v in extra.items() if v is not None})
    return merged


def resolve_clip(index: int, clip: ClipInput, override: ClipSettings | None) -> Clip:
    url = clip.resolved_url
    if not url:
        raise CompositionValidationError(f"Clip {index} is missing video URL")

    values = _merge_settings(clip, override)
    trim_start = float(values.get("trim_start_seconds", 0.0))
    trim_end = values.get("trim_end_seconds")
    if trim_end is not None and trim_end <= trim_start:
        raise CompositionValidationError(
            f"Clip {index}: trimEndSeconds ({trim_end}) must be greater than "
            f"trimStartSeconds ({trim_start})"
        )

    is_image = bool(values.get("is_image")) or url_extension(url) in IMAGE_EXTENSIONS
    edit = ClipEdit(
        muted=bool(values.get("muted", False)),
        volume=float(values.get("volume", 1.0)),
        fade_in=float(values.get("fade_in_seconds", 0.0)),
        fade_out=float(values.get("fade_out_seconds", 0.0)),
        speed=float(values.get("speed", 1.0)),
        trim_start=trim_start,
        trim_end=float(trim_end) if trim_end is not None else None,
        display_duration=float(values.get("display_duration", DEFAULT_IMAGE_DURATION)),
    )
    return Clip(
        index=index,
        source_url=url,
        kind=MediaKind.IMAGE if is_image else MediaKind.VIDEO,
        edit=edit,
        clip_id=clip.id,
    )


def resolve_composition(request: ProcessRequest) -> Composition:
    if not request.clips:
        raise CompositionValidationError("Invalid or missing clips array")

    enhancements = request.enhancements
    overrides: dict[int, ClipSettings] = {}
    if enhancements is not None:
        for entry in enhancements.clip_settings:
            overrides.setdefault(entry.clip_index, entry)

    clips = [
        resolve_clip(i, clip, overrides.get(i)) for i, clip in enumerate(request.clips)
    ]

    assets = AudioAssets()
    if enhancements is not None:
        music = enhancements.background_music
        if music is not None and music.audio_url:
            assets.background_music = BackgroundMusic(
                url=music.audio_url,
                volume=music.volume if music.volume is not None else 0.3,
                fade_in=music.fade_in_seconds or 0.0,
                fade_out=music.fade_out_seconds or 0.0,
            )
        track = enhancements.audio_track
        if track is not None and track.audio_url:
            assets.narration = NarrationTrack(
                url=track.audio_url,
                volume=track.volume if track.volume is not None else 1.0,
                start_at=track.start_at_seconds or 0.0,
                track_type=track.type or "voice",
            )
        mark = enhancements.watermark
        if mark is not None and mark.image_url:
            assets.watermark = Watermark(
                url=mark.image_url,
                position=mark.position or WatermarkPosition.BOTTOM_RIGHT,
                size=mark.size or WatermarkSize.MEDIUM,
                opacity=mark.opacity if mark.opacity is not None else 0.8,
            )

    video_settings = request.video_settings
    resolution = (video_settings.resolution or "").lower() if video_settings else ""
    settings = CompositionSettings(
        aspect_ratio=(enhancements.aspect_ratio if enhancements else None) or "16:9",
        resolution_scale=RESOLUTION_SCALES.get(resolution, 1.0),
        fade_in=bool(enhancements and enhancements.fade_in),
        fade_out=bool(enhancements and enhancements.fade_out),
        fade_duration=(enhancements.fade_duration if enhancements else None)
        or DEFAULT_GLOBAL_FADE,
        output_format=((video_settings.format if video_settings else None) or "mp4")
        .lower()
        .lstrip("."),
        quality=(video_settings.quality if video_settings else None) or QualityTier.HIGH,
    )

    return Composition(clips=clips, assets=assets, settings=settings, request=request)
