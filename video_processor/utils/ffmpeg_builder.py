from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from video_processor.errors import FilterGraphError
from video_processor.models.composition_models import (
    Clip,
    Composition,
    CompositionSettings,
)
from video_processor.models.process_models import (
    ProcessRequest,
    WatermarkPosition,
    WatermarkSize,
)

logger = logging.getLogger(__name__)


SAMPLE_RATE = 48000
IMAGE_FPS = 30
WATERMARK_PADDING = 20
WATERMARK_WIDTH_FRACTIONS: dict[WatermarkSize, float] = {
    WatermarkSize.SMALL: 0.10,
    WatermarkSize.MEDIUM: 0.15,
    WatermarkSize.LARGE: 0.25,
}
VIDEO_OUT = "outv"
AUDIO_OUT = "outa"


def _sec(value: float) -> str:
    return f"{value:.3f}"


def _factor(value: float) -> str:
    return f"{value:.4f}"


# =============================================================================
# FILTER GRAPH PROGRAM
# =============================================================================


@dataclass
class Filter:
    """One filter invocation: ``name=arg1:arg2:key=value``."""

    name: str
    args: tuple[Any, ...] = ()
    options: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        parts = [str(arg) for arg in self.args]
        parts.extend(f"{key}={value}" for key, value in self.options.items())
        if not parts:
            return self.name
        return f"{self.name}={':'.join(parts)}"


@dataclass
class FilterStep:
    inputs: list[str]
    filters: list[Filter]
    output: str

    def render(self) -> str:
        pads = "".join(f"[{pad}]" for pad in self.inputs)
        chain = ",".join(f.render() for f in self.filters)
        return f"{pads}{chain}[{self.output}]"


class FilterGraph:
    """Append-only list of filter steps with unique output pads."""

    def __init__(self) -> None:
        self.steps: list[FilterStep] = []
        self._outputs: set[str] = set()

    def __len__(self) -> int:
        return len(self.steps)

    def add(self, inputs: list[str], filters: list[Filter], output: str) -> str:
        if not filters:
            raise FilterGraphError(f"Empty filter chain for pad [{output}]")
        if output in self._outputs:
            raise FilterGraphError(f"Duplicate pad label [{output}]")
        self._outputs.add(output)
        self.steps.append(FilterStep(list(inputs), list(filters), output))
        return output

    def has_pad(self, label: str) -> bool:
        return label in self._outputs

    def find(self, output: str) -> FilterStep | None:
        for step in self.steps:
            if step.output == output:
                return step
        return None

    def serialize(self) -> str:
        return ";".join(step.render() for step in self.steps)


@dataclass
class GraphResult:
    filter_complex: str | None
    video_output: str = f"[{VIDEO_OUT}]"
    audio_output: str = f"[{AUDIO_OUT}]"
    graph: FilterGraph | None = None


# =============================================================================
# INPUTS
# =============================================================================


@dataclass
class InputMap:
    """Encoder inputs in ``-i`` order, addressable by logical name."""

    paths: list[Path] = field(default_factory=list)
    names: dict[str, int] = field(default_factory=dict)

    def add(self, name: str, path: Path) -> int:
        if name in self.names:
            raise FilterGraphError(f"Input {name} registered twice")
        self.names[name] = len(self.paths)
        self.paths.append(path)
        return self.names[name]

    def index(self, name: str) -> int | None:
        return self.names.get(name)

    def require(self, name: str) -> int:
        idx = self.names.get(name)
        if idx is None:
            raise FilterGraphError(f"Input {name} is not available")
        return idx

    @classmethod
    def from_composition(cls, composition: Composition) -> InputMap:
        input_map = cls()
        for clip in composition.clips:
            if clip.local_path is None:
                raise FilterGraphError(f"Clip {clip.index} has not been downloaded")
            input_map.add(f"clip_{clip.index}", clip.local_path)

        assets = composition.assets
        if assets.background_music and assets.background_music.local_path:
            input_map.add("bgm", assets.background_music.local_path)
        if assets.narration and assets.narration.local_path:
            input_map.add("audio_track", assets.narration.local_path)
        if assets.watermark and assets.watermark.local_path:
            input_map.add("watermark", assets.watermark.local_path)
        return input_map


# =============================================================================
# SHARED FILTER HELPERS
# =============================================================================


def audio_format() -> Filter:
    return Filter(
        "aformat",
        options={
            "sample_fmts": "fltp",
            "sample_rates": SAMPLE_RATE,
            "channel_layouts": "stereo",
        },
    )


def silence(duration: float) -> Filter:
    return Filter(
        "anullsrc",
        options={
            "channel_layout": "stereo",
            "sample_rate": SAMPLE_RATE,
            "duration": _sec(max(duration, 0.1)),
        },
    )


def tempo_factors(speed: float) -> list[float]:
    """Split a speed into atempo factors, each within atempo's [0.5, 2.0]."""
    if speed <= 0:
        raise FilterGraphError(f"Invalid speed {speed}")
    factors: list[float] = []
    remaining = speed
    while remaining > 2.0:
        factors.append(2.0)
        remaining /= 2.0
    while remaining < 0.5:
        factors.append(0.5)
        remaining /= 0.5
    if not math.isclose(remaining, 1.0):
        factors.append(remaining)
    return factors


def atempo_chain(speed: float) -> list[Filter]:
    return [Filter("atempo", (_factor(f),)) for f in tempo_factors(speed)]


def clamp_fade(fade: float, duration: float) -> float:
    return min(fade, duration / 2)


def fade_filters(
    name: str, fade_in: float, fade_out: float, duration: float
) -> list[Filter]:
    filters: list[Filter] = []
    if fade_in > 0:
        effective = clamp_fade(fade_in, duration)
        filters.append(Filter(name, options={"t": "in", "st": 0, "d": _sec(effective)}))
    if fade_out > 0:
        effective = clamp_fade(fade_out, duration)
        start = max(0.0, duration - effective)
        filters.append(
            Filter(name, options={"t": "out", "st": _sec(start), "d": _sec(effective)})
        )
    return filters


def trim_filters(name: str, start: float, end: float | None) -> list[Filter]:
    options: dict[str, Any] = {"start": _sec(start)}
    if end is not None:
        options["end"] = _sec(end)
    reset = "asetpts" if name == "atrim" else "setpts"
    return [Filter(name, options=options), Filter(reset, ("PTS-STARTPTS",))]


def still_image_filters(display_duration: float) -> list[Filter]:
    frames = math.ceil(display_duration * IMAGE_FPS)
    return [
        Filter("loop", options={"loop": max(frames - 1, 0), "size": 1, "start": 0}),
        Filter("setpts", (f"N/{IMAGE_FPS}/TB",)),
        Filter("fps", (IMAGE_FPS,)),
    ]


def fit_to_canvas(width: int, height: int) -> list[Filter]:
    return [
        Filter("scale", (width, height), {"force_original_aspect_ratio": "decrease"}),
        Filter("pad", (width, height, "(ow-iw)/2", "(oh-ih)/2", "black")),
        Filter("setsar", (1,)),
    ]


def watermark_position(position: WatermarkPosition) -> tuple[str, str]:
    pad = WATERMARK_PADDING
    if position == WatermarkPosition.TOP_LEFT:
        return str(pad), str(pad)
    if position == WatermarkPosition.TOP_RIGHT:
        return f"W-w-{pad}", str(pad)
    if position == WatermarkPosition.BOTTOM_LEFT:
        return str(pad), f"H-h-{pad}"
    if position == WatermarkPosition.CENTER:
        return "(W-w)/2", "(H-h)/2"
    return f"W-w-{pad}", f"H-h-{pad}"


# =============================================================================
# STANDARD SINGLE-TRACK SYNTHESIS
# =============================================================================


class CompositionGraphBuilder:
    def __init__(self, composition: Composition, input_map: InputMap):
        self.composition = composition
        self.input_map = input_map
        self.settings = composition.settings
        self.width, self.height = composition.settings.canvas
        self.total_duration = max(composition.total_duration, 0.1)
        self.graph = FilterGraph()

    def build(self) -> GraphResult:
        clips = self.composition.clips
        if not clips:
            raise FilterGraphError("Cannot build a filter graph without clips")

        video_pads: list[str] = []
        audio_pads: list[str] = []
        for clip in clips:
            video_pads.append(self._clip_video(clip))
            audio_pads.append(self._clip_audio(clip))

        video, audio = self._assemble(video_pads, audio_pads)
        video = self._apply_global_fade(video)
        video = self._apply_watermark(video)
        audio = self._mix_audio(audio)

        self.graph.add([video], [Filter("null")], VIDEO_OUT)
        self.graph.add([self._ensure_audio(audio, "final_silent")], [Filter("anull")], AUDIO_OUT)

        logger.info("Filter complex built: %d steps", len(self.graph))
        return GraphResult(filter_complex=self.graph.serialize(), graph=self.graph)

    def _clip_input(self, clip: Clip) -> int:
        return self.input_map.require(f"clip_{clip.index}")

    def _clip_video(self, clip: Clip) -> str:
        edit = clip.edit
        duration = clip.effective_duration
        filters: list[Filter] = []

        if clip.is_image:
            filters.extend(still_image_filters(edit.display_duration))

        if edit.has_trim:
            filters.extend(trim_filters("trim", edit.trim_start, edit.trim_end))

        if clip.speed != 1.0:
            filters.append(Filter("setpts", (f"{_factor(1.0 / clip.speed)}*PTS",)))

        filters.extend(fit_to_canvas(self.width, self.height))
        filters.extend(fade_filters("fade", edit.fade_in, edit.fade_out, duration))

        return self.graph.add([f"{self._clip_input(clip)}:v"], filters, f"v{clip.index}")

    def _clip_audio(self, clip: Clip) -> str:
        label = f"a{clip.index}"
        duration = clip.effective_duration

        if not clip.has_usable_audio:
            return self.graph.add([], [silence(duration)], label)

        edit = clip.edit
        filters: list[Filter] = []
        if edit.has_trim:
            filters.extend(trim_filters("atrim", edit.trim_start, edit.trim_end))
        if clip.speed != 1.0:
            filters.extend(atempo_chain(clip.speed))
        if edit.volume != 1.0:
            filters.append(Filter("volume", (_sec(edit.volume),)))
        filters.extend(fade_filters("afade", edit.fade_in, edit.fade_out, duration))
        filters.append(Filter("aresample", options={"async": 1, "first_pts": 0}))
        filters.append(audio_format())

        return self.graph.add([f"{self._clip_input(clip)}:a"], filters, label)

    def _ensure_audio(self, label: str | None, fallback: str) -> str:
        if label and self.graph.has_pad(label):
            return label
        return self.graph.add([], [silence(self.total_duration)], fallback)

    def _assemble(
        self, video_pads: list[str], audio_pads: list[str]
    ) -> tuple[str, str]:
        count = len(video_pads)
        if count == 1:
            return video_pads[0], self._ensure_audio(
                audio_pads[0] if audio_pads else None, "silent_fallback"
            )

        video = self.graph.add(
            video_pads,
            [Filter("concat", options={"n": count, "v": 1, "a": 0})],
            "concat_video",
        )
        if len(audio_pads) == count:
            audio = self.graph.add(
                audio_pads,
                [Filter("concat", options={"n": count, "v": 0, "a": 1})],
                "concat_audio",
            )
        else:
            logger.warning(
                "Audio pad count %d does not match clip count %d; using silence",
                len(audio_pads),
                count,
            )
            audio = self._ensure_audio(None, "silent_fallback")
        return video, audio

    def _apply_global_fade(self, video: str) -> str:
        if not self.settings.has_global_fade:
            return video
        filters = fade_filters(
            "fade",
            self.settings.fade_duration if self.settings.fade_in else 0.0,
            self.settings.fade_duration if self.settings.fade_out else 0.0,
            self.total_duration,
        )
        return self.graph.add([video], filters, "global_faded")

    def _apply_watermark(self, video: str) -> str:
        watermark = self.composition.assets.watermark
        idx = self.input_map.index("watermark")
        if watermark is None or idx is None:
            return video

        fraction = WATERMARK_WIDTH_FRACTIONS.get(watermark.size, 0.15)
        scaled = self.graph.add(
            [f"{idx}:v"],
            [
                Filter("scale", (round(self.width * fraction), -1)),
                Filter("format", ("rgba",)),
                Filter("colorchannelmixer", options={"aa": _sec(watermark.opacity)}),
            ],
            "wm_scaled",
        )
        x, y = watermark_position(watermark.position)
        return self.graph.add([video, scaled], [Filter("overlay", (x, y))], "watermarked")

    def _mix_audio(self, base: str) -> str:
        total = self.total_duration
        sources = [self._ensure_audio(base, "base_silent")]
        assets = self.composition.assets

        bgm_idx = self.input_map.index("bgm")
        music = assets.background_music
        if music is not None and bgm_idx is not None:
            filters = [
                Filter("aloop", options={"loop": -1, "size": "2e9"}),
                Filter("atrim", options={"duration": _sec(total)}),
                Filter("volume", (_sec(music.volume),)),
                *fade_filters("afade", music.fade_in, music.fade_out, total),
                audio_format(),
            ]
            sources.append(self.graph.add([f"{bgm_idx}:a"], filters, "bgm_proc"))

        track_idx = self.input_map.index("audio_track")
        narration = assets.narration
        if narration is not None and track_idx is not None:
            filters = []
            if narration.start_at > 0:
                delay_ms = round(narration.start_at * 1000)
                filters.append(Filter("adelay", (f"{delay_ms}|{delay_ms}",)))
            filters.extend(
                [
                    Filter("volume", (_sec(narration.volume),)),
                    audio_format(),
                    Filter("apad", options={"whole_dur": _sec(total)}),
                    Filter("atrim", options={"duration": _sec(total)}),
                ]
            )
            sources.append(self.graph.add([f"{track_idx}:a"], filters, "at_proc"))

        if len(sources) == 1:
            return sources[0]
        return self.graph.add(
            sources,
            [
                Filter(
                    "amix",
                    options={"inputs": len(sources), "duration": "longest", "normalize": 0},
                )
            ],
            "final_audio",
        )


# =============================================================================
# STRATEGY SELECTION
# =============================================================================


@dataclass
class CrossLayerContext:
    request: ProcessRequest
    clips: list[Clip]
    settings: CompositionSettings
    input_map: InputMap
    job_id: str = ""


class CrossLayerStrategy(Protocol):
    def build(self, context: CrossLayerContext) -> GraphResult | None: ...


def needs_transform(composition: Composition) -> bool:
    """False when the single source clip can be mapped straight to the encoder."""
    if len(composition.clips) != 1 or not composition.assets.is_empty:
        return True
    clip = composition.clips[0]
    if clip.is_image or not clip.edit.is_identity:
        return True
    settings = composition.settings
    return settings.has_global_fade or not settings.is_default_canvas


def _try_cross_layer(
    strategy: CrossLayerStrategy,
    composition: Composition,
    input_map: InputMap,
    job_id: str,
) -> GraphResult | None:
    request = composition.request
    context = CrossLayerContext(
        request=request,
        clips=composition.clips,
        settings=composition.settings,
        input_map=input_map,
        job_id=job_id,
    )
    logger.info(
        "[%s] Processing %d cross-layer transition(s)",
        job_id,
        len(request.cross_layer_transitions or []),
    )
    try:
        result = strategy.build(context)
    except Exception:
        logger.exception("[%s] Cross-layer strategy failed; using standard mode", job_id)
        return None
    if result is None or not result.filter_complex:
        logger.warning("[%s] Cross-layer strategy produced no graph", job_id)
        return None
    return result


def synthesize_filter_graph(
    composition: Composition,
    input_map: InputMap,
    cross_layer: CrossLayerStrategy | None = None,
    job_id: str = "",
) -> GraphResult | None:
    """Build the filter graph for a job, or None for direct stream mapping."""
    request = composition.request
    if (
        cross_layer is not None
        and request.multi_track_timeline is not None
        and request.cross_layer_transitions
    ):
        result = _try_cross_layer(cross_layer, composition, input_map, job_id)
        if result is not None:
            logger.info("[%s] Using cross-layer transition mode", job_id)
            return GraphResult(
                filter_complex=result.filter_complex,
                video_output=result.video_output or f"[{VIDEO_OUT}]",
                audio_output=result.audio_output or f"[{AUDIO_OUT}]",
                graph=result.graph,
            )

    if not needs_transform(composition):
        logger.info("[%s] No edits requested; using passthrough mapping", job_id)
        return None

    logger.info("[%s] Using standard processing mode", job_id)
    return CompositionGraphBuilder(composition, input_map).build()
