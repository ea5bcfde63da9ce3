"""
Cross-layer transitions.

Clips that overlap on different timeline tracks are blended with ``xfade``
(video) and ``acrossfade`` (audio). Each applied transition merges two
segments into one; segments left over at the end are concatenated in clip
order so no clip is dropped from the render.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from video_processor.models.composition_models import Clip
from video_processor.models.process_models import CrossLayerTransition, TimelineItem
from video_processor.utils.ffmpeg_builder import (
    AUDIO_OUT,
    IMAGE_FPS,
    VIDEO_OUT,
    CrossLayerContext,
    Filter,
    FilterGraph,
    GraphResult,
    atempo_chain,
    audio_format,
    fit_to_canvas,
    silence,
    still_image_filters,
    trim_filters,
)

logger = logging.getLogger(__name__)


XFADE_TRANSITIONS = frozenset(
    {
        "fade", "dissolve", "fadeblack", "fadewhite", "fadegrays",
        "wipeleft", "wiperight", "wipeup", "wipedown",
        "wipetl", "wipetr", "wipebl", "wipebr",
        "slideleft", "slideright", "slideup", "slidedown",
        "smoothleft", "smoothright", "smoothup", "smoothdown",
        "circleopen", "circleclose", "pixelize", "radial",
        "diagtl", "diagtr", "diagbl", "diagbr",
        "hlslice", "hrslice", "vuslice", "vdslice",
        "hblur", "squeezeh", "squeezev", "zoomin",
    }
)
DEFAULT_TRANSITION_SECONDS = 1.0


def xfade_name(kind: str | None) -> str:
    normalized = (kind or "fade").strip().lower()
    return normalized if normalized in XFADE_TRANSITIONS else "fade"


@dataclass
class Segment:
    """A run of clips already merged into one video and one audio pad."""

    video: str
    audio: str
    duration: float
    first_index: int


class _TransitionGraph:
    """Per-job build state for ``XfadeCrossLayerStrategy``."""

    def __init__(self, context: CrossLayerContext):
        self.context = context
        self.width, self.height = context.settings.canvas
        self.graph = FilterGraph()
        self.segments: dict[int, Segment] = {}
        timeline = context.request.multi_track_timeline
        self.items: dict[str, TimelineItem] = {
            item.id: item
            for item in (timeline.items if timeline else [])
            if item.type == "video"
        }
        self.clips_by_id: dict[str, Clip] = {
            clip.clip_id: clip for clip in context.clips if clip.clip_id
        }

    def item_for(self, clip: Clip) -> TimelineItem | None:
        return self.items.get(clip.clip_id) if clip.clip_id else None

    def duration_of(self, clip: Clip) -> float:
        item = self.item_for(clip)
        if item is not None and item.duration:
            return item.duration
        return clip.effective_duration

    def resolve_pair(
        self, transition: CrossLayerTransition
    ) -> tuple[Clip, Clip] | None:
        if transition.from_clip_id and transition.to_clip_id:
            left = self.clips_by_id.get(transition.from_clip_id)
            right = self.clips_by_id.get(transition.to_clip_id)
            if left is not None and right is not None:
                return left, right
        idx = transition.after_clip_index
        clips = self.context.clips
        if idx is not None and 0 <= idx < len(clips) - 1:
            return clips[idx], clips[idx + 1]
        return None

    def overlap(self, left: Clip, right: Clip) -> float:
        left_item, right_item = self.item_for(left), self.item_for(right)
        left_duration, right_duration = self.duration_of(left), self.duration_of(right)
        if (
            left_item is None
            or right_item is None
            or left_item.start_time is None
            or right_item.start_time is None
        ):
            # No absolute placement: treat the pair as adjacent.
            return min(left_duration, right_duration)
        start = max(left_item.start_time, right_item.start_time)
        end = min(
            left_item.start_time + left_duration,
            right_item.start_time + right_duration,
        )
        return end - start

    def segment(self, clip: Clip) -> Segment:
        existing = self.segments.get(clip.index)
        if existing is not None:
            return existing
        segment = Segment(
            video=self._clip_video(clip),
            audio=self._clip_audio(clip),
            duration=self.duration_of(clip),
            first_index=clip.index,
        )
        self.segments[clip.index] = segment
        return segment

    def _edit_values(self, clip: Clip) -> tuple[float, float | None, float]:
        item = self.item_for(clip)
        trim_start, trim_end = clip.edit.trim_start, clip.edit.trim_end
        if item is not None and item.trim is not None:
            trim_start = item.trim.start or 0.0
            trim_end = item.trim.end
        speed = clip.speed
        if item is not None and item.speed and not clip.is_image:
            speed = item.speed
        return trim_start, trim_end, speed

    def _clip_video(self, clip: Clip) -> str:
        trim_start, trim_end, speed = self._edit_values(clip)
        filters: list[Filter] = []
        if clip.is_image:
            filters.extend(still_image_filters(clip.edit.display_duration))
        if trim_start > 0 or trim_end is not None:
            filters.extend(trim_filters("trim", trim_start, trim_end))
        if speed != 1.0:
            filters.append(Filter("setpts", (f"{1.0 / speed:.4f}*PTS",)))
        filters.append(Filter("trim", options={"duration": f"{self.duration_of(clip):.3f}"}))
        filters.extend(fit_to_canvas(self.width, self.height))
        filters.append(Filter("fps", (IMAGE_FPS,)))
        filters.append(Filter("format", ("yuv420p",)))
        input_idx = self.context.input_map.require(f"clip_{clip.index}")
        return self.graph.add([f"{input_idx}:v"], filters, f"v{clip.index}_proc")

    def _clip_audio(self, clip: Clip) -> str:
        label = f"a{clip.index}_proc"
        duration = self.duration_of(clip)
        item = self.item_for(clip)
        muted = clip.edit.muted or (item is not None and item.muted)
        if not clip.has_usable_audio or muted:
            return self.graph.add([], [silence(duration)], label)

        trim_start, trim_end, speed = self._edit_values(clip)
        volume = clip.edit.volume
        if item is not None and item.volume is not None:
            volume = item.volume

        filters: list[Filter] = []
        if trim_start > 0 or trim_end is not None:
            filters.extend(trim_filters("atrim", trim_start, trim_end))
        if speed != 1.0:
            filters.extend(atempo_chain(speed))
        if volume != 1.0:
            filters.append(Filter("volume", (f"{volume:.3f}",)))
        filters.append(Filter("atrim", options={"duration": f"{duration:.3f}"}))
        filters.append(Filter("aresample", options={"async": 1, "first_pts": 0}))
        filters.append(audio_format())
        input_idx = self.context.input_map.require(f"clip_{clip.index}")
        return self.graph.add([f"{input_idx}:a"], filters, label)

    def merge(
        self, index: int, left: Segment, right: Segment, kind: str, seconds: float
    ) -> Segment:
        offset = max(0.0, left.duration - seconds)
        video = self.graph.add(
            [left.video, right.video],
            [
                Filter(
                    "xfade",
                    options={
                        "transition": kind,
                        "duration": f"{seconds:.3f}",
                        "offset": f"{offset:.3f}",
                    },
                )
            ],
            f"xfade_{index}",
        )
        audio = self.graph.add(
            [left.audio, right.audio],
            [Filter("acrossfade", options={"d": f"{seconds:.3f}", "c1": "tri", "c2": "tri"})],
            f"axfade_{index}",
        )
        merged = Segment(
            video=video,
            audio=audio,
            duration=left.duration + right.duration - seconds,
            first_index=min(left.first_index, right.first_index),
        )
        for clip_index, segment in list(self.segments.items()):
            if segment is left or segment is right:
                self.segments[clip_index] = merged
        return merged

    def finish(self) -> GraphResult:
        for clip in self.context.clips:
            self.segment(clip)

        ordered: list[Segment] = []
        for segment in sorted(self.segments.values(), key=lambda s: s.first_index):
            if not any(segment is seen for seen in ordered):
                ordered.append(segment)

        video, audio = ordered[0].video, ordered[0].audio
        if len(ordered) > 1:
            count = len(ordered)
            video = self.graph.add(
                [s.video for s in ordered],
                [Filter("concat", options={"n": count, "v": 1, "a": 0})],
                "layers_video",
            )
            audio = self.graph.add(
                [s.audio for s in ordered],
                [Filter("concat", options={"n": count, "v": 0, "a": 1})],
                "layers_audio",
            )

        self.graph.add([video], [Filter("null")], VIDEO_OUT)
        self.graph.add([audio], [Filter("anull")], AUDIO_OUT)
        return GraphResult(filter_complex=self.graph.serialize(), graph=self.graph)


class XfadeCrossLayerStrategy:
    """Builds xfade/acrossfade chains for transitions between timeline layers."""

    def build(self, context: CrossLayerContext) -> GraphResult | None:
        transitions = context.request.cross_layer_transitions or []
        if not transitions or not context.clips:
            return None

        state = _TransitionGraph(context)
        applied = 0
        for i, transition in enumerate(transitions):
            pair = state.resolve_pair(transition)
            if pair is None:
                logger.warning("[%s] Transition %d: clips not found", context.job_id, i)
                continue
            left_clip, right_clip = pair

            overlap = state.overlap(left_clip, right_clip)
            if overlap <= 0:
                logger.warning("[%s] Transition %d: no overlap between clips", context.job_id, i)
                continue

            left, right = state.segment(left_clip), state.segment(right_clip)
            if left is right:
                logger.warning(
                    "[%s] Transition %d: clips already joined", context.job_id, i
                )
                continue

            seconds = min(
                transition.duration_seconds or DEFAULT_TRANSITION_SECONDS,
                overlap,
                left.duration,
                right.duration,
            )
            kind = xfade_name(transition.type)
            logger.info(
                "[%s] Transition %d: clip %d -> clip %d, %s for %.2fs",
                context.job_id,
                i,
                left_clip.index,
                right_clip.index,
                kind,
                seconds,
            )
            state.merge(i, left, right, kind, seconds)
            applied += 1

        if applied == 0:
            logger.info("[%s] No cross-layer transitions applied", context.job_id)
            return None

        result = state.finish()
        logger.info(
            "[%s] Cross-layer filter complex built: %d steps",
            context.job_id,
            len(state.graph),
        )
        return result
