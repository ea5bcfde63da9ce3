from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from video_processor.config import ProcessorSettings
from video_processor.models.composition_models import (
    Composition,
    MediaProbe,
    resolve_composition,
)
from video_processor.models.process_models import ProcessRequest


@pytest.fixture
def settings(tmp_path: Path) -> ProcessorSettings:
    """Settings pointing at a per-test temp directory."""
    return ProcessorSettings(
        temp_dir=tmp_path / "work",
        download_timeout_seconds=5,
        job_retention_seconds=60,
    )


@pytest.fixture
def make_composition(tmp_path: Path) -> Callable[..., Composition]:
    """Resolve a payload and mark every clip as downloaded and probed."""

    def _make(
        payload: dict[str, Any], probes: list[MediaProbe] | None = None
    ) -> Composition:
        composition = resolve_composition(ProcessRequest.model_validate(payload))
        for clip in composition.clips:
            ext = "png" if clip.is_image else "mp4"
            clip.local_path = tmp_path / f"clip_{clip.index}.{ext}"
            if probes is not None:
                clip.probe = probes[clip.index]
        return composition

    return _make
