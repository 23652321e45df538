"""
Tests for the in-process analysis backend. The model services are replaced
with light fakes so the job plumbing and the annotation mapping run without
loading CLIP, Whisper or MediaPipe.
"""

from __future__ import annotations

import asyncio
import io
import sys
import threading
import types
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

import pytest

np = pytest.importorskip("numpy")
Image = pytest.importorskip("PIL.Image")

from conftest import FakeObjectStore
from mediagate.core.errors import AnalysisTransientError
from mediagate.ml.local_analysis import LocalAnalysisService
from mediagate.services.moderation.analysis_client import (
    Feature, JobHandle, Likelihood, PersonTrack,
)

VIDEO_FEATURES = {
    Feature.EXPLICIT_CONTENT, Feature.LABEL_DETECTION,
    Feature.OBJECT_TRACKING, Feature.PERSON_DETECTION,
}


@dataclass
class Tag:
    label: str
    confidence: float


@dataclass
class Scores:
    explicit: float = 0.01
    safe_search: Dict[str, float] = field(default_factory=lambda: {"adult": 0.01, "violence": 0.01, "racy": 0.01})
    tags: List[Tag] = field(default_factory=list)


class FakeVision:
    def __init__(self):
        self.frames = [(0.0, np.zeros((8, 8, 3), dtype=np.uint8)), (1.0, np.zeros((8, 8, 3), dtype=np.uint8))]
        self.scores = [Scores(), Scores(explicit=0.9, tags=[Tag("knife", 0.7), Tag("kitchen", 0.5)])]
        self.scored = 0

    def sample_frames(self, path, interval, max_frames):
        assert Path(path).exists()
        return self.frames

    def score(self, image):
        result = self.scores[min(self.scored, len(self.scores) - 1)]
        self.scored += 1
        return result


class FakePose:
    def track(self, frames):
        return [PersonTrack("0")]


class FakeSpeech:
    def __init__(self):
        self.transcript = "hello there"
        self.paths: List[str] = []

    def transcribe_file(self, media_path, work_dir):
        self.paths.append(media_path)
        return self.transcript


@pytest.fixture
def fakes(monkeypatch):
    vision, pose, speech = FakeVision(), FakePose(), FakeSpeech()
    modules = {
        "mediagate.ml.vision.vision_service": {
            "vision_service": vision, "MODERATION_LABELS": ("knife", "gun", "middle finger"),
        },
        "mediagate.ml.pose.pose_service": {"pose_service": pose},
        "mediagate.ml.speech.speech_service": {"speech_service": speech},
    }
    for name, attrs in modules.items():
        module = types.ModuleType(name)
        module.__dict__.update(attrs)
        monkeypatch.setitem(sys.modules, name, module)
    return types.SimpleNamespace(vision=vision, pose=pose, speech=speech)


@pytest.fixture
def service(settings):
    store = FakeObjectStore()
    svc = LocalAnalysisService(store, settings)
    yield svc
    svc.shutdown()


def jpeg_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (16, 16), (200, 120, 40)).save(buf, format="JPEG")
    return buf.getvalue()


async def run(service, key: str, data: bytes, features):
    service.store.objects[key] = data
    handle = await service.submit(service.store.uri_for(key), features)
    return await service.await_result(handle, timeout=5)


class TestLocalAnalysis:
    @pytest.mark.asyncio
    async def test_video_frames_map_to_annotations(self, service, fakes, settings):
        ann = await run(service, "raw-media/a.mp4", b"video", VIDEO_FEATURES)

        assert [f.likelihood for f in ann.explicit_frames] == [Likelihood.VERY_UNLIKELY, Likelihood.VERY_LIKELY]
        assert [(l.description, l.time_offset) for l in ann.object_labels] == [("knife", 1.0)]
        assert [l.description for l in ann.labels] == ["kitchen"]
        assert [t.track_id for t in ann.person_tracks] == ["0"]
        assert ann.transcript is None
        assert list(Path(settings.temp_dir).iterdir()) == []

    @pytest.mark.asyncio
    async def test_audio_only_transcribes(self, service, fakes):
        ann = await run(service, "raw-media/b.mp4", b"video", {Feature.SPEECH_TRANSCRIPTION})

        assert ann.transcript == "hello there"
        assert ann.explicit_frames == []
        assert fakes.vision.scored == 0
        assert fakes.speech.paths[0].endswith(".mp4")

    @pytest.mark.asyncio
    async def test_still_gets_safe_search(self, service, fakes):
        fakes.vision.scores = [Scores(safe_search={"adult": 0.7, "violence": 0.2, "racy": 0.05})]

        ann = await run(service, "raw-media/c.jpg", jpeg_bytes(), {Feature.SAFE_SEARCH, Feature.LABEL_DETECTION})

        assert ann.safe_search == {
            "adult": Likelihood.LIKELY,
            "violence": Likelihood.UNLIKELY,
            "racy": Likelihood.VERY_UNLIKELY,
        }

    @pytest.mark.asyncio
    async def test_undecodable_video_is_an_error(self, service, fakes):
        fakes.vision.frames = []

        with pytest.raises(RuntimeError):
            await run(service, "raw-media/d.mp4", b"garbage", VIDEO_FEATURES)

    @pytest.mark.asyncio
    async def test_unknown_job_is_transient(self, service):
        handle = JobHandle(job_id="missing", uri="s3://test-bucket/x", features=frozenset())
        with pytest.raises(AnalysisTransientError):
            await service.await_result(handle, timeout=1)

    @pytest.mark.asyncio
    async def test_missing_durable_object_fails_submit(self, service):
        with pytest.raises(KeyError):
            await service.submit("s3://test-bucket/raw-media/none.mp4", VIDEO_FEATURES)

    @pytest.mark.asyncio
    async def test_timed_out_jobs_are_cancelled_and_dropped(self, settings, fakes):
        settings.analysis_workers = 1
        service = LocalAnalysisService(FakeObjectStore(), settings)
        gate = threading.Event()
        score = fakes.vision.score

        def gated_score(image):
            gate.wait(5)
            return score(image)

        fakes.vision.score = gated_score
        service.store.objects["raw-media/slow.mp4"] = b"video"
        service.store.objects["raw-media/queued.mp4"] = b"video"
        try:
            running = await service.submit(service.store.uri_for("raw-media/slow.mp4"), VIDEO_FEATURES)
            queued = await service.submit(service.store.uri_for("raw-media/queued.mp4"), VIDEO_FEATURES)
            queued_future = service._jobs[queued.job_id][0]

            with pytest.raises(asyncio.TimeoutError):
                await service.await_result(queued, timeout=0.05)
            assert queued_future.cancelled()

            with pytest.raises(asyncio.TimeoutError):
                await service.await_result(running, timeout=0.05)
            assert service._jobs == {}

            with pytest.raises(AnalysisTransientError):
                await service.await_result(running, timeout=1)
        finally:
            gate.set()
            service.shutdown()

        leftovers = [p for p in Path(settings.temp_dir).iterdir() if p.name.startswith(queued.job_id)]
        assert leftovers == []
