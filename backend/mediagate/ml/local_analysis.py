"""
Local analysis backend — runs the ML models in-process behind the
job-style AnalysisService contract.

    submit()        fetch the durable object, write it under temp_dir,
                    queue the job on a thread pool
    await_result()  wait for the job future under the caller's timeout

Feature → model:
    EXPLICIT_CONTENT      CLIP explicit score per sampled frame
    LABEL_DETECTION       CLIP zero-shot labels (per frame / per still)
    OBJECT_TRACKING       moderation-vocabulary labels per frame
    PERSON_DETECTION      MediaPipe shoulder/wrist tracks
    SPEECH_TRANSCRIPTION  faster-whisper transcript
    SAFE_SEARCH           CLIP adult / violence / racy on the still

Any model failure surfaces as an exception from await_result; nothing here
converts an error into an empty annotation set.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import numpy as np
from PIL import Image

from mediagate.core.config import Settings, get_settings
from mediagate.core.errors import AnalysisTransientError
from mediagate.services.moderation.analysis_client import (
    AnalysisService, Annotations, DetectedLabel, ExplicitFrame, Feature,
    JobHandle, Likelihood,
)
from mediagate.services.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

FRAME_FEATURES = frozenset({
    Feature.EXPLICIT_CONTENT, Feature.LABEL_DETECTION,
    Feature.OBJECT_TRACKING, Feature.PERSON_DETECTION,
})


class LocalAnalysisService(AnalysisService):
    def __init__(self, store: ObjectStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or get_settings()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.analysis_workers, thread_name_prefix="analysis",
        )
        self._jobs: Dict[str, Tuple[Future, str]] = {}
        self._model_lock = threading.Lock()

    async def submit(self, uri: str, features: Iterable[Feature]) -> JobHandle:
        handle = self.new_handle(uri, features)
        data = await self.store.get(self.store.key_from_uri(uri))
        path = await asyncio.to_thread(self._write_temp, handle.job_id, uri, data)
        self._jobs[handle.job_id] = (self._executor.submit(self._run_job, path, handle.features), path)
        logger.info(f"Analysis job {handle.job_id} queued: {uri} [{', '.join(sorted(f.value for f in handle.features))}]")
        return handle

    async def await_result(self, handle: JobHandle, timeout: float) -> Annotations:
        job = self._jobs.pop(handle.job_id, None)
        if job is None:
            raise AnalysisTransientError(f"Unknown analysis job {handle.job_id}")
        fut, path = job
        try:
            return await asyncio.wait_for(asyncio.wrap_future(fut), timeout=timeout)
        except asyncio.TimeoutError:
            # A handle is awaited once; a retry submits a fresh job
            if fut.cancel():
                Path(path).unlink(missing_ok=True)
            else:
                logger.warning(f"Analysis job {handle.job_id} timed out mid-run, its result will be dropped")
            raise

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── Worker side ──────────────────────────────────────────────────────

    def _write_temp(self, job_id: str, uri: str, data: bytes) -> str:
        os.makedirs(self.settings.temp_dir, exist_ok=True)
        suffix = Path(uri).suffix
        fd, path = tempfile.mkstemp(prefix=f"{job_id}_", suffix=suffix, dir=self.settings.temp_dir)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        return path

    def _run_job(self, path: str, features: FrozenSet[Feature]) -> Annotations:
        try:
            return self._analyze_file(path, features)
        finally:
            Path(path).unlink(missing_ok=True)

    def _analyze_file(self, path: str, features: FrozenSet[Feature]) -> Annotations:
        ann = Annotations()
        if Feature.SAFE_SEARCH in features:
            self._analyze_still(path, features, ann)
        elif features & FRAME_FEATURES:
            self._analyze_video(path, features, ann)

        if Feature.SPEECH_TRANSCRIPTION in features:
            from mediagate.ml.speech.speech_service import speech_service

            with self._model_lock:
                ann.transcript = speech_service.transcribe_file(path, self.settings.temp_dir)
        return ann

    def _analyze_still(self, path: str, features: FrozenSet[Feature], ann: Annotations):
        from mediagate.ml.vision.vision_service import vision_service

        with Image.open(path) as img:
            image = img.convert("RGB")
        with self._model_lock:
            scores = vision_service.score(image)
        ann.safe_search = {c: Likelihood.from_score(s) for c, s in scores.safe_search.items()}
        if Feature.LABEL_DETECTION in features:
            ann.labels = [DetectedLabel(t.label, t.confidence) for t in scores.tags]

    def _analyze_video(self, path: str, features: FrozenSet[Feature], ann: Annotations):
        from mediagate.ml.vision.vision_service import MODERATION_LABELS, vision_service

        frames = vision_service.sample_frames(
            path, self.settings.frame_sample_interval, self.settings.max_frames_per_video,
        )
        if not frames:
            raise RuntimeError(f"No decodable frames in {Path(path).name}")

        with self._model_lock:
            for ts, frame in frames:
                scores = vision_service.score(Image.fromarray(frame))
                if Feature.EXPLICIT_CONTENT in features:
                    ann.explicit_frames.append(
                        ExplicitFrame(time_offset=ts, likelihood=Likelihood.from_score(scores.explicit))
                    )
                for tag in scores.tags:
                    label = DetectedLabel(tag.label, tag.confidence, time_offset=ts)
                    if tag.label in MODERATION_LABELS:
                        if Feature.OBJECT_TRACKING in features:
                            ann.object_labels.append(label)
                    elif Feature.LABEL_DETECTION in features:
                        ann.labels.append(label)

        if Feature.PERSON_DETECTION in features:
            ann.person_tracks = self._track_people(frames)

    @staticmethod
    def _track_people(frames: List[Tuple[float, np.ndarray]]):
        from mediagate.ml.pose.pose_service import pose_service

        return pose_service.track(frames)
