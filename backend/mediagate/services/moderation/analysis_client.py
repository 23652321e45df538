"""
Analysis service contract — what the analyzer needs from a media
intelligence backend, independent of vendor.

    handle = await service.submit("s3://bucket/raw-media/<id>.mp4", {Feature.EXPLICIT_CONTENT, ...})
    annotations = await service.await_result(handle, timeout=300)

Landmark coordinates are normalised to the frame (0..1) with y growing
downward, so a raised wrist has a *smaller* y than its shoulder.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional

from mediagate.core.config import Settings, get_settings


class Likelihood(enum.IntEnum):
    UNKNOWN = 0
    VERY_UNLIKELY = 1
    UNLIKELY = 2
    POSSIBLE = 3
    LIKELY = 4
    VERY_LIKELY = 5

    @classmethod
    def parse(cls, value) -> "Likelihood":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]

    @classmethod
    def from_score(cls, score: float) -> "Likelihood":
        """Bucket a 0..1 probability into the likelihood scale."""
        if score >= 0.85:
            return cls.VERY_LIKELY
        if score >= 0.6:
            return cls.LIKELY
        if score >= 0.35:
            return cls.POSSIBLE
        if score >= 0.15:
            return cls.UNLIKELY
        return cls.VERY_UNLIKELY


class Feature(str, enum.Enum):
    EXPLICIT_CONTENT = "explicit_content"
    OBJECT_TRACKING = "object_tracking"
    PERSON_DETECTION = "person_detection"
    SPEECH_TRANSCRIPTION = "speech_transcription"
    SAFE_SEARCH = "safe_search"
    LABEL_DETECTION = "label_detection"


class Landmark(NamedTuple):
    x: float
    y: float
    confidence: float = 1.0


@dataclass
class PoseFrame:
    time_offset: float
    landmarks: Dict[str, Landmark] = field(default_factory=dict)


@dataclass
class PersonTrack:
    track_id: str
    frames: List[PoseFrame] = field(default_factory=list)


@dataclass
class ExplicitFrame:
    time_offset: float
    likelihood: Likelihood


@dataclass
class DetectedLabel:
    description: str
    confidence: float
    time_offset: Optional[float] = None


@dataclass
class JobHandle:
    job_id: str
    uri: str
    features: FrozenSet[Feature]


@dataclass
class Annotations:
    explicit_frames: List[ExplicitFrame] = field(default_factory=list)
    object_labels: List[DetectedLabel] = field(default_factory=list)
    labels: List[DetectedLabel] = field(default_factory=list)
    person_tracks: List[PersonTrack] = field(default_factory=list)
    transcript: Optional[str] = None
    # Image safe-search categories: adult / violence / racy
    safe_search: Dict[str, Likelihood] = field(default_factory=dict)


class AnalysisService:
    """Asynchronous job-style analysis backend.

    Implementations raise AnalysisTransientError (or time out) for failures
    worth retrying; any other exception is treated as a definitive failure
    of the call, never as a clean result.
    """

    async def submit(self, uri: str, features: Iterable[Feature]) -> JobHandle:
        raise NotImplementedError

    async def await_result(self, handle: JobHandle, timeout: float) -> Annotations:
        raise NotImplementedError

    @staticmethod
    def new_handle(uri: str, features: Iterable[Feature]) -> JobHandle:
        return JobHandle(job_id=uuid.uuid4().hex, uri=uri, features=frozenset(features))


_service: Optional[AnalysisService] = None


def get_analysis_service(settings: Optional[Settings] = None) -> AnalysisService:
    global _service
    if _service is not None:
        return _service
    settings = settings or get_settings()
    if settings.analysis_backend == "local":
        from mediagate.ml.local_analysis import LocalAnalysisService
        from mediagate.services.storage.object_store import get_object_store

        _service = LocalAnalysisService(get_object_store(), settings)
        return _service
    raise ValueError(f"Unknown analysis backend: {settings.analysis_backend}")
