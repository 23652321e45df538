"""
Shared fixtures: a per-test SQLite database, fast settings, and in-memory
stand-ins for the durable store, the analysis service and the delivery
network.
"""
from __future__ import annotations

import os

os.environ.setdefault("MEDIAGATE_OVERRIDE_TOKEN", "test-override-token")
os.environ.setdefault("MEDIAGATE_DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")

import uuid
from typing import Dict, List, Optional, Union

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from mediagate.core.config import Settings
from mediagate.core.database import init_db
from mediagate.core.errors import TransientError
from mediagate.services.delivery.delivery_client import DeliveryClient, DeliveryStatus
from mediagate.services.moderation.analysis_client import (
    AnalysisService, Annotations, DetectedLabel, ExplicitFrame, Feature, JobHandle,
    Landmark, Likelihood, PersonTrack, PoseFrame,
)
from mediagate.services.pipeline.pipeline import ModerationPipeline
from mediagate.services.staging.staging_service import StagingService
from mediagate.services.storage.object_store import ObjectStore


# =============================================================================
# Fakes
# =============================================================================


class FakeObjectStore(ObjectStore):
    """Dict-backed store with switches for the failure modes the uploader guards."""

    def __init__(self):
        self.bucket = "test-bucket"
        self.objects: Dict[str, bytes] = {}
        self.put_calls = 0
        self.put_failures = 0      # transient failures before a put succeeds
        self.lose_writes = False   # put reports success, object never lands
        self.truncate_writes = False
        self.exists_failures = 0

    async def put(self, key: str, data: bytes, content_type: str) -> bool:
        self.put_calls += 1
        if self.put_failures > 0:
            self.put_failures -= 1
            raise TransientError("object store unavailable")
        if not self.lose_writes:
            self.objects[key] = data[:-1] if self.truncate_writes else data
        return True

    async def exists(self, key: str) -> bool:
        if self.exists_failures > 0:
            self.exists_failures -= 1
            raise TransientError("object store unavailable")
        return key in self.objects

    async def size(self, key: str) -> Optional[int]:
        data = self.objects.get(key)
        return len(data) if data is not None else None

    async def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise KeyError(key)
        return self.objects[key]

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


ScriptItem = Union[Annotations, Exception]


def modality_of(features) -> str:
    if Feature.SPEECH_TRANSCRIPTION in features:
        return "audio"
    if Feature.SAFE_SEARCH in features:
        return "image"
    return "video"


class FakeAnalysisService(AnalysisService):
    """Scripted analysis: each modality replays its list, repeating the last entry."""

    def __init__(self):
        self.scripts: Dict[str, List[ScriptItem]] = {
            "video": [clean_video()],
            "audio": [clean_audio()],
            "image": [clean_image()],
        }
        self.submitted: List[JobHandle] = []
        self.calls: Dict[str, int] = {"video": 0, "audio": 0, "image": 0}

    def script(self, modality: str, *items: ScriptItem) -> None:
        self.scripts[modality] = list(items)

    async def submit(self, uri, features) -> JobHandle:
        handle = self.new_handle(uri, features)
        self.submitted.append(handle)
        return handle

    async def await_result(self, handle: JobHandle, timeout: float) -> Annotations:
        modality = modality_of(handle.features)
        index = self.calls[modality]
        self.calls[modality] += 1
        script = self.scripts[modality]
        item = script[min(index, len(script) - 1)]
        if isinstance(item, Exception):
            raise item
        return item


class FakeDeliveryClient(DeliveryClient):
    def __init__(self):
        self.assets: Dict[str, DeliveryStatus] = {}
        self.created: List[str] = []
        self.uploads: List[str] = []
        self.deleted: List[str] = []
        self.create_failures = 0
        self.upload_error: Optional[Exception] = None
        self.status_after_upload = DeliveryStatus.READY

    async def create_asset(self, title: str, is_video: bool = True, name: str = "") -> str:
        if self.create_failures > 0:
            self.create_failures -= 1
            raise TransientError("delivery network unavailable")
        asset_id = f"asset-{len(self.created) + 1}"
        self.created.append(asset_id)
        self.assets[asset_id] = DeliveryStatus.CREATED
        return asset_id

    async def upload(self, asset_id: str, data: bytes) -> None:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append(asset_id)
        self.assets[asset_id] = self.status_after_upload

    async def poll_status(self, asset_id: str) -> DeliveryStatus:
        return self.assets.get(asset_id, DeliveryStatus.ERROR)

    def playback_url(self, asset_id: str) -> str:
        return f"https://cdn.test/{asset_id}/playlist.m3u8"

    def thumbnail_url(self, asset_id: str) -> str:
        return f"https://cdn.test/{asset_id}/thumbnail.jpg"

    async def delete_asset(self, asset_id: str) -> None:
        self.deleted.append(asset_id)
        self.assets.pop(asset_id, None)


# =============================================================================
# Annotation builders
# =============================================================================


def clean_video(frames: int = 4) -> Annotations:
    return Annotations(
        explicit_frames=[ExplicitFrame(i * 0.5, Likelihood.VERY_UNLIKELY) for i in range(frames)],
        labels=[DetectedLabel("person", 0.9), DetectedLabel("beach", 0.7)],
    )


def clean_audio(text: str = "we went hiking by the ocean at sunset") -> Annotations:
    return Annotations(transcript=text)


def clean_image() -> Annotations:
    return Annotations(
        safe_search={c: Likelihood.VERY_UNLIKELY for c in ("adult", "violence", "racy")},
        labels=[DetectedLabel("dog", 0.92)],
    )


def pose(time_offset: float, wrist_y: float, shoulder_y: float = 0.5) -> PoseFrame:
    return PoseFrame(time_offset, {
        "left_shoulder": Landmark(0.4, shoulder_y),
        "right_shoulder": Landmark(0.6, shoulder_y),
        "left_wrist": Landmark(0.35, shoulder_y + 0.2),
        "right_wrist": Landmark(0.65, wrist_y),
    })


def raised_hand_track(frames: int, track_id: str = "1") -> PersonTrack:
    return PersonTrack(track_id, [pose(i * 0.5, wrist_y=0.2) for i in range(frames)])


def video_metadata(blob: bytes, **overrides) -> dict:
    meta = {
        "kind": "video",
        "owner_id": "user-1",
        "size_bytes": len(blob),
        "duration_seconds": 12.0,
        "content_type": "video/mp4",
        "title": "Weekend trip",
    }
    meta.update(overrides)
    return meta


def image_metadata(blob: bytes, **overrides) -> dict:
    meta = {
        "kind": "image",
        "owner_id": "user-1",
        "size_bytes": len(blob),
        "content_type": "image/jpeg",
    }
    meta.update(overrides)
    return meta


VIDEO_BLOB = b"\x00\x00\x00\x18ftypmp42" + b"\x01" * 256
IMAGE_BLOB = b"\xff\xd8\xff\xe0JFIF" + b"\x02" * 128


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        staging_dir=str(tmp_path / "staging"),
        temp_dir=str(tmp_path / "work"),
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        external_call_timeout_seconds=5.0,
        external_call_max_attempts=3,
        analysis_timeout_seconds=5.0,
        analysis_max_attempts=3,
        delivery_poll_attempts=3,
        delivery_poll_base_delay_seconds=0.0,
        delivery_poll_max_delay_seconds=0.0,
        sweeper_grace_seconds=0,
        sweeper_stall_timeout_seconds=3600,
        override_token="test-override-token",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'mediagate.db'}",
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def analysis() -> FakeAnalysisService:
    return FakeAnalysisService()


@pytest.fixture
def delivery() -> FakeDeliveryClient:
    return FakeDeliveryClient()


@pytest.fixture
def staging(session_factory, settings) -> StagingService:
    return StagingService(session_factory, settings)


@pytest.fixture
def pipeline(session_factory, store, analysis, delivery, settings) -> ModerationPipeline:
    return ModerationPipeline(session_factory, store, analysis, delivery, settings)


@pytest_asyncio.fixture
async def staged_video(staging) -> uuid.UUID:
    staged = await staging.stage(VIDEO_BLOB, video_metadata(VIDEO_BLOB))
    return uuid.UUID(staged.content_id)


@pytest_asyncio.fixture
async def staged_image(staging) -> uuid.UUID:
    staged = await staging.stage(IMAGE_BLOB, image_metadata(IMAGE_BLOB))
    return uuid.UUID(staged.content_id)
