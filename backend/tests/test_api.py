"""
Tests for the HTTP surface: upload, status, audit trail, deletion, human
override and admin counts.
"""

from __future__ import annotations

import json
import uuid
from typing import List

import httpx
import pytest
import pytest_asyncio

from conftest import IMAGE_BLOB, VIDEO_BLOB, clean_audio, image_metadata, video_metadata
from mediagate.api.routes.content import get_content_service, get_dispatcher, get_staging_service
from mediagate.main import app
from mediagate.services.content.content_service import ContentService
from mediagate.services.staging.staging_service import StagingService

PREFIX = "/api/v1"
MODERATOR = {"X-Override-Token": "test-override-token", "X-Moderator-Id": "mod-1"}


class RecordingDispatcher:
    def __init__(self):
        self.processed: List[str] = []
        self.published: List[str] = []

    def process(self, content_id: str) -> None:
        self.processed.append(content_id)

    def publish(self, content_id: str) -> None:
        self.published.append(content_id)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def client(session_factory, store, delivery, settings, dispatcher):
    app.dependency_overrides[get_staging_service] = lambda: StagingService(session_factory, settings)
    app.dependency_overrides[get_content_service] = lambda: ContentService(session_factory, store, delivery)
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def upload(client, blob: bytes, metadata: dict, filename: str = "clip.mp4"):
    return await client.post(
        f"{PREFIX}/content",
        files={"file": (filename, blob, metadata.get("content_type", "application/octet-stream"))},
        data={"metadata": json.dumps(metadata)},
    )


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_stages_and_enqueues(self, client, dispatcher):
        resp = await upload(client, VIDEO_BLOB, video_metadata(VIDEO_BLOB))

        assert resp.status_code == 202
        body = resp.json()
        assert body["status"] == "staged"
        assert body["created"] is True
        assert dispatcher.processed == [body["content_id"]]

    @pytest.mark.asyncio
    async def test_retried_upload_is_not_enqueued_twice(self, client, dispatcher):
        meta = image_metadata(IMAGE_BLOB, content_id=str(uuid.uuid4()))
        first = await upload(client, IMAGE_BLOB, meta, "avatar.jpg")
        second = await upload(client, IMAGE_BLOB, meta, "avatar.jpg")

        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert len(dispatcher.processed) == 1

    @pytest.mark.asyncio
    async def test_invalid_metadata_is_422(self, client, dispatcher):
        resp = await upload(client, VIDEO_BLOB, video_metadata(VIDEO_BLOB, duration_seconds=None))

        assert resp.status_code == 422
        assert any("duration_seconds" in e for e in resp.json()["detail"])
        assert dispatcher.processed == []

    @pytest.mark.asyncio
    async def test_malformed_json_is_422(self, client):
        resp = await client.post(
            f"{PREFIX}/content",
            files={"file": ("clip.mp4", VIDEO_BLOB, "video/mp4")},
            data={"metadata": "{not json"},
        )
        assert resp.status_code == 422


class TestQueries:
    @pytest.mark.asyncio
    async def test_status_of_staged_item(self, client):
        content_id = (await upload(client, VIDEO_BLOB, video_metadata(VIDEO_BLOB))).json()["content_id"]

        resp = await client.get(f"{PREFIX}/content/{content_id}/status")

        assert resp.status_code == 200
        assert resp.json() == {
            "content_id": content_id,
            "status": "staged",
            "flagged_reason": None,
            "is_active": False,
            "delivery_url": None,
            "thumbnail_url": None,
        }

    @pytest.mark.asyncio
    async def test_unknown_item_is_404(self, client):
        assert (await client.get(f"{PREFIX}/content/{uuid.uuid4()}/status")).status_code == 404
        assert (await client.get(f"{PREFIX}/content/not-a-uuid/status")).status_code == 404
        assert (await client.get(f"{PREFIX}/content/{uuid.uuid4()}/decisions")).status_code == 404

    @pytest.mark.asyncio
    async def test_decisions_after_processing(self, client, pipeline, analysis, staged_video):
        analysis.script("audio", clean_audio("nobody likes you"))
        await pipeline.process(staged_video)

        resp = await client.get(f"{PREFIX}/content/{staged_video}/decisions")

        assert resp.status_code == 200
        (decision,) = resp.json()
        assert decision["decision"] == "rejected"
        assert decision["decided_by"] is None
        assert "nobody likes you" in decision["reason"]
        assert {r["modality"] for r in decision["modality_results"]} == {"video", "audio"}

    @pytest.mark.asyncio
    async def test_admin_metrics(self, client, pipeline, staged_video, staged_image):
        await pipeline.process(staged_video)

        resp = await client.get(f"{PREFIX}/admin/metrics")

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 2
        assert body["by_status"] == {"active": 1, "staged": 1}
        assert body["active"] == 1
        assert body["decisions"] == 1


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_active_item_takes_it_down(self, client, pipeline, store, delivery, staged_video):
        await pipeline.process(staged_video)
        asset_id = delivery.created[0]

        resp = await client.delete(f"{PREFIX}/content/{staged_video}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "deleted"
        assert body["is_active"] is False
        assert body["delivery_url"] is None
        assert delivery.deleted == [asset_id]
        assert store.objects == {}

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, client, staged_video):
        first = await client.delete(f"{PREFIX}/content/{staged_video}")
        second = await client.delete(f"{PREFIX}/content/{staged_video}")
        assert first.status_code == second.status_code == 200
        assert second.json()["status"] == "deleted"


class TestOverride:
    @pytest.mark.asyncio
    async def test_requires_token(self, client, staged_video):
        resp = await client.post(
            f"{PREFIX}/content/{staged_video}/override",
            json={"decision": "approved", "reason": "looks fine"},
            headers={"X-Moderator-Id": "mod-1"},
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_wrong_token_is_refused(self, client, staged_video):
        resp = await client.post(
            f"{PREFIX}/content/{staged_video}/override",
            json={"decision": "approved", "reason": "looks fine"},
            headers={"X-Override-Token": "guess", "X-Moderator-Id": "mod-1"},
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_requires_moderator_id(self, client, staged_video):
        resp = await client.post(
            f"{PREFIX}/content/{staged_video}/override",
            json={"decision": "approved", "reason": "looks fine"},
            headers={"X-Override-Token": "test-override-token"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_approving_undecided_item_is_409(self, client, staged_video):
        resp = await client.post(
            f"{PREFIX}/content/{staged_video}/override",
            json={"decision": "approved", "reason": "looks fine"},
            headers=MODERATOR,
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_approval_of_rejected_item_is_queued_for_publish(self, client, pipeline, analysis, dispatcher, staged_video):
        analysis.script("audio", clean_audio("burn in hell"))
        await pipeline.process(staged_video)

        resp = await client.post(
            f"{PREFIX}/content/{staged_video}/override",
            json={"decision": "approved", "reason": "sermon excerpt, allowed"},
            headers=MODERATOR,
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"
        assert dispatcher.published == [str(staged_video)]

    @pytest.mark.asyncio
    async def test_rejecting_active_item_takes_it_down(self, client, pipeline, delivery, dispatcher, staged_video):
        await pipeline.process(staged_video)

        resp = await client.post(
            f"{PREFIX}/content/{staged_video}/override",
            json={"decision": "rejected", "reason": "reported and confirmed"},
            headers=MODERATOR,
        )

        body = resp.json()
        assert resp.status_code == 200
        assert body["status"] == "rejected"
        assert body["is_active"] is False
        assert body["flagged_reason"] == "reported and confirmed"
        assert delivery.deleted == delivery.created
        assert dispatcher.published == []


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
