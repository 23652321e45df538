"""
Staging Receiver — accepts a finished upload under a stable content id.

Malformed metadata is refused (StagingValidationError) before anything is
written or any external service is called. Accepted blobs are written
atomically to ``<staging_dir>/<content_id><ext>`` and the row is created
with an insert-if-absent, so a retried request for the same id never
creates a duplicate and never touches the existing row's status.
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.config import Settings, get_settings
from mediagate.core.database import insert_if_absent
from mediagate.core.errors import StagingValidationError
from mediagate.core.metrics import CONTENT_STAGED
from mediagate.models.models import ContentItem, ContentKind, ContentStatus, utcnow
from mediagate.schemas.schemas import StagedContent, StagingMetadata

logger = logging.getLogger(__name__)

EXTENSIONS: Dict[str, str] = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


class StagingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # ── Validation ───────────────────────────────────────────────────────

    def parse_metadata(self, raw: Union[StagingMetadata, Dict[str, Any]]) -> StagingMetadata:
        if isinstance(raw, StagingMetadata):
            return raw
        try:
            return StagingMetadata.model_validate(raw)
        except ValidationError as e:
            raise StagingValidationError([
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]) from e

    def validate(self, blob: bytes, meta: StagingMetadata) -> List[str]:
        """Collect every problem with the request; empty list means acceptable."""
        errors: List[str] = []
        s = self.settings

        if meta.size_bytes <= 0:
            errors.append("size_bytes must be positive")
        elif meta.size_bytes > s.max_upload_bytes:
            errors.append(f"size_bytes exceeds limit of {s.max_upload_bytes}")
        if len(blob) != meta.size_bytes:
            errors.append(f"declared size {meta.size_bytes} does not match received {len(blob)} bytes")

        if meta.content_type not in s.allowed_content_types or meta.content_type not in EXTENSIONS:
            errors.append(f"unsupported content type {meta.content_type}")
        elif meta.kind.is_video != meta.content_type.startswith("video/"):
            errors.append(f"content type {meta.content_type} does not match kind {meta.kind.value}")

        if meta.kind.is_video:
            if meta.duration_seconds is None or meta.duration_seconds <= 0:
                errors.append("duration_seconds must be positive for video content")
            elif meta.duration_seconds > s.max_video_duration_seconds:
                errors.append(f"duration exceeds {s.max_video_duration_seconds:.0f}s")

        if meta.kind is ContentKind.VIDEO_COMMENT and not meta.parent_video_id:
            errors.append("parent_video_id is required for video comments")
        if meta.kind is ContentKind.THREAD_VIDEO and not meta.thread_id:
            errors.append("thread_id is required for thread videos")

        return errors

    # ── Staging ──────────────────────────────────────────────────────────

    async def stage(
        self, blob: bytes, metadata: Union[StagingMetadata, Dict[str, Any]],
    ) -> StagedContent:
        meta = self.parse_metadata(metadata)
        errors = self.validate(blob, meta)
        if errors:
            logger.info(f"Staging refused for owner {meta.owner_id}: {errors}")
            raise StagingValidationError(errors)

        content_id = meta.content_id or uuid.uuid4()
        meta = meta.model_copy(update={"content_id": content_id})
        final_path = Path(self.settings.staging_dir) / f"{content_id}{EXTENSIONS[meta.content_type]}"
        tmp_path = await asyncio.to_thread(self._write_temp, blob, final_path.parent)

        try:
            async with self.session_factory() as session, session.begin():
                now = utcnow()
                stmt = insert_if_absent(session, ContentItem.__table__, {
                    "id": content_id,
                    "owner_id": meta.owner_id,
                    "kind": meta.kind,
                    "staging_path": str(final_path),
                    "metadata_json": meta.model_dump(mode="json"),
                    "status": ContentStatus.STAGED,
                    "is_active": False,
                    "version": 1,
                    "stage_entered_at": now,
                    "created_at": now,
                    "updated_at": now,
                }, key="id")
                created = (await session.execute(stmt)).rowcount == 1
                if created:
                    os.replace(tmp_path, final_path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

        if created:
            CONTENT_STAGED.labels(kind=meta.kind.value).inc()
            logger.info(f"Staged {meta.kind.value} {content_id} ({len(blob)} bytes)")
            return StagedContent(content_id=str(content_id), status=ContentStatus.STAGED, created=True)

        async with self.session_factory() as session:
            status = (await session.execute(
                select(ContentItem.status).where(ContentItem.id == content_id)
            )).scalar_one()
        logger.info(f"Staging retry for existing {content_id} ignored (status {status.value})")
        return StagedContent(content_id=str(content_id), status=status, created=False)

    @staticmethod
    def _write_temp(blob: bytes, directory: Path) -> str:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, suffix=".part")
        with os.fdopen(fd, "wb") as f:
            f.write(blob)
            f.flush()
            os.fsync(f.fileno())
        return tmp
