"""
Durable Store Uploader — first fail-closed gate.

    staged ──put──► exists? ──► size == staged size? ──► uploaded
                      │                 │
                      └──── no ─────────┴──► failed ("storage verification failed")

The upload call's own success signal is never trusted: a separate existence
and size check against the store decides whether the item may move on.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.config import Settings, get_settings
from mediagate.core.errors import VerificationFailure
from mediagate.core.metrics import STORAGE_FAILURES
from mediagate.core.retry import RetryPolicy, retry_call
from mediagate.models.models import ContentItem, ContentStatus
from mediagate.services.pipeline.transitions import apply_transition
from mediagate.services.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

VERIFICATION_FAILED = "storage verification failed"


def durable_key(content_id, staging_path: str, prefix: str) -> str:
    """Deterministic key: ``<prefix>/<content_id><ext>``."""
    return f"{prefix}/{content_id}{Path(staging_path).suffix.lower()}"


class DurableUploader:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ObjectStore,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.settings = settings or get_settings()
        self.policy = RetryPolicy.from_settings(self.settings)

    async def upload(self, item: ContentItem) -> Optional[int]:
        """Upload and verify. Returns the new version, or None if the item failed."""
        key = durable_key(item.id, item.staging_path, self.settings.durable_key_prefix)
        content_type = (item.metadata_json or {}).get("content_type", "application/octet-stream")

        try:
            data = await asyncio.to_thread(Path(item.staging_path).read_bytes)
        except OSError as e:
            logger.error(f"{item.id}: staged blob unreadable: {e}")
            return await self._fail(item, VERIFICATION_FAILED)

        try:
            await retry_call("store.put", self.store.put, key, data, content_type,
                             policy=self.policy)
            await self._verify(key, len(data))
        except Exception as e:  # unverified either way
            logger.warning(f"{item.id}: durable upload rejected: {e}")
            return await self._fail(item, VERIFICATION_FAILED)

        uri = self.store.uri_for(key)
        version = await apply_transition(
            self.session_factory, item.id, ContentStatus.STAGED, item.version,
            ContentStatus.UPLOADED, durable_uri=uri, durable_size_bytes=len(data),
        )
        logger.info(f"{item.id}: stored at {uri} ({len(data)} bytes)")
        self._discard_staged(item.staging_path)
        return version

    async def _verify(self, key: str, expected_size: int) -> None:
        if not await retry_call("store.exists", self.store.exists, key, policy=self.policy):
            raise VerificationFailure(f"{key} missing after upload")
        stored = await retry_call("store.size", self.store.size, key, policy=self.policy)
        if stored != expected_size:
            raise VerificationFailure(f"{key} size {stored} != staged {expected_size}")

    async def _fail(self, item: ContentItem, reason: str) -> None:
        STORAGE_FAILURES.inc()
        await apply_transition(
            self.session_factory, item.id, ContentStatus.STAGED, item.version,
            ContentStatus.FAILED, flagged_reason=reason,
        )
        return None

    @staticmethod
    def _discard_staged(path: str) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove staged file {path}: {e}")
