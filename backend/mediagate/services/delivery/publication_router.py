"""
Publication Router — moves approved content onto the delivery network.

    approved ──claim──► publishing ──create/upload/poll──► active
                            │
                            └── delivery failure ──► approved ("publish pending retry")

Preconditions are re-read from the database, never trusted from the caller:
status approved, latest decision approved, durable object still present.
The asset id is recorded as soon as it exists so a retry (sweeper or
duplicate trigger) reuses it and never uploads the same item twice.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.config import Settings, get_settings
from mediagate.core.errors import ConcurrencyConflict, ContentNotFound, PublishError
from mediagate.core.metrics import CONCURRENCY_CONFLICTS, PUBLISH_FAILURES
from mediagate.core.retry import RetryPolicy, retry_call
from mediagate.models.models import ContentItem, ContentStatus, DecisionOutcome
from mediagate.services.delivery.delivery_client import DeliveryClient, DeliveryStatus
from mediagate.services.moderation.aggregator import latest_decision
from mediagate.services.pipeline.transitions import (
    apply_claim, apply_transition, fetch_item, load_item,
)
from mediagate.services.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

PUBLISH_PENDING = "publish pending retry"
DURABLE_MISSING = "storage verification failed"


class PublicationRouter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ObjectStore,
        delivery: DeliveryClient,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.delivery = delivery
        self.settings = settings or get_settings()
        self.policy = RetryPolicy.from_settings(self.settings)
        # Asset creation is a non-idempotent POST: one attempt, a failure goes to publish-pending
        self.create_policy = RetryPolicy.from_settings(self.settings, max_attempts=1)

    async def publish(self, content_id: uuid.UUID) -> Optional[ContentItem]:
        """Publish one approved item. Returns the active item, or None if not published."""
        item = await self._check_preconditions(content_id)
        if item is None:
            return None

        version = await apply_transition(
            self.session_factory, item.id, ContentStatus.APPROVED, item.version,
            ContentStatus.PUBLISHING,
        )

        asset_id = item.delivery_asset_id
        try:
            if asset_id is None:
                asset_id, version = await self._create_asset(item, version)
            await self._ensure_uploaded(item, asset_id)
            await self._wait_until_ready(asset_id)
        except ConcurrencyConflict:
            raise
        except Exception as e:
            PUBLISH_FAILURES.inc()
            logger.warning(f"{item.id}: publish failed, will retry later: {type(e).__name__}: {e}")
            await apply_transition(
                self.session_factory, item.id, ContentStatus.PUBLISHING, version,
                ContentStatus.APPROVED, flagged_reason=PUBLISH_PENDING,
            )
            return None

        try:
            await apply_transition(
                self.session_factory, item.id, ContentStatus.PUBLISHING, version,
                ContentStatus.ACTIVE,
                delivery_asset_id=asset_id,
                delivery_url=self.delivery.playback_url(asset_id),
                thumbnail_url=self.delivery.thumbnail_url(asset_id),
            )
        except ConcurrencyConflict:
            # Deleted, taken down, or overtaken by another publisher of the same asset
            await self._discard_if_orphaned(item.id, asset_id)
            raise

        logger.info(f"{item.id}: active at {self.delivery.playback_url(asset_id)}")
        return await load_item(self.session_factory, item.id)

    # ── Steps ────────────────────────────────────────────────────────────

    async def _check_preconditions(self, content_id: uuid.UUID) -> Optional[ContentItem]:
        async with self.session_factory() as session:
            item = await fetch_item(session, content_id)
            if item.status is not ContentStatus.APPROVED:
                logger.info(f"{content_id}: not publishing, status is {item.status.value}")
                return None
            decision = await latest_decision(session, content_id)

        if decision is None or decision.decision is not DecisionOutcome.APPROVED:
            logger.error(f"{content_id}: approved status without an approved decision, refusing")
            return None
        if not item.durable_uri:
            logger.error(f"{content_id}: approved without durable copy, refusing")
            return None

        key = self.store.key_from_uri(item.durable_uri)
        try:
            present = await retry_call("store.exists", self.store.exists, key, policy=self.policy)
        except Exception as e:
            logger.warning(f"{content_id}: cannot confirm durable copy ({e}); retry later")
            await apply_claim(
                self.session_factory, item.id, ContentStatus.APPROVED, item.version,
                flagged_reason=PUBLISH_PENDING,
            )
            return None

        if not present:
            logger.error(f"{content_id}: durable object {key} vanished before publish")
            await apply_transition(
                self.session_factory, item.id, ContentStatus.APPROVED, item.version,
                ContentStatus.FAILED, flagged_reason=DURABLE_MISSING,
            )
            return None
        return item

    async def _create_asset(self, item: ContentItem, version: int):
        meta = item.metadata_json or {}
        title = meta.get("title") or str(item.id)
        name = f"{item.id}{Path(item.durable_uri).suffix}"
        asset_id = await retry_call(
            "delivery.create", self.delivery.create_asset, title,
            item.kind.is_video, name, policy=self.create_policy,
        )
        try:
            version = await apply_claim(
                self.session_factory, item.id, ContentStatus.PUBLISHING, version,
                delivery_asset_id=asset_id,
            )
        except ConcurrencyConflict:
            await self._discard_if_orphaned(item.id, asset_id)
            raise
        return asset_id, version

    async def _ensure_uploaded(self, item: ContentItem, asset_id: str) -> None:
        status = await retry_call("delivery.status", self.delivery.poll_status, asset_id,
                                  policy=self.policy)
        if status in (DeliveryStatus.READY, DeliveryStatus.PROCESSING):
            logger.info(f"{item.id}: asset {asset_id} already received bytes, skipping upload")
            return

        key = self.store.key_from_uri(item.durable_uri)
        data = await retry_call("store.get", self.store.get, key, policy=self.policy)
        await retry_call("delivery.upload", self.delivery.upload, asset_id, data,
                         policy=self.policy)

    async def _wait_until_ready(self, asset_id: str) -> None:
        s = self.settings
        for attempt in range(s.delivery_poll_attempts):
            status = await retry_call("delivery.status", self.delivery.poll_status, asset_id,
                                      policy=self.policy)
            if status is DeliveryStatus.READY:
                return
            if status is DeliveryStatus.ERROR:
                raise PublishError(f"delivery network reported an error for {asset_id}")
            delay = min(s.delivery_poll_base_delay_seconds * (2 ** attempt),
                        s.delivery_poll_max_delay_seconds)
            await asyncio.sleep(delay)
        raise PublishError(f"{asset_id} not ready after {s.delivery_poll_attempts} polls")

    async def _discard_if_orphaned(self, content_id: uuid.UUID, asset_id: str) -> None:
        """Delete ``asset_id`` after a lost write, unless the row still points at it."""
        try:
            current = await load_item(self.session_factory, content_id)
        except ContentNotFound:
            current = None
        if (
            current is not None
            and current.delivery_asset_id == asset_id
            and current.status not in (ContentStatus.DELETED, ContentStatus.REJECTED)
        ):
            CONCURRENCY_CONFLICTS.labels(stage="publish").inc()
            logger.info(f"{content_id}: asset {asset_id} now owned by another publisher, keeping it")
            return
        await self._discard_asset(asset_id)

    async def _discard_asset(self, asset_id: str) -> None:
        CONCURRENCY_CONFLICTS.labels(stage="publish").inc()
        try:
            await self.delivery.delete_asset(asset_id)
        except Exception as e:
            logger.warning(f"Orphaned delivery asset {asset_id} could not be removed: {e}")
