"""
MediaGate Moderation Pipeline — per-item orchestration.

    staged ─► durable upload ─► uploaded ─► analyzing ─► decision ─► publish
                  │                                         │
                  └─► failed                                └─► rejected

``process`` resumes from whatever status the row is in, so the same entry
point serves the primary trigger, duplicate triggers and the recovery
sweeper. Every step is a conditional write on the version it last read; a
worker that loses a race gets ConcurrencyConflict and stops silently.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import AsyncIterator, Iterable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.config import Settings, get_settings
from mediagate.core.errors import ConcurrencyConflict, ContentNotFound
from mediagate.core.metrics import CONCURRENCY_CONFLICTS
from mediagate.models.models import ContentItem, ContentStatus, DecisionOutcome
from mediagate.services.delivery.delivery_client import DeliveryClient
from mediagate.services.delivery.publication_router import PublicationRouter
from mediagate.services.moderation.aggregator import DecisionRecorder
from mediagate.services.moderation.analysis_client import AnalysisService
from mediagate.services.moderation.analyzer import ModerationAnalyzer
from mediagate.services.pipeline.transitions import apply_transition, load_item, touch
from mediagate.services.storage.durable_uploader import DurableUploader
from mediagate.services.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

PUBLISH_STAGES = (ContentStatus.APPROVED, ContentStatus.PUBLISHING)


class ModerationPipeline:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ObjectStore,
        analysis: AnalysisService,
        delivery: DeliveryClient,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.uploader = DurableUploader(session_factory, store, self.settings)
        self.analyzer = ModerationAnalyzer(analysis, self.settings)
        self.recorder = DecisionRecorder(session_factory)
        self.publisher = PublicationRouter(session_factory, store, delivery, self.settings)
        self._semaphore = asyncio.Semaphore(self.settings.pipeline_max_concurrency)

    # ── Entry points ─────────────────────────────────────────────────────

    async def process(self, content_id: uuid.UUID) -> Optional[ContentStatus]:
        """Drive one item as far as it can go. Returns the status it stopped at."""
        async with self._semaphore:
            try:
                return await self._advance(content_id)
            except ConcurrencyConflict as e:
                CONCURRENCY_CONFLICTS.labels(stage="pipeline").inc()
                logger.debug(f"{content_id}: yielded to another worker ({e})")
                return None
            except ContentNotFound:
                logger.warning(f"{content_id}: vanished before processing")
                return None

    async def publish(self, content_id: uuid.UUID) -> Optional[ContentStatus]:
        """Publication only; used after a human approval and by the sweeper."""
        async with self._semaphore:
            try:
                async with self.keepalive(content_id, PUBLISH_STAGES):
                    item = await self.publisher.publish(content_id)
            except ConcurrencyConflict as e:
                CONCURRENCY_CONFLICTS.labels(stage="publish").inc()
                logger.debug(f"{content_id}: publish yielded to another worker ({e})")
                return None
            if item is not None:
                return item.status
            return (await load_item(self.session_factory, content_id)).status

    async def run_many(self, content_ids: Iterable[uuid.UUID]) -> List[Optional[ContentStatus]]:
        """Process many items concurrently, bounded by ``pipeline_max_concurrency``."""
        return list(await asyncio.gather(*(self.process(cid) for cid in content_ids)))

    # ── Stages ───────────────────────────────────────────────────────────

    async def _advance(self, content_id: uuid.UUID) -> ContentStatus:
        item = await load_item(self.session_factory, content_id)

        if item.status is ContentStatus.STAGED:
            if await self.uploader.upload(item) is None:
                return ContentStatus.FAILED
            item = await load_item(self.session_factory, content_id)

        if item.status is ContentStatus.UPLOADED:
            await apply_transition(
                self.session_factory, item.id, ContentStatus.UPLOADED, item.version,
                ContentStatus.ANALYZING,
            )
            item = await load_item(self.session_factory, content_id)

        if item.status is ContentStatus.ANALYZING:
            decision = await self._decide(item)
            if decision is DecisionOutcome.REJECTED:
                return ContentStatus.REJECTED
            item = await load_item(self.session_factory, content_id)

        if item.status is ContentStatus.APPROVED and not item.is_active:
            async with self.keepalive(content_id, PUBLISH_STAGES):
                published = await self.publisher.publish(content_id)
            if published is not None:
                return published.status
            item = await load_item(self.session_factory, content_id)

        return item.status

    async def _decide(self, item: ContentItem) -> DecisionOutcome:
        async with self.keepalive(item.id, (ContentStatus.ANALYZING,)):
            results = await self.analyzer.analyze(item.kind, item.durable_uri)
        decision = await self.recorder.record_automated(item, results)
        return decision.outcome

    # ── Heartbeat ────────────────────────────────────────────────────────

    @contextlib.asynccontextmanager
    async def keepalive(
        self, content_id: uuid.UUID, statuses: Sequence[ContentStatus],
    ) -> AsyncIterator[None]:
        """Keep ``updated_at`` fresh while a long stage runs so the sweeper leaves it alone."""
        task = asyncio.create_task(self._beat(content_id, statuses))
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _beat(self, content_id: uuid.UUID, statuses: Sequence[ContentStatus]) -> None:
        while True:
            await asyncio.sleep(self.settings.stage_heartbeat_seconds)
            try:
                if not await touch(self.session_factory, content_id, statuses):
                    return
            except Exception as e:
                logger.warning(f"{content_id}: heartbeat write failed: {e}")
