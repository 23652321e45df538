"""
Content surface — status, audit trail, deletion and human override.

This is what the surrounding application and review tooling call; none of
it bypasses the transition function or the decision recorder.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.errors import ConcurrencyConflict, ContentNotFound
from mediagate.models.models import (
    ContentItem, ContentStatus, DecisionOutcome, ModerationDecision,
)
from mediagate.schemas.schemas import ContentStatusResponse, StatusCounts
from mediagate.services.delivery.delivery_client import DeliveryClient
from mediagate.services.moderation.aggregator import DecisionRecorder
from mediagate.services.pipeline.pipeline import ModerationPipeline
from mediagate.services.pipeline.transitions import apply_transition, load_item
from mediagate.services.storage.object_store import ObjectStore

logger = logging.getLogger(__name__)

DELETE_ATTEMPTS = 5


class ContentService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ObjectStore,
        delivery: DeliveryClient,
        pipeline: Optional[ModerationPipeline] = None,
    ):
        self.session_factory = session_factory
        self.store = store
        self.delivery = delivery
        self.pipeline = pipeline
        self.recorder = DecisionRecorder(session_factory)

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_status(self, content_id: uuid.UUID) -> ContentStatusResponse:
        item = await load_item(self.session_factory, content_id)
        return ContentStatusResponse(
            content_id=str(item.id),
            status=item.status,
            flagged_reason=item.flagged_reason,
            is_active=item.is_active,
            delivery_url=item.delivery_url,
            thumbnail_url=item.thumbnail_url,
        )

    async def list_decisions(self, content_id: uuid.UUID) -> List[ModerationDecision]:
        async with self.session_factory() as session:
            exists = await session.scalar(
                select(func.count()).select_from(ContentItem).where(ContentItem.id == content_id)
            )
            if not exists:
                raise ContentNotFound(content_id)
            result = await session.execute(
                select(ModerationDecision)
                .where(ModerationDecision.content_id == content_id)
                .order_by(ModerationDecision.created_at, ModerationDecision.id)
            )
            return list(result.scalars().all())

    async def status_counts(self) -> StatusCounts:
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(ContentItem.status, func.count()).group_by(ContentItem.status)
            )).all()
            active = await session.scalar(
                select(func.count()).select_from(ContentItem).where(ContentItem.is_active.is_(True))
            )
            decisions = await session.scalar(select(func.count()).select_from(ModerationDecision))
        by_status = {status.value: count for status, count in rows}
        return StatusCounts(
            total=sum(by_status.values()), by_status=by_status,
            active=active or 0, decisions=decisions or 0,
        )

    # ── Mutations ────────────────────────────────────────────────────────

    async def delete_content(self, content_id: uuid.UUID) -> ContentStatusResponse:
        """Tombstone the item; in-flight workers lose their next conditional write."""
        for _ in range(DELETE_ATTEMPTS):
            item = await load_item(self.session_factory, content_id)
            if item.status is ContentStatus.DELETED:
                return await self.get_status(content_id)
            try:
                await apply_transition(
                    self.session_factory, item.id, item.status, item.version,
                    ContentStatus.DELETED,
                    flagged_reason=item.flagged_reason,
                    delivery_asset_id=None, delivery_url=None, thumbnail_url=None,
                )
                break
            except ConcurrencyConflict:
                continue
        else:
            raise ConcurrencyConflict(f"{content_id}: could not delete, item kept changing")

        logger.info(f"{content_id}: deleted (was {item.status.value})")
        await self._cleanup(item)
        return await self.get_status(content_id)

    async def override(
        self,
        content_id: uuid.UUID,
        decision: DecisionOutcome,
        reason: str,
        decided_by: str,
        publish: bool = True,
    ) -> ContentStatusResponse:
        """Human decision. Approval re-enters at publish; rejection takes content down."""
        before = await load_item(self.session_factory, content_id)
        item = await self.recorder.record_override(content_id, decision, reason, decided_by)

        if item.status is ContentStatus.REJECTED and before.delivery_asset_id:
            await self._delete_asset(before.delivery_asset_id)
        if item.status is ContentStatus.APPROVED and publish and self.pipeline is not None:
            await self.pipeline.publish(content_id)
        return await self.get_status(content_id)

    # ── Cleanup ──────────────────────────────────────────────────────────

    async def _cleanup(self, item: ContentItem) -> None:
        if item.delivery_asset_id:
            await self._delete_asset(item.delivery_asset_id)
        if item.durable_uri:
            try:
                await self.store.delete(self.store.key_from_uri(item.durable_uri))
            except Exception as e:
                logger.warning(f"{item.id}: durable object not removed: {e}")
        try:
            await asyncio.to_thread(Path(item.staging_path).unlink, missing_ok=True)
        except OSError as e:
            logger.warning(f"{item.id}: staged file not removed: {e}")

    async def _delete_asset(self, asset_id: str) -> None:
        try:
            await self.delivery.delete_asset(asset_id)
        except Exception as e:
            logger.warning(f"Delivery asset {asset_id} not removed: {e}")
