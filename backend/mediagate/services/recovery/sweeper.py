"""
Recovery Sweeper — resumes items whose status stopped advancing.

Candidates (updated_at older than the grace period):
    staged, uploaded, analyzing   → resume the pipeline from that stage
    approved and not is_active    → publish
    publishing                    → reset to approved, then publish

Pre-decision items that entered their stage longer ago than the stall
timeout are failed instead ("stalled - exceeded processing window").

The sweeper claims each item with a compare-and-set on ``version`` before
touching it. If a primary worker is still holding the item, one of the two
loses its next conditional write and stops. The sweeper never writes an
approval of its own.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.config import Settings, get_settings
from mediagate.core.errors import ConcurrencyConflict
from mediagate.core.metrics import CONCURRENCY_CONFLICTS, SWEEPER_ACTIONS
from mediagate.models.models import PRE_DECISION, ContentItem, ContentStatus, utcnow
from mediagate.services.delivery.publication_router import PUBLISH_PENDING
from mediagate.services.pipeline.pipeline import ModerationPipeline
from mediagate.services.pipeline.transitions import apply_claim, apply_transition

logger = logging.getLogger(__name__)

STALLED_REASON = "stalled - exceeded processing window"

SWEEPABLE = (
    ContentStatus.STAGED, ContentStatus.UPLOADED, ContentStatus.ANALYZING,
    ContentStatus.PUBLISHING,
)


class RecoverySweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pipeline: ModerationPipeline,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.pipeline = pipeline
        self.settings = settings or get_settings()

    async def find_stuck(self) -> List[ContentItem]:
        cutoff = utcnow() - timedelta(seconds=self.settings.sweeper_grace_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(ContentItem)
                .where(
                    ContentItem.updated_at < cutoff,
                    or_(
                        ContentItem.status.in_(SWEEPABLE),
                        and_(ContentItem.status == ContentStatus.APPROVED,
                             ContentItem.is_active.is_(False)),
                    ),
                )
                .order_by(ContentItem.updated_at)
                .limit(self.settings.sweeper_batch_size)
            )
            return list(result.scalars().all())

    async def _stalled_ids(self, items: List[ContentItem]) -> set:
        ids = [i.id for i in items if i.status in PRE_DECISION]
        if not ids:
            return set()
        stall_cutoff = utcnow() - timedelta(seconds=self.settings.sweeper_stall_timeout_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                select(ContentItem.id).where(
                    ContentItem.id.in_(ids), ContentItem.stage_entered_at < stall_cutoff,
                )
            )
            return set(result.scalars().all())

    async def sweep(self) -> Dict[str, int]:
        """One pass. Returns counts per action taken."""
        items = await self.find_stuck()
        if not items:
            return {}
        stalled = await self._stalled_ids(items)

        actions: Counter = Counter()
        resumes = []
        for item in items:
            try:
                if item.id in stalled:
                    await apply_transition(
                        self.session_factory, item.id, item.status, item.version,
                        ContentStatus.FAILED, flagged_reason=STALLED_REASON,
                    )
                    logger.warning(f"{item.id}: stalled in {item.status.value}, marked failed")
                    actions["stalled"] += 1
                    continue

                version = await apply_claim(
                    self.session_factory, item.id, item.status, item.version,
                )
                if item.status is ContentStatus.PUBLISHING:
                    await apply_transition(
                        self.session_factory, item.id, ContentStatus.PUBLISHING, version,
                        ContentStatus.APPROVED, flagged_reason=PUBLISH_PENDING,
                    )
            except ConcurrencyConflict:
                CONCURRENCY_CONFLICTS.labels(stage="sweeper").inc()
                logger.debug(f"{item.id}: claim lost, skipping")
                actions["skipped"] += 1
                continue

            logger.info(f"{item.id}: resuming from {item.status.value}")
            actions[f"resumed_{item.status.value}"] += 1
            resumes.append(self.pipeline.process(item.id))

        if resumes:
            await asyncio.gather(*resumes)

        for action, count in actions.items():
            SWEEPER_ACTIONS.labels(action=action).inc(count)
        logger.info(f"Sweep finished: {dict(actions)}")
        return dict(actions)
