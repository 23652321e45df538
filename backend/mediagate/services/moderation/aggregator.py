"""
Decision Aggregator & Audit Recorder.

Approve only if every applicable modality explicitly returned ``clear``. A
reject or inconclusive result, or a modality that never reported, makes the
whole decision a reject whose reason lists every contributing factor.

Recording is one transaction: conditional ``analyzing → approved|rejected``
plus the append-only decision row. The unique automated-decision index and
the version guard make a duplicate pipeline run lose with
ConcurrencyConflict instead of writing a second decision.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.errors import OverrideNotAllowed
from mediagate.core.metrics import DECISIONS
from mediagate.models.models import (
    APPROVED_FAMILY, ContentItem, ContentKind, ContentStatus, DecisionOutcome,
    ModerationDecision,
)
from mediagate.schemas.schemas import ModalityResult, Verdict
from mediagate.services.moderation.analyzer import applicable_modalities
from mediagate.services.pipeline.transitions import fetch_item, transition

logger = logging.getLogger(__name__)

APPROVED_REASON = "automated moderation passed"


@dataclass
class AggregateDecision:
    outcome: DecisionOutcome
    reason: str
    results: List[ModalityResult]


def aggregate(kind: ContentKind, results: Sequence[ModalityResult]) -> AggregateDecision:
    by_modality = {r.modality: r for r in results}
    complete: List[ModalityResult] = []
    for modality in applicable_modalities(kind):
        complete.append(by_modality.get(modality) or ModalityResult(
            modality=modality, verdict=Verdict.INCONCLUSIVE_ERROR,
            reason="analysis inconclusive (no result)",
        ))

    failing = [r for r in complete if r.verdict is not Verdict.CLEAR]
    if not failing:
        return AggregateDecision(DecisionOutcome.APPROVED, APPROVED_REASON, complete)

    reason = "; ".join(
        f"{r.modality.value}: {r.reason or r.verdict.value}" for r in failing
    )
    return AggregateDecision(DecisionOutcome.REJECTED, reason, complete)


async def latest_decision(
    session: AsyncSession, content_id: uuid.UUID,
) -> Optional[ModerationDecision]:
    result = await session.execute(
        select(ModerationDecision)
        .where(ModerationDecision.content_id == content_id)
        .order_by(ModerationDecision.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class DecisionRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record_automated(
        self, item: ContentItem, results: Sequence[ModalityResult],
    ) -> AggregateDecision:
        """Aggregate and persist. Raises ConcurrencyConflict if another run already decided."""
        decision = aggregate(item.kind, results)
        target = (ContentStatus.APPROVED if decision.outcome is DecisionOutcome.APPROVED
                  else ContentStatus.REJECTED)

        async with self.session_factory() as session, session.begin():
            await transition(
                session, item.id, ContentStatus.ANALYZING, item.version, target,
                decision=ModerationDecision(
                    decision=decision.outcome,
                    reason=decision.reason,
                    decided_by=None,
                    durable_uri=item.durable_uri,
                    modality_results=[r.model_dump(mode="json") for r in decision.results],
                ),
                flagged_reason=decision.reason if target is ContentStatus.REJECTED else None,
            )

        DECISIONS.labels(decision=decision.outcome.value, source="automated").inc()
        logger.info(f"{item.id}: automated decision {decision.outcome.value} ({decision.reason})")
        return decision

    async def record_override(
        self,
        content_id: uuid.UUID,
        outcome: DecisionOutcome,
        reason: str,
        decided_by: str,
    ) -> ContentItem:
        """Human decision. Appends a decision row and moves the item in one transaction."""
        if not decided_by:
            raise OverrideNotAllowed("decided_by is required for a human override")

        async with self.session_factory() as session, session.begin():
            item = await fetch_item(session, content_id)
            status = item.status

            if outcome is DecisionOutcome.APPROVED:
                if status not in (ContentStatus.REJECTED, ContentStatus.FAILED):
                    raise OverrideNotAllowed(f"cannot approve content in status {status.value}")
                if not item.durable_uri:
                    raise OverrideNotAllowed("no verified durable copy to approve")
                target = ContentStatus.APPROVED
            else:
                if status not in APPROVED_FAMILY:
                    raise OverrideNotAllowed(f"cannot reject content in status {status.value}")
                target = ContentStatus.REJECTED

            extra = {}
            if target is ContentStatus.REJECTED:
                extra = {"delivery_asset_id": None, "delivery_url": None, "thumbnail_url": None}

            await transition(
                session, content_id, status, item.version, target,
                decision=ModerationDecision(
                    decision=outcome, reason=reason, decided_by=decided_by,
                    durable_uri=item.durable_uri,
                ),
                flagged_reason=reason if target is ContentStatus.REJECTED else None,
                **extra,
            )
            item = await fetch_item(session, content_id)

        DECISIONS.labels(decision=outcome.value, source="override").inc()
        logger.info(f"{content_id}: override {status.value} -> {target.value} by {decided_by}")
        return item

