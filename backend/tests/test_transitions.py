"""
Tests for the transition function: allowed edges, version guards and the
precondition chain behind every approval and activation.
"""

from __future__ import annotations

import asyncio
import uuid

import pytest

from mediagate.core.errors import ConcurrencyConflict, ContentNotFound, InvalidTransition
from mediagate.models.models import ContentStatus, DecisionOutcome, ModerationDecision
from mediagate.services.pipeline.transitions import (
    ALLOWED_TRANSITIONS,
    apply_claim,
    apply_transition,
    load_item,
    touch,
    transition,
)

S = ContentStatus
URI = "s3://test-bucket/raw-media/x.mp4"


def approval(**kw) -> ModerationDecision:
    return ModerationDecision(decision=DecisionOutcome.APPROVED, reason="ok", **kw)


def rejection(**kw) -> ModerationDecision:
    return ModerationDecision(decision=DecisionOutcome.REJECTED, reason="bad", **kw)


async def to_analyzing(session_factory, content_id, durable_uri=URI) -> int:
    v = await apply_transition(session_factory, content_id, S.STAGED, 1, S.UPLOADED,
                               durable_uri=durable_uri)
    return await apply_transition(session_factory, content_id, S.UPLOADED, v, S.ANALYZING)


class TestAllowedTransitions:
    def test_deleted_is_terminal(self):
        assert ALLOWED_TRANSITIONS[S.DELETED] == frozenset()

    def test_every_status_can_be_deleted(self):
        for status, targets in ALLOWED_TRANSITIONS.items():
            if status is not S.DELETED:
                assert S.DELETED in targets

    def test_only_analyzing_or_override_reaches_approved(self):
        sources = {s for s, targets in ALLOWED_TRANSITIONS.items() if S.APPROVED in targets}
        assert sources == {S.ANALYZING, S.PUBLISHING, S.REJECTED, S.FAILED}

    def test_active_only_from_publishing(self):
        sources = {s for s, targets in ALLOWED_TRANSITIONS.items() if S.ACTIVE in targets}
        assert sources == {S.PUBLISHING}

    @pytest.mark.asyncio
    async def test_disallowed_edge_raises(self, session_factory, staged_video):
        with pytest.raises(InvalidTransition):
            await apply_transition(session_factory, staged_video, S.STAGED, 1, S.ANALYZING)


class TestVersionGuard:
    @pytest.mark.asyncio
    async def test_transition_bumps_version(self, session_factory, staged_video):
        version = await apply_transition(session_factory, staged_video, S.STAGED, 1, S.UPLOADED,
                                         durable_uri=URI)
        item = await load_item(session_factory, staged_video)
        assert version == 2 == item.version
        assert item.status is S.UPLOADED

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, session_factory, staged_video):
        await apply_transition(session_factory, staged_video, S.STAGED, 1, S.UPLOADED, durable_uri=URI)
        with pytest.raises(ConcurrencyConflict):
            await apply_transition(session_factory, staged_video, S.STAGED, 1, S.FAILED)

    @pytest.mark.asyncio
    async def test_concurrent_writers_exactly_one_wins(self, session_factory, staged_video):
        results = await asyncio.gather(
            *(apply_claim(session_factory, staged_video, S.STAGED, 1) for _ in range(5)),
            return_exceptions=True,
        )
        wins = [r for r in results if not isinstance(r, Exception)]
        assert wins == [2]
        assert all(isinstance(r, ConcurrencyConflict) for r in results if r not in wins)

    @pytest.mark.asyncio
    async def test_claim_keeps_status(self, session_factory, staged_video):
        assert await apply_claim(session_factory, staged_video, S.STAGED, 1) == 2
        item = await load_item(session_factory, staged_video)
        assert item.status is S.STAGED

    @pytest.mark.asyncio
    async def test_touch_refreshes_without_version_bump(self, session_factory, staged_video):
        before = await load_item(session_factory, staged_video)
        await asyncio.sleep(0.01)

        assert await touch(session_factory, staged_video, [S.STAGED]) is True

        after = await load_item(session_factory, staged_video)
        assert after.version == before.version
        assert after.updated_at > before.updated_at
        assert after.stage_entered_at == before.stage_entered_at

    @pytest.mark.asyncio
    async def test_touch_stops_once_status_moves_on(self, session_factory, staged_video):
        assert await touch(session_factory, staged_video, [S.ANALYZING]) is False

    @pytest.mark.asyncio
    async def test_guarded_fields_cannot_be_written(self, session_factory, staged_video):
        with pytest.raises(ValueError):
            await apply_claim(session_factory, staged_video, S.STAGED, 1, is_active=True)

    @pytest.mark.asyncio
    async def test_missing_item(self, session_factory):
        with pytest.raises(ContentNotFound):
            await load_item(session_factory, uuid.uuid4())


class TestPreconditionChain:
    @pytest.mark.asyncio
    async def test_approval_requires_decision(self, session_factory, staged_video):
        v = await to_analyzing(session_factory, staged_video)
        with pytest.raises(InvalidTransition):
            await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.APPROVED)

    @pytest.mark.asyncio
    async def test_approval_requires_matching_decision(self, session_factory, staged_video):
        v = await to_analyzing(session_factory, staged_video)
        with pytest.raises(InvalidTransition):
            await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.APPROVED,
                                   decision=rejection())

    @pytest.mark.asyncio
    async def test_approval_requires_durable_uri(self, session_factory, staged_video):
        v = await apply_claim(session_factory, staged_video, S.STAGED, 1)
        v = await apply_transition(session_factory, staged_video, S.STAGED, v, S.UPLOADED)
        v = await apply_transition(session_factory, staged_video, S.UPLOADED, v, S.ANALYZING)
        with pytest.raises(ConcurrencyConflict):
            await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.APPROVED,
                                   decision=approval())
        item = await load_item(session_factory, staged_video)
        assert item.status is S.ANALYZING
        assert item.decisions == []

    @pytest.mark.asyncio
    async def test_decision_and_status_commit_together(self, session_factory, staged_video):
        v = await to_analyzing(session_factory, staged_video)
        await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.APPROVED,
                               decision=approval(durable_uri=URI))
        item = await load_item(session_factory, staged_video)
        assert item.status is S.APPROVED
        assert [d.decision for d in item.decisions] == [DecisionOutcome.APPROVED]

    @pytest.mark.asyncio
    async def test_failed_update_writes_no_decision(self, session_factory, staged_video):
        await to_analyzing(session_factory, staged_video)
        with pytest.raises(ConcurrencyConflict):
            await apply_transition(session_factory, staged_video, S.ANALYZING, 1, S.REJECTED,
                                   decision=rejection())
        assert (await load_item(session_factory, staged_video)).decisions == []

    @pytest.mark.asyncio
    async def test_second_automated_decision_conflicts(self, session_factory, staged_video):
        v = await to_analyzing(session_factory, staged_video)
        v = await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.REJECTED,
                                   decision=rejection())
        # Human approval would be fine; a second automated row is refused
        with pytest.raises(ConcurrencyConflict):
            await apply_transition(session_factory, staged_video, S.REJECTED, v, S.APPROVED,
                                   decision=approval())
        item = await load_item(session_factory, staged_video)
        assert item.status is S.REJECTED
        assert len(item.decisions) == 1

    @pytest.mark.asyncio
    async def test_active_requires_delivery_fields(self, session_factory, staged_video):
        v = await to_analyzing(session_factory, staged_video)
        v = await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.APPROVED,
                                   decision=approval())
        v = await apply_transition(session_factory, staged_video, S.APPROVED, v, S.PUBLISHING)
        with pytest.raises(InvalidTransition):
            await apply_transition(session_factory, staged_video, S.PUBLISHING, v, S.ACTIVE)

        await apply_transition(session_factory, staged_video, S.PUBLISHING, v, S.ACTIVE,
                               delivery_asset_id="a1", delivery_url="https://cdn/a1")
        item = await load_item(session_factory, staged_video)
        assert item.status is S.ACTIVE
        assert item.is_active is True

    @pytest.mark.asyncio
    async def test_leaving_active_clears_is_active(self, session_factory, staged_video):
        v = await to_analyzing(session_factory, staged_video)
        v = await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.APPROVED,
                                   decision=approval())
        v = await apply_transition(session_factory, staged_video, S.APPROVED, v, S.PUBLISHING)
        v = await apply_transition(session_factory, staged_video, S.PUBLISHING, v, S.ACTIVE,
                                   delivery_asset_id="a1", delivery_url="https://cdn/a1")
        await apply_transition(session_factory, staged_video, S.ACTIVE, v, S.DELETED)
        item = await load_item(session_factory, staged_video)
        assert item.is_active is False

    @pytest.mark.asyncio
    async def test_publishing_back_to_approved_needs_no_decision(self, session_factory, staged_video):
        v = await to_analyzing(session_factory, staged_video)
        v = await apply_transition(session_factory, staged_video, S.ANALYZING, v, S.APPROVED,
                                   decision=approval())
        v = await apply_transition(session_factory, staged_video, S.APPROVED, v, S.PUBLISHING)
        await apply_transition(session_factory, staged_video, S.PUBLISHING, v, S.APPROVED,
                               flagged_reason="publish pending retry")
        item = await load_item(session_factory, staged_video)
        assert item.status is S.APPROVED
        assert item.flagged_reason == "publish pending retry"
        assert len(item.decisions) == 1

    @pytest.mark.asyncio
    async def test_transition_inside_caller_transaction(self, session_factory, staged_video):
        async with session_factory() as session, session.begin():
            version = await transition(session, staged_video, S.STAGED, 1, S.FAILED,
                                       flagged_reason="storage verification failed")
        assert version == 2
        assert (await load_item(session_factory, staged_video)).flagged_reason == \
            "storage verification failed"
