"""
MediaGate status transitions — the only code allowed to move a content item.

Every write is a conditional UPDATE guarded by the status and version the
caller last observed, so two workers racing on the same id cannot both win:
exactly one UPDATE matches a row, the other sees rowcount 0 and gets a
ConcurrencyConflict.

Precondition chain enforced here:
    is_active ⇒ status ACTIVE ⇒ durable_uri set ⇒ approved decision exists
Entering APPROVED / REJECTED requires the decision row being written in the
same transaction; entering the approved family requires durable_uri.

State machine:
    STAGED → UPLOADED → ANALYZING → {APPROVED, REJECTED}
    APPROVED → PUBLISHING → ACTIVE
    PUBLISHING → APPROVED                       (publish pending retry)
    non-terminal → FAILED
    REJECTED | FAILED → APPROVED                (human override)
    APPROVED | PUBLISHING | ACTIVE → REJECTED   (human override)
    any → DELETED
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediagate.core.errors import ConcurrencyConflict, ContentNotFound, InvalidTransition
from mediagate.models.models import (
    APPROVED_FAMILY, ContentItem, ContentStatus, DecisionOutcome,
    ModerationDecision, utcnow,
)

logger = logging.getLogger(__name__)

S = ContentStatus

ALLOWED_TRANSITIONS: Dict[ContentStatus, frozenset] = {
    S.STAGED: frozenset({S.UPLOADED, S.FAILED, S.DELETED}),
    S.UPLOADED: frozenset({S.ANALYZING, S.FAILED, S.DELETED}),
    S.ANALYZING: frozenset({S.APPROVED, S.REJECTED, S.FAILED, S.DELETED}),
    S.APPROVED: frozenset({S.PUBLISHING, S.REJECTED, S.FAILED, S.DELETED}),
    S.PUBLISHING: frozenset({S.ACTIVE, S.APPROVED, S.REJECTED, S.FAILED, S.DELETED}),
    S.ACTIVE: frozenset({S.REJECTED, S.DELETED}),
    S.REJECTED: frozenset({S.APPROVED, S.DELETED}),
    S.FAILED: frozenset({S.APPROVED, S.DELETED}),
    S.DELETED: frozenset(),
}

# Columns a caller may never set directly
_GUARDED_FIELDS = {"status", "version", "is_active", "stage_entered_at", "updated_at"}


async def fetch_item(session: AsyncSession, content_id: uuid.UUID) -> ContentItem:
    """Load a fresh copy of the row, bypassing the identity map."""
    result = await session.execute(
        select(ContentItem)
        .where(ContentItem.id == content_id)
        .execution_options(populate_existing=True)
    )
    item = result.scalar_one_or_none()
    if item is None:
        raise ContentNotFound(content_id)
    return item


def _check_fields(fields: Dict[str, Any]) -> None:
    bad = _GUARDED_FIELDS.intersection(fields)
    if bad:
        raise ValueError(f"Fields cannot be written directly: {sorted(bad)}")


async def _conditional_update(
    session: AsyncSession,
    content_id: uuid.UUID,
    expected_status: ContentStatus,
    expected_version: int,
    values: Dict[str, Any],
    require_durable: bool = False,
) -> int:
    stmt = (
        update(ContentItem)
        .where(
            ContentItem.id == content_id,
            ContentItem.status == expected_status,
            ContentItem.version == expected_version,
        )
        .values(version=ContentItem.version + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if require_durable:
        stmt = stmt.where(ContentItem.durable_uri.is_not(None))

    result = await session.execute(stmt)
    if result.rowcount != 1:
        raise ConcurrencyConflict(
            f"{content_id}: expected {expected_status.value}@v{expected_version} no longer holds"
        )
    return expected_version + 1


async def transition(
    session: AsyncSession,
    content_id: uuid.UUID,
    expected_status: ContentStatus,
    expected_version: int,
    target: ContentStatus,
    *,
    decision: Optional[ModerationDecision] = None,
    flagged_reason: Optional[str] = None,
    **fields: Any,
) -> int:
    """Move one item to ``target``. Returns the new version.

    Must run inside the caller's transaction; the decision (when given) is
    flushed in that same transaction so status and audit row commit together.
    """
    if target not in ALLOWED_TRANSITIONS[expected_status]:
        raise InvalidTransition(expected_status.value, target.value)
    _check_fields(fields)

    if target in (S.APPROVED, S.REJECTED) and expected_status is not S.PUBLISHING:
        wanted = DecisionOutcome.APPROVED if target is S.APPROVED else DecisionOutcome.REJECTED
        if decision is None or decision.decision is not wanted:
            raise InvalidTransition(
                expected_status.value, target.value, f"requires a {wanted.value} decision",
            )
    if expected_status is S.PUBLISHING and target is S.REJECTED and decision is None:
        raise InvalidTransition(expected_status.value, target.value, "requires a rejected decision")

    if target is S.ACTIVE and not (fields.get("delivery_asset_id") and fields.get("delivery_url")):
        raise InvalidTransition(expected_status.value, target.value, "delivery asset not set")

    values: Dict[str, Any] = dict(fields)
    values["status"] = target
    values["stage_entered_at"] = utcnow()
    values["is_active"] = target is S.ACTIVE
    values["flagged_reason"] = flagged_reason

    new_version = await _conditional_update(
        session, content_id, expected_status, expected_version, values,
        require_durable=target in APPROVED_FAMILY,
    )

    if decision is not None:
        decision.content_id = content_id
        session.add(decision)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(f"{content_id}: automated decision already recorded") from exc

    logger.info(f"{content_id}: {expected_status.value} -> {target.value} (v{new_version})")
    return new_version


async def update_fields(
    session: AsyncSession,
    content_id: uuid.UUID,
    expected_status: ContentStatus,
    expected_version: int,
    **fields: Any,
) -> int:
    """Conditional write that keeps the status. With no fields this is a claim."""
    _check_fields(fields)
    return await _conditional_update(
        session, content_id, expected_status, expected_version, fields,
    )


async def claim(
    session: AsyncSession,
    content_id: uuid.UUID,
    expected_status: ContentStatus,
    expected_version: int,
) -> int:
    """Compare-and-set on version; the loser of a race gets ConcurrencyConflict."""
    return await update_fields(session, content_id, expected_status, expected_version)


# ── Session-owning wrappers ──────────────────────────────────────────────

async def apply_transition(
    session_factory: async_sessionmaker[AsyncSession],
    content_id: uuid.UUID,
    expected_status: ContentStatus,
    expected_version: int,
    target: ContentStatus,
    **kwargs: Any,
) -> int:
    """Run ``transition`` in its own short transaction."""
    async with session_factory() as session, session.begin():
        return await transition(
            session, content_id, expected_status, expected_version, target, **kwargs,
        )


async def apply_claim(
    session_factory: async_sessionmaker[AsyncSession],
    content_id: uuid.UUID,
    expected_status: ContentStatus,
    expected_version: int,
    **fields: Any,
) -> int:
    async with session_factory() as session, session.begin():
        return await update_fields(
            session, content_id, expected_status, expected_version, **fields,
        )


async def touch(
    session_factory: async_sessionmaker[AsyncSession],
    content_id: uuid.UUID,
    statuses: Iterable[ContentStatus],
) -> bool:
    """Refresh ``updated_at`` while the row is in one of ``statuses``.

    No version bump: a heartbeat never invalidates the holder's own next
    conditional write. Returns False once the status has moved on.
    """
    async with session_factory() as session, session.begin():
        result = await session.execute(
            update(ContentItem)
            .where(ContentItem.id == content_id, ContentItem.status.in_(list(statuses)))
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


async def load_item(
    session_factory: async_sessionmaker[AsyncSession], content_id: uuid.UUID,
) -> ContentItem:
    async with session_factory() as session:
        return await fetch_item(session, content_id)
