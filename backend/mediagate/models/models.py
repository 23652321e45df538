"""
MediaGate ORM Models — content items and the moderation audit trail.

content_items is the single source of truth for pipeline position and is
only ever written through conditional updates (status + version guard).
moderation_decisions is append-only: rows are inserted, never updated.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON, Boolean, BigInteger, DateTime, Enum, ForeignKey, Index, Integer,
    String, Text, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mediagate.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════

class ContentKind(str, enum.Enum):
    VIDEO = "video"
    VIDEO_COMMENT = "video_comment"
    THREAD_VIDEO = "thread_video"
    IMAGE = "image"

    @property
    def is_video(self) -> bool:
        return self is not ContentKind.IMAGE


class ContentStatus(str, enum.Enum):
    STAGED = "staged"
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHING = "publishing"
    ACTIVE = "active"
    FAILED = "failed"
    DELETED = "deleted"


# Statuses that require an authoritative approved decision
APPROVED_FAMILY = frozenset({
    ContentStatus.APPROVED, ContentStatus.PUBLISHING, ContentStatus.ACTIVE,
})

PRE_DECISION = frozenset({
    ContentStatus.STAGED, ContentStatus.UPLOADED, ContentStatus.ANALYZING,
})


class DecisionOutcome(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


# ═══════════════════════════════════════════════════════════════════════
# Tables
# ═══════════════════════════════════════════════════════════════════════

class ContentItem(Base):
    __tablename__ = "content_items"
    __table_args__ = (
        Index("ix_content_items_status_updated", "status", "updated_at"),
        Index("ix_content_items_owner", "owner_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(128))
    kind: Mapped[ContentKind] = mapped_column(Enum(ContentKind))
    staging_path: Mapped[str] = mapped_column(String(1024))
    metadata_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    durable_uri: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    durable_size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    delivery_asset_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    delivery_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    status: Mapped[ContentStatus] = mapped_column(Enum(ContentStatus), default=ContentStatus.STAGED)
    flagged_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)

    version: Mapped[int] = mapped_column(Integer, default=1)
    stage_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    decisions: Mapped[List["ModerationDecision"]] = relationship(
        "ModerationDecision", back_populates="content",
        order_by="ModerationDecision.id", lazy="selectin",
    )


class ModerationDecision(Base):
    __tablename__ = "moderation_decisions"
    __table_args__ = (
        Index("ix_moderation_decisions_content", "content_id", "id"),
        # One automated decision per content id; overrides carry decided_by
        Index(
            "uq_moderation_decisions_automated", "content_id", unique=True,
            postgresql_where=text("decided_by IS NULL"),
            sqlite_where=text("decided_by IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("content_items.id"))
    decision: Mapped[DecisionOutcome] = mapped_column(Enum(DecisionOutcome))
    reason: Mapped[str] = mapped_column(Text)
    decided_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    durable_uri: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    modality_results: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    content: Mapped["ContentItem"] = relationship("ContentItem", back_populates="decisions")
