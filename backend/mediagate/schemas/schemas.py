"""
MediaGate Schemas — Pydantic v2 models shared by the pipeline and the API.

StagingMetadata is the one metadata struct that travels between stages; it
is validated once at the staging boundary and persisted with the item.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from mediagate.models.models import ContentKind, ContentStatus, DecisionOutcome

METADATA_SCHEMA_VERSION = 1


# ═══════════════════════════════════════════════════════════════════════
# Staging
# ═══════════════════════════════════════════════════════════════════════

class StagingMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = METADATA_SCHEMA_VERSION
    kind: ContentKind
    owner_id: str = Field(..., min_length=1, max_length=128)
    size_bytes: int
    duration_seconds: Optional[float] = None
    category: Optional[str] = Field(None, max_length=64)
    content_type: str = "video/mp4"
    content_id: Optional[uuid.UUID] = None
    title: Optional[str] = Field(None, max_length=256)
    description: Optional[str] = Field(None, max_length=4000)
    # Kind-specific parent references
    parent_video_id: Optional[str] = None
    thread_id: Optional[str] = None
    message_id: Optional[str] = None


class StagedContent(BaseModel):
    content_id: str
    status: ContentStatus
    created: bool


# ═══════════════════════════════════════════════════════════════════════
# Moderation
# ═══════════════════════════════════════════════════════════════════════

class Modality(str, enum.Enum):
    VIDEO = "video"
    AUDIO = "audio"
    IMAGE = "image"


class Verdict(str, enum.Enum):
    CLEAR = "clear"
    REJECT = "reject"
    INCONCLUSIVE_ERROR = "inconclusive_error"


class ModalityResult(BaseModel):
    modality: Modality
    verdict: Verdict
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reason: Optional[str] = None
    # Raw feature summary: transcript, labels, gesture findings, ...
    features: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════
# Outward interfaces
# ═══════════════════════════════════════════════════════════════════════

class ContentStatusResponse(BaseModel):
    content_id: str
    status: ContentStatus
    flagged_reason: Optional[str] = None
    is_active: bool
    delivery_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


class ModerationDecisionSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    content_id: uuid.UUID
    decision: DecisionOutcome
    reason: str
    decided_by: Optional[str] = None
    durable_uri: Optional[str] = None
    modality_results: Optional[List[Dict[str, Any]]] = None
    created_at: datetime


class OverrideRequest(BaseModel):
    decision: DecisionOutcome
    reason: str = Field(..., min_length=3, max_length=2000)


class StatusCounts(BaseModel):
    total: int
    by_status: Dict[str, int]
    active: int
    decisions: int
