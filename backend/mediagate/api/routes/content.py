"""
MediaGate API — Content routes.

    POST   /content                    multipart: file + metadata (JSON)
    GET    /content/{id}/status
    GET    /content/{id}/decisions
    DELETE /content/{id}
    POST   /content/{id}/override      moderator only (X-Override-Token)

Uploads return as soon as the blob is staged; moderation runs on the
worker queue.
"""
from __future__ import annotations

import json
import logging
import secrets
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, UploadFile, status

from mediagate.core.config import get_settings
from mediagate.core.database import get_session_factory
from mediagate.core.errors import (
    ConcurrencyConflict, ContentNotFound, InvalidTransition, OverrideNotAllowed,
    StagingValidationError,
)
from mediagate.models.models import ContentStatus
from mediagate.schemas.schemas import (
    ContentStatusResponse, ModerationDecisionSchema, OverrideRequest, StagedContent,
)
from mediagate.services.content.content_service import ContentService
from mediagate.services.delivery.delivery_client import get_delivery_client
from mediagate.services.staging.staging_service import StagingService
from mediagate.services.storage.object_store import get_object_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/content", tags=["Content"])


# ── Dependencies ─────────────────────────────────────────────────────────

class TaskDispatcher:
    """Hands work to the Celery workers."""

    def process(self, content_id: str) -> None:
        from mediagate.workers.tasks import process_content_task
        process_content_task.delay(content_id)

    def publish(self, content_id: str) -> None:
        from mediagate.workers.tasks import publish_content_task
        publish_content_task.delay(content_id)


def get_dispatcher() -> TaskDispatcher:
    return TaskDispatcher()


def get_staging_service() -> StagingService:
    return StagingService(get_session_factory())


def get_content_service() -> ContentService:
    # No pipeline: approvals are published by the worker, not in-request
    return ContentService(get_session_factory(), get_object_store(), get_delivery_client())


def _content_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Content not found: {raw}")


# ── Routes ───────────────────────────────────────────────────────────────

@router.post("", response_model=StagedContent, status_code=status.HTTP_202_ACCEPTED)
async def upload_content(
    file: UploadFile = File(...),
    metadata: str = Form(...),
    staging: StagingService = Depends(get_staging_service),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
):
    """Stage an upload and queue it for moderation."""
    try:
        raw = json.loads(metadata)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=422, detail=[f"metadata is not valid JSON: {e.msg}"])
    if not isinstance(raw, dict):
        raise HTTPException(status_code=422, detail=["metadata must be a JSON object"])

    blob = await file.read()
    try:
        staged = await staging.stage(blob, raw)
    except StagingValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors)

    if staged.created:
        dispatcher.process(staged.content_id)
    return staged


@router.get("/{content_id}/status", response_model=ContentStatusResponse)
async def get_content_status(
    content_id: str,
    service: ContentService = Depends(get_content_service),
):
    try:
        return await service.get_status(_content_id(content_id))
    except ContentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{content_id}/decisions", response_model=List[ModerationDecisionSchema])
async def list_content_decisions(
    content_id: str,
    service: ContentService = Depends(get_content_service),
):
    """Full audit trail, oldest first."""
    try:
        decisions = await service.list_decisions(_content_id(content_id))
    except ContentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return [ModerationDecisionSchema.model_validate(d) for d in decisions]


@router.delete("/{content_id}", response_model=ContentStatusResponse)
async def delete_content(
    content_id: str,
    service: ContentService = Depends(get_content_service),
):
    try:
        return await service.delete_content(_content_id(content_id))
    except ContentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (ConcurrencyConflict, InvalidTransition) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{content_id}/override", response_model=ContentStatusResponse)
async def override_decision(
    content_id: str,
    body: OverrideRequest,
    x_override_token: Optional[str] = Header(None),
    x_moderator_id: Optional[str] = Header(None),
    service: ContentService = Depends(get_content_service),
    dispatcher: TaskDispatcher = Depends(get_dispatcher),
):
    """Human decision. Approval is published by the worker; rejection takes down."""
    expected = get_settings().override_token
    if not expected or not x_override_token or not secrets.compare_digest(x_override_token, expected):
        raise HTTPException(status_code=403, detail="Override not permitted")
    if not x_moderator_id:
        raise HTTPException(status_code=400, detail="X-Moderator-Id header is required")

    try:
        result = await service.override(
            _content_id(content_id), body.decision, body.reason, x_moderator_id, publish=False,
        )
    except ContentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (OverrideNotAllowed, InvalidTransition, ConcurrencyConflict) as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"Override on {content_id} by {x_moderator_id}: {body.decision.value}")
    if result.status is ContentStatus.APPROVED:
        dispatcher.publish(result.content_id)
    return result
