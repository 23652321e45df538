"""
MediaGate API — Admin routes.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from mediagate.api.routes.content import get_content_service
from mediagate.schemas.schemas import StatusCounts
from mediagate.services.content.content_service import ContentService

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/metrics", response_model=StatusCounts)
async def get_system_metrics(service: ContentService = Depends(get_content_service)):
    """Item counts per pipeline status, for the admin dashboard."""
    return await service.status_counts()
