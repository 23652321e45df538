"""
MediaGate Celery Worker Tasks

Asynchronous task definitions for:
- Per-item moderation pipeline (upload → analyze → decide → publish)
- Publication after a human approval
- Periodic recovery sweep
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, TypeVar

from celery import Celery

from mediagate.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

T = TypeVar("T")

# ── Celery App ───────────────────────────────────────────────────────────

celery_app = Celery(
    "mediagate",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=1800,   # 30 min soft limit
    task_time_limit=3600,        # 1 hour hard limit
    task_default_queue="default",
    task_routes={
        "mediagate.workers.tasks.process_content_task": {"queue": "moderation"},
        "mediagate.workers.tasks.publish_content_task": {"queue": "publish"},
        "mediagate.workers.tasks.recovery_sweep_task": {"queue": "default"},
    },
)

# ── Periodic Tasks ───────────────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    "recovery-sweep": {
        "task": "mediagate.workers.tasks.recovery_sweep_task",
        "schedule": float(settings.sweeper_interval_seconds),
    },
}


# ── Helpers ──────────────────────────────────────────────────────────────

def run_async(coro):
    """Run an async coroutine from sync Celery task."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def build_pipeline():
    from mediagate.core.database import get_session_factory
    from mediagate.services.delivery.delivery_client import get_delivery_client
    from mediagate.services.moderation.analysis_client import get_analysis_service
    from mediagate.services.pipeline.pipeline import ModerationPipeline
    from mediagate.services.storage.object_store import get_object_store

    return ModerationPipeline(
        get_session_factory(), get_object_store(), get_analysis_service(settings),
        get_delivery_client(), settings,
    )


def with_pipeline(fn: Callable[..., Awaitable[T]]) -> T:
    """Run ``fn(pipeline)`` on a fresh loop; engine and HTTP client are per-loop."""
    from mediagate.core.database import close_engine
    from mediagate.services.delivery.delivery_client import reset_delivery_client

    async def _run():
        try:
            return await fn(build_pipeline())
        finally:
            await reset_delivery_client()
            await close_engine()

    return run_async(_run())


# ── Tasks ────────────────────────────────────────────────────────────────

@celery_app.task(
    name="mediagate.workers.tasks.process_content_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def process_content_task(self, content_id: str):
    """Drive one staged item through the moderation pipeline."""
    try:
        logger.info(f"Processing content: {content_id}")
        status = with_pipeline(lambda p: p.process(uuid.UUID(content_id)))
        logger.info(f"Content {content_id} stopped at {status.value if status else 'unchanged'}")
        return status.value if status else None
    except Exception as exc:
        # The sweeper resumes the item regardless; retry only shortens the wait
        logger.error(f"Task failed for {content_id}: {exc}")
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))


@celery_app.task(
    name="mediagate.workers.tasks.publish_content_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def publish_content_task(self, content_id: str):
    """Publish an approved item (used after a human approval)."""
    try:
        logger.info(f"Publishing content: {content_id}")
        status = with_pipeline(lambda p: p.publish(uuid.UUID(content_id)))
        return status.value if status else None
    except Exception as exc:
        logger.error(f"Publish failed for {content_id}: {exc}")
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))


@celery_app.task(name="mediagate.workers.tasks.recovery_sweep_task")
def recovery_sweep_task():
    """Resume or fail items whose status stopped advancing."""
    from mediagate.services.recovery.sweeper import RecoverySweeper

    try:
        logger.info("Starting recovery sweep")
        actions = with_pipeline(
            lambda p: RecoverySweeper(p.session_factory, p, settings).sweep()
        )
        logger.info(f"Recovery sweep complete: {actions}")
        return actions
    except Exception as e:
        logger.error(f"Recovery sweep failed: {e}")
