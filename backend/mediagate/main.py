"""
MediaGate — Main FastAPI Application

Upload-first content moderation: nothing becomes viewable until every
applicable modality has cleared it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from mediagate.core.config import get_settings
from mediagate.core.database import close_engine, init_db

settings = get_settings()

# ── Logging ──────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level)
    ),
)
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

logger = structlog.get_logger()


# ── Lifespan ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown hooks."""
    logger.info("Starting MediaGate", version=settings.app_version)

    await init_db()

    logger.info(
        "MediaGate ready",
        analysis_backend=settings.analysis_backend,
        bucket=settings.minio_bucket,
        override_enabled=bool(settings.override_token),
    )

    yield

    from mediagate.services.delivery.delivery_client import reset_delivery_client

    await reset_delivery_client()
    await close_engine()
    logger.info("Shutting down MediaGate")


# ── App ──────────────────────────────────────────────────────────────────

app = FastAPI(
    title="MediaGate",
    description="Upload-first multi-modal content moderation pipeline",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── Routes ───────────────────────────────────────────────────────────────

from mediagate.api.routes import admin, content

app.include_router(content.router, prefix=settings.api_prefix)
app.include_router(admin.router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {
        "name": "MediaGate",
        "description": "Upload-first content moderation pipeline",
        "version": settings.app_version,
        "modalities": ["video", "audio", "image"],
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    return {"status": "healthy"}
