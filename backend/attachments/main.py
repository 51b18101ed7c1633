"""Attachment Upload Service.

Entry point for the resumable upload service.  Large encrypted attachments
are uploaded by the client straight to the object store in parts; this
service only tracks sessions, hands out per-part URLs and assembles the
final object.

Modules:
    - sessions: Upload session registry (in-memory or Redis) with TTL expiry
    - storage: S3 multipart upload gateway
    - uploads: Upload orchestrator and HTTP endpoints
    - events: DuckDB ledger of finished uploads
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from attachments.config import get_config
from attachments.events.router import router as events_router, set_event_log
from attachments.events.service import UploadEventLog
from attachments.sessions.redis_registry import RedisSessionRegistry
from attachments.sessions.registry import InMemorySessionRegistry, SessionRegistry
from attachments.storage.gateway import S3MultipartGateway
from attachments.uploads.orchestrator import UploadOrchestrator
from attachments.uploads.router import get_orchestrator, router as uploads_router, set_orchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# botocore.auth logs the full SigV4 canonical request, including
# x-amz-security-token, which leaks credentials into the console.
for _noisy in (
    "botocore",
    "boto3",
    "urllib3",
    "urllib3.connectionpool",
    "redis",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _build_registry(config) -> SessionRegistry:
    uploads = config.uploads
    if uploads.registry_backend == "redis":
        logger.info("Session registry: redis (prefix=%s)", uploads.redis_key_prefix)
        return RedisSessionRegistry.from_url(
            config.secrets.redis.url,
            key_prefix=uploads.redis_key_prefix,
            reaper_interval_seconds=uploads.reaper_interval_seconds,
        )
    logger.info("Session registry: in-memory (single instance)")
    return InMemorySessionRegistry(reaper_interval_seconds=uploads.reaper_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    event_log = None
    if config.logging.events_enabled:
        try:
            event_log = UploadEventLog.get_instance(config.logging.events_path)
            logger.info("Upload event ledger ready: %s", config.logging.events_path)
        except Exception as exc:
            logger.warning("Failed to open upload event ledger: %s", exc)
    set_event_log(event_log)

    try:
        gateway = S3MultipartGateway.from_config(config)
        registry = _build_registry(config)
        set_orchestrator(UploadOrchestrator.from_config(config, registry, gateway, events=event_log))
        await registry.start()
        logger.info(
            "Upload orchestrator ready: bucket=%s region=%s ttl=%ss",
            config.storage.bucket, config.storage.region, config.uploads.session_ttl_seconds,
        )
    except ValueError as exc:
        logger.warning("Upload service disabled: %s", exc)

    yield  # Application runs here

    # Shutdown
    orchestrator = get_orchestrator()
    if orchestrator is not None:
        registry = orchestrator.registry
        if isinstance(registry, RedisSessionRegistry):
            await registry.close()
        else:
            await registry.stop()
        set_orchestrator(None)
    if event_log is not None:
        UploadEventLog.reset_instance()
        set_event_log(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Attachment Upload API",
    description="Resumable multipart uploads of encrypted attachments to object storage",
    version="0.1.0",
    lifespan=lifespan,
)

# Ledger routes first: /uploads/events must win over /uploads/{upload_id}.
app.include_router(events_router)
app.include_router(uploads_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object; ``uploads`` reports whether the orchestrator is configured.
    """
    return {"status": "ok", "uploads": get_orchestrator() is not None}


def run() -> None:
    """Serve the app on the host and port from ``server`` settings."""
    config = get_config()
    logger.info("Starting server on %s:%d", config.server.host, config.server.port)
    uvicorn.run(app, host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    run()
