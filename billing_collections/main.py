import logging

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from billing_collections.api.collections import router as collections_router
from billing_collections.errors import register_error_handlers
from billing_collections.logging import configure_logging
from billing_collections.observability import ObservabilityMiddleware
from billing_collections.services.object_storage import ensure_storage_bucket

app = FastAPI(title="billing_collections API")
logger = logging.getLogger(__name__)
configure_logging()
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)

app.include_router(collections_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _ensure_bucket():
    try:
        ensure_storage_bucket()
    except Exception:
        logger.exception("Failed to ensure storage bucket during startup")
