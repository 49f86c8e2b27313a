"""Health, readiness and metrics endpoints."""

from fastapi import APIRouter, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["health"])


def _service(request: Request):
    return request.app.state.monitor


@router.get("/health")
def health():
    """Liveness: ok mientras el proceso esté vivo."""
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request):
    """Readiness: 503 si el broker no está conectado."""
    if not _service(request).transport.is_connected:
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready"}


@router.get("/health/monitor")
def monitor_health(request: Request):
    """Estado completo: circuit breaker de presencia, conexión, cola de ingesta."""
    return _service(request).get_health_status().to_dict()


@router.get("/metrics")
def metrics():
    """Prometheus exposition."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
