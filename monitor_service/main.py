from __future__ import annotations

from fastapi import FastAPI

from .endpoints.health import router as health_router
from .service import MonitorService


def create_app(service: MonitorService) -> FastAPI:
    """App HTTP de salud ligada a un servicio ya construido."""
    app = FastAPI(title="Water Monitor Service", version="0.1.0")
    app.state.monitor = service
    app.include_router(health_router)
    return app
