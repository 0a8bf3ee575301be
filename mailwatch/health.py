"""FastAPI health endpoints for liveness and readiness probes."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .models import SessionState

if TYPE_CHECKING:
    from .runner import WatcherRunner

_LIVE_STATES = (SessionState.CONNECTING, SessionState.READY, SessionState.WATCHING)


class HealthStatus(BaseModel):
    """Response body of ``/health``."""

    mailbox: str = Field(description="Watched mailbox")
    state: SessionState = Field(description="Current session state")
    uptime_seconds: float = Field(description="Seconds since the runner started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Watcher counters and connectivity",
    )


def create_health_app(runner: WatcherRunner) -> FastAPI:
    """Build a minimal FastAPI app with ``/health`` and ``/ready`` routes.

    ``/health`` is 200 while the session is connecting or up and 503
    once it is disconnected or faulted; ``/ready`` is 200 only while the
    mailbox is being watched.
    """
    watcher = runner.watcher
    app = FastAPI(title=f"mailwatch {watcher.config.mailbox} health", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> JSONResponse:
        status = HealthStatus(
            mailbox=watcher.config.mailbox,
            state=watcher.state,
            uptime_seconds=time.monotonic() - runner.start_time,
            details=await watcher.health_check(),
        )
        code = 200 if watcher.state in _LIVE_STATES else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = watcher.state is SessionState.WATCHING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    return app
