"""
Read-only status API for the build-watch supervisor.

Reports the active server, the latest build, and recent log entries. The
API never starts or stops anything; the control loop owns the server.
"""

import logging
import threading
from typing import Optional

import uvicorn
from fastapi import FastAPI, Query
from pydantic import BaseModel, Field

from . import __version__

logger = logging.getLogger(__name__)


class LogEntryResponse(BaseModel):
    timestamp: str
    message: str


class LogsResponse(BaseModel):
    entries: list[LogEntryResponse]
    total: int = Field(..., description="Number of entries returned")


class BuildResponse(BaseModel):
    started_at: str
    finished_at: str
    exit_status: Optional[int]
    succeeded: bool
    error: Optional[str] = None
    duration_seconds: float


class ServerResponse(BaseModel):
    pid: Optional[int]
    bind_address: str
    artifact: str
    state: str
    started_at: str
    uptime_seconds: float
    exit_code: Optional[int] = None
    cpu_percent: Optional[float] = None
    memory_mb: Optional[float] = None


class StatusResponse(BaseModel):
    running: bool
    bind_address: str
    swap_strategy: str
    watch_root: str
    changes: int
    builds: int
    failed_builds: int
    starts: int
    replaces: int
    last_build: Optional[BuildResponse] = None
    server: Optional[ServerResponse] = None


def create_app(supervisor_loop, event_log=None) -> FastAPI:
    """Build the status app around a running SupervisorLoop."""
    app = FastAPI(
        title="Buildwatch",
        description="Build-watch-serve supervisor status",
        version=__version__,
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/status", response_model=StatusResponse)
    async def get_status():
        """Active server, latest build, and counters."""
        return supervisor_loop.status()

    @app.get("/api/logs", response_model=LogsResponse)
    async def get_logs(limit: int = Query(100, ge=1, le=1000)):
        """Most recent log entries, oldest first."""
        entries = event_log.recent(limit) if event_log else []
        return {"entries": [entry.to_dict() for entry in entries], "total": len(entries)}

    return app


class StatusServer(uvicorn.Server):
    """Uvicorn server that runs on a background thread."""

    def install_signal_handlers(self):
        # Signals belong to the supervisor's main thread.
        pass

    def start_in_thread(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name="status-api", daemon=True)
        thread.start()
        return thread

    def stop(self):
        self.should_exit = True


def serve_status(supervisor_loop, event_log, host: str, port: int) -> StatusServer:
    """Start the status API on host:port in a daemon thread."""
    app = create_app(supervisor_loop, event_log)
    server = StatusServer(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    server.start_in_thread()
    logger.info(f"Status API listening on http://{host}:{port}")
    return server
