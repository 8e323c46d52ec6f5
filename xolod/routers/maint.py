"""Server maintenance endpoints.

State and thread reports, on-demand cleanup, log control, and shutdown.
"""

import logging
import os
import signal
import threading
from typing import Annotated

from fastapi import APIRouter
from fastapi import Query
from fastapi import Request
from pydantic import BaseModel
from pydantic import Field

from xolo_library import logs
from xolo_library.exceptions import ValidationError
from xolo_library.models.operations import MessageResponse
from xolo_library.models.operations import StreamingStarted

from ..dependencies import ContextDep
from ..dependencies import MaintenanceDep
from ..dependencies import RunnerDep
from ..dependencies import SchedulerDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/maint", tags=["maint"])

# Seconds between the shutdown stream completing and the process being signalled
EXIT_DELAY = 2.0


class LogLevelRequest(BaseModel):
    """Request model for changing the log level."""

    level: str = Field(..., description="debug, info, warning, error or critical")


class ShutdownRequest(BaseModel):
    """Request model for stopping the server."""

    restart: bool = Field(default=False, description="Start the server again after it stops")


@router.get("/state")
def state(
    maintenance: MaintenanceDep,
    scheduler: SchedulerDep,
    extended: Annotated[bool, Query(description="Include locks, threads and streams")] = False,
) -> dict:
    """Server state, with secrets in the configuration masked."""
    report = maintenance.state(extended=extended)
    report["scheduled_jobs"] = scheduler.jobs() if scheduler is not None else []
    return report


@router.get("/threads", response_model=list[dict])
def threads(maintenance: MaintenanceDep) -> list[dict]:
    return maintenance.threads()


@router.post("/cleanup", status_code=202, response_model=StreamingStarted)
def cleanup(maintenance: MaintenanceDep, runner: RunnerDep, ctx: ContextDep) -> StreamingStarted:
    """Run the nightly cleanup now."""
    url = runner.start(ctx, "cleanup", maintenance.cleanup)
    return StreamingStarted(progress_stream_url_path=url)


@router.post("/rotate-logs", response_model=MessageResponse)
def rotate_logs(maintenance: MaintenanceDep) -> MessageResponse:
    rotated = maintenance.rotate_logs()
    return MessageResponse(result="Logs rotated" if rotated else "File logging is not configured")


@router.post("/set-log-level", response_model=MessageResponse)
def set_log_level(request: LogLevelRequest) -> MessageResponse:
    """Change the server's log level until the next restart.

    Raises:
        ValidationError (400): Unknown level name
    """
    try:
        level = logs.set_log_level(request.level)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return MessageResponse(result=f"Log level set to {level}")


@router.post("/shutdown-server", status_code=202, response_model=StreamingStarted)
def shutdown_server(
    body: ShutdownRequest,
    request: Request,
    maintenance: MaintenanceDep,
    runner: RunnerDep,
    scheduler: SchedulerDep,
    ctx: ContextDep,
) -> StreamingStarted:
    """Stop taking work, wait for running operations, then exit (and optionally restart).

    Every route but the progress streams answers 503 from now on.
    """
    app_state = request.app.state
    stop_scheduler = scheduler.stop if scheduler is not None and scheduler.running else None

    def shutdown(c) -> None:
        maintenance.prepare_shutdown(c, stop_scheduler=stop_scheduler)
        app_state.restart_requested = body.restart
        verb = "Restarting" if body.restart else "Stopping"
        c.progress(f"{verb} the server in {EXIT_DELAY:g} seconds")
        timer = threading.Timer(EXIT_DELAY, _signal_exit)
        timer.daemon = True
        timer.start()

    url = runner.start(ctx, "shutdown-server", shutdown)
    app_state.shutting_down = True
    logger.warning(f"Server shutdown requested by {ctx.admin} (restart={body.restart})")
    return StreamingStarted(progress_stream_url_path=url)


def _signal_exit() -> None:
    logger.info("Signalling server exit")
    os.kill(os.getpid(), signal.SIGTERM)
