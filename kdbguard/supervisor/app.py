"""Local HTTP boundary between the front-end and the kdb+ supervisor."""

from contextlib import asynccontextmanager
import asyncio
import logging
import os

from fastapi import Depends, FastAPI, HTTPException, Request

from kdbguard.errors import AlreadyRunningError, SupervisorError, failure_payload
from .kdb_supervisor import KdbSupervisor
from .launcher import ManagedProcessHandle
from .models import CommandResponse, MessageResponse, PortResponse, StatusResponse

logger = logging.getLogger("kdbguard.supervisor.app")

API_VERSION = "0.1.0"


@asynccontextmanager
async def _lifespan(app: FastAPI):
    supervisor: KdbSupervisor = app.state.supervisor
    if app.state.force_start_on_startup:
        # Always force start so a stale process cannot keep the port.
        logger.info("Application starting up. Ensuring a clean kdb+ instance...")
        try:
            await supervisor.force_start()
        except SupervisorError as exc:
            logger.critical("Failed to start kdb+ during startup: %s", exc)
    yield
    logger.info("Application shutting down. Stopping kdb+...")
    await supervisor.shutdown()


def get_supervisor(request: Request) -> KdbSupervisor:
    return request.app.state.supervisor


def _raise_http_error(exc: SupervisorError) -> None:
    code = getattr(exc, "error_code", "")
    status_code = 409 if code == AlreadyRunningError.error_code else 500
    raise HTTPException(status_code=status_code, detail=failure_payload(exc)) from exc


def _command_response(handle: ManagedProcessHandle | None, status: str) -> CommandResponse:
    if handle is None or not handle.self_managed:
        return CommandResponse(status=status)
    return CommandResponse(status=status, pid=handle.pid, self_managed=True)


def create_app(supervisor: KdbSupervisor, *, force_start_on_startup: bool = True) -> FastAPI:
    """Build the API around one supervisor instance."""
    app = FastAPI(title="kdbguard", version=API_VERSION, lifespan=_lifespan)
    app.state.supervisor = supervisor
    app.state.force_start_on_startup = force_start_on_startup
    # HTTP requests may overlap; supervisor commands must not.
    app.state.command_lock = asyncio.Lock()

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": API_VERSION}

    @app.get("/kdb/port", response_model=PortResponse)
    async def get_port(supervisor: KdbSupervisor = Depends(get_supervisor)):
        return PortResponse(port=supervisor.get_port())

    @app.get("/kdb/status", response_model=StatusResponse)
    async def get_status(supervisor: KdbSupervisor = Depends(get_supervisor)):
        async with app.state.command_lock:
            snapshot = await supervisor.describe()
        return StatusResponse(**snapshot)

    @app.post("/kdb/start", response_model=CommandResponse)
    async def start_kdb(supervisor: KdbSupervisor = Depends(get_supervisor)):
        logger.info("Starting kdb+ process from frontend request...")
        async with app.state.command_lock:
            try:
                handle = await supervisor.start()
            except SupervisorError as exc:
                logger.error("Start failed: %s", exc)
                _raise_http_error(exc)
        return _command_response(handle, "running")

    @app.post("/kdb/stop", response_model=CommandResponse)
    async def stop_kdb(supervisor: KdbSupervisor = Depends(get_supervisor)):
        logger.info("Stopping kdb+ process from frontend request...")
        async with app.state.command_lock:
            try:
                await supervisor.stop()
            except SupervisorError as exc:
                logger.error("Stop failed: %s", exc)
                _raise_http_error(exc)
        return CommandResponse(status="stopped")

    @app.post("/kdb/restart", response_model=CommandResponse)
    async def restart_kdb(supervisor: KdbSupervisor = Depends(get_supervisor)):
        async with app.state.command_lock:
            try:
                handle = await supervisor.restart()
            except SupervisorError as exc:
                logger.error("Restart failed: %s", exc)
                _raise_http_error(exc)
        return _command_response(handle, "running")

    @app.get("/kdb/connection", response_model=MessageResponse)
    async def test_connection(supervisor: KdbSupervisor = Depends(get_supervisor)):
        async with app.state.command_lock:
            message = await supervisor.test_connection()
        return MessageResponse(message=message)

    @app.get("/kdb/installation", response_model=MessageResponse)
    async def check_installation(supervisor: KdbSupervisor = Depends(get_supervisor)):
        return MessageResponse(message=await supervisor.check_installation())

    @app.post("/shutdown")
    async def shutdown():
        logger.info("Shutdown requested via API.")
        async with app.state.command_lock:
            await supervisor.shutdown()
        # Schedule process exit to allow response to be sent
        loop = asyncio.get_running_loop()
        loop.call_later(1, lambda: os._exit(0))
        return {"status": "shutting_down"}

    return app
