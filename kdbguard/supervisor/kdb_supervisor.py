"""Single-instance kdb+ supervisor: keep exactly one server bound to the port."""

from __future__ import annotations

import asyncio
from enum import Enum
import logging
import os
import shutil
import socket
import subprocess
from typing import Any, Callable

from kdbguard.config import DEFAULT_EXECUTABLE, DEFAULT_KDB_PORT
from kdbguard.errors import (
    AlreadyRunningError,
    PortInspectionError,
    PortStillOccupiedError,
    SupervisorError,
    SupervisorStepError,
    TerminationError,
)
from kdbguard.supervisor.launcher import LAUNCH_WINDOW_SECONDS, ManagedProcessHandle, ProcessLauncher
from kdbguard.supervisor.port_inspector import PortInspector, select_port_inspector
from kdbguard.supervisor.startup_script import generate_startup_script
from kdbguard.supervisor.terminator import ProcessTerminator

logger = logging.getLogger("kdbguard.supervisor")

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
INSTALL_PROBE_INPUT = "2+2\n\\\\\n"
INSTALL_PROBE_TIMEOUT_SECONDS = 10


class SupervisorState(str, Enum):
    """Derived supervisor state; computed on demand, never stored."""

    NO_HANDLE = "no_handle"
    RUNNING_SELF_MANAGED = "running_self_managed"
    RUNNING_EXTERNAL = "running_external"
    STOPPED = "stopped"


RUNNING_STATES = {SupervisorState.RUNNING_SELF_MANAGED, SupervisorState.RUNNING_EXTERNAL}


class KdbSupervisor:
    """Owns the one optional managed-process handle and every command on it.

    Calls are expected to be serialized by the caller; overlapping
    start/stop/restart/force_start calls are not defended against.
    """

    def __init__(
        self,
        *,
        port: int = DEFAULT_KDB_PORT,
        executable: str = DEFAULT_EXECUTABLE,
        inspector: PortInspector | None = None,
        terminator: ProcessTerminator | None = None,
        launcher: ProcessLauncher | None = None,
        script_factory: Callable[[int], str] = generate_startup_script,
        launch_window_seconds: float = LAUNCH_WINDOW_SECONDS,
        kill_settle_seconds: float = 2.0,
        stop_settle_seconds: float = 1.0,
        restart_settle_seconds: float = 2.0,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        if not 1 <= int(port) <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got {port}")
        self.port = int(port)
        self.executable = executable
        self.inspector = inspector or select_port_inspector()
        self.terminator = terminator or ProcessTerminator()
        self.launcher = launcher or ProcessLauncher(
            self.inspector,
            launch_window_seconds=launch_window_seconds,
            which=which,
        )
        self.script_factory = script_factory
        self.kill_settle_seconds = kill_settle_seconds
        self.stop_settle_seconds = stop_settle_seconds
        self.restart_settle_seconds = restart_settle_seconds
        self.which = which
        self._handle: ManagedProcessHandle | None = None

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "KdbSupervisor":
        return cls(
            port=settings["kdb_port"],
            executable=settings["executable"],
            launch_window_seconds=settings["launch_window_seconds"],
            kill_settle_seconds=settings["kill_settle_seconds"],
            stop_settle_seconds=settings["stop_settle_seconds"],
            restart_settle_seconds=settings["restart_settle_seconds"],
        )

    @property
    def handle(self) -> ManagedProcessHandle | None:
        return self._handle

    def get_port(self) -> int:
        return self.port

    async def state(self) -> SupervisorState:
        """Reconcile the handle with OS liveness and port occupancy."""
        handle = self._handle
        if handle is not None:
            if handle.is_alive():
                return SupervisorState.RUNNING_SELF_MANAGED
            returncode = await handle.wait_exit()
            logger.info("kdb+ process %s exited with code %s; clearing handle", handle.pid, returncode)
            self._handle = None
            if await self.inspector.is_port_listening(self.port):
                return SupervisorState.RUNNING_EXTERNAL
            return SupervisorState.STOPPED
        if await self.inspector.is_port_listening(self.port):
            return SupervisorState.RUNNING_EXTERNAL
        return SupervisorState.NO_HANDLE

    async def status(self) -> str:
        """Return "running" or "stopped"; an unknown listener counts as running."""
        state = await self.state()
        return STATUS_RUNNING if state in RUNNING_STATES else STATUS_STOPPED

    async def _launch(self) -> ManagedProcessHandle:
        script = self.script_factory(self.port)
        handle = await self.launcher.launch(self.executable, script, self.port)
        # An adopted external instance is never held.
        self._handle = handle if handle.self_managed else None
        return handle

    async def _start(self) -> ManagedProcessHandle:
        if await self.state() in RUNNING_STATES:
            raise AlreadyRunningError()
        return await self._launch()

    async def start(self) -> ManagedProcessHandle:
        """Launch kdb+ unless something already serves the port."""
        logger.info("Starting kdb+ process on port %s...", self.port)
        try:
            handle = await self._start()
        except AlreadyRunningError:
            raise
        except SupervisorError as exc:
            raise SupervisorStepError("start", "launch", exc) from exc
        logger.info("kdb+ process started successfully")
        return handle

    async def _stop_handle(self) -> None:
        handle = self._handle
        if handle is None:
            logger.info("No managed kdb+ process to stop")
            return
        if handle.is_alive() and handle.pid is not None:
            logger.info("Stopping kdb+ process %s...", handle.pid)
            try:
                await self.terminator.terminate(handle.pid)
            except TerminationError:
                if handle.is_alive():
                    raise
                logger.info("kdb+ process %s exited before it could be killed", handle.pid)
        returncode = await handle.wait_exit()
        self._handle = None
        logger.info("kdb+ process %s stopped (exit code %s)", handle.pid, returncode)

    async def stop(self) -> None:
        """Kill and reap our own process; a no-op without a handle."""
        try:
            await self._stop_handle()
        except SupervisorError as exc:
            raise SupervisorStepError("stop", "terminate", exc) from exc

    async def _evict_port_owner(self) -> None:
        try:
            pid = await self.inspector.find_owning_pid(self.port)
        except PortInspectionError as exc:
            raise PortStillOccupiedError(self.port, str(exc)) from exc
        if pid is None:
            raise PortStillOccupiedError(self.port)
        if pid == os.getpid():
            raise PortStillOccupiedError(self.port, "port is held by the supervisor itself")
        await self.terminator.terminate(pid)

    async def force_start(self) -> ManagedProcessHandle:
        """Evict any occupant of the port, drop our own handle, and launch fresh."""
        logger.info("Force starting kdb+ process...")
        if await self.inspector.is_port_listening(self.port):
            logger.info("Port %s is in use. Killing existing process...", self.port)
            try:
                await self._evict_port_owner()
            except SupervisorError as exc:
                raise SupervisorStepError("force start", "evict", exc) from exc
            await asyncio.sleep(self.kill_settle_seconds)

        if self._handle is not None:
            try:
                await self._stop_handle()
            except SupervisorError as exc:
                raise SupervisorStepError("force start", "stop", exc) from exc
            await asyncio.sleep(self.stop_settle_seconds)

        try:
            handle = await self._launch()
        except SupervisorError as exc:
            raise SupervisorStepError("force start", "launch", exc) from exc
        logger.info("kdb+ process force started successfully")
        return handle

    async def restart(self) -> ManagedProcessHandle:
        """Best-effort stop, settle, then start; external occupants are left alone."""
        logger.info("Restarting kdb+ process...")
        try:
            await self._stop_handle()
        except SupervisorError as exc:
            logger.warning("Error stopping kdb+ during restart: %s", exc)
        await asyncio.sleep(self.restart_settle_seconds)
        try:
            handle = await self._start()
        except SupervisorError as exc:
            raise SupervisorStepError("restart", "start", exc) from exc
        logger.info("kdb+ process restarted successfully")
        return handle

    async def shutdown(self) -> None:
        """Stop during application teardown; failures are logged, never raised."""
        try:
            await self.stop()
        except Exception as exc:
            logger.error("Error stopping kdb+ during shutdown: %s", exc)

    async def _is_tcp_port_open(self, host: str, port: int, timeout: float = 2) -> bool:
        """Return True when a TCP connection can be established."""
        def _probe() -> bool:
            with socket.create_connection((host, port), timeout=timeout):
                return True

        try:
            return await asyncio.to_thread(_probe)
        except OSError:
            return False

    async def test_connection(self) -> str:
        """Advisory reachability hint for the WebSocket endpoint."""
        if await self.status() != STATUS_RUNNING:
            return "kdb+ process not running"
        address = f"ws://localhost:{self.port}"
        if await self._is_tcp_port_open("localhost", self.port):
            hint = "TCP connect succeeded"
        else:
            hint = "TCP connect failed"
        return f"kdb+ WebSocket should be available at {address} ({hint})"

    async def _run_probe(self, args: list[str]) -> subprocess.CompletedProcess:
        logger.info("Running command: %s", " ".join(args))
        return await asyncio.to_thread(
            subprocess.run,
            args,
            input=INSTALL_PROBE_INPUT,
            capture_output=True,
            text=True,
            timeout=INSTALL_PROBE_TIMEOUT_SECONDS,
        )

    async def check_installation(self) -> str:
        """Resolve the executable and evaluate `2+2` with it."""
        resolved = self.which(self.executable)
        if not resolved:
            return (
                f"ERROR: kdb+ executable '{self.executable}' not found in PATH. "
                f"Please install kdb+ and ensure '{self.executable}' is in your PATH."
            )
        logger.info("Found kdb+ executable at: %s", resolved)
        try:
            result = await self._run_probe([resolved, "-q"])
        except (OSError, subprocess.SubprocessError) as exc:
            return f"ERROR: kdb+ failed to execute simple test: {exc}"
        output = ((result.stdout or "") + (result.stderr or "")).strip()
        if result.returncode != 0:
            return (
                f"ERROR: kdb+ failed to execute simple test: exit code {result.returncode}\n"
                f"Output: {output}"
            )
        return f"OK: kdb+ is properly installed at {resolved}\nTest output: {output}"

    async def describe(self) -> dict[str, Any]:
        """Snapshot of the derived state for status reporting."""
        state = await self.state()
        handle = self._handle
        return {
            "port": self.port,
            "executable": self.executable,
            "status": STATUS_RUNNING if state in RUNNING_STATES else STATUS_STOPPED,
            "state": state.value,
            "pid": handle.pid if handle is not None else None,
            "self_managed": handle is not None,
        }
