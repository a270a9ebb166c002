"""Spawn the managed kdb+ process and confirm it survives its first moments."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
import shutil
import tempfile
from typing import Callable

from kdbguard.errors import (
    ExecutableNotFoundError,
    ProcessExitedUnexpectedlyError,
    ScriptWriteError,
    SpawnError,
)
from kdbguard.supervisor.port_inspector import PortInspector

logger = logging.getLogger("kdbguard.supervisor.launcher")
process_logger = logging.getLogger("kdbguard.kdb")

LAUNCH_WINDOW_SECONDS = 2.0
SCRIPT_FILENAME = "kdb_ws_init.q"
EXIT_WAIT_SECONDS = 5.0
PUMP_DRAIN_SECONDS = 2.0


@dataclass
class ManagedProcessHandle:
    """Runtime handle for a launched kdb+ process.

    `self_managed` is False when our process exited but another instance already
    owns the port; such handles carry no process and are never retained.
    """

    pid: int | None
    self_managed: bool
    process: asyncio.subprocess.Process | None = None
    exit_task: asyncio.Task | None = None
    pump_tasks: list[asyncio.Task] = field(default_factory=list)

    def is_alive(self) -> bool:
        if self.process is None:
            return False
        return self.process.returncode is None

    async def wait_exit(self, timeout: float = EXIT_WAIT_SECONDS) -> int | None:
        """Reap the process and drain its output pumps, giving up after bounded waits.

        A surviving grandchild can hold the inherited pipes open after our process
        is gone, so neither the pumps nor the exit watcher may be awaited unbounded.
        """
        if self.exit_task is None:
            return None
        await _settle_tasks([self.exit_task], timeout)
        await _settle_tasks(self.pump_tasks, PUMP_DRAIN_SECONDS)
        if self.exit_task.done() and not self.exit_task.cancelled():
            return self.exit_task.result()
        if self.process is not None:
            return self.process.returncode
        return None


async def _settle_tasks(tasks: list[asyncio.Task], timeout: float) -> None:
    """Wait up to `timeout` for `tasks`, then cancel whatever is still pending."""
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        logger.warning("Task %s did not finish within %ss; cancelling", task.get_name(), timeout)
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


async def _pump_stream(stream: asyncio.StreamReader | None, pid: int, level: int) -> None:
    """Forward each output line of the managed process to the kdb logger."""
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            process_logger.log(level, "[pid %s] %s", pid, text)


class ProcessLauncher:
    """Write the startup script, spawn the executable, watch the launch window."""

    def __init__(
        self,
        inspector: PortInspector,
        *,
        launch_window_seconds: float = LAUNCH_WINDOW_SECONDS,
        script_dir: Path | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.inspector = inspector
        self.launch_window_seconds = launch_window_seconds
        self.script_dir = script_dir
        self.which = which

    @property
    def script_path(self) -> Path:
        base_dir = self.script_dir or Path(tempfile.gettempdir())
        return base_dir / SCRIPT_FILENAME

    def resolve_executable(self, executable: str) -> str:
        resolved = self.which(executable)
        if not resolved:
            raise ExecutableNotFoundError(executable)
        return resolved

    def _write_script(self, script: str) -> Path:
        script_path = self.script_path
        try:
            script_path.write_text(script, encoding="utf-8")
        except OSError as exc:
            raise ScriptWriteError(f"failed to create kdb+ init script {script_path}: {exc}") from exc
        return script_path

    async def launch(self, executable: str, script: str, port: int) -> ManagedProcessHandle:
        """Launch `executable <script file>` and classify the outcome of the launch window."""
        resolved = self.resolve_executable(executable)
        script_path = self._write_script(script)

        logger.info("Executing command: %s %s", resolved, script_path)
        try:
            process = await asyncio.create_subprocess_exec(
                resolved,
                str(script_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(f"failed to start kdb+ process: {exc}") from exc

        pid = process.pid
        logger.info("kdb+ process started with PID %s. Waiting for initialization...", pid)
        pump_tasks = [
            asyncio.create_task(_pump_stream(process.stdout, pid, logging.INFO)),
            asyncio.create_task(_pump_stream(process.stderr, pid, logging.WARNING)),
        ]
        exit_task = asyncio.create_task(process.wait())

        try:
            # shield: the watcher must outlive the window so stop() can reap later
            returncode = await asyncio.wait_for(
                asyncio.shield(exit_task), timeout=self.launch_window_seconds
            )
        except asyncio.TimeoutError:
            logger.info("kdb+ process %s appears to be running correctly.", pid)
            return ManagedProcessHandle(
                pid=pid,
                self_managed=True,
                process=process,
                exit_task=exit_task,
                pump_tasks=pump_tasks,
            )

        await _settle_tasks(pump_tasks, PUMP_DRAIN_SECONDS)
        if await self.inspector.is_port_listening(port):
            logger.info(
                "kdb+ process exited (code %s), but port %s is now in use. Assuming external instance.",
                returncode,
                port,
            )
            return ManagedProcessHandle(pid=None, self_managed=False)
        logger.error("kdb+ process %s exited unexpectedly with code %s", pid, returncode)
        raise ProcessExitedUnexpectedlyError(returncode)
