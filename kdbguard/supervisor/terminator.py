"""Forced process termination by PID."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys

from kdbguard.errors import TerminationError

logger = logging.getLogger("kdbguard.supervisor.terminator")


class ProcessTerminator:
    """Kill processes outright; the managed server is never asked to shut down."""

    def __init__(self, platform_name: str = sys.platform) -> None:
        self.platform_name = platform_name

    async def _run_command(self, args: list[str]) -> subprocess.CompletedProcess:
        logger.info("Running command: %s", " ".join(args))
        return await asyncio.to_thread(
            subprocess.run,
            args,
            capture_output=True,
            text=True,
        )

    async def _taskkill(self, pid: int) -> None:
        try:
            result = await self._run_command(["taskkill", "/F", "/PID", str(pid)])
        except OSError as exc:
            raise TerminationError(pid, str(exc)) from exc
        if result.returncode != 0:
            reason = (result.stderr or result.stdout or "").strip()
            raise TerminationError(pid, reason or f"taskkill exited with code {result.returncode}")

    def _sigkill(self, pid: int) -> None:
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            raise TerminationError(pid, "no such process") from None
        except PermissionError:
            raise TerminationError(pid, "permission denied") from None
        except OSError as exc:
            raise TerminationError(pid, str(exc)) from exc

    async def terminate(self, pid: int) -> None:
        """Force-kill `pid`. Does not wait for the port to be released."""
        if pid <= 0:
            raise TerminationError(pid, "invalid pid")
        logger.info("Force killing process %s", pid)
        if self.platform_name.startswith("win"):
            await self._taskkill(pid)
        else:
            self._sigkill(pid)
        logger.info("Successfully killed process %s", pid)
