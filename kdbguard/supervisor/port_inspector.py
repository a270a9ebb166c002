"""OS connection-table scanners answering "who listens on this TCP port?"."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import re
import shutil
import subprocess
import sys
from typing import Callable

from kdbguard.errors import PortInspectionError

logger = logging.getLogger("kdbguard.supervisor.port_inspector")

SCAN_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class ListeningSocket:
    """One LISTEN row of the OS connection table."""

    port: int
    pid: int | None
    local_address: str


@dataclass(frozen=True)
class PortBinding:
    """Fresh answer for a single port; never cached."""

    port: int
    occupied: bool
    owner_pid: int | None = None


def _split_port(local_address: str) -> int | None:
    """Return the port of `host:port` / `[::]:port` / `*.port` addresses."""
    separator = ":" if ":" in local_address else "."
    _, _, port_str = local_address.rpartition(separator)
    try:
        return int(port_str)
    except ValueError:
        return None


class PortInspector:
    """Scan the OS connection table with one external command and parse it."""

    name = "base"

    def command(self) -> list[str]:
        raise NotImplementedError

    def parse_output(self, output: str) -> list[ListeningSocket]:
        raise NotImplementedError

    def _scan_succeeded(self, result: subprocess.CompletedProcess) -> bool:
        return result.returncode == 0

    async def _run_command(self, args: list[str]) -> subprocess.CompletedProcess:
        """Run the scan command off the event loop and capture its output."""
        logger.debug("Running command: %s", " ".join(args))
        return await asyncio.to_thread(
            subprocess.run,
            args,
            capture_output=True,
            text=True,
            timeout=SCAN_TIMEOUT_SECONDS,
        )

    async def list_listeners(self) -> list[ListeningSocket]:
        """Return every listening TCP socket, raising PortInspectionError on failure."""
        args = self.command()
        try:
            result = await self._run_command(args)
        except (OSError, subprocess.SubprocessError) as exc:
            raise PortInspectionError(f"failed to run {args[0]}: {exc}") from exc
        if not self._scan_succeeded(result):
            raise PortInspectionError(
                f"{args[0]} exited with code {result.returncode}: {(result.stderr or '').strip()}"
            )
        return self.parse_output(result.stdout or "")

    async def find_owning_pid(self, port: int) -> int | None:
        """Return the PID of the first listener on `port`, or None when unknown."""
        for listener in await self.list_listeners():
            if listener.port == port and listener.pid is not None:
                logger.info("Found process %s listening on port %s", listener.pid, port)
                return listener.pid
        logger.info("No owning process resolved for port %s", port)
        return None

    async def inspect(self, port: int) -> PortBinding:
        """Scan once and report occupancy plus owner; degrades to "free" on failure."""
        try:
            listeners = await self.list_listeners()
        except PortInspectionError as exc:
            logger.warning("Port inspection degraded, assuming port %s is free: %s", port, exc)
            return PortBinding(port=port, occupied=False)
        matches = [listener for listener in listeners if listener.port == port]
        if not matches:
            return PortBinding(port=port, occupied=False)
        owner = next((m.pid for m in matches if m.pid is not None), None)
        return PortBinding(port=port, occupied=True, owner_pid=owner)

    async def is_port_listening(self, port: int) -> bool:
        """Return True iff something is listening on `port`; never raises."""
        binding = await self.inspect(port)
        logger.debug("Port %s listening=%s", port, binding.occupied)
        return binding.occupied


class NetstatPortInspector(PortInspector):
    """Windows `netstat -ano -p TCP` scanner."""

    name = "netstat"

    def command(self) -> list[str]:
        return ["netstat", "-ano", "-p", "TCP"]

    def parse_output(self, output: str) -> list[ListeningSocket]:
        listeners: list[ListeningSocket] = []
        for raw_line in output.splitlines():
            parts = raw_line.split()
            # Proto, Local Address, Foreign Address, State, PID
            if len(parts) < 5 or not parts[0].upper().startswith("TCP"):
                continue
            if parts[3].upper() != "LISTENING":
                continue
            port = _split_port(parts[1])
            if port is None:
                continue
            try:
                pid: int | None = int(parts[-1])
            except ValueError:
                pid = None
            listeners.append(ListeningSocket(port=port, pid=pid, local_address=parts[1]))
        return listeners


_SS_PID_RE = re.compile(r"pid=(\d+)")


class SsPortInspector(PortInspector):
    """Linux `ss -H -ltnp` scanner."""

    name = "ss"

    def command(self) -> list[str]:
        return ["ss", "-H", "-ltnp"]

    def parse_output(self, output: str) -> list[ListeningSocket]:
        listeners: list[ListeningSocket] = []
        for raw_line in output.splitlines():
            parts = raw_line.split()
            # State, Recv-Q, Send-Q, Local, Peer[, Process]
            if len(parts) < 5 or parts[0].upper() != "LISTEN":
                continue
            port = _split_port(parts[3])
            if port is None:
                continue
            # Process column is absent for sockets owned by other users.
            match = _SS_PID_RE.search(" ".join(parts[5:]))
            pid = int(match.group(1)) if match else None
            listeners.append(ListeningSocket(port=port, pid=pid, local_address=parts[3]))
        return listeners


_LSOF_ROW_RE = re.compile(r"^\S+\s+(\d+)\s.*\sTCP\s+(\S+)\s+\(LISTEN\)\s*$")


class LsofPortInspector(PortInspector):
    """macOS/BSD `lsof` scanner."""

    name = "lsof"

    def command(self) -> list[str]:
        return ["lsof", "-nP", "-iTCP", "-sTCP:LISTEN"]

    def _scan_succeeded(self, result: subprocess.CompletedProcess) -> bool:
        # lsof exits 1 when nothing matched.
        if result.returncode == 1 and not (result.stdout or "").strip():
            return True
        return result.returncode == 0

    def parse_output(self, output: str) -> list[ListeningSocket]:
        listeners: list[ListeningSocket] = []
        for raw_line in output.splitlines():
            match = _LSOF_ROW_RE.match(raw_line.strip())
            if not match:
                continue
            address = match.group(2)
            port = _split_port(address)
            if port is None:
                continue
            listeners.append(
                ListeningSocket(port=port, pid=int(match.group(1)), local_address=address)
            )
        return listeners


def select_port_inspector(
    platform_name: str = sys.platform,
    which: Callable[[str], str | None] = shutil.which,
) -> PortInspector:
    """Return the scanner matching the host OS."""
    if platform_name.startswith("win"):
        return NetstatPortInspector()
    if platform_name.startswith("linux"):
        if which("ss") or not which("lsof"):
            return SsPortInspector()
        return LsofPortInspector()
    return LsofPortInspector()
