"""Tests for forced termination by PID."""

import signal
import subprocess
import unittest
from unittest import mock

from kdbguard.errors import TerminationError
from kdbguard.supervisor.terminator import ProcessTerminator


class _RecordingTerminator(ProcessTerminator):
    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        super().__init__(platform_name="win32")
        self.returncode = returncode
        self.stderr = stderr
        self.commands: list[list[str]] = []

    async def _run_command(self, args: list[str]) -> subprocess.CompletedProcess:
        self.commands.append(args)
        return subprocess.CompletedProcess(
            args=args, returncode=self.returncode, stdout="", stderr=self.stderr
        )


@unittest.skipIf(not hasattr(signal, "SIGKILL"), "POSIX only")
class PosixTerminatorTests(unittest.IsolatedAsyncioTestCase):
    """POSIX path sends SIGKILL directly."""

    async def test_sends_sigkill(self) -> None:
        with mock.patch("kdbguard.supervisor.terminator.os.kill") as kill:
            await ProcessTerminator(platform_name="linux").terminate(4242)
        kill.assert_called_once_with(4242, signal.SIGKILL)

    async def test_missing_process_fails(self) -> None:
        with mock.patch(
            "kdbguard.supervisor.terminator.os.kill", side_effect=ProcessLookupError()
        ):
            with self.assertRaises(TerminationError) as ctx:
                await ProcessTerminator(platform_name="linux").terminate(4242)
        self.assertEqual(ctx.exception.pid, 4242)
        self.assertEqual(ctx.exception.error_code, "TERMINATION_FAILED")

    async def test_permission_denied_fails(self) -> None:
        with mock.patch("kdbguard.supervisor.terminator.os.kill", side_effect=PermissionError()):
            with self.assertRaises(TerminationError) as ctx:
                await ProcessTerminator(platform_name="linux").terminate(1)
        self.assertIn("permission denied", str(ctx.exception))


class WindowsTerminatorTests(unittest.IsolatedAsyncioTestCase):
    """Windows path shells out to taskkill /F."""

    async def test_runs_taskkill_force(self) -> None:
        terminator = _RecordingTerminator()
        await terminator.terminate(4242)
        self.assertEqual(terminator.commands, [["taskkill", "/F", "/PID", "4242"]])

    async def test_taskkill_failure_raises(self) -> None:
        terminator = _RecordingTerminator(returncode=128, stderr="ERROR: process not found")
        with self.assertRaises(TerminationError) as ctx:
            await terminator.terminate(4242)
        self.assertIn("process not found", str(ctx.exception))


class InvalidPidTests(unittest.IsolatedAsyncioTestCase):
    async def test_rejects_non_positive_pid_without_os_call(self) -> None:
        with mock.patch("kdbguard.supervisor.terminator.os.kill") as kill:
            with self.assertRaises(TerminationError):
                await ProcessTerminator(platform_name="linux").terminate(0)
        kill.assert_not_called()


if __name__ == "__main__":
    unittest.main()
