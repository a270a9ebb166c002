"""Tests for connection-table parsing and degraded port inspection."""

import subprocess
import unittest

from kdbguard.errors import PortInspectionError
from kdbguard.supervisor.port_inspector import (
    LsofPortInspector,
    NetstatPortInspector,
    PortInspector,
    SsPortInspector,
    select_port_inspector,
)

NETSTAT_SAMPLE = """
Active Connections

  Proto  Local Address          Foreign Address        State           PID
  TCP    0.0.0.0:135            0.0.0.0:0              LISTENING       1012
  TCP    127.0.0.1:55550        0.0.0.0:0              LISTENING       77
  TCP    127.0.0.1:5555         127.0.0.1:50123        ESTABLISHED     4242
  TCP    0.0.0.0:5555           0.0.0.0:0              LISTENING       4242
  TCP    [::]:5555              [::]:0                 LISTENING       4242
  UDP    0.0.0.0:5555           *:*                                    999
"""

SS_SAMPLE = """\
LISTEN 0      4096         0.0.0.0:5555      0.0.0.0:*    users:(("q",pid=4242,fd=3))
LISTEN 0      128        127.0.0.1:631       0.0.0.0:*
LISTEN 0      4096            [::]:55550        [::]:*    users:(("python3",pid=88,fd=4))
LISTEN 0      511                *:80              *:*
"""

LSOF_SAMPLE = """\
COMMAND   PID  USER   FD   TYPE             DEVICE SIZE/OFF NODE NAME
rapportd  512 alice    4u  IPv6 0xabcdef0123456789      0t0  TCP [::1]:55550 (LISTEN)
q        4242 alice    3u  IPv4 0x1234567890abcdef      0t0  TCP *:5555 (LISTEN)
"""


class _FakeRunInspector(SsPortInspector):
    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls = 0

    async def _run_command(self, args: list[str]) -> subprocess.CompletedProcess:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class ParserTests(unittest.TestCase):
    """Validate each OS scanner against captured sample output."""

    def test_netstat_keeps_only_tcp_listening_rows(self) -> None:
        listeners = NetstatPortInspector().parse_output(NETSTAT_SAMPLE)
        self.assertEqual([l.port for l in listeners], [135, 55550, 5555, 5555])
        self.assertEqual(listeners[2].pid, 4242)
        self.assertEqual(listeners[3].local_address, "[::]:5555")

    def test_ss_extracts_pid_when_process_column_present(self) -> None:
        listeners = SsPortInspector().parse_output(SS_SAMPLE)
        by_port = {l.port: l.pid for l in listeners}
        self.assertEqual(by_port, {5555: 4242, 631: None, 55550: 88, 80: None})

    def test_lsof_skips_header_and_reads_pid(self) -> None:
        listeners = LsofPortInspector().parse_output(LSOF_SAMPLE)
        self.assertEqual([(l.port, l.pid) for l in listeners], [(55550, 512), (5555, 4242)])

    def test_lsof_no_match_exit_code_is_not_failure(self) -> None:
        inspector = LsofPortInspector()
        empty = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="")
        self.assertTrue(inspector._scan_succeeded(empty))
        warnings_only = subprocess.CompletedProcess(
            args=[], returncode=1, stdout="", stderr="lsof: WARNING: can't stat() fuse"
        )
        self.assertTrue(inspector._scan_succeeded(warnings_only))
        broken = subprocess.CompletedProcess(args=[], returncode=2, stdout="x", stderr="")
        self.assertFalse(inspector._scan_succeeded(broken))


class SelectInspectorTests(unittest.TestCase):
    """Ensure the scanner matches the host platform."""

    def test_windows_uses_netstat(self) -> None:
        inspector = select_port_inspector("win32")
        self.assertIsInstance(inspector, NetstatPortInspector)
        self.assertEqual(inspector.command(), ["netstat", "-ano", "-p", "TCP"])

    def test_linux_prefers_ss(self) -> None:
        inspector = select_port_inspector("linux", which=lambda name: f"/usr/bin/{name}")
        self.assertIsInstance(inspector, SsPortInspector)

    def test_linux_falls_back_to_lsof_without_ss(self) -> None:
        which = lambda name: "/usr/sbin/lsof" if name == "lsof" else None
        self.assertIsInstance(select_port_inspector("linux", which=which), LsofPortInspector)

    def test_darwin_uses_lsof(self) -> None:
        self.assertIsInstance(select_port_inspector("darwin"), LsofPortInspector)

    def test_base_inspector_is_abstract(self) -> None:
        with self.assertRaises(NotImplementedError):
            PortInspector().command()


class InspectionTests(unittest.IsolatedAsyncioTestCase):
    """Validate exact port matching and degraded behavior."""

    def _ok(self, stdout: str) -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr="")

    async def test_port_match_is_exact(self) -> None:
        inspector = _FakeRunInspector(self._ok(SS_SAMPLE))
        self.assertTrue(await inspector.is_port_listening(5555))
        self.assertFalse(await inspector.is_port_listening(555))
        self.assertFalse(await inspector.is_port_listening(55))

    async def test_inspect_reports_owner(self) -> None:
        inspector = _FakeRunInspector(self._ok(SS_SAMPLE))
        binding = await inspector.inspect(5555)
        self.assertTrue(binding.occupied)
        self.assertEqual(binding.owner_pid, 4242)

    async def test_owner_unknown_when_pid_hidden(self) -> None:
        inspector = _FakeRunInspector(self._ok(SS_SAMPLE))
        self.assertTrue(await inspector.is_port_listening(631))
        self.assertIsNone(await inspector.find_owning_pid(631))

    async def test_missing_tool_degrades_to_not_listening(self) -> None:
        inspector = _FakeRunInspector(error=FileNotFoundError("ss"))
        with self.assertLogs("kdbguard.supervisor.port_inspector", level="WARNING"):
            self.assertFalse(await inspector.is_port_listening(5555))

    async def test_nonzero_exit_degrades_to_not_listening(self) -> None:
        failed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="denied")
        inspector = _FakeRunInspector(failed)
        binding = await inspector.inspect(5555)
        self.assertFalse(binding.occupied)

    async def test_find_owning_pid_raises_on_scan_failure(self) -> None:
        inspector = _FakeRunInspector(error=subprocess.TimeoutExpired(cmd="ss", timeout=10))
        with self.assertRaises(PortInspectionError):
            await inspector.find_owning_pid(5555)

    async def test_every_query_rescans(self) -> None:
        inspector = _FakeRunInspector(self._ok(SS_SAMPLE))
        await inspector.is_port_listening(5555)
        await inspector.find_owning_pid(5555)
        self.assertEqual(inspector.calls, 2)


if __name__ == "__main__":
    unittest.main()
