"""Tests for the generated q startup script."""

import unittest

from kdbguard.supervisor.startup_script import generate_startup_script


class StartupScriptTests(unittest.TestCase):
    """The script must bind the port and never let a bad query kill the server."""

    def test_binds_requested_port_and_confirms(self) -> None:
        script = generate_startup_script(5555)
        self.assertIn("\\p 5555\n", script)
        self.assertIn('0N!"[OK] kdb+ WebSocket server listening on port 5555";', script)

    def test_installs_connection_hooks(self) -> None:
        script = generate_startup_script(6000)
        self.assertIn('.z.wo:{[x] 0N!"[INFO] WebSocket opened: ",string x}', script)
        self.assertIn('.z.wc:{[x] 0N!"[INFO] WebSocket closed: ",string x}', script)

    def test_message_handler_uses_protected_evaluation(self) -> None:
        script = generate_startup_script(6000)
        self.assertIn(".z.ws:{[x]", script)
        self.assertIn("result:@[value;x;{[e]", script)
        self.assertIn("`error`msg!(`ExecutionError;e)", script)
        self.assertIn("neg[.z.w] .j.j result;", script)

    def test_handlers_are_installed_before_port_opens(self) -> None:
        script = generate_startup_script(5555)
        self.assertLess(script.index(".z.ws:"), script.index("\\p 5555"))

    def test_rejects_out_of_range_port(self) -> None:
        with self.assertRaises(ValueError):
            generate_startup_script(0)
        with self.assertRaises(ValueError):
            generate_startup_script(70000)


if __name__ == "__main__":
    unittest.main()
