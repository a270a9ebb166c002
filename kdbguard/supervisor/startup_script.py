"""q startup script for the managed kdb+ WebSocket server."""

from __future__ import annotations

STARTUP_CONFIRMATION = "[OK] kdb+ WebSocket server listening on port {port}"

_SCRIPT_TEMPLATE = """\
/ WebSocket handlers installed by kdbguard
.z.wo:{{[x] 0N!"[INFO] WebSocket opened: ",string x}}
.z.wc:{{[x] 0N!"[INFO] WebSocket closed: ",string x}}
.z.ws:{{[x]
  0N!"[QUERY] Received: ",x;
  / evaluate under protection so a bad query cannot take the server down
  result:@[value;x;{{[e] 0N!"[ERROR] ",e; `error`msg!(`ExecutionError;e)}}];
  neg[.z.w] .j.j result;
 }}

/ listening port
\\p {port}

0N!"{confirmation}";
"""


def generate_startup_script(port: int) -> str:
    """Return the q init script binding `port` with the safe-eval message handler."""
    if not 1 <= int(port) <= 65535:
        raise ValueError(f"port must be between 1 and 65535, got {port}")
    return _SCRIPT_TEMPLATE.format(
        port=int(port),
        confirmation=STARTUP_CONFIRMATION.format(port=int(port)),
    )
