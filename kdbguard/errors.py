"""Supervisor exception hierarchy with stable error codes."""

from __future__ import annotations


class SupervisorError(Exception):
    """Base error type for all kdb+ supervision failures."""

    error_code = "SUPERVISOR_ERROR"


class ExecutableNotFoundError(SupervisorError):
    """Managed executable could not be resolved on PATH."""

    error_code = "EXECUTABLE_NOT_FOUND"

    def __init__(self, executable: str):
        super().__init__(
            f"'{executable}' executable not found in PATH. "
            "Please install kdb+ and add it to your PATH."
        )
        self.executable = executable


class ScriptWriteError(SupervisorError):
    """Startup script could not be written to the temp directory."""

    error_code = "SCRIPT_WRITE_FAILED"


class SpawnError(SupervisorError):
    """OS refused to spawn the managed process."""

    error_code = "SPAWN_FAILED"


class ProcessExitedUnexpectedlyError(SupervisorError):
    """Managed process exited inside the launch window and the port stayed free."""

    error_code = "PROCESS_EXITED_UNEXPECTEDLY"

    def __init__(self, returncode: int | None):
        super().__init__(
            "kdb+ process exited unexpectedly "
            f"(exit code {returncode}). Check logs for details."
        )
        self.returncode = returncode


class TerminationError(SupervisorError):
    """Forced termination of a process failed."""

    error_code = "TERMINATION_FAILED"

    def __init__(self, pid: int, reason: str):
        super().__init__(f"failed to kill process {pid}: {reason}")
        self.pid = pid


class AlreadyRunningError(SupervisorError):
    """Start requested while the port is already served."""

    error_code = "ALREADY_RUNNING"

    def __init__(self, message: str = "kdb+ is already running"):
        super().__init__(message)


class PortStillOccupiedError(SupervisorError):
    """Port is listening but its owner could not be evicted."""

    error_code = "PORT_STILL_OCCUPIED"

    def __init__(self, port: int, reason: str = ""):
        message = f"no process found listening on port {port}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.port = port


class PortInspectionError(SupervisorError):
    """OS connection table could not be read."""

    error_code = "INSPECTION_DEGRADED"


class SupervisorStepError(SupervisorError):
    """Failure of one supervisor step, wrapped with operation and phase."""

    def __init__(self, operation: str, phase: str, cause: Exception):
        super().__init__(f"failed to {operation} kdb+ ({phase}): {cause}")
        self.operation = operation
        self.phase = phase
        self.cause = cause

    @property
    def error_code(self) -> str:  # type: ignore[override]
        return getattr(self.cause, "error_code", SupervisorError.error_code)

    def root_cause(self) -> Exception:
        """Return the innermost wrapped exception."""
        cause: Exception = self.cause
        while isinstance(cause, SupervisorStepError):
            cause = cause.cause
        return cause


def failure_payload(error: Exception) -> dict[str, str]:
    """Render an exception as the API error body."""
    root = error.root_cause() if isinstance(error, SupervisorStepError) else error
    return {
        "error_code": getattr(error, "error_code", SupervisorError.error_code),
        "error_class": type(root).__name__,
        "phase": getattr(error, "phase", ""),
        "message": str(error),
    }
