import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn

from kdbguard.config import LOG_PATH, load_settings, validate_settings
from kdbguard.supervisor.app import create_app
from kdbguard.supervisor.kdb_supervisor import KdbSupervisor
from kdbguard.supervisor.port_inspector import select_port_inspector

app = typer.Typer(help="Keep exactly one kdb+ server bound to its port.")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
REQUEST_TIMEOUT_SECONDS = 30.0


def configure_logging(log_file: Optional[Path], verbose: bool = False) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
    )


def _build_settings(
    kdb_port: Optional[int] = None,
    executable: Optional[str] = None,
    api_port: Optional[int] = None,
) -> dict:
    try:
        settings = load_settings()
        if kdb_port is not None:
            settings["kdb_port"] = kdb_port
        if executable:
            settings["executable"] = executable
        if api_port is not None:
            settings["api_port"] = api_port
        return validate_settings(settings)
    except ValueError as exc:
        typer.echo(f"Invalid settings: {exc}")
        raise typer.Exit(code=2)


def _api_url(api_port: Optional[int]) -> str:
    settings = _build_settings(api_port=api_port)
    return f"http://{settings['api_host']}:{settings['api_port']}"


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("message", detail))
    return str(detail or payload)


def _call_api(method: str, path: str, api_port: Optional[int]) -> dict:
    """Send one request to a running `kdbguard serve`; exit 1 on any failure."""
    url = f"{_api_url(api_port)}{path}"
    try:
        response = httpx.request(method, url, timeout=REQUEST_TIMEOUT_SECONDS)
    except (httpx.ConnectError, httpx.TimeoutException):
        typer.echo("kdbguard is not running (API unreachable). Start it with `kdbguard serve`.")
        raise typer.Exit(code=1)
    if response.status_code != 200:
        typer.echo(f"Error: {_error_text(response)}")
        raise typer.Exit(code=1)
    return response.json()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="API host"),
    api_port: Optional[int] = typer.Option(None, "--api-port", help="API port"),
    kdb_port: Optional[int] = typer.Option(None, "--kdb-port", help="Port kdb+ must own"),
    executable: Optional[str] = typer.Option(None, "--executable", help="kdb+ executable name"),
    log_file: Path = typer.Option(LOG_PATH, "--log-file", help="Log file path"),
    force_start: bool = typer.Option(True, "--force-start/--no-force-start"),
    verbose: bool = typer.Option(False, "--verbose"),
):
    """Run the supervisor API; force starts kdb+ and stops it on exit."""
    configure_logging(log_file, verbose=verbose)
    settings = _build_settings(kdb_port=kdb_port, executable=executable, api_port=api_port)
    supervisor = KdbSupervisor.from_settings(settings)
    api = create_app(supervisor, force_start_on_startup=force_start)
    uvicorn.run(
        api,
        host=host or settings["api_host"],
        port=settings["api_port"],
        log_config=None,
    )


@app.command()
def start(api_port: Optional[int] = typer.Option(None, "--api-port")):
    """Start kdb+ through the running supervisor."""
    payload = _call_api("POST", "/kdb/start", api_port)
    typer.echo(f"kdb+ started (PID: {payload.get('pid')})")


@app.command()
def stop(api_port: Optional[int] = typer.Option(None, "--api-port")):
    """Stop the kdb+ process owned by the supervisor."""
    _call_api("POST", "/kdb/stop", api_port)
    typer.echo("kdb+ stopped")


@app.command()
def restart(api_port: Optional[int] = typer.Option(None, "--api-port")):
    """Restart the kdb+ process owned by the supervisor."""
    payload = _call_api("POST", "/kdb/restart", api_port)
    typer.echo(f"kdb+ restarted (PID: {payload.get('pid')})")


@app.command()
def status(
    api_port: Optional[int] = typer.Option(None, "--api-port"),
    json_output: bool = typer.Option(False, "--json", help="Print full status payload"),
):
    """Show whether kdb+ is running."""
    payload = _call_api("GET", "/kdb/status", api_port)
    if json_output:
        typer.echo(json.dumps(payload, indent=2))
        return
    typer.echo(f"kdb+: {str(payload.get('status', 'unknown')).upper()}")
    typer.echo(f"  port: {payload.get('port')}")
    typer.echo(f"  state: {payload.get('state')}")
    if payload.get("pid"):
        typer.echo(f"  pid: {payload['pid']}")


@app.command()
def port(api_port: Optional[int] = typer.Option(None, "--api-port")):
    """Print the port kdb+ is supervised on."""
    payload = _call_api("GET", "/kdb/port", api_port)
    typer.echo(str(payload.get("port")))


@app.command("test-connection")
def test_connection(api_port: Optional[int] = typer.Option(None, "--api-port")):
    """Print the advisory WebSocket address of the running kdb+."""
    payload = _call_api("GET", "/kdb/connection", api_port)
    typer.echo(payload.get("message", ""))


@app.command("check-install")
def check_install(
    executable: Optional[str] = typer.Option(None, "--executable", help="kdb+ executable name"),
):
    """Verify the kdb+ executable resolves and evaluates a trivial expression."""
    settings = _build_settings(executable=executable)
    supervisor = KdbSupervisor.from_settings(settings)
    message = asyncio.run(supervisor.check_installation())
    typer.echo(message)
    if message.startswith("ERROR"):
        raise typer.Exit(code=1)


@app.command("inspect-port")
def inspect_port(port_number: int = typer.Argument(..., help="TCP port to inspect")):
    """Report whether a port is listening and which PID owns it."""
    inspector = select_port_inspector()
    binding = asyncio.run(inspector.inspect(port_number))
    if not binding.occupied:
        typer.echo(f"Port {port_number}: FREE")
        return
    owner = binding.owner_pid if binding.owner_pid is not None else "unknown"
    typer.echo(f"Port {port_number}: LISTENING (PID: {owner})")


if __name__ == "__main__":
    app()
