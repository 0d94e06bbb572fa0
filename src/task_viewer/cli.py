"""
Command line entry point for the Shrimp Task Viewer.

Starts the FastAPI dashboard under uvicorn, resolving a free port when the
requested one is taken and opening the browser once the server accepts
connections.
"""

import logging
import multiprocessing
import os
import socket
import sys
import threading
import time
import webbrowser
from pathlib import Path
from typing import Tuple

import click
import uvicorn

from .profiles import ProfileError, ProfileRegistry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 9998
DEFAULT_HOST = "127.0.0.1"
DEFAULT_SETTINGS_FILE = "~/.shrimp-task-viewer-settings.json"
DEFAULT_GLOBAL_SETTINGS_FILE = "~/.shrimp-task-viewer-global-settings.json"


class PortConflictError(Exception):
    """No usable port could be found for the dashboard."""


def check_port_available(host: str, port: int) -> bool:
    """Return True if `port` can be bound on `host`."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(start_port: int, host: str = DEFAULT_HOST, max_attempts: int = 20) -> int:
    """
    First bindable port at or above `start_port`.

    Raises:
        PortConflictError: If none of the next `max_attempts` ports is free
    """
    for port in range(start_port, min(start_port + max_attempts, 65536)):
        if check_port_available(host, port):
            return port
    raise PortConflictError(f"No available port in range {start_port}-{start_port + max_attempts - 1}")


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Poll until the server accepts TCP connections or `timeout` passes."""
    connect_host = "127.0.0.1" if host in ("0.0.0.0", "") else host
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            with socket.create_connection((connect_host, port), timeout=0.5):
                return True
        except OSError:
            time.sleep(0.1)
    return False


def _open_browser(url: str) -> None:
    webbrowser.open(url)


def launch_browser_safely(url: str) -> None:
    """
    Open the dashboard in a child process so a hanging browser launcher
    cannot block the server. Failures are logged, never raised.
    """
    try:
        process = multiprocessing.Process(target=_open_browser, args=(url,), daemon=True)
        process.start()
        process.join(timeout=2.0)
        if process.is_alive():
            process.terminate()
            logger.debug("Browser launch process timed out, terminated")
            return
        logger.info(f"Browser launched for {url}")
    except Exception as e:
        logger.warning(f"Failed to launch browser: {e}")


def print_startup_banner(host: str, port: int, settings_path: str, project_count: int) -> None:
    url = f"http://{host}:{port}"
    print("=" * 60)
    print("SHRIMP TASK VIEWER STARTED")
    print("=" * 60)
    print(f"Dashboard:  {url}")
    print(f"Health:     {url}/healthz")
    print(f"Settings:   {settings_path}")
    print(f"Projects:   {project_count}")
    print("Press Ctrl+C to stop")
    print("=" * 60)


def parse_project_option(value: str) -> Tuple[str, str]:
    """Split a `NAME=PATH` project option."""
    name, sep, path = value.partition("=")
    if not sep or not name.strip() or not path.strip():
        raise click.BadParameter(f"expected NAME=PATH, got {value!r}", param_hint="--project")
    return name.strip(), str(Path(path.strip()).expanduser().resolve())


@click.command()
@click.option("--port", type=int, default=lambda: int(os.getenv("SHRIMP_VIEWER_PORT", DEFAULT_PORT)),
              show_default=str(DEFAULT_PORT), help="Dashboard port")
@click.option("--host", default=lambda: os.getenv("SHRIMP_VIEWER_HOST", DEFAULT_HOST),
              show_default=DEFAULT_HOST, help="Interface to bind")
@click.option("--settings", "settings_path",
              default=lambda: os.getenv("SHRIMP_VIEWER_SETTINGS", DEFAULT_SETTINGS_FILE),
              show_default=DEFAULT_SETTINGS_FILE, help="Project settings file")
@click.option("--global-settings", "global_settings_path",
              default=lambda: os.getenv("SHRIMP_VIEWER_GLOBAL_SETTINGS", DEFAULT_GLOBAL_SETTINGS_FILE),
              show_default=DEFAULT_GLOBAL_SETTINGS_FILE, help="Global settings file")
@click.option("--project", "projects", multiple=True, metavar="NAME=PATH",
              help="Register a project task file before starting (repeatable)")
@click.option("--no-browser", is_flag=True, help="Do not open the dashboard in a browser")
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def main(
    port: int,
    host: str,
    settings_path: str,
    global_settings_path: str,
    projects: Tuple[str, ...],
    no_browser: bool,
    verbose: bool,
) -> None:
    """Serve the Shrimp Task Viewer dashboard."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    parsed = [parse_project_option(value) for value in projects]

    try:
        registry = ProfileRegistry(settings_path, global_settings_path)
        for name, path in parsed:
            profile = registry.add(name, path)
            click.echo(f"Registered project '{profile.id}' -> {path}")
    except ProfileError as e:
        click.echo(f"Failed to update settings: {e}", err=True)
        sys.exit(1)

    if not check_port_available(host, port):
        click.echo(f"Port {port} is in use, looking for an alternative...")
        try:
            port = find_available_port(port + 1, host)
        except PortConflictError as e:
            click.echo(f"Port conflict: {e}", err=True)
            sys.exit(1)

    # The app reads its configuration from the environment at startup
    os.environ["SHRIMP_VIEWER_SETTINGS"] = settings_path
    os.environ["SHRIMP_VIEWER_GLOBAL_SETTINGS"] = global_settings_path

    print_startup_banner(host, port, str(registry.settings_path), len(registry.list()))

    if not no_browser:
        url = f"http://{'127.0.0.1' if host == '0.0.0.0' else host}:{port}"
        threading.Thread(target=_launch_when_ready, args=(host, port, url), daemon=True).start()

    uvicorn.run(
        "task_viewer.api:app",
        host=host,
        port=port,
        log_level="debug" if verbose else "info",
    )


def _launch_when_ready(host: str, port: int, url: str, timeout: float = 10.0) -> None:
    if wait_for_server_ready(host, port, timeout=timeout):
        launch_browser_safely(url)
    else:
        logger.warning(f"Server did not become ready in {timeout}s, not opening browser")


if __name__ == "__main__":
    main()
