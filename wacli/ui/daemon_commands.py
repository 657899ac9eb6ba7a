"""
Daemon Management Commands

``wa daemon start|stop|status``. Each flow ends with exactly one outcome
line and maps success/failure onto exit codes 0/1.
This module is lazy-loaded only when daemon commands are used.
"""

import asyncio
import logging
import subprocess
import sys
import time
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.table import Table

from wacli.core.configs import Settings
from wacli.core.errors import BootTimeoutError, StaleStateError, WacliError
from wacli.daemon.client import probe_daemon, send_stop, try_connect_daemon
from wacli.daemon.server import EXIT_LOCK_HELD
from wacli.daemon.state import DaemonDescriptor, StateStore
from wacli.ui.output import UIManager

logger = logging.getLogger(__name__)

console = Console()

STOP_POLL_INTERVAL = 0.4
STOP_WAIT = 8.0


def handle_daemon(action: str, settings: Settings) -> int:
    """
    Route to the requested daemon action.

    Args:
        action: One of 'start', 'stop' or 'status'

    Returns:
        Process exit code
    """
    actions = {
        "start": start_command,
        "stop": stop_command,
        "status": status_command,
    }

    if action not in actions:
        UIManager().error(f"Unknown action: {action}. Available actions: start, stop, status")
        return 1

    return actions[action](settings)


# ============================================================================
# start
# ============================================================================

def spawn_daemon(settings: Settings) -> subprocess.Popen:
    """
    Launch the daemon as a detached process.

    It gets its own session so it outlives this CLI invocation; its output
    is appended to the daemon log.
    """
    log_path = settings.daemon_log_file
    log_path.parent.mkdir(parents=True, exist_ok=True)

    with open(log_path, "a") as log_file:
        return subprocess.Popen(
            [sys.executable, "-m", "wacli.daemon.server"],
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
            close_fds=True,
        )


def _last_log_line(settings: Settings) -> str:
    try:
        lines = settings.daemon_log_file.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    for line in reversed(lines.splitlines()):
        if line.strip():
            return line.strip()
    return ""


async def start_daemon(settings: Settings) -> DaemonDescriptor:
    """
    Make sure a daemon is running and return its descriptor.

    Polls every ``poll_interval`` seconds for up to ``start_timeout``
    (longer than the daemon's own boot timeout, so the daemon's failure is
    normally what gets reported). If the spawned daemon lost the start race
    to a concurrent one, the winner is awaited instead.

    Raises:
        WacliError: The daemon exited during startup
        BootTimeoutError: The daemon never became reachable
    """
    store = StateStore(settings.state_file)

    existing = await try_connect_daemon(store, probe_timeout=settings.probe_timeout)
    if existing is not None and existing.descriptor is not None:
        return existing.descriptor

    process = spawn_daemon(settings)
    logger.info(f"Spawned daemon process {process.pid}")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.start_timeout
    lost_race = False

    while True:
        await asyncio.sleep(settings.poll_interval)

        ipc = await try_connect_daemon(store, probe_timeout=settings.probe_timeout)
        if ipc is not None and ipc.descriptor is not None:
            return ipc.descriptor

        exit_code = process.poll()
        if exit_code == EXIT_LOCK_HELD:
            # A concurrent start won the lock; wait for that daemon instead.
            if not lost_race:
                logger.info("Another daemon is starting; waiting for it")
                lost_race = True
        elif exit_code not in (None, 0):
            detail = _last_log_line(settings) or f"exit status {exit_code}"
            raise WacliError(f"Daemon failed to start: {detail}")

        if loop.time() > deadline:
            raise BootTimeoutError(
                f"Daemon did not become ready within {settings.start_timeout:g} s",
                timeout=settings.start_timeout,
            )


def start_command(settings: Settings) -> int:
    ui = UIManager()
    ui.dim("Starting daemon… (waiting for WhatsApp session)")
    try:
        descriptor = asyncio.run(start_daemon(settings))
    except (WacliError, OSError) as e:
        ui.error(str(e))
        return 1

    ui.success(
        f"Daemon is running – pid {descriptor.pid}, port {descriptor.port}"
        "  (stop with: wa daemon stop)"
    )
    return 0


# ============================================================================
# stop
# ============================================================================

async def stop_daemon(settings: Settings) -> str:
    """
    Stop the running daemon.

    Returns:
        Human-readable outcome line
    """
    store = StateStore(settings.state_file)

    descriptor = store.read()
    if descriptor is None:
        return "Daemon is not running."

    try:
        ipc = await probe_daemon(store, probe_timeout=settings.probe_timeout)
    except StaleStateError as e:
        logger.info(f"Removing stale daemon state: {e}")
        store.remove()
        return "Daemon was not running (cleaned up stale state file)."

    if ipc is None:
        return "Daemon is not running."

    await send_stop(descriptor.port, descriptor.token)

    # The daemon removes its descriptor as the last step of shutdown.
    deadline = time.monotonic() + STOP_WAIT
    while time.monotonic() < deadline:
        await asyncio.sleep(STOP_POLL_INTERVAL)
        if not store.exists():
            break
    else:
        logger.warning(f"Daemon (pid {descriptor.pid}) still has a state file after {STOP_WAIT:g} s")

    return f"Daemon (pid {descriptor.pid}) stopped."


def stop_command(settings: Settings) -> int:
    ui = UIManager()
    try:
        message = asyncio.run(stop_daemon(settings))
    except (WacliError, OSError) as e:
        ui.error(str(e))
        return 1

    ui.success(message)
    return 0


# ============================================================================
# status
# ============================================================================

async def daemon_status(settings: Settings) -> Optional[DaemonDescriptor]:
    """
    Descriptor of the live daemon, or None.

    A stale descriptor found on the way is removed.
    """
    store = StateStore(settings.state_file)
    try:
        ipc = await probe_daemon(store, probe_timeout=settings.probe_timeout)
    except StaleStateError as e:
        logger.info(f"Removing stale daemon state: {e}")
        store.remove()
        return None

    if ipc is None:
        return None
    return ipc.descriptor


def _format_started(started_at: str) -> str:
    try:
        return datetime.fromisoformat(started_at).astimezone().strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return started_at


def status_command(settings: Settings) -> int:
    ui = UIManager()
    try:
        descriptor = asyncio.run(daemon_status(settings))
    except (WacliError, OSError) as e:
        ui.error(str(e))
        return 1

    if descriptor is None:
        console.print("[yellow]● Daemon is not running[/yellow]")
        console.print("[dim]  Start it with:  wa daemon start[/dim]")
        return 0

    table = Table(title="[green]● Daemon is running[/green]", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("PID", str(descriptor.pid))
    table.add_row("Port", str(descriptor.port))
    table.add_row("Started", _format_started(descriptor.started_at))
    table.add_row("Stop with", "wa daemon stop")
    console.print(table)
    return 0
