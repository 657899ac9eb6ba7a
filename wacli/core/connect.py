"""Pick a session handle for one CLI invocation.

Fast path: a daemon is running (``wa daemon start``), so the command gets
an IPC proxy in a few milliseconds.

Slow path: no daemon answers, so a private in-process session is booted
and awaited (up to the boot timeout, 90 s by default).
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, Union

from wacli.core.configs import Settings
from wacli.core.session import Session, load_session_factory, wait_until_ready
from wacli.daemon.client import IpcClient, try_connect_daemon
from wacli.daemon.state import StateStore

logger = logging.getLogger(__name__)

# Either a live session or a proxy to the daemon; both expose the same calls.
ClientHandle = Union[Session, IpcClient]


async def connect(
    settings: Settings,
    session_factory: Optional[Callable[[], Any]] = None,
) -> ClientHandle:
    """
    Return a ready-to-use handle.

    The caller owns the result and must ``destroy()`` it; prefer
    ``connect_client`` which does that on every exit path.

    Raises:
        NotLoggedInError: The session asked for a QR scan
        BootTimeoutError: The session never became ready
        SessionError: The session reported an error while booting
        ConfigError: No daemon and no usable session backend
    """
    daemon = await try_connect_daemon(
        StateStore(settings.state_file),
        probe_timeout=settings.probe_timeout,
        call_timeout=settings.call_timeout,
        slow_call_timeout=settings.slow_call_timeout,
    )
    if daemon is not None:
        logger.debug(f"Using daemon on port {daemon.port}")
        return daemon

    logger.info("No daemon reachable; booting a private session")
    factory = session_factory or load_session_factory(settings)
    session = factory()

    try:
        await wait_until_ready(session, timeout=settings.boot_timeout)
    except BaseException:
        await _destroy_quietly(session)
        raise

    return session


@asynccontextmanager
async def connect_client(
    settings: Settings,
    session_factory: Optional[Callable[[], Any]] = None,
) -> AsyncIterator[ClientHandle]:
    """Scoped ``connect()``: the handle is destroyed however the block exits."""
    client = await connect(settings, session_factory)
    try:
        yield client
    finally:
        await _destroy_quietly(client)


async def _destroy_quietly(client: Any) -> None:
    try:
        await client.destroy()
    except Exception as e:
        logger.warning(f"Error destroying session: {e}")
