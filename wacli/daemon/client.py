"""Lightweight client for daemon communication.

This module provides a proxy that forwards session calls to the daemon over
loopback TCP. Each call opens its own connection, sends one request line,
waits for the response carrying the same id and closes the connection.

Usage:
    ipc = await try_connect_daemon(StateStore(settings.state_file))
    if ipc is not None:
        threads = await ipc.get_threads()
    else:
        # Fall back to an in-process session
        ...
"""

import asyncio
import logging
import re
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional

from wacli.core.errors import IpcError, ProtocolError, StaleStateError
from wacli.core.session import ConnectionStatus
from wacli.daemon.protocol import (
    SLOW_METHODS,
    LineBuffer,
    deserialize_response,
    serialize_request,
)
from wacli.daemon.state import DaemonDescriptor, StateStore

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

DEFAULT_CALL_TIMEOUT = 30.0
DEFAULT_SLOW_CALL_TIMEOUT = 60.0
DEFAULT_PROBE_TIMEOUT = 1.5

READ_CHUNK = 65536

ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")


def revive_dates(value: Any) -> Any:
    """
    Turn ISO-8601 date-time strings back into datetime objects.

    Recurses through lists and dicts; strings that don't look like a
    date-time (or fail to parse) are returned untouched.
    """
    if isinstance(value, str):
        if not ISO_RE.match(value):
            return value
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return value

    if isinstance(value, list):
        return [revive_dates(item) for item in value]

    if isinstance(value, dict):
        return {key: revive_dates(item) for key, item in value.items()}

    return value


async def _exchange(
    host: str,
    port: int,
    token: str,
    method: str,
    params: Optional[Dict[str, Any]],
) -> Any:
    request_id = secrets.token_hex(6)
    reader, writer = await asyncio.open_connection(host, port)

    try:
        writer.write(serialize_request(request_id, method, token, params))
        await writer.drain()

        buffer = LineBuffer()
        while True:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                raise IpcError(method, f'Socket closed before response for "{method}"')

            for line in buffer.feed(chunk):
                try:
                    response = deserialize_response(line)
                except ProtocolError:
                    continue
                # Not ours; discard.
                if response.get("id") != request_id:
                    continue
                if response.get("error") is not None:
                    raise IpcError(method, str(response["error"]))
                return revive_dates(response.get("result"))
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def call_port(
    port: int,
    token: str,
    method: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = DEFAULT_CALL_TIMEOUT,
    host: str = LOOPBACK_HOST,
) -> Any:
    """
    Perform one RPC call on a fresh connection.

    Raises:
        IpcError: On timeout, early close, connection failure or error reply
    """
    try:
        return await asyncio.wait_for(
            _exchange(host, port, token, method, params), timeout
        )
    except asyncio.TimeoutError:
        raise IpcError(
            method, f'IPC call "{method}" timed out after {int(timeout * 1000)} ms'
        ) from None
    except (ConnectionError, OSError) as e:
        raise IpcError(method, f'IPC call "{method}" failed: {e}') from e


class IpcClient:
    """
    Proxy with the session's call surface, backed by the running daemon.

    Commands use it exactly like a real session. Events are not forwarded.
    """

    def __init__(
        self,
        port: int,
        token: str,
        host: str = LOOPBACK_HOST,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        slow_call_timeout: float = DEFAULT_SLOW_CALL_TIMEOUT,
        descriptor: Optional[DaemonDescriptor] = None,
    ):
        self.port = port
        self.token = token
        self.host = host
        self.call_timeout = call_timeout
        self.slow_call_timeout = slow_call_timeout
        self.descriptor = descriptor

    @property
    def status(self) -> ConnectionStatus:
        # The daemon only publishes its descriptor once the session is ready.
        return ConnectionStatus.READY

    async def _rpc(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        if timeout is None:
            timeout = self.slow_call_timeout if method in SLOW_METHODS else self.call_timeout
        return await call_port(
            self.port, self.token, method, params, timeout=timeout, host=self.host
        )

    async def ping(self, timeout: Optional[float] = None) -> str:
        return await self._rpc("ping", timeout=timeout)

    async def get_status(self) -> str:
        return await self._rpc("getStatus")

    async def get_threads(self) -> List[Any]:
        return await self._rpc("getThreads")

    async def search_threads(self, query: str) -> List[Any]:
        return await self._rpc("searchThreads", {"query": query})

    async def find_chat_by_name(self, name: str) -> Optional[Any]:
        return await self._rpc("findChatByName", {"name": name})

    async def get_messages(self, chat_id: str, limit: Optional[int] = None) -> List[Any]:
        params: Dict[str, Any] = {"chatId": chat_id}
        if limit is not None:
            params["limit"] = limit
        return await self._rpc("getMessages", params)

    async def send_message(self, chat_id: str, text: str) -> None:
        await self._rpc("sendMessage", {"chatId": chat_id, "text": text})

    async def send_file(self, chat_id: str, file_path: str, caption: str = "") -> None:
        await self._rpc(
            "sendFile", {"chatId": chat_id, "filePath": file_path, "caption": caption}
        )

    async def reply_to_message(self, message_id: str, text: str) -> None:
        await self._rpc("replyToMessage", {"messageId": message_id, "text": text})

    async def mark_as_read(self, chat_id: str) -> None:
        """Not exposed over RPC; the daemon's session handles read receipts."""
        return None

    async def stop(self, timeout: Optional[float] = None) -> str:
        return await self._rpc("stop", timeout=timeout)

    async def destroy(self) -> None:
        """
        No-op: the daemon owns the real session and keeps it alive.
        The daemon is stopped only via ``wa daemon stop``.
        """
        return None


async def probe_daemon(
    store: StateStore,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    call_timeout: float = DEFAULT_CALL_TIMEOUT,
    slow_call_timeout: float = DEFAULT_SLOW_CALL_TIMEOUT,
) -> Optional[IpcClient]:
    """
    Liveness probe: ``ping`` the daemon named by the descriptor.

    Returns:
        An IpcClient bound to the live daemon, or None if no descriptor exists

    Raises:
        StaleStateError: A descriptor exists but nothing valid answers on its
            port (refused, timed out, or token rejected)
    """
    descriptor = store.read()
    if descriptor is None:
        return None

    ipc = IpcClient(
        descriptor.port,
        descriptor.token,
        call_timeout=call_timeout,
        slow_call_timeout=slow_call_timeout,
        descriptor=descriptor,
    )
    try:
        await ipc.ping(timeout=probe_timeout)
    except IpcError as e:
        raise StaleStateError(
            f"Daemon at port {descriptor.port} (pid {descriptor.pid}) is not reachable: {e}"
        ) from e
    return ipc


async def try_connect_daemon(
    store: StateStore,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    call_timeout: float = DEFAULT_CALL_TIMEOUT,
    slow_call_timeout: float = DEFAULT_SLOW_CALL_TIMEOUT,
) -> Optional[IpcClient]:
    """
    Return an IpcClient if a daemon answers ``ping``, else None.

    A missing descriptor, refused connection, timeout or token mismatch all
    mean "no daemon". Stale descriptors are left for the caller to remove.
    """
    try:
        return await probe_daemon(store, probe_timeout, call_timeout, slow_call_timeout)
    except StaleStateError as e:
        logger.debug(str(e))
        return None


async def send_stop(port: int, token: str, grace: float = 0.3, host: str = LOOPBACK_HOST) -> None:
    """
    Send a stop request without waiting for the reply.

    Gives the daemon ``grace`` seconds to read it, then disconnects.
    Connection failures are ignored.
    """
    try:
        _reader, writer = await asyncio.open_connection(host, port)
    except (ConnectionError, OSError) as e:
        logger.debug(f"Could not deliver stop request: {e}")
        return

    try:
        writer.write(serialize_request("stop-req", "stop", token))
        await writer.drain()
        await asyncio.sleep(grace)
    except (ConnectionError, OSError) as e:
        logger.debug(f"Stop request interrupted: {e}")
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass
