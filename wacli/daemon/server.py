"""Background daemon that keeps one WhatsApp session alive.

This module implements the long-running process that:
1. Boots the WhatsApp session once (browser start + login restore)
2. Listens on an OS-assigned loopback TCP port
3. Serves newline-delimited JSON-RPC requests from short-lived CLI calls

Lifecycle:
    booting -> ready -> serving -> shutting_down -> terminated
    booting -> failed   (QR requested, session error, or boot timeout)

Usage:
    python -m wacli.daemon.server [--boot-timeout SECONDS] [--daemonize]

    Or use the CLI:
    wa daemon start
"""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from wacli.core.errors import (
    ApplicationError,
    AuthError,
    BootFailure,
    ProtocolError,
    UnknownMethodError,
    WacliError,
)
from wacli.core.session import load_session_factory, status_value, wait_until_ready
from wacli.daemon.protocol import (
    UNKNOWN_ID,
    LineBuffer,
    deserialize_request,
    generate_token,
    serialize_response,
    tokens_match,
)
from wacli.daemon.state import DaemonDescriptor, DaemonLock, StateStore

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# How long shutdown waits for in-flight connections before moving on.
SHUTDOWN_GRACE = 5.0

READ_CHUNK = 65536

# Longest request line accepted; longer ones end the connection.
MAX_REQUEST_BYTES = 4 * 1024 * 1024

# Exit status of a daemon that found another one holding the lock.
EXIT_LOCK_HELD = 3


class DaemonPhase(str, Enum):
    BOOTING = "booting"
    READY = "ready"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"
    FAILED = "failed"


Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


class DaemonServer:
    """
    Loopback JSON-RPC server in front of a single shared session.

    Every connection is handled independently and every request line gets
    its own task, so a slow session call never blocks parsing of the next
    pipelined request. Session calls are not serialized here.
    """

    def __init__(
        self,
        session: Any,
        state_store: StateStore,
        token: Optional[str] = None,
        host: str = LOOPBACK_HOST,
        boot_timeout: float = 90.0,
        max_request_bytes: int = MAX_REQUEST_BYTES,
    ):
        """
        Initialize daemon server.

        Args:
            session: WhatsApp session backend (see wacli.core.session.Session)
            state_store: Where the descriptor is written once serving
            token: Shared secret; generated when omitted
            host: Bind address (loopback only)
            boot_timeout: Seconds to wait for the session to become ready
            max_request_bytes: Longest request line a client may send
        """
        self.session = session
        self.state_store = state_store
        self.token = token or generate_token()
        self.host = host
        self.boot_timeout = boot_timeout
        self.max_request_bytes = max_request_bytes

        self.phase = DaemonPhase.BOOTING
        self.port: Optional[int] = None
        self.server: Optional[asyncio.AbstractServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None

        self._handlers: Dict[str, Handler] = {
            "ping": self._handle_ping,
            "getStatus": self._handle_get_status,
            "getThreads": self._handle_get_threads,
            "searchThreads": self._handle_search_threads,
            "findChatByName": self._handle_find_chat_by_name,
            "getMessages": self._handle_get_messages,
            "sendMessage": self._handle_send_message,
            "sendFile": self._handle_send_file,
            "replyToMessage": self._handle_reply_to_message,
            "stop": self._handle_stop,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def boot(self) -> None:
        """
        Bring the session to ready.

        Raises:
            BootFailure: On QR request, session error or timeout
        """
        self.phase = DaemonPhase.BOOTING
        logger.info("Starting WhatsApp client...")
        try:
            await wait_until_ready(self.session, timeout=self.boot_timeout)
        except BootFailure:
            self.phase = DaemonPhase.FAILED
            raise
        self.phase = DaemonPhase.READY

    async def listen(self) -> int:
        """
        Bind the loopback listener and publish the descriptor.

        Returns:
            The OS-assigned port

        Raises:
            OSError: If binding or writing the descriptor fails
        """
        self._shutdown_event = asyncio.Event()
        self.server = await asyncio.start_server(
            self._handle_client,
            host=self.host,
            port=0,
        )
        self.port = self.server.sockets[0].getsockname()[1]

        try:
            self.state_store.write(
                DaemonDescriptor(
                    pid=os.getpid(),
                    port=self.port,
                    started_at=datetime.now(timezone.utc).isoformat(),
                    token=self.token,
                )
            )
        except OSError:
            self.server.close()
            self.phase = DaemonPhase.FAILED
            raise

        self.phase = DaemonPhase.SERVING
        logger.info(f"Daemon listening on {self.host}:{self.port}")
        return self.port

    async def serve_until_stopped(self, handle_signals: bool = True) -> None:
        """Serve until stop is requested (RPC or SIGTERM/SIGINT), then clean up."""
        assert self._shutdown_event is not None, "listen() must run first"

        if handle_signals:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.add_signal_handler(sig, self._signal_handler)
                except (NotImplementedError, RuntimeError):
                    logger.debug(f"Cannot install handler for {sig!r} on this platform")

        await self._shutdown_event.wait()
        await self._cleanup()

    async def start(self) -> None:
        """Boot, listen and serve. Raises on boot or bind failure."""
        await self.boot()
        await self.listen()
        print(f"Daemon ready – port {self.port} (pid {os.getpid()})", flush=True)
        await self.serve_until_stopped()

    def request_shutdown(self) -> None:
        """Begin graceful shutdown. Safe to call more than once."""
        if self._shutdown_event is not None and not self._shutdown_event.is_set():
            self._shutdown_event.set()

    def _signal_handler(self) -> None:
        """Handle SIGTERM/SIGINT for graceful shutdown."""
        logger.info("Received shutdown signal")
        self.request_shutdown()

    async def _cleanup(self) -> None:
        """Stop accepting, destroy the session, drop the descriptor."""
        self.phase = DaemonPhase.SHUTTING_DOWN
        logger.info("Daemon shutting down...")

        if self.server:
            self.server.close()
            try:
                await asyncio.wait_for(self.server.wait_closed(), SHUTDOWN_GRACE)
            except asyncio.TimeoutError:
                logger.warning("Open connections did not finish before shutdown")

        try:
            await self.session.destroy()
        except Exception as e:
            logger.warning(f"Error destroying session: {e}")

        self.state_store.remove()
        self.phase = DaemonPhase.TERMINATED
        logger.info("Daemon stopped")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Read request lines until EOF, answering each one as it completes."""
        buffer = LineBuffer(max_line=self.max_request_bytes)
        pending: Set[asyncio.Task] = set()

        try:
            while True:
                data = await reader.read(READ_CHUNK)
                if not data:
                    break
                for line in buffer.feed(data):
                    task = asyncio.create_task(self._respond(line, writer))
                    pending.add(task)
                    task.add_done_callback(pending.discard)

                if buffer.overflowed:
                    logger.warning(
                        f"Request line over {self.max_request_bytes} bytes; closing connection"
                    )
                    writer.write(
                        serialize_response(UNKNOWN_ID, error="Request line too long")
                    )
                    await writer.drain()
                    break

            # Peer half-closed; finish what it already asked for.
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        except (ConnectionError, OSError) as e:
            logger.debug(f"Client connection error: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _respond(self, line: bytes, writer: asyncio.StreamWriter) -> None:
        response = await self.handle_line(line)
        # No-op if the peer is already gone
        if writer.is_closing():
            return
        try:
            writer.write(response)
            await writer.drain()
        except (ConnectionError, OSError):
            logger.debug("Client went away before the response was delivered")

    async def handle_line(self, line: bytes) -> bytes:
        """
        Decode one request line and return the encoded response line.

        Never raises: a result that cannot be encoded becomes an error
        response for the same id.
        """
        try:
            request = deserialize_request(line)
        except ProtocolError as e:
            return serialize_response(UNKNOWN_ID, error=str(e))

        response = await self.handle_request(request)
        try:
            return serialize_response(
                response["id"],
                result=response.get("result"),
                error=response.get("error"),
            )
        except Exception as e:
            logger.error(f"Cannot encode response to {request.get('method')}: {e}")
            return serialize_response(response["id"], error=str(e) or type(e).__name__)

    async def handle_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Authenticate and dispatch a decoded request.

        Never raises: every failure becomes an ``error`` response.
        """
        request_id = request.get("id", UNKNOWN_ID)
        try:
            result = await self._dispatch(request)
        except WacliError as e:
            return {"id": request_id, "error": str(e) or type(e).__name__}
        return {"id": request_id, "result": result}

    async def _dispatch(self, request: Dict[str, Any]) -> Any:
        """
        Raises:
            AuthError: Missing or wrong token
            UnknownMethodError: Method outside the RPC method set
            ProtocolError: Params are not an object
            ApplicationError: The session call failed
        """
        # Token is checked before the method is even looked up.
        if not tokens_match(request.get("token"), self.token):
            raise AuthError()

        method = request.get("method")
        handler = self._handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            raise UnknownMethodError(str(method))

        params = request.get("params") or {}
        if not isinstance(params, dict):
            raise ProtocolError("Invalid params: expected an object")

        try:
            return await handler(params)
        except Exception as e:
            logger.exception(f"Error in {method}: {e}")
            raise ApplicationError(str(e) or type(e).__name__) from e

    # ------------------------------------------------------------------
    # RPC handlers
    # ------------------------------------------------------------------

    async def _handle_ping(self, params: Dict[str, Any]) -> str:
        return "pong"

    async def _handle_get_status(self, params: Dict[str, Any]) -> str:
        return status_value(self.session.status)

    async def _handle_get_threads(self, params: Dict[str, Any]) -> Any:
        return await self.session.get_threads()

    async def _handle_search_threads(self, params: Dict[str, Any]) -> Any:
        return await self.session.search_threads(params.get("query") or "")

    async def _handle_find_chat_by_name(self, params: Dict[str, Any]) -> Any:
        return await self.session.find_chat_by_name(params.get("name"))

    async def _handle_get_messages(self, params: Dict[str, Any]) -> Any:
        return await self.session.get_messages(params.get("chatId"), params.get("limit"))

    async def _handle_send_message(self, params: Dict[str, Any]) -> None:
        await self.session.send_message(params.get("chatId"), params.get("text"))
        return None

    async def _handle_send_file(self, params: Dict[str, Any]) -> None:
        await self.session.send_file(
            params.get("chatId"),
            params.get("filePath"),
            params.get("caption") or "",
        )
        return None

    async def _handle_reply_to_message(self, params: Dict[str, Any]) -> None:
        await self.session.reply_to_message(params.get("messageId"), params.get("text"))
        return None

    async def _handle_stop(self, params: Dict[str, Any]) -> str:
        """Answer first; shutdown runs on the next loop iteration."""
        logger.info("Shutdown requested via socket")
        asyncio.get_running_loop().call_soon(self.request_shutdown)
        return "stopping"


async def _destroy_session(session: Any) -> None:
    try:
        await session.destroy()
    except Exception as e:
        logger.debug(f"Error destroying session: {e}")


async def _run(settings: Any) -> int:
    lock = DaemonLock(settings.lock_file)
    if not lock.acquire():
        logger.error("Another daemon holds the lock; exiting")
        print("Another daemon is already starting or running.", file=sys.stderr)
        return EXIT_LOCK_HELD

    server: Optional[DaemonServer] = None
    try:
        try:
            session = load_session_factory(settings)()
        except WacliError as e:
            logger.error(f"Cannot create session: {e}")
            print(str(e), file=sys.stderr)
            return 1

        server = DaemonServer(
            session=session,
            state_store=StateStore(settings.state_file),
            boot_timeout=settings.boot_timeout,
        )

        print("Starting WhatsApp session…", flush=True)
        try:
            await server.start()
        except BootFailure as e:
            logger.error(f"Daemon failed to boot: {e}")
            print(str(e), file=sys.stderr)
            return 1
        except OSError as e:
            logger.error(f"Daemon failed to listen: {e}")
            print(f"Daemon failed to start: {e}", file=sys.stderr)
            return 1
        return 0
    finally:
        # Anything short of a clean shutdown: failed boot or bind, or Ctrl-C
        # while booting (before the signal handlers are installed).
        if server is not None and server.phase is not DaemonPhase.TERMINATED:
            await _destroy_session(server.session)
            server.state_store.remove()
        lock.release()


def _daemonize(log_path: Any) -> None:
    """Double-fork into the background, stdout/stderr into ``log_path``."""
    pid = os.fork()
    if pid > 0:
        os._exit(0)

    os.setsid()

    pid = os.fork()
    if pid > 0:
        os._exit(0)

    sys.stdin.close()

    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_file = open(log_path, "a")
    os.dup2(log_file.fileno(), sys.stdout.fileno())
    os.dup2(log_file.fileno(), sys.stderr.fileno())


def run_daemon(boot_timeout: Optional[float] = None, daemonize: bool = False) -> int:
    """
    Run the daemon to completion.

    Args:
        boot_timeout: Override the configured boot timeout (seconds)
        daemonize: Fork to background (Unix only)

    Returns:
        Process exit status: 0 after a clean shutdown, EXIT_LOCK_HELD when
        another daemon holds the lock, 1 on any other failure
    """
    from wacli.core.configs import get_settings
    from wacli.core.logger import initialize_logger

    settings = get_settings()
    if boot_timeout is not None:
        settings.boot_timeout = boot_timeout

    if daemonize:
        _daemonize(settings.daemon_log_file)

    initialize_logger(settings.log_file, debug=settings.debug_mode)
    return asyncio.run(_run(settings))


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="wacli daemon server")
    parser.add_argument(
        "--boot-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the WhatsApp session to become ready",
    )
    parser.add_argument(
        "--daemonize",
        action="store_true",
        help="Fork to background",
    )

    args = parser.parse_args()

    sys.exit(run_daemon(boot_timeout=args.boot_timeout, daemonize=args.daemonize))
