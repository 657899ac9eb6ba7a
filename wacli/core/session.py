"""Boundary to the WhatsApp session backend.

The browser-automation session itself lives outside this package. This
module defines what wacli expects from it (``Session``), a small event
emitter backends can build on, the loader for the configured backend, and
the boot race shared by the daemon and the in-process slow path.
"""

import asyncio
import importlib
import inspect
import logging
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from wacli.core.configs import CONFIG_PATH, ENV_PREFIX, Settings
from wacli.core.errors import (
    BootTimeoutError,
    ConfigError,
    NotLoggedInError,
    SessionError,
)

logger = logging.getLogger(__name__)

NOT_LOGGED_IN_MESSAGE = "Not logged in – run:  wa auth login"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    INITIALIZING = "initializing"
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    ERROR = "error"


# Events a session emits over its lifetime.
EVENTS = (
    "qr",
    "authenticated",
    "ready",
    "error",
    "disconnected",
    "message",
    "message_create",
    "status",
)


class EventEmitter:
    """Minimal on/once/off/emit event hub for session backends."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, listener: Callable[..., Any]) -> Callable[..., Any]:
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, listener: Callable[..., Any]) -> Callable[..., Any]:
        def wrapper(*args: Any) -> Any:
            self.off(event, wrapper)
            return listener(*args)

        wrapper.listener = listener  # type: ignore[attr-defined]
        return self.on(event, wrapper)

    def off(self, event: str, listener: Callable[..., Any]) -> None:
        listeners = self._listeners.get(event, [])
        for registered in list(listeners):
            if registered is listener or getattr(registered, "listener", None) is listener:
                listeners.remove(registered)
                return

    def emit(self, event: str, *args: Any) -> bool:
        """Call every listener for ``event`` in registration order."""
        listeners = list(self._listeners.get(event, []))
        for listener in listeners:
            listener(*args)
        return bool(listeners)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))


@runtime_checkable
class Session(Protocol):
    """What wacli needs from a WhatsApp session backend."""

    @property
    def status(self) -> Any: ...

    async def initialize(self) -> None: ...

    async def destroy(self) -> None: ...

    async def get_threads(self) -> List[Any]: ...

    async def search_threads(self, query: str) -> List[Any]: ...

    async def find_chat_by_name(self, name: str) -> Optional[Any]: ...

    async def get_messages(self, chat_id: str, limit: Optional[int] = None) -> List[Any]: ...

    async def send_message(self, chat_id: str, text: str) -> None: ...

    async def send_file(self, chat_id: str, file_path: str, caption: str = "") -> None: ...

    async def reply_to_message(self, message_id: str, text: str) -> None: ...

    async def mark_as_read(self, chat_id: str) -> None: ...

    def on(self, event: str, listener: Callable[..., Any]) -> Any: ...

    def once(self, event: str, listener: Callable[..., Any]) -> Any: ...

    def off(self, event: str, listener: Callable[..., Any]) -> Any: ...


def status_value(status: Any) -> str:
    """Plain string form of a session status."""
    if isinstance(status, Enum):
        return str(status.value)
    return str(status)


def load_session_factory(settings: Settings) -> Callable[[], Any]:
    """
    Resolve the configured ``module:callable`` that builds a Session.

    Factories with a ``settings`` parameter receive the Settings object.
    The returned callable takes no arguments.

    Raises:
        ConfigError: If no backend is configured or it cannot be imported
    """
    factory_path = settings.session_factory
    if not factory_path:
        raise ConfigError(
            "No session backend configured. Set 'session_factory = module:callable' "
            f"in {CONFIG_PATH} or export {ENV_PREFIX}SESSION_FACTORY."
        )

    module_name, sep, attr = factory_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(
            f"Invalid session_factory '{factory_path}'. Expected the form 'module:callable'."
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import session backend '{module_name}': {e}") from e

    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise ConfigError(f"Session backend '{factory_path}' not found") from None

    if not callable(target):
        raise ConfigError(f"Session backend '{factory_path}' is not callable")

    try:
        wants_settings = "settings" in inspect.signature(target).parameters
    except (TypeError, ValueError):
        wants_settings = False

    if wants_settings:
        return lambda: target(settings=settings)
    return target


async def wait_until_ready(session: Any, timeout: float = 90.0) -> None:
    """
    Initialize ``session`` and wait for the first decisive event.

    The first of these wins, the rest are ignored:
    - ``qr``: no stored login, raises NotLoggedInError
    - ``ready``: returns
    - ``error`` (or initialize() raising): raises SessionError
    - ``timeout`` seconds elapsing: raises BootTimeoutError

    Listeners may fire from a backend thread; outcomes are marshalled onto
    the running loop.
    """
    loop = asyncio.get_running_loop()
    outcome: asyncio.Future = loop.create_future()

    def settle(exc: Optional[BaseException] = None) -> None:
        if outcome.done():
            return
        if exc is None:
            outcome.set_result(None)
        else:
            outcome.set_exception(exc)

    def on_qr(*_: Any) -> None:
        loop.call_soon_threadsafe(settle, NotLoggedInError(NOT_LOGGED_IN_MESSAGE))

    def on_ready(*_: Any) -> None:
        loop.call_soon_threadsafe(settle, None)

    def on_error(err: Any = None, *_: Any) -> None:
        message = str(err) if err else "WhatsApp session error"
        loop.call_soon_threadsafe(settle, SessionError(message))

    session.once("qr", on_qr)
    session.once("ready", on_ready)
    session.once("error", on_error)

    def on_initialized(task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            settle(SessionError(str(exc) or type(exc).__name__))

    try:
        init_task = asyncio.ensure_future(session.initialize())
        init_task.add_done_callback(on_initialized)

        try:
            await asyncio.wait_for(outcome, timeout)
        except asyncio.TimeoutError:
            raise BootTimeoutError(
                f"Timed out waiting for WhatsApp ({timeout:g} s). Is your phone connected?",
                timeout=timeout,
            ) from None
    finally:
        session.off("qr", on_qr)
        session.off("ready", on_ready)
        session.off("error", on_error)

    logger.info("WhatsApp session is ready")


async def wait_for_login(
    session: Any,
    on_qr: Callable[[Any], None],
    timeout: float = 180.0,
) -> None:
    """
    Initialize ``session`` interactively, showing every QR code it emits.

    Unlike ``wait_until_ready`` a QR event is not a failure: ``on_qr`` is
    called with the payload (codes rotate while waiting) until the phone
    completes the scan and the session reports ``ready``.

    Raises:
        SessionError: The session reported an error
        BootTimeoutError: No successful login within ``timeout`` seconds
    """
    loop = asyncio.get_running_loop()
    outcome: asyncio.Future = loop.create_future()

    def settle(exc: Optional[BaseException] = None) -> None:
        if outcome.done():
            return
        if exc is None:
            outcome.set_result(None)
        else:
            outcome.set_exception(exc)

    def qr_listener(data: Any = None, *_: Any) -> None:
        loop.call_soon_threadsafe(on_qr, data)

    def on_ready(*_: Any) -> None:
        loop.call_soon_threadsafe(settle, None)

    def on_error(err: Any = None, *_: Any) -> None:
        message = str(err) if err else "WhatsApp session error"
        loop.call_soon_threadsafe(settle, SessionError(message))

    def on_initialized(task: "asyncio.Future[Any]") -> None:
        if not task.cancelled() and task.exception() is not None:
            exc = task.exception()
            settle(SessionError(str(exc) or type(exc).__name__))

    session.on("qr", qr_listener)
    session.once("ready", on_ready)
    session.once("error", on_error)

    try:
        init_task = asyncio.ensure_future(session.initialize())
        init_task.add_done_callback(on_initialized)
        try:
            await asyncio.wait_for(outcome, timeout)
        except asyncio.TimeoutError:
            raise BootTimeoutError(
                f"Login not completed within {timeout:g} s", timeout=timeout
            ) from None
    finally:
        session.off("qr", qr_listener)
        session.off("ready", on_ready)
        session.off("error", on_error)
