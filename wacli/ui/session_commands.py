"""
Session Commands

Commands that talk to WhatsApp: chats, messages, send, reply and the
interactive auth flow. All of them go through ``connect_client`` so they
transparently use the daemon when one is running.
"""

import asyncio
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from wacli.core.configs import Settings
from wacli.core.connect import ClientHandle, connect_client
from wacli.core.errors import WacliError
from wacli.core.session import load_session_factory, wait_for_login
from wacli.daemon.client import try_connect_daemon
from wacli.daemon.state import StateStore

logger = logging.getLogger(__name__)

console = Console()


def field(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from a dict (IPC results) or an object (in-process results)."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def format_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        return value.astimezone().strftime("%Y-%m-%d %H:%M")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M")
    return str(value or "")


async def resolve_chat_id(client: ClientHandle, chat: str) -> str:
    """
    Accept either a chat id (``...@c.us`` / ``...@g.us``) or a chat name.

    Raises:
        WacliError: If no chat matches the name
    """
    if "@" in chat:
        return chat

    thread = await client.find_chat_by_name(chat)
    if thread is None:
        raise WacliError(f"No chat found matching '{chat}'")
    return field(thread, "id")


# ============================================================================
# chats / messages
# ============================================================================

async def list_chats(
    settings: Settings,
    limit: int = 20,
    search: Optional[str] = None,
) -> List[Any]:
    async with connect_client(settings) as client:
        if search:
            results = await client.search_threads(search)
            threads = [field(result, "thread", result) for result in results]
        else:
            threads = await client.get_threads()
    return list(threads)[:limit]


def chats_command(settings: Settings, limit: int, search: Optional[str]) -> None:
    threads = asyncio.run(list_chats(settings, limit=limit, search=search))

    if not threads:
        console.print("[yellow]No chats found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Name")
    table.add_column("Unread", justify="right")
    table.add_column("Last activity")
    table.add_column("ID", style="dim")

    for thread in threads:
        name = escape(field(thread, "name") or "(unnamed)")
        if field(thread, "isGroup", False):
            name = f"{name} [dim](group)[/dim]"
        unread = field(thread, "unreadCount", 0) or 0
        table.add_row(
            name,
            f"[green]{unread}[/green]" if unread else "",
            format_timestamp(field(thread, "timestamp")),
            str(field(thread, "id", "")),
        )

    console.print(table)


async def fetch_messages(settings: Settings, chat: str, limit: int) -> List[Any]:
    async with connect_client(settings) as client:
        chat_id = await resolve_chat_id(client, chat)
        return list(await client.get_messages(chat_id, limit))


def messages_command(settings: Settings, chat: str, limit: int) -> None:
    messages = asyncio.run(fetch_messages(settings, chat, limit))

    if not messages:
        console.print("[yellow]No messages.[/yellow]")
        return

    for message in messages:
        sender = "You" if field(message, "fromMe", False) else (
            field(message, "senderName") or field(message, "from", "?")
        )
        body = field(message, "body")
        if not body:
            body = f"<{field(message, 'type', 'unknown')}>"
        console.print(
            f"[dim]{format_timestamp(field(message, 'timestamp'))}[/dim] "
            f"[bold]{escape(str(sender))}[/bold]: {escape(str(body))}  [dim]({field(message, 'id', '')})[/dim]",
            highlight=False,
        )


# ============================================================================
# send / reply
# ============================================================================

async def send(
    settings: Settings,
    chat: str,
    text: Optional[str] = None,
    file_path: Optional[Path] = None,
    caption: str = "",
) -> str:
    """Send a text or a file. Returns the resolved chat id."""
    if file_path is None and not text:
        raise WacliError("Nothing to send: give a message or --file")
    if file_path is not None and not file_path.is_file():
        raise WacliError(f"File not found: {file_path}")

    async with connect_client(settings) as client:
        chat_id = await resolve_chat_id(client, chat)
        if file_path is not None:
            await client.send_file(chat_id, str(file_path.resolve()), caption or text or "")
        else:
            await client.send_message(chat_id, text)
    return chat_id


def send_command(
    settings: Settings,
    chat: str,
    text: Optional[str],
    file_path: Optional[Path],
    caption: str,
) -> None:
    asyncio.run(send(settings, chat, text=text, file_path=file_path, caption=caption))
    what = "File" if file_path is not None else "Message"
    console.print(f"[green]✓  {what} sent to {escape(chat)}[/green]")


async def reply(settings: Settings, message_id: str, text: str) -> None:
    async with connect_client(settings) as client:
        await client.reply_to_message(message_id, text)


def reply_command(settings: Settings, message_id: str, text: str) -> None:
    asyncio.run(reply(settings, message_id, text))
    console.print("[green]✓  Reply sent[/green]")


# ============================================================================
# auth
# ============================================================================

def _show_qr(data: Any) -> None:
    console.print(
        Panel.fit(
            escape(str(data)),
            title="Scan with WhatsApp → Linked devices → Link a device",
        )
    )


async def login(settings: Settings) -> bool:
    """
    Interactive login. Returns False when a daemon is already serving a
    logged-in session, True after a fresh successful login.
    """
    daemon = await try_connect_daemon(
        StateStore(settings.state_file), probe_timeout=settings.probe_timeout
    )
    if daemon is not None:
        return False

    session = load_session_factory(settings)()
    try:
        await wait_for_login(session, _show_qr, timeout=settings.login_timeout)
    finally:
        try:
            await session.destroy()
        except Exception as e:
            logger.warning(f"Error destroying session: {e}")
    return True


def login_command(settings: Settings) -> None:
    if asyncio.run(login(settings)):
        console.print("[green]✓  Logged in. Start the daemon with: wa daemon start[/green]")
    else:
        console.print("[green]✓  Already logged in (daemon is running).[/green]")


async def logout(settings: Settings) -> bool:
    """
    Remove the stored login. Refuses while a daemon is using it.

    Returns:
        True if a stored session was removed
    """
    daemon = await try_connect_daemon(
        StateStore(settings.state_file), probe_timeout=settings.probe_timeout
    )
    if daemon is not None:
        raise WacliError("The daemon is using this login. Stop it first: wa daemon stop")

    session_dir = settings.auth_dir / "session-default"
    if not session_dir.exists():
        return False
    shutil.rmtree(session_dir)
    return True


def logout_command(settings: Settings) -> None:
    if asyncio.run(logout(settings)):
        console.print("[green]✓  Logged out.[/green]")
    else:
        console.print("[yellow]No stored login found.[/yellow]")
