"""Main CLI entry point - subcommand architecture."""

from pathlib import Path
from typing import Callable, Optional

import typer

from wacli.core.configs import Settings, get_settings
from wacli.core.errors import WacliError
from wacli.core.logger import initialize_logger
from wacli.ui.output import UIManager

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="wacli - WhatsApp from your terminal.",
)

daemon_app = typer.Typer(
    no_args_is_help=True,
    help="Manage the background session daemon (keeps WhatsApp running between commands).",
)
auth_app = typer.Typer(no_args_is_help=True, help="Log in to or out of WhatsApp.")

app.add_typer(daemon_app, name="daemon")
app.add_typer(auth_app, name="auth")


# ============================================================================
# Shared Setup - called on every invocation
# ============================================================================

def _load_settings() -> Settings:
    """Load settings and start logging. Exits on configuration errors."""
    try:
        settings = get_settings()
    except ValueError as e:
        UIManager().error(f"Error loading configuration: {e}")
        raise typer.Exit(1)

    initialize_logger(settings.log_file, debug=settings.debug_mode)
    return settings


def _run_session_command(command: Callable[..., None], *args) -> None:
    """Run a session command, turning any failure into one error line + exit 1."""
    settings = _load_settings()
    try:
        command(settings, *args)
    except (WacliError, OSError) as e:
        UIManager().error(str(e))
        raise typer.Exit(1)


# ============================================================================
# Daemon commands
# ============================================================================

@daemon_app.command("start")
def daemon_start() -> None:
    """Start the daemon (waits until WhatsApp is ready)."""
    from wacli.ui.daemon_commands import handle_daemon
    raise typer.Exit(handle_daemon("start", _load_settings()))


@daemon_app.command("stop")
def daemon_stop() -> None:
    """Stop the daemon."""
    from wacli.ui.daemon_commands import handle_daemon
    raise typer.Exit(handle_daemon("stop", _load_settings()))


@daemon_app.command("status")
def daemon_status() -> None:
    """Show whether the daemon is running."""
    from wacli.ui.daemon_commands import handle_daemon
    raise typer.Exit(handle_daemon("status", _load_settings()))


# ============================================================================
# Auth commands
# ============================================================================

@auth_app.command("login")
def auth_login() -> None:
    """Log in by scanning a QR code with your phone."""
    from wacli.ui.session_commands import login_command
    _run_session_command(login_command)


@auth_app.command("logout")
def auth_logout() -> None:
    """Forget the stored WhatsApp login."""
    from wacli.ui.session_commands import logout_command
    _run_session_command(logout_command)


# ============================================================================
# Session commands - use the daemon when running, else boot a private session
# ============================================================================

@app.command()
def chats(
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Maximum chats to list"),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Filter chats by name"),
) -> None:
    """
    List recent chats.

    Example: wa chats --search family
    """
    from wacli.ui.session_commands import chats_command
    _run_session_command(chats_command, limit, search)


@app.command()
def messages(
    chat: str = typer.Argument(..., help="Chat name or id"),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of messages"),
) -> None:
    """Show recent messages of a chat."""
    from wacli.ui.session_commands import messages_command
    _run_session_command(messages_command, chat, limit)


@app.command()
def send(
    chat: str = typer.Argument(..., help="Chat name or id"),
    text: Optional[str] = typer.Argument(None, help="Message text"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Send a file instead"),
    caption: str = typer.Option("", "--caption", "-c", help="Caption for --file"),
) -> None:
    """
    Send a message or a file.

    Example: wa send "Mum" "On my way"
    """
    from wacli.ui.session_commands import send_command
    _run_session_command(send_command, chat, text, file, caption)


@app.command()
def reply(
    message_id: str = typer.Argument(..., help="Id of the message to reply to"),
    text: str = typer.Argument(..., help="Reply text"),
) -> None:
    """Reply to a specific message."""
    from wacli.ui.session_commands import reply_command
    _run_session_command(reply_command, message_id, text)


def run() -> None:
    """Entry point for console script mapping."""
    app()


if __name__ == "__main__":
    run()
