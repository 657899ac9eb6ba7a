"""
One-line colored status output for operator commands.
Each command reports its outcome as a single line (success or error).
"""

import sys
from typing import Optional, TextIO


TEXT_COLOR_MAPPING = {
    "blue": "36;1",
    "yellow": "33;1",
    "green": "32;1",
    "red": "31;1",
    "cyan": "96;1",
    "gray": "90",
}


def get_colored_text(text: str, color: str) -> str:
    """
    Get colored text.

    Raises:
        ValueError: If the specified color is not supported
    """
    if color not in TEXT_COLOR_MAPPING:
        raise ValueError(
            f"Unsupported color: {color}. Available colors: {', '.join(TEXT_COLOR_MAPPING.keys())}"
        )

    color_str = TEXT_COLOR_MAPPING[color]
    return f"\u001b[{color_str}m{text}\u001b[0m"


class UIManager:
    """Colored terminal output for wacli commands."""

    def __init__(self, color: Optional[bool] = None):
        """
        Args:
            color: Force color on/off; default is on when stdout is a TTY
        """
        self.color = sys.stdout.isatty() if color is None else color

    def success(self, message: str) -> None:
        """Print success message in green."""
        self._print_colored(f"✓  {message}", "green")

    def error(self, message: str) -> None:
        """Print error message in red (stderr)."""
        self._print_colored(f"✗  {message}", "red", file=sys.stderr)

    def warning(self, message: str) -> None:
        self._print_colored(message, "yellow")

    def info(self, message: str) -> None:
        self._print_colored(message, "blue")

    def dim(self, text: str) -> None:
        self._print_colored(text, "gray")

    def _print_colored(
        self,
        text: str,
        color: str,
        end: str = "\n",
        file: Optional[TextIO] = None,
    ) -> None:
        if self.color:
            try:
                text = get_colored_text(text, color)
            except ValueError:
                # Fall back to plain text if color is invalid
                pass

        print(text, end=end, file=file, flush=True)
