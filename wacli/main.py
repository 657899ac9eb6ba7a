#!/usr/bin/env python3
"""
Main entry point for the Typer-based wacli CLI.

This delegates to the UI layer in wacli.ui.cli to keep the
console script mapping stable.
"""

from wacli.ui.cli import run as wa


if __name__ == "__main__":
    wa()
