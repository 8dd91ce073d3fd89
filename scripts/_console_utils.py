"""
Shared Rich console helpers for the task monitor CLI.
"""

from __future__ import annotations

from functools import lru_cache

from rich.console import Console
from rich.text import Text

# Task and step statuses share one palette
STATUS_STYLES = {
    "pending": "dim",
    "queued": "yellow",
    "uploaded": "yellow",
    "processing": "bold cyan",
    "cancelling": "magenta",
    "completed": "bold green",
    "failed": "bold red",
    "cancelled": "bold magenta",
    "skipped": "dim italic",
}


@lru_cache(maxsize=1)
def get_console() -> Console:
    """Return a shared stdout console instance."""
    return Console()


@lru_cache(maxsize=1)
def get_err_console() -> Console:
    return Console(stderr=True)


def status_label(label: str, style: str) -> Text:
    """Create a styled status label wrapped in brackets."""
    text = Text(f"[{label}]")
    text.stylize(style)
    return text


def styled_status(status: str) -> Text:
    """Render a task or step status in its palette colour (white if unknown)."""
    return Text(status, style=STATUS_STYLES.get(status, "white"))
