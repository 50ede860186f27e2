"""
Rich Output Utilities
=====================

Terminal output for the Agent Mafia CLI and server using the Rich library:
a themed console, message helpers, event rendering and logging setup.

Usage:
    from agentmafia.output import console, print_success, setup_rich_logging

    setup_rich_logging()
    print_success("Hierarchy loaded")
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class MafiaColors:
    """Color palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    wine: str = "#B91C1C"      # family red
    gold: str = "#F59E0B"      # accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"
    warn: str = "#FBBF24"
    err: str = "#EF4444"


def mafia_theme(colors: MafiaColors = MafiaColors()) -> Theme:
    """
    Rich Theme for the CLI.

    Style names are semantic so you can use them everywhere:
      console.print("...", style="am.ok")
    """
    return Theme(
        {
            "am.accent": f"bold {colors.gold}",
            "am.muted": f"{colors.dim}",
            "am.text": f"{colors.ink}",
            "am.border": f"{colors.wine}",

            "am.ok": f"bold {colors.ok}",
            "am.warn": f"bold {colors.warn}",
            "am.err": f"bold {colors.err}",
            "am.info": f"{colors.steel}",

            # Roles
            "am.role.underboss": f"bold {colors.wine}",
            "am.role.capo": f"bold {colors.gold}",
            "am.role.soldier": f"{colors.steel}",

            "am.table.header": f"bold {colors.gold}",
            "am.tool": f"{colors.dim}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle Unicode characters."""
    if os.name != "nt":
        return True
    encoding = (sys.stdout.encoding or "").lower()
    return "utf" in encoding


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠",
    "info": "ℹ",
    "arrow_right": "→",
    "arrow_left": "←",
    "bullet": "•",
    "hand": "✋",
    "stop": "■",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "arrow_right": "->",
    "arrow_left": "<-",
    "bullet": "-",
    "hand": "[?]",
    "stop": "[#]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=mafia_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[am.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[am.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[am.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[am.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[am.muted]{message}[/]")


def print_panel(content: str, *, title: Optional[str] = None, style: str = "am.border") -> None:
    console.print(Panel(content, title=title, border_style=style))


# =============================================================================
# Tables & Prompts
# =============================================================================

def create_table(*, title: Optional[str] = None, columns: Optional[List[str]] = None) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        header_style="am.table.header",
        border_style="am.border",
        title_style="am.accent",
    )
    for col in columns or []:
        table.add_column(col)
    return table


def prompt(message: str, *, default: Optional[str] = None) -> str:
    """Prompt for text input."""
    return Prompt.ask(f"[am.accent]{message}[/]", default=default, console=console)


def confirm(message: str, *, default: bool = False) -> bool:
    """Ask for yes/no confirmation."""
    return Confirm.ask(f"[am.accent]{message}[/]", default=default, console=console)


# =============================================================================
# Event Rendering
# =============================================================================

def _truncate(text: Any, limit: int = 160) -> str:
    text = str(text or "").replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def format_event(event_type: str, data: Dict[str, Any]) -> Optional[str]:
    """
    Render a bus event as one line of console markup.

    Returns None for events that should not be shown (heartbeats).
    """
    name = data.get("agentName", "")
    role = data.get("role", "")
    role_style = f"am.role.{role}" if role else "am.accent"

    if event_type in ("heartbeat", "connected"):
        return None
    if event_type == "task_start":
        return f"[am.accent]{icon('arrow_right')} Job started:[/] {_truncate(data.get('task'))}"
    if event_type == "task_complete":
        return f"[am.ok]{icon('check')} Job complete[/]"
    if event_type == "task_stopped":
        return f"[am.warn]{icon('stop')} Job stopped by the boss[/]"
    if event_type == "task_turn_limit":
        return f"[am.err]{icon('stop')} Turn limit reached ({data.get('turns')}/{data.get('limit')})[/]"
    if event_type == "task_error":
        return f"[am.err]{icon('cross')} Job failed: {_truncate(data.get('error'))}[/]"
    if event_type == "agent_start":
        return f"[{role_style}]{name}[/] [am.muted]({role})[/] picks up: {_truncate(data.get('task'), 120)}"
    if event_type == "agent_message":
        return f"[{role_style}]{name}[/]: {_truncate(data.get('content'))}"
    if event_type == "agent_done":
        return f"[am.muted]{icon('check')} {name} done[/]"
    if event_type == "agent_error":
        return f"[am.err]{icon('cross')} {name}: {_truncate(data.get('error'))}[/]"
    if event_type == "agent_warning":
        return f"[am.warn]{icon('warning')} {name}: {_truncate(data.get('warning'))}[/]"
    if event_type == "tool_call":
        return f"[am.tool]  {icon('arrow_right')} {name} {data.get('tool')}[/]"
    if event_type == "tool_result":
        marker = icon("cross") if data.get("isError") else icon("arrow_left")
        return f"[am.tool]  {marker} {data.get('tool')}: {_truncate(data.get('output'), 100)}[/]"
    if event_type == "escalation":
        return f"[am.warn]{icon('hand')} {name} needs the boss: {data.get('question')}[/]"
    if event_type == "escalation_answered":
        return f"[am.ok]{icon('check')} Boss answered {name}: {_truncate(data.get('answer'))}[/]"
    if event_type == "visual_analysis":
        if data.get("error"):
            return f"[am.warn]{icon('warning')} Visual analysis skipped: {_truncate(data.get('error'))}[/]"
        return f"[am.info]{icon('bullet')} {data.get('model')} read the screenshots: {_truncate(data.get('analysis'), 120)}[/]"
    if event_type == "progress_update":
        return f"[am.info]{icon('bullet')} progress: {data.get('action')} {_truncate(data.get('detail'), 100)}[/]"
    return f"[am.muted]{event_type}: {_truncate(data)}[/]"


def print_event(event_type: str, data: Dict[str, Any]) -> None:
    """Print a bus event to the console."""
    line = format_event(event_type, data)
    if line is not None:
        console.print(line)


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.info("This will be pretty!")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
