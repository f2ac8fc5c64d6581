"""Shared utility functions for blueprintkit.

Provides the engine's only process-execution facility (``run_command``, used
by post-generation hooks), duration formatting, and the Rich console helpers
every component reports through.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import NamedTuple

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

console = Console()

# ---------------------------------------------------------------------------
# Process execution
# ---------------------------------------------------------------------------


class CommandResult(NamedTuple):
    """Exit status and decoded output of a finished child process."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def _spawn(
    cmd: str | list[str],
    cwd: str | Path | None,
    env: dict[str, str] | None,
    capture: bool,
) -> asyncio.subprocess.Process:
    pipe = asyncio.subprocess.PIPE if capture else None
    options = {
        "stdout": pipe,
        "stderr": pipe,
        "cwd": str(cwd) if cwd else None,
        "env": {**os.environ, **env} if env else None,
    }
    if isinstance(cmd, str):
        return await asyncio.create_subprocess_shell(cmd, **options)
    return await asyncio.create_subprocess_exec(*cmd, **options)


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await process.wait()


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace").strip()


async def run_command(
    cmd: str | list[str],
    cwd: str | Path | None = None,
    timeout: float = 120,
    capture: bool = True,
    env: dict[str, str] | None = None,
    *,
    raise_on_timeout: bool = False,
) -> CommandResult:
    """Run a child process and wait for it, killing it on timeout.

    A string goes through the shell (so wildcards expand); a list is
    executed directly.  A cancelled caller never leaves the child running.

    Args:
        cmd: Shell command string or argv list.
        cwd: Working directory for the child.
        timeout: Seconds before the child is killed.
        capture: Capture stdout/stderr; when ``False`` they are inherited and
            the result carries empty strings.
        env: Extra environment variables layered over ``os.environ``.
        raise_on_timeout: Re-raise ``asyncio.TimeoutError`` once the child
            is dead instead of returning a ``-1`` result.

    Raises:
        FileNotFoundError: If the executable of an argv list does not exist.
        PermissionError: If it exists but is not executable.
    """
    process = await _spawn(cmd, cwd, env, capture)
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _kill(process)
        if raise_on_timeout:
            raise
        shown = cmd if isinstance(cmd, str) else " ".join(cmd)
        return CommandResult(-1, "", f"Command timed out after {timeout}s: {shown}")
    except asyncio.CancelledError:
        await _kill(process)
        raise

    return CommandResult(process.returncode or 0, _decode(stdout), _decode(stderr))


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration for humans.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 60:
        return f"{max(seconds, 0.0):.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    return f"{minutes}m {secs}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------

# stage number -> (name, colour)
STAGES: dict[int, tuple[str, str]] = {
    1: ("resolve", "bright_cyan"),
    2: ("evaluate", "bright_green"),
    3: ("render", "bright_yellow"),
    4: ("merge", "bright_magenta"),
    5: ("materialize", "bright_blue"),
    6: ("hooks", "bright_red"),
}


def stage_name(stage: int) -> str:
    return STAGES.get(stage, ("unknown", ""))[0]


def print_stage_header(stage: int) -> None:
    """Print a full-width rule announcing a generation stage."""
    name, color = STAGES.get(stage, ("unknown", "white"))
    console.print(Rule(f"[bold {color}] Stage {stage}: {name.upper()} [/bold {color}]", style=color))


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column label/value table followed by a blank line."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")
    for key, value in data.items():
        table.add_row(key, str(value))
    console.print(table)
    console.print()


def _print_styled(style: str, message: str) -> None:
    # messages are plain text, never markup
    console.print(f"[{style}]{escape(message)}[/{style}]")


def print_success(message: str) -> None:
    _print_styled("bold green", message)


def print_error(message: str) -> None:
    _print_styled("bold red", message)


def print_warning(message: str) -> None:
    _print_styled("bold yellow", message)
