"""Post-generation hooks.

Hooks are shell commands declared by a blueprint (``go mod tidy``,
``git init``, ...) that run inside the freshly materialized project, one at a
time, in declared order.  Each has its own timeout.  A failing required hook
stops the run; a failing optional hook is only reported.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from blueprintkit.catalog.models import PostHook
from blueprintkit.engine.resolver import ResolvedConfig
from blueprintkit.engine.templates import TemplateRenderer
from blueprintkit.errors import HookError, RenderError
from blueprintkit.utils import console, format_duration, run_command


_SHELL_WILDCARDS = ("*", "?", "[")
_MAX_OUTPUT_CHARS = 4000


class HookStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class HookOutcome:
    """What happened when one hook ran (or why it did not)."""

    name: str
    status: HookStatus
    required: bool = False
    exit_code: Optional[int] = None
    output: str = ""
    duration: float = 0.0
    command: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (HookStatus.SUCCEEDED, HookStatus.SKIPPED)

    def error(self) -> HookError:
        """Describe a failed outcome as a ``HookError``."""
        if self.status is HookStatus.TIMED_OUT:
            reason = f"timed out after {format_duration(self.duration)}"
        elif self.exit_code is not None:
            reason = f"exit code {self.exit_code}"
        else:
            reason = self.output or self.status.value
        if self.output and self.exit_code is not None:
            reason = f"{reason}: {self.output.splitlines()[-1]}"
        return HookError(self.name, reason, required=self.required)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "required": self.required,
            "exit_code": self.exit_code,
            "output": self.output,
            "duration": round(self.duration, 3),
        }


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def build_command(hook: PostHook) -> str | list[str]:
    """Return the argv list (or shell string) ``run_command`` should execute.

    Explicit ``args`` are passed straight through; a command using shell
    wildcards goes through the shell; anything else is split like a shell
    would split it and executed directly.

    Raises:
        ValueError: If the command is blank or its quoting is unbalanced.
    """
    if not hook.command.strip():
        raise ValueError("empty command")
    if hook.args:
        return [hook.command, *hook.args]
    if any(ch in hook.command for ch in _SHELL_WILDCARDS):
        return hook.command
    return shlex.split(hook.command)


def resolve_work_dir(
    hook: PostHook,
    project_dir: Path,
    config: ResolvedConfig,
    renderer: TemplateRenderer,
) -> Path:
    """Render the hook's ``work_dir`` and resolve it under *project_dir*.

    Raises:
        HookError: If the directory escapes the project or cannot be rendered.
    """
    root = project_dir.resolve()
    if not hook.work_dir:
        return root
    context = {**config.as_context(), "OutputPath": str(root)}
    try:
        rendered = renderer.render_string(hook.work_dir, context, f"hook {hook.name}").strip()
    except RenderError as exc:
        raise HookError(hook.name, f"cannot render work_dir: {exc}", required=hook.required) from exc
    work_dir = Path(rendered)
    if not work_dir.is_absolute():
        work_dir = root / work_dir
    work_dir = work_dir.resolve()
    if work_dir != root and root not in work_dir.parents:
        raise HookError(
            hook.name, f"work_dir {rendered!r} is outside the project", required=hook.required
        )
    return work_dir


def _combine(stdout: str, stderr: str) -> str:
    text = "\n".join(part for part in (stdout, stderr) if part)
    if len(text) > _MAX_OUTPUT_CHARS:
        text = "..." + text[-_MAX_OUTPUT_CHARS:]
    return text


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def run_hook(
    hook: PostHook,
    project_dir: Path,
    config: ResolvedConfig,
    *,
    timeout: float,
    renderer: Optional[TemplateRenderer] = None,
) -> HookOutcome:
    """Run a single hook and report its outcome.  Never raises ``HookError``."""
    renderer = renderer or TemplateRenderer()
    start = time.monotonic()
    shown = hook.command if not hook.args else shlex.join([hook.command, *hook.args])

    def _outcome(status: HookStatus, exit_code: Optional[int] = None, output: str = "") -> HookOutcome:
        return HookOutcome(
            name=hook.name,
            status=status,
            required=hook.required,
            exit_code=exit_code,
            output=output,
            duration=time.monotonic() - start,
            command=shown,
        )

    try:
        cwd = resolve_work_dir(hook, project_dir, config, renderer)
    except HookError as exc:
        return _outcome(HookStatus.FAILED, output=exc.message)
    if not cwd.is_dir():
        return _outcome(HookStatus.FAILED, output=f"work_dir {cwd} does not exist")

    try:
        command = build_command(hook)
    except ValueError as exc:
        return _outcome(HookStatus.FAILED, output=f"invalid command {shown!r}: {exc}")

    try:
        rc, stdout, stderr = await run_command(
            command, cwd=cwd, timeout=hook.timeout or timeout, raise_on_timeout=True
        )
    except asyncio.TimeoutError:
        return _outcome(HookStatus.TIMED_OUT)
    except FileNotFoundError as exc:
        return _outcome(HookStatus.FAILED, output=f"command not found: {exc.filename or shown}")
    except PermissionError as exc:
        return _outcome(HookStatus.FAILED, output=f"command not executable: {exc.filename or shown}")
    except OSError as exc:
        return _outcome(HookStatus.FAILED, output=f"cannot start command: {exc}")

    status = HookStatus.SUCCEEDED if rc == 0 else HookStatus.FAILED
    return _outcome(status, exit_code=rc, output=_combine(stdout, stderr))


async def run_hooks(
    hooks: tuple[PostHook, ...] | list[PostHook],
    project_dir: str | Path,
    config: ResolvedConfig,
    *,
    timeout: float = 300,
    verbose: bool = False,
    renderer: Optional[TemplateRenderer] = None,
) -> list[HookOutcome]:
    """Run *hooks* in order inside *project_dir*.

    After a required hook fails the remaining hooks are reported as
    ``skipped``.  Optional hook failures do not stop the run.

    Returns:
        One ``HookOutcome`` per hook, in declared order.
    """
    project = Path(project_dir)
    renderer = renderer or TemplateRenderer()
    outcomes: list[HookOutcome] = []
    stopped_by: Optional[str] = None

    for hook in hooks:
        if stopped_by is not None:
            outcomes.append(
                HookOutcome(
                    name=hook.name,
                    status=HookStatus.SKIPPED,
                    required=hook.required,
                    output=f"skipped after required hook '{stopped_by}' failed",
                )
            )
            continue

        if verbose:
            console.print(f"  [dim]hook[/dim] {hook.name}")
        outcome = await run_hook(hook, project, config, timeout=timeout, renderer=renderer)
        outcomes.append(outcome)

        if verbose:
            style = "green" if outcome.ok else ("red" if hook.required else "yellow")
            console.print(
                f"    [{style}]{outcome.status.value}[/{style}] "
                f"[dim]({format_duration(outcome.duration)})[/dim]"
            )
        if not outcome.ok and hook.required:
            stopped_by = hook.name

    return outcomes
