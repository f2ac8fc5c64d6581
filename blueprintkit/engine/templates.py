"""Jinja2 template rendering for blueprint files and destination paths.

Provides the TemplateRenderer class which renders template bodies and
destination paths against a ``ResolvedConfig``.  Templates run in an
immutable sandbox with ``StrictUndefined`` and no loader, so a template can
neither read the filesystem nor reference a variable that does not exist.

Blueprints written for the Go template syntax refer to variables as
``{{.Name}}``; the leading dot is accepted inside tags and means the same as
``{{ Name }}``.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Optional, TypeVar

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from blueprintkit.catalog.models import FileEntry
from blueprintkit.engine.conditions import GenerationPlan
from blueprintkit.engine.resolver import ResolvedConfig
from blueprintkit.errors import GenerationCancelledError, PathCollisionError, RenderError


T = TypeVar("T")

DEFAULT_MAX_TEMPLATE_BYTES = 1024 * 1024


@dataclass(frozen=True)
class RenderedFile:
    """A fully rendered file, ready to be materialized."""

    path: str  # POSIX path relative to the output root
    content: bytes
    executable: bool = False
    source: str = ""


# ---------------------------------------------------------------------------
# Helper library (filters and globals)
# ---------------------------------------------------------------------------


def _words(value: Any) -> list[str]:
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", str(value))
    text = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1 \2", text)
    return [w for w in re.split(r"[^A-Za-z0-9]+", text) if w]


def _upper(value: Any) -> str:
    return str(value).upper()


def _lower(value: Any) -> str:
    return str(value).lower()


def _title(value: Any) -> str:
    return str(value).title()


def _snake_case(value: Any) -> str:
    """Convert ``SomeThing`` or ``some-thing`` to ``some_thing``."""
    return "_".join(w.lower() for w in _words(value))


def _kebab_case(value: Any) -> str:
    """Convert ``SomeThing`` or ``some_thing`` to ``some-thing``."""
    return "-".join(w.lower() for w in _words(value))


def _pascal_case(value: Any) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``SomeThing``."""
    return "".join(w[:1].upper() + w[1:].lower() for w in _words(value))


def _camel_case(value: Any) -> str:
    """Convert ``some-thing`` or ``some_thing`` to ``someThing``."""
    pascal = _pascal_case(value)
    if pascal:
        return pascal[0].lower() + pascal[1:]
    return ""


def _slugify(value: Any) -> str:
    """Convert a string to a URL/filename-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", str(value).lower().strip())
    return slug.strip("-")


def _pluralize(value: Any) -> str:
    word = str(value)
    if not word:
        return word
    lowered = word.lower()
    if lowered.endswith("y") and len(word) > 1 and lowered[-2] not in "aeiou":
        return word[:-1] + "ies"
    if lowered.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def _singularize(value: Any) -> str:
    word = str(value)
    lowered = word.lower()
    if lowered.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if lowered.endswith(("sses", "xes", "zes", "ches", "shes")):
        return word[:-2]
    if lowered.endswith("s") and not lowered.endswith("ss"):
        return word[:-1]
    return word


def _default_if_empty(value: Any, default: Any = "") -> Any:
    if value is None or value == "":
        return default
    return value


def _quote(value: Any) -> str:
    """Double-quote *value* with JSON escaping (``"a\\"b"``)."""
    if isinstance(value, bool):
        value = "true" if value else "false"
    return json.dumps(str(value))


HELPERS: dict[str, Callable[..., Any]] = {
    "upper": _upper,
    "lower": _lower,
    "title": _title,
    "snake_case": _snake_case,
    "camel_case": _camel_case,
    "pascal_case": _pascal_case,
    "kebab_case": _kebab_case,
    "slugify": _slugify,
    "pluralize": _pluralize,
    "singularize": _singularize,
    "default_if_empty": _default_if_empty,
    "quote": _quote,
}


# ---------------------------------------------------------------------------
# Leading-dot field references
# ---------------------------------------------------------------------------

_OPENER_RE = re.compile(r"\{[{%#]")
_RAW_BEGIN_RE = re.compile(r"\{%[-+]?\s*raw\s*[-+]?%\}")
_RAW_END_RE = re.compile(r"\{%[-+]?\s*endraw\s*[-+]?%\}")
_CLOSERS = {"{{": "}}", "{%": "%}"}
_STRING_RE = re.compile(r"\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'", re.DOTALL)
# A dot that starts an operand: not an attribute access like ``user.name``.
_LEADING_DOT_RE = re.compile(r"(?<![\w\])}.'\"])\.(?=[A-Za-z_])")


def _tag_end(text: str, start: int, closer: str) -> int:
    """Return the index just past *closer*, skipping string literals, or -1."""
    i = start
    while i < len(text):
        ch = text[i]
        if ch in "\"'":
            i += 1
            while i < len(text) and text[i] != ch:
                i += 2 if text[i] == "\\" else 1
            i += 1
        elif text.startswith(closer, i):
            return i + len(closer)
        else:
            i += 1
    return -1


def _strip_leading_dots(tag_body: str) -> str:
    # Blank out string contents so only code is matched; offsets stay aligned.
    masked = _STRING_RE.sub(
        lambda m: m.group(0)[0] + " " * (len(m.group(0)) - 2) + m.group(0)[-1], tag_body
    )
    drop = {m.start() for m in _LEADING_DOT_RE.finditer(masked)}
    if not drop:
        return tag_body
    return "".join(ch for i, ch in enumerate(tag_body) if i not in drop)


def normalise_field_references(text: str) -> str:
    """Rewrite ``{{.Name}}``-style references to plain Jinja names.

    Only code inside ``{{ }}`` and ``{% %}`` tags is touched.  Plain text,
    comments, string literals and ``{% raw %}`` blocks come through unchanged,
    so a template can still emit a literal ``{{ .Values.image }}``.
    """
    if "." not in text:
        return text
    out: list[str] = []
    pos = 0
    while True:
        match = _OPENER_RE.search(text, pos)
        if match is None:
            out.append(text[pos:])
            break
        start = match.start()
        out.append(text[pos:start])
        opener = match.group(0)

        raw = _RAW_BEGIN_RE.match(text, start)
        if raw is not None or opener == "{#":
            if raw is not None:
                closing = _RAW_END_RE.search(text, raw.end())
                end = closing.end() if closing else len(text)
            else:
                close = text.find("#}", start + 2)
                end = close + 2 if close >= 0 else len(text)
            out.append(text[start:end])
            pos = end
            continue

        closer = _CLOSERS[opener]
        end = _tag_end(text, start + 2, closer)
        if end < 0:
            # unterminated; the parser reports it
            out.append(text[start:])
            break
        out.append(opener + _strip_leading_dots(text[start + 2 : end - 2]) + closer)
        pos = end
    return "".join(out)


# ---------------------------------------------------------------------------
# Path handling
# ---------------------------------------------------------------------------


def normalise_destination(rendered: str, source: str = "") -> str:
    """Normalise a rendered destination to a clean relative POSIX path.

    Raises:
        RenderError: If the path is empty or escapes the output root.
    """
    text = rendered.strip().replace("\\", "/").lstrip("/")
    parts = [p for p in PurePosixPath(text).parts if p not in ("", ".")] if text else []
    if not parts:
        raise RenderError("destination path renders to an empty path", source)
    if ".." in parts:
        raise RenderError(f"destination path {rendered!r} escapes the output directory", source)
    return PurePosixPath(*parts).as_posix()


# ---------------------------------------------------------------------------
# TemplateRenderer
# ---------------------------------------------------------------------------


class TemplateRenderer:
    """Renders blueprint templates in a sandboxed Jinja2 environment.

    The environment has no loader: ``include``, ``import`` and ``extends``
    fail with a ``RenderError``.  Only the variables of the resolved config
    and the helper functions are visible to a template.
    """

    def __init__(self, max_template_bytes: int = DEFAULT_MAX_TEMPLATE_BYTES) -> None:
        self.max_template_bytes = max_template_bytes
        self.env = ImmutableSandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.filters.update(HELPERS)
        self.env.globals.update(HELPERS)

    # -- Single template rendering -----------------------------------------

    def render_string(self, text: str, context: dict[str, Any], source: str = "") -> str:
        """Render an inline template string with the provided context.

        Raises:
            RenderError: On a syntax error, an undefined reference, a sandbox
                violation, or any exception raised while executing.
        """
        if len(text.encode("utf-8")) > self.max_template_bytes:
            raise RenderError(
                f"template exceeds the {self.max_template_bytes} byte limit", source
            )
        try:
            template = self.env.from_string(normalise_field_references(text))
            return template.render(**context)
        except TemplateError as exc:
            raise RenderError(exc.message or type(exc).__name__, source, cause=exc) from exc
        except Exception as exc:
            raise RenderError(f"{type(exc).__name__} while rendering", source, cause=exc) from exc

    def render_path(self, destination: str, config: ResolvedConfig, source: str = "") -> str:
        """Render and normalise a destination path template."""
        rendered = self.render_string(destination, config.as_context(), source or destination)
        return normalise_destination(rendered, source or destination)

    def render_file(self, entry: FileEntry, body: str, config: ResolvedConfig) -> RenderedFile:
        """Render both the destination and the body of *entry*."""
        path = self.render_path(entry.destination, config, entry.source)
        content = self.render_string(body, config.as_context(), entry.source)
        return RenderedFile(
            path=path,
            content=content.encode("utf-8"),
            executable=entry.executable,
            source=entry.source,
        )

    # -- Plan rendering (async) --------------------------------------------

    def render_paths(self, plan: GenerationPlan, config: ResolvedConfig) -> list[str]:
        """Render every destination of *plan* and reject collisions.

        Collisions are detected on the complete path list, so the error names
        the same paths and sources whatever order rendering happens in.

        Raises:
            PathCollisionError: If two entries share a destination.
        """
        paths = [self.render_path(e.destination, config, e.source) for e in plan.files]
        sources: dict[str, list[str]] = {}
        for entry, path in zip(plan.files, paths):
            sources.setdefault(path, []).append(entry.source)
        collisions = {p: sorted(s) for p, s in sorted(sources.items()) if len(s) > 1}
        if collisions:
            raise PathCollisionError(collisions)
        return paths

    async def render_plan(
        self,
        plan: GenerationPlan,
        config: ResolvedConfig,
        read_body: Callable[[str], str],
        *,
        max_workers: int = 8,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[RenderedFile]:
        """Render every file of *plan*, in plan order.

        Destination paths are rendered and collision-checked first; bodies are
        then read with *read_body* and rendered over at most *max_workers*
        worker threads.  The first failure cancels the renders still waiting
        for a worker and is re-raised.

        Raises:
            RenderError: From the first failing template, or a body that
                cannot be read as UTF-8 text.
            GenerationCancelledError: If *cancel_event* is set.
        """
        paths = self.render_paths(plan, config)
        context = config.as_context()
        semaphore = asyncio.Semaphore(max_workers)

        async def _render_one(entry: FileEntry, path: str) -> RenderedFile:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    raise GenerationCancelledError("render")
                try:
                    body = await asyncio.to_thread(read_body, entry.source)
                except (OSError, UnicodeDecodeError) as exc:
                    raise RenderError(
                        f"cannot read template: {exc}", entry.source, cause=exc
                    ) from exc
                content = await asyncio.to_thread(
                    self.render_string, body, context, entry.source
                )
            return RenderedFile(
                path=path,
                content=content.encode("utf-8"),
                executable=entry.executable,
                source=entry.source,
            )

        return await gather_fail_fast(
            _render_one(entry, path) for entry, path in zip(plan.files, paths)
        )


async def gather_fail_fast(aws: Iterable[Awaitable[T]]) -> list[T]:
    """Run *aws* concurrently; on the first failure cancel the rest and raise.

    Results are returned in input order.  If several tasks failed before the
    rest could be cancelled, the failure of the earliest one is raised.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if task.cancelled():
            continue
        exc = task.exception()
        if exc is not None:
            raise exc
    return [task.result() for task in tasks]


_default_renderer: Optional[TemplateRenderer] = None


def render_file(entry: FileEntry, body: str, config: ResolvedConfig) -> RenderedFile:
    """Render *entry* with a renderer using the default size limit."""
    global _default_renderer
    if _default_renderer is None:
        _default_renderer = TemplateRenderer()
    return _default_renderer.render_file(entry, body, config)
