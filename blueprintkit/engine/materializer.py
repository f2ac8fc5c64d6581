"""Writing a rendered file set to disk, all or nothing.

Files are first written to a staging directory created next to the target,
then moved into place.  Any failure, including cancellation, removes
everything this run created before the error propagates:

* ``fail`` / ``overwrite`` modes, or a missing or empty target: the staged
  tree replaces the target directory in one rename.  A target created by
  someone else in the meantime fails the run.
* ``merge`` mode into a populated directory: staged files are moved in one
  by one; files they displace are backed up and put back on rollback.
"""

from __future__ import annotations

import asyncio
import errno
import json
import os
import shutil
import stat
import uuid
from collections.abc import Sequence
from contextlib import suppress
from pathlib import Path, PurePosixPath
from typing import Optional

from blueprintkit.config import DEFAULT_MANIFEST_FILENAME, OutputMode
from blueprintkit.engine.merger import MergedManifest
from blueprintkit.engine.templates import RenderedFile, normalise_destination
from blueprintkit.errors import GenerationCancelledError, MaterializationError


_EXEC_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH

# (relative POSIX path, bytes, executable)
_Payload = list[tuple[str, bytes, bool]]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _write_file(path: Path, content: bytes, executable: bool = False) -> None:
    """Synchronous helper: create parent dirs and write content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if executable:
        path.chmod(path.stat().st_mode | _EXEC_BITS)


def _missing_ancestors(path: Path) -> list[Path]:
    """Return the directories ``mkdir(parents=True)`` would create, outermost first."""
    missing: list[Path] = []
    current = path
    while not current.exists() and current != current.parent:
        missing.append(current)
        current = current.parent
    return list(reversed(missing))


def _remove_dirs(directories: Sequence[Path]) -> None:
    """Remove *directories* innermost first, leaving any that are not empty."""
    for directory in reversed(directories):
        with suppress(OSError):
            directory.rmdir()


def _check_cancel(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelledError("materialize")


def _wrap(exc: BaseException, output: Path, current: str) -> BaseException:
    if isinstance(exc, OSError) and not isinstance(exc, MaterializationError):
        where = f"{current} in {output}" if current else str(output)
        return MaterializationError(f"failed to write {where}", str(output / current), cause=exc)
    return exc


async def _write_staged(path: Path, content: bytes, executable: bool) -> None:
    """Write in a worker thread; a cancelled caller still waits for the thread."""
    write = asyncio.ensure_future(asyncio.to_thread(_write_file, path, content, executable))
    try:
        await asyncio.shield(write)
    except asyncio.CancelledError:
        await asyncio.gather(write, return_exceptions=True)
        raise


def _swap_in(staging: Path, output: Path) -> None:
    """Rename *staging* to *output*, which must still be absent.

    ``os.rename`` never nests the staged tree inside a directory that
    appeared since the output was inspected; it fails instead.
    """
    if output.exists() or output.is_symlink():
        raise MaterializationError(f"output path {output} appeared during generation", str(output))
    try:
        os.rename(staging, output)
    except OSError as exc:
        if exc.errno in (errno.EEXIST, errno.ENOTEMPTY, errno.ENOTDIR):
            raise MaterializationError(
                f"output path {output} appeared during generation", str(output), cause=exc
            ) from exc
        raise


def manifest_document(manifest: MergedManifest, blueprint_id: str) -> bytes:
    """Serialise the merged dependency manifest written into the project."""
    document = {
        "blueprint": blueprint_id,
        "policy": manifest.policy.value,
        "dependencies": [
            {"module": d.module, "version": d.version} for d in manifest.dependencies
        ],
    }
    return (json.dumps(document, indent=2) + "\n").encode("utf-8")


def build_payload(
    files: Sequence[RenderedFile],
    manifest: Optional[MergedManifest],
    blueprint_id: str = "",
    manifest_filename: str = DEFAULT_MANIFEST_FILENAME,
) -> _Payload:
    """Return everything to write: the rendered files plus the manifest file."""
    payload: _Payload = [(f.path, f.content, f.executable) for f in files]
    if manifest is not None and manifest_filename:
        manifest_path = normalise_destination(manifest_filename, "manifest_filename")
        if any(PurePosixPath(rel) == PurePosixPath(manifest_path) for rel, _, _ in payload):
            raise MaterializationError(
                f"rendered file collides with the dependency manifest path {manifest_path}",
                manifest_path,
            )
        payload.append((manifest_path, manifest_document(manifest, blueprint_id), False))
    return payload


def inspect_output(output: Path, mode: OutputMode) -> str:
    """Classify *output* as ``missing``, ``empty`` or ``populated``.

    Raises:
        MaterializationError: If *output* is not a directory, or is a
            populated directory and *mode* is ``fail``.
    """
    if not output.exists() and not output.is_symlink():
        return "missing"
    if not output.is_dir():
        raise MaterializationError(f"output path {output} exists and is not a directory", str(output))
    if not any(output.iterdir()):
        return "empty"
    if mode is OutputMode.FAIL:
        raise MaterializationError(
            f"output directory {output} is not empty (use overwrite or merge mode)", str(output)
        )
    return "populated"


# ---------------------------------------------------------------------------
# Commit strategies
# ---------------------------------------------------------------------------


async def _stage_and_swap(
    output: Path,
    payload: _Payload,
    state: str,
    staging_prefix: str,
    cancel_event: Optional[asyncio.Event],
) -> None:
    """Write *payload* to a staging dir, then move it over *output*."""
    created_parents = _missing_ancestors(output.parent)
    staging = output.parent / f"{staging_prefix}{uuid.uuid4().hex[:12]}"
    displaced: Optional[Path] = None
    current = ""
    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        staging.mkdir()
        for rel, content, executable in payload:
            _check_cancel(cancel_event)
            current = rel
            await _write_staged(staging / rel, content, executable)
        current = ""
        _check_cancel(cancel_event)

        if state == "populated":
            displaced = output.parent / f"{staging_prefix}old-{uuid.uuid4().hex[:12]}"
            output.rename(displaced)
        elif state == "empty":
            output.rmdir()
        _swap_in(staging, output)
    except BaseException as exc:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
        if displaced is not None and displaced.exists() and not output.exists():
            displaced.rename(output)
        elif state == "empty" and not output.exists():
            output.mkdir()
        _remove_dirs(created_parents)
        wrapped = _wrap(exc, output, current)
        if wrapped is exc:
            raise
        raise wrapped from exc

    if displaced is not None:
        shutil.rmtree(displaced, ignore_errors=True)


async def _merge_into(
    output: Path,
    payload: _Payload,
    staging_prefix: str,
    cancel_event: Optional[asyncio.Event],
) -> None:
    """Move staged files into a populated *output*, backing up what they replace."""
    staging = output.parent / f"{staging_prefix}{uuid.uuid4().hex[:12]}"
    placed: list[tuple[Path, Optional[Path]]] = []
    created_dirs: list[Path] = []
    current = ""
    try:
        staging.mkdir()
        for rel, content, executable in payload:
            _check_cancel(cancel_event)
            current = rel
            await _write_staged(staging / "new" / rel, content, executable)

        for rel, _, _ in payload:
            _check_cancel(cancel_event)
            current = rel
            target = output / rel
            if target.is_dir():
                raise MaterializationError(f"{rel} exists in {output} and is a directory", str(target))
            created_dirs.extend(_missing_ancestors(target.parent))
            target.parent.mkdir(parents=True, exist_ok=True)
            backup: Optional[Path] = None
            if target.exists() or target.is_symlink():
                backup = staging / "backup" / rel
                backup.parent.mkdir(parents=True, exist_ok=True)
                os.replace(target, backup)
            placed.append((target, backup))
            os.replace(staging / "new" / rel, target)
    except BaseException as exc:
        for target, backup in reversed(placed):
            if target.exists() or target.is_symlink():
                target.unlink()
            if backup is not None:
                os.replace(backup, target)
        _remove_dirs(created_dirs)
        shutil.rmtree(staging, ignore_errors=True)
        wrapped = _wrap(exc, output, current)
        if wrapped is exc:
            raise
        raise wrapped from exc

    shutil.rmtree(staging, ignore_errors=True)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def materialize(
    output_dir: str | Path,
    files: Sequence[RenderedFile],
    manifest: Optional[MergedManifest] = None,
    mode: OutputMode = OutputMode.FAIL,
    *,
    blueprint_id: str = "",
    manifest_filename: str = DEFAULT_MANIFEST_FILENAME,
    staging_prefix: str = ".blueprint-staging-",
    cancel_event: Optional[asyncio.Event] = None,
) -> list[Path]:
    """Write *files* (and the merged *manifest*) under *output_dir*.

    Args:
        output_dir: Project root to create or fill.
        files: Rendered files with POSIX paths relative to *output_dir*.
        manifest: Merged dependencies, written to *manifest_filename*.
            ``None`` skips the manifest file.
        mode: What to do when *output_dir* already holds files.
        blueprint_id: Recorded in the manifest file.
        manifest_filename: Manifest path relative to *output_dir*.
        staging_prefix: Name prefix of the sibling staging directory.
        cancel_event: Checked between files; when set the run rolls back.

    Returns:
        The absolute paths written, in input order (manifest last).

    Raises:
        MaterializationError: On any filesystem failure, after rollback.
        GenerationCancelledError: If cancelled, after rollback.
    """
    mode = OutputMode(mode)
    output = Path(output_dir).absolute()
    payload = build_payload(files, manifest, blueprint_id, manifest_filename)
    state = inspect_output(output, mode)

    if state == "populated" and mode is OutputMode.MERGE:
        await _merge_into(output, payload, staging_prefix, cancel_event)
    else:
        await _stage_and_swap(output, payload, state, staging_prefix, cancel_event)

    return [output / rel for rel, _, _ in payload]
