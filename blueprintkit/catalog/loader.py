"""Blueprint sources and manifest loading.

A *source* supplies raw manifest and template text; it knows nothing about
manifests beyond file names.  ``FilesystemSource`` reads a directory tree of
blueprints; ``MemorySource`` serves blueprints embedded in the program (or
built by tests).  ``load_manifest`` turns a source entry into a validated
``BlueprintManifest``.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

import yaml
from pydantic import ValidationError as PydanticValidationError

from blueprintkit.catalog.models import BlueprintManifest
from blueprintkit.errors import CatalogError


MANIFEST_FILENAMES: tuple[str, ...] = ("template.yaml", "blueprint.yaml")

# Keys of the ``include:`` section whose referenced files hold a list to merge.
_INCLUDABLE_SECTIONS: tuple[str, ...] = ("variables", "dependencies")


# ---------------------------------------------------------------------------
# Source protocol
# ---------------------------------------------------------------------------


class BlueprintSource(Protocol):
    """Read-only access to raw blueprint files."""

    def blueprint_keys(self) -> list[str]:
        """Return the keys of every blueprint directory that holds a manifest."""
        ...

    def read_text(self, key: str, relative_path: str) -> str:
        """Return the text of *relative_path* inside blueprint *key*.

        Raises:
            FileNotFoundError: If the file does not exist.
        """
        ...


def _check_relative(relative_path: str) -> PurePosixPath:
    path = PurePosixPath(relative_path.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts:
        raise FileNotFoundError(f"refusing to read outside the blueprint: {relative_path}")
    return path


class FilesystemSource:
    """Blueprints stored as directories under a root path.

    Every directory (at any depth) containing ``template.yaml`` or
    ``blueprint.yaml`` is one blueprint; its key is the directory path
    relative to the root, in POSIX form.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def blueprint_keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        keys: set[str] = set()
        for name in MANIFEST_FILENAMES:
            for manifest in self.root.rglob(name):
                keys.add(manifest.parent.relative_to(self.root).as_posix())
        return sorted(keys)

    def read_text(self, key: str, relative_path: str) -> str:
        rel = _check_relative(relative_path)
        return (self.root / key / Path(*rel.parts)).read_text(encoding="utf-8")


class MemorySource:
    """Blueprints held in memory as ``{key: {relative_path: text}}``."""

    def __init__(self, blueprints: Mapping[str, Mapping[str, str]]) -> None:
        self._blueprints = {
            key: {PurePosixPath(p).as_posix(): text for p, text in files.items()}
            for key, files in blueprints.items()
        }

    def blueprint_keys(self) -> list[str]:
        return sorted(
            key
            for key, files in self._blueprints.items()
            if any(name in files for name in MANIFEST_FILENAMES)
        )

    def read_text(self, key: str, relative_path: str) -> str:
        rel = _check_relative(relative_path).as_posix()
        try:
            return self._blueprints[key][rel]
        except KeyError:
            raise FileNotFoundError(f"{key}/{rel}") from None


# ---------------------------------------------------------------------------
# Manifest loading
# ---------------------------------------------------------------------------


def derive_blueprint_id(data: Mapping[str, Any], key: str) -> str:
    """Work out the catalog id of a manifest that does not declare one.

    ``<type>-<architecture>`` when an architecture other than ``standard`` is
    given, ``<type>`` when only a type is given, then the manifest ``name``,
    then the last component of the directory key.
    """
    explicit = str(data.get("id") or "").strip()
    if explicit:
        return explicit
    bp_type = str(data.get("type") or "").strip()
    architecture = str(data.get("architecture") or "").strip()
    if bp_type:
        if architecture and architecture != "standard":
            return f"{bp_type}-{architecture}"
        return bp_type
    name = str(data.get("name") or "").strip()
    if name:
        return name
    return PurePosixPath(key).name or key


def _parse_yaml(text: str, where: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CatalogError(f"failed to parse {where}", cause=exc) from exc


def _read_manifest_text(source: BlueprintSource, key: str) -> tuple[str, str]:
    for name in MANIFEST_FILENAMES:
        try:
            return name, source.read_text(key, name)
        except FileNotFoundError:
            continue
    raise CatalogError(f"no manifest found in blueprint '{key}'")


def _apply_includes(source: BlueprintSource, key: str, data: dict[str, Any]) -> None:
    """Append the lists from ``include:`` files to the manifest's own lists."""
    include = data.pop("include", None) or {}
    if not isinstance(include, Mapping):
        raise CatalogError(f"'include' in blueprint '{key}' must be a mapping")

    for section in _INCLUDABLE_SECTIONS:
        rel = include.get(section)
        if not rel:
            continue
        try:
            text = source.read_text(key, str(rel).strip())
        except FileNotFoundError as exc:
            raise CatalogError(
                f"blueprint '{key}' includes missing file {rel!r}", cause=exc
            ) from exc
        included = _parse_yaml(text, f"{key}/{rel}") or {}
        items = included.get(section, []) if isinstance(included, Mapping) else included
        if not isinstance(items, list):
            raise CatalogError(f"{key}/{rel}: '{section}' must be a list")
        data[section] = list(data.get(section) or []) + items


def load_manifest(source: BlueprintSource, key: str) -> BlueprintManifest:
    """Read, expand and validate the manifest of blueprint *key*.

    Raises:
        CatalogError: If the manifest is missing, unparsable or invalid.
    """
    filename, text = _read_manifest_text(source, key)
    data = _parse_yaml(text, f"{key}/{filename}")
    if not isinstance(data, dict):
        raise CatalogError(f"{key}/{filename} must contain a mapping")

    _apply_includes(source, key, data)

    data["id"] = derive_blueprint_id(data, key)
    metadata = dict(data.get("metadata") or {})
    metadata["path"] = key
    data["metadata"] = metadata

    # Only the sections the engine understands are kept; blueprints also carry
    # documentation-only sections (features, validation, ...).
    known = set(BlueprintManifest.model_fields)
    try:
        return BlueprintManifest.model_validate({k: v for k, v in data.items() if k in known})
    except PydanticValidationError as exc:
        raise CatalogError(f"invalid manifest {key}/{filename}", cause=exc) from exc
