"""The blueprint catalog.

A ``Catalog`` is an explicit, immutable value: it is built once (from a
source, a directory, or a list of manifests) and then passed by reference to
every ``Generator``.  Nothing in it changes after construction, so a single
catalog can serve concurrent generation calls without locking.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path
from types import MappingProxyType
from typing import Optional

from blueprintkit.catalog.loader import BlueprintSource, FilesystemSource, load_manifest
from blueprintkit.catalog.models import BlueprintManifest
from blueprintkit.errors import BlueprintNotFoundError, CatalogError
from blueprintkit.utils import console


class Catalog:
    """Read-only index of blueprint manifests keyed by blueprint id."""

    def __init__(
        self,
        manifests: Iterable[BlueprintManifest],
        source: Optional[BlueprintSource] = None,
    ) -> None:
        index: dict[str, BlueprintManifest] = {}
        for manifest in manifests:
            if manifest.id in index:
                raise CatalogError(
                    f"duplicate blueprint id '{manifest.id}' "
                    f"({index[manifest.id].path or '<memory>'} and {manifest.path or '<memory>'})"
                )
            index[manifest.id] = manifest
        self._manifests = MappingProxyType(index)
        self._source = source

    # -- Construction ------------------------------------------------------

    @classmethod
    def from_source(cls, source: BlueprintSource, *, verbose: bool = False) -> "Catalog":
        """Load every blueprint the source offers.

        Raises:
            CatalogError: If any manifest is invalid or two share an id.
        """
        manifests = [load_manifest(source, key) for key in source.blueprint_keys()]
        catalog = cls(manifests, source)
        if verbose:
            console.print(f"[dim]Blueprint catalog loaded ({len(catalog)} blueprints)[/dim]")
        return catalog

    @classmethod
    def from_directory(cls, root: str | Path, *, verbose: bool = False) -> "Catalog":
        """Load every blueprint found under *root*."""
        return cls.from_source(FilesystemSource(root), verbose=verbose)

    # -- Lookup ------------------------------------------------------------

    def get(self, blueprint_id: str) -> BlueprintManifest:
        """Return the manifest for *blueprint_id*.

        Raises:
            BlueprintNotFoundError: If no such blueprint is registered.
        """
        try:
            return self._manifests[blueprint_id]
        except KeyError:
            raise BlueprintNotFoundError(blueprint_id) from None

    def __contains__(self, blueprint_id: object) -> bool:
        return blueprint_id in self._manifests

    def __len__(self) -> int:
        return len(self._manifests)

    def __iter__(self) -> Iterator[BlueprintManifest]:
        return iter(self.list())

    def list(self) -> list[BlueprintManifest]:
        """Return all manifests sorted by type, then id."""
        return sorted(self._manifests.values(), key=lambda m: (m.type, m.id))

    def by_type(self, blueprint_type: str) -> list[BlueprintManifest]:
        return [m for m in self.list() if m.type == blueprint_type]

    def types(self) -> list[str]:
        """Return the distinct blueprint types, sorted."""
        return sorted({m.type for m in self._manifests.values() if m.type})

    # -- Template bodies ---------------------------------------------------

    def read_template(self, blueprint_id: str, source: str) -> str:
        """Return the raw text of template *source* of blueprint *blueprint_id*.

        Raises:
            BlueprintNotFoundError: If the blueprint is unknown.
            CatalogError: If the catalog has no source or the file is missing.
        """
        manifest = self.get(blueprint_id)
        if self._source is None:
            raise CatalogError(f"catalog has no template source for blueprint '{blueprint_id}'")
        try:
            return self._source.read_text(manifest.path, source)
        except FileNotFoundError as exc:
            raise CatalogError(
                f"template {source!r} not found in blueprint '{blueprint_id}'", cause=exc
            ) from exc
