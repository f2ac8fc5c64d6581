"""Blueprint catalog: manifest models, sources and the immutable index.

Quick usage::

    from blueprintkit.catalog import Catalog

    catalog = Catalog.from_directory("./blueprints")
    manifest = catalog.get("web-api")
"""

from blueprintkit.catalog.loader import (
    BlueprintSource,
    FilesystemSource,
    MemorySource,
    load_manifest,
)
from blueprintkit.catalog.models import (
    BlueprintManifest,
    DependencyDeclaration,
    FileEntry,
    PostHook,
    VariableDefinition,
    VariableKind,
)
from blueprintkit.catalog.registry import Catalog

__all__ = [
    "BlueprintManifest",
    "BlueprintSource",
    "Catalog",
    "DependencyDeclaration",
    "FileEntry",
    "FilesystemSource",
    "MemorySource",
    "PostHook",
    "VariableDefinition",
    "VariableKind",
    "load_manifest",
]
