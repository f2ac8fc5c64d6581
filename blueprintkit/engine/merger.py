"""Dependency merging.

Several manifest entries may declare the same module.  ``merge_dependencies``
groups the included declarations by module and settles each group on one
version according to the active ``ConflictPolicy``.  The result does not
depend on the order of the input declarations.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Optional, Union

from blueprintkit.catalog.models import DependencyDeclaration
from blueprintkit.config import ConflictPolicy
from blueprintkit.errors import DependencyConflictError


# ---------------------------------------------------------------------------
# Semantic versions
# ---------------------------------------------------------------------------

_SEMVER_RE = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)

VersionKey = tuple[int, int, int, int, tuple[tuple[int, Union[int, str]], ...]]


def parse_version(version: str) -> Optional[VersionKey]:
    """Return an ordering key for *version*, or ``None`` if it is not semver.

    ``v1.10.9``, ``1.2`` and ``v2.0.0-rc.1`` are accepted.  A pre-release
    orders below its release; build metadata (``+incompatible``) is ignored.
    """
    match = _SEMVER_RE.match(version.strip())
    if match is None:
        return None
    major = int(match.group("major"))
    minor = int(match.group("minor") or 0)
    patch = int(match.group("patch") or 0)
    pre = match.group("pre")
    if not pre:
        return (major, minor, patch, 1, ())
    # Numeric identifiers sort below alphanumeric ones.
    identifiers = tuple(
        (0, int(part)) if part.isdigit() else (1, part) for part in pre.split(".")
    )
    return (major, minor, patch, 0, identifiers)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MergedDependency:
    """One module of the merged manifest."""

    module: str
    version: str  # empty when no declaration pinned a version
    declared_versions: tuple[str, ...] = ()
    declarations: int = 1

    def spec(self) -> str:
        return f"{self.module}@{self.version}" if self.version else self.module


@dataclass(frozen=True)
class ResolvedConflict:
    """A module whose declarations disagreed and how it was settled."""

    module: str
    versions: tuple[str, ...]
    chosen: str


@dataclass(frozen=True)
class MergedManifest:
    """The deduplicated dependency list, one entry per module, sorted by module."""

    dependencies: tuple[MergedDependency, ...] = ()
    conflicts: tuple[ResolvedConflict, ...] = ()
    policy: ConflictPolicy = ConflictPolicy.HIGHEST

    def __len__(self) -> int:
        return len(self.dependencies)

    def __contains__(self, module: object) -> bool:
        return any(d.module == module for d in self.dependencies)

    def version_of(self, module: str) -> Optional[str]:
        for dep in self.dependencies:
            if dep.module == module:
                return dep.version
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy": self.policy.value,
            "dependencies": [{"module": d.module, "version": d.version} for d in self.dependencies],
            "conflicts": [
                {"module": c.module, "versions": list(c.versions), "chosen": c.chosen}
                for c in self.conflicts
            ],
        }


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------


def _settle(module: str, versions: list[str], policy: ConflictPolicy) -> str:
    """Pick the version of *module* from its distinct pinned *versions*."""
    keys = {v: parse_version(v) for v in versions}
    unparsable = sorted(v for v, k in keys.items() if k is None)
    if unparsable:
        raise DependencyConflictError(
            module, versions, f"cannot order non-semantic version(s) {', '.join(unparsable)}"
        )

    top = max(k for k in keys.values() if k is not None)
    if policy is ConflictPolicy.STRICT and any(k != top for k in keys.values()):
        raise DependencyConflictError(module, versions, "strict policy")
    # Equal versions spelled differently (v1.2 / 1.2.0): keep the greatest spelling.
    return max(v for v, k in keys.items() if k == top)


def merge_dependencies(
    declarations: Iterable[DependencyDeclaration],
    policy: ConflictPolicy = ConflictPolicy.HIGHEST,
) -> MergedManifest:
    """Deduplicate *declarations* into one version per module.

    Unpinned declarations defer to pinned ones.  When pinned versions
    disagree, ``HIGHEST`` keeps the greatest semantic version and ``STRICT``
    fails.

    Raises:
        DependencyConflictError: If the disagreement cannot be settled.
    """
    policy = ConflictPolicy(policy)
    grouped: dict[str, list[str]] = {}
    for declaration in declarations:
        grouped.setdefault(declaration.module, []).append(declaration.version.strip())

    merged: list[MergedDependency] = []
    conflicts: list[ResolvedConflict] = []
    for module in sorted(grouped):
        declared = grouped[module]
        pinned = sorted({v for v in declared if v})
        if not pinned:
            version = ""
        elif len(pinned) == 1:
            version = pinned[0]
        else:
            version = _settle(module, pinned, policy)
            conflicts.append(ResolvedConflict(module, tuple(pinned), version))
        merged.append(
            MergedDependency(
                module=module,
                version=version,
                declared_versions=tuple(sorted(set(declared))),
                declarations=len(declared),
            )
        )

    return MergedManifest(dependencies=tuple(merged), conflicts=tuple(conflicts), policy=policy)
