"""blueprintkit engine configuration.

Centralised, typed configuration for the generation engine. Settings use
Pydantic v2 models so they are validated at construction time and can be
serialised to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class ConflictPolicy(str, Enum):
    """How the dependency merger treats modules declared with different versions."""

    HIGHEST = "highest"  # highest semantic version wins
    STRICT = "strict"  # any disagreement is a DependencyConflictError


class OutputMode(str, Enum):
    """How the materializer treats a pre-existing, non-empty output directory."""

    FAIL = "fail"
    OVERWRITE = "overwrite"
    MERGE = "merge"


DEFAULT_MANIFEST_FILENAME = ".blueprint/dependencies.json"

_TRUTHY = {"1", "true", "yes", "on"}


class EngineConfig(BaseModel):
    """Global engine configuration.

    Instances are typically created once by the CLI or a server process and
    passed to every ``Generator``.  The config is never mutated by the engine.
    """

    blueprints_dir: Path = Field(default=Path("./blueprints"))
    max_workers: int = Field(
        default=8, ge=1, description="Upper bound on concurrent evaluate/render workers"
    )
    hook_timeout: int = Field(
        default=300, ge=1, description="Default per-hook timeout in seconds"
    )
    conflict_policy: ConflictPolicy = Field(default=ConflictPolicy.HIGHEST)
    max_template_bytes: int = Field(
        default=1024 * 1024, ge=1, description="Largest template body the renderer accepts"
    )
    manifest_filename: str = Field(
        default=DEFAULT_MANIFEST_FILENAME,
        description="Path of the merged dependency manifest, relative to the output root",
    )
    staging_prefix: str = Field(default=".blueprint-staging-")
    verbose: bool = Field(default=False)

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file.

        Returns:
            The path where the file was written.
        """
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "EngineConfig":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build an ``EngineConfig`` from environment variables.

        Recognised variables (all optional):
            BLUEPRINT_DIR, BLUEPRINT_MAX_WORKERS, BLUEPRINT_HOOK_TIMEOUT,
            BLUEPRINT_CONFLICT_POLICY, BLUEPRINT_MANIFEST_FILENAME,
            BLUEPRINT_VERBOSE.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("BLUEPRINT_DIR"):
            kwargs["blueprints_dir"] = Path(os.environ["BLUEPRINT_DIR"])
        if os.environ.get("BLUEPRINT_MAX_WORKERS"):
            kwargs["max_workers"] = int(os.environ["BLUEPRINT_MAX_WORKERS"])
        if os.environ.get("BLUEPRINT_HOOK_TIMEOUT"):
            kwargs["hook_timeout"] = int(os.environ["BLUEPRINT_HOOK_TIMEOUT"])
        if os.environ.get("BLUEPRINT_CONFLICT_POLICY"):
            kwargs["conflict_policy"] = os.environ["BLUEPRINT_CONFLICT_POLICY"].strip().lower()
        if os.environ.get("BLUEPRINT_MANIFEST_FILENAME"):
            kwargs["manifest_filename"] = os.environ["BLUEPRINT_MANIFEST_FILENAME"]
        if os.environ.get("BLUEPRINT_VERBOSE"):
            kwargs["verbose"] = os.environ["BLUEPRINT_VERBOSE"].strip().lower() in _TRUTHY

        return cls(**kwargs)
