"""Pydantic v2 models describing a blueprint manifest.

A manifest is loaded once by the catalog and never mutated afterwards: every
model is frozen and every sequence is stored as a tuple, so a single
``BlueprintManifest`` can be shared across concurrent generation calls.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class VariableKind(str, Enum):
    """Type of a blueprint variable."""
    STRING = "string"
    BOOL = "bool"
    INT = "int"
    ENUM = "enum"


_KIND_ALIASES: dict[str, VariableKind] = {
    "string": VariableKind.STRING,
    "str": VariableKind.STRING,
    "bool": VariableKind.BOOL,
    "boolean": VariableKind.BOOL,
    "int": VariableKind.INT,
    "integer": VariableKind.INT,
    "enum": VariableKind.ENUM,
    "select": VariableKind.ENUM,
    "choice": VariableKind.ENUM,
}

# Scalar values a manifest default (or a raw override) may carry.
Scalar = Union[bool, int, str]


def zero_value(kind: VariableKind) -> Scalar:
    """Return the value an unset variable of *kind* evaluates to."""
    if kind is VariableKind.BOOL:
        return False
    if kind is VariableKind.INT:
        return 0
    return ""


# ---------------------------------------------------------------------------
# Manifest entries
# ---------------------------------------------------------------------------

class VariableDefinition(BaseModel):
    """A configurable variable declared by a blueprint."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Variable name, unique per manifest")
    kind: VariableKind = Field(default=VariableKind.STRING, alias="type")
    description: str = Field(default="")
    required: bool = Field(default=False)
    default: Optional[Scalar] = Field(default=None)
    choices: tuple[str, ...] = Field(default=(), description="Allowed values for enum variables")
    validation: str = Field(default="", description="Regex a string/enum value must fully match")

    @model_validator(mode="before")
    @classmethod
    def _normalise_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_kind = data.get("type", data.get("kind"))
        if isinstance(raw_kind, str):
            kind = _KIND_ALIASES.get(raw_kind.strip().lower())
            if kind is None:
                raise ValueError(f"unknown variable type {raw_kind!r}")
            data.pop("kind", None)
            data["type"] = kind
            # YAML reads unquoted `1.21` as a float; a string default keeps its text.
            default = data.get("default")
            if (
                kind in (VariableKind.STRING, VariableKind.ENUM)
                and isinstance(default, (int, float))
                and not isinstance(default, bool)
            ):
                data["default"] = str(default)
        if "choices" not in data and "options" in data:
            data["choices"] = data.pop("options")
        if data.get("choices") is None:
            data["choices"] = ()
        return data

    @model_validator(mode="after")
    def _check_default(self) -> "VariableDefinition":
        if self.kind is VariableKind.ENUM and not self.choices:
            raise ValueError(f"enum variable '{self.name}' declares no choices")
        if self.validation:
            try:
                re.compile(self.validation)
            except re.error as exc:
                raise ValueError(
                    f"variable '{self.name}' has an invalid validation pattern: {exc}"
                ) from exc
        if self.default is not None:
            problem = self.check_value(self.default)
            if problem:
                raise ValueError(f"default of variable '{self.name}' is invalid: {problem}")
        return self

    def check_value(self, value: Any) -> str:
        """Return a description of why *value* violates this variable, or ``""``.

        *value* must already be of the variable's Python type; coercion of raw
        strings happens in the resolver.
        """
        if self.kind is VariableKind.BOOL:
            if not isinstance(value, bool):
                return f"expected bool, got {type(value).__name__}"
            return ""
        if self.kind is VariableKind.INT:
            if isinstance(value, bool) or not isinstance(value, int):
                return f"expected int, got {type(value).__name__}"
            return ""
        if not isinstance(value, str):
            return f"expected string, got {type(value).__name__}"
        if self.kind is VariableKind.ENUM and value not in self.choices:
            return f"{value!r} is not one of {', '.join(self.choices)}"
        # Empty optional strings are allowed to skip the pattern.
        if self.validation and value and re.fullmatch(self.validation, value) is None:
            return f"{value!r} does not match pattern {self.validation!r}"
        return ""


class FileEntry(BaseModel):
    """A template file and where it lands in the generated project."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(..., min_length=1, description="Template path relative to the blueprint directory")
    destination: str = Field(..., min_length=1, description="Destination path; may itself be a template")
    condition: str = Field(default="", description="Inclusion predicate; empty means always")
    executable: bool = Field(default=False)

    @field_validator("source")
    @classmethod
    def _source_is_relative(cls, value: str) -> str:
        if ".." in value.replace("\\", "/").split("/"):
            raise ValueError(f"template source {value!r} contains path traversal")
        if value.startswith(("/", "~")) or ":" in value:
            raise ValueError(f"template source {value!r} must be a relative path")
        return value

    @field_validator("condition", mode="before")
    @classmethod
    def _none_condition(cls, value: Any) -> Any:
        return "" if value is None else value


class DependencyDeclaration(BaseModel):
    """A module the generated project depends on."""

    model_config = ConfigDict(frozen=True)

    module: str = Field(..., min_length=1)
    version: str = Field(default="", description="Empty means unpinned")
    condition: str = Field(default="")

    @field_validator("version", "condition", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else str(value)

    def spec(self) -> str:
        """Return ``module@version`` (or just the module when unpinned)."""
        return f"{self.module}@{self.version}" if self.version else self.module


class PostHook(BaseModel):
    """A command run inside the generated project after materialization."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    args: tuple[str, ...] = Field(default=())
    work_dir: str = Field(default="")
    condition: str = Field(default="")
    required: bool = Field(default=False)
    timeout: Optional[int] = Field(default=None, ge=1, description="Seconds; engine default when unset")

    @field_validator("work_dir", "condition", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("args", mode="before")
    @classmethod
    def _none_args(cls, value: Any) -> Any:
        return () if value is None else value


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

class BlueprintManifest(BaseModel):
    """The full description of one blueprint."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Catalog key")
    name: str = Field(default="")
    description: str = Field(default="")
    type: str = Field(default="")
    architecture: str = Field(default="")
    version: str = Field(default="")
    author: str = Field(default="")
    license: str = Field(default="")
    variables: tuple[VariableDefinition, ...] = Field(default=())
    files: tuple[FileEntry, ...] = Field(default=())
    dependencies: tuple[DependencyDeclaration, ...] = Field(default=())
    post_hooks: tuple[PostHook, ...] = Field(default=())
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("variables", "files", "dependencies", "post_hooks", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return () if value is None else value

    @field_validator("version", mode="before")
    @classmethod
    def _version_str(cls, value: Any) -> Any:
        return "" if value is None else str(value)

    @model_validator(mode="after")
    def _unique_variable_names(self) -> "BlueprintManifest":
        seen: set[str] = set()
        duplicates: list[str] = []
        for variable in self.variables:
            if variable.name in seen:
                duplicates.append(variable.name)
            seen.add(variable.name)
        if duplicates:
            raise ValueError(f"duplicate variable names: {', '.join(sorted(set(duplicates)))}")
        return self

    def variable(self, name: str) -> Optional[VariableDefinition]:
        """Return the variable called *name*, or ``None``."""
        for variable in self.variables:
            if variable.name == name:
                return variable
        return None

    @property
    def variable_names(self) -> frozenset[str]:
        return frozenset(v.name for v in self.variables)

    @property
    def path(self) -> str:
        """Directory the manifest was loaded from (empty for in-memory blueprints)."""
        return str(self.metadata.get("path", ""))
