"""Configuration resolution.

Validates raw user overrides against a blueprint's variable schema and
produces a ``ResolvedConfig``: an immutable mapping of variable name to a
typed ``ConfigValue``.  Every later stage reads only this object, so it is
safe to share between concurrent render workers.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Optional

from blueprintkit.catalog.models import (
    BlueprintManifest,
    Scalar,
    VariableDefinition,
    VariableKind,
    zero_value,
)
from blueprintkit.errors import ValidationError


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigValue:
    """A variable value tagged with its kind.

    ``value`` is a ``str`` for string and enum variables, a ``bool`` for bool
    variables and an ``int`` for int variables.  ``is_set`` is ``False`` for
    optional variables that received neither an override nor a default; their
    ``value`` is then the zero value of the kind.
    """

    kind: VariableKind
    value: Scalar
    is_set: bool = True

    @classmethod
    def unset(cls, kind: VariableKind) -> "ConfigValue":
        return cls(kind=kind, value=zero_value(kind), is_set=False)


class ResolvedConfig(Mapping[str, ConfigValue]):
    """Immutable ``{variable name: ConfigValue}`` mapping for one invocation.

    Every declared variable is present (unset optional ones included), so
    membership doubles as "is this name declared by the blueprint".
    """

    __slots__ = ("_values", "blueprint_id")

    def __init__(self, values: Mapping[str, ConfigValue], blueprint_id: str = "") -> None:
        object.__setattr__(self, "_values", MappingProxyType(dict(values)))
        object.__setattr__(self, "blueprint_id", blueprint_id)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("ResolvedConfig is immutable")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("ResolvedConfig is immutable")

    def __getitem__(self, name: str) -> ConfigValue:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v.value!r}" for k, v in self._values.items())
        return f"ResolvedConfig({self.blueprint_id!r}: {inner})"

    def value(self, name: str) -> Scalar:
        """Return the plain Python value of *name* (zero value when unset)."""
        return self._values[name].value

    def as_context(self) -> dict[str, Scalar]:
        """Return a fresh ``{name: plain value}`` dict for template rendering."""
        return {name: cv.value for name, cv in self._values.items()}

    def explicit_values(self) -> dict[str, Scalar]:
        """Return only the variables that actually received a value."""
        return {name: cv.value for name, cv in self._values.items() if cv.is_set}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def coerce_value(variable: VariableDefinition, raw: Any) -> tuple[Optional[Scalar], str]:
    """Coerce a raw override to the variable's type.

    Returns:
        ``(value, "")`` on success or ``(None, problem)`` on failure.
    """
    kind = variable.kind
    value: Any = raw

    if kind is VariableKind.BOOL:
        if isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered in _TRUE_STRINGS:
                value = True
            elif lowered in _FALSE_STRINGS:
                value = False
            else:
                return None, f"{raw!r} is not a boolean"
    elif kind is VariableKind.INT:
        if isinstance(raw, str):
            try:
                value = int(raw.strip(), 10)
            except ValueError:
                return None, f"{raw!r} is not an integer"

    problem = variable.check_value(value)
    if problem:
        return None, problem
    return value, ""


def resolve_config(
    manifest: BlueprintManifest,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ResolvedConfig:
    """Validate *overrides* against *manifest* and build a ``ResolvedConfig``.

    For every declared variable: an override is type/choice/pattern checked;
    otherwise the default is used; otherwise a required variable is an error
    and an optional one is left unset.  Override keys the blueprint does not
    declare are rejected.

    Raises:
        ValidationError: Listing every problem found.
    """
    overrides = dict(overrides or {})
    problems: list[str] = []

    declared = manifest.variable_names
    for key in sorted(overrides):
        if key not in declared:
            problems.append(f"unknown variable '{key}'")

    values: dict[str, ConfigValue] = {}
    for variable in manifest.variables:
        if variable.name in overrides:
            coerced, problem = coerce_value(variable, overrides[variable.name])
            if problem:
                problems.append(f"variable '{variable.name}': {problem}")
                continue
            values[variable.name] = ConfigValue(kind=variable.kind, value=coerced)
        elif variable.default is not None:
            values[variable.name] = ConfigValue(kind=variable.kind, value=variable.default)
        elif variable.required:
            problems.append(f"variable '{variable.name}' is required")
        else:
            values[variable.name] = ConfigValue.unset(variable.kind)

    if problems:
        summary = f"invalid configuration for blueprint '{manifest.id}': " + "; ".join(problems)
        raise ValidationError(summary, problems)

    return ResolvedConfig(values, blueprint_id=manifest.id)
