"""Exception taxonomy for the blueprint generation engine.

Every error carries a stable ``code`` string so that callers (the CLI, a web
backend) can branch on the failure class without string matching.  Errors
raised before materialization guarantee that nothing was written to disk.
"""

from __future__ import annotations


class BlueprintError(Exception):
    """Base class for all engine errors."""

    code = "UNKNOWN"

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)

    def __str__(self) -> str:
        if self.cause is not None:
            return f"[{self.code}] {self.message}: {self.cause}"
        return f"[{self.code}] {self.message}"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class CatalogError(BlueprintError):
    """Raised when a blueprint manifest cannot be read or is malformed."""

    code = "CATALOG_ERROR"


class BlueprintNotFoundError(CatalogError):
    """Raised when a blueprint identifier is not present in the catalog."""

    code = "TEMPLATE_NOT_FOUND"

    def __init__(self, blueprint_id: str) -> None:
        self.blueprint_id = blueprint_id
        super().__init__(f"blueprint '{blueprint_id}' not found")


# ---------------------------------------------------------------------------
# Pre-materialization stages
# ---------------------------------------------------------------------------


class ValidationError(BlueprintError):
    """Bad, missing or unknown configuration variable.

    ``errors`` lists every individual problem found during resolution so the
    caller can report them all at once.
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = list(errors) if errors else [message]
        super().__init__(message)


class ConditionError(BlueprintError):
    """Malformed condition expression or reference to an undeclared variable."""

    code = "CONDITION_ERROR"

    def __init__(self, message: str, expression: str = "") -> None:
        self.expression = expression
        if expression:
            message = f"{message} (in condition {expression!r})"
        super().__init__(message)


class RenderError(BlueprintError):
    """Template parse or execution failure."""

    code = "RENDER_ERROR"

    def __init__(
        self,
        message: str,
        source: str = "",
        *,
        cause: BaseException | None = None,
    ) -> None:
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message, cause=cause)


class PathCollisionError(RenderError):
    """Two or more included entries render to the same destination path."""

    code = "PATH_COLLISION"

    def __init__(self, collisions: dict[str, list[str]]) -> None:
        self.collisions = collisions
        details = "; ".join(
            f"{path} <- {', '.join(sources)}" for path, sources in collisions.items()
        )
        super().__init__(f"destination path collision: {details}")


class DependencyConflictError(BlueprintError):
    """Irreconcilable version conflict under the active merge policy."""

    code = "DEPENDENCY_CONFLICT"

    def __init__(self, module: str, versions: list[str], reason: str = "") -> None:
        self.module = module
        self.versions = versions
        message = f"conflicting versions for {module}: {', '.join(versions)}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


# ---------------------------------------------------------------------------
# Materialization & hooks
# ---------------------------------------------------------------------------


class MaterializationError(BlueprintError, OSError):
    """Filesystem failure while writing the generated project.

    By the time this propagates, every file written by the failed run has
    already been removed.
    """

    code = "FILESYSTEM_ERROR"

    def __init__(
        self,
        message: str,
        path: str = "",
        *,
        cause: BaseException | None = None,
    ) -> None:
        self.path = path
        BlueprintError.__init__(self, message, cause=cause)


class HookError(BlueprintError):
    """Non-zero exit or timeout from a post-generation hook."""

    code = "HOOK_ERROR"

    def __init__(self, hook_name: str, message: str, *, required: bool = False) -> None:
        self.hook_name = hook_name
        self.required = required
        super().__init__(f"hook '{hook_name}' failed: {message}")


class GenerationCancelledError(BlueprintError):
    """The caller signalled cancellation while generation was in progress."""

    code = "CANCELLED"

    def __init__(self, stage: str) -> None:
        self.stage = stage
        super().__init__(f"generation cancelled during {stage}")
