"""Generation orchestrator.

Takes a ``GenerationRequest`` and drives one blueprint through the six
stages, strictly in order:

1. RESOLVE      validate overrides into a ``ResolvedConfig``
2. EVALUATE     select files, dependencies and hooks by condition
3. RENDER       render destination paths and bodies (bounded fan-out)
4. MERGE        deduplicate dependencies into one version per module
5. MATERIALIZE  write the project, all or nothing
6. HOOKS        run post-generation commands in declared order

Nothing touches the output directory before stage 5, so every failure in
stages 1-4 leaves the filesystem untouched.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from blueprintkit.catalog.registry import Catalog
from blueprintkit.config import ConflictPolicy, EngineConfig, OutputMode
from blueprintkit.engine.conditions import evaluate_plan
from blueprintkit.engine.hooks import HookOutcome, HookStatus, run_hooks
from blueprintkit.engine.materializer import build_payload, inspect_output, materialize
from blueprintkit.engine.merger import MergedManifest, merge_dependencies
from blueprintkit.engine.resolver import resolve_config
from blueprintkit.engine.templates import RenderedFile, TemplateRenderer
from blueprintkit.errors import BlueprintError, GenerationCancelledError
from blueprintkit.utils import (
    format_duration,
    print_error,
    print_stage_header,
    print_success,
    print_summary_table,
    print_warning,
    stage_name,
)


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    """Everything one ``generate`` call needs besides the catalog."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    blueprint_id: str = Field(..., min_length=1)
    output_path: Path
    overrides: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = Field(default=False, description="Compute the plan without touching disk")
    skip_hooks: bool = Field(default=False)
    mode: OutputMode = Field(default=OutputMode.FAIL)
    policy: Optional[ConflictPolicy] = Field(
        default=None, description="Overrides EngineConfig.conflict_policy"
    )
    cancel_event: Optional[asyncio.Event] = Field(default=None, exclude=True)


@dataclass
class GenerationResult:
    """Outcome of one ``generate`` call.

    ``materialized`` tells "nothing was generated" (a failure before or during
    materialization) apart from "the project exists but a required hook
    failed".  A dry run fills ``rendered`` with the bytes every path would
    receive, dependency manifest included, so callers can preview a project
    without a filesystem.
    """

    blueprint_id: str
    output_path: str
    dry_run: bool = False
    success: bool = False
    materialized: bool = False
    files_written: list[str] = field(default_factory=list)
    rendered: dict[str, bytes] = field(default_factory=dict)
    merged_manifest: Optional[MergedManifest] = None
    hook_outcomes: list[HookOutcome] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_code: str = ""
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "blueprint_id": self.blueprint_id,
            "output_path": self.output_path,
            "dry_run": self.dry_run,
            "success": self.success,
            "materialized": self.materialized,
            "files_written": list(self.files_written),
            "dependencies": (
                self.merged_manifest.to_dict() if self.merged_manifest is not None else None
            ),
            "hooks": [o.to_dict() for o in self.hook_outcomes],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "error_code": self.error_code,
            "duration": round(self.duration, 3),
        }


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class Generator:
    """Drives blueprint generation against an explicit catalog.

    A ``Generator`` holds no per-call state; one instance (and one catalog)
    can serve any number of concurrent ``generate`` calls.
    """

    def __init__(self, catalog: Catalog, config: Optional[EngineConfig] = None) -> None:
        self.catalog = catalog
        self.config = config or EngineConfig()
        self.renderer = TemplateRenderer(self.config.max_template_bytes)

    # -- Public API --------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate the project described by *request*.

        Engine errors are reported in the returned result, never raised.

        Raises:
            GenerationCancelledError: If ``request.cancel_event`` was set.
                Anything already written has been removed.
            asyncio.CancelledError: If the calling task was cancelled, after
                the same cleanup.
        """
        start = time.monotonic()
        output = Path(request.output_path).absolute()
        result = GenerationResult(
            blueprint_id=request.blueprint_id,
            output_path=str(output),
            dry_run=request.dry_run,
        )

        try:
            await self._run(request, output, result)
        except GenerationCancelledError:
            if self.config.verbose:
                print_warning(f"Generation of '{request.blueprint_id}' cancelled")
            raise
        except BlueprintError as exc:
            result.success = False
            result.error_code = exc.code
            result.errors.append(str(exc))
            if self.config.verbose:
                print_error(str(exc))
        finally:
            result.duration = time.monotonic() - start

        if self.config.verbose:
            self._print_summary(result)
        return result

    # -- Stages ------------------------------------------------------------

    async def _run(self, request: GenerationRequest, output: Path, result: GenerationResult) -> None:
        verbose = self.config.verbose
        policy = request.policy or self.config.conflict_policy

        # 1. Resolve
        self._stage(1, request)
        manifest = self.catalog.get(request.blueprint_id)
        config = resolve_config(manifest, request.overrides)

        # 2. Evaluate
        self._stage(2, request)
        plan = await evaluate_plan(manifest, config, max_workers=self.config.max_workers)
        if verbose:
            print_success(
                f"{len(plan.files)} files, {len(plan.dependencies)} dependencies, "
                f"{len(plan.hooks)} hooks selected"
            )

        # 3. Render
        self._stage(3, request)
        files = await self.renderer.render_plan(
            plan,
            config,
            functools.partial(self.catalog.read_template, manifest.id),
            max_workers=self.config.max_workers,
            cancel_event=request.cancel_event,
        )

        # 4. Merge
        self._stage(4, request)
        merged = merge_dependencies(plan.dependencies, policy)
        result.merged_manifest = merged
        if verbose:
            for conflict in merged.conflicts:
                print_warning(
                    f"{conflict.module}: {', '.join(conflict.versions)} -> {conflict.chosen}"
                )

        # 5. Materialize
        self._stage(5, request)
        if request.dry_run:
            result.rendered = self._preview(files, merged, manifest.id, output, request.mode)
            result.files_written = list(result.rendered)
        else:
            written = await materialize(
                output,
                files,
                merged,
                request.mode,
                blueprint_id=manifest.id,
                manifest_filename=self.config.manifest_filename,
                staging_prefix=self.config.staging_prefix,
                cancel_event=request.cancel_event,
            )
            result.materialized = True
            result.files_written = [p.relative_to(output).as_posix() for p in written]
            if verbose:
                print_success(f"{len(written)} files written to {output}")

        # 6. Hooks
        if request.skip_hooks or not plan.hooks:
            result.success = True
            return
        self._stage(6, request)
        if request.dry_run:
            result.hook_outcomes = [
                HookOutcome(
                    name=h.name, status=HookStatus.SKIPPED, required=h.required, output="dry run"
                )
                for h in plan.hooks
            ]
            result.success = True
            return

        result.hook_outcomes = await run_hooks(
            plan.hooks,
            output,
            config,
            timeout=self.config.hook_timeout,
            verbose=verbose,
            renderer=self.renderer,
        )
        self._collect_hook_failures(result)

    def _stage(self, stage: int, request: GenerationRequest) -> None:
        # Once materialized the project stays; hooks are not cancellable.
        if stage < 6 and request.cancel_event is not None and request.cancel_event.is_set():
            raise GenerationCancelledError(stage_name(stage))
        if self.config.verbose:
            print_stage_header(stage)

    def _preview(
        self,
        files: list[RenderedFile],
        merged: MergedManifest,
        blueprint_id: str,
        output: Path,
        mode: OutputMode,
    ) -> dict[str, bytes]:
        """Dry-run stand-in for materialization: same checks, no writes."""
        inspect_output(output, OutputMode(mode))
        payload = build_payload(files, merged, blueprint_id, self.config.manifest_filename)
        return {rel: content for rel, content, _ in payload}

    @staticmethod
    def _collect_hook_failures(result: GenerationResult) -> None:
        result.success = True
        for outcome in result.hook_outcomes:
            if outcome.ok:
                continue
            error = outcome.error()
            if outcome.required:
                result.success = False
                result.error_code = error.code
                result.errors.append(str(error))
            else:
                result.warnings.append(str(error))

    # -- Reporting ---------------------------------------------------------

    @staticmethod
    def _print_summary(result: GenerationResult) -> None:
        rows = {
            "Blueprint": result.blueprint_id,
            "Output": result.output_path,
            "Mode": "dry run" if result.dry_run else "write",
            "Files": str(len(result.files_written)),
            "Dependencies": str(len(result.merged_manifest or ())),
            "Hooks": ", ".join(f"{o.name}={o.status.value}" for o in result.hook_outcomes) or "-",
            "Duration": format_duration(result.duration),
            "Status": "success" if result.success else "failed",
        }
        print_summary_table(rows, title="Generation Summary")
        for warning in result.warnings:
            print_warning(warning)


async def generate(
    catalog: Catalog,
    request: GenerationRequest,
    config: Optional[EngineConfig] = None,
) -> GenerationResult:
    """Shortcut for ``Generator(catalog, config).generate(request)``."""
    return await Generator(catalog, config).generate(request)
