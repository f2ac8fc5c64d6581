"""Blueprint generation engine -- turns a blueprint plus overrides into a project.

Quick usage::

    from blueprintkit.catalog import Catalog
    from blueprintkit.engine import GenerationRequest, Generator

    catalog = Catalog.from_directory("./blueprints")
    generator = Generator(catalog)
    result = await generator.generate(
        GenerationRequest(
            blueprint_id="web-api",
            output_path="/tmp/my-service",
            overrides={"ProjectName": "my-service", "DatabaseDriver": "postgres"},
        )
    )
"""

from blueprintkit.engine.conditions import GenerationPlan, evaluate_condition, evaluate_plan
from blueprintkit.engine.generator import GenerationRequest, GenerationResult, Generator, generate
from blueprintkit.engine.hooks import HookOutcome, HookStatus, run_hooks
from blueprintkit.engine.materializer import materialize
from blueprintkit.engine.merger import MergedManifest, merge_dependencies
from blueprintkit.engine.resolver import ConfigValue, ResolvedConfig, resolve_config
from blueprintkit.engine.templates import RenderedFile, TemplateRenderer, render_file

__all__ = [
    "ConfigValue",
    "GenerationPlan",
    "GenerationRequest",
    "GenerationResult",
    "Generator",
    "HookOutcome",
    "HookStatus",
    "MergedManifest",
    "RenderedFile",
    "ResolvedConfig",
    "TemplateRenderer",
    "evaluate_condition",
    "evaluate_plan",
    "generate",
    "materialize",
    "merge_dependencies",
    "render_file",
    "resolve_config",
    "run_hooks",
]
