"""Command-line interface.

Examples::

    blueprintkit list
    blueprintkit generate web-api ./my-service --set ProjectName=my-service
    blueprintkit generate web-api ./my-service --set DatabaseDriver=postgres --dry-run --json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from rich.table import Table

from blueprintkit.catalog import Catalog
from blueprintkit.config import ConflictPolicy, EngineConfig, OutputMode
from blueprintkit.engine.generator import GenerationRequest, GenerationResult, Generator
from blueprintkit.errors import BlueprintError
from blueprintkit.utils import console, print_error, print_success, print_warning


# ---------------------------------------------------------------------------
# Argument handling
# ---------------------------------------------------------------------------


def parse_overrides(pairs: list[str]) -> dict[str, Any]:
    """Turn ``["Name=x", "UseDocker=true"]`` into ``{"Name": "x", "UseDocker": "true"}``.

    Values stay strings; the resolver coerces them to each variable's type.

    Raises:
        ValueError: If an item has no ``=`` or an empty key.
    """
    overrides: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"expected KEY=VALUE, got {pair!r}")
        overrides[key] = value
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blueprintkit",
        description="Generate projects from declarative blueprints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  blueprintkit list\n"
            "  blueprintkit generate web-api ./my-service --set ProjectName=my-service\n"
            "  blueprintkit generate cli ./tool --set ModulePath=github.com/me/tool --dry-run\n"
        ),
    )
    parser.add_argument(
        "--blueprints", "-b",
        default=None,
        help="Blueprint directory (default: $BLUEPRINT_DIR or ./blueprints)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Print stage progress")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List the available blueprints")

    gen = sub.add_parser("generate", help="Generate a project from a blueprint")
    gen.add_argument("blueprint", help="Blueprint id (see 'list')")
    gen.add_argument("output", help="Directory to create")
    gen.add_argument(
        "--set", "-s",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set a blueprint variable (repeatable)",
    )
    gen.add_argument("--dry-run", action="store_true", help="Show what would be written")
    gen.add_argument("--skip-hooks", action="store_true", help="Do not run post-generation hooks")
    existing = gen.add_mutually_exclusive_group()
    existing.add_argument(
        "--overwrite", action="store_true", help="Replace a non-empty output directory"
    )
    existing.add_argument(
        "--merge", action="store_true", help="Write into a non-empty output directory"
    )
    gen.add_argument(
        "--policy",
        choices=[p.value for p in ConflictPolicy],
        default=None,
        help="Dependency version conflict policy (default: highest)",
    )
    gen.add_argument("--json", action="store_true", help="Print the result as JSON")
    return parser


def _engine_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    updates: dict[str, Any] = {}
    if args.blueprints:
        updates["blueprints_dir"] = Path(args.blueprints)
    if args.verbose:
        updates["verbose"] = True
    if getattr(args, "json", False):
        updates["verbose"] = False
    return config.model_copy(update=updates) if updates else config


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_list(catalog: Catalog) -> int:
    if not len(catalog):
        print_warning("No blueprints found.")
        return 0

    table = Table(title="Blueprints", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="bold", no_wrap=True)
    table.add_column("Type", style="dim")
    table.add_column("Architecture", style="dim")
    table.add_column("Version")
    table.add_column("Description")
    for manifest in catalog.list():
        table.add_row(
            manifest.id,
            manifest.type or "-",
            manifest.architecture or "-",
            manifest.version or "-",
            manifest.description,
        )
    console.print(table)
    return 0


def _report(result: GenerationResult) -> None:
    if result.success:
        verb = "Would write" if result.dry_run else "Wrote"
        print_success(f"{verb} {len(result.files_written)} files to {result.output_path}")
        if result.dry_run:
            for path in result.files_written:
                console.print(f"  [dim]{path}[/dim]")
    else:
        for error in result.errors:
            print_error(error)
        if result.materialized:
            print_warning(f"Project was written to {result.output_path} but post-generation failed.")
    for warning in result.warnings:
        print_warning(warning)


def cmd_generate(catalog: Catalog, config: EngineConfig, args: argparse.Namespace) -> int:
    try:
        overrides = parse_overrides(args.overrides)
    except ValueError as exc:
        print_error(str(exc))
        return 1

    mode = OutputMode.FAIL
    if args.overwrite:
        mode = OutputMode.OVERWRITE
    elif args.merge:
        mode = OutputMode.MERGE

    request = GenerationRequest(
        blueprint_id=args.blueprint,
        output_path=Path(args.output),
        overrides=overrides,
        dry_run=args.dry_run,
        skip_hooks=args.skip_hooks,
        mode=mode,
        policy=ConflictPolicy(args.policy) if args.policy else None,
    )
    result = asyncio.run(Generator(catalog, config).generate(request))

    if args.json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        _report(result)
    return 0 if result.success else 1


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for ``blueprintkit`` / ``python -m blueprintkit.cli``."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = _engine_config(args)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] invalid configuration: {exc}")
        sys.exit(1)

    try:
        catalog = Catalog.from_directory(config.blueprints_dir, verbose=config.verbose)
    except BlueprintError as exc:
        print_error(str(exc))
        sys.exit(1)

    if args.command == "list":
        code = cmd_list(catalog)
    else:
        code = cmd_generate(catalog, config, args)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
