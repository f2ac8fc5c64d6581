"""Tests for the generation orchestrator (blueprintkit.engine.generator).

Covers:
- Successful generation, dry runs and output modes
- Error reporting per stage with nothing written
- Post-generation hooks (skip, optional and required failures)
- Cancellation
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest
import yaml

from blueprintkit.catalog import Catalog, MemorySource
from blueprintkit.config import ConflictPolicy, EngineConfig, OutputMode
from blueprintkit.engine.generator import GenerationRequest, Generator, generate
from blueprintkit.engine.hooks import HookStatus
from blueprintkit.errors import GenerationCancelledError


def _py_hook(name: str, code: str, **extra) -> dict:
    return {"name": name, "command": sys.executable, "args": ["-c", code], **extra}


@pytest.fixture
def extra_catalog() -> Catalog:
    """Blueprints exercising hooks, render failures and version conflicts."""
    hooked = {
        "id": "hooked",
        "variables": [
            {"name": "ProjectName", "type": "string", "required": True},
            {"name": "FailTidy", "type": "boolean", "default": False},
        ],
        "files": [{"source": "main.go.tmpl", "destination": "main.go"}],
        "post_hooks": [
            _py_hook("record", "open('hook-ran.txt', 'w').write('ok')"),
            _py_hook("tidy", "raise SystemExit(1)", required=True, condition="FailTidy"),
            _py_hook("after", "open('after.txt', 'w').write('ok')"),
        ],
    }
    broken = {
        "id": "broken",
        "files": [
            {"source": "ok.tmpl", "destination": "ok.txt"},
            {"source": "bad.tmpl", "destination": "bad.txt"},
        ],
    }
    pinned = {
        "id": "pinned",
        "files": [{"source": "ok.tmpl", "destination": "ok.txt"}],
        "dependencies": [
            {"module": "github.com/gin-gonic/gin", "version": "v1.9.1"},
            {"module": "github.com/gin-gonic/gin", "version": "v1.10.0"},
        ],
    }
    quoted = {
        "id": "quoted",
        "files": [{"source": "ok.tmpl", "destination": "ok.txt"}],
        "post_hooks": [
            {"name": "commit", "command": 'git commit -m "unbalanced', "required": True},
            _py_hook("after", "open('after.txt', 'w').write('ok')"),
        ],
    }
    source = MemorySource(
        {
            "hooked": {
                "blueprint.yaml": yaml.safe_dump(hooked),
                "main.go.tmpl": "package main // {{ .ProjectName }}\n",
            },
            "broken": {
                "blueprint.yaml": yaml.safe_dump(broken),
                "ok.tmpl": "fine\n",
                "bad.tmpl": "{{ NotDeclared }}\n",
            },
            "pinned": {"blueprint.yaml": yaml.safe_dump(pinned), "ok.tmpl": "fine\n"},
            "quoted": {"blueprint.yaml": yaml.safe_dump(quoted), "ok.tmpl": "fine\n"},
        }
    )
    return Catalog.from_source(source)


def _request(output: Path, blueprint_id: str = "web-api", **kwargs) -> GenerationRequest:
    kwargs.setdefault("overrides", {"ProjectName": "orders"})
    return GenerationRequest(blueprint_id=blueprint_id, output_path=output, **kwargs)


# ---------------------------------------------------------------------------
# Success paths
# ---------------------------------------------------------------------------


class TestGenerate:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_configuration(self, catalog, output_dir: Path):
        result = await generate(catalog, _request(output_dir))

        assert result.success, result.errors
        assert result.materialized
        assert result.error_code == ""
        assert result.output_path == str(output_dir.absolute())
        assert result.files_written == [
            "cmd/orders/main.go",
            "README.md",
            "scripts/run.sh",
            ".blueprint/dependencies.json",
        ]
        for rel in result.files_written:
            assert (output_dir / rel).is_file()
        assert result.merged_manifest.version_of("github.com/gin-gonic/gin") == "v1.9.1"
        assert len(result.merged_manifest) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conditional_files_and_dependencies(self, catalog, output_dir: Path):
        request = _request(output_dir, overrides={"ProjectName": "orders", "DatabaseDriver": "postgres"})
        result = await generate(catalog, request)

        assert result.success
        assert "internal/database/db.go" in result.files_written
        assert (output_dir / "internal/database/db.go").read_text() == (
            'package database\n\nconst Driver = "postgres"\n'
        )
        manifest = json.loads((output_dir / ".blueprint/dependencies.json").read_text())
        modules = [d["module"] for d in manifest["dependencies"]]
        assert modules == ["github.com/gin-gonic/gin", "github.com/lib/pq"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, catalog, output_dir: Path):
        result = await generate(catalog, _request(output_dir, dry_run=True))

        assert result.success
        assert result.dry_run
        assert not result.materialized
        assert "README.md" in result.files_written
        assert result.files_written[-1] == ".blueprint/dependencies.json"
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_returns_rendered_bytes(self, catalog, tmp_path: Path, snapshot):
        preview = await generate(catalog, _request(tmp_path / "preview", dry_run=True))
        real = await generate(catalog, _request(tmp_path / "real"))

        assert preview.success and real.success
        assert list(preview.rendered) == preview.files_written
        assert preview.rendered == snapshot(tmp_path / "real")
        document = json.loads(preview.rendered[".blueprint/dependencies.json"])
        assert document["blueprint"] == "web-api"
        assert real.rendered == {}
        assert not (tmp_path / "preview").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_reports_populated_output(self, catalog, output_dir: Path):
        output_dir.mkdir(parents=True)
        (output_dir / "mine.txt").write_text("x")
        result = await generate(catalog, _request(output_dir, dry_run=True))

        assert not result.success
        assert result.error_code == "FILESYSTEM_ERROR"
        assert sorted(p.name for p in output_dir.iterdir()) == ["mine.txt"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_merge_mode(self, catalog, output_dir: Path):
        output_dir.mkdir(parents=True)
        (output_dir / "mine.txt").write_text("x")
        result = await generate(catalog, _request(output_dir, mode=OutputMode.MERGE))

        assert result.success
        assert (output_dir / "mine.txt").read_text() == "x"
        assert (output_dir / "README.md").is_file()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_calls_share_a_generator(self, catalog, tmp_path: Path):
        generator = Generator(catalog)
        results = await asyncio.gather(
            *(
                generator.generate(_request(tmp_path / f"svc{i}", overrides={"ProjectName": f"svc{i}"}))
                for i in range(4)
            )
        )
        assert all(r.success for r in results)
        for i in range(4):
            assert (tmp_path / f"svc{i}" / "cmd" / f"svc{i}" / "main.go").is_file()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_calls_into_one_output(self, catalog, output_dir: Path):
        generator = Generator(catalog)
        results = await asyncio.gather(
            *(
                generator.generate(_request(output_dir, overrides={"ProjectName": name}))
                for name in ("first", "second")
            )
        )

        assert sorted(r.success for r in results) == [False, True]
        [loser] = [r for r in results if not r.success]
        [winner] = [r for r in results if r.success]
        assert loser.error_code == "FILESYSTEM_ERROR"
        assert not loser.materialized
        assert sorted(p.name for p in output_dir.iterdir()) == sorted(
            {rel.split("/")[0] for rel in winner.files_written}
        )
        assert sorted(p.name for p in output_dir.parent.iterdir()) == [output_dir.name]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verbose_output(self, catalog, output_dir: Path):
        result = await generate(catalog, _request(output_dir), EngineConfig(verbose=True))
        assert result.success

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_to_dict_is_json_serialisable(self, catalog, output_dir: Path):
        result = await generate(catalog, _request(output_dir))
        data = json.loads(json.dumps(result.to_dict()))
        assert data["success"] is True
        assert data["dependencies"]["policy"] == "highest"
        assert data["hooks"] == []


# ---------------------------------------------------------------------------
# Failures before materialization
# ---------------------------------------------------------------------------


class TestGenerateErrors:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_blueprint(self, catalog, output_dir: Path):
        result = await generate(catalog, _request(output_dir, blueprint_id="nope"))
        assert not result.success
        assert result.error_code == "TEMPLATE_NOT_FOUND"
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_variable(self, catalog, output_dir: Path):
        request = _request(output_dir, overrides={"ProjectName": "orders", "Bogus": 1})
        result = await generate(catalog, request)
        assert result.error_code == "VALIDATION_ERROR"
        assert result.files_written == []
        assert not result.materialized
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_value(self, catalog, output_dir: Path):
        result = await generate(catalog, _request(output_dir, overrides={"ProjectName": "Orders"}))
        assert result.error_code == "VALIDATION_ERROR"
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_render_error(self, extra_catalog, output_dir: Path):
        result = await generate(extra_catalog, _request(output_dir, blueprint_id="broken", overrides={}))
        assert result.error_code == "RENDER_ERROR"
        assert "bad.tmpl" in result.errors[0]
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_binary_template_is_a_render_error(self, tmp_path: Path, output_dir: Path):
        root = tmp_path / "blueprints" / "assets"
        root.mkdir(parents=True)
        manifest = {"id": "assets", "files": [{"source": "logo.png", "destination": "logo.png"}]}
        (root / "blueprint.yaml").write_text(yaml.safe_dump(manifest), encoding="utf-8")
        (root / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")

        catalog = Catalog.from_directory(tmp_path / "blueprints")
        result = await Generator(catalog).generate(_request(output_dir, blueprint_id="assets", overrides={}))

        assert not result.success
        assert result.error_code == "RENDER_ERROR"
        assert "logo.png" in result.errors[0]
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_strict_policy_conflict(self, extra_catalog, output_dir: Path):
        request = _request(output_dir, blueprint_id="pinned", overrides={}, policy=ConflictPolicy.STRICT)
        result = await generate(extra_catalog, request)
        assert result.error_code == "DEPENDENCY_CONFLICT"
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_highest_policy_from_engine_config(self, extra_catalog, output_dir: Path):
        result = await generate(extra_catalog, _request(output_dir, blueprint_id="pinned", overrides={}))
        assert result.success
        assert result.merged_manifest.version_of("github.com/gin-gonic/gin") == "v1.10.0"
        [conflict] = result.merged_manifest.conflicts
        assert conflict.chosen == "v1.10.0"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, catalog, output_dir: Path):
        event = asyncio.Event()
        event.set()
        with pytest.raises(GenerationCancelledError) as excinfo:
            await generate(catalog, _request(output_dir, cancel_event=event))
        assert excinfo.value.stage == "resolve"
        assert not output_dir.exists()


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


class TestGenerateHooks:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hooks_run_in_project(self, extra_catalog, output_dir: Path):
        result = await generate(extra_catalog, _request(output_dir, blueprint_id="hooked"))
        assert result.success, result.errors
        assert [o.name for o in result.hook_outcomes] == ["record", "after"]
        assert (output_dir / "hook-ran.txt").read_text() == "ok"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_skip_hooks(self, extra_catalog, output_dir: Path):
        result = await generate(extra_catalog, _request(output_dir, blueprint_id="hooked", skip_hooks=True))
        assert result.success
        assert result.hook_outcomes == []
        assert not (output_dir / "hook-ran.txt").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_required_hook_failure_keeps_project(self, extra_catalog, output_dir: Path):
        request = _request(
            output_dir, blueprint_id="hooked", overrides={"ProjectName": "orders", "FailTidy": True}
        )
        result = await generate(extra_catalog, request)

        assert not result.success
        assert result.materialized
        assert result.error_code == "HOOK_ERROR"
        assert [o.status for o in result.hook_outcomes] == [
            HookStatus.SUCCEEDED,
            HookStatus.FAILED,
            HookStatus.SKIPPED,
        ]
        assert (output_dir / "main.go").is_file()
        assert not (output_dir / "after.txt").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_skips_hooks(self, extra_catalog, output_dir: Path):
        result = await generate(extra_catalog, _request(output_dir, blueprint_id="hooked", dry_run=True))
        assert result.success
        assert {o.status for o in result.hook_outcomes} == {HookStatus.SKIPPED}
        assert all(o.output == "dry run" for o in result.hook_outcomes)
        assert not output_dir.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_hook_command_keeps_project(self, extra_catalog, output_dir: Path):
        result = await generate(extra_catalog, _request(output_dir, blueprint_id="quoted", overrides={}))

        assert not result.success
        assert result.materialized
        assert result.error_code == "HOOK_ERROR"
        assert "invalid command" in result.errors[0]
        assert [o.status for o in result.hook_outcomes] == [HookStatus.FAILED, HookStatus.SKIPPED]
        assert (output_dir / "ok.txt").read_text() == "fine\n"
        assert not (output_dir / "after.txt").exists()
