"""Shared pytest fixtures for the blueprintkit test suite.

Provides reusable fixtures for:
- An in-memory ``web-api`` blueprint (manifest + templates)
- A catalog built from it, and the same blueprints on disk
- Resolved configurations for the web-api blueprint
- Temporary output directories
"""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from blueprintkit.catalog import Catalog, MemorySource
from blueprintkit.catalog.models import BlueprintManifest
from blueprintkit.engine.resolver import ResolvedConfig, resolve_config


# ---------------------------------------------------------------------------
# Blueprint content
# ---------------------------------------------------------------------------

WEB_API_MANIFEST = textwrap.dedent(
    """\
    name: web-api
    description: HTTP service skeleton
    type: web-api
    architecture: standard
    version: "1.0.0"
    author: Platform Team
    license: MIT
    variables:
      - name: ProjectName
        type: string
        required: true
        description: Name of the service
        validation: "^[a-z][a-z0-9-]*$"
      - name: ModulePath
        type: string
        default: github.com/example/service
      - name: DatabaseDriver
        type: select
        options: ["", postgres, mysql]
        default: ""
      - name: UseDocker
        type: boolean
        default: false
      - name: Port
        type: int
        default: 8080
    files:
      - source: main.go.tmpl
        destination: "cmd/{{.ProjectName}}/main.go"
      - source: README.md.tmpl
        destination: README.md
      - source: db.go.tmpl
        destination: internal/database/db.go
        condition: 'DatabaseDriver != ""'
      - source: Dockerfile.tmpl
        destination: Dockerfile
        condition: UseDocker
      - source: run.sh.tmpl
        destination: scripts/run.sh
        executable: true
    dependencies:
      - module: github.com/gin-gonic/gin
        version: v1.9.1
      - module: github.com/lib/pq
        version: v1.10.9
        condition: 'DatabaseDriver == "postgres"'
      - module: github.com/lib/pq
        version: v1.10.9
        condition: '{{eq .DatabaseDriver "postgres"}}'
      - module: github.com/lib/pq
        version: v1.10.9
        condition: 'DatabaseDriver in ["postgres"]'
      - module: github.com/go-sql-driver/mysql
        version: v1.7.1
        condition: '{{eq .DatabaseDriver "mysql"}}'
    """
)

WEB_API_TEMPLATES: dict[str, str] = {
    "main.go.tmpl": textwrap.dedent(
        """\
        package main

        import "{{ .ModulePath }}/internal/server"

        // {{.ProjectName}} listens on port {{ .Port }}.
        func main() {
        \tserver.Run({{ .Port }})
        }
        """
    ),
    "README.md.tmpl": textwrap.dedent(
        """\
        # {{ .ProjectName | title }}

        Module: `{{ .ModulePath }}`
        {% if DatabaseDriver %}Database: {{ DatabaseDriver }}
        {% endif %}"""
    ),
    "db.go.tmpl": "package database\n\nconst Driver = {{ quote(.DatabaseDriver) }}\n",
    "Dockerfile.tmpl": "FROM golang:1.22\nEXPOSE {{.Port}}\n",
    "run.sh.tmpl": "#!/bin/sh\nexec ./{{ .ProjectName | snake_case }}\n",
}

CLI_MANIFEST = textwrap.dedent(
    """\
    name: cli
    description: Command-line tool
    type: cli
    variables:
      - name: ProjectName
        type: string
        required: true
    files:
      - source: main.go.tmpl
        destination: main.go
    """
)

CLI_TEMPLATES: dict[str, str] = {
    "main.go.tmpl": "package main\n\n// {{ ProjectName }}\nfunc main() {}\n",
}


def blueprint_files() -> dict[str, dict[str, str]]:
    """Return ``{key: {relative path: text}}`` for the sample blueprints."""
    return {
        "web-api": {"template.yaml": WEB_API_MANIFEST, **WEB_API_TEMPLATES},
        "cli": {"blueprint.yaml": CLI_MANIFEST, **CLI_TEMPLATES},
    }


# ---------------------------------------------------------------------------
# Catalog fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def memory_source() -> MemorySource:
    """In-memory source holding the ``web-api`` and ``cli`` blueprints."""
    return MemorySource(blueprint_files())


@pytest.fixture
def catalog(memory_source: MemorySource) -> Catalog:
    return Catalog.from_source(memory_source)


@pytest.fixture
def web_api(catalog: Catalog) -> BlueprintManifest:
    return catalog.get("web-api")


@pytest.fixture
def blueprint_dir(tmp_path: Path) -> Path:
    """The sample blueprints written to ``tmp_path/blueprints``."""
    root = tmp_path / "blueprints"
    for key, files in blueprint_files().items():
        for rel, text in files.items():
            path = root / key / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
    return root


@pytest.fixture
def make_config(web_api: BlueprintManifest) -> Callable[..., ResolvedConfig]:
    """Factory: ``make_config(DatabaseDriver="postgres")`` -> ResolvedConfig."""

    def _make(**overrides: Any) -> ResolvedConfig:
        overrides.setdefault("ProjectName", "orders")
        return resolve_config(web_api, overrides)

    return _make


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    """Target path for a generated project (not created)."""
    return tmp_path / "out" / "orders"


@pytest.fixture
def snapshot() -> Callable[[Path], dict[str, bytes]]:
    """Factory: ``snapshot(root)`` -> ``{relative posix path: bytes}`` of every file."""

    def _snapshot(root: Path) -> dict[str, bytes]:
        return {
            p.relative_to(root).as_posix(): p.read_bytes()
            for p in sorted(root.rglob("*"))
            if p.is_file()
        }

    return _snapshot
