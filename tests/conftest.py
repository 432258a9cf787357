from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "db" / "migrations").mkdir(parents=True)
    return root


@pytest.fixture()
def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'data' / 'tasks.db'}"


@pytest.fixture()
def write_migration(project: Path) -> Callable[[str, str], Path]:
    def _write(name: str, sql: str) -> Path:
        path = project / "db" / "migrations" / name
        path.write_text(sql, encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def make_ctx(project: Path, sqlite_url: str):
    from db.lifecycle import CommandContext
    from db.settings import Environment, load_config

    def _make(strict: bool = True, environment: Environment = Environment.TEST):
        config = load_config(environment, {"APP_DATABASE__URL": sqlite_url}, project)
        return CommandContext(environment=environment, config=config, root=project, strict=strict)

    return _make
