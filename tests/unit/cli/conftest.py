"""Fixtures for CLI tests: an initialized project in an isolated cwd."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

import sourceflow.config as config_module
from sourceflow.cli.main import app


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, runner: CliRunner) -> Path:
    """Run `sourceflow init` in tmp_path and make it the working directory."""
    monkeypatch.setattr(config_module, "_GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    for name in ("SOURCEFLOW_MAX_PAGES", "SOURCEFLOW_CONCURRENCY", "SOURCEFLOW_OBJECTS_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["init", str(tmp_path)])
    assert result.exit_code == 0, result.output
    return tmp_path
