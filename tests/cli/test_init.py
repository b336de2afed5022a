"""Tests for ``postindex init`` and :mod:`postindex.cli.init`."""

from __future__ import annotations

import io
import logging
import tomllib
from pathlib import Path
from zipfile import ZipFile

import pytest
from rich.console import Console
from typer.testing import CliRunner

from postindex.cli import create_app
from postindex.cli.init import init_workspace
from postindex.core.config import DEFAULTS_RESOURCE_NAME, ENVIRONMENT_VARIABLES
from postindex.core.logging import configure_logging


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch):
    for _, names in ENVIRONMENT_VARIABLES:
        for name in names:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("POSTINDEX_WORKSPACE", raising=False)
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def test_init_workspace_seeds_config_without_copying_defaults(tmp_path) -> None:
    workspace = tmp_path / "workspace"

    result = init_workspace(workspace=workspace)

    config_path = workspace / "postindex.toml"
    assert result.config_written
    assert result.archive is None
    assert config_path.exists()
    assert not (workspace / DEFAULTS_RESOURCE_NAME).exists()
    assert (workspace / "logs").is_dir()

    rendered = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert rendered["workspace"].endswith("workspace")
    assert rendered["log_level"] == "INFO"
    assert rendered["pipeline"]["batch_size"] == 100
    assert rendered["pipeline"]["entities"] == {}
    assert result.config.workspace == Path(rendered["workspace"])


def test_init_workspace_uses_non_secret_environment(tmp_path) -> None:
    result = init_workspace(
        workspace=tmp_path / "workspace",
        environ={
            "GCP_PROJECT_ID": "analytics",
            "OPENAI_API_KEY": "sk-never-written",
        },
    )

    text = result.paths.config_file.read_text(encoding="utf-8")
    rendered = tomllib.loads(text)
    assert rendered["warehouse"]["project"] == "analytics"
    assert "sk-never-written" not in text
    assert result.config.missing_runtime_settings() == (
        "warehouse.credentials",
        "store.url",
        "store.api_key",
    )


def test_init_workspace_reuses_existing_config_without_refresh(
    tmp_path,
) -> None:
    workspace = tmp_path / "workspace"
    init_workspace(workspace=workspace)
    config_path = workspace / "postindex.toml"
    config_path.write_text('log_level = "ERROR"\n', encoding="utf-8")

    result = init_workspace(workspace=workspace)

    assert not result.config_written
    assert config_path.read_text(encoding="utf-8") == 'log_level = "ERROR"\n'


def test_init_workspace_refresh_archives_previous_contents(tmp_path) -> None:
    workspace = tmp_path / "workspace"
    init_workspace(workspace=workspace)
    (workspace / "postindex.toml").write_text("# edited\n", encoding="utf-8")

    result = init_workspace(workspace=workspace, refresh=True, log_level="debug")

    assert result.config_written
    assert result.archive is not None
    with ZipFile(result.archive) as archive:
        assert "postindex.toml" in archive.namelist()
        assert archive.read("postindex.toml") == b"# edited\n"

    rendered = tomllib.loads(
        (workspace / "postindex.toml").read_text(encoding="utf-8")
    )
    assert rendered["log_level"] == "DEBUG"


def test_cli_init_outputs_status(
    runner: CliRunner,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    configured: dict[str, object] = {}

    def fake_configure_logging(*, level, workspace_path=None, console=None):
        configured["level"] = level
        configured["workspace"] = workspace_path
        configure_logging(level=level, console=Console(file=io.StringIO()))

    monkeypatch.setattr("postindex.cli.configure_logging", fake_configure_logging)
    workspace = tmp_path / "workspace"
    env = {
        "HOME": str(tmp_path),
        "POSTINDEX_WORKSPACE": str(workspace),
        "POSTINDEX_LOG_LEVEL": "warning",
    }

    result = runner.invoke(create_app(), ["init"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Workspace initialized" in result.stdout
    assert "log level: WARNING" in result.stdout
    assert "still required before `postindex run`" in result.stdout
    assert "embedding.api_key" in result.stdout
    assert (workspace / "postindex.toml").exists()
    assert configured["level"] == "WARNING"


def test_cli_init_rejects_file_workspace(
    runner: CliRunner,
    tmp_path: Path,
) -> None:
    target = tmp_path / "not-a-dir"
    target.write_text("x", encoding="utf-8")

    result = runner.invoke(create_app(), ["init", "--workspace", str(target)])

    assert result.exit_code == 1
    assert "Workspace error" in result.stdout


def test_cli_without_arguments_shows_help(runner: CliRunner) -> None:
    result = runner.invoke(create_app(), [])

    assert "init" in result.stdout
    assert "run" in result.stdout
