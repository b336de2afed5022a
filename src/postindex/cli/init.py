"""Helpers for the ``postindex init`` command."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from postindex.core.config import (
    AppConfig,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    render_user_config,
)
from postindex.core.paths import WorkspacePaths, archive_workspace, resolve_workspace


@dataclass(frozen=True, slots=True)
class InitResult:
    """Outcome of :func:`init_workspace`."""

    config: AppConfig
    paths: WorkspacePaths
    archive: Path | None
    config_written: bool


def _ensure_directories(paths: WorkspacePaths) -> None:
    paths.workspace.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)


def init_workspace(
    *,
    workspace: Path,
    refresh: bool = False,
    log_level: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> InitResult:
    """Bootstrap the workspace directory and its ``postindex.toml``.

    An existing config file is left untouched unless ``refresh`` is set, in
    which case the previous workspace contents are archived first.

    Example:
        >>> from pathlib import Path
        >>> result = init_workspace(workspace=Path("/tmp/postindex-example"))
        >>> result.paths.config_file.name
        'postindex.toml'

    Args:
        workspace: Target directory for the workspace.
        refresh: Archive existing contents and regenerate the layout.
        log_level: Optional override for the configured logging level.
        environ: Environment used for non-secret settings in the template.

    Returns:
        The resolved configuration and what was written.
    """

    paths = resolve_workspace(workspace_override=workspace)

    archive = archive_workspace(paths) if refresh else None
    _ensure_directories(paths)

    cli_overrides: dict[str, object] = {"workspace": str(paths.workspace)}
    if log_level:
        cli_overrides["log_level"] = log_level

    env_layer = env_config_from_environ(environ or {})
    config = load_config(
        defaults=load_packaged_defaults(),
        env_config=env_layer,
        cli_overrides=cli_overrides,
    )

    config_written = False
    if refresh or not paths.config_file.exists():
        paths.config_file.write_text(
            render_user_config(config),
            encoding="utf-8",
        )
        config_written = True

    return InitResult(
        config=config,
        paths=paths,
        archive=archive,
        config_written=config_written,
    )


__all__ = ["InitResult", "init_workspace"]
