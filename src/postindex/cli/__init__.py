"""Command-line interface for :mod:`postindex`.

This module exposes the Typer application behind the ``postindex`` console
script: ``init`` bootstraps a workspace, and ``run``/``plan``/``state`` drive
the indexing pipeline.

Example:
    >>> import typer
    >>> from postindex.cli import create_app
    >>> app = create_app()
    >>> isinstance(app, typer.Typer)
    True
"""

from __future__ import annotations

import os
from pathlib import Path

import typer

from postindex.cli.init import InitResult, init_workspace
from postindex.cli.pipeline import register_pipeline_commands
from postindex.core.config import DEFAULTS_RESOURCE_NAME
from postindex.core.logging import configure_logging, get_logger
from postindex.core.paths import resolve_workspace
from postindex.errors import ConfigurationError

_app_help = (
    "Incrementally index warehouse publications into a vector store."
    "\n\n"
    "Use `postindex init` to bootstrap a workspace and populate "
    "`postindex.toml`, then `postindex run`."
)


def _emit_workspace_summary(
    result: InitResult,
    *,
    refresh: bool,
    existing: bool,
) -> None:
    """Print a human-friendly summary of bootstrap results."""

    config = result.config
    typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  workspace: {config.workspace}")
    typer.echo(f"  config: {result.paths.config_file}")
    typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
    typer.echo(f"  log level: {config.log_level}")

    if result.archive is not None:
        typer.echo(f"  archived previous workspace: {result.archive}")
    elif existing and not refresh:
        typer.echo("  note: existing workspace detected; files left untouched")

    missing = config.missing_runtime_settings()
    if missing:
        typer.echo("  still required before `postindex run`:")
        for name in missing:
            typer.echo(f"    - {name}")


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``postindex`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "init",
        help="Bootstrap a workspace and seed configuration files.",
    )
    def init_command(
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help=(
                "Override the workspace directory (defaults to "
                "$HOME/.postindex or POSTINDEX_WORKSPACE)."
            ),
        ),
        refresh: bool = typer.Option(
            False,
            "--refresh",
            help=(
                "Archive existing workspace contents before regenerating a "
                "clean layout."
            ),
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Initialize (or refresh) the local workspace."""

        env_workspace = os.environ.get("POSTINDEX_WORKSPACE")
        env_workspace_path = (
            Path(env_workspace).expanduser() if env_workspace else None
        )

        try:
            paths = resolve_workspace(
                workspace_override=workspace,
                env_override=env_workspace_path,
            )
        except ValueError as exc:
            typer.secho(f"Workspace error: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        workspace_exists = paths.workspace.exists()

        try:
            result = init_workspace(
                workspace=paths.workspace,
                refresh=refresh,
                log_level=log_level,
                environ=os.environ,
            )
        except (ConfigurationError, OSError, ValueError) as exc:
            message = f"Failed to initialize workspace: {exc}"
            typer.secho(message, fg=typer.colors.RED)
            raise typer.Exit(code=1) from exc

        configure_logging(
            level=result.config.log_level,
            workspace_path=result.config.workspace,
        )
        logger = get_logger(__name__, command="init")
        logger.info(
            "init-complete",
            workspace=str(result.config.workspace),
            refresh=refresh,
            archive=None if result.archive is None else str(result.archive),
            config_written=result.config_written,
        )

        _emit_workspace_summary(
            result,
            refresh=refresh,
            existing=workspace_exists,
        )

    register_pipeline_commands(app)
    return app


__all__ = ["create_app"]
