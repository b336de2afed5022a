"""Typer commands that run and inspect the indexing pipeline."""

from __future__ import annotations

import json
import os
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, NoReturn

import typer

from postindex.core.config import AppConfig, load_workspace_config
from postindex.core.logging import Logger, configure_logging, get_logger
from postindex.core.paths import WorkspacePaths, resolve_workspace
from postindex.errors import ConfigurationError, PipelineError
from postindex.pipeline.models import RunResult
from postindex.pipeline.service import (
    SyncService,
    SyncSummary,
    build_sync_service,
)

_MODES = ("combined", "per-entity")


@dataclass(slots=True)
class PipelineCLIContext:
    """Shared state assembled for each pipeline command."""

    paths: WorkspacePaths
    config: AppConfig
    service: SyncService
    logger: Logger


def _fail(
    message: str,
    *,
    logger: Logger | None = None,
    **context: Any,
) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED)
    if logger is not None:
        logger.error("command-failed", error=message, **context)
    raise typer.Exit(code=1)


def _resolve_paths(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("POSTINDEX_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    return resolve_workspace(
        workspace_override=workspace,
        env_override=env_override,
    )


def _load_context(
    *,
    command: str,
    workspace: Path | None,
    log_level: str | None,
    overrides: dict[str, Any] | None = None,
) -> PipelineCLIContext:
    try:
        paths = _resolve_paths(workspace)
    except ValueError as exc:
        _fail(f"Workspace error: {exc}")

    cli_overrides: dict[str, Any] = dict(overrides or {})
    if log_level:
        cli_overrides["log_level"] = log_level

    try:
        config = load_workspace_config(
            paths,
            environ=os.environ,
            cli_overrides=cli_overrides,
        )
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")

    configure_logging(
        level=config.log_level,
        workspace_path=config.workspace if paths.workspace.exists() else None,
    )
    logger = get_logger(__name__, command=command)

    try:
        service = build_sync_service(config, logger=logger)
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}", logger=logger, missing=exc.missing)
    except PipelineError as exc:
        _fail(f"Failed to set up the pipeline: {exc}", logger=logger)

    return PipelineCLIContext(
        paths=paths,
        config=config,
        service=service,
        logger=logger,
    )


@contextmanager
def _cancel_on_interrupt(logger: Logger) -> Iterator[threading.Event]:
    """Set the yielded event on the first SIGINT; later ones interrupt."""

    cancel = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum: int, frame: object) -> None:
        if cancel.is_set():
            signal.default_int_handler(signum, frame)
        typer.secho(
            "Cancelling after the current batch (Ctrl-C again to abort)...",
            fg=typer.colors.YELLOW,
            err=True,
        )
        logger.warning("run-cancel-requested")
        cancel.set()

    signal.signal(signal.SIGINT, _handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


def _describe_result(result: RunResult, names: dict[str, str]) -> str:
    label = result.label or "run"
    name = names.get(label)
    title = f"{name} ({label})" if name else label
    line = (
        f"  {title}: {result.state.value}, fetched={result.fetched} "
        f"indexed={result.indexed} batches={result.batches}"
    )
    if result.skipped:
        line += f" skipped={result.skipped}"
    if result.duplicates:
        line += f" duplicates={result.duplicates}"
    if result.error is not None:
        line += f" error={result.error}"
    return line


def _emit_summary(summary: SyncSummary, *, names: dict[str, str]) -> None:
    color = typer.colors.GREEN if summary.ok else typer.colors.RED
    heading = "Sync complete" if summary.ok else "Sync finished with failures"
    typer.secho(heading, fg=color, bold=True)
    typer.echo(f"  mode: {summary.mode}")
    typer.echo(f"  targets: {len(summary.targets)}")
    for result in summary.results:
        typer.echo(_describe_result(result, names))
    typer.echo(f"  total indexed: {summary.total_indexed}")


_WORKSPACE_OPTION = typer.Option(
    None,
    "--workspace",
    "-w",
    help=(
        "Override workspace directory (defaults to POSTINDEX_WORKSPACE or "
        "~/.postindex)."
    ),
)
_LOG_LEVEL_OPTION = typer.Option(
    None,
    "--log-level",
    "-l",
    help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
)
_ENTITY_OPTION = typer.Option(
    None,
    "--entity",
    "-e",
    metavar="ID",
    help="Entity ID to sync; repeatable. Replaces the configured set.",
)
_JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Print the result as JSON.",
)


def run_command(
    workspace: Path | None = _WORKSPACE_OPTION,
    log_level: str | None = _LOG_LEVEL_OPTION,
    mode: str | None = typer.Option(
        None,
        "--mode",
        "-m",
        help="Run entities together ('combined') or one run each ('per-entity').",
    ),
    entity: list[str] = _ENTITY_OPTION,
    concurrency: str | None = typer.Option(
        None,
        "--concurrency",
        "-c",
        help="Worker count for per-entity mode (integer or 'auto').",
    ),
    batch_size: int | None = typer.Option(
        None,
        "--batch-size",
        "-b",
        min=1,
        help="Documents embedded and written per store call.",
    ),
    min_content_length: int | None = typer.Option(
        None,
        "--min-content-length",
        min=0,
        help="Only fetch publications with content longer than this.",
    ),
    as_json: bool = _JSON_OPTION,
) -> None:
    """Fetch new publications and index them into the vector store."""

    if mode is not None and mode not in _MODES:
        raise typer.BadParameter(
            f"mode must be one of {', '.join(_MODES)}",
            param_hint="--mode",
        )

    pipeline_overrides: dict[str, Any] = {}
    if mode is not None:
        pipeline_overrides["mode"] = mode
    if batch_size is not None:
        pipeline_overrides["batch_size"] = batch_size
    if min_content_length is not None:
        pipeline_overrides["min_content_length"] = min_content_length

    context = _load_context(
        command="run",
        workspace=workspace,
        log_level=log_level,
        overrides={"pipeline": pipeline_overrides} if pipeline_overrides else None,
    )

    with _cancel_on_interrupt(context.logger) as cancel:
        try:
            summary = context.service.run(
                entities=entity or None,
                concurrency=concurrency,
                cancel=cancel,
            )
        except (PipelineError, ValueError) as exc:
            _fail(f"Run failed: {exc}", logger=context.logger)

    if as_json:
        typer.echo(json.dumps(summary.to_mapping(), indent=2, sort_keys=True))
    else:
        _emit_summary(summary, names=dict(context.config.display_names))

    if not summary.ok:
        raise typer.Exit(code=1)


def plan_command(
    workspace: Path | None = _WORKSPACE_OPTION,
    log_level: str | None = _LOG_LEVEL_OPTION,
    entity: list[str] = _ENTITY_OPTION,
    as_json: bool = _JSON_OPTION,
) -> None:
    """Show which entities would be backfilled or synced incrementally."""

    context = _load_context(
        command="plan",
        workspace=workspace,
        log_level=log_level,
    )
    try:
        state, plan = context.service.plan(entity or None)
    except PipelineError as exc:
        _fail(f"Plan failed: {exc}", logger=context.logger)

    payload = {"state": state.to_mapping(), "plan": plan.to_mapping()}
    if as_json:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    names = context.config.display_names
    cutoffs = payload["plan"]["cutoffs"]
    typer.secho("Sync plan", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  cutoff: {payload['plan']['cutoff'] or 'none (full backfill)'}")
    for heading, ids in (("new", plan.new), ("existing", plan.existing)):
        typer.echo(f"  {heading}: {len(ids)}")
        for entity_id in sorted(ids):
            name = names.get(entity_id)
            line = f"    - {entity_id}" + (f" ({name})" if name else "")
            if entity_id in cutoffs:
                line += f" since {cutoffs[entity_id]}"
            typer.echo(line)


def state_command(
    workspace: Path | None = _WORKSPACE_OPTION,
    log_level: str | None = _LOG_LEVEL_OPTION,
    as_json: bool = _JSON_OPTION,
) -> None:
    """Show the authors and latest timestamp already in the index."""

    context = _load_context(
        command="state",
        workspace=workspace,
        log_level=log_level,
    )
    try:
        state = context.service.state()
    except PipelineError as exc:
        _fail(f"State read failed: {exc}", logger=context.logger)

    payload = state.to_mapping()
    if as_json:
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        return

    typer.secho("Index state", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  collection: {context.config.store.collection}")
    typer.echo(f"  latest timestamp: {payload['latest_timestamp'] or 'empty'}")
    typer.echo(f"  authors: {len(state.authors)}")
    for author in payload["authors"]:
        typer.echo(f"    - {author}")


def register_pipeline_commands(app: typer.Typer) -> None:
    """Attach ``run``, ``plan`` and ``state`` to ``app``."""

    app.command(
        "run",
        help=(
            "Fetch publications newer than the index and write them to the "
            "vector store."
        ),
    )(run_command)
    app.command(
        "plan",
        help="Dry run: compute the sync plan without fetching or writing.",
    )(plan_command)
    app.command(
        "state",
        help="Show the authors and high-water mark of the current index.",
    )(state_command)


__all__ = ["PipelineCLIContext", "register_pipeline_commands"]
