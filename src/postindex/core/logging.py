"""Structured logging setup for :mod:`postindex` runs.

Console output goes through Rich; when a workspace is known, JSON lines are
also written to ``<workspace>/logs/postindex.log`` and rotated nightly into
gzip archives.
"""

from __future__ import annotations

import gzip
import logging
from contextlib import contextmanager
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import shutil
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler
import structlog

Logger = structlog.stdlib.BoundLogger

LOG_DIRNAME = "logs"
LOG_FILENAME = "postindex.log"
ARCHIVE_DAYS = 7

# Client libraries that log every HTTP round trip at INFO.
_CHATTY_LOGGERS = (
    "google.auth",
    "google.cloud.bigquery",
    "httpx",
    "openai",
    "urllib3",
)

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)
_SHARED_PROCESSORS = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    _TIMESTAMPER,
)


def _level_number(level: str) -> int:
    """Translate a level name such as ``"info"`` into its numeric value.

    Raises:
        ValueError: If the level name is not recognized.
    """

    number = logging.getLevelNamesMapping().get(level.strip().upper())
    if number is None:
        raise ValueError(f"Unsupported log level: {level!r}")
    return number


def _formatter(
    renderer: structlog.types.Processor,
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=list(_SHARED_PROCESSORS),
    )


def _compress_archive(source: str, dest: str) -> None:
    """Gzip a rotated log file and drop the uncompressed copy."""

    with open(source, "rb") as plain, gzip.open(dest, "wb") as packed:
        shutil.copyfileobj(plain, packed)
    Path(source).unlink(missing_ok=True)


def _archive_name(name: str) -> str:
    return f"{name}.gz"


def _file_handler(log_file: Path) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        log_file,
        when="midnight",
        backupCount=ARCHIVE_DAYS,
        utc=True,
        encoding="utf-8",
        delay=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.namer = _archive_name
    handler.rotator = _compress_archive
    handler.setFormatter(
        _formatter(structlog.processors.JSONRenderer(sort_keys=True))
    )
    return handler


def _console_handler(console: Console | None) -> RichHandler:
    handler = RichHandler(
        console=console or Console(),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
        enable_link_path=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(
        _formatter(structlog.dev.ConsoleRenderer(colors=False))
    )
    return handler


def _install_handlers(level: int, handlers: list[logging.Handler]) -> None:
    """Make ``handlers`` the only handlers on the root logger."""

    root = logging.getLogger()
    root.setLevel(level)
    for stale in list(root.handlers):
        root.removeHandler(stale)
        stale.close()
    for handler in handlers:
        handler.setLevel(level)
        root.addHandler(handler)


def _quiet_library_loggers(level: int) -> None:
    """Raise chatty client loggers to WARNING unless debugging."""

    target = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(target)


def configure_logging(
    *,
    level: str = "INFO",
    workspace_path: str | Path | None = None,
    console: Console | None = None,
) -> None:
    """Route structlog events to the console and the workspace log file.

    Args:
        level: Level name for the root logger, in any case.
        workspace_path: Workspace whose ``logs`` directory receives the file
            log; console-only when omitted.
        console: Rich console to render into (tests pass a recording one).

    Raises:
        ValueError: If ``level`` is not a recognized log level name.

    Example:
        >>> from pathlib import Path
        >>> path = Path("/tmp/postindex-log-example")
        >>> configure_logging(level="debug", workspace_path=path)
        >>> get_logger(__name__).info("configured", example=True)
        >>> (path / "logs" / "postindex.log").exists()
        True
    """

    log_level = _level_number(level)

    structlog.reset_defaults()
    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = [_console_handler(console)]
    if workspace_path is not None:
        log_dir = (
            Path(workspace_path).expanduser().resolve(strict=False)
            / LOG_DIRNAME
        )
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(_file_handler(log_dir / LOG_FILENAME))

    _install_handlers(log_level, handlers)
    _quiet_library_loggers(log_level)
    logging.captureWarnings(True)


def get_logger(name: str | None = None, **initial_context: Any) -> Logger:
    """Return a structured logger bound to an optional context.

    Example:
        >>> logger = get_logger(__name__, component="planner")
        >>> isinstance(logger, structlog.stdlib.BoundLogger)
        True
    """

    return structlog.get_logger(name).bind(**initial_context)


@contextmanager
def run_context(**values: Any) -> Iterator[None]:
    """Bind ``values`` to every log event emitted inside the block.

    Context is stored in :mod:`contextvars`, so worker threads each carry
    their own run labels.

    Example:
        >>> with run_context(run="entity-0x05"):
        ...     get_logger(__name__).debug("planning")
    """

    with structlog.contextvars.bound_contextvars(**values):
        yield


__all__ = ["Logger", "configure_logging", "get_logger", "run_context"]
