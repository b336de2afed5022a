"""Tests for :mod:`postindex.core.logging`."""

from __future__ import annotations

import gzip
import io
import json
import logging
import threading
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
from rich.console import Console
from rich.logging import RichHandler

from postindex.core.logging import configure_logging, get_logger, run_context


def _clear_root_handlers() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Ensure each test runs with a clean logging configuration."""

    _clear_root_handlers()
    yield
    _clear_root_handlers()


def _build_console() -> Console:
    return Console(file=io.StringIO(), width=120, record=True)


def _file_handler() -> TimedRotatingFileHandler:
    return next(
        h
        for h in logging.getLogger().handlers
        if isinstance(h, TimedRotatingFileHandler)
    )


def _read_events(handler: TimedRotatingFileHandler) -> list[dict]:
    for h in logging.getLogger().handlers:
        h.flush()
    text = Path(handler.baseFilename).read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def test_configure_logging_installs_console_and_file_handlers(
    tmp_path: Path,
) -> None:
    workspace = tmp_path / "workspace"

    configure_logging(
        level="debug",
        workspace_path=workspace,
        console=_build_console(),
    )

    root = logging.getLogger()
    rich_handlers = [h for h in root.handlers if isinstance(h, RichHandler)]
    assert len(rich_handlers) == 1

    handler = _file_handler()
    assert Path(handler.baseFilename) == (
        workspace.resolve() / "logs" / "postindex.log"
    )

    get_logger(__name__, component="planner").info("sync-plan", new=3)
    payload = _read_events(handler)[-1]

    assert payload["event"] == "sync-plan"
    assert payload["component"] == "planner"
    assert payload["new"] == 3


def test_configure_logging_without_workspace_omits_file_handler() -> None:
    configure_logging(level="info", console=_build_console())

    root = logging.getLogger()
    assert any(isinstance(h, RichHandler) for h in root.handlers)
    assert all(
        not isinstance(h, TimedRotatingFileHandler) for h in root.handlers
    )


def test_configure_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        configure_logging(level="chatty", console=_build_console())


def test_configure_logging_quiets_client_libraries() -> None:
    configure_logging(level="info", console=_build_console())

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("google.cloud.bigquery").level == logging.WARNING

    configure_logging(level="debug", console=_build_console())

    assert logging.getLogger("httpx").level == logging.DEBUG


def test_run_context_binds_values_per_thread(tmp_path: Path) -> None:
    configure_logging(
        level="info",
        workspace_path=tmp_path,
        console=_build_console(),
    )
    logger = get_logger("context-test")

    def worker(entity: str) -> None:
        with run_context(entity=entity):
            logger.info("entity-indexed", indexed=1)

    threads = [
        threading.Thread(target=worker, args=(name,)) for name in ("a", "b")
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    logger.info("after")

    events = _read_events(_file_handler())
    entities = sorted(
        event["entity"] for event in events if event["event"] == "entity-indexed"
    )
    assert entities == ["a", "b"]
    assert "entity" not in next(e for e in events if e["event"] == "after")


def test_configure_logging_rotates_with_compression(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    configure_logging(
        level="warning",
        workspace_path=workspace,
        console=_build_console(),
    )
    handler = _file_handler()

    get_logger("rotate", task="rotation").warning("pre-rotation")
    for h in logging.getLogger().handlers:
        h.flush()

    handler.doRollover()

    gz_files = sorted((workspace / "logs").glob("postindex.log.*.gz"))
    assert gz_files

    with gzip.open(gz_files[-1], "rt", encoding="utf-8") as fh:
        archived = fh.read()

    assert "pre-rotation" in archived
    assert "rotation" in archived
