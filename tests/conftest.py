"""Shared pytest fixtures for pipeline tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from structlog import get_logger

from fakes import COLLECTION, RecordingStore, StubEmbedder
from postindex.core.config import AppConfig, load_config, load_packaged_defaults


@pytest.fixture
def logger():
    return get_logger("tests.postindex")


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def embedder() -> StubEmbedder:
    return StubEmbedder()


@pytest.fixture
def runtime_config(tmp_path: Path) -> AppConfig:
    """Return a config with every runtime setting filled in."""

    return load_config(
        defaults=load_packaged_defaults(),
        cli_overrides={
            "workspace": str(tmp_path / "workspace"),
            "warehouse": {
                "project": "demo-project",
                "credentials": json.dumps({"type": "service_account"}),
            },
            "store": {
                "url": "postgresql://localhost:5432/postgres",
                "api_key": "store-secret",
                "collection": COLLECTION,
                "dimension": 3,
            },
            "embedding": {"api_key": "sk-test"},
            "pipeline": {
                "entities": {"0x05": "stani", "0x8e": "alice"},
            },
        },
    )
