"""Core utilities shared across :mod:`postindex` modules.

The core namespace provides cohesive seams for configuration loading, logging
setup, and workspace path resolution so pipeline modules remain lightweight.

Example:
    >>> from postindex.core import get_logger
    >>> logger = get_logger(__name__)
    >>> isinstance(logger, object)
    True
"""

from __future__ import annotations

from .config import AppConfig, load_config, load_workspace_config
from .logging import configure_logging, get_logger, run_context
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "configure_logging",
    "get_logger",
    "load_config",
    "load_workspace_config",
    "run_context",
    "WorkspacePaths",
    "resolve_workspace",
]
