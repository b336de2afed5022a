"""Workspace path helpers for :mod:`postindex`.

A workspace holds the user configuration file, rotated run logs, and archives
of previous workspace contents created by ``postindex init --refresh``.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable
from zipfile import ZIP_DEFLATED, ZipFile

DEFAULT_WORKSPACE_NAME = ".postindex"
CONFIG_FILENAME = "postindex.toml"

__all__ = [
    "CONFIG_FILENAME",
    "DEFAULT_WORKSPACE_NAME",
    "WorkspacePaths",
    "archive_workspace",
    "resolve_workspace",
]


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> from pathlib import Path
        >>> paths = WorkspacePaths.under(Path("/tmp/postindex"))
        >>> [p.name for p in paths.iter_all()]
        ['postindex', 'postindex.toml', 'logs', 'archives']
    """

    workspace: Path
    config_file: Path
    logs_dir: Path
    archives_dir: Path

    @classmethod
    def under(cls, workspace: Path) -> "WorkspacePaths":
        """Return the standard layout rooted at ``workspace``."""

        return cls(
            workspace=workspace,
            config_file=workspace / CONFIG_FILENAME,
            logs_dir=workspace / "logs",
            archives_dir=workspace / "archives",
        )

    def iter_all(self) -> Iterable[Path]:
        """Yield every path managed within the workspace."""

        yield from (
            self.workspace,
            self.config_file,
            self.logs_dir,
            self.archives_dir,
        )


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    Args:
        workspace_override: Optional override provided by CLI flags.
        env_override: Optional override from ``POSTINDEX_WORKSPACE``.

    Returns:
        Resolved workspace paths after precedence rules are applied.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    base = (
        workspace_override
        or env_override
        or Path.home() / DEFAULT_WORKSPACE_NAME
    )
    raw = Path(base).expanduser()
    if not raw.is_absolute():
        raw = Path.cwd() / raw
    workspace = raw.resolve(strict=False)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths.under(workspace)


def _archive_name(archive_root: Path, timestamp: str) -> Path:
    suffix = 0
    while True:
        label = timestamp if suffix == 0 else f"{timestamp}-{suffix:02d}"
        candidate = archive_root / f"{label}.zip"
        if not candidate.exists():
            return candidate
        suffix += 1


def _write_entry(root: Path, path: Path, archive: ZipFile) -> None:
    relative = path.relative_to(root).as_posix()
    if path.is_dir():
        archive.writestr(relative.rstrip("/") + "/", "")
        for child in sorted(path.iterdir()):
            _write_entry(root, child, archive)
    else:
        archive.write(path, relative)


def archive_workspace(paths: WorkspacePaths) -> Path | None:
    """Move current workspace contents into a timestamped ZIP archive.

    Args:
        paths: Workspace paths describing the current workspace layout.

    Returns:
        The archive path when contents were archived, otherwise ``None``.

    Raises:
        ValueError: If the workspace path exists but is not a directory.
    """

    workspace = paths.workspace
    if not workspace.exists():
        return None
    if not workspace.is_dir():
        raise ValueError(
            f"Workspace path '{workspace}' exists but is not a directory."
        )

    archive_root = paths.archives_dir
    archive_root.mkdir(parents=True, exist_ok=True)
    entries = sorted(
        entry for entry in workspace.iterdir() if entry != archive_root
    )
    if not entries:
        if not any(archive_root.iterdir()):
            archive_root.rmdir()
        return None

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    archive_path = _archive_name(archive_root, timestamp)
    with ZipFile(archive_path, mode="w", compression=ZIP_DEFLATED) as archive:
        for entry in entries:
            _write_entry(workspace, entry, archive)

    for entry in entries:
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()

    return archive_path
