"""Cleanup helpers for TicketPilot temporary data."""

from __future__ import annotations

import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class CleanupResult:
    """Aggregate cleanup results."""

    removed: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add_removed(self, paths: Iterable[Path]) -> None:
        for path in paths:
            self.removed.append(path)

    def add_error(self, message: str) -> None:
        self.errors.append(message)


def _safe_rmtree(path: Path, result: CleanupResult, dry_run: bool) -> None:
    if dry_run:
        result.add_removed([path])
        return
    try:
        shutil.rmtree(path)
        result.add_removed([path])
    except FileNotFoundError:
        return
    except OSError as exc:
        result.add_error(f"Failed to remove {path}: {exc}")


def find_stale_workspaces(
    base_dir: Path,
    max_age_sec: float,
    now: float | None = None,
) -> list[Path]:
    """Find workspace directories under base_dir older than max_age_sec.

    Workspaces are always removed by the job that created them; anything left behind
    belongs to a process that was killed mid-job.
    """
    if not base_dir.exists():
        return []

    current = time.time() if now is None else now
    stale = []
    for path in base_dir.iterdir():
        if not path.is_dir():
            continue
        try:
            age = current - path.stat().st_mtime
        except FileNotFoundError:
            continue
        if age > max_age_sec:
            stale.append(path)
    return sorted(stale)


def cleanup_workspaces(
    base_dir: Path,
    max_age_hours: float = 6.0,
    dry_run: bool = False,
) -> CleanupResult:
    """Remove stale workspace directories."""
    result = CleanupResult()
    for path in find_stale_workspaces(base_dir, max_age_hours * 3600):
        _safe_rmtree(path, result, dry_run=dry_run)
    return result


def cleanup_logs(log_dir: Path, dry_run: bool = False) -> CleanupResult:
    """Remove the TicketPilot log directory."""
    result = CleanupResult()
    if log_dir.exists():
        _safe_rmtree(log_dir, result, dry_run=dry_run)
    return result
