"""Backups of pristine files and the out-of-band optimisation marker."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
import time
from enum import Enum
from pathlib import Path

from .config import DEFAULT_SETTINGS, EngineSettings
from .errors import BackupOrRestoreFailed

__all__ = [
    "MARKER_ATTRIBUTE",
    "BackupStore",
    "MarkerValue",
    "atomic_replace",
]

MARKER_ATTRIBUTE = "user.squish.optimisation.status"

logger = logging.getLogger(__name__)


class MarkerValue(str, Enum):
    OPTIMISED = "true"
    PENDING = "pending"
    ORIGINAL = "original"


def atomic_replace(
    target: Path,
    source: Path,
    *,
    keep_source: bool = True,
    marker: MarkerValue | None = None,
) -> None:
    """Replace *target* with the content of *source* in one rename.

    The content is first copied next to *target* (same filesystem) and then
    moved over it with ``os.replace``, so readers see either the old or the
    new file, never a partial one. A *marker* is written before the rename so
    the new file never appears untagged.
    """
    target = Path(target)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".squish-tmp", dir=target.parent)
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        if keep_source:
            shutil.copyfile(source, tmp_path)
        else:
            shutil.move(str(source), tmp_path)
        if target.exists():
            shutil.copymode(target, tmp_path)
        if marker is not None:
            try:
                os.setxattr(tmp_name, MARKER_ATTRIBUTE, MarkerValue(marker).value.encode("utf-8"))
            except OSError as e:
                logger.debug("No optimisation marker on %s: %s", target, e)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class BackupStore:
    """Content copies taken before the first destructive transform on a path.

    Backups live under ``<workdir>/backups/<sha1(parent)[:12]>/<name>`` so
    that equally named files from different folders never collide. A backup is
    written once and reused by every later transform on the same path.
    """

    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or DEFAULT_SETTINGS
        self.root = self.settings.backups_dir
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------
    def backup_path_for(self, path: Path | str) -> Path:
        path = Path(path).resolve()
        digest = hashlib.sha1(str(path.parent).encode("utf-8")).hexdigest()[:12]
        return self.root / digest / path.name

    def has_backup(self, path: Path | str) -> bool:
        return self.backup_path_for(path).is_file()

    def backup(self, path: Path | str, *, force: bool = False) -> Path:
        """Copy *path* into the store unless a backup already exists."""
        path = Path(path)
        backup_path = self.backup_path_for(path)
        if backup_path.is_file() and not force:
            self.logger.debug("Reusing backup %s for %s", backup_path, path)
            return backup_path

        if not path.is_file():
            raise BackupOrRestoreFailed(path, "source file does not exist")

        backup_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            if backup_path.exists():
                atomic_replace(backup_path, path)
            else:
                shutil.copy2(path, backup_path)
        except OSError as e:
            raise BackupOrRestoreFailed(path, str(e)) from e
        self.logger.debug("💾 Backed up %s -> %s", path, backup_path)
        return backup_path

    def restore(self, path: Path | str, from_backup: Path | str | None = None) -> Path:
        """Atomically put the backed up content back at *path*.

        Raises:
            BackupOrRestoreFailed: the backup is missing or the replace failed
        """
        path = Path(path)
        backup_path = Path(from_backup) if from_backup is not None else self.backup_path_for(path)
        if not backup_path.is_file():
            raise BackupOrRestoreFailed(path, f"backup {backup_path} does not exist")

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            atomic_replace(path, backup_path, marker=MarkerValue.ORIGINAL)
        except OSError as e:
            raise BackupOrRestoreFailed(path, str(e)) from e

        self.logger.info("↩️ Restored %s from %s", path, backup_path)
        return path

    def discard(self, path: Path | str) -> None:
        self.backup_path_for(path).unlink(missing_ok=True)

    def cleanup(self, older_than_days: float | None = None) -> int:
        """Delete backups not touched for *older_than_days*; return the count."""
        days = self.settings.BACKUP_RETENTION_DAYS if older_than_days is None else older_than_days
        if days <= 0 or not self.root.exists():
            return 0

        cutoff = time.time() - days * 86400
        removed = 0
        for candidate in self.root.rglob("*"):
            try:
                if candidate.is_file() and candidate.stat().st_mtime < cutoff:
                    candidate.unlink()
                    removed += 1
            except OSError as e:
                self.logger.warning("Could not prune backup %s: %s", candidate, e)
        if removed:
            self.logger.info("🧹 Pruned %d stale backup(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Optimisation marker
    # ------------------------------------------------------------------
    def marker(self, path: Path | str) -> str | None:
        try:
            return os.getxattr(str(path), MARKER_ATTRIBUTE).decode("utf-8")
        except OSError:
            return None

    def has_optimisation_marker(self, path: Path | str) -> bool:
        return self.marker(path) == MarkerValue.OPTIMISED.value

    def set_optimisation_marker(self, path: Path | str, value: MarkerValue | str = MarkerValue.OPTIMISED) -> bool:
        """Tag *path*; return ``False`` when the filesystem has no xattr support."""
        value = MarkerValue(value)
        try:
            os.setxattr(str(path), MARKER_ATTRIBUTE, value.value.encode("utf-8"))
        except OSError as e:
            self.logger.warning("Could not set optimisation marker on %s: %s", path, e)
            return False
        return True

    def clear_marker(self, path: Path | str) -> None:
        try:
            os.removexattr(str(path), MARKER_ATTRIBUTE)
        except OSError:
            pass
