"""Project file writes with timestamped backups.

Every overwrite of an existing file first copies it to
``<name>.backup-<timestamp>`` next to the original. Backup names are unique
even for several writes within the same clock tick. Cleanup is left to the
caller and never raises.
"""

from __future__ import annotations

import logging
import shutil
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

BACKUP_MARKER = ".backup-"


class FileManager:
    """Reads and writes files below a project root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def resolve(self, relative: str | Path) -> Path:
        """Absolute path of ``relative``; paths escaping the root are rejected."""
        path = (self.root / relative).resolve()
        root = self.root.resolve()
        if path != root and root not in path.parents:
            raise ValueError(f"Path escapes project root: {relative}")
        return path

    def read_file(self, relative: str | Path) -> str | None:
        path = self.resolve(relative)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def backup_path(self, path: Path) -> Path:
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        candidate = path.with_name(f"{path.name}{BACKUP_MARKER}{stamp}")
        counter = 1
        while candidate.exists():
            candidate = path.with_name(f"{path.name}{BACKUP_MARKER}{stamp}-{counter}")
            counter += 1
        return candidate

    def write_file(self, relative: str | Path, content: str, backup: bool = True) -> Path:
        """Write ``content``, backing up any existing file first.

        Args:
            relative: Path relative to the project root
            content: Full new file content
            backup: Copy an existing file aside before overwriting it

        Returns:
            Absolute path of the written file
        """
        path = self.resolve(relative)
        if backup and path.exists():
            backup_file = self.backup_path(path)
            shutil.copy2(path, backup_file)
            logger.debug("Backed up %s to %s", path, backup_file.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("Wrote %s", path)
        return path

    def list_backups(self, relative: str | Path) -> list[Path]:
        path = self.resolve(relative)
        if not path.parent.is_dir():
            return []
        return sorted(path.parent.glob(f"{path.name}{BACKUP_MARKER}*"))

    def cleanup_backups(self, relative: str | Path, keep: int = 0) -> int:
        """Delete backups of ``relative``, newest ``keep`` excepted.

        Returns the number of files removed. Failures are logged and skipped.
        """
        backups = self.list_backups(relative)
        doomed = backups[: len(backups) - keep] if keep > 0 else backups
        removed = 0
        for backup_file in doomed:
            try:
                backup_file.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not remove backup %s: %s", backup_file, e)
        return removed
