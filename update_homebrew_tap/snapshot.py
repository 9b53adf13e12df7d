"""
Point-in-time formula backups used for rollback.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from update_homebrew_tap.errors import BackupFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """The formula's bytes before mutation, plus the backup file holding them."""

    path: Path
    content: bytes
    backup_path: Optional[Path] = None

    @classmethod
    def take(cls, path: Path, suffix: str = ".backup") -> "Snapshot":
        path = Path(path)
        backup_path = path.with_name(path.name + suffix)
        try:
            content = path.read_bytes()
            backup_path.write_bytes(content)
        except OSError as exc:
            raise BackupFailed(f"Cannot back up {path}: {exc}") from exc
        logger.info("Backup created: %s", backup_path)
        return cls(path=path, content=content, backup_path=backup_path)

    @classmethod
    def in_memory(cls, path: Path) -> "Snapshot":
        """Snapshot without a backup file, for previews that must not write."""
        path = Path(path)
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise BackupFailed(f"Cannot read {path}: {exc}") from exc
        return cls(path=path, content=content)

    def restore(self) -> None:
        tmp = self.path.with_name(self.path.name + ".restore")
        tmp.write_bytes(self.content)
        os.replace(tmp, self.path)
        logger.warning("Formula rolled back to previous version: %s", self.path)

    def discard(self) -> None:
        if self.backup_path is not None and self.backup_path.exists():
            self.backup_path.unlink()
