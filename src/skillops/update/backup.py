"""Tagged snapshots of system paths and rollback from them.

Backups are never pruned; each lives in its own directory under the backup root:

    backup_root/
        backup_1.2.0_20260101T120000000000Z/
            backup.json
            files/skills/...
            files/manifest.json
"""

from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from skillops.errors import BackupNotFound, RestoreFailure, SnapshotFailure
from skillops.ids import utc_stamp
from skillops.update.fsops import copy_path, remove_path, swap_in
from skillops.update.version import Version

logger = logging.getLogger(__name__)

_METADATA_FILE = "backup.json"
_FILES_DIR = "files"


@dataclass(frozen=True, slots=True)
class Backup:
    tag: str
    created_at: datetime
    paths: frozenset[str]
    absent: frozenset[str]
    location: Path

    @property
    def files_dir(self) -> Path:
        return self.location / _FILES_DIR


@dataclass(slots=True)
class RestoreResult:
    backup: Backup
    restored: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


def _load_backup(directory: Path) -> Backup | None:
    metadata_path = directory / _METADATA_FILE
    if not metadata_path.is_file():
        return None
    try:
        payload = json.loads(metadata_path.read_text())
        return Backup(
            tag=str(payload["tag"]),
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            paths=frozenset(str(item) for item in payload["paths"]),
            absent=frozenset(str(item) for item in payload.get("absent", [])),
            location=directory,
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("Ignoring unreadable backup metadata at %s", metadata_path)
        return None


class BackupManager:
    def __init__(self, backup_root: Path, managed_root: Path) -> None:
        self.backup_root = backup_root
        self.managed_root = managed_root

    def snapshot(self, tag: Version | str, paths: set[str] | frozenset[str]) -> Backup:
        """Copy every path into a fresh backup; nothing is kept if any copy fails."""
        tag_text = str(tag)
        created_at = datetime.now(UTC)
        location = self.backup_root / f"backup_{tag_text}_{utc_stamp(created_at)}"
        files_dir = location / _FILES_DIR
        present: list[str] = []
        absent: list[str] = []
        try:
            files_dir.mkdir(parents=True, exist_ok=False)
            for relative in sorted(paths):
                source = self.managed_root / relative
                if not (source.exists() or source.is_symlink()):
                    absent.append(relative)
                    continue
                copy_path(source, files_dir / relative)
                present.append(relative)
            # Metadata goes last: a directory without it is not a backup.
            (location / _METADATA_FILE).write_text(
                json.dumps(
                    {
                        "tag": tag_text,
                        "created_at": created_at.isoformat(),
                        "paths": present,
                        "absent": absent,
                    },
                    indent=2,
                    sort_keys=True,
                )
            )
        except OSError as exc:
            shutil.rmtree(location, ignore_errors=True)
            raise SnapshotFailure(f"snapshot {tag_text} incomplete: {exc}") from exc
        logger.info(
            "Snapshot %s written to %s (%d paths, %d absent)",
            tag_text,
            location,
            len(present),
            len(absent),
        )
        return Backup(
            tag=tag_text,
            created_at=created_at,
            paths=frozenset(present),
            absent=frozenset(absent),
            location=location,
        )

    def list_backups(self) -> list[Backup]:
        if not self.backup_root.is_dir():
            return []
        backups = [
            backup
            for directory in self.backup_root.iterdir()
            if directory.is_dir() and (backup := _load_backup(directory)) is not None
        ]
        backups.sort(key=lambda item: item.created_at, reverse=True)
        return backups

    def find(self, tag: Version | str) -> Backup:
        tag_text = str(tag)
        for backup in self.list_backups():
            if backup.tag == tag_text:
                return backup
        raise BackupNotFound(f"no backup tagged {tag_text} in {self.backup_root}")

    def restore(self, tag: Version | str, *, backup: Backup | None = None) -> RestoreResult:
        """Put the newest backup for ``tag`` back over the managed tree."""
        selected = backup or self.find(tag)
        result = RestoreResult(backup=selected)
        try:
            for relative in sorted(selected.paths):
                swap_in(selected.files_dir / relative, self.managed_root / relative)
                result.restored.append(relative)
            for relative in sorted(selected.absent):
                target = self.managed_root / relative
                if target.exists() or target.is_symlink():
                    remove_path(target)
                    result.removed.append(relative)
        except OSError as exc:
            raise RestoreFailure(
                f"restore of {selected.tag} from {selected.location} failed at "
                f"{len(result.restored)} of {len(selected.paths)} paths: {exc}"
            ) from exc
        logger.info(
            "Restored backup %s (%d paths, %d removed)",
            selected.tag,
            len(result.restored),
            len(result.removed),
        )
        return result
