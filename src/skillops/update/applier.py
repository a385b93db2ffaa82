"""Swap system paths in from a staged release; leave protected paths alone."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from skillops.errors import PartialApplyFailure
from skillops.update.classifier import FileManifest
from skillops.update.fetcher import ArchiveHandle
from skillops.update.fsops import remove_path, swap_in

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApplyResult:
    replaced: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    ignored: list[str] = field(default_factory=list)


class FileApplier:
    def __init__(self, managed_root: Path, file_manifest: FileManifest) -> None:
        self.managed_root = managed_root
        self.file_manifest = file_manifest

    def apply(self, archive: ArchiveHandle) -> ApplyResult:
        """Replace every system path with the archive's copy.

        The loop only ever visits ``file_manifest.system``; protected entries in the
        archive are listed as ignored but never opened.
        """
        result = ApplyResult()
        for relative in self.file_manifest.system_sorted():
            target = self.managed_root / relative
            try:
                if archive.contains(relative):
                    swap_in(archive.path_for(relative), target)
                    result.replaced.append(relative)
                elif target.exists() or target.is_symlink():
                    remove_path(target)
                    result.removed.append(relative)
            except OSError as exc:
                raise PartialApplyFailure(
                    f"replacing {relative} failed after {len(result.replaced)} paths: {exc}",
                    replaced=result.replaced + result.removed,
                ) from exc
        result.ignored = self._ignored_entries(archive)
        for name in result.ignored:
            logger.info("Archive entry %s is not a system path; left untouched", name)
        logger.info(
            "Applied release %s: %d replaced, %d removed",
            archive.manifest.version,
            len(result.replaced),
            len(result.removed),
        )
        return result

    def _ignored_entries(self, archive: ArchiveHandle) -> list[str]:
        # Top-level names only; classification never looks inside the entries.
        names = sorted(child.name for child in archive.root.iterdir())
        parents = {entry.split("/", 1)[0] for entry in self.file_manifest.system}
        return [
            name
            for name in names
            if name not in parents and self.file_manifest.classify(name) != "system"
        ]
