"""Static partition of the managed tree into protected and system paths."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Literal

from skillops.config import Settings, split_csv
from skillops.errors import ConfigError

Classification = Literal["system", "protected"]


def _normalize(raw: str) -> str:
    clean = raw.strip().replace("\\", "/").strip("/")
    if not clean:
        raise ConfigError("managed path must not be empty")
    parts = clean.split("/")
    if any(part in {"", ".", ".."} for part in parts):
        raise ConfigError(f"managed path must be a plain relative path: {raw!r}")
    return "/".join(parts)


def _nested(a: str, b: str) -> bool:
    return a == b or a.startswith(f"{b}/") or b.startswith(f"{a}/")


@dataclass(frozen=True, slots=True)
class FileManifest:
    """Protected paths are user data; system paths are owned by releases.

    Built once per process and consulted by path only, never by content.
    """

    system: frozenset[str]
    protected: frozenset[str]

    @classmethod
    def build(cls, system: list[str], protected: list[str]) -> FileManifest:
        system_set = frozenset(_normalize(item) for item in system)
        protected_set = frozenset(_normalize(item) for item in protected)
        if not system_set:
            raise ConfigError("file manifest needs at least one system path")
        for left in system_set:
            for right in protected_set:
                if _nested(left, right):
                    raise ConfigError(
                        f"system path {left!r} overlaps protected path {right!r}"
                    )
        for group in (system_set, protected_set):
            ordered = sorted(group)
            for index, left in enumerate(ordered):
                for right in ordered[index + 1 :]:
                    if _nested(left, right):
                        raise ConfigError(f"managed paths {left!r} and {right!r} are nested")
        return cls(system=system_set, protected=protected_set)

    @classmethod
    def from_settings(cls, settings: Settings) -> FileManifest:
        return cls.build(split_csv(settings.system_paths), split_csv(settings.protected_paths))

    def classify(self, path: str | PurePosixPath) -> Classification | None:
        candidate = str(PurePosixPath(str(path).replace("\\", "/"))).strip("/")
        for entry in self.protected:
            if candidate == entry or candidate.startswith(f"{entry}/"):
                return "protected"
        for entry in self.system:
            if candidate == entry or candidate.startswith(f"{entry}/"):
                return "system"
        return None

    def unclassified(self, root: Path) -> list[str]:
        """Top-level entries under ``root`` that neither set covers."""
        if not root.is_dir():
            return []
        tops = {entry.split("/", 1)[0] for entry in self.system | self.protected}
        return [child.name for child in sorted(root.iterdir()) if child.name not in tops]

    def system_sorted(self) -> list[str]:
        return sorted(self.system)
