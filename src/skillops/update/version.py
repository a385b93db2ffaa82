"""Semantic version parsing, comparison, and the on-disk manifest file."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path

from skillops.errors import MalformedVersion, ManifestMissing

_VERSION_RE = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$", re.ASCII)


class Ordering(str, Enum):
    LESS = "less"
    EQUAL = "equal"
    GREATER = "greater"


@dataclass(frozen=True, order=True, slots=True)
class Version:
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def parse_version(value: object) -> Version:
    """Parse exactly ``major.minor.patch``; anything else is rejected."""
    if not isinstance(value, str):
        raise MalformedVersion(f"version must be a string, got {type(value).__name__}")
    match = _VERSION_RE.fullmatch(value)
    if match is None:
        raise MalformedVersion(f"malformed version: {value!r}")
    major, minor, patch = (int(part) for part in match.groups())
    return Version(major, minor, patch)


def compare(a: Version, b: Version) -> Ordering:
    for left, right in ((a.major, b.major), (a.minor, b.minor), (a.patch, b.patch)):
        if left < right:
            return Ordering.LESS
        if left > right:
            return Ordering.GREATER
    return Ordering.EQUAL


def is_update_available(local: Version, remote: Version) -> bool:
    return compare(local, remote) is Ordering.LESS


@dataclass(frozen=True, slots=True)
class ManifestFile:
    version: Version
    release_date: str = ""

    def as_json(self) -> dict[str, str]:
        return {"version": str(self.version), "releaseDate": self.release_date}


def decode_manifest(payload: object, *, source: str = "manifest") -> ManifestFile:
    if not isinstance(payload, dict):
        raise MalformedVersion(f"{source} is not a JSON object")
    version = parse_version(payload.get("version"))
    release_date = payload.get("releaseDate", "")
    return ManifestFile(version=version, release_date=str(release_date or ""))


def read_manifest_file(path: Path) -> ManifestFile:
    if not path.exists():
        raise ManifestMissing(f"manifest not found: {path}")
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise MalformedVersion(f"manifest is not valid JSON: {path}") from exc
    return decode_manifest(payload, source=str(path))


def write_manifest_file(path: Path, version: Version, release_date: str | None = None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    manifest = ManifestFile(version=version, release_date=release_date or date.today().isoformat())
    path.write_text(json.dumps(manifest.as_json(), indent=2) + "\n")
    return path
