"""Remote release manifest and archive retrieval."""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tarfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

import httpx

from skillops import __version__
from skillops.errors import MalformedVersion, NetworkFailure, VerificationFailure
from skillops.ids import new_id
from skillops.update.version import ManifestFile, Version, decode_manifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Manifest:
    version: Version
    source_location: str
    release_date: str = ""
    notes: tuple[str, ...] = ()
    sha256: str = ""


@dataclass(slots=True)
class ArchiveHandle:
    """An extracted, verified release tree waiting in the staging area."""

    root: Path
    manifest: ManifestFile
    workdir: Path
    source: str
    sha256: str
    _discarded: bool = field(default=False, repr=False)

    def path_for(self, relative: str) -> Path:
        return self.root / PurePosixPath(relative)

    def contains(self, relative: str) -> bool:
        return self.path_for(relative).exists()

    def discard(self) -> None:
        if self._discarded:
            return
        shutil.rmtree(self.workdir, ignore_errors=True)
        self._discarded = True


def _headers() -> dict[str, str]:
    return {"User-Agent": f"skillops/{__version__}", "Accept": "*/*"}


class RemoteFetcher:
    def __init__(
        self,
        *,
        timeout: float = 15.0,
        manifest_name: str = "manifest.json",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._manifest_name = manifest_name
        self._transport = transport

    def _get(self, url: str) -> httpx.Response:
        if not url.strip():
            raise NetworkFailure("no endpoint configured")
        try:
            with httpx.Client(
                timeout=self._timeout,
                headers=_headers(),
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = client.get(url)
                response.raise_for_status()
                response.read()
                return response
        except httpx.HTTPStatusError as exc:
            raise NetworkFailure(
                f"{url} returned HTTP {exc.response.status_code}",
                retryable=exc.response.status_code >= 500,
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkFailure(f"{url} unreachable: {exc}") from exc

    def fetch_manifest(self, endpoint: str, *, archive_url: str = "") -> Manifest:
        response = self._get(endpoint)
        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise NetworkFailure(f"{endpoint} did not return JSON") from exc
        decoded = decode_manifest(payload, source=endpoint)
        source = str(payload.get("archiveUrl") or archive_url or "").strip()
        notes_raw = payload.get("notes", [])
        notes = tuple(str(item) for item in notes_raw) if isinstance(notes_raw, list) else ()
        manifest = Manifest(
            version=decoded.version,
            source_location=source,
            release_date=decoded.release_date,
            notes=notes,
            sha256=str(payload.get("sha256") or "").strip().lower(),
        )
        logger.info("Remote manifest %s reports version %s", endpoint, manifest.version)
        return manifest

    def fetch_archive(
        self,
        endpoint: str,
        staging_dir: Path,
        *,
        expected_version: Version | None = None,
        expected_sha256: str = "",
    ) -> ArchiveHandle:
        response = self._get(endpoint)
        workdir = staging_dir / new_id("fetch")
        workdir.mkdir(parents=True, exist_ok=True)
        try:
            return self._stage(
                response.content,
                workdir,
                source=endpoint,
                expected_version=expected_version,
                expected_sha256=expected_sha256,
            )
        except Exception:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

    def _stage(
        self,
        payload: bytes,
        workdir: Path,
        *,
        source: str,
        expected_version: Version | None,
        expected_sha256: str,
    ) -> ArchiveHandle:
        digest = hashlib.sha256(payload).hexdigest()
        if expected_sha256 and digest != expected_sha256.lower():
            raise VerificationFailure(f"archive checksum mismatch: {digest} != {expected_sha256}")

        blob = workdir / "archive.bin"
        blob.write_bytes(payload)
        extracted = workdir / "tree"
        extracted.mkdir()
        if zipfile.is_zipfile(blob):
            _extract_zip(blob, extracted)
        elif tarfile.is_tarfile(blob):
            _extract_tar(blob, extracted)
        else:
            raise VerificationFailure(f"{source} is neither a tar nor a zip archive")
        blob.unlink()

        root = _unwrap(extracted)
        manifest_path = root / self._manifest_name
        if not manifest_path.is_file():
            raise VerificationFailure(f"archive has no {self._manifest_name}")
        try:
            manifest = decode_manifest(
                json.loads(manifest_path.read_text()), source=str(manifest_path)
            )
        except (json.JSONDecodeError, UnicodeDecodeError, MalformedVersion) as exc:
            raise VerificationFailure(f"archive manifest is malformed: {exc}") from exc
        if expected_version is not None and manifest.version != expected_version:
            raise VerificationFailure(
                f"archive manifest version {manifest.version} != announced {expected_version}"
            )
        logger.info("Staged archive %s (%s) at %s", source, manifest.version, root)
        return ArchiveHandle(
            root=root, manifest=manifest, workdir=workdir, source=source, sha256=digest
        )


def _safe_member(name: str) -> bool:
    path = PurePosixPath(name.replace("\\", "/"))
    return not path.is_absolute() and ".." not in path.parts


def _extract_zip(blob: Path, target: Path) -> None:
    try:
        with zipfile.ZipFile(blob) as archive:
            for name in archive.namelist():
                if not _safe_member(name):
                    raise VerificationFailure(f"archive member escapes staging area: {name}")
            archive.extractall(target)
    except zipfile.BadZipFile as exc:
        raise VerificationFailure(f"corrupt zip archive: {exc}") from exc


def _extract_tar(blob: Path, target: Path) -> None:
    try:
        with tarfile.open(blob) as archive:
            for member in archive.getmembers():
                if not _safe_member(member.name) or member.issym() or member.islnk():
                    raise VerificationFailure(
                        f"archive member not allowed: {member.name}"
                    )
            archive.extractall(target, filter="data")
    except (tarfile.TarError, EOFError) as exc:
        raise VerificationFailure(f"corrupt tar archive: {exc}") from exc


def _unwrap(extracted: Path) -> Path:
    """Descend into a lone wrapping directory such as ``project-1.3.0/``."""
    children = list(extracted.iterdir())
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return extracted
