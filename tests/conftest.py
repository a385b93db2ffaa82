import io
import json
import subprocess
import tarfile
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest

from skillops.config import Settings, get_settings

_ENV_KEYS_CLEARED = (
    "APP_ENV",
    "LOG_LEVEL",
    "SKILLOPS_MANIFEST_FILE",
    "SKILLOPS_SYSTEM_PATHS",
    "SKILLOPS_PROTECTED_PATHS",
    "SKILLOPS_LINT_COMMAND",
    "SKILLOPS_LINT_FIX_COMMAND",
    "SKILLOPS_BUILD_COMMAND",
    "SKILLOPS_TRUNK_BRANCH",
    "SKILLOPS_REMOTE",
    "GITHUB_TOKEN",
    "GITHUB_REPO",
    "GITHUB_API_BASE_URL",
    "REVIEW_BOT_LOGIN",
    "REVIEW_THRESHOLD",
    "REVIEW_MAX_ATTEMPTS",
    "REVIEW_POLL_INTERVAL_SECONDS",
    "REVIEW_POLL_TIMEOUT_SECONDS",
    "REVIEW_FILE_LIMIT",
    "REVIEW_FIX_COMMAND",
)

VERSION_URL = "https://releases.example.test/skills/manifest.json"
ARCHIVE_URL = "https://releases.example.test/skills/latest.tar.gz"


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for key in _ENV_KEYS_CLEARED:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SKILLOPS_ROOT", str(tmp_path / "managed"))
    monkeypatch.setenv("SKILLOPS_BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setenv("SKILLOPS_STAGING_DIR", str(tmp_path / "staging"))
    monkeypatch.setenv("SKILLOPS_SESSION_LOG", str(tmp_path / "history" / "sessions.md"))
    monkeypatch.setenv("SKILLOPS_VERSION_URL", VERSION_URL)
    monkeypatch.setenv("SKILLOPS_ARCHIVE_URL", ARCHIVE_URL)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings() -> Settings:
    return get_settings()


@pytest.fixture()
def managed_tree(settings: Settings) -> Path:
    """A managed tree at version 1.2.0 with both system and protected content."""
    root = settings.root_path
    (root / "skills" / "review").mkdir(parents=True)
    (root / "skills" / "review" / "SKILL.md").write_text("review v1\n")
    (root / "commands").mkdir()
    (root / "commands" / "finalize.md").write_text("finalize v1\n")
    (root / "instructions.md").write_text("instructions v1\n")
    (root / "manifest.json").write_text(
        json.dumps({"version": "1.2.0", "releaseDate": "2026-01-10"})
    )
    (root / "tasks").mkdir()
    (root / "tasks" / "todo.md").write_text("- my own task\n")
    (root / "history").mkdir()
    (root / "history" / "notes.md").write_text("user notes\n")
    (root / "settings.local.json").write_text('{"theme": "dark"}')
    return root


def snapshot_tree(root: Path, names: list[str]) -> dict[str, bytes]:
    """Map relative file path to bytes for every file below ``names``."""
    contents: dict[str, bytes] = {}
    for name in names:
        base = root / name
        if base.is_file():
            contents[name] = base.read_bytes()
        elif base.is_dir():
            for item in sorted(base.rglob("*")):
                if item.is_file():
                    contents[item.relative_to(root).as_posix()] = item.read_bytes()
    return contents


def release_files(version: str, extra: dict[str, str] | None = None) -> dict[str, str]:
    files = {
        "manifest.json": json.dumps({"version": version, "releaseDate": "2026-02-01"}),
        "skills/review/SKILL.md": f"review {version}\n",
        "skills/deploy/SKILL.md": f"deploy {version}\n",
        "commands/finalize.md": f"finalize {version}\n",
        "instructions.md": f"instructions {version}\n",
    }
    files.update(extra or {})
    return files


def build_tar(files: dict[str, str], *, wrapper: str = "skills-pack") -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, text in files.items():
            data = text.encode()
            info = tarfile.TarInfo(f"{wrapper}/{name}" if wrapper else name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def build_zip(files: dict[str, str], *, wrapper: str = "") -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, text in files.items():
            archive.writestr(f"{wrapper}/{name}" if wrapper else name, text)
    return buffer.getvalue()


@pytest.fixture()
def release_tar() -> Callable[..., bytes]:
    def _build(version: str, extra: dict[str, str] | None = None) -> bytes:
        return build_tar(release_files(version, extra))

    return _build


@pytest.fixture()
def release_zip() -> Callable[..., bytes]:
    def _build(version: str, extra: dict[str, str] | None = None, *, wrapper: str = "") -> bytes:
        return build_zip(release_files(version, extra), wrapper=wrapper)

    return _build


@pytest.fixture()
def tree_bytes() -> Callable[[Path, list[str]], dict[str, bytes]]:
    return snapshot_tree


@pytest.fixture()
def raw_tar() -> Callable[..., bytes]:
    return build_tar


def _git(repo: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", "-C", str(repo), *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return proc.stdout.strip()


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A working tree on ``main`` with one commit, tracking a bare ``origin``."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", "-b", "main", str(remote)],
        check=True,
        capture_output=True,
        text=True,
    )
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    _git(repo, "config", "user.email", "test@example.com")
    _git(repo, "config", "user.name", "Test User")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "skills").mkdir()
    (repo / "skills" / "SKILL.md").write_text("skill v1\n")
    _git(repo, "add", ".")
    _git(repo, "commit", "-m", "init")
    _git(repo, "remote", "add", "origin", str(remote))
    _git(repo, "push", "-u", "origin", "main")
    return repo


@pytest.fixture()
def run_git() -> Callable[..., str]:
    return _git
