"""Thin git primitives used by the finalize pipeline."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from skillops.errors import GitError

logger = logging.getLogger(__name__)


def parse_repo_full_name(origin_url: str) -> str:
    url = origin_url.strip()
    if not url:
        return ""
    if url.endswith(".git"):
        url = url[:-4]
    if url.startswith("git@") and ":" in url:
        return url.split(":", 1)[1]
    if "/" in url:
        return "/".join(url.rstrip("/").split("/")[-2:])
    return ""


class Git:
    def __init__(self, repo_path: Path, *, timeout: float = 60.0) -> None:
        self.repo_path = repo_path
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "-C", str(self.repo_path), *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"git {args[0]} timed out after {self.timeout:g}s") from exc
        except OSError as exc:
            raise GitError(f"git {args[0]} could not run: {exc}") from exc
        if check and proc.returncode != 0:
            detail = proc.stderr.strip() or proc.stdout.strip() or f"git {args[0]} failed"
            raise GitError(f"git {' '.join(args)}: {detail}")
        return proc

    def current_branch(self) -> str:
        branch = self._run("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()
        if branch == "HEAD":
            raise GitError("detached HEAD; check out a branch before finalizing")
        return branch

    def has_changes(self) -> bool:
        return bool(self._run("status", "--porcelain").stdout.strip())

    def commit_all(self, message: str) -> str | None:
        """Stage everything and commit; ``None`` when there is nothing to commit."""
        if not self.has_changes():
            return None
        self._run("add", "-A")
        self._run("commit", "-m", message)
        return self.head_sha()

    def head_sha(self) -> str:
        return self._run("rev-parse", "HEAD").stdout.strip()

    def push(self, remote: str, branch: str) -> str:
        self._run("push", "-u", remote, branch)
        return f"{remote}/{branch}"

    def remote_url(self, remote: str) -> str:
        proc = self._run("remote", "get-url", remote, check=False)
        return proc.stdout.strip() if proc.returncode == 0 else ""

    def checkout(self, branch: str) -> None:
        self._run("checkout", branch)

    def fetch(self, remote: str) -> None:
        self._run("fetch", remote)

    def pull(self, remote: str, branch: str) -> None:
        self._run("pull", "--ff-only", remote, branch)

    def delete_branch(self, branch: str) -> None:
        self._run("branch", "-D", branch)

    def conflicting_paths(self, base: str, head: str) -> list[str]:
        """Paths a merge of ``head`` into ``base`` would conflict on (best effort)."""
        proc = self._run(
            "merge-tree", "--write-tree", "--name-only", "--no-messages", base, head, check=False
        )
        if proc.returncode != 1:
            return []
        lines = [line.strip() for line in proc.stdout.splitlines() if line.strip()]
        return lines[1:]
