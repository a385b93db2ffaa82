"""Local fix strategies driven by review comments."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Protocol

from skillops.finalize.gate import ReviewCycle
from skillops.finalize.toolchain import CommandResult, run_command

logger = logging.getLogger(__name__)

COMMENTS_ENV = "SKILLOPS_REVIEW_COMMENTS"


class FixStrategy(Protocol):
    def apply(self, cycle: ReviewCycle) -> bool:
        """Edit the working tree to address ``cycle.comments``; report success."""
        ...


class CommandFixStrategy:
    """Run a configured command with the review comments handed over as JSON.

    The comments file path is exported as ``SKILLOPS_REVIEW_COMMENTS``.
    """

    def __init__(self, command: str, *, cwd: Path, work_dir: Path, timeout: float) -> None:
        self.command = command
        self.cwd = cwd
        self.work_dir = work_dir
        self.timeout = timeout
        self.results: list[CommandResult] = []

    def apply(self, cycle: ReviewCycle) -> bool:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        comments_path = self.work_dir / f"review_comments_{cycle.attempt + 1}.json"
        comments_path.write_text(
            json.dumps(
                {
                    "attempt": cycle.attempt + 1,
                    "score": cycle.score,
                    "threshold": cycle.threshold,
                    "comments": [item.as_dict() for item in cycle.comments],
                },
                indent=2,
            )
        )
        env = os.environ.copy()
        env[COMMENTS_ENV] = str(comments_path)
        result = run_command(self.command, cwd=self.cwd, timeout=self.timeout, env=env)
        self.results.append(result)
        if not result.ok:
            logger.warning("Fix command failed: %s", result.detail)
        return result.ok
