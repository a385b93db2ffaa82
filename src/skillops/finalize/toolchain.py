"""Lint and build gates run as opaque shell commands."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

_OUTPUT_LIMIT = 5000


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int
    ok: bool
    stdout: str
    stderr: str
    duration_ms: int

    @property
    def detail(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text[-500:] if text else f"exit code {self.exit_code}"


@dataclass(slots=True)
class GateReport:
    name: str
    passed: bool
    skipped: bool = False
    fixed: bool = False
    results: list[CommandResult] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        if self.passed:
            return "passed after fix" if self.fixed else "passed"
        return "failed"

    @property
    def detail(self) -> str:
        for result in reversed(self.results):
            if not result.ok:
                return result.detail
        return self.status

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "status": self.status,
            "commands": [
                {"command": item.command, "exit_code": item.exit_code, "ms": item.duration_ms}
                for item in self.results
            ],
        }


def run_command(
    command: str,
    *,
    cwd: Path,
    timeout: float,
    env: dict[str, str] | None = None,
) -> CommandResult:
    started = datetime.now(UTC)
    try:
        proc = subprocess.run(
            ["/bin/bash", "-lc", command],
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
        exit_code = proc.returncode
        stdout = proc.stdout or ""
        stderr = proc.stderr or ""
    except subprocess.TimeoutExpired:
        exit_code = 124
        stdout = ""
        stderr = f"timed out after {timeout:.0f}s"
    finished = datetime.now(UTC)
    return CommandResult(
        command=command,
        exit_code=exit_code,
        ok=exit_code == 0,
        stdout=stdout[:_OUTPUT_LIMIT],
        stderr=stderr[:_OUTPUT_LIMIT],
        duration_ms=int((finished - started).total_seconds() * 1000),
    )


def run_gate(
    name: str,
    command: str,
    *,
    cwd: Path,
    timeout: float,
    fix_command: str = "",
) -> GateReport:
    """Run ``command``; on failure run ``fix_command`` once and retry."""
    if not command.strip():
        logger.info("%s gate not configured; skipping", name)
        return GateReport(name=name, passed=True, skipped=True)

    first = run_command(command, cwd=cwd, timeout=timeout)
    report = GateReport(name=name, passed=first.ok, results=[first])
    if first.ok or not fix_command.strip():
        return report

    logger.warning("%s gate failed; running auto-fix: %s", name, fix_command)
    fix = run_command(fix_command, cwd=cwd, timeout=timeout)
    report.results.append(fix)
    retry = run_command(command, cwd=cwd, timeout=timeout)
    report.results.append(retry)
    report.passed = retry.ok
    report.fixed = retry.ok
    return report
