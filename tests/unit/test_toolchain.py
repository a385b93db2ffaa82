"""Tests for the lint/build command gates."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

from skillops.finalize.toolchain import run_command, run_gate


def _completed(
    returncode: int = 0, stdout: str = "", stderr: str = ""
) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


def test_run_command_passes_through_shell(tmp_path: Path) -> None:
    with patch(
        "skillops.finalize.toolchain.subprocess.run", return_value=_completed(0, "ok\n")
    ) as mock_run:
        result = run_command("ruff check .", cwd=tmp_path, timeout=5.0)
    assert result.ok is True
    assert result.stdout == "ok\n"
    args, kwargs = mock_run.call_args
    assert args[0] == ["/bin/bash", "-lc", "ruff check ."]
    assert kwargs["cwd"] == tmp_path
    assert kwargs["timeout"] == 5.0


def test_run_command_timeout_is_exit_124(tmp_path: Path) -> None:
    with patch(
        "skillops.finalize.toolchain.subprocess.run",
        side_effect=subprocess.TimeoutExpired(cmd="sleep 99", timeout=2.0),
    ):
        result = run_command("sleep 99", cwd=tmp_path, timeout=2.0)
    assert result.exit_code == 124
    assert result.ok is False
    assert result.detail == "timed out after 2s"


def test_failure_detail_prefers_stderr(tmp_path: Path) -> None:
    with patch(
        "skillops.finalize.toolchain.subprocess.run",
        return_value=_completed(1, "checked 4 files", "E501 line too long"),
    ):
        result = run_command("ruff check .", cwd=tmp_path, timeout=5.0)
    assert result.detail == "E501 line too long"


def test_unconfigured_gate_is_skipped(tmp_path: Path) -> None:
    with patch("skillops.finalize.toolchain.subprocess.run") as mock_run:
        report = run_gate("lint", "  ", cwd=tmp_path, timeout=5.0)
    assert report.passed is True
    assert report.skipped is True
    assert report.status == "skipped"
    mock_run.assert_not_called()


def test_failed_gate_without_fix_command(tmp_path: Path) -> None:
    with patch(
        "skillops.finalize.toolchain.subprocess.run", return_value=_completed(1, stderr="E501")
    ) as mock_run:
        report = run_gate("lint", "ruff check .", cwd=tmp_path, timeout=5.0)
    assert report.passed is False
    assert report.status == "failed"
    assert report.detail == "E501"
    assert mock_run.call_count == 1


def test_fix_command_runs_once_then_gate_retries(tmp_path: Path) -> None:
    outcomes = [_completed(1, stderr="E501"), _completed(0), _completed(0)]
    with patch(
        "skillops.finalize.toolchain.subprocess.run", side_effect=outcomes
    ) as mock_run:
        report = run_gate(
            "lint", "ruff check .", cwd=tmp_path, timeout=5.0, fix_command="ruff check --fix ."
        )
    assert report.passed is True
    assert report.fixed is True
    assert report.status == "passed after fix"
    commands = [call.args[0][2] for call in mock_run.call_args_list]
    assert commands == ["ruff check .", "ruff check --fix .", "ruff check ."]
    assert [item["exit_code"] for item in report.as_dict()["commands"]] == [1, 0, 0]


def test_fix_that_does_not_help_still_fails(tmp_path: Path) -> None:
    outcomes = [_completed(1, stderr="E501"), _completed(0), _completed(1, stderr="E501 again")]
    with patch("skillops.finalize.toolchain.subprocess.run", side_effect=outcomes):
        report = run_gate(
            "build", "make", cwd=tmp_path, timeout=5.0, fix_command="make clean"
        )
    assert report.passed is False
    assert report.fixed is False
    assert report.detail == "E501 again"
