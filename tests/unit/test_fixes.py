import json
from pathlib import Path
from unittest.mock import patch

from skillops.finalize.fixes import COMMENTS_ENV, CommandFixStrategy
from skillops.finalize.gate import ReviewCycle
from skillops.finalize.review import ReviewComment
from skillops.finalize.toolchain import CommandResult


def _result(exit_code: int) -> CommandResult:
    return CommandResult(
        command="fixer",
        exit_code=exit_code,
        ok=exit_code == 0,
        stdout="",
        stderr="" if exit_code == 0 else "model unavailable",
        duration_ms=3,
    )


def _cycle() -> ReviewCycle:
    comment = ReviewComment(
        id=4, login="review-bot", body="typo in heading", path="skills/review/SKILL.md", line=2
    )
    return ReviewCycle(attempt=1, score=2.5, threshold=4.0, comments=[comment])


def test_comments_are_handed_to_fix_command(tmp_path: Path) -> None:
    strategy = CommandFixStrategy(
        "apply-review-fixes", cwd=tmp_path, work_dir=tmp_path / "staging", timeout=30.0
    )
    with patch("skillops.finalize.fixes.run_command", return_value=_result(0)) as mock_run:
        assert strategy.apply(_cycle()) is True

    kwargs = mock_run.call_args.kwargs
    comments_path = Path(kwargs["env"][COMMENTS_ENV])
    assert comments_path == tmp_path / "staging" / "review_comments_2.json"
    assert kwargs["cwd"] == tmp_path
    payload = json.loads(comments_path.read_text())
    assert payload["attempt"] == 2
    assert payload["score"] == 2.5
    assert payload["comments"][0]["body"] == "typo in heading"
    assert strategy.results[0].ok is True


def test_failed_fix_command_reports_false(tmp_path: Path) -> None:
    strategy = CommandFixStrategy("fixer", cwd=tmp_path, work_dir=tmp_path, timeout=30.0)
    with patch("skillops.finalize.fixes.run_command", return_value=_result(2)):
        assert strategy.apply(_cycle()) is False
    assert strategy.results[0].detail == "model unavailable"
