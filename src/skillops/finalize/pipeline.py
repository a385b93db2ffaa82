"""Session-finalization pipeline.

Log the session, run the lint and build gates, commit, push and, on a feature
branch, open a change request and hand it to the review gate. Lint and build
failures are hard: nothing is committed after either one fails.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from skillops.config import Settings, get_settings
from skillops.errors import (
    BuildFailure,
    GateCancelled,
    GitError,
    LintFailure,
    MergeConflict,
    ReviewError,
    SkillOpsError,
)
from skillops.finalize.fixes import CommandFixStrategy, FixStrategy
from skillops.finalize.gate import GatePolicy, GateResult, ReviewCycle, ReviewGate
from skillops.finalize.review import ChangeRequestRef, ChangeRequestService, GitHubReviewClient
from skillops.finalize.session_log import append_session_entry
from skillops.finalize.toolchain import GateReport, run_gate
from skillops.finalize.vcs import Git, parse_repo_full_name
from skillops.locking import run_lock
from skillops.logging import bind_context, bind_run, clear_context
from skillops.pipeline.run import (
    PipelineRun,
    RunStatus,
    StageOutcome,
    StageResult,
    StateMachine,
)

logger = logging.getLogger(__name__)


class FinalizeState(str, Enum):
    IDLE = "idle"
    LOGGING = "logging"
    LINTING = "linting"
    BUILDING = "building"
    FAIL_FAST = "fail_fast"
    COMMITTING = "committing"
    NO_CHANGES = "no_changes"
    FAILED_COMMIT = "failed_commit"
    PUSHING = "pushing"
    FAILED_PUSH = "failed_push"
    PUSHED_TO_TRUNK = "pushed_to_trunk"
    OPENING_CHANGE_REQUEST = "opening_change_request"
    SKIPPED_CHANGE_REQUEST = "skipped_change_request"
    FAILED_CHANGE_REQUEST = "failed_change_request"
    REVIEW_GATING = "review_gating"
    MERGED = "merged"
    MERGED_WITH_WARNING = "merged_with_warning"
    MERGE_BLOCKED = "merge_blocked"
    CANCELLED = "cancelled"
    CLEANING_UP = "cleaning_up"
    DONE = "done"


_F = FinalizeState

FINALIZE_MACHINE: StateMachine[FinalizeState] = StateMachine(
    kind="finalize",
    initial=_F.IDLE,
    transitions={
        _F.IDLE: frozenset({_F.LOGGING, _F.FAIL_FAST}),
        _F.LOGGING: frozenset({_F.LINTING}),
        _F.LINTING: frozenset({_F.FAIL_FAST, _F.BUILDING}),
        _F.BUILDING: frozenset({_F.FAIL_FAST, _F.COMMITTING}),
        _F.COMMITTING: frozenset({_F.NO_CHANGES, _F.PUSHING, _F.FAILED_COMMIT}),
        _F.PUSHING: frozenset({_F.FAILED_PUSH, _F.PUSHED_TO_TRUNK, _F.OPENING_CHANGE_REQUEST}),
        _F.OPENING_CHANGE_REQUEST: frozenset(
            {_F.REVIEW_GATING, _F.SKIPPED_CHANGE_REQUEST, _F.FAILED_CHANGE_REQUEST}
        ),
        _F.REVIEW_GATING: frozenset(
            {
                _F.MERGED,
                _F.MERGED_WITH_WARNING,
                _F.MERGE_BLOCKED,
                _F.CANCELLED,
                _F.FAIL_FAST,
                _F.FAILED_PUSH,
                _F.FAILED_CHANGE_REQUEST,
            }
        ),
        _F.MERGED: frozenset({_F.CLEANING_UP}),
        _F.MERGED_WITH_WARNING: frozenset({_F.CLEANING_UP}),
        _F.CLEANING_UP: frozenset({_F.DONE}),
    },
    terminal={
        _F.FAIL_FAST: RunStatus.FAILED,
        _F.NO_CHANGES: RunStatus.SUCCEEDED,
        _F.FAILED_COMMIT: RunStatus.FAILED,
        _F.FAILED_PUSH: RunStatus.FAILED,
        _F.PUSHED_TO_TRUNK: RunStatus.SUCCEEDED,
        _F.SKIPPED_CHANGE_REQUEST: RunStatus.SUCCEEDED,
        _F.FAILED_CHANGE_REQUEST: RunStatus.FAILED,
        _F.MERGE_BLOCKED: RunStatus.FAILED,
        _F.CANCELLED: RunStatus.FAILED,
        _F.DONE: RunStatus.SUCCEEDED,
    },
)


@dataclass(slots=True)
class FinalizeSummary:
    run: PipelineRun[FinalizeState]
    branch: str = ""
    lint: GateReport | None = None
    build: GateReport | None = None
    commit_sha: str = ""
    push_target: str = ""
    change_request: ChangeRequestRef | None = None
    gate: GateResult | None = None
    conflicts: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def state(self) -> FinalizeState:
        return self.run.current_stage

    @property
    def ok(self) -> bool:
        return self.run.status is RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        if self.ok:
            return 0
        if self.state is FinalizeState.CANCELLED:
            return 130
        return 1

    @property
    def message(self) -> str:
        state = self.state
        if state is FinalizeState.PUSHED_TO_TRUNK:
            return f"pushed {self.commit_sha[:12]} to {self.push_target}"
        if state is FinalizeState.NO_CHANGES:
            return "nothing to commit"
        if state is FinalizeState.SKIPPED_CHANGE_REQUEST:
            return f"pushed to {self.push_target}; change request not opened"
        if state is FinalizeState.DONE and self.gate is not None:
            number = self.change_request.number if self.change_request else "?"
            return f"change request #{number} merged ({self.gate.kind.value})"
        if state is FinalizeState.CANCELLED:
            return "review gate cancelled; change request left open and unmerged"
        failure = self.run.last_failure()
        stage = failure.stage if failure else state.value
        detail = failure.detail if failure else ""
        text = f"finalize failed at {stage}: {detail}".rstrip(": ")
        if self.conflicts:
            text += f"; resolve conflicts in: {', '.join(self.conflicts)}"
        return text

    def as_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run.id,
            "state": self.state.value,
            "status": self.run.status.value,
            "branch": self.branch,
            "lint": self.lint.status if self.lint else "not run",
            "build": self.build.status if self.build else "not run",
            "commit": self.commit_sha,
            "push_target": self.push_target,
            "change_request": (
                {"number": self.change_request.number, "url": self.change_request.url}
                if self.change_request
                else None
            ),
            "gate": self.gate.as_dict() if self.gate else None,
            "conflicts": list(self.conflicts),
            "warnings": list(self.warnings),
            "message": self.message,
        }


class FinalizeController:
    """Walks the finalize state machine for one working tree."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        repo_path: Path | None = None,
        git: Git | None = None,
        service: ChangeRequestService | None = None,
        fixer: FixStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        cancel: threading.Event | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repo_path = repo_path or Path.cwd()
        self.git = git or Git(self.repo_path)
        self.service = service
        self.fixer = fixer
        if self.fixer is None and self.settings.review_fix_command.strip():
            self.fixer = CommandFixStrategy(
                self.settings.review_fix_command,
                cwd=self.repo_path,
                work_dir=self.settings.staging_path,
                timeout=self.settings.gate_timeout_seconds,
            )
        self._sleep = sleep
        self._clock = clock
        self._cancel = cancel

    @property
    def session_log_path(self) -> Path:
        path = Path(self.settings.session_log).expanduser()
        return path if path.is_absolute() else self.repo_path / path

    def run(self, message: str = "") -> FinalizeSummary:
        run = FINALIZE_MACHINE.new_run()
        bind_run(run.id, run.kind)
        try:
            with run_lock(self.settings.staging_path, run.id):
                return self._run(run, message.strip() or "Finalize session")
        finally:
            clear_context()

    def _run(self, run: PipelineRun[FinalizeState], message: str) -> FinalizeSummary:
        summary = FinalizeSummary(run=run)
        try:
            summary.branch = self.git.current_branch()
        except GitError as exc:
            self._fail(run, "preflight", exc, FinalizeState.FAIL_FAST)
            return summary
        bind_context(branch=summary.branch)

        run.transition(FinalizeState.LOGGING)
        self._log_session(run, summary, message)

        run.transition(FinalizeState.LINTING)
        summary.lint = self._lint()
        if not summary.lint.passed:
            exc = LintFailure(f"lint failed: {summary.lint.detail}")
            self._fail(run, "linting", exc, FinalizeState.FAIL_FAST)
            return summary
        run.record(StageResult("linting", StageOutcome.OK, summary.lint.status))

        run.transition(FinalizeState.BUILDING)
        summary.build = self._build()
        if not summary.build.passed:
            exc = BuildFailure(f"build failed: {summary.build.detail}")
            self._fail(run, "building", exc, FinalizeState.FAIL_FAST)
            return summary
        run.record(StageResult("building", StageOutcome.OK, summary.build.status))

        run.transition(FinalizeState.COMMITTING)
        try:
            sha = self.git.commit_all(message)
        except GitError as exc:
            self._fail(run, "committing", exc, FinalizeState.FAILED_COMMIT)
            return summary
        if sha is None:
            run.record(StageResult("committing", StageOutcome.OK, "working tree clean"))
            run.transition(FinalizeState.NO_CHANGES, "nothing to commit")
            return summary
        summary.commit_sha = sha
        run.record(StageResult("committing", StageOutcome.OK, sha))

        run.transition(FinalizeState.PUSHING)
        try:
            summary.push_target = self.git.push(self.settings.remote, summary.branch)
        except GitError as exc:
            self._fail(run, "pushing", exc, FinalizeState.FAILED_PUSH)
            return summary
        run.record(StageResult("pushing", StageOutcome.OK, summary.push_target))

        if summary.branch == self.settings.trunk_branch:
            run.transition(FinalizeState.PUSHED_TO_TRUNK, "on trunk; no change request needed")
            return summary

        run.transition(FinalizeState.OPENING_CHANGE_REQUEST)
        service = self._open_change_request(run, summary, message)
        ref = summary.change_request
        if service is None or ref is None:
            return summary

        run.transition(FinalizeState.REVIEW_GATING)
        if not self._review_gate(run, summary, service, ref):
            return summary

        run.transition(FinalizeState.CLEANING_UP)
        self._clean_up(run, summary, service)
        run.transition(FinalizeState.DONE)
        return summary

    def _log_session(
        self, run: PipelineRun[FinalizeState], summary: FinalizeSummary, message: str
    ) -> None:
        path = self.session_log_path
        try:
            append_session_entry(path, message=message, branch=summary.branch)
        except OSError as exc:
            warning = f"session log not written: {exc}"
            summary.warnings.append(warning)
            run.record(StageResult("logging", StageOutcome.SOFT_FAIL, warning))
            return
        run.record(StageResult("logging", StageOutcome.OK, str(path)))

    def _lint(self) -> GateReport:
        return run_gate(
            "lint",
            self.settings.lint_command,
            cwd=self.repo_path,
            timeout=self.settings.gate_timeout_seconds,
            fix_command=self.settings.lint_fix_command,
        )

    def _build(self) -> GateReport:
        return run_gate(
            "build",
            self.settings.build_command,
            cwd=self.repo_path,
            timeout=self.settings.gate_timeout_seconds,
        )

    def _service_for(self, summary: FinalizeSummary) -> ChangeRequestService | None:
        if self.service is not None:
            return self.service
        settings = self.settings
        if not settings.github_token.strip():
            summary.warnings.append("GITHUB_TOKEN not set; change request not opened")
            return None
        repo = settings.github_repo.strip() or parse_repo_full_name(
            self.git.remote_url(settings.remote)
        )
        if not repo:
            summary.warnings.append(
                f"cannot derive repository from remote {settings.remote!r}; set GITHUB_REPO"
            )
            return None
        return GitHubReviewClient(
            token=settings.github_token,
            repo_full_name=repo,
            base_url=settings.github_api_base_url,
            timeout=settings.http_timeout_seconds,
        )

    def _open_change_request(
        self, run: PipelineRun[FinalizeState], summary: FinalizeSummary, message: str
    ) -> ChangeRequestService | None:
        try:
            service = self._service_for(summary)
        except ReviewError as exc:
            self._fail(run, "opening_change_request", exc, FinalizeState.FAILED_CHANGE_REQUEST)
            return None
        if service is None:
            detail = summary.warnings[-1]
            run.record(StageResult("opening_change_request", StageOutcome.SOFT_FAIL, detail))
            run.transition(FinalizeState.SKIPPED_CHANGE_REQUEST, detail)
            return None
        try:
            summary.change_request = service.open_change_request(
                head=summary.branch,
                base=self.settings.trunk_branch,
                title=message.splitlines()[0],
                body=self._change_request_body(summary, message),
            )
        except ReviewError as exc:
            self._fail(run, "opening_change_request", exc, FinalizeState.FAILED_CHANGE_REQUEST)
            return None
        bind_context(change_request=summary.change_request.number)
        run.record(
            StageResult(
                "opening_change_request",
                StageOutcome.OK,
                summary.change_request.url or f"#{summary.change_request.number}",
                {"number": summary.change_request.number},
            )
        )
        return service

    @staticmethod
    def _change_request_body(summary: FinalizeSummary, message: str) -> str:
        lines = [message, ""]
        if summary.lint is not None:
            lines.append(f"- lint: {summary.lint.status}")
        if summary.build is not None:
            lines.append(f"- build: {summary.build.status}")
        lines.append(f"- commit: {summary.commit_sha}")
        return "\n".join(lines)

    def _review_gate(
        self,
        run: PipelineRun[FinalizeState],
        summary: FinalizeSummary,
        service: ChangeRequestService,
        ref: ChangeRequestRef,
    ) -> bool:
        gate = ReviewGate(
            service,
            GatePolicy.from_settings(self.settings),
            fix_cycle=self._fix_cycle_for(run, summary, self.fixer) if self.fixer else None,
            sleep=self._sleep,
            clock=self._clock,
            cancel=self._cancel,
        )
        try:
            result = gate.gate(ref)
        except GateCancelled as exc:
            run.record(StageResult("review_gating", StageOutcome.SOFT_FAIL, str(exc)))
            run.transition(FinalizeState.CANCELLED, str(exc))
            return False
        except MergeConflict as exc:
            exc.paths = exc.paths or self._conflicting_paths(summary)
            summary.conflicts = list(exc.paths)
            self._fail(run, "review_gating", exc, FinalizeState.MERGE_BLOCKED)
            return False
        except (LintFailure, BuildFailure) as exc:
            self._fail(run, "review_gating", exc, FinalizeState.FAIL_FAST)
            return False
        except GitError as exc:
            self._fail(run, "review_gating", exc, FinalizeState.FAILED_PUSH)
            return False
        except ReviewError as exc:
            self._fail(run, "review_gating", exc, FinalizeState.FAILED_CHANGE_REQUEST)
            return False

        summary.gate = result
        summary.warnings.extend(result.warnings)
        if not result.merged:
            detail = result.merge.message if result.merge else "merge not performed"
            run.record(StageResult("review_gating", StageOutcome.HARD_FAIL, detail))
            run.transition(FinalizeState.MERGE_BLOCKED, detail)
            return False
        outcome = StageOutcome.SOFT_FAIL if result.with_warning else StageOutcome.OK
        run.record(
            StageResult(
                "review_gating",
                outcome,
                "; ".join(result.warnings) or result.kind.value,
                result.as_dict(),
            )
        )
        if result.with_warning:
            run.transition(FinalizeState.MERGED_WITH_WARNING, result.kind.value)
        else:
            run.transition(FinalizeState.MERGED, result.kind.value)
        return True

    def _fix_cycle_for(
        self,
        run: PipelineRun[FinalizeState],
        summary: FinalizeSummary,
        fixer: FixStrategy,
    ) -> Callable[[ChangeRequestRef, ReviewCycle], bool]:
        """Fix, re-gate, commit and push one review cycle."""

        def fix_cycle(ref: ChangeRequestRef, cycle: ReviewCycle) -> bool:
            attempt = cycle.attempt + 1
            logger.info(
                "Fix cycle %d for #%d: %d comments", attempt, ref.number, len(cycle.comments)
            )
            if not fixer.apply(cycle):
                return False
            summary.lint = self._lint()
            if not summary.lint.passed:
                raise LintFailure(f"lint failed after fix cycle {attempt}: {summary.lint.detail}")
            summary.build = self._build()
            if not summary.build.passed:
                raise BuildFailure(
                    f"build failed after fix cycle {attempt}: {summary.build.detail}"
                )
            sha = self.git.commit_all(f"Address review feedback (cycle {attempt})")
            if sha is None:
                return False
            summary.commit_sha = sha
            summary.push_target = self.git.push(self.settings.remote, summary.branch)
            run.record(
                StageResult(
                    "fix_cycle",
                    StageOutcome.OK,
                    f"cycle {attempt} pushed {sha[:12]}",
                    {"attempt": attempt, "score": cycle.score, "commit": sha},
                )
            )
            return True

        return fix_cycle

    def _conflicting_paths(self, summary: FinalizeSummary) -> list[str]:
        remote = self.settings.remote
        try:
            self.git.fetch(remote)
            return self.git.conflicting_paths(
                f"{remote}/{self.settings.trunk_branch}", summary.branch
            )
        except GitError as exc:
            logger.warning("Could not list conflicting paths: %s", exc)
            return []

    def _clean_up(
        self,
        run: PipelineRun[FinalizeState],
        summary: FinalizeSummary,
        service: ChangeRequestService,
    ) -> None:
        problems: list[str] = []
        trunk = self.settings.trunk_branch
        steps: list[tuple[str, Callable[[], object]]] = [
            (f"checkout {trunk}", lambda: self.git.checkout(trunk)),
            (f"pull {trunk}", lambda: self.git.pull(self.settings.remote, trunk)),
            (
                f"delete local branch {summary.branch}",
                lambda: self.git.delete_branch(summary.branch),
            ),
        ]
        for label, step in steps:
            try:
                step()
            except GitError as exc:
                problems.append(f"{label} failed: {exc}")
        try:
            if not service.delete_branch(summary.branch):
                problems.append(f"remote branch {summary.branch} not deleted")
        except ReviewError as exc:
            problems.append(f"delete remote branch {summary.branch} failed: {exc}")

        summary.warnings.extend(problems)
        if problems:
            run.record(StageResult("cleaning_up", StageOutcome.SOFT_FAIL, "; ".join(problems)))
        else:
            run.record(StageResult("cleaning_up", StageOutcome.OK, f"back on {trunk}"))

    @staticmethod
    def _fail(
        run: PipelineRun[FinalizeState],
        stage: str,
        exc: SkillOpsError,
        target: FinalizeState,
    ) -> None:
        run.record(
            StageResult(stage, StageOutcome.HARD_FAIL, str(exc), {"error": type(exc).__name__})
        )
        run.transition(target, str(exc))


__all__ = [
    "FINALIZE_MACHINE",
    "FinalizeController",
    "FinalizeState",
    "FinalizeSummary",
]
