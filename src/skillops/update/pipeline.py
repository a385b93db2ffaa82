"""Self-update pipeline: check, confirm, back up, fetch, apply, verify, roll back."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from skillops.config import Settings, get_settings
from skillops.errors import (
    BackupNotFound,
    MalformedVersion,
    NetworkFailure,
    PartialApplyFailure,
    RestoreFailure,
    SkillOpsError,
    SnapshotFailure,
    VerificationFailure,
)
from skillops.locking import run_lock
from skillops.logging import bind_run, clear_context
from skillops.pipeline.run import (
    PipelineRun,
    RunStatus,
    StageOutcome,
    StageResult,
    StateMachine,
)
from skillops.update.applier import ApplyResult, FileApplier
from skillops.update.backup import Backup, BackupManager
from skillops.update.classifier import FileManifest
from skillops.update.fetcher import ArchiveHandle, Manifest, RemoteFetcher
from skillops.update.fsops import sweep_leftovers
from skillops.update.version import (
    Ordering,
    Version,
    compare,
    is_update_available,
    read_manifest_file,
)

logger = logging.getLogger(__name__)


class UpdateState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    FAILED_CHECK = "failed_check"
    UP_TO_DATE = "up_to_date"
    CONFIRMING = "confirming"
    ABORTED = "aborted"
    BACKING_UP = "backing_up"
    FAILED_PRE_APPLY = "failed_pre_apply"
    FETCHING = "fetching"
    FAILED_FETCH = "failed_fetch"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED_APPLY = "failed_apply"
    VERIFYING = "verifying"
    FAILED_VERIFY = "failed_verify"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    SUCCEEDED = "succeeded"


_S = UpdateState

UPDATE_MACHINE: StateMachine[UpdateState] = StateMachine(
    kind="update",
    initial=_S.IDLE,
    transitions={
        _S.IDLE: frozenset({_S.CHECKING}),
        _S.CHECKING: frozenset({_S.UP_TO_DATE, _S.CONFIRMING, _S.FAILED_CHECK}),
        _S.CONFIRMING: frozenset({_S.ABORTED, _S.BACKING_UP}),
        _S.BACKING_UP: frozenset({_S.FAILED_PRE_APPLY, _S.FETCHING}),
        _S.FETCHING: frozenset({_S.FAILED_FETCH, _S.APPLYING}),
        _S.APPLYING: frozenset({_S.APPLIED, _S.FAILED_APPLY}),
        _S.APPLIED: frozenset({_S.VERIFYING}),
        _S.FAILED_APPLY: frozenset({_S.ROLLING_BACK}),
        _S.VERIFYING: frozenset({_S.SUCCEEDED, _S.FAILED_VERIFY}),
        _S.FAILED_VERIFY: frozenset({_S.ROLLING_BACK}),
        _S.ROLLING_BACK: frozenset({_S.ROLLED_BACK, _S.ROLLBACK_FAILED}),
    },
    terminal={
        _S.FAILED_CHECK: RunStatus.FAILED,
        _S.UP_TO_DATE: RunStatus.SUCCEEDED,
        _S.ABORTED: RunStatus.FAILED,
        _S.FAILED_PRE_APPLY: RunStatus.FAILED,
        _S.FAILED_FETCH: RunStatus.FAILED,
        _S.ROLLED_BACK: RunStatus.ROLLED_BACK,
        _S.ROLLBACK_FAILED: RunStatus.FAILED,
        _S.SUCCEEDED: RunStatus.SUCCEEDED,
    },
)


class CheckStatus(str, Enum):
    UP_TO_DATE = "up_to_date"
    UPDATE_AVAILABLE = "update_available"
    UNKNOWN = "unknown"
    LOCAL_INVALID = "local_invalid"


@dataclass(slots=True)
class CheckResult:
    status: CheckStatus
    local: Version | None = None
    remote: Manifest | None = None
    detail: str = ""
    unclassified: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.status is CheckStatus.UP_TO_DATE:
            return f"up to date ({self.local})"
        if self.status is CheckStatus.UPDATE_AVAILABLE and self.remote is not None:
            return f"update available: {self.local} -> {self.remote.version}"
        if self.status is CheckStatus.LOCAL_INVALID:
            return f"local manifest unusable: {self.detail}"
        return "could not determine latest version, try again later"


@dataclass(slots=True)
class UpdateOutcome:
    run: PipelineRun[UpdateState]
    check: CheckResult | None = None
    backup: Backup | None = None
    applied: ApplyResult | None = None
    rolled_back: bool = False

    @property
    def state(self) -> UpdateState:
        return self.run.current_stage

    @property
    def ok(self) -> bool:
        return self.run.status is RunStatus.SUCCEEDED or self.state is UpdateState.ABORTED

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def backup_tag(self) -> str:
        return self.backup.tag if self.backup is not None else ""

    @property
    def message(self) -> str:
        if self.state is UpdateState.UP_TO_DATE and self.check is not None:
            return self.check.message
        if self.state is UpdateState.ABORTED:
            return "update cancelled, nothing changed"
        if self.state is UpdateState.SUCCEEDED and self.check is not None:
            remote = self.check.remote.version if self.check.remote else "?"
            return f"updated {self.check.local} -> {remote} (backup {self.backup_tag})"
        failure = self.run.last_failure()
        stage = failure.stage if failure else self.state.value
        detail = failure.detail if failure else ""
        parts = [f"update failed at {stage}: {detail}".rstrip(": ")]
        if self.rolled_back:
            parts.append("rolled back to the previous version")
        elif self.state is UpdateState.ROLLBACK_FAILED:
            parts.append("automatic rollback failed")
        else:
            parts.append("no files were changed")
        if self.backup_tag:
            parts.append(
                f"backup {self.backup_tag} available "
                f"(skillops restore --tag {self.backup_tag})"
            )
        return "; ".join(parts)


ConfirmFn = Callable[[CheckResult], bool]


def _always(_: CheckResult) -> bool:
    return True


class UpdateController:
    """Walks the update state machine; the only writer of its PipelineRun."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        fetcher: RemoteFetcher | None = None,
        backups: BackupManager | None = None,
        file_manifest: FileManifest | None = None,
        applier: FileApplier | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.root = self.settings.root_path
        self.file_manifest = file_manifest or FileManifest.from_settings(self.settings)
        self.fetcher = fetcher or RemoteFetcher(
            timeout=self.settings.http_timeout_seconds,
            manifest_name=self.settings.manifest_file,
        )
        self.backups = backups or BackupManager(self.settings.backup_path, self.root)
        self.applier = applier or FileApplier(self.root, self.file_manifest)

    def check(self) -> CheckResult:
        """Read-only comparison; network trouble is reported, never raised."""
        unclassified = self.file_manifest.unclassified(self.root)
        try:
            local = read_manifest_file(self.settings.manifest_path).version
        except MalformedVersion as exc:
            return CheckResult(
                CheckStatus.LOCAL_INVALID, detail=str(exc), unclassified=unclassified
            )
        try:
            remote = self.fetcher.fetch_manifest(
                self.settings.version_url, archive_url=self.settings.archive_url
            )
        except (NetworkFailure, MalformedVersion) as exc:
            logger.warning("Version check skipped: %s", exc)
            return CheckResult(
                CheckStatus.UNKNOWN, local=local, detail=str(exc), unclassified=unclassified
            )
        status = (
            CheckStatus.UPDATE_AVAILABLE
            if is_update_available(local, remote.version)
            else CheckStatus.UP_TO_DATE
        )
        return CheckResult(status, local=local, remote=remote, unclassified=unclassified)

    def run(self, confirm: ConfirmFn = _always) -> UpdateOutcome:
        run = UPDATE_MACHINE.new_run()
        bind_run(run.id, run.kind)
        try:
            with run_lock(self.settings.staging_path, run.id):
                return self._run(run, confirm)
        finally:
            clear_context()

    def _run(self, run: PipelineRun[UpdateState], confirm: ConfirmFn) -> UpdateOutcome:
        outcome = UpdateOutcome(run=run)
        for leftover in sweep_leftovers(self.root, self.file_manifest.system):
            logger.warning("Removed interrupted swap leftover %s", leftover)

        run.transition(UpdateState.CHECKING)
        try:
            local = read_manifest_file(self.settings.manifest_path).version
            remote = self.fetcher.fetch_manifest(
                self.settings.version_url, archive_url=self.settings.archive_url
            )
        except (MalformedVersion, NetworkFailure) as exc:
            self._fail(run, "checking", exc, UpdateState.FAILED_CHECK)
            return outcome
        outcome.check = CheckResult(
            CheckStatus.UPDATE_AVAILABLE
            if is_update_available(local, remote.version)
            else CheckStatus.UP_TO_DATE,
            local=local,
            remote=remote,
        )
        run.record(
            StageResult(
                "checking",
                StageOutcome.OK,
                outcome.check.message,
                {"local": str(local), "remote": str(remote.version)},
            )
        )
        if outcome.check.status is CheckStatus.UP_TO_DATE:
            run.transition(UpdateState.UP_TO_DATE, "local version is current")
            return outcome

        run.transition(UpdateState.CONFIRMING)
        if not confirm(outcome.check):
            run.record(StageResult("confirming", StageOutcome.SOFT_FAIL, "declined by user"))
            run.transition(UpdateState.ABORTED, "declined by user")
            return outcome
        run.record(StageResult("confirming", StageOutcome.OK, "confirmed"))

        run.transition(UpdateState.BACKING_UP)
        try:
            # Always tagged with the version being replaced.
            outcome.backup = self.backups.snapshot(local, self.file_manifest.system)
        except SnapshotFailure as exc:
            self._fail(run, "backing_up", exc, UpdateState.FAILED_PRE_APPLY)
            return outcome
        run.record(
            StageResult(
                "backing_up",
                StageOutcome.OK,
                f"backup {outcome.backup.tag}",
                {"location": str(outcome.backup.location)},
            )
        )

        run.transition(UpdateState.FETCHING)
        try:
            archive = self.fetcher.fetch_archive(
                remote.source_location or self.settings.archive_url,
                self.settings.staging_path,
                expected_version=remote.version,
                expected_sha256=remote.sha256,
            )
        except (NetworkFailure, VerificationFailure) as exc:
            self._fail(run, "fetching", exc, UpdateState.FAILED_FETCH)
            return outcome
        run.record(
            StageResult("fetching", StageOutcome.OK, archive.source, {"sha256": archive.sha256})
        )

        try:
            self._apply_and_verify(run, outcome, archive, remote.version)
        finally:
            archive.discard()
        return outcome

    def _apply_and_verify(
        self,
        run: PipelineRun[UpdateState],
        outcome: UpdateOutcome,
        archive: ArchiveHandle,
        target: Version,
    ) -> None:
        run.transition(UpdateState.APPLYING)
        try:
            outcome.applied = self.applier.apply(archive)
        except PartialApplyFailure as exc:
            self._fail(run, "applying", exc, UpdateState.FAILED_APPLY)
            self._roll_back(run, outcome)
            return
        run.record(
            StageResult(
                "applying",
                StageOutcome.OK,
                f"{len(outcome.applied.replaced)} system paths replaced",
                {
                    "replaced": list(outcome.applied.replaced),
                    "removed": list(outcome.applied.removed),
                },
            )
        )
        run.transition(UpdateState.APPLIED)

        run.transition(UpdateState.VERIFYING)
        problem = self._verify(archive, target)
        if problem:
            run.record(StageResult("verifying", StageOutcome.HARD_FAIL, problem))
            run.transition(UpdateState.FAILED_VERIFY, problem)
            self._roll_back(run, outcome)
            return
        run.record(StageResult("verifying", StageOutcome.OK, f"manifest reports {target}"))
        run.transition(UpdateState.SUCCEEDED)

    def _verify(self, archive: ArchiveHandle, target: Version) -> str:
        try:
            installed = read_manifest_file(self.settings.manifest_path).version
        except MalformedVersion as exc:
            return f"installed manifest unreadable: {exc}"
        if compare(installed, target) is not Ordering.EQUAL:
            return f"installed manifest reports {installed}, expected {target}"
        missing = [
            relative
            for relative in self.file_manifest.system_sorted()
            if archive.contains(relative) and not (self.root / relative).exists()
        ]
        if missing:
            return f"system paths missing after apply: {', '.join(missing)}"
        return ""

    def _roll_back(self, run: PipelineRun[UpdateState], outcome: UpdateOutcome) -> None:
        run.transition(UpdateState.ROLLING_BACK)
        backup = outcome.backup
        try:
            if backup is None:
                raise BackupNotFound("no snapshot recorded for this run")
            restored = self.backups.restore(backup.tag, backup=backup)
        except (BackupNotFound, RestoreFailure) as exc:
            self._fail(run, "rolling_back", exc, UpdateState.ROLLBACK_FAILED)
            return
        outcome.rolled_back = True
        run.record(
            StageResult(
                "rolling_back",
                StageOutcome.OK,
                f"restored backup {backup.tag}",
                {"restored": list(restored.restored)},
            )
        )
        run.transition(UpdateState.ROLLED_BACK)

    @staticmethod
    def _fail(
        run: PipelineRun[UpdateState],
        stage: str,
        exc: SkillOpsError,
        target: UpdateState,
    ) -> None:
        run.record(
            StageResult(stage, StageOutcome.HARD_FAIL, str(exc), {"error": type(exc).__name__})
        )
        run.transition(target, str(exc))
