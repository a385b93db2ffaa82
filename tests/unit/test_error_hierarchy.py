"""Tests for error hierarchy."""

from skillops.errors import (
    BackupNotFound,
    BuildFailure,
    FileLimitExceeded,
    GateCancelled,
    LintFailure,
    MalformedVersion,
    ManifestMissing,
    MergeConflict,
    NetworkFailure,
    PartialApplyFailure,
    ReviewError,
    ReviewThresholdUnmet,
    ReviewTimeout,
    SkillOpsError,
    SnapshotFailure,
    VerificationFailure,
)


def test_hierarchy() -> None:
    for cls in (
        NetworkFailure,
        MalformedVersion,
        VerificationFailure,
        SnapshotFailure,
        BackupNotFound,
        PartialApplyFailure,
        LintFailure,
        BuildFailure,
        MergeConflict,
        GateCancelled,
    ):
        assert issubclass(cls, SkillOpsError)
    assert issubclass(ManifestMissing, MalformedVersion)


def test_retryable_default() -> None:
    assert SkillOpsError("test").retryable is False
    assert NetworkFailure("test").retryable is True
    assert ReviewError("test").retryable is True
    assert VerificationFailure("test").retryable is False
    assert NetworkFailure("test", retryable=False).retryable is False


def test_soft_default() -> None:
    assert ReviewTimeout("late").soft is True
    assert ReviewThresholdUnmet("low").soft is True
    assert FileLimitExceeded("big").soft is True
    assert LintFailure("lint").soft is False
    assert MergeConflict("conflict").soft is False
    assert NetworkFailure("down", soft=True).soft is True


def test_payload_attributes() -> None:
    err = PartialApplyFailure("boom", replaced=["skills"])
    assert err.replaced == ["skills"]
    conflict = MergeConflict("conflict", paths=["a.md", "b.md"])
    assert conflict.paths == ["a.md", "b.md"]
    assert MergeConflict("conflict").paths == []


def test_catch_as_skillops_error() -> None:
    try:
        raise NetworkFailure("test")
    except SkillOpsError as exc:
        assert exc.retryable is True
        assert str(exc) == "test"
