"""skillops exception hierarchy.

All skillops-specific exceptions inherit from SkillOpsError. Each carries two
flags the pipeline controllers act on:

- ``retryable``: the same call may succeed later (network trouble).
- ``soft``: the pipeline logs the failure and continues toward its next best
  terminal state instead of aborting.
"""

from __future__ import annotations


class SkillOpsError(Exception):
    """Base exception for all skillops errors."""

    soft_default = False

    def __init__(
        self,
        message: str = "",
        *,
        retryable: bool = False,
        soft: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.soft = self.soft_default if soft is None else soft


class ConfigError(SkillOpsError):
    """Invalid or missing configuration."""


class InvalidTransition(SkillOpsError):
    """A pipeline run was asked to move along an undefined edge."""


class PipelineBusy(SkillOpsError):
    """Another pipeline run holds the managed tree."""


class NetworkFailure(SkillOpsError):
    """A remote endpoint could not be reached or returned an unusable response."""

    def __init__(self, message: str = "", *, retryable: bool = True, soft: bool | None = None):
        super().__init__(message, retryable=retryable, soft=soft)


class MalformedVersion(SkillOpsError):
    """A version string is not exactly ``major.minor.patch``."""


class ManifestMissing(MalformedVersion):
    """The local manifest file does not exist."""


class VerificationFailure(SkillOpsError):
    """A fetched artifact did not contain a well-formed manifest."""


class SnapshotFailure(SkillOpsError):
    """A backup snapshot could not be completed."""


class BackupNotFound(SkillOpsError):
    """No backup exists for the requested tag."""


class RestoreFailure(SkillOpsError):
    """Copying a backup back into the managed tree failed."""


class PartialApplyFailure(SkillOpsError):
    """Replacing system paths failed part-way through."""

    def __init__(self, message: str = "", *, replaced: list[str] | None = None) -> None:
        super().__init__(message)
        self.replaced = list(replaced or [])


class LintFailure(SkillOpsError):
    """The lint gate failed and could not be auto-fixed."""


class BuildFailure(SkillOpsError):
    """The build gate failed."""


class GitError(SkillOpsError):
    """A version-control primitive failed."""


class ReviewError(SkillOpsError):
    """The review collaborator returned an error."""

    def __init__(self, message: str = "", *, retryable: bool = True, soft: bool | None = None):
        super().__init__(message, retryable=retryable, soft=soft)


class ReviewTimeout(SkillOpsError):
    """No review arrived before the poll timeout."""

    soft_default = True


class ReviewThresholdUnmet(SkillOpsError):
    """The confidence score stayed below threshold after every fix cycle."""

    soft_default = True


class FileLimitExceeded(SkillOpsError):
    """The change request touches more files than the reviewer accepts."""

    soft_default = True


class MergeConflict(SkillOpsError):
    """The change request cannot be merged without manual resolution."""

    def __init__(self, message: str = "", *, paths: list[str] | None = None) -> None:
        super().__init__(message)
        self.paths = list(paths or [])


class GateCancelled(SkillOpsError):
    """The user cancelled the review gate while it was polling."""
