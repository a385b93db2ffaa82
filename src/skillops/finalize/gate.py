"""Review gate: poll for a scored review, run bounded fix cycles, then merge.

The gate never blocks a merge forever. It merges when the score reaches the
threshold, when no review arrives before the poll timeout, when there is no
reviewer, when the change request exceeds the reviewer's file limit, or when the
fix budget is spent. Only a merge conflict or a cancel stops it without merging.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from skillops.config import Settings
from skillops.errors import GateCancelled, ReviewError
from skillops.finalize.review import (
    ChangeRequestRef,
    MergeResult,
    Review,
    ReviewComment,
    ReviewService,
)

logger = logging.getLogger(__name__)


class GateKind(str, Enum):
    PASSED_DIRECTLY = "passed_directly"
    PASSED_AFTER_FIXES = "passed_after_fixes"
    FALLBACK_MERGED = "fallback_merged"
    AUTO_MERGE_NO_REVIEW = "auto_merge_no_review"


@dataclass(frozen=True, slots=True)
class GatePolicy:
    reviewer: str = ""
    threshold: float = 4.0
    max_attempts: int = 3
    poll_interval: float = 30.0
    poll_timeout: float = 600.0
    file_limit: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> GatePolicy:
        return cls(
            reviewer=settings.review_bot_login.strip(),
            threshold=settings.review_threshold,
            max_attempts=settings.review_max_attempts,
            poll_interval=settings.review_poll_interval_seconds,
            poll_timeout=settings.review_poll_timeout_seconds,
            file_limit=settings.review_file_limit,
        )


@dataclass(slots=True)
class ReviewCycle:
    attempt: int
    score: float
    threshold: float
    comments: list[ReviewComment] = field(default_factory=list)


@dataclass(slots=True)
class GateResult:
    kind: GateKind
    score: float | None = None
    attempts: int = 0
    merged: bool = False
    merge: MergeResult | None = None
    warnings: list[str] = field(default_factory=list)
    cycles: list[ReviewCycle] = field(default_factory=list)

    @property
    def with_warning(self) -> bool:
        return bool(self.warnings)

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "score": self.score,
            "attempts": self.attempts,
            "merged": self.merged,
            "warnings": list(self.warnings),
        }


FixCycle = Callable[[ChangeRequestRef, ReviewCycle], bool]
"""Apply fixes for one cycle and push them; ``False`` when nothing changed."""


class ReviewGate:
    def __init__(
        self,
        service: ReviewService,
        policy: GatePolicy,
        *,
        fix_cycle: FixCycle | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        cancel: threading.Event | None = None,
    ) -> None:
        self.service = service
        self.policy = policy
        self.fix_cycle = fix_cycle
        self._sleep = sleep
        self._clock = clock
        self._cancel = cancel

    def gate(self, ref: ChangeRequestRef) -> GateResult:
        policy = self.policy
        if not policy.reviewer:
            logger.info("No reviewer configured; merging #%d without review", ref.number)
            return self._merge(ref, GateResult(kind=GateKind.AUTO_MERGE_NO_REVIEW))

        if policy.file_limit is not None:
            changed = self.service.changed_file_count(ref)
            if changed > policy.file_limit:
                warning = (
                    f"change request touches {changed} files, over the reviewer limit of "
                    f"{policy.file_limit}; review skipped"
                )
                logger.warning("%s", warning)
                result = GateResult(kind=GateKind.AUTO_MERGE_NO_REVIEW, warnings=[warning])
                return self._merge(ref, result)

        seen: set[int] = set()
        attempts = 0
        cycles: list[ReviewCycle] = []
        warnings: list[str] = []
        last_score: float | None = None
        while True:
            polled = self._poll(ref, seen)
            if polled is None:
                warning = (
                    f"no review from {policy.reviewer} within {policy.poll_timeout:.0f}s; "
                    "merging without a passing score"
                )
                logger.warning("%s", warning)
                result = GateResult(
                    kind=GateKind.FALLBACK_MERGED,
                    score=last_score,
                    attempts=attempts,
                    warnings=[*warnings, warning],
                    cycles=cycles,
                )
                return self._merge(ref, result)

            review, score = polled
            last_score = score
            cycle = ReviewCycle(
                attempt=attempts,
                score=score,
                threshold=policy.threshold,
                comments=self._comments(ref, review),
            )
            cycles.append(cycle)
            logger.info(
                "Review %d scored %.1f (threshold %.1f, attempt %d/%d)",
                review.id,
                score,
                policy.threshold,
                attempts,
                policy.max_attempts,
            )

            if score >= policy.threshold:
                kind = GateKind.PASSED_DIRECTLY if attempts == 0 else GateKind.PASSED_AFTER_FIXES
                result = GateResult(
                    kind=kind, score=score, attempts=attempts, warnings=warnings, cycles=cycles
                )
                return self._merge(ref, result)

            if attempts >= policy.max_attempts:
                warning = (
                    f"score {score:g} below threshold {policy.threshold:g} after "
                    f"{attempts} fix cycles; merging anyway"
                )
                logger.warning("%s", warning)
                result = GateResult(
                    kind=GateKind.PASSED_AFTER_FIXES,
                    score=score,
                    attempts=attempts,
                    warnings=[*warnings, warning],
                    cycles=cycles,
                )
                return self._merge(ref, result)

            # A cycle that changes nothing still spends an attempt.
            attempts += 1
            if self.fix_cycle is None:
                warning = f"fix cycle {attempts}: no fix strategy available; waiting for re-review"
            elif not self.fix_cycle(ref, cycle):
                warning = f"fix cycle {attempts} produced no changes; waiting for re-review"
            else:
                continue
            logger.warning("%s", warning)
            warnings.append(warning)

    def _comments(self, ref: ChangeRequestRef, review: Review) -> list[ReviewComment]:
        try:
            return self.service.list_review_comments(ref, review)
        except ReviewError as exc:
            logger.warning("Could not list comments for review %d: %s", review.id, exc)
            return []

    def _poll(self, ref: ChangeRequestRef, seen: set[int]) -> tuple[Review, float] | None:
        """Wait for a new scored review from the configured reviewer."""
        reviewer = self.policy.reviewer.lower()
        deadline = self._clock() + self.policy.poll_timeout
        while True:
            self._check_cancel()
            try:
                reviews = self.service.list_reviews(ref)
            except ReviewError as exc:
                if not exc.retryable:
                    raise
                logger.warning("Review poll failed, retrying: %s", exc)
                reviews = []
            fresh: list[tuple[Review, float]] = []
            for review in reviews:
                if review.id in seen or review.login.lower() != reviewer:
                    continue
                seen.add(review.id)
                score = review.score
                if score is None:
                    logger.info("Review %d carries no confidence score; still waiting", review.id)
                    continue
                fresh.append((review, score))
            if fresh:
                return max(fresh, key=lambda item: (item[0].submitted_at, item[0].id))
            remaining = deadline - self._clock()
            if remaining <= 0:
                return None
            self._wait(min(self.policy.poll_interval, remaining))

    def _wait(self, seconds: float) -> None:
        if self._cancel is not None:
            if self._cancel.wait(seconds):
                raise GateCancelled("review gate cancelled; change request left open")
            return
        try:
            self._sleep(seconds)
        except KeyboardInterrupt as exc:
            raise GateCancelled("review gate cancelled; change request left open") from exc

    def _check_cancel(self) -> None:
        if self._cancel is not None and self._cancel.is_set():
            raise GateCancelled("review gate cancelled; change request left open")

    def _merge(self, ref: ChangeRequestRef, result: GateResult) -> GateResult:
        self._check_cancel()
        result.merge = self.service.merge(ref)
        result.merged = result.merge.merged
        result.warnings.extend(result.merge.warnings)
        return result
