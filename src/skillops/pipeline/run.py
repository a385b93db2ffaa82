"""Pipeline run model shared by the update and finalize controllers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Generic, TypeVar

from skillops.errors import InvalidTransition
from skillops.ids import new_id

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)


class StageOutcome(str, Enum):
    OK = "ok"
    SOFT_FAIL = "soft_fail"
    HARD_FAIL = "hard_fail"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True)
class StageResult:
    stage: str
    outcome: StageOutcome
    detail: str = ""
    data: dict[str, object] = field(default_factory=dict)
    finished_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    @property
    def ok(self) -> bool:
        return self.outcome is StageOutcome.OK

    @property
    def hard_failed(self) -> bool:
        return self.outcome is StageOutcome.HARD_FAIL

    def as_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "data": dict(self.data),
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True, slots=True)
class StateMachine(Generic[S]):
    """Transition table for one pipeline kind.

    ``terminal`` maps every terminal state to the run status it settles on.
    """

    kind: str
    initial: S
    transitions: Mapping[S, frozenset[S]]
    terminal: Mapping[S, RunStatus]

    def allows(self, source: S, target: S) -> bool:
        return target in self.transitions.get(source, frozenset())

    def is_terminal(self, state: S) -> bool:
        return state in self.terminal

    def new_run(self) -> PipelineRun[S]:
        return PipelineRun(id=new_id(self.kind), machine=self, current_stage=self.initial)


@dataclass(slots=True)
class PipelineRun(Generic[S]):
    id: str
    machine: StateMachine[S]
    current_stage: S
    status: RunStatus = RunStatus.RUNNING
    stage_history: list[StageResult] = field(default_factory=list)
    transitions: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def kind(self) -> str:
        return self.machine.kind

    @property
    def finished(self) -> bool:
        return self.status is not RunStatus.RUNNING

    def transition(self, target: S, reason: str = "") -> None:
        if self.finished:
            raise InvalidTransition(
                f"{self.kind} run {self.id} already {self.status.value}; "
                f"cannot move to {target.value}"
            )
        source = self.current_stage
        if not self.machine.allows(source, target):
            raise InvalidTransition(
                f"invalid state transition: {source.value} -> {target.value}"
            )
        self.current_stage = target
        self.transitions.append((source.value, target.value, reason))
        logger.debug("Run %s: %s -> %s %s", self.id, source.value, target.value, reason)
        if self.machine.is_terminal(target):
            self.status = self.machine.terminal[target]

    def record(self, result: StageResult) -> StageResult:
        self.stage_history.append(result)
        if result.outcome is StageOutcome.SOFT_FAIL:
            logger.warning("Stage %s soft-failed: %s", result.stage, result.detail)
        elif result.outcome is StageOutcome.HARD_FAIL:
            logger.error("Stage %s failed: %s", result.stage, result.detail)
        else:
            logger.info("Stage %s ok %s", result.stage, result.detail)
        return result

    def last_failure(self) -> StageResult | None:
        for result in reversed(self.stage_history):
            if result.hard_failed:
                return result
        return None

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "kind": self.kind,
            "current_stage": self.current_stage.value,
            "status": self.status.value,
            "stage_history": [item.as_dict() for item in self.stage_history],
        }
