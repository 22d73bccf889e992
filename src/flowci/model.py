# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2
EXIT_DEFINITION_ERROR = 3


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


class ActionKind(str, Enum):
    CHECKOUT = "checkout"
    TOOLCHAIN_INSTALL = "toolchain-install"
    CACHE_RESTORE = "cache-restore"
    CACHE_SAVE = "cache-save"
    RUN_COMMAND = "run-command"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------
# Events + triggers
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """An event delivered by the hosting platform. Read-only for the engine."""
    kind: EventKind
    branch: str
    ref: str = ""
    repository: str | None = None

    @classmethod
    def from_webhook(cls, kind: str, payload: Dict[str, Any]) -> Event:
        """
        Build an Event from a webhook body.

        push:          {"ref": "refs/heads/<branch>", "after": "<sha>"}
        pull_request:  {"pull_request": {"base": {"ref": ...}, "head": {"sha": ...}}}
        """
        event_kind = EventKind(kind)
        repo = (payload.get("repository") or {}).get("clone_url")

        if event_kind is EventKind.PUSH:
            ref = payload.get("ref", "")
            branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
            return cls(kind=event_kind, branch=branch, ref=payload.get("after", ""), repository=repo)

        pr = payload.get("pull_request") or {}
        return cls(
            kind=event_kind,
            branch=(pr.get("base") or {}).get("ref", ""),
            ref=(pr.get("head") or {}).get("sha", ""),
            repository=repo,
        )


@dataclass(frozen=True)
class TriggerRule:
    event: EventKind
    branches: Optional[Tuple[str, ...]] = None         # None -> any branch
    branches_ignore: Optional[Tuple[str, ...]] = None


# ---------------------------------------------------------------------
# Definitions (immutable once loaded)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepDefinition:
    """One action inside a job."""
    name: str
    kind: ActionKind
    run: str | None = None
    uses: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    shell: str | None = None
    working_directory: str | None = None
    timeout: float | None = None      # seconds
    retries: int = 0
    post_save: bool = False           # cache-restore that also saves after the job


@dataclass(frozen=True)
class JobDefinition:
    """
    A job: ordered steps plus graph edges.

    `group` is the job id a matrix expansion came from (== name without a matrix).
    `fail_fast` is the job's own strategy.fail-fast and only affects its group.
    """
    name: str
    steps: Tuple[StepDefinition, ...]
    needs: Tuple[str, ...] = ()
    run_always: bool = False
    fail_fast: bool = False
    group: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    cache_scope: str | None = None
    timeout: float | None = None
    matrix: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    triggers: Tuple[TriggerRule, ...]
    jobs: Tuple[JobDefinition, ...]
    env: Dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    kind: ActionKind
    status: StepStatus
    output: str = ""
    duration: float = 0.0
    exit_code: int | None = None
    attempts: int = 0


@dataclass
class JobRun:
    """
    Runtime instance of a JobDefinition.

    Owned by the worker executing it until terminal; read-only afterwards.
    """
    name: str
    status: JobStatus = JobStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    started_at: float | None = None
    finished_at: float | None = None
    reason: str = ""

    def _check_open(self) -> None:
        if self.status.terminal:
            raise RuntimeError(f"Job '{self.name}' is already {self.status.value}")

    def start(self) -> None:
        self._check_open()
        self.status = JobStatus.RUNNING
        self.started_at = time.time()

    def finish(self, status: JobStatus, reason: str = "") -> None:
        self._check_open()
        if not status.terminal:
            raise ValueError(f"finish() needs a terminal status, got {status.value}")
        self.status = status
        self.reason = reason
        self.finished_at = time.time()

    def cancel(self, reason: str) -> None:
        self.finish(JobStatus.CANCELLED, reason)

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    @property
    def failed_step(self) -> StepResult | None:
        for s in self.steps:
            if s.status is StepStatus.FAILED:
                return s
        return None


@dataclass(frozen=True)
class JobSummary:
    """Frozen snapshot of a terminal JobRun."""
    name: str
    status: JobStatus
    steps: Tuple[StepResult, ...]
    duration: float
    reason: str = ""

    @property
    def failed_step(self) -> StepResult | None:
        for s in self.steps:
            if s.status is StepStatus.FAILED:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "duration": round(self.duration, 3),
            "reason": self.reason,
            "steps": [
                {
                    "name": s.name,
                    "kind": s.kind.value,
                    "status": s.status.value,
                    "exit_code": s.exit_code,
                    "attempts": s.attempts,
                    "duration": round(s.duration, 3),
                    "output": s.output,
                }
                for s in self.steps
            ],
        }


@dataclass(frozen=True)
class PipelineReport:
    status: JobStatus
    jobs: Tuple[JobSummary, ...]
    exit_code: int
    error: str | None = None

    def job(self, name: str) -> JobSummary:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "jobs": [j.to_dict() for j in self.jobs],
        }
        if self.error:
            out["error"] = self.error
        return out
