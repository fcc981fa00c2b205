from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from jobtemplate.config.schema import JobTemplate, ParameterType, ParameterValue

StepStatus = Literal["PENDING", "RUNNING", "SUCCESS", "FAILED", "CANCELED", "NOT_RUNNABLE"]
JobStatus = Literal["RUNNING", "SUCCESS", "FAILED", "CANCELED"]


@dataclass(frozen=True, slots=True)
class JobParameter:
    type: ParameterType
    value: ParameterValue


@dataclass(frozen=True, slots=True)
class Job:
    """A template bound to concrete job parameter values."""

    template: JobTemplate
    name: str
    parameters: dict[str, JobParameter]


@dataclass(slots=True)
class StepResult:
    name: str
    status: StepStatus = "PENDING"
    tasks_total: int = 0
    tasks_succeeded: int = 0
    tasks_failed: int = 0
    tasks_not_run: int = 0
    sessions: int = 0
    reason: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    failures: list[dict[str, object]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "status": self.status,
            "tasks_total": self.tasks_total,
            "tasks_succeeded": self.tasks_succeeded,
            "tasks_failed": self.tasks_failed,
            "tasks_not_run": self.tasks_not_run,
            "sessions": self.sessions,
            "reason": self.reason,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "failures": list(self.failures),
        }


@dataclass(slots=True)
class JobResult:
    name: str
    status: JobStatus = "RUNNING"
    steps: dict[str, StepResult] = field(default_factory=dict)
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None

    @property
    def exit_code(self) -> int:
        if self.status == "SUCCESS":
            return 0
        if self.status == "CANCELED":
            return 4
        return 1

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "steps": {name: step.to_dict() for name, step in self.steps.items()},
        }
