"""Events emitted by a running session, in emission order."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Literal

from jobtemplate.util.time import now_iso

SessionStatus = Literal["SUCCESS", "FAILED"]
EnvironmentStatus = Literal["SUCCESS", "FAILED", "CANCELED", "TIMEOUT"]


@dataclass(kw_only=True, slots=True)
class SessionEvent:
    session_id: str
    timestamp: str = field(default_factory=now_iso)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, **asdict(self)}


@dataclass(kw_only=True, slots=True)
class SessionStateChanged(SessionEvent):
    previous: str
    state: str


@dataclass(kw_only=True, slots=True)
class EnvironmentEntered(SessionEvent):
    environment: str
    status: EnvironmentStatus


@dataclass(kw_only=True, slots=True)
class EnvironmentExited(SessionEvent):
    environment: str
    status: EnvironmentStatus


@dataclass(kw_only=True, slots=True)
class TaskStarted(SessionEvent):
    step: str
    task_index: int
    parameters: dict[str, str]


@dataclass(kw_only=True, slots=True)
class TaskEnded(SessionEvent):
    step: str
    task_index: int
    status: str


@dataclass(kw_only=True, slots=True)
class TaskNotRun(SessionEvent):
    step: str
    task_index: int
    reason: str


@dataclass(kw_only=True, slots=True)
class ActionStarted(SessionEvent):
    owner: str
    action: str
    command: list[str]


@dataclass(kw_only=True, slots=True)
class ActionOutput(SessionEvent):
    owner: str
    action: str
    line: str


@dataclass(kw_only=True, slots=True)
class ActionProgress(SessionEvent):
    owner: str
    action: str
    progress: float | None = None
    message: str | None = None


@dataclass(kw_only=True, slots=True)
class ActionCompleted(SessionEvent):
    owner: str
    action: str
    status: str
    exit_code: int | None
    duration_sec: float
    message: str | None = None


@dataclass(kw_only=True, slots=True)
class SessionEnded(SessionEvent):
    status: SessionStatus
    tasks_succeeded: int
    tasks_failed: int
    tasks_not_run: int
    duration_sec: float
    error: str | None = None
