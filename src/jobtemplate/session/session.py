from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from jobtemplate.config.schema import Action, EmbeddedFile, Environment, Step
from jobtemplate.exec.cancel import CancelSignal
from jobtemplate.exec.runner import ActionResult, run_action
from jobtemplate.expr.combination import TaskRun, expand_step
from jobtemplate.format.resolver import ENVIRONMENT_SCOPE, TASK_SCOPE
from jobtemplate.format.symbols import file_symbols, job_symbols, session_symbols, task_symbols
from jobtemplate.job.model import Job
from jobtemplate.pathmap.rules import PathFormat, PathMappingRule, dump_path_mapping
from jobtemplate.session.context import EnvFrame, SessionContext
from jobtemplate.session.events import (
    ActionCompleted,
    ActionOutput,
    ActionProgress,
    ActionStarted,
    EnvironmentEntered,
    EnvironmentExited,
    SessionEnded,
    SessionEvent,
    SessionStateChanged,
    SessionStatus,
    TaskEnded,
    TaskNotRun,
    TaskStarted,
)
from jobtemplate.util.errors import SessionSetupError, SessionStateError, UnresolvedReferenceError
from jobtemplate.util.ids import new_session_id
from jobtemplate.util.paths import create_session_dir, remove_tree, write_private_file
from jobtemplate.util.time import elapsed_sec, now_iso

logger = logging.getLogger(__name__)

PATH_MAPPING_FILENAME = "path-mapping.json"

_ENV_DIRECTIVE = re.compile(r"^jt_env:\s*(?P<name>[^=\s]+)=(?P<value>.*)$")
_UNSET_ENV_DIRECTIVE = re.compile(r"^jt_unset_env:\s*(?P<name>[^=\s]+)\s*$")
_PROGRESS_DIRECTIVE = re.compile(r"^jt_progress:\s*(?P<value>\S+)\s*$")
_STATUS_DIRECTIVE = re.compile(r"^jt_status:\s*(?P<message>.*)$")


class SessionState(str, Enum):
    INITIALIZING = "INITIALIZING"
    ENTERING_ENVIRONMENTS = "ENTERING_ENVIRONMENTS"
    READY = "READY"
    RUNNING_TASK = "RUNNING_TASK"
    EXITING_ENVIRONMENTS = "EXITING_ENVIRONMENTS"
    ENDED_SUCCESS = "ENDED_SUCCESS"
    ENDED_FAILED = "ENDED_FAILED"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.INITIALIZING: {SessionState.ENTERING_ENVIRONMENTS, SessionState.ENDED_FAILED},
    SessionState.ENTERING_ENVIRONMENTS: {SessionState.READY, SessionState.EXITING_ENVIRONMENTS},
    SessionState.READY: {SessionState.RUNNING_TASK, SessionState.EXITING_ENVIRONMENTS},
    SessionState.RUNNING_TASK: {SessionState.READY, SessionState.EXITING_ENVIRONMENTS},
    SessionState.EXITING_ENVIRONMENTS: {SessionState.ENDED_SUCCESS, SessionState.ENDED_FAILED},
    SessionState.ENDED_SUCCESS: set(),
    SessionState.ENDED_FAILED: set(),
}


@dataclass(frozen=True, slots=True)
class SessionPlan:
    """The work assigned to one session: a step's TaskRuns inside its environments."""

    job: Job
    step: Step
    task_runs: tuple[TaskRun, ...]
    environments: tuple[Environment, ...] = ()

    @classmethod
    def for_step(
        cls, job: Job, step: Step, task_runs: Sequence[TaskRun] | None = None
    ) -> SessionPlan:
        runs = expand_step(step) if task_runs is None else task_runs
        return cls(
            job=job,
            step=step,
            task_runs=tuple(runs),
            environments=(*job.template.environments, *step.environments),
        )


@dataclass(slots=True)
class SessionConfig:
    root: Path
    path_mapping_rules: tuple[PathMappingRule, ...] = ()
    base_env: Mapping[str, str] | None = None
    keep_working_directory: bool = False
    cancel: CancelSignal | None = None
    on_event: Callable[[SessionEvent], None] | None = None
    notify_period_sec: float | None = None
    destination_format: PathFormat | None = None


@dataclass(slots=True)
class SessionResult:
    session_id: str
    status: SessionStatus
    events: list[SessionEvent]
    task_statuses: dict[int, str]
    tasks_succeeded: int
    tasks_failed: int
    tasks_not_run: int
    duration_sec: float
    working_dir: Path | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


@dataclass(slots=True)
class _Entered:
    position: int
    environment: Environment
    context: SessionContext
    files: dict[str, Path] = field(default_factory=dict)


class Session:
    """Runs a :class:`SessionPlan` through the session lifecycle.

    INITIALIZING -> ENTERING_ENVIRONMENTS -> READY <-> RUNNING_TASK
    -> EXITING_ENVIRONMENTS -> ENDED_SUCCESS | ENDED_FAILED

    Exactly one action process runs at a time. Environments that were entered
    are always exited, in reverse order, even after a failure or cancel.
    """

    def __init__(
        self, plan: SessionPlan, config: SessionConfig, *, session_id: str | None = None
    ) -> None:
        self.plan = plan
        self.config = config
        self.session_id = session_id or new_session_id(datetime.now().astimezone())
        self.working_dir: Path | None = None
        self._state = SessionState.INITIALIZING
        self._cancel = CancelSignal(config.cancel)
        self._events: list[SessionEvent] = []
        self._task_statuses: dict[int, str] = {}
        self._env_files: dict[int, dict[str, Path]] = {}
        self._task_files: dict[str, Path] = {}
        self._rules_file: Path | None = None
        self._failed = False
        self._aborting = False
        self._running_task: int | None = None
        self._error: str | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def events(self) -> list[SessionEvent]:
        return list(self._events)

    def cancel(self) -> None:
        """Request cancellation; the running action is stopped, exits still run."""
        logger.info("session %s: cancel requested", self.session_id)
        self._cancel.request()

    def _emit(self, event: SessionEvent) -> None:
        self._events.append(event)
        if self.config.on_event is None:
            return
        if not self._aborting:
            self.config.on_event(event)
            return
        try:
            self.config.on_event(event)
        except Exception:
            logger.exception("session %s: event callback failed while unwinding", self.session_id)

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise SessionStateError(self._state.value, target.value)
        logger.info("session %s: %s -> %s", self.session_id, self._state.value, target.value)
        previous = self._state
        self._state = target
        self._emit(
            SessionStateChanged(
                session_id=self.session_id, previous=previous.value, state=target.value
            )
        )

    def _base_env(self) -> Mapping[str, str]:
        if self.config.base_env is not None:
            return self.config.base_env
        return os.environ

    # INITIALIZING

    def _write_files(self, directory: Path, files: Sequence[EmbeddedFile]) -> dict[str, Path]:
        assert self.working_dir is not None
        written: dict[str, Path] = {}
        for embedded in files:
            path = directory / embedded.filename
            write_private_file(
                path, embedded.data, root=self.working_dir, executable=embedded.runnable
            )
            written[embedded.name] = path
        return written

    def _materialize(self) -> SessionContext:
        rules = tuple(self.config.path_mapping_rules)
        try:
            self.working_dir = create_session_dir(self.config.root, self.session_id)
            if rules:
                self._rules_file = self.working_dir / PATH_MAPPING_FILENAME
                write_private_file(
                    self._rules_file, dump_path_mapping(rules), root=self.working_dir
                )
            embedded_root = self.working_dir / "embedded"
            for position, environment in enumerate(self.plan.environments):
                files = environment.script.embedded_files if environment.script else ()
                self._env_files[position] = self._write_files(
                    embedded_root / f"env{position}", files
                )
            self._task_files = self._write_files(
                embedded_root / "step", self.plan.step.script.embedded_files
            )
        except OSError as exc:
            raise SessionSetupError(
                f"session {self.session_id}: failed to prepare working directory: {exc}"
            ) from exc
        symbols = job_symbols(
            self.plan.job.parameters, rules, destination_format=self.config.destination_format
        ).with_values(session_symbols(self.working_dir, self._rules_file))
        return SessionContext(
            session_id=self.session_id,
            working_dir=self.working_dir,
            symbols=symbols,
            rules=rules,
        )

    # actions

    def _action_output(
        self, owner: str, name: str, env_changes: dict[str, str | None] | None
    ) -> Callable[[str], None]:
        def on_output(line: str) -> None:
            logger.debug("session %s: %s.%s | %s", self.session_id, owner, name, line)
            self._emit(
                ActionOutput(session_id=self.session_id, owner=owner, action=name, line=line)
            )
            if env_changes is not None:
                match = _ENV_DIRECTIVE.match(line)
                if match is not None:
                    env_changes[match.group("name")] = match.group("value")
                    return
                match = _UNSET_ENV_DIRECTIVE.match(line)
                if match is not None:
                    env_changes[match.group("name")] = None
                    return
            match = _PROGRESS_DIRECTIVE.match(line)
            if match is not None:
                try:
                    progress = float(match.group("value"))
                except ValueError:
                    return
                self._emit(
                    ActionProgress(
                        session_id=self.session_id, owner=owner, action=name, progress=progress
                    )
                )
                return
            match = _STATUS_DIRECTIVE.match(line)
            if match is not None:
                self._emit(
                    ActionProgress(
                        session_id=self.session_id,
                        owner=owner,
                        action=name,
                        message=match.group("message"),
                    )
                )

        return on_output

    async def _run_action(
        self,
        context: SessionContext,
        *,
        owner: str,
        name: str,
        action: Action,
        scope: str,
        cancel: CancelSignal | None,
        env_changes: dict[str, str | None] | None = None,
    ) -> ActionResult:
        try:
            argv = [
                action.command.resolve(context.symbols, scope=scope),
                *(arg.resolve(context.symbols, scope=scope) for arg in action.args),
            ]
        except UnresolvedReferenceError as exc:
            ts = now_iso()
            result = ActionResult("FAILED", None, ts, ts, 0.0, error=str(exc))
            self._emit(
                ActionCompleted(
                    session_id=self.session_id,
                    owner=owner,
                    action=name,
                    status=result.status,
                    exit_code=None,
                    duration_sec=0.0,
                    message=result.error,
                )
            )
            return result

        self._emit(
            ActionStarted(session_id=self.session_id, owner=owner, action=name, command=argv)
        )
        result = await run_action(
            name,
            argv,
            cwd=context.working_dir,
            env=context.environ(self._base_env()),
            timeout_sec=action.timeout,
            cancelation=action.cancelation,
            cancel=cancel,
            on_output=self._action_output(owner, name, env_changes),
            notify_period_sec=self.config.notify_period_sec,
        )
        self._emit(
            ActionCompleted(
                session_id=self.session_id,
                owner=owner,
                action=name,
                status=result.status,
                exit_code=result.exit_code,
                duration_sec=result.duration_sec,
                message=result.error,
            )
        )
        return result

    # ENTERING_ENVIRONMENTS / EXITING_ENVIRONMENTS

    async def _enter(
        self,
        context: SessionContext,
        position: int,
        environment: Environment,
        entered: list[_Entered],
    ) -> str:
        """Enter one environment, recording it in ``entered`` before onEnter starts."""
        files = self._env_files.get(position, {})
        local = context.with_symbols(file_symbols("Env.File", files))
        status = "SUCCESS"
        variables: dict[str, str | None] = {}
        try:
            for var_name, fmt in environment.variables:
                variables[var_name] = fmt.resolve(local.symbols, scope=ENVIRONMENT_SCOPE)
        except UnresolvedReferenceError as exc:
            logger.warning("session %s: %s", self.session_id, exc)
            self._error = str(exc)
            status = "FAILED"
        frame = EnvFrame(environment.name, tuple(variables.items()))
        record = _Entered(position, environment, context.push(frame), files)
        entered.append(record)
        on_enter = environment.script.on_enter if environment.script else None
        if status == "SUCCESS" and on_enter is not None:
            changes: dict[str, str | None] = {}
            result = await self._run_action(
                record.context.with_symbols(file_symbols("Env.File", files)),
                owner=environment.name,
                name="onEnter",
                action=on_enter,
                scope=ENVIRONMENT_SCOPE,
                cancel=self._cancel,
                env_changes=changes,
            )
            status = result.status
            if changes:
                record.context = record.context.replace_top(frame.updated(changes))
        self._emit(
            EnvironmentEntered(
                session_id=self.session_id,
                environment=environment.name,
                status=status,  # type: ignore[arg-type]
            )
        )
        return status

    async def _exit(self, entered: _Entered) -> str:
        environment = entered.environment
        on_exit = environment.script.on_exit if environment.script else None
        status = "SUCCESS"
        if on_exit is not None:
            result = await self._run_action(
                entered.context.with_symbols(file_symbols("Env.File", entered.files)),
                owner=environment.name,
                name="onExit",
                action=on_exit,
                scope=ENVIRONMENT_SCOPE,
                # Cleanup is never skipped by a cancel request; only its timeout applies.
                cancel=None,
            )
            status = result.status
        self._emit(
            EnvironmentExited(
                session_id=self.session_id,
                environment=environment.name,
                status=status,  # type: ignore[arg-type]
            )
        )
        return status

    # RUNNING_TASK

    async def _run_task(self, context: SessionContext, task_run: TaskRun) -> str:
        step = self.plan.step
        task_context = context.with_symbols(
            {
                **file_symbols("Task.File", self._task_files),
                **task_symbols(
                    task_run,
                    context.rules,
                    destination_format=self.config.destination_format,
                ),
            }
        )
        self._emit(
            TaskStarted(
                session_id=self.session_id,
                step=step.name,
                task_index=task_run.index,
                parameters={name: str(value) for name, value in task_run.parameters.items()},
            )
        )
        result = await self._run_action(
            task_context,
            owner=f"{step.name}[{task_run.index}]",
            name="onRun",
            action=step.script.on_run,
            scope=TASK_SCOPE,
            cancel=self._cancel,
        )
        self._emit(
            TaskEnded(
                session_id=self.session_id,
                step=step.name,
                task_index=task_run.index,
                status=result.status,
            )
        )
        return result.status

    def _cleanup(self) -> None:
        if self.working_dir is None or self.config.keep_working_directory:
            return
        try:
            remove_tree(self.working_dir)
        except OSError as exc:
            logger.warning(
                "session %s: failed to remove working directory %s: %s",
                self.session_id,
                self.working_dir,
                exc,
            )

    def _mark_not_run(self, reason: str) -> None:
        for task_run in self.plan.task_runs:
            if task_run.index in self._task_statuses:
                continue
            self._task_statuses[task_run.index] = "NOT_RUN"
            self._emit(
                TaskNotRun(
                    session_id=self.session_id,
                    step=self.plan.step.name,
                    task_index=task_run.index,
                    reason=reason,
                )
            )

    def _finish(self, started: float) -> SessionResult:
        statuses = self._task_statuses
        succeeded = sum(1 for s in statuses.values() if s == "SUCCESS")
        not_run = sum(1 for s in statuses.values() if s == "NOT_RUN")
        failed = len(statuses) - succeeded - not_run
        status: SessionStatus = (
            "SUCCESS" if self._state is SessionState.ENDED_SUCCESS else "FAILED"
        )
        duration = elapsed_sec(started)
        self._emit(
            SessionEnded(
                session_id=self.session_id,
                status=status,
                tasks_succeeded=succeeded,
                tasks_failed=failed,
                tasks_not_run=not_run,
                duration_sec=duration,
                error=self._error,
            )
        )
        logger.info(
            "session %s ended %s: %d succeeded, %d failed, %d not run in %.3fs",
            self.session_id,
            status,
            succeeded,
            failed,
            not_run,
            duration,
        )
        return SessionResult(
            session_id=self.session_id,
            status=status,
            events=list(self._events),
            task_statuses=dict(statuses),
            tasks_succeeded=succeeded,
            tasks_failed=failed,
            tasks_not_run=not_run,
            duration_sec=duration,
            working_dir=self.working_dir,
            error=self._error,
        )

    async def run(self) -> SessionResult:
        if self._state is not SessionState.INITIALIZING or self._events:
            raise SessionStateError(self._state.value, SessionState.INITIALIZING.value)
        started = time.monotonic()
        logger.info(
            "session %s: step %s, %d task(s), %d environment(s)",
            self.session_id,
            self.plan.step.name,
            len(self.plan.task_runs),
            len(self.plan.environments),
        )
        try:
            context = self._materialize()
        except SessionSetupError as exc:
            logger.error("%s", exc)
            self._error = str(exc)
            self._cleanup()
            self._mark_not_run("session_setup_failed")
            self._transition(SessionState.ENDED_FAILED)
            return self._finish(started)

        entered: list[_Entered] = []
        try:
            self._transition(SessionState.ENTERING_ENVIRONMENTS)
            context = await self._enter_all(context, entered)
            if context is not None:
                self._transition(SessionState.READY)
                await self._run_tasks(context)
            if self._cancel.requested():
                self._mark_not_run("canceled")
            else:
                self._mark_not_run("environment_enter_failed")
            await self._unwind(entered)
        except BaseException:
            logger.warning("session %s: interrupted, unwinding environments", self.session_id)
            self._aborting = True
            self._failed = True
            self._cancel.request()
            if self._running_task is not None:
                self._task_statuses.setdefault(self._running_task, "CANCELED")
            self._mark_not_run("canceled")
            await asyncio.shield(self._unwind(entered))
            self._finish(started)
            raise
        return self._finish(started)

    async def _enter_all(
        self, context: SessionContext, entered: list[_Entered]
    ) -> SessionContext | None:
        """Enter environments in order; None when one failed or a cancel arrived."""
        for position, environment in enumerate(self.plan.environments):
            if self._cancel.requested():
                return None
            status = await self._enter(context, position, environment, entered)
            context = entered[-1].context
            if status != "SUCCESS":
                self._failed = True
                return None
        return context

    async def _run_tasks(self, context: SessionContext) -> None:
        for task_run in self.plan.task_runs:
            if self._cancel.requested():
                break
            self._transition(SessionState.RUNNING_TASK)
            self._running_task = task_run.index
            self._task_statuses[task_run.index] = await self._run_task(context, task_run)
            self._running_task = None
            self._transition(SessionState.READY)

    async def _unwind(self, entered: list[_Entered]) -> None:
        """Exit entered environments in reverse, remove the working directory, end."""
        if self._state in (SessionState.ENDED_SUCCESS, SessionState.ENDED_FAILED):
            return
        if self._state is not SessionState.EXITING_ENVIRONMENTS:
            self._transition(SessionState.EXITING_ENVIRONMENTS)
        while entered:
            if await self._exit(entered.pop()) != "SUCCESS":
                self._failed = True
        self._cleanup()

        success = not self._failed and all(s == "SUCCESS" for s in self._task_statuses.values())
        self._transition(SessionState.ENDED_SUCCESS if success else SessionState.ENDED_FAILED)


async def run_session(
    plan: SessionPlan, config: SessionConfig, *, session_id: str | None = None
) -> SessionResult:
    return await Session(plan, config, session_id=session_id).run()
