from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from collections.abc import Mapping, Sequence
from dataclasses import replace

from jobtemplate.config.params import bind_parameters
from jobtemplate.config.schema import EnvironmentTemplate, JobTemplate, Step
from jobtemplate.dag.build import build_adjacency
from jobtemplate.exec.cancel import CancelSignal
from jobtemplate.expr.combination import TaskRun, expand_step
from jobtemplate.format.resolver import JOB_SCOPE
from jobtemplate.format.symbols import job_symbols
from jobtemplate.job.model import Job, JobResult, StepResult
from jobtemplate.session.events import (
    ActionCompleted,
    ActionOutput,
    EnvironmentEntered,
    EnvironmentExited,
    TaskEnded,
)
from jobtemplate.session.session import SessionConfig, SessionPlan, SessionResult, run_session
from jobtemplate.util.errors import UnresolvedReferenceError, ValidationError
from jobtemplate.util.time import elapsed_sec, now_iso

logger = logging.getLogger(__name__)

TaskOverrides = Mapping[str, Sequence[Mapping[str, object]]]

OUTPUT_TAIL_LINES = 20


def create_job(
    template: JobTemplate,
    parameter_values: Mapping[str, object],
    *,
    environment_templates: Sequence[EnvironmentTemplate] = (),
) -> Job:
    """Bind parameter values to ``template`` and resolve the job name.

    Environments from ``environment_templates`` are entered before the
    template's own environments, in the order given.
    """
    definitions = list(template.parameter_definitions)
    known = {definition.name for definition in definitions}
    for environment_template in environment_templates:
        for definition in environment_template.parameter_definitions:
            if definition.name not in known:
                definitions.append(definition)
                known.add(definition.name)
    parameters = bind_parameters(definitions, parameter_values)
    try:
        name = template.name.resolve(job_symbols(parameters), scope=JOB_SCOPE)
    except UnresolvedReferenceError as exc:
        raise ValidationError(str(exc)) from exc
    if environment_templates:
        template = replace(
            template,
            environments=(
                *(t.environment for t in environment_templates),
                *template.environments,
            ),
        )
    return Job(template=template, name=name, parameters=parameters)


def partition_task_runs(runs: Sequence[TaskRun], sessions: int) -> list[list[TaskRun]]:
    """Deal ``runs`` round-robin into at most ``sessions`` non-empty groups."""
    count = min(max(sessions, 1), len(runs))
    return [list(runs[offset::count]) for offset in range(count)]


def session_failures(session: SessionResult) -> list[dict[str, object]]:
    """Failed tasks and environments of a session, with the tail of their output."""
    output: dict[str, deque[str]] = defaultdict(lambda: deque(maxlen=OUTPUT_TAIL_LINES))
    messages: dict[str, str | None] = {}
    failures: list[dict[str, object]] = []

    def _record(subject: str, status: str) -> None:
        failures.append(
            {
                "session_id": session.session_id,
                "subject": subject,
                "status": status,
                "message": messages.get(subject),
                "output_tail": list(output[subject]),
            }
        )

    for event in session.events:
        if isinstance(event, ActionOutput):
            output[event.owner].append(event.line)
        elif isinstance(event, ActionCompleted):
            messages[event.owner] = event.message
        elif isinstance(event, TaskEnded) and event.status != "SUCCESS":
            _record(f"{event.step}[{event.task_index}]", event.status)
        elif isinstance(event, (EnvironmentEntered, EnvironmentExited)):
            if event.status != "SUCCESS":
                _record(event.environment, event.status)
    return failures


def _finalize_job_status(result: JobResult) -> None:
    statuses = [step.status for step in result.steps.values()]
    if any(status == "CANCELED" for status in statuses):
        result.status = "CANCELED"
    elif statuses and all(status == "SUCCESS" for status in statuses):
        result.status = "SUCCESS"
    elif not statuses:
        result.status = "SUCCESS"
    else:
        result.status = "FAILED"


class JobRunner:
    """Runs every step of a job in dependency order.

    A step starts once all of its dependencies succeeded. Its TaskRuns are
    spread over up to ``max_parallel`` sessions; the session limit is shared
    by all steps running at the same time.
    """

    def __init__(
        self,
        job: Job,
        config: SessionConfig,
        *,
        max_parallel: int = 4,
        task_overrides: TaskOverrides | None = None,
        cancel: CancelSignal | None = None,
    ) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.job = job
        self.max_parallel = max_parallel
        self.task_overrides = dict(task_overrides or {})
        by_name = {step.name: step for step in job.template.steps}
        unknown = sorted(set(self.task_overrides) - set(by_name))
        if unknown:
            raise ValidationError(f"task overrides name unknown steps: {unknown}")
        for name, overrides in self.task_overrides.items():
            expand_step(by_name[name], overrides)
        self._cancel = CancelSignal(cancel if cancel is not None else config.cancel)
        self.config = replace(config, cancel=self._cancel)

    def cancel(self) -> None:
        logger.info("job %s: cancel requested", self.job.name)
        self._cancel.request()

    async def _run_step(
        self, step: Step, result: StepResult, limiter: asyncio.Semaphore
    ) -> None:
        started = time.monotonic()
        result.status = "RUNNING"
        result.started_at = now_iso()
        runs = expand_step(step, self.task_overrides.get(step.name))
        result.tasks_total = len(runs)
        groups = partition_task_runs(runs, self.max_parallel)
        logger.info(
            "job %s: step %s started with %d task(s) in %d session(s)",
            self.job.name,
            step.name,
            len(runs),
            len(groups),
        )

        async def _session(group: list[TaskRun]) -> SessionResult | None:
            async with limiter:
                if self._cancel.requested():
                    return None
                plan = SessionPlan.for_step(self.job, step, group)
                return await run_session(plan, self.config)

        outcomes = await asyncio.gather(
            *(_session(group) for group in groups), return_exceptions=True
        )
        failed_sessions = 0
        for group, outcome in zip(groups, outcomes):
            if isinstance(outcome, SessionResult):
                result.sessions += 1
                result.tasks_succeeded += outcome.tasks_succeeded
                result.tasks_failed += outcome.tasks_failed
                result.tasks_not_run += outcome.tasks_not_run
                result.failures.extend(session_failures(outcome))
                if not outcome.succeeded:
                    failed_sessions += 1
                continue
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    "job %s: session for step %s raised: %s", self.job.name, step.name, outcome
                )
                result.reason = f"session_exception: {outcome}"
                failed_sessions += 1
            result.tasks_not_run += len(group)

        if self._cancel.requested():
            result.status = "CANCELED"
            result.reason = result.reason or "job_canceled"
        elif failed_sessions or result.tasks_succeeded != result.tasks_total:
            result.status = "FAILED"
        else:
            result.status = "SUCCESS"
        result.ended_at = now_iso()
        result.duration_sec = elapsed_sec(started)
        logger.info(
            "job %s: step %s ended %s (%d/%d succeeded)",
            self.job.name,
            step.name,
            result.status,
            result.tasks_succeeded,
            result.tasks_total,
        )

    async def run(self) -> JobResult:
        steps = self.job.template.steps
        started = time.monotonic()
        job_result = JobResult(name=self.job.name, started_at=now_iso())
        job_result.steps = {step.name: StepResult(name=step.name) for step in steps}
        # Steps are addressed by their index; dependency_indices were resolved at load.
        results = [job_result.steps[step.name] for step in steps]
        dependents, remaining = build_adjacency(
            [step.index for step in steps],
            {step.index: step.dependency_indices for step in steps},
        )
        ready = [step.index for step in steps if remaining[step.index] == 0]
        running: dict[int, asyncio.Task[None]] = {}
        limiter = asyncio.Semaphore(self.max_parallel)

        def _release(index: int) -> None:
            for child in dependents.get(index, []):
                remaining[child] -= 1
                if remaining[child] == 0:
                    ready.append(child)

        while ready or running:
            while ready:
                index = ready.pop(0)
                step = steps[index]
                step_result = results[index]
                blocked = [
                    steps[dep].name
                    for dep in step.dependency_indices
                    if results[dep].status != "SUCCESS"
                ]
                if self._cancel.requested():
                    step_result.status = "CANCELED"
                    step_result.reason = "job_canceled"
                elif blocked:
                    step_result.status = "NOT_RUNNABLE"
                    step_result.reason = f"dependencies not successful: {blocked}"
                else:
                    running[index] = asyncio.create_task(
                        self._run_step(step, step_result, limiter)
                    )
                    continue
                step_result.tasks_total = len(
                    expand_step(step, self.task_overrides.get(step.name))
                )
                step_result.tasks_not_run = step_result.tasks_total
                step_result.ended_at = now_iso()
                logger.info("job %s: step %s %s", self.job.name, step.name, step_result.status)
                _release(index)

            if not running:
                break
            done, _ = await asyncio.wait(running.values(), return_when=asyncio.FIRST_COMPLETED)
            for index in [i for i, task in running.items() if task in done]:
                task = running.pop(index)
                exc = task.exception()
                if exc is not None:
                    step_result = results[index]
                    logger.error(
                        "job %s: step %s raised: %s", self.job.name, steps[index].name, exc
                    )
                    step_result.status = "FAILED"
                    step_result.reason = f"step_exception: {exc}"
                    step_result.ended_at = now_iso()
                _release(index)

        _finalize_job_status(job_result)
        job_result.ended_at = now_iso()
        job_result.duration_sec = elapsed_sec(started)
        logger.info("job %s ended %s", self.job.name, job_result.status)
        return job_result


async def run_job(
    job: Job,
    config: SessionConfig,
    *,
    max_parallel: int = 4,
    task_overrides: TaskOverrides | None = None,
    cancel: CancelSignal | None = None,
) -> JobResult:
    runner = JobRunner(
        job, config, max_parallel=max_parallel, task_overrides=task_overrides, cancel=cancel
    )
    return await runner.run()
