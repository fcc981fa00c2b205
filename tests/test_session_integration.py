from __future__ import annotations

import asyncio
import json
import os
import sys
import time
from pathlib import Path
from typing import Any

import pytest

from jobtemplate.config.loader import check_template
from jobtemplate.job.model import Job
from jobtemplate.job.runner import create_job
from jobtemplate.pathmap.rules import PathFormat, PathMappingRule
from jobtemplate.session.events import (
    ActionOutput,
    EnvironmentEntered,
    EnvironmentExited,
    SessionEnded,
    SessionEvent,
    SessionStateChanged,
    TaskNotRun,
    TaskStarted,
)
from jobtemplate.session.session import (
    Session,
    SessionConfig,
    SessionPlan,
    SessionResult,
    run_session,
)
from jobtemplate.util.errors import SessionStateError


def _python(code: str, *args: str, timeout: int | None = None) -> dict[str, Any]:
    action: dict[str, Any] = {"command": sys.executable, "args": ["-c", code, *args]}
    if timeout is not None:
        action["timeout"] = timeout
    return action


def _job(
    steps: list[dict[str, Any]],
    *,
    environments: list[dict[str, Any]] | None = None,
    parameters: list[dict[str, Any]] | None = None,
    values: dict[str, object] | None = None,
) -> Job:
    document: dict[str, Any] = {
        "specificationVersion": "jobtemplate-2023-09",
        "name": "session-test",
        "steps": steps,
    }
    if environments:
        document["jobEnvironments"] = environments
    if parameters:
        document["parameterDefinitions"] = parameters
    return create_job(check_template(document), values or {})


def _frames_step(on_run: dict[str, Any], frames: str = "1-3", **extra: Any) -> dict[str, Any]:
    step: dict[str, Any] = {
        "name": "Work",
        "parameterSpace": {
            "taskParameterDefinitions": [{"name": "Frame", "type": "INT", "range": frames}]
        },
        "script": {"actions": {"onRun": on_run}},
    }
    step.update(extra)
    return step


def _config(tmp_path: Path, **extra: Any) -> SessionConfig:
    return SessionConfig(root=tmp_path / "sessions", base_env=dict(os.environ), **extra)


def _lines(result: SessionResult, owner: str | None = None) -> list[str]:
    return [
        e.line
        for e in result.events
        if isinstance(e, ActionOutput) and (owner is None or e.owner == owner)
    ]


def _states(result: SessionResult) -> list[str]:
    return [e.state for e in result.events if isinstance(e, SessionStateChanged)]


@pytest.mark.asyncio
async def test_session_runs_every_task_in_order_and_cleans_up(tmp_path: Path) -> None:
    job = _job([_frames_step(_python("import sys; print('frame', sys.argv[1])", "{{Task.Param.Frame}}"))])
    plan = SessionPlan.for_step(job, job.template.steps[0])
    seen: list[SessionEvent] = []

    result = await run_session(plan, _config(tmp_path, on_event=seen.append))

    assert result.status == "SUCCESS"
    assert (result.tasks_succeeded, result.tasks_failed, result.tasks_not_run) == (3, 0, 0)
    assert _lines(result) == ["frame 1", "frame 2", "frame 3"]
    assert _states(result) == [
        "ENTERING_ENVIRONMENTS",
        "READY",
        "RUNNING_TASK",
        "READY",
        "RUNNING_TASK",
        "READY",
        "RUNNING_TASK",
        "READY",
        "EXITING_ENVIRONMENTS",
        "ENDED_SUCCESS",
    ]
    started = [e for e in result.events if isinstance(e, TaskStarted)]
    assert [e.parameters for e in started] == [{"Frame": "1"}, {"Frame": "2"}, {"Frame": "3"}]
    assert isinstance(result.events[-1], SessionEnded)
    assert seen == result.events
    assert result.working_dir is not None
    assert not result.working_dir.exists()


@pytest.mark.asyncio
async def test_environment_variables_stack_and_directives_apply(tmp_path: Path) -> None:
    enter = _python("print('jt_env: FROM_ENTER=yes'); print('jt_unset_env: DROP_ME')")
    report = (
        "import os; print(' '.join(str(os.environ.get(k)) for k in "
        "('LEVEL', 'ONLY_A', 'FROM_ENTER', 'DROP_ME')))"
    )
    job = _job(
        [
            _frames_step(
                _python(report),
                frames="1",
                stepEnvironments=[{"name": "B", "variables": {"LEVEL": "step"}}],
            )
        ],
        environments=[
            {
                "name": "A",
                "variables": {"LEVEL": "job", "ONLY_A": "a"},
                "script": {"actions": {"onEnter": enter}},
            }
        ],
    )
    config = SessionConfig(
        root=tmp_path / "sessions", base_env={**os.environ, "DROP_ME": "1"}
    )
    result = await run_session(SessionPlan.for_step(job, job.template.steps[0]), config)

    assert result.status == "SUCCESS"
    assert _lines(result, "Work[0]") == ["step a yes None"]
    entered = [e.environment for e in result.events if isinstance(e, EnvironmentEntered)]
    exited = [e.environment for e in result.events if isinstance(e, EnvironmentExited)]
    assert entered == ["A", "B"]
    assert exited == ["B", "A"]


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX file modes")
@pytest.mark.asyncio
async def test_embedded_files_are_materialized_in_working_directory(tmp_path: Path) -> None:
    check = (
        "import os, sys; "
        "print(os.access(sys.argv[1], os.X_OK), sys.argv[1].startswith(sys.argv[2]))"
    )
    job = _job(
        [
            {
                "name": "Work",
                "script": {
                    "embeddedFiles": [
                        {
                            "name": "Tool",
                            "type": "TEXT",
                            "filename": "tool.sh",
                            "runnable": True,
                            "data": "#!/bin/sh\necho tool\n",
                        }
                    ],
                    "actions": {
                        "onRun": _python(check, "{{Task.File.Tool}}", "{{Session.WorkingDirectory}}")
                    },
                },
            }
        ],
        environments=[
            {
                "name": "Files",
                "script": {
                    "embeddedFiles": [{"name": "Data", "type": "TEXT", "data": "hello from env"}],
                    "actions": {
                        "onEnter": _python("import sys; print(open(sys.argv[1]).read())", "{{Env.File.Data}}")
                    },
                },
            }
        ],
    )
    result = await run_session(
        SessionPlan.for_step(job, job.template.steps[0]),
        _config(tmp_path, keep_working_directory=True),
    )

    assert result.status == "SUCCESS"
    assert _lines(result, "Files") == ["hello from env"]
    assert _lines(result, "Work[0]") == ["True True"]
    assert result.working_dir is not None
    assert (result.working_dir / "embedded" / "step" / "tool.sh").read_text() == "#!/bin/sh\necho tool\n"
    assert (result.working_dir / "embedded" / "env0" / "Data").is_file()


@pytest.mark.asyncio
async def test_timeout_cancels_action_and_exit_phase_still_runs(tmp_path: Path) -> None:
    job = _job(
        [_frames_step(_python("import time; time.sleep(10)", timeout=2), frames="1")],
        environments=[
            {
                "name": "Guard",
                "variables": {"GUARD": "1"},
                "script": {"actions": {"onExit": _python("print('cleanup done')")}},
            }
        ],
    )
    started = time.monotonic()
    result = await run_session(SessionPlan.for_step(job, job.template.steps[0]), _config(tmp_path))
    elapsed = time.monotonic() - started

    assert elapsed < 8
    assert result.status == "FAILED"
    assert result.task_statuses == {0: "TIMEOUT"}
    assert result.tasks_failed == 1
    assert _lines(result, "Guard") == ["cleanup done"]
    exited = [e for e in result.events if isinstance(e, EnvironmentExited)]
    assert [(e.environment, e.status) for e in exited] == [("Guard", "SUCCESS")]
    assert _states(result)[-2:] == ["EXITING_ENVIRONMENTS", "ENDED_FAILED"]


@pytest.mark.asyncio
async def test_task_failure_does_not_stop_later_tasks(tmp_path: Path) -> None:
    code = "import sys; sys.exit(1 if sys.argv[1] == '2' else 0)"
    job = _job([_frames_step(_python(code, "{{Task.Param.Frame}}"))])
    result = await run_session(SessionPlan.for_step(job, job.template.steps[0]), _config(tmp_path))

    assert result.status == "FAILED"
    assert result.task_statuses == {0: "SUCCESS", 1: "FAILED", 2: "SUCCESS"}
    assert (result.tasks_succeeded, result.tasks_failed, result.tasks_not_run) == (2, 1, 0)


@pytest.mark.asyncio
async def test_failed_enter_skips_tasks_but_still_exits(tmp_path: Path) -> None:
    job = _job(
        [_frames_step(_python("print('should not run')"), frames="1-2")],
        environments=[
            {
                "name": "Broken",
                "script": {
                    "actions": {
                        "onEnter": _python("import sys; sys.exit(5)"),
                        "onExit": _python("print('exit ran')"),
                    }
                },
            }
        ],
    )
    result = await run_session(SessionPlan.for_step(job, job.template.steps[0]), _config(tmp_path))

    assert result.status == "FAILED"
    assert result.task_statuses == {0: "NOT_RUN", 1: "NOT_RUN"}
    assert "should not run" not in _lines(result)
    assert _lines(result, "Broken") == ["exit ran"]
    reasons = {e.reason for e in result.events if isinstance(e, TaskNotRun)}
    assert reasons == {"environment_enter_failed"}
    assert "READY" not in _states(result)


@pytest.mark.asyncio
async def test_setup_failure_enters_no_environment(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    job = _job(
        [_frames_step(_python("print('x')"), frames="1")],
        environments=[{"name": "E", "variables": {"A": "1"}}],
    )
    config = SessionConfig(root=blocker, base_env=dict(os.environ))
    result = await run_session(SessionPlan.for_step(job, job.template.steps[0]), config)

    assert result.status == "FAILED"
    assert result.task_statuses == {0: "NOT_RUN"}
    assert "failed to prepare working directory" in (result.error or "")
    assert not any(isinstance(e, EnvironmentEntered) for e in result.events)
    assert _states(result) == ["ENDED_FAILED"]


@pytest.mark.asyncio
async def test_cancel_stops_current_task_and_runs_exit(tmp_path: Path) -> None:
    job = _job(
        [_frames_step(_python("import time; time.sleep(10)"))],
        environments=[
            {
                "name": "Env",
                "variables": {"A": "1"},
                "script": {"actions": {"onExit": _python("print('bye')")}},
            }
        ],
    )
    session = Session(SessionPlan.for_step(job, job.template.steps[0]), _config(tmp_path))

    async def _cancel_soon() -> None:
        await asyncio.sleep(1.0)
        session.cancel()

    canceller = asyncio.create_task(_cancel_soon())
    started = time.monotonic()
    result = await session.run()
    await canceller

    assert time.monotonic() - started < 8
    assert result.status == "FAILED"
    assert result.task_statuses == {0: "CANCELED", 1: "NOT_RUN", 2: "NOT_RUN"}
    assert _lines(result, "Env") == ["bye"]
    assert {e.reason for e in result.events if isinstance(e, TaskNotRun)} == {"canceled"}


@pytest.mark.asyncio
async def test_path_mapping_rules_reach_tasks(tmp_path: Path) -> None:
    code = (
        "import json, sys; "
        "print(sys.argv[1], sys.argv[2], sys.argv[3], json.load(open(sys.argv[4]))['version'])"
    )
    job = _job(
        [
            {
                "name": "Work",
                "script": {
                    "actions": {
                        "onRun": _python(
                            code,
                            "{{Param.Scene}}",
                            "{{RawParam.Scene}}",
                            "{{Session.HasPathMappingRules}}",
                            "{{Session.PathMappingRulesFile}}",
                        )
                    }
                },
            }
        ],
        parameters=[{"name": "Scene", "type": "PATH"}],
        values={"Scene": "/mnt/shared/demo/scene.blend"},
    )
    rules = (PathMappingRule(PathFormat.POSIX, "/mnt/shared/demo", "/local/demo"),)
    config = _config(tmp_path, path_mapping_rules=rules, destination_format=PathFormat.POSIX)
    result = await run_session(SessionPlan.for_step(job, job.template.steps[0]), config)

    assert result.status == "SUCCESS", _lines(result)
    assert _lines(result, "Work[0]") == [
        "/local/demo/scene.blend /mnt/shared/demo/scene.blend true pathmapping-1.0"
    ]


@pytest.mark.asyncio
async def test_progress_and_status_directives_become_events(tmp_path: Path) -> None:
    job = _job(
        [_frames_step(_python("print('jt_progress: 50'); print('jt_status: halfway')"), frames="1")]
    )
    result = await run_session(SessionPlan.for_step(job, job.template.steps[0]), _config(tmp_path))
    progress = [e.to_dict() for e in result.events if e.kind == "ActionProgress"]
    assert [(p["progress"], p["message"]) for p in progress] == [(50.0, None), (None, "halfway")]


@pytest.mark.asyncio
async def test_session_cannot_run_twice(tmp_path: Path) -> None:
    job = _job([_frames_step(_python("pass"), frames="1")])
    session = Session(SessionPlan.for_step(job, job.template.steps[0]), _config(tmp_path))
    await session.run()
    with pytest.raises(SessionStateError):
        await session.run()


def test_session_result_events_are_serializable(tmp_path: Path) -> None:
    job = _job([_frames_step(_python("print('hi')"), frames="1")])
    result = asyncio.run(
        run_session(SessionPlan.for_step(job, job.template.steps[0]), _config(tmp_path))
    )
    payload = json.dumps([e.to_dict() for e in result.events])
    assert '"kind": "SessionEnded"' in payload


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process check")
@pytest.mark.asyncio
async def test_task_cancellation_still_exits_and_cleans_up(tmp_path: Path) -> None:
    marker = tmp_path / "exit.marker"
    pid_file = tmp_path / "child.pid"
    job = _job(
        [
            _frames_step(
                _python(
                    "import os, sys, time; "
                    "open(sys.argv[1], 'w').write(str(os.getpid())); time.sleep(30)",
                    str(pid_file),
                ),
                frames="1-2",
            )
        ],
        environments=[
            {
                "name": "Guard",
                "script": {
                    "actions": {
                        "onExit": _python("import sys; open(sys.argv[1], 'w').write('done')", str(marker))
                    }
                },
            }
        ],
    )
    seen: list[SessionEvent] = []
    config = _config(tmp_path, on_event=seen.append)
    task = asyncio.create_task(run_session(SessionPlan.for_step(job, job.template.steps[0]), config))
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            break
        await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert marker.read_text(encoding="utf-8") == "done"
    assert list((tmp_path / "sessions").glob("jt-session-*")) == []
    with pytest.raises(ProcessLookupError):
        os.kill(int(pid_file.read_text(encoding="utf-8")), 0)
    states = [e.state for e in seen if isinstance(e, SessionStateChanged)]
    assert states[-2:] == ["EXITING_ENVIRONMENTS", "ENDED_FAILED"]
    not_run = [e.task_index for e in seen if isinstance(e, TaskNotRun)]
    assert not_run == [1]
    ended = [e for e in seen if isinstance(e, SessionEnded)]
    assert len(ended) == 1
    assert (ended[0].tasks_failed, ended[0].tasks_not_run) == (1, 1)


@pytest.mark.asyncio
async def test_event_callback_error_still_exits_and_cleans_up(tmp_path: Path) -> None:
    marker = tmp_path / "exit.marker"
    job = _job(
        [_frames_step(_python("print('never')"), frames="1")],
        environments=[
            {
                "name": "Guard",
                "script": {
                    "actions": {
                        "onExit": _python("import sys; open(sys.argv[1], 'w').write('done')", str(marker))
                    }
                },
            }
        ],
    )

    def on_event(event: SessionEvent) -> None:
        if isinstance(event, TaskStarted):
            raise RuntimeError("observer broke")

    with pytest.raises(RuntimeError, match="observer broke"):
        await run_session(
            SessionPlan.for_step(job, job.template.steps[0]),
            _config(tmp_path, on_event=on_event),
        )

    assert marker.read_text(encoding="utf-8") == "done"
    assert list((tmp_path / "sessions").glob("jt-session-*")) == []
