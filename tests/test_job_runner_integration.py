from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from typing import Any

import pytest

from jobtemplate.config.loader import check_template, validate_environment_template
from jobtemplate.config.schema import ENVIRONMENT_TEMPLATE_VERSION, JOB_TEMPLATE_VERSION
from jobtemplate.expr.combination import expand_step
from jobtemplate.job.model import Job
from jobtemplate.job.runner import JobRunner, create_job, partition_task_runs, run_job
from jobtemplate.session.session import SessionConfig
from jobtemplate.util.errors import ValidationError

APPEND = "import sys; open(sys.argv[1], 'a').write(sys.argv[2] + '\\n')"


def _python(code: str, *args: str) -> dict[str, Any]:
    return {"command": sys.executable, "args": ["-c", code, *args]}


def _step(
    name: str,
    on_run: dict[str, Any],
    *,
    frames: str | None = None,
    depends_on: list[str] | None = None,
) -> dict[str, Any]:
    step: dict[str, Any] = {"name": name, "script": {"actions": {"onRun": on_run}}}
    if frames is not None:
        step["parameterSpace"] = {
            "taskParameterDefinitions": [{"name": "Frame", "type": "INT", "range": frames}]
        }
    if depends_on:
        step["dependencies"] = [{"dependsOn": dep} for dep in depends_on]
    return step


def _job(steps: list[dict[str, Any]], log: Path | None = None) -> Job:
    document: dict[str, Any] = {
        "specificationVersion": JOB_TEMPLATE_VERSION,
        "name": "runner-test",
        "steps": steps,
    }
    values: dict[str, object] = {}
    if log is not None:
        document["parameterDefinitions"] = [{"name": "Log", "type": "STRING"}]
        values["Log"] = str(log)
    return create_job(check_template(document), values)


def _config(tmp_path: Path) -> SessionConfig:
    return SessionConfig(root=tmp_path / "sessions", base_env=dict(os.environ))


@pytest.mark.asyncio
async def test_dependent_step_starts_after_dependency_finishes(tmp_path: Path) -> None:
    log = tmp_path / "order.log"
    job = _job(
        [
            _step("Render", _python(APPEND, "{{Param.Log}}", "render-{{Task.Param.Frame}}"), frames="1-3"),
            _step("Encode", _python(APPEND, "{{Param.Log}}", "encode"), depends_on=["Render"]),
        ],
        log=log,
    )
    result = await run_job(job, _config(tmp_path), max_parallel=4)

    assert result.status == "SUCCESS"
    assert result.exit_code == 0
    lines = log.read_text(encoding="utf-8").splitlines()
    assert sorted(lines[:3]) == ["render-1", "render-2", "render-3"]
    assert lines[3:] == ["encode"]
    render = result.steps["Render"]
    assert (render.tasks_total, render.tasks_succeeded, render.sessions) == (3, 3, 3)
    assert result.steps["Encode"].status == "SUCCESS"


@pytest.mark.asyncio
async def test_failed_step_blocks_dependents_only(tmp_path: Path) -> None:
    job = _job(
        [
            _step("Broken", _python("import sys; print('boom'); sys.exit(3)")),
            _step("After", _python("pass"), depends_on=["Broken"]),
            _step("Independent", _python("pass")),
        ]
    )
    result = await run_job(job, _config(tmp_path))

    assert result.status == "FAILED"
    assert result.exit_code == 1
    broken = result.steps["Broken"]
    assert broken.status == "FAILED"
    assert broken.tasks_failed == 1
    assert broken.failures[0]["subject"] == "Broken[0]"
    assert broken.failures[0]["output_tail"] == ["boom"]
    after = result.steps["After"]
    assert after.status == "NOT_RUNNABLE"
    assert after.tasks_not_run == 1
    assert "Broken" in (after.reason or "")
    assert result.steps["Independent"].status == "SUCCESS"


@pytest.mark.asyncio
async def test_cancel_marks_running_and_pending_steps_canceled(tmp_path: Path) -> None:
    job = _job(
        [
            _step("Slow", _python("import time; time.sleep(10)"), frames="1-2"),
            _step("Later", _python("pass"), depends_on=["Slow"]),
        ]
    )
    runner = JobRunner(job, _config(tmp_path), max_parallel=1)

    async def _cancel_soon() -> None:
        await asyncio.sleep(1.0)
        runner.cancel()

    canceller = asyncio.create_task(_cancel_soon())
    result = await runner.run()
    await canceller

    assert result.status == "CANCELED"
    assert result.exit_code == 4
    assert result.steps["Slow"].status == "CANCELED"
    assert result.steps["Slow"].tasks_succeeded == 0
    later = result.steps["Later"]
    assert later.status == "CANCELED"
    assert later.reason == "job_canceled"


@pytest.mark.asyncio
async def test_task_overrides_replace_expansion(tmp_path: Path) -> None:
    log = tmp_path / "frames.log"
    job = _job(
        [_step("Render", _python(APPEND, "{{Param.Log}}", "{{Task.Param.Frame}}"), frames="1-100")],
        log=log,
    )
    result = await run_job(
        job, _config(tmp_path), max_parallel=1, task_overrides={"Render": [{"Frame": 7}, {"Frame": "9"}]}
    )

    assert result.status == "SUCCESS"
    assert result.steps["Render"].tasks_total == 2
    assert log.read_text(encoding="utf-8").splitlines() == ["7", "9"]


def test_task_overrides_are_validated_up_front(tmp_path: Path) -> None:
    job = _job([_step("Render", _python("pass"), frames="1-3")])
    with pytest.raises(ValidationError):
        JobRunner(job, _config(tmp_path), task_overrides={"Missing": [{"Frame": 1}]})
    with pytest.raises(ValidationError):
        JobRunner(job, _config(tmp_path), task_overrides={"Render": [{"Other": 1}]})
    with pytest.raises(ValueError):
        JobRunner(job, _config(tmp_path), max_parallel=0)


def test_partition_task_runs_deals_round_robin() -> None:
    job = _job([_step("Render", _python("pass"), frames="1-5")])
    runs = expand_step(job.template.steps[0])

    groups = partition_task_runs(runs, 2)
    assert [[run.index for run in group] for group in groups] == [[0, 2, 4], [1, 3]]
    assert len(partition_task_runs(runs, 10)) == 5
    assert partition_task_runs([], 3) == []


def test_create_job_resolves_name_and_prepends_environment_templates() -> None:
    template = check_template(
        {
            "specificationVersion": JOB_TEMPLATE_VERSION,
            "name": "render {{Param.Shot}}",
            "parameterDefinitions": [{"name": "Shot", "type": "STRING"}],
            "jobEnvironments": [{"name": "Own", "variables": {"A": "1"}}],
            "steps": [_step("Render", _python("pass"))],
        }
    )
    external = validate_environment_template(
        {
            "specificationVersion": ENVIRONMENT_TEMPLATE_VERSION,
            "parameterDefinitions": [{"name": "Queue", "type": "STRING", "default": "main"}],
            "environment": {"name": "Queue", "variables": {"QUEUE": "{{Param.Queue}}"}},
        }
    )
    job = create_job(template, {"Shot": "sh010"}, environment_templates=[external])

    assert job.name == "render sh010"
    assert [env.name for env in job.template.environments] == ["Queue", "Own"]
    assert job.parameters["Queue"].value == "main"


def test_create_job_rejects_unknown_and_missing_parameters() -> None:
    template = check_template(
        {
            "specificationVersion": JOB_TEMPLATE_VERSION,
            "name": "job",
            "parameterDefinitions": [{"name": "Shot", "type": "STRING"}],
            "steps": [_step("Render", _python("pass"))],
        }
    )
    with pytest.raises(ValidationError) as exc_info:
        create_job(template, {"Extra": "x"})
    text = str(exc_info.value)
    assert "parameters.Extra" in text
    assert "parameters.Shot" in text


@pytest.mark.asyncio
async def test_steps_run_by_dependency_not_declaration_order(tmp_path: Path) -> None:
    log = tmp_path / "order.log"
    job = _job(
        [
            _step("Publish", _python(APPEND, "{{Param.Log}}", "publish"), depends_on=["Encode"]),
            _step("Encode", _python(APPEND, "{{Param.Log}}", "encode"), depends_on=["Render"]),
            _step("Render", _python(APPEND, "{{Param.Log}}", "render")),
        ],
        log=log,
    )
    assert [step.dependency_indices for step in job.template.steps] == [(1,), (2,), ()]

    result = await run_job(job, _config(tmp_path))

    assert result.status == "SUCCESS"
    assert log.read_text(encoding="utf-8").splitlines() == ["render", "encode", "publish"]
    assert list(result.steps) == ["Publish", "Encode", "Render"]
