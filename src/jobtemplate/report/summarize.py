from __future__ import annotations

from jobtemplate.job.model import JobResult


def build_summary(result: JobResult) -> dict[str, object]:
    step_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []

    for name, step in result.steps.items():
        step_rows.append(
            {
                "name": name,
                "status": step.status,
                "tasks_total": step.tasks_total,
                "tasks_succeeded": step.tasks_succeeded,
                "tasks_failed": step.tasks_failed,
                "tasks_not_run": step.tasks_not_run,
                "sessions": step.sessions,
                "duration_sec": step.duration_sec,
            }
        )
        if step.status in {"FAILED", "CANCELED", "NOT_RUNNABLE"}:
            problem_rows.append(
                {
                    "name": name,
                    "status": step.status,
                    "reason": step.reason,
                    "failures": list(step.failures),
                }
            )

    return {
        "job": {
            "name": result.name,
            "status": result.status,
            "exit_code": result.exit_code,
            "started_at": result.started_at,
            "ended_at": result.ended_at,
            "duration_sec": result.duration_sec,
        },
        "steps": step_rows,
        "problems": problem_rows,
    }
