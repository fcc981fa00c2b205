from __future__ import annotations

from typing import Any


def render_markdown(summary: dict[str, Any]) -> str:
    job = summary["job"]
    steps = summary["steps"]
    problems = summary["problems"]

    lines: list[str] = []
    lines.append("# Job Report")
    lines.append("")
    lines.append("## Job Overview")
    lines.append("")
    lines.append(f"- name: `{job['name']}`")
    lines.append(f"- status: **{job['status']}**")
    lines.append(f"- exit_code: {job['exit_code']}")
    lines.append(f"- started: {job['started_at']}")
    lines.append(f"- ended: {job['ended_at']}")
    lines.append(f"- duration_sec: {job['duration_sec']}")
    lines.append("")
    lines.append("## Step Results")
    lines.append("")
    lines.append("| step | status | tasks | succeeded | failed | not_run | sessions | duration_sec |")
    lines.append("|---|---|---:|---:|---:|---:|---:|---:|")
    for row in steps:
        lines.append(
            f"| {row['name']} | {row['status']} | {row['tasks_total']} | "
            f"{row['tasks_succeeded']} | {row['tasks_failed']} | {row['tasks_not_run']} | "
            f"{row['sessions']} | {row['duration_sec']} |"
        )
    lines.append("")
    lines.append("## Failed / Canceled / Not Runnable Details")
    lines.append("")
    if not problems:
        lines.append("No failed/canceled/not runnable steps.")
        lines.append("")
    for row in problems:
        lines.append(f"### {row['name']} ({row['status']})")
        if row["reason"]:
            lines.append(f"- reason: `{row['reason']}`")
        for failure in row["failures"]:
            lines.append(f"- `{failure['subject']}`: {failure['status']}")
            if failure["message"]:
                lines.append(f"  - {failure['message']}")
            lines.append("```")
            lines.extend(failure["output_tail"] or ["(no output)"])
            lines.append("```")
        lines.append("")
    return "\n".join(lines)
