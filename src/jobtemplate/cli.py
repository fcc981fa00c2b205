from __future__ import annotations

import asyncio
import json
import logging
import stat
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from jobtemplate.config.loader import (
    load_environment_template,
    read_document,
    validate,
    validate_environment_template,
)
from jobtemplate.config.schema import ENVIRONMENT_TEMPLATE_VERSION, EnvironmentTemplate, JobTemplate
from jobtemplate.exec.cancel import CANCEL_REQUEST_FILENAME, CancelSignal, write_cancel_request
from jobtemplate.expr.combination import count_task_runs, expand_step
from jobtemplate.job.model import Job, JobResult
from jobtemplate.job.runner import create_job, run_job
from jobtemplate.pathmap.rules import load_path_mapping
from jobtemplate.report.render_md import render_markdown
from jobtemplate.report.summarize import build_summary
from jobtemplate.session.session import SessionConfig
from jobtemplate.util.errors import JobTemplateError, PathMappingError, ValidationError
from jobtemplate.util.path_guard import has_symlink_ancestor, is_symlink_path
from jobtemplate.util.paths import write_private_file

app = typer.Typer(help="Job template validator and session runner")
console = Console()
err_console = Console(stderr=True)

EXIT_VALIDATION = 2

ParamOption = Annotated[
    list[str] | None, typer.Option("--param", "-p", help="Job parameter as NAME=VALUE")
]


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _print_diagnostics(title: str, exc: ValidationError) -> None:
    console.print(f"[red]{title}[/red]")
    for diagnostic in exc.diagnostics:
        console.print(f"  - {diagnostic}")


def _parse_params(raw: list[str] | None) -> dict[str, str]:
    values: dict[str, str] = {}
    for item in raw or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            console.print(f"[red]Invalid --param (expected NAME=VALUE):[/red] {item}")
            raise typer.Exit(EXIT_VALIDATION)
        values[name.strip()] = value
    return values


def _load_template_or_exit(path: Path) -> JobTemplate:
    try:
        return validate(read_document(path)).raise_for_errors()
    except ValidationError as exc:
        _print_diagnostics("Template validation error:", exc)
        raise typer.Exit(EXIT_VALIDATION) from exc


def _create_job_or_exit(
    template: JobTemplate,
    params: list[str] | None,
    environment_paths: list[Path] | None = None,
) -> Job:
    values = _parse_params(params)
    try:
        environments: list[EnvironmentTemplate] = [
            load_environment_template(path, template.parameter_definitions)
            for path in environment_paths or []
        ]
        return create_job(template, values, environment_templates=environments)
    except ValidationError as exc:
        _print_diagnostics("Job parameter error:", exc)
        raise typer.Exit(EXIT_VALIDATION) from exc


def _write_report(result: JobResult, report_path: Path) -> None:
    if has_symlink_ancestor(report_path.absolute()) or is_symlink_path(report_path):
        raise OSError(f"report path must not be symlink: {report_path}")
    try:
        meta = report_path.lstat()
    except FileNotFoundError:
        meta = None
    if meta is not None:
        if not stat.S_ISREG(meta.st_mode):
            raise OSError(f"report path must be regular file: {report_path}")
        report_path.unlink()
    report_path.parent.mkdir(parents=True, exist_ok=True)
    write_private_file(
        report_path,
        render_markdown(build_summary(result)) + "\n",
        root=report_path.parent,
    )


def _step_table(template: JobTemplate) -> Table:
    table = Table(title=f"Steps: {template.name}")
    table.add_column("#", justify="right")
    table.add_column("step")
    table.add_column("depends_on")
    table.add_column("environments")
    table.add_column("tasks", justify="right")
    for step in template.steps:
        table.add_row(
            str(step.index),
            step.name,
            ", ".join(step.dependencies) or "-",
            ", ".join(env.name for env in step.environments) or "-",
            str(count_task_runs(step)),
        )
    return table


@app.command()
def check(
    template_path: Annotated[Path, typer.Argument(help="Job or environment template")],
) -> None:
    """Validate a job template or an environment template."""
    try:
        document = read_document(template_path)
        if isinstance(document, dict) and (
            document.get("specificationVersion") == ENVIRONMENT_TEMPLATE_VERSION
        ):
            environment = validate_environment_template(document).environment
            console.print(f"environment template OK: [bold]{environment.name}[/bold]")
            raise typer.Exit(0)
        template = validate(document).raise_for_errors()
    except ValidationError as exc:
        _print_diagnostics("Template validation error:", exc)
        raise typer.Exit(EXIT_VALIDATION) from exc
    console.print(_step_table(template))
    console.print(f"job template OK: [bold]{template.name}[/bold]")


@app.command()
def summary(
    template_path: Annotated[Path, typer.Argument()],
    param: ParamOption = None,
    step_name: Annotated[str | None, typer.Option("--step")] = None,
    limit: Annotated[int, typer.Option("--limit", min=1)] = 50,
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    """Show the job name and the TaskRuns each step expands to."""
    template = _load_template_or_exit(template_path)
    job = _create_job_or_exit(template, param)
    steps = template.steps
    if step_name is not None:
        try:
            steps = (template.step(step_name),)
        except KeyError as exc:
            console.print(f"[red]Unknown step:[/red] {step_name}")
            raise typer.Exit(EXIT_VALIDATION) from exc

    try:
        expanded = {step.name: expand_step(step) for step in steps}
    except JobTemplateError as exc:
        console.print(f"[red]Expansion error:[/red] {exc}")
        raise typer.Exit(EXIT_VALIDATION) from exc

    if as_json:
        payload: dict[str, Any] = {
            "job": job.name,
            "steps": {
                name: [{"index": task_run.index, **task_run.values()} for task_run in runs]
                for name, runs in expanded.items()
            },
        }
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        raise typer.Exit(0)

    console.print(f"job: [bold]{job.name}[/bold]")
    for step in steps:
        runs = expanded[step.name]
        table = Table(title=f"{step.name}: {len(runs)} task(s)")
        table.add_column("#", justify="right")
        names = [d.name for d in step.parameter_space.definitions] if step.parameter_space else []
        for name in names:
            table.add_column(name)
        for task_run in runs[:limit]:
            table.add_row(
                str(task_run.index), *(str(task_run.parameters[name]) for name in names)
            )
        console.print(table)
        if len(runs) > limit:
            console.print(f"... {len(runs) - limit} more")


@app.command()
def run(
    template_path: Annotated[Path, typer.Argument()],
    param: ParamOption = None,
    environment: Annotated[
        list[Path] | None, typer.Option("--environment", "-e", help="Environment template")
    ] = None,
    path_mapping_rules: Annotated[Path | None, typer.Option("--path-mapping-rules")] = None,
    max_parallel: Annotated[int, typer.Option("--max-parallel", min=1)] = 4,
    session_root: Annotated[Path, typer.Option("--session-root")] = Path(".jobtemplate"),
    keep_sessions: Annotated[bool, typer.Option("--keep-sessions")] = False,
    report: Annotated[Path | None, typer.Option("--report")] = None,
    verbose: Annotated[int, typer.Option("--verbose", "-v", count=True)] = 0,
) -> None:
    """Run every step of a job in local sessions."""
    _configure_logging(verbose)
    template = _load_template_or_exit(template_path)
    job = _create_job_or_exit(template, param, environment)

    rules = ()
    if path_mapping_rules is not None:
        try:
            rules = tuple(load_path_mapping(path_mapping_rules))
        except PathMappingError as exc:
            console.print(f"[red]Path mapping error:[/red] {exc}")
            raise typer.Exit(EXIT_VALIDATION) from exc

    try:
        session_root.mkdir(parents=True, exist_ok=True)
        request_file = session_root / CANCEL_REQUEST_FILENAME
        request_file.unlink(missing_ok=True)
    except OSError as exc:
        console.print(f"[red]Invalid session root:[/red] {session_root}: {exc}")
        raise typer.Exit(EXIT_VALIDATION) from exc

    config = SessionConfig(
        root=session_root.resolve(),
        path_mapping_rules=rules,
        keep_working_directory=keep_sessions,
    )
    result = asyncio.run(
        run_job(
            job,
            config,
            max_parallel=max_parallel,
            cancel=CancelSignal(request_file=request_file),
        )
    )

    table = Table(title=f"Job: {job.name}")
    table.add_column("step")
    table.add_column("status")
    table.add_column("succeeded", justify="right")
    table.add_column("failed", justify="right")
    table.add_column("not_run", justify="right")
    for step in result.steps.values():
        table.add_row(
            step.name,
            step.status,
            str(step.tasks_succeeded),
            str(step.tasks_failed),
            str(step.tasks_not_run),
        )
    console.print(table)
    console.print(f"status: [bold]{result.status}[/bold]")
    if report is not None:
        try:
            _write_report(result, report)
            console.print(f"report: {report}")
        except OSError as exc:
            console.print(f"[yellow]Warning:[/yellow] failed to write report: {exc}")
    raise typer.Exit(result.exit_code)


@app.command()
def cancel(
    session_root: Annotated[Path, typer.Option("--session-root")] = Path(".jobtemplate"),
) -> None:
    """Ask a job running under ``--session-root`` to cancel."""
    if not session_root.is_dir():
        console.print(f"[red]Session root not found:[/red] {session_root}")
        raise typer.Exit(EXIT_VALIDATION)
    try:
        write_cancel_request(session_root)
    except OSError as exc:
        console.print(f"[red]Failed to request cancel:[/red] {exc}")
        raise typer.Exit(EXIT_VALIDATION) from exc
    console.print(f"cancel requested: [bold]{session_root}[/bold]")


if __name__ == "__main__":
    app()
