"""Reference scopes and the symbol tables that satisfy them."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path

from jobtemplate.config.schema import (
    EmbeddedFile,
    ParameterDefinition,
    ParameterType,
    TaskParameterDefinition,
)
from jobtemplate.expr.combination import TaskRun, format_value
from jobtemplate.format.resolver import (
    ENVIRONMENT_SCOPE,
    JOB_SCOPE,
    TASK_SCOPE,
    ScopeSpec,
    SymbolTable,
)
from jobtemplate.job.model import JobParameter
from jobtemplate.pathmap.rules import PathFormat, PathMappingRule, translate

SESSION_NAMES = frozenset(
    {
        "Session.WorkingDirectory",
        "Session.HasPathMappingRules",
        "Session.PathMappingRulesFile",
    }
)


def _param_names(definitions: Iterable[ParameterDefinition]) -> set[str]:
    names: set[str] = set()
    for definition in definitions:
        names.add(f"Param.{definition.name}")
        names.add(f"RawParam.{definition.name}")
    return names


def job_scope(definitions: Sequence[ParameterDefinition]) -> ScopeSpec:
    return ScopeSpec(
        scope=JOB_SCOPE,
        names=frozenset(_param_names(definitions)),
        namespaces=frozenset({"Param", "RawParam"}),
    )


def environment_scope(
    definitions: Sequence[ParameterDefinition], files: Sequence[EmbeddedFile]
) -> ScopeSpec:
    names = _param_names(definitions) | SESSION_NAMES
    names |= {f"Env.File.{f.name}" for f in files}
    return ScopeSpec(
        scope=ENVIRONMENT_SCOPE,
        names=frozenset(names),
        namespaces=frozenset({"Param", "RawParam", "Session", "Env.File"}),
    )


def task_scope(
    definitions: Sequence[ParameterDefinition],
    task_definitions: Sequence[TaskParameterDefinition],
    files: Sequence[EmbeddedFile],
) -> ScopeSpec:
    names = _param_names(definitions) | SESSION_NAMES
    for definition in task_definitions:
        names.add(f"Task.Param.{definition.name}")
        names.add(f"Task.RawParam.{definition.name}")
    names |= {f"Task.File.{f.name}" for f in files}
    return ScopeSpec(
        scope=TASK_SCOPE,
        names=frozenset(names),
        namespaces=frozenset(
            {"Param", "RawParam", "Session", "Task.Param", "Task.RawParam", "Task.File"}
        ),
    )


def _mapped(
    param_type: ParameterType,
    value: str,
    rules: Sequence[PathMappingRule],
    destination_format: PathFormat | None,
) -> str:
    if param_type is ParameterType.PATH and rules:
        return translate(value, rules, destination_format=destination_format)
    return value


def job_symbols(
    parameters: Mapping[str, JobParameter],
    rules: Sequence[PathMappingRule] = (),
    *,
    destination_format: PathFormat | None = None,
) -> SymbolTable:
    values: dict[str, str] = {}
    for name, parameter in parameters.items():
        raw = format_value(parameter.value)
        values[f"RawParam.{name}"] = raw
        values[f"Param.{name}"] = _mapped(parameter.type, raw, rules, destination_format)
    return SymbolTable(values)


def session_symbols(working_dir: Path, rules_file: Path | None) -> dict[str, str]:
    return {
        "Session.WorkingDirectory": str(working_dir),
        "Session.HasPathMappingRules": "true" if rules_file is not None else "false",
        "Session.PathMappingRulesFile": "" if rules_file is None else str(rules_file),
    }


def file_symbols(namespace: str, files: Mapping[str, Path]) -> dict[str, str]:
    return {f"{namespace}.{name}": str(path) for name, path in files.items()}


def task_symbols(
    task_run: TaskRun,
    rules: Sequence[PathMappingRule] = (),
    *,
    destination_format: PathFormat | None = None,
) -> dict[str, str]:
    values: dict[str, str] = {}
    for name, parameter in task_run.parameters.items():
        raw = str(parameter)
        values[f"Task.RawParam.{name}"] = raw
        values[f"Task.Param.{name}"] = _mapped(parameter.type, raw, rules, destination_format)
    return values
