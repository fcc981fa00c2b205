from __future__ import annotations

import errno
import os
import re
import stat
from collections.abc import Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from jobtemplate.config import params
from jobtemplate.config.schema import (
    ENVIRONMENT_TEMPLATE_VERSION,
    JOB_TEMPLATE_VERSION,
    Action,
    Cancelation,
    CancelationMode,
    EmbeddedFile,
    Environment,
    EnvironmentScript,
    EnvironmentTemplate,
    JobTemplate,
    ParameterDefinition,
    ParameterSpace,
    ParameterType,
    ParameterValue,
    Step,
    StepScript,
    TaskParameterDefinition,
)
from jobtemplate.dag.build import build_adjacency
from jobtemplate.dag.validate import assert_acyclic
from jobtemplate.expr.combination import (
    Association,
    CombinationNode,
    default_combination,
    expand_definition,
    parse_combination,
)
from jobtemplate.expr.range import RangeExpr, parse_range_expr
from jobtemplate.format.resolver import FormatString, ScopeSpec
from jobtemplate.format.symbols import environment_scope, job_scope, task_scope
from jobtemplate.util.errors import (
    AssociationCardinalityError,
    CyclicDependencyError,
    Diagnostic,
    FormatStringError,
    RangeExpansionError,
    ValidationError,
)
from jobtemplate.util.path_guard import has_symlink_ancestor

_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FILENAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")
_NAME_MAX_LEN = 64
_MAX_TASK_PARAMETERS = 16

_JOB_KEYS = {
    "specificationVersion",
    "name",
    "description",
    "parameterDefinitions",
    "steps",
    "jobEnvironments",
    "environments",
}
_PARAMETER_KEYS = params.COMMON_KEYS | {
    "dataFlow",
    "objectType",
    "minLength",
    "maxLength",
    "minValue",
    "maxValue",
    "allowedValues",
}
_ENV_TEMPLATE_KEYS = {"specificationVersion", "parameterDefinitions", "environment"}
_STEP_KEYS = {
    "name",
    "description",
    "dependencies",
    "parameterSpace",
    "script",
    "stepEnvironments",
}
_DEPENDENCY_KEYS = {"dependsOn"}
_PARAMETER_SPACE_KEYS = {"taskParameterDefinitions", "combination"}
_TASK_PARAMETER_KEYS = {"name", "type", "range"}
_STEP_SCRIPT_KEYS = {"actions", "embeddedFiles"}
_STEP_ACTION_KEYS = {"onRun"}
_ENV_KEYS = {"name", "description", "script", "variables"}
_ENV_SCRIPT_KEYS = {"actions", "embeddedFiles"}
_ENV_ACTION_KEYS = {"onEnter", "onExit"}
_ACTION_KEYS = {"command", "args", "timeout", "cancelation"}
_CANCELATION_KEYS = {"mode", "notifyPeriodInSeconds"}
_EMBEDDED_FILE_KEYS = {"name", "type", "filename", "runnable", "data"}


@dataclass(slots=True)
class ValidationResult:
    ok: bool
    diagnostics: list[Diagnostic] = field(default_factory=list)
    template: JobTemplate | None = None

    def raise_for_errors(self) -> JobTemplate:
        if not self.ok or self.template is None:
            raise ValidationError(self.diagnostics)
        return self.template


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


class _Validator:
    """Collects diagnostics while building the immutable template graph.

    Each ``_parse_*`` method returns ``None`` when its subtree is unusable; the
    caller keeps going so that one pass reports every problem it can.
    """

    def __init__(self) -> None:
        self.diagnostics: list[Diagnostic] = []

    def report(self, location: str, message: str) -> None:
        self.diagnostics.append(Diagnostic(location, message))

    def _mapping(
        self,
        raw: Any,
        where: str,
        allowed: set[str],
        required: Sequence[str] = (),
    ) -> dict[str, Any] | None:
        if not isinstance(raw, dict):
            self.report(where, "must be a mapping")
            return None
        if any(not isinstance(key, str) for key in raw):
            self.report(where, "keys must be strings")
            return None
        unknown = set(raw) - allowed
        if unknown:
            self.report(where, f"has unknown fields: {sorted(unknown)}")
        ok = True
        for key in required:
            if key not in raw:
                self.report(where, f"missing required field '{key}'")
                ok = False
        return raw if ok else None

    def _list(self, raw: Any, where: str, *, non_empty: bool = True) -> list[Any] | None:
        if not isinstance(raw, list):
            self.report(where, "must be a list")
            return None
        if non_empty and not raw:
            self.report(where, "must not be empty")
            return None
        return raw

    def _name(self, raw: Any, where: str, *, identifier: bool) -> str | None:
        if not _is_non_blank_str(raw):
            self.report(where, "must be a non-empty string")
            return None
        if len(raw) > _NAME_MAX_LEN:
            self.report(where, f"must be <= {_NAME_MAX_LEN} characters")
            return None
        if identifier and _IDENTIFIER_PATTERN.fullmatch(raw) is None:
            self.report(where, "must match ^[A-Za-z_][A-Za-z0-9_]*$")
            return None
        return raw

    def _unique(self, names: Sequence[str | None], where: str, what: str) -> None:
        seen: set[str] = set()
        for name in names:
            if name is None:
                continue
            if name in seen:
                self.report(where, f"duplicate {what} name '{name}'")
            seen.add(name)

    def _optional_description(self, raw: dict[str, Any], where: str) -> str | None:
        value = raw.get("description")
        if value is not None and not isinstance(value, str):
            self.report(f"{where}.description", "must be a string")
            return None
        return value

    def _format(self, raw: Any, where: str, scope: ScopeSpec) -> FormatString | None:
        if not isinstance(raw, str):
            self.report(where, "must be a string")
            return None
        try:
            fmt = FormatString(raw)
        except FormatStringError as exc:
            self.report(where, str(exc))
            return None
        for placeholder in fmt.placeholders:
            if not scope.check(placeholder.expression):
                self.report(
                    where,
                    f"unresolved reference '{placeholder.text}': "
                    f"{scope.describe(placeholder.expression)}",
                )
        return fmt

    # parameters

    def parse_parameter_definitions(self, raw: Any, where: str) -> list[ParameterDefinition]:
        if raw is None:
            return []
        items = self._list(raw, where, non_empty=False)
        if items is None:
            return []
        definitions: list[ParameterDefinition] = []
        names: list[str | None] = []
        for index, item in enumerate(items):
            definition = self._parse_parameter(item, f"{where}[{index}]")
            names.append(definition.name if definition else None)
            if definition is not None:
                definitions.append(definition)
        self._unique(names, where, "parameter")
        return definitions

    def _parse_parameter_type(self, raw: Any, where: str) -> ParameterType | None:
        try:
            return ParameterType(raw)
        except ValueError:
            self.report(where, f"must be one of {[t.value for t in ParameterType]}")
            return None

    def _parse_parameter(self, raw: Any, where: str) -> ParameterDefinition | None:
        mapping = self._mapping(raw, where, _PARAMETER_KEYS, ("name", "type"))
        if mapping is None:
            return None
        name = self._name(mapping["name"], f"{where}.name", identifier=True)
        param_type = self._parse_parameter_type(mapping["type"], f"{where}.type")
        if name is None or param_type is None:
            return None
        unexpected = set(mapping) - params.allowed_keys(param_type)
        if unexpected:
            self.report(where, f"fields {sorted(unexpected)} do not apply to {param_type.value}")
        constraints = params.parse_constraints(param_type, mapping, where, self.report)
        default = params.parse_default(param_type, constraints, mapping, where, self.report)
        definition = ParameterDefinition(
            name=name,
            type=param_type,
            constraints=constraints,
            default=default,
            description=self._optional_description(mapping, where),
        )
        params.check_allowed_values(definition, where, self.report)
        return definition

    # scripts

    def _parse_embedded_files(self, raw: Any, where: str) -> list[EmbeddedFile]:
        if raw is None:
            return []
        items = self._list(raw, where)
        if items is None:
            return []
        files: list[EmbeddedFile] = []
        for index, item in enumerate(items):
            embedded = self._parse_embedded_file(item, f"{where}[{index}]")
            if embedded is not None:
                files.append(embedded)
        self._unique([f.name for f in files], where, "embedded file")
        filenames = [f.filename for f in files]
        if len(set(filenames)) != len(filenames):
            self.report(where, "embedded file filenames must be unique")
        return files

    def _parse_embedded_file(self, raw: Any, where: str) -> EmbeddedFile | None:
        mapping = self._mapping(raw, where, _EMBEDDED_FILE_KEYS, ("name", "type", "data"))
        if mapping is None:
            return None
        name = self._name(mapping["name"], f"{where}.name", identifier=True)
        if mapping["type"] != "TEXT":
            self.report(f"{where}.type", "must be TEXT")
        data = mapping["data"]
        if not isinstance(data, str):
            self.report(f"{where}.data", "must be a string")
        filename = mapping.get("filename", name)
        if filename is not None and (
            not isinstance(filename, str)
            or _FILENAME_PATTERN.fullmatch(filename) is None
            or len(filename) > 255
        ):
            self.report(f"{where}.filename", "must be a plain file name without separators")
            filename = None
        runnable = mapping.get("runnable", False)
        if not isinstance(runnable, bool):
            self.report(f"{where}.runnable", "must be a boolean")
            runnable = False
        if name is None or filename is None or not isinstance(data, str):
            return None
        return EmbeddedFile(name=name, filename=filename, data=data, runnable=runnable)

    def _parse_cancelation(self, raw: Any, where: str) -> Cancelation:
        mapping = self._mapping(raw, where, _CANCELATION_KEYS, ("mode",))
        if mapping is None:
            return Cancelation()
        try:
            mode = CancelationMode(mapping["mode"])
        except ValueError:
            self.report(f"{where}.mode", f"must be one of {[m.value for m in CancelationMode]}")
            return Cancelation()
        period = mapping.get("notifyPeriodInSeconds")
        if mode is CancelationMode.TERMINATE:
            if period is not None:
                self.report(f"{where}.notifyPeriodInSeconds", "only applies to NOTIFY_THEN_TERMINATE")
            return Cancelation(mode)
        if period is None:
            period = 120
        if not _is_int(period) or period <= 0:
            self.report(f"{where}.notifyPeriodInSeconds", "must be an integer > 0")
            return Cancelation(mode, 120)
        return Cancelation(mode, period)

    def _parse_action(self, raw: Any, where: str, scope: ScopeSpec) -> Action | None:
        mapping = self._mapping(raw, where, _ACTION_KEYS, ("command",))
        if mapping is None:
            return None
        command = self._format(mapping["command"], f"{where}.command", scope)
        if command is not None and not command.text.strip():
            self.report(f"{where}.command", "must not be empty")
            command = None
        args: list[FormatString] = []
        raw_args = mapping.get("args", [])
        items = self._list(raw_args, f"{where}.args", non_empty=False)
        for index, item in enumerate(items or []):
            arg = self._format(item, f"{where}.args[{index}]", scope)
            if arg is not None:
                args.append(arg)
        timeout = mapping.get("timeout")
        if timeout is not None and (not _is_int(timeout) or timeout <= 0):
            self.report(f"{where}.timeout", "must be a positive integer number of seconds")
            timeout = None
        cancelation = Cancelation()
        if "cancelation" in mapping:
            cancelation = self._parse_cancelation(mapping["cancelation"], f"{where}.cancelation")
        if command is None:
            return None
        return Action(command=command, args=tuple(args), timeout=timeout, cancelation=cancelation)

    # environments

    def parse_environments(
        self, raw: Any, where: str, definitions: Sequence[ParameterDefinition]
    ) -> list[Environment]:
        if raw is None:
            return []
        items = self._list(raw, where)
        if items is None:
            return []
        environments: list[Environment] = []
        for index, item in enumerate(items):
            environment = self.parse_environment(item, f"{where}[{index}]", definitions)
            if environment is not None:
                environments.append(environment)
        self._unique([e.name for e in environments], where, "environment")
        return environments

    def parse_environment(
        self, raw: Any, where: str, definitions: Sequence[ParameterDefinition]
    ) -> Environment | None:
        mapping = self._mapping(raw, where, _ENV_KEYS, ("name",))
        if mapping is None:
            return None
        name = self._name(mapping["name"], f"{where}.name", identifier=False)
        if "script" not in mapping and "variables" not in mapping:
            self.report(where, "must define a script or variables")
        script: EnvironmentScript | None = None
        files: list[EmbeddedFile] = []
        raw_script = mapping.get("script")
        script_map = None
        if raw_script is not None:
            script_map = self._mapping(raw_script, f"{where}.script", _ENV_SCRIPT_KEYS, ("actions",))
        if script_map is not None:
            files = self._parse_embedded_files(
                script_map.get("embeddedFiles"), f"{where}.script.embeddedFiles"
            )
        scope = environment_scope(definitions, files)
        if script_map is not None:
            actions = self._mapping(
                script_map["actions"], f"{where}.script.actions", _ENV_ACTION_KEYS
            )
            on_enter = on_exit = None
            if actions is not None:
                if "onEnter" not in actions and "onExit" not in actions:
                    self.report(f"{where}.script.actions", "must define onEnter or onExit")
                if "onEnter" in actions:
                    on_enter = self._parse_action(
                        actions["onEnter"], f"{where}.script.actions.onEnter", scope
                    )
                if "onExit" in actions:
                    on_exit = self._parse_action(
                        actions["onExit"], f"{where}.script.actions.onExit", scope
                    )
            script = EnvironmentScript(on_enter=on_enter, on_exit=on_exit, embedded_files=tuple(files))
        variables: list[tuple[str, FormatString]] = []
        raw_variables = mapping.get("variables")
        if raw_variables is not None:
            if not isinstance(raw_variables, dict) or not raw_variables:
                self.report(f"{where}.variables", "must be a non-empty mapping")
            else:
                for var_name, var_value in raw_variables.items():
                    var_where = f"{where}.variables.{var_name}"
                    if not _is_non_blank_str(var_name) or "=" in var_name:
                        self.report(var_where, "variable name must be non-empty without '='")
                        continue
                    fmt = self._format(var_value, var_where, scope)
                    if fmt is not None:
                        variables.append((var_name, fmt))
        if name is None:
            return None
        return Environment(
            name=name,
            script=script,
            variables=tuple(variables),
            description=self._optional_description(mapping, where),
        )

    # steps

    def _parse_range(
        self, raw: Any, where: str, param_type: ParameterType
    ) -> tuple[tuple[ParameterValue, ...] | None, RangeExpr | None]:
        if isinstance(raw, str):
            if param_type is not ParameterType.INT:
                self.report(where, "range expressions are only supported for INT parameters")
                return None, None
            try:
                return None, parse_range_expr(raw)
            except RangeExpansionError as exc:
                self.report(where, str(exc))
                return None, None
        items = self._list(raw, where)
        if items is None:
            return None, None
        values: list[ParameterValue] = []
        for index, item in enumerate(items):
            try:
                values.append(params.coerce_value(param_type, item))
            except ValueError as exc:
                self.report(f"{where}[{index}]", f"must be {param_type.value}: {exc}")
                return None, None
        return tuple(values), None

    def _parse_task_parameter(self, raw: Any, where: str) -> TaskParameterDefinition | None:
        mapping = self._mapping(raw, where, _TASK_PARAMETER_KEYS, ("name", "type", "range"))
        if mapping is None:
            return None
        name = self._name(mapping["name"], f"{where}.name", identifier=True)
        param_type = self._parse_parameter_type(mapping["type"], f"{where}.type")
        if param_type is None:
            return None
        values, range_expr = self._parse_range(mapping["range"], f"{where}.range", param_type)
        if name is None or (values is None and range_expr is None):
            return None
        return TaskParameterDefinition(
            name=name, type=param_type, values=values, range_expr=range_expr
        )

    def _check_combination(
        self,
        node: CombinationNode,
        definitions: Sequence[TaskParameterDefinition],
        where: str,
    ) -> bool:
        declared = [d.name for d in definitions]
        used = node.names()
        ok = True
        for name in sorted(set(used) - set(declared)):
            self.report(where, f"references unknown task parameter '{name}'")
            ok = False
        for name in sorted({n for n in used if used.count(n) > 1}):
            self.report(where, f"uses task parameter '{name}' more than once")
            ok = False
        for name in declared:
            if name not in used:
                self.report(where, f"does not use task parameter '{name}'")
                ok = False
        return ok

    def _check_associations(
        self,
        node: CombinationNode,
        space: dict[str, list[ParameterValue]],
        where: str,
    ) -> None:
        if isinstance(node, Association):
            try:
                node.check(space)
            except AssociationCardinalityError as exc:
                self.report(where, str(exc))
        for child in getattr(node, "children", ()):
            self._check_associations(child, space, where)

    def _parse_parameter_space(self, raw: Any, where: str) -> ParameterSpace | None:
        mapping = self._mapping(raw, where, _PARAMETER_SPACE_KEYS, ("taskParameterDefinitions",))
        if mapping is None:
            return None
        items = self._list(mapping["taskParameterDefinitions"], f"{where}.taskParameterDefinitions")
        if items is None:
            return None
        if len(items) > _MAX_TASK_PARAMETERS:
            self.report(
                f"{where}.taskParameterDefinitions",
                f"must have at most {_MAX_TASK_PARAMETERS} parameters",
            )
        definitions: list[TaskParameterDefinition] = []
        for index, item in enumerate(items):
            definition = self._parse_task_parameter(
                item, f"{where}.taskParameterDefinitions[{index}]"
            )
            if definition is not None:
                definitions.append(definition)
        self._unique([d.name for d in definitions], f"{where}.taskParameterDefinitions", "task parameter")
        if len(definitions) != len(items):
            return None
        combination_text = mapping.get("combination")
        if combination_text is None:
            node = default_combination([d.name for d in definitions])
        else:
            if not isinstance(combination_text, str):
                self.report(f"{where}.combination", "must be a string")
                return None
            try:
                node = parse_combination(combination_text)
            except ValidationError as exc:
                self.report(f"{where}.combination", str(exc))
                return None
            if not self._check_combination(node, definitions, f"{where}.combination"):
                return None
        space = {d.name: expand_definition(d) for d in definitions}
        before = len(self.diagnostics)
        self._check_associations(node, space, f"{where}.combination")
        if len(self.diagnostics) != before:
            return None
        return ParameterSpace(
            definitions=tuple(definitions), combination=node, combination_text=combination_text
        )

    def _parse_dependencies(self, raw: Any, where: str) -> list[str]:
        if raw is None:
            return []
        items = self._list(raw, where)
        if items is None:
            return []
        names: list[str] = []
        for index, item in enumerate(items):
            mapping = self._mapping(item, f"{where}[{index}]", _DEPENDENCY_KEYS, ("dependsOn",))
            if mapping is None:
                continue
            name = self._name(mapping["dependsOn"], f"{where}[{index}].dependsOn", identifier=False)
            if name is not None:
                names.append(name)
        return names

    def parse_step(
        self,
        raw: Any,
        index: int,
        definitions: Sequence[ParameterDefinition],
        job_environments: Sequence[Environment],
    ) -> Step | None:
        where = f"steps[{index}]"
        mapping = self._mapping(raw, where, _STEP_KEYS, ("name", "script"))
        if mapping is None:
            return None
        name = self._name(mapping["name"], f"{where}.name", identifier=False)
        dependencies = self._parse_dependencies(mapping.get("dependencies"), f"{where}.dependencies")
        space = None
        space_ok = True
        if "parameterSpace" in mapping:
            space = self._parse_parameter_space(mapping["parameterSpace"], f"{where}.parameterSpace")
            space_ok = space is not None
        environments = self.parse_environments(
            mapping.get("stepEnvironments"), f"{where}.stepEnvironments", definitions
        )
        job_env_names = {e.name for e in job_environments}
        for env in environments:
            if env.name in job_env_names:
                self.report(
                    f"{where}.stepEnvironments",
                    f"environment name '{env.name}' is already used by a job environment",
                )
        script = self._parse_step_script(
            mapping["script"], f"{where}.script", definitions, space
        )
        if name is None or script is None or not space_ok:
            return None
        return Step(
            index=index,
            name=name,
            script=script,
            dependencies=tuple(dependencies),
            parameter_space=space,
            environments=tuple(environments),
            description=self._optional_description(mapping, where),
        )

    def _parse_step_script(
        self,
        raw: Any,
        where: str,
        definitions: Sequence[ParameterDefinition],
        space: ParameterSpace | None,
    ) -> StepScript | None:
        mapping = self._mapping(raw, where, _STEP_SCRIPT_KEYS, ("actions",))
        if mapping is None:
            return None
        files = self._parse_embedded_files(mapping.get("embeddedFiles"), f"{where}.embeddedFiles")
        scope = task_scope(definitions, space.definitions if space else (), files)
        actions = self._mapping(mapping["actions"], f"{where}.actions", _STEP_ACTION_KEYS, ("onRun",))
        if actions is None:
            return None
        on_run = self._parse_action(actions["onRun"], f"{where}.actions.onRun", scope)
        if on_run is None:
            return None
        return StepScript(on_run=on_run, embedded_files=tuple(files))

    def link_steps(self, steps: list[Step]) -> list[Step]:
        """Resolve dependency names to step indices and reject cycles."""
        index_by_name = {step.name: position for position, step in enumerate(steps)}
        linked: list[Step] = []
        graph_ok = True
        for position, step in enumerate(steps):
            where = f"steps[{step.index}].dependencies"
            if step.name in step.dependencies:
                self.report(where, f"step '{step.name}' must not depend on itself")
                graph_ok = False
            if len(set(step.dependencies)) != len(step.dependencies):
                self.report(where, f"step '{step.name}' has duplicate dependencies")
            unknown = [dep for dep in step.dependencies if dep not in index_by_name]
            if unknown:
                self.report(where, f"step '{step.name}' has unknown dependencies: {unknown}")
                graph_ok = False
            indices = tuple(index_by_name[dep] for dep in dict.fromkeys(step.dependencies)
                            if dep in index_by_name)
            linked.append(
                Step(
                    index=position,
                    name=step.name,
                    script=step.script,
                    dependencies=tuple(dict.fromkeys(step.dependencies)),
                    dependency_indices=indices,
                    parameter_space=step.parameter_space,
                    environments=step.environments,
                    description=step.description,
                )
            )
        if graph_ok:
            names = [step.name for step in linked]
            dependents, in_degree = build_adjacency(
                names, {step.name: step.dependencies for step in linked}
            )
            try:
                assert_acyclic(names, dependents, in_degree)
            except CyclicDependencyError as exc:
                self.diagnostics.extend(exc.diagnostics)
        return linked


def _check_version(validator: _Validator, raw: dict[str, Any], expected: str) -> bool:
    version = raw.get("specificationVersion")
    if version != expected:
        validator.report(
            "specificationVersion", f"must be '{expected}', got {version!r}"
        )
        return False
    return True


def validate(document: Any) -> ValidationResult:
    """Validate a decoded job template document.

    Never raises for problems in the document; every problem found is returned
    as a diagnostic in document order.
    """
    validator = _Validator()
    raw = validator._mapping(document, "", _JOB_KEYS, ("specificationVersion", "name", "steps"))
    if raw is None:
        return ValidationResult(ok=False, diagnostics=validator.diagnostics)
    if not _check_version(validator, raw, JOB_TEMPLATE_VERSION):
        return ValidationResult(ok=False, diagnostics=validator.diagnostics)

    definitions = validator.parse_parameter_definitions(
        raw.get("parameterDefinitions"), "parameterDefinitions"
    )
    name = validator._format(raw["name"], "name", job_scope(definitions))
    if name is not None and not name.text.strip():
        validator.report("name", "must not be empty")
    env_key = "environments" if "environments" in raw else "jobEnvironments"
    if "environments" in raw and "jobEnvironments" in raw:
        validator.report("", "use only one of 'jobEnvironments' and 'environments'")
    environments = validator.parse_environments(raw.get(env_key), env_key, definitions)
    raw_steps = validator._list(raw["steps"], "steps")
    steps: list[Step] = []
    if raw_steps is not None:
        for index, raw_step in enumerate(raw_steps):
            step = validator.parse_step(raw_step, index, definitions, environments)
            if step is not None:
                steps.append(step)
        validator._unique([s.name for s in steps], "steps", "step")
        if len(steps) == len(raw_steps):
            steps = validator.link_steps(steps)

    if validator.diagnostics or name is None:
        return ValidationResult(ok=False, diagnostics=validator.diagnostics)
    template = JobTemplate(
        specification_version=JOB_TEMPLATE_VERSION,
        name=name,
        parameter_definitions=tuple(definitions),
        steps=tuple(steps),
        environments=tuple(environments),
        description=validator._optional_description(raw, ""),
    )
    return ValidationResult(ok=True, diagnostics=[], template=template)


def check_template(document: Any) -> JobTemplate:
    return validate(document).raise_for_errors()


def validate_environment_template(
    document: Any, job_definitions: Sequence[ParameterDefinition] = ()
) -> EnvironmentTemplate:
    """Validate an environment template; raises ValidationError."""
    validator = _Validator()
    raw = validator._mapping(
        document, "", _ENV_TEMPLATE_KEYS, ("specificationVersion", "environment")
    )
    if raw is None or not _check_version(validator, raw, ENVIRONMENT_TEMPLATE_VERSION):
        raise ValidationError(validator.diagnostics)
    definitions = validator.parse_parameter_definitions(
        raw.get("parameterDefinitions"), "parameterDefinitions"
    )
    environment = validator.parse_environment(
        raw["environment"], "environment", [*job_definitions, *definitions]
    )
    if validator.diagnostics or environment is None:
        raise ValidationError(validator.diagnostics)
    return EnvironmentTemplate(
        specification_version=ENVIRONMENT_TEMPLATE_VERSION,
        environment=environment,
        parameter_definitions=tuple(definitions),
    )


def read_document(path: Path) -> Any:
    """Read and decode a YAML or JSON document from a regular, non-symlink file."""
    if has_symlink_ancestor(path.absolute()):
        raise ValidationError(f"template path must not include symlink: {path}")
    try:
        meta = path.lstat()
    except FileNotFoundError as exc:
        raise ValidationError(f"template file not found: {path}") from exc
    except (OSError, RuntimeError) as exc:
        raise ValidationError(f"failed to read template file: {path}") from exc
    if stat.S_ISLNK(meta.st_mode):
        raise ValidationError(f"template file must not be symlink: {path}")
    if not stat.S_ISREG(meta.st_mode):
        raise ValidationError(f"failed to read template file: {path}")

    open_flags = os.O_RDONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(path), open_flags)
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            content = f.read()
    except UnicodeError as exc:
        raise ValidationError(f"failed to decode template file as utf-8: {path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise ValidationError(f"template file must not be symlink: {path}") from exc
        raise ValidationError(f"failed to read template file: {path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)

    try:
        # JSON is a subset of YAML 1.2; safe_load covers both formats.
        return yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ValidationError(f"failed to parse template: {exc}") from exc


def load_template(path: Path) -> JobTemplate:
    return check_template(read_document(path))


def load_environment_template(
    path: Path, job_definitions: Sequence[ParameterDefinition] = ()
) -> EnvironmentTemplate:
    return validate_environment_template(read_document(path), job_definitions)

