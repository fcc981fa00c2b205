"""Job parameter definitions: per-type constraint parsing, checking and binding.

Each parameter type has one entry in ``_TYPE_HANDLERS``; nothing else in the
package branches on the parameter type for constraint handling.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from jobtemplate.config.schema import (
    Constraints,
    DataFlow,
    NumberConstraints,
    ObjectType,
    ParameterDefinition,
    ParameterType,
    ParameterValue,
    PathConstraints,
    StringConstraints,
)
from jobtemplate.job.model import JobParameter
from jobtemplate.util.errors import Diagnostic, ValidationError

Report = Callable[[str, str], None]

_STRING_KEYS = {"minLength", "maxLength", "allowedValues"}
_PATH_KEYS = _STRING_KEYS | {"dataFlow", "objectType"}
_NUMBER_KEYS = {"minValue", "maxValue", "allowedValues"}
COMMON_KEYS = {"name", "type", "default", "description"}


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def coerce_int(value: object) -> int:
    if _is_int(value):
        return int(value)  # type: ignore[arg-type]
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise ValueError(f"{value!r} is not an integer")


def coerce_float(value: object) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{value!r} is not a number")
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        result = float(value.strip())
    else:
        raise ValueError(f"{value!r} is not a number")
    if not math.isfinite(result):
        raise ValueError(f"{value!r} is not a finite number")
    return result


def coerce_str(value: object) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{value!r} is not a string")
    return value


def _length(raw: Mapping[str, Any], key: str, where: str, report: Report) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if not _is_int(value) or value < 0:
        report(f"{where}.{key}", "must be an integer >= 0")
        return None
    return int(value)


def _allowed(
    raw: Mapping[str, Any],
    where: str,
    report: Report,
    coerce: Callable[[object], ParameterValue],
) -> tuple[Any, ...] | None:
    value = raw.get("allowedValues")
    if value is None:
        return None
    if not isinstance(value, list) or not value:
        report(f"{where}.allowedValues", "must be a non-empty list")
        return None
    coerced: list[ParameterValue] = []
    for index, item in enumerate(value):
        try:
            coerced.append(coerce(item))
        except ValueError as exc:
            report(f"{where}.allowedValues[{index}]", str(exc))
            return None
    if len(set(coerced)) != len(coerced):
        report(f"{where}.allowedValues", "must not contain duplicates")
    return tuple(coerced)


def _check_lengths(
    min_length: int | None, max_length: int | None, where: str, report: Report
) -> None:
    if min_length is not None and max_length is not None and min_length > max_length:
        report(where, f"minLength {min_length} must be <= maxLength {max_length}")


def _parse_string(raw: Mapping[str, Any], where: str, report: Report) -> StringConstraints:
    constraints = StringConstraints(
        min_length=_length(raw, "minLength", where, report),
        max_length=_length(raw, "maxLength", where, report),
        allowed_values=_allowed(raw, where, report, coerce_str),
    )
    _check_lengths(constraints.min_length, constraints.max_length, where, report)
    return constraints


def _parse_path(raw: Mapping[str, Any], where: str, report: Report) -> PathConstraints:
    data_flow = DataFlow.NONE
    if "dataFlow" in raw:
        try:
            data_flow = DataFlow(raw["dataFlow"])
        except ValueError:
            report(f"{where}.dataFlow", f"must be one of {[d.value for d in DataFlow]}")
    object_type = None
    if "objectType" in raw:
        try:
            object_type = ObjectType(raw["objectType"])
        except ValueError:
            report(f"{where}.objectType", f"must be one of {[o.value for o in ObjectType]}")
    constraints = PathConstraints(
        min_length=_length(raw, "minLength", where, report),
        max_length=_length(raw, "maxLength", where, report),
        allowed_values=_allowed(raw, where, report, coerce_str),
        data_flow=data_flow,
        object_type=object_type,
    )
    _check_lengths(constraints.min_length, constraints.max_length, where, report)
    return constraints


def _number_parser(
    coerce: Callable[[object], int | float],
) -> Callable[[Mapping[str, Any], str, Report], NumberConstraints]:
    def parse(raw: Mapping[str, Any], where: str, report: Report) -> NumberConstraints:
        bounds: dict[str, int | float | None] = {"minValue": None, "maxValue": None}
        for key in bounds:
            if raw.get(key) is None:
                continue
            try:
                bounds[key] = coerce(raw[key])
            except ValueError as exc:
                report(f"{where}.{key}", str(exc))
        constraints = NumberConstraints(
            min_value=bounds["minValue"],
            max_value=bounds["maxValue"],
            allowed_values=_allowed(raw, where, report, coerce),
        )
        low, high = constraints.min_value, constraints.max_value
        if low is not None and high is not None and low > high:
            report(where, f"minValue {low} must be <= maxValue {high}")
        return constraints

    return parse


def _string_violations(value: ParameterValue, constraints: Constraints) -> list[str]:
    assert isinstance(constraints, (StringConstraints, PathConstraints))
    text = str(value)
    problems: list[str] = []
    if constraints.min_length is not None and len(text) < constraints.min_length:
        problems.append(f"length {len(text)} is below minLength {constraints.min_length}")
    if constraints.max_length is not None and len(text) > constraints.max_length:
        problems.append(f"length {len(text)} exceeds maxLength {constraints.max_length}")
    if constraints.allowed_values is not None and text not in constraints.allowed_values:
        problems.append(f"{text!r} is not one of {list(constraints.allowed_values)}")
    return problems


def _number_violations(value: ParameterValue, constraints: Constraints) -> list[str]:
    assert isinstance(constraints, NumberConstraints)
    assert isinstance(value, (int, float))
    problems: list[str] = []
    if constraints.min_value is not None and value < constraints.min_value:
        problems.append(f"{value} is below minValue {constraints.min_value}")
    if constraints.max_value is not None and value > constraints.max_value:
        problems.append(f"{value} exceeds maxValue {constraints.max_value}")
    if constraints.allowed_values is not None and value not in constraints.allowed_values:
        problems.append(f"{value} is not one of {list(constraints.allowed_values)}")
    return problems


@dataclass(frozen=True, slots=True)
class _TypeHandler:
    keys: set[str]
    parse: Callable[[Mapping[str, Any], str, Report], Constraints]
    coerce: Callable[[object], ParameterValue]
    violations: Callable[[ParameterValue, Constraints], list[str]]


_TYPE_HANDLERS: dict[ParameterType, _TypeHandler] = {
    ParameterType.STRING: _TypeHandler(_STRING_KEYS, _parse_string, coerce_str, _string_violations),
    ParameterType.PATH: _TypeHandler(_PATH_KEYS, _parse_path, coerce_str, _string_violations),
    ParameterType.INT: _TypeHandler(
        _NUMBER_KEYS, _number_parser(coerce_int), coerce_int, _number_violations
    ),
    ParameterType.FLOAT: _TypeHandler(
        _NUMBER_KEYS, _number_parser(coerce_float), coerce_float, _number_violations
    ),
}


def allowed_keys(param_type: ParameterType) -> set[str]:
    return COMMON_KEYS | _TYPE_HANDLERS[param_type].keys


def coerce_value(param_type: ParameterType, value: object) -> ParameterValue:
    """Convert ``value`` to the Python type of ``param_type``; raises ValueError."""
    return _TYPE_HANDLERS[param_type].coerce(value)


def parse_constraints(
    param_type: ParameterType, raw: Mapping[str, Any], where: str, report: Report
) -> Constraints:
    return _TYPE_HANDLERS[param_type].parse(raw, where, report)


def violations(definition: ParameterDefinition, value: ParameterValue) -> list[str]:
    return _TYPE_HANDLERS[definition.type].violations(value, definition.constraints)


def parse_default(
    param_type: ParameterType,
    constraints: Constraints,
    raw: Mapping[str, Any],
    where: str,
    report: Report,
) -> ParameterValue | None:
    if raw.get("default") is None:
        return None
    try:
        value = coerce_value(param_type, raw["default"])
    except ValueError as exc:
        report(f"{where}.default", str(exc))
        return None
    handler = _TYPE_HANDLERS[param_type]
    for problem in handler.violations(value, constraints):
        report(f"{where}.default", problem)
    return value


def check_allowed_values(definition: ParameterDefinition, where: str, report: Report) -> None:
    """Every allowed value must itself satisfy the other constraints."""
    allowed = definition.constraints.allowed_values
    if not allowed:
        return
    handler = _TYPE_HANDLERS[definition.type]
    unrestricted = replace(definition.constraints, allowed_values=None)
    for index, value in enumerate(allowed):
        for problem in handler.violations(value, unrestricted):
            report(f"{where}.allowedValues[{index}]", problem)


def bind_parameters(
    definitions: Sequence[ParameterDefinition], values: Mapping[str, object]
) -> dict[str, JobParameter]:
    """Bind submitted values (or defaults) to the job's parameter definitions."""
    diagnostics: list[Diagnostic] = []
    known = {definition.name for definition in definitions}
    for name in sorted(set(values) - known):
        diagnostics.append(Diagnostic(f"parameters.{name}", "is not defined by the template"))
    bound: dict[str, JobParameter] = {}
    for definition in definitions:
        where = f"parameters.{definition.name}"
        if definition.name in values:
            try:
                value = coerce_value(definition.type, values[definition.name])
            except ValueError as exc:
                diagnostics.append(Diagnostic(where, f"must be {definition.type.value}: {exc}"))
                continue
        elif definition.default is not None:
            value = definition.default
        else:
            diagnostics.append(Diagnostic(where, "is required and has no default"))
            continue
        for problem in violations(definition, value):
            diagnostics.append(Diagnostic(where, problem))
        bound[definition.name] = JobParameter(definition.type, value)
    if diagnostics:
        raise ValidationError(diagnostics)
    return bound
