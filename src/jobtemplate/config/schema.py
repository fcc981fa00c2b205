from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from jobtemplate.expr.combination import CombinationNode
    from jobtemplate.expr.range import RangeExpr
    from jobtemplate.format.resolver import FormatString

JOB_TEMPLATE_VERSION = "jobtemplate-2023-09"
ENVIRONMENT_TEMPLATE_VERSION = "environment-2023-09"

ParameterValue = Union[str, int, float]


class ParameterType(str, Enum):
    STRING = "STRING"
    PATH = "PATH"
    INT = "INT"
    FLOAT = "FLOAT"


class DataFlow(str, Enum):
    IN = "IN"
    OUT = "OUT"
    INOUT = "INOUT"
    NONE = "NONE"


class ObjectType(str, Enum):
    FILE = "FILE"
    DIRECTORY = "DIRECTORY"


class CancelationMode(str, Enum):
    TERMINATE = "TERMINATE"
    NOTIFY_THEN_TERMINATE = "NOTIFY_THEN_TERMINATE"


@dataclass(frozen=True, slots=True)
class StringConstraints:
    min_length: int | None = None
    max_length: int | None = None
    allowed_values: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class PathConstraints:
    min_length: int | None = None
    max_length: int | None = None
    allowed_values: tuple[str, ...] | None = None
    data_flow: DataFlow = DataFlow.NONE
    object_type: ObjectType | None = None


@dataclass(frozen=True, slots=True)
class NumberConstraints:
    min_value: int | float | None = None
    max_value: int | float | None = None
    allowed_values: tuple[int | float, ...] | None = None


Constraints = Union[StringConstraints, PathConstraints, NumberConstraints]


@dataclass(frozen=True, slots=True)
class ParameterDefinition:
    name: str
    type: ParameterType
    constraints: Constraints
    default: ParameterValue | None = None
    description: str | None = None


@dataclass(frozen=True, slots=True)
class TaskParameterDefinition:
    name: str
    type: ParameterType
    values: tuple[ParameterValue, ...] | None = None
    range_expr: RangeExpr | None = None


@dataclass(frozen=True, slots=True)
class Cancelation:
    mode: CancelationMode = CancelationMode.TERMINATE
    notify_period_sec: int | None = None


@dataclass(frozen=True, slots=True)
class Action:
    command: FormatString
    args: tuple[FormatString, ...] = ()
    timeout: int | None = None
    cancelation: Cancelation = field(default_factory=Cancelation)


@dataclass(frozen=True, slots=True)
class EmbeddedFile:
    name: str
    filename: str
    data: str
    runnable: bool = False
    type: str = "TEXT"


@dataclass(frozen=True, slots=True)
class StepScript:
    on_run: Action
    embedded_files: tuple[EmbeddedFile, ...] = ()


@dataclass(frozen=True, slots=True)
class EnvironmentScript:
    on_enter: Action | None = None
    on_exit: Action | None = None
    embedded_files: tuple[EmbeddedFile, ...] = ()


@dataclass(frozen=True, slots=True)
class Environment:
    name: str
    script: EnvironmentScript | None = None
    variables: tuple[tuple[str, FormatString], ...] = ()
    description: str | None = None


@dataclass(frozen=True, slots=True)
class ParameterSpace:
    definitions: tuple[TaskParameterDefinition, ...]
    combination: CombinationNode
    combination_text: str | None = None


@dataclass(frozen=True, slots=True)
class Step:
    index: int
    name: str
    script: StepScript
    dependencies: tuple[str, ...] = ()
    dependency_indices: tuple[int, ...] = ()
    parameter_space: ParameterSpace | None = None
    environments: tuple[Environment, ...] = ()
    description: str | None = None


@dataclass(frozen=True, slots=True)
class JobTemplate:
    specification_version: str
    name: FormatString
    parameter_definitions: tuple[ParameterDefinition, ...]
    steps: tuple[Step, ...]
    environments: tuple[Environment, ...] = ()
    description: str | None = None

    def step(self, name: str) -> Step:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def parameter(self, name: str) -> ParameterDefinition:
        for definition in self.parameter_definitions:
            if definition.name == name:
                return definition
        raise KeyError(name)


@dataclass(frozen=True, slots=True)
class EnvironmentTemplate:
    specification_version: str
    environment: Environment
    parameter_definitions: tuple[ParameterDefinition, ...] = ()
