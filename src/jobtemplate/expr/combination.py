"""Combination expressions over task parameters.

Grammar::

    expr  := term ('*' term)*
    term  := NAME | '(' expr (',' expr)+ ')' | '(' expr ')'

``A * B`` is the cross product with ``A`` varying slowest. ``(A, B)`` zips
``A`` and ``B`` positionally and requires equal lengths.
"""

from __future__ import annotations

import itertools
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field

from jobtemplate.config.schema import (
    ParameterSpace,
    ParameterType,
    ParameterValue,
    Step,
    TaskParameterDefinition,
)
from jobtemplate.util.errors import AssociationCardinalityError, ValidationError

_TOKEN_PATTERN = re.compile(r"\s*(?:(?P<name>[A-Za-z_][A-Za-z0-9_]*)|(?P<op>[*(),]))")

Binding = tuple[tuple[str, ParameterValue], ...]


@dataclass(frozen=True, slots=True)
class TaskParameterValue:
    type: ParameterType
    value: ParameterValue

    def __str__(self) -> str:
        return format_value(self.value)


@dataclass(slots=True)
class TaskRun:
    index: int
    parameters: dict[str, TaskParameterValue] = field(default_factory=dict)

    def values(self) -> dict[str, ParameterValue]:
        return {name: param.value for name, param in self.parameters.items()}

    def __str__(self) -> str:
        return ", ".join(f"{name}={param}" for name, param in self.parameters.items())


def format_value(value: ParameterValue) -> str:
    if isinstance(value, float):
        return repr(value)
    return str(value)


def expand_definition(definition: TaskParameterDefinition) -> list[ParameterValue]:
    """Return the ordered values of one task parameter."""
    if definition.range_expr is not None:
        return list(definition.range_expr.values())
    return list(definition.values or ())


class CombinationNode:
    """A node of a parsed combination expression."""

    def names(self) -> list[str]:
        raise NotImplementedError

    def size(self, space: Mapping[str, Sequence[ParameterValue]]) -> int:
        raise NotImplementedError

    def bindings(self, space: Mapping[str, Sequence[ParameterValue]]) -> Iterator[Binding]:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class Leaf(CombinationNode):
    name: str

    def names(self) -> list[str]:
        return [self.name]

    def size(self, space: Mapping[str, Sequence[ParameterValue]]) -> int:
        return len(space[self.name])

    def bindings(self, space: Mapping[str, Sequence[ParameterValue]]) -> Iterator[Binding]:
        for value in space[self.name]:
            yield ((self.name, value),)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, slots=True)
class Product(CombinationNode):
    children: tuple[CombinationNode, ...]

    def names(self) -> list[str]:
        return [name for child in self.children for name in child.names()]

    def size(self, space: Mapping[str, Sequence[ParameterValue]]) -> int:
        total = 1
        for child in self.children:
            total *= child.size(space)
        return total

    def bindings(self, space: Mapping[str, Sequence[ParameterValue]]) -> Iterator[Binding]:
        # Materialize each child once; itertools.product keeps the left child slowest.
        expanded = [list(child.bindings(space)) for child in self.children]
        for combo in itertools.product(*expanded):
            yield tuple(pair for part in combo for pair in part)

    def __str__(self) -> str:
        return " * ".join(
            f"({child})" if isinstance(child, Product) else str(child) for child in self.children
        )


@dataclass(frozen=True, slots=True)
class Association(CombinationNode):
    children: tuple[CombinationNode, ...]

    def names(self) -> list[str]:
        return [name for child in self.children for name in child.names()]

    def check(self, space: Mapping[str, Sequence[ParameterValue]]) -> int:
        sizes = {str(child): child.size(space) for child in self.children}
        if len(set(sizes.values())) > 1:
            raise AssociationCardinalityError(str(self), sizes)
        return next(iter(sizes.values()))

    def size(self, space: Mapping[str, Sequence[ParameterValue]]) -> int:
        return self.check(space)

    def bindings(self, space: Mapping[str, Sequence[ParameterValue]]) -> Iterator[Binding]:
        self.check(space)
        for parts in zip(*(child.bindings(space) for child in self.children)):
            yield tuple(pair for part in parts for pair in part)

    def __str__(self) -> str:
        return "(" + ", ".join(str(child) for child in self.children) + ")"


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = self._tokenize(text)
        self.pos = 0

    def _tokenize(self, text: str) -> list[str]:
        tokens: list[str] = []
        pos = 0
        stripped = text.rstrip()
        while pos < len(stripped):
            match = _TOKEN_PATTERN.match(stripped, pos)
            if match is None:
                raise ValidationError(
                    f"invalid combination expression '{text}': "
                    f"unexpected character at offset {pos}"
                )
            tokens.append(match.group("name") or match.group("op"))
            pos = match.end()
        return tokens

    def _peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise ValidationError(f"invalid combination expression '{self.text}': unexpected end")
        self.pos += 1
        return token

    def _expect(self, token: str) -> None:
        got = self._take()
        if got != token:
            raise ValidationError(
                f"invalid combination expression '{self.text}': expected '{token}', got '{got}'"
            )

    def parse(self) -> CombinationNode:
        if not self.tokens:
            raise ValidationError("combination expression must not be empty")
        node = self._expr()
        if self._peek() is not None:
            raise ValidationError(
                f"invalid combination expression '{self.text}': unexpected '{self._peek()}'"
            )
        return node

    def _expr(self) -> CombinationNode:
        terms = [self._term()]
        while self._peek() == "*":
            self._take()
            terms.append(self._term())
        if len(terms) == 1:
            return terms[0]
        return Product(tuple(terms))

    def _term(self) -> CombinationNode:
        token = self._take()
        if token == "(":
            items = [self._expr()]
            while self._peek() == ",":
                self._take()
                items.append(self._expr())
            self._expect(")")
            if len(items) == 1:
                return items[0]
            return Association(tuple(items))
        if token in {"*", ",", ")"}:
            raise ValidationError(
                f"invalid combination expression '{self.text}': unexpected '{token}'"
            )
        return Leaf(token)


def parse_combination(text: str) -> CombinationNode:
    """Parse a combination expression into a node tree."""
    return _Parser(text).parse()


def default_combination(names: Sequence[str]) -> CombinationNode:
    if len(names) == 1:
        return Leaf(names[0])
    return Product(tuple(Leaf(name) for name in names))


def _space_values(space: ParameterSpace) -> dict[str, list[ParameterValue]]:
    return {definition.name: expand_definition(definition) for definition in space.definitions}


def count_task_runs(step: Step) -> int:
    if step.parameter_space is None:
        return 1
    return step.parameter_space.combination.size(_space_values(step.parameter_space))


def _coerce_override(
    definition: TaskParameterDefinition, value: object, index: int
) -> ParameterValue:
    where = f"task override {index} parameter '{definition.name}'"
    if definition.type is ParameterType.INT:
        if isinstance(value, bool):
            raise ValidationError(f"{where} must be an integer")
        try:
            return int(value)  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{where} must be an integer") from exc
    if definition.type is ParameterType.FLOAT:
        if isinstance(value, bool):
            raise ValidationError(f"{where} must be a number")
        try:
            return float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"{where} must be a number") from exc
    if not isinstance(value, str):
        raise ValidationError(f"{where} must be a string")
    return value


def _overrides_to_runs(
    step: Step, overrides: Sequence[Mapping[str, object]]
) -> list[TaskRun]:
    definitions = step.parameter_space.definitions if step.parameter_space else ()
    by_name = {definition.name: definition for definition in definitions}
    runs: list[TaskRun] = []
    for index, override in enumerate(overrides):
        missing = sorted(set(by_name) - set(override))
        unknown = sorted(set(override) - set(by_name))
        if missing or unknown:
            raise ValidationError(
                f"task override {index} for step '{step.name}' must bind exactly "
                f"{sorted(by_name)} (missing: {missing}, unknown: {unknown})"
            )
        parameters = {
            definition.name: TaskParameterValue(
                definition.type, _coerce_override(definition, override[definition.name], index)
            )
            for definition in definitions
        }
        runs.append(TaskRun(index=index, parameters=parameters))
    return runs


def expand_step(
    step: Step, overrides: Sequence[Mapping[str, object]] | None = None
) -> list[TaskRun]:
    """Expand a step into its ordered TaskRuns.

    ``overrides`` replaces the expansion with a literal list of parameter
    bindings, validated against the step's task parameter definitions.
    """
    if overrides is not None:
        return _overrides_to_runs(step, overrides)
    space = step.parameter_space
    if space is None:
        return [TaskRun(index=0)]
    values = _space_values(space)
    types = {definition.name: definition.type for definition in space.definitions}
    runs: list[TaskRun] = []
    for index, binding in enumerate(space.combination.bindings(values)):
        # Parameters are reported in declaration order, not expression order.
        bound = dict(binding)
        parameters = {
            definition.name: TaskParameterValue(types[definition.name], bound[definition.name])
            for definition in space.definitions
        }
        runs.append(TaskRun(index=index, parameters=parameters))
    return runs


expand = expand_step
