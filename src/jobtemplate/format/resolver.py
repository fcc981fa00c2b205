"""Format strings: literal text with ``{{ Scope.Name }}`` placeholders."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass

from jobtemplate.util.errors import FormatStringError, UnresolvedReferenceError

_REFERENCE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)+$")

JOB_SCOPE = "job"
ENVIRONMENT_SCOPE = "environment"
TASK_SCOPE = "task"


@dataclass(frozen=True, slots=True)
class Placeholder:
    start: int
    end: int
    expression: str

    @property
    def text(self) -> str:
        return "{{" + self.expression + "}}"


def _scan(text: str) -> tuple[Placeholder, ...]:
    found: list[Placeholder] = []
    pos = 0
    while True:
        open_at = text.find("{{", pos)
        if open_at == -1:
            break
        end = text.find("}}", open_at + 2)
        if end == -1:
            raise FormatStringError(f"unterminated '{{{{' at offset {open_at} in '{text}'")
        inner = text[open_at + 2 : end]
        if "{{" in inner:
            raise FormatStringError(f"nested '{{{{' at offset {open_at} in '{text}'")
        expression = inner.strip()
        if not _REFERENCE_PATTERN.fullmatch(expression):
            raise FormatStringError(
                f"invalid reference '{{{{{inner}}}}}' at offset {open_at} in '{text}'"
            )
        found.append(Placeholder(open_at, end + 2, expression))
        pos = end + 2
    return tuple(found)


class FormatString:
    """A parsed format string.

    Parsing happens once at construction; ``resolve`` substitutes every
    placeholder from a symbol table without re-scanning substituted text.
    """

    __slots__ = ("text", "placeholders")

    def __init__(self, text: str):
        if not isinstance(text, str):
            raise FormatStringError("format string must be a string")
        self.text = text
        self.placeholders = _scan(text)

    @property
    def references(self) -> list[str]:
        return [p.expression for p in self.placeholders]

    def resolve(self, symbols: Mapping[str, str], *, scope: str = TASK_SCOPE) -> str:
        if not self.placeholders:
            return self.text
        parts: list[str] = []
        pos = 0
        for placeholder in self.placeholders:
            parts.append(self.text[pos : placeholder.start])
            try:
                parts.append(symbols[placeholder.expression])
            except KeyError as exc:
                raise UnresolvedReferenceError(placeholder.text, scope) from exc
            pos = placeholder.end
        parts.append(self.text[pos:])
        return "".join(parts)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FormatString):
            return self.text == other.text
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.text)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"FormatString({self.text!r})"


class SymbolTable(Mapping[str, str]):
    """Immutable mapping from reference expressions to resolved strings."""

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, str] | Iterable[tuple[str, str]] = ()):
        self._values: dict[str, str] = dict(values)

    def with_values(self, values: Mapping[str, str]) -> SymbolTable:
        merged = dict(self._values)
        merged.update(values)
        return SymbolTable(merged)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"SymbolTable({self._values!r})"


@dataclass(frozen=True, slots=True)
class ScopeSpec:
    """Static description of which references a field may use.

    ``names`` are the fully qualified references the field may use; ``namespaces``
    only improve the diagnostic for an unknown name in a reachable namespace.
    """

    scope: str
    names: frozenset[str]
    namespaces: frozenset[str]

    def check(self, expression: str) -> bool:
        return expression in self.names

    def describe(self, expression: str) -> str:
        namespace = expression.rsplit(".", 1)[0]
        if namespace in self.namespaces:
            return f"'{expression}' is not defined"
        return f"'{namespace}' is not available in {self.scope} scope"
