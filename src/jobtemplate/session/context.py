from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from jobtemplate.format.resolver import SymbolTable
from jobtemplate.pathmap.rules import PathMappingRule


@dataclass(frozen=True, slots=True)
class EnvFrame:
    """Variables set (``str``) or unset (``None``) by one entered environment."""

    environment: str
    variables: tuple[tuple[str, str | None], ...] = ()

    def updated(self, changes: Mapping[str, str | None]) -> EnvFrame:
        merged = dict(self.variables)
        merged.update(changes)
        return EnvFrame(self.environment, tuple(merged.items()))


@dataclass(frozen=True, slots=True)
class SessionContext:
    """Everything an action needs, passed explicitly rather than held globally.

    ``push`` and ``replace_top`` return new contexts; a context is never
    mutated, so exit actions can run against the stack as it was on enter.
    """

    session_id: str
    working_dir: Path
    symbols: SymbolTable
    rules: tuple[PathMappingRule, ...] = ()
    frames: tuple[EnvFrame, ...] = field(default_factory=tuple)

    def push(self, frame: EnvFrame) -> SessionContext:
        return replace(self, frames=(*self.frames, frame))

    def replace_top(self, frame: EnvFrame) -> SessionContext:
        if not self.frames:
            raise ValueError("no environment frame to replace")
        return replace(self, frames=(*self.frames[:-1], frame))

    def with_symbols(self, values: Mapping[str, str]) -> SessionContext:
        return replace(self, symbols=self.symbols.with_values(values))

    def environ(self, base: Mapping[str, str]) -> dict[str, str]:
        """Apply the frames in order; later frames override earlier ones."""
        env = dict(base)
        for frame in self.frames:
            for name, value in frame.variables:
                if value is None:
                    env.pop(name, None)
                else:
                    env[name] = value
        return env
