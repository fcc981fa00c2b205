"""Application-level error types."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Diagnostic:
    location: str
    message: str

    def __str__(self) -> str:
        if not self.location:
            return self.message
        return f"{self.location}: {self.message}"


class JobTemplateError(Exception):
    """Base error for the template engine."""


class ValidationError(JobTemplateError):
    """Raised when a template document or its bindings fail validation."""

    def __init__(self, diagnostics: Sequence[Diagnostic] | str):
        if isinstance(diagnostics, str):
            diagnostics = [Diagnostic("", diagnostics)]
        self.diagnostics = list(diagnostics)
        super().__init__("\n".join(str(d) for d in self.diagnostics))


class CyclicDependencyError(ValidationError):
    """Raised when the step dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            [Diagnostic("steps", "cyclic step dependencies: " + " -> ".join(self.cycle))]
        )


class RangeExpansionError(JobTemplateError):
    """Raised when a range expression cannot be expanded."""


class AssociationCardinalityError(JobTemplateError):
    """Raised when associated parameters expand to different lengths."""

    def __init__(self, expression: str, cardinalities: dict[str, int]):
        self.expression = expression
        self.cardinalities = dict(cardinalities)
        sizes = ", ".join(f"{name}={size}" for name, size in self.cardinalities.items())
        super().__init__(
            f"association '{expression}' requires equal cardinalities, got {sizes}"
        )


class UnresolvedReferenceError(JobTemplateError):
    """Raised when a format string placeholder has no value in its scope."""

    def __init__(self, placeholder: str, scope: str):
        self.placeholder = placeholder
        self.scope = scope
        super().__init__(f"unresolved reference '{placeholder}' in {scope} scope")


class FormatStringError(JobTemplateError):
    """Raised when a format string is syntactically invalid."""


class PathMappingError(JobTemplateError):
    """Raised when path mapping rules are malformed."""


class SessionSetupError(JobTemplateError):
    """Raised when a session cannot prepare its working directory."""


class SessionStateError(JobTemplateError):
    """Raised on an illegal session state transition."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"invalid session state transition: {current} -> {target}")


class ActionFailureError(JobTemplateError):
    """Raised when an action exits non-zero or cannot be started."""

    def __init__(self, action: str, exit_code: int | None, reason: str | None = None):
        self.action = action
        self.exit_code = exit_code
        detail = reason or f"exit code {exit_code}"
        super().__init__(f"action '{action}' failed: {detail}")


class ActionTimeoutError(JobTemplateError):
    """Raised when an action exceeds its timeout and is canceled."""

    def __init__(self, action: str, timeout: float):
        self.action = action
        self.timeout = timeout
        super().__init__(f"action '{action}' exceeded timeout of {timeout:g}s")
