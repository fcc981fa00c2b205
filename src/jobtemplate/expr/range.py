"""Integer range expressions.

A range expression is a comma separated list whose first item may be a stepped
range::

    1-380:11        -> 1, 12, 23, ..., 375
    11-380:11,380   -> 11, 22, ..., 374, 380
    -3--1           -> -3, -2, -1
    4               -> 4

Items after the first are extra values appended after the stepped sequence. They
must keep the sequence ascending; an extra equal to the last produced value is
already present and is not repeated.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass

from jobtemplate.util.errors import RangeExpansionError

_ITEM_PATTERN = re.compile(
    r"^\s*(?P<start>[+-]?\d+)\s*"
    r"(?:-\s*(?P<end>[+-]?\d+)\s*(?::\s*(?P<step>[+-]?\d+)\s*)?)?$"
)
MAX_RANGE_LENGTH = 1_000_000


@dataclass(frozen=True, slots=True)
class IntRange:
    start: int
    end: int
    step: int = 1

    def __len__(self) -> int:
        return (self.end - self.start) // self.step + 1

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1, self.step))

    @property
    def last(self) -> int:
        return self.start + (len(self) - 1) * self.step

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        if self.step == 1:
            return f"{self.start}-{self.end}"
        return f"{self.start}-{self.end}:{self.step}"


@dataclass(frozen=True, slots=True)
class RangeExpr:
    text: str
    base: IntRange
    extras: tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.base) + len(self.extras)

    def __iter__(self) -> Iterator[int]:
        yield from self.base
        yield from self.extras

    def values(self) -> list[int]:
        return list(self)

    def __str__(self) -> str:
        return ",".join([str(self.base), *(str(v) for v in self.extras)])


def _parse_item(item: str, text: str) -> IntRange:
    match = _ITEM_PATTERN.fullmatch(item)
    if match is None:
        raise RangeExpansionError(f"invalid range expression '{text}': bad item '{item.strip()}'")
    start = int(match.group("start"))
    end_text = match.group("end")
    step_text = match.group("step")
    if end_text is None:
        return IntRange(start, start)
    end = int(end_text)
    step = 1 if step_text is None else int(step_text)
    if end < start:
        raise RangeExpansionError(
            f"invalid range expression '{text}': end {end} is less than start {start}"
        )
    if step <= 0:
        raise RangeExpansionError(f"invalid range expression '{text}': step must be positive")
    return IntRange(start, end, step)


def parse_range_expr(text: str) -> RangeExpr:
    """Parse ``text`` into a :class:`RangeExpr`, raising RangeExpansionError."""
    if not isinstance(text, str) or not text.strip():
        raise RangeExpansionError("range expression must be a non-empty string")
    items = text.split(",")
    base = _parse_item(items[0], text)
    extras: list[int] = []
    last = base.last
    for item in items[1:]:
        extra = _parse_item(item, text)
        if extra.start != extra.end:
            raise RangeExpansionError(
                f"invalid range expression '{text}': only the first item may be a range"
            )
        value = extra.start
        if value < last:
            raise RangeExpansionError(
                f"invalid range expression '{text}': extra value {value} is below {last}"
            )
        if value == last:
            continue
        extras.append(value)
        last = value
    expr = RangeExpr(text=text, base=base, extras=tuple(extras))
    if len(expr) > MAX_RANGE_LENGTH:
        raise RangeExpansionError(
            f"range expression '{text}' expands to more than {MAX_RANGE_LENGTH} values"
        )
    return expr


def expand_range(text: str) -> list[int]:
    return parse_range_expr(text).values()
