"""DAG validation helpers."""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence

from jobtemplate.util.errors import CyclicDependencyError


def _find_cycle(remaining: Sequence[str], dependents: dict[str, list[str]]) -> list[str]:
    """Return one cycle among ``remaining`` nodes as ``[a, b, ..., a]``."""
    candidates = set(remaining)
    for start in remaining:
        path: list[str] = []
        on_path: dict[str, int] = {}
        stack = [(start, iter(dependents.get(start, [])))]
        path.append(start)
        on_path[start] = 0
        while stack:
            node, children = stack[-1]
            for child in children:
                if child not in candidates:
                    continue
                if child in on_path:
                    return path[on_path[child] :] + [child]
                on_path[child] = len(path)
                path.append(child)
                stack.append((child, iter(dependents.get(child, []))))
                break
            else:
                stack.pop()
                path.pop()
                del on_path[node]
    return list(remaining)


def assert_acyclic(
    names: Sequence[str], dependents: dict[str, list[str]], in_degree: dict[str, int]
) -> list[str]:
    """Validate graph has no cycle using Kahn's algorithm; return topological order."""
    degrees = dict(in_degree)
    q = deque([name for name in names if degrees.get(name, 0) == 0])
    order: list[str] = []

    while q:
        current = q.popleft()
        order.append(current)
        for nxt in dependents.get(current, []):
            degrees[nxt] = degrees[nxt] - 1
            if degrees[nxt] == 0:
                q.append(nxt)

    if len(order) != len(names):
        done = set(order)
        raise CyclicDependencyError(_find_cycle([n for n in names if n not in done], dependents))
    return order
