"""Build graph structures from step dependencies."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Hashable, Mapping, Sequence
from typing import TypeVar

K = TypeVar("K", bound=Hashable)


def build_adjacency(
    nodes: Sequence[K], dependencies: Mapping[K, Sequence[K]]
) -> tuple[dict[K, list[K]], dict[K, int]]:
    """Return dependents adjacency and in-degree per node (step name or index)."""
    dependents: dict[K, list[K]] = defaultdict(list)
    in_degree: dict[K, int] = {}

    for node in nodes:
        deps = dependencies.get(node, ())
        in_degree[node] = len(deps)
        dependents.setdefault(node, [])
        for dep in deps:
            dependents[dep].append(node)

    return dict(dependents), in_degree
