from __future__ import annotations

from dataclasses import dataclass

from .errors import CycleError, UnknownReferenceError
from .models import Dependency, RevisionDescriptor


_VISITING = 1
_VISITED = 2


@dataclass(frozen=True)
class StartPlan:
    """Start order for one revision.

    ``order`` is a total order; ``layers`` groups containers that have no
    dependency relation between them and may be launched concurrently.
    """

    revision_id: str
    order: tuple[str, ...]
    layers: tuple[tuple[str, ...], ...]
    edges: dict[str, tuple[Dependency, ...]]

    def dependencies(self, name: str) -> tuple[Dependency, ...]:
        return self.edges.get(name, ())


def build_graph(revision: RevisionDescriptor) -> dict[str, tuple[Dependency, ...]]:
    """Adjacency list keyed by container name, edges in declaration order.

    Raises UnknownReferenceError for an edge naming a container that is not
    part of the revision.
    """
    index = {c.name: i for i, c in enumerate(revision.containers)}
    graph: dict[str, tuple[Dependency, ...]] = {}
    for c in revision.containers:
        for dep in c.depends_on:
            if dep.name not in index:
                raise UnknownReferenceError(c.name, dep.name)
        graph[c.name] = tuple(sorted(c.depends_on, key=lambda d: index[d.name]))
    return graph


def resolve(revision: RevisionDescriptor) -> StartPlan:
    """Topologically sort a revision's containers.

    Iterative depth-first search with visiting/visited marks. Roots are taken
    in declaration order and so are edges, which makes the result a pure
    function of the descriptor.
    """
    graph = build_graph(revision)
    state: dict[str, int] = {}
    order: list[str] = []

    for root in graph:
        if root in state:
            continue
        state[root] = _VISITING
        stack = [(root, iter(graph[root]))]
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                mark = state.get(dep.name)
                if mark == _VISITING:
                    path = [n for n, _ in stack]
                    raise CycleError(path[path.index(dep.name):])
                if mark is None:
                    state[dep.name] = _VISITING
                    stack.append((dep.name, iter(graph[dep.name])))
                    break
            else:
                stack.pop()
                state[node] = _VISITED
                order.append(node)

    depth: dict[str, int] = {}
    for name in order:
        depth[name] = 1 + max((depth[d.name] for d in graph[name]), default=-1)
    layers: list[tuple[str, ...]] = []
    for level in range(max(depth.values()) + 1):
        layers.append(tuple(n for n in order if depth[n] == level))

    return StartPlan(
        revision_id=revision.revision_id,
        order=tuple(order),
        layers=tuple(layers),
        edges=graph,
    )
