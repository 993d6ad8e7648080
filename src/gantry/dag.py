# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Set, Tuple

from .errors import CycleError, DefinitionError
from .model import WorkflowDefinition

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class JobGraph:
    """
    Resolved dependency graph over job ids.

    `dependents[x]` are the jobs that need x; `needs[x]` are the jobs x needs.
    `order` is a topological order, `levels` groups jobs that may run in parallel.
    """
    needs: Dict[str, Tuple[str, ...]]
    dependents: Dict[str, Tuple[str, ...]]
    order: Tuple[str, ...]
    levels: Tuple[Tuple[str, ...], ...]

    @property
    def roots(self) -> Tuple[str, ...]:
        return tuple(j for j in self.order if not self.needs[j])


def build_dag(definition: WorkflowDefinition) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency (need -> dependents) and in-degree maps from `needs`.

    Requires:
      - job ids unique (guaranteed by the mapping)
      - every `needs` entry names a job of the same workflow
    """
    ids = list(definition.jobs)
    id_set = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in ids}
    indeg: Dict[str, int] = {n: 0 for n in ids}

    for job in definition.jobs.values():
        for need in job.needs:
            if need not in id_set:
                raise DefinitionError(
                    f"Job '{job.id}' needs missing job '{need}'. Known jobs: {sorted(id_set)}",
                    source=str(definition.source) if definition.source else None,
                )
            if need == job.id:
                raise CycleError([job.id, job.id])
            # edge need -> job (need must finish BEFORE job)
            if job.id not in adj[need]:
                adj[need].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def find_cycle(adj: Dict[str, Set[str]], order: List[str]) -> List[str] | None:
    """
    Three-colour DFS. Returns the first cycle found as a closed path
    (e.g. ["a", "b", "a"]) or None when the graph is acyclic.
    """
    colour = {n: _WHITE for n in adj}
    rank = {n: i for i, n in enumerate(order)}

    for start in order:
        if colour[start] != _WHITE:
            continue
        # explicit stack keeps deep graphs off the recursion limit
        path: List[str] = [start]
        stack = [iter(sorted(adj[start], key=rank.__getitem__))]
        colour[start] = _GREY
        while stack:
            child = next(stack[-1], None)
            if child is None:
                colour[path.pop()] = _BLACK
                stack.pop()
                continue
            if colour[child] == _GREY:
                return path[path.index(child):] + [child]
            if colour[child] == _WHITE:
                colour[child] = _GREY
                path.append(child)
                stack.append(iter(sorted(adj[child], key=rank.__getitem__)))
    return None


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int], order: List[str]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel. Ties keep declaration order.
    """
    rank = {n: i for i, n in enumerate(order)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n in order if indeg[n] == 0)

    levels: List[List[str]] = []
    while q:
        level = sorted(q, key=rank.__getitem__)
        q.clear()
        levels.append(level)
        for node in level:
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

    return levels


def build_graph(definition: WorkflowDefinition) -> JobGraph:
    """
    Resolve the job DAG for a workflow. Pure function of the definition.

    Raises:
        DefinitionError: a job needs an unknown job
        CycleError: the `needs` relation has a cycle
    """
    declared = list(definition.jobs)
    adj, indeg = build_dag(definition)

    cycle = find_cycle(adj, declared)
    if cycle:
        raise CycleError(cycle, source=str(definition.source) if definition.source else None)

    levels = topo_levels(adj, indeg, declared)
    order = tuple(n for level in levels for n in level)
    rank = {n: i for i, n in enumerate(declared)}

    return JobGraph(
        needs={j.id: tuple(dict.fromkeys(j.needs)) for j in definition.jobs.values()},
        dependents={n: tuple(sorted(adj[n], key=rank.__getitem__)) for n in declared},
        order=order,
        levels=tuple(tuple(level) for level in levels),
    )
