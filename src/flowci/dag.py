# dag.py
from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, List, Set, Tuple

from .errors import DefinitionError
from .model import JobDefinition

# dependency -> jobs waiting on it
Graph = Dict[str, Set[str]]


def build_dag(jobs: Iterable[JobDefinition]) -> Tuple[Graph, Dict[str, int]]:
    """
    Build the job graph.

    Returns (dependents, pending): for each job the set of jobs that need it,
    and how many dependencies each job is still waiting for. Jobs without
    `needs` are roots and start right away.
    """
    jobs = list(jobs)
    counts = Counter(j.name for j in jobs)
    duplicated = sorted(n for n, c in counts.items() if c > 1)
    if duplicated:
        raise DefinitionError(f"Duplicate job names found: {duplicated}", location="jobs")

    dependents: Graph = {j.name: set() for j in jobs}
    pending: Dict[str, int] = dict.fromkeys(dependents, 0)

    for j in jobs:
        for dep in set(j.needs):
            if dep not in dependents:
                raise DefinitionError(
                    f"Job '{j.name}' needs missing job '{dep}'. Known jobs: {sorted(dependents)}",
                    location=f"jobs.{j.name}.needs",
                )
            dependents[dep].add(j.name)
            pending[j.name] += 1

    return dependents, pending


def topo_levels(adj: Graph, indeg: Dict[str, int]) -> List[List[str]]:
    """
    Group jobs into stages; every job of a stage only needs jobs of earlier stages.

    Raises DefinitionError when some jobs can never become ready (a cycle).
    """
    remaining = dict(indeg)
    frontier = sorted(n for n, d in remaining.items() if d == 0)
    levels: List[List[str]] = []
    seen = 0

    while frontier:
        levels.append(frontier)
        seen += len(frontier)
        unlocked: Set[str] = set()
        for name in frontier:
            for child in adj.get(name, ()):
                remaining[child] -= 1
                if remaining[child] == 0:
                    unlocked.add(child)
        frontier = sorted(unlocked)

    if seen != len(remaining):
        stuck = sorted(n for n, d in remaining.items() if d > 0)
        raise DefinitionError(f"Job graph has a cycle. Stuck jobs: {stuck}", location="jobs")

    return levels


def validate(jobs: Iterable[JobDefinition]) -> List[List[str]]:
    """Check names, needs and acyclicity. Returns the stages."""
    return topo_levels(*build_dag(jobs))
