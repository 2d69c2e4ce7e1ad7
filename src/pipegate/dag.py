# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .errors import ConfigError, CycleDetected
from .model import Job, Pipeline


def build_graph(
    deps: Mapping[str, Iterable[str]],
    *,
    what: str = "job",
) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency + in-degree from a {name: [names it needs]} mapping.

    Edge direction is dep -> dependent (dep must run before dependent).
    """
    name_set = set(deps)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for name, needs in deps.items():
        for dep in needs:
            if dep not in name_set:
                raise ConfigError(
                    f"{what.capitalize()} '{name}' needs missing {what} '{dep}'. "
                    f"Known {what}s: {sorted(name_set)}"
                )
            if name not in adj[dep]:
                adj[dep].add(name)
                indeg[name] += 1

    return adj, indeg


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.id: str (unique)
      - job.needs: ids of jobs that must finish BEFORE this job
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise ConfigError(f"Duplicate job ids found: {dupes}")
    return build_graph({j.id: j.needs for j in jobs}, what="job")


def find_cycle(adj: Mapping[str, Set[str]], nodes: Iterable[str]) -> List[str]:
    """Return one cycle among `nodes` as [a, b, ..., a]."""
    nodes = set(nodes)
    state: Dict[str, int] = {}  # 1 = on stack, 2 = done
    stack: List[str] = []

    def visit(n: str) -> List[str]:
        state[n] = 1
        stack.append(n)
        for m in sorted(adj.get(n, set())):
            if m not in nodes:
                continue
            if state.get(m) == 1:
                return stack[stack.index(m):] + [m]
            if m not in state:
                found = visit(m)
                if found:
                    return found
        stack.pop()
        state[n] = 2
        return []

    for n in sorted(nodes):
        if n not in state:
            found = visit(n)
            if found:
                return found
    return sorted(nodes)


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    *,
    where: str = "pipeline",
) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (waves).
    Each wave can run in parallel; no order is implied inside a wave.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level))

    if processed != len(indeg):
        stuck = [n for n, d in indeg.items() if d > 0]
        raise CycleDetected(find_cycle(adj, stuck), where=where)

    return levels


def job_waves(pipeline: Pipeline) -> List[List[str]]:
    adj, indeg = build_dag(list(pipeline.jobs))
    return topo_levels(adj, indeg, where=f"pipeline '{pipeline.name}'")


def pipeline_order(pipelines: Iterable[Pipeline]) -> List[str]:
    """Order pipelines so every pipeline comes after the ones it `requires`."""
    pipelines = list(pipelines)
    names = [p.name for p in pipelines]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate pipeline names found: {dupes}")

    adj, indeg = build_graph({p.name: p.requires for p in pipelines}, what="pipeline")
    return [name for level in topo_levels(adj, indeg, where="workflow") for name in level]
