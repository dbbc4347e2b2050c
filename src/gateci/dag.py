# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from .errors import CyclicDependency, DuplicateId
from .matrix import expand
from .model import JobDescriptor, JobInstance
from .store import JobStore


@dataclass
class InstanceGraph:
    """
    Arena of job instances addressed by index.

    deps[i]       -> indexes that must settle before instance i runs
    dependents[i] -> indexes that list i as a dependency
    """
    instances: List[JobInstance] = field(default_factory=list)
    deps: List[Set[int]] = field(default_factory=list)
    dependents: List[Set[int]] = field(default_factory=list)
    by_descriptor: Dict[str, List[int]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.instances)

    def index_of(self, instance_id: str) -> int:
        for i, inst in enumerate(self.instances):
            if inst.id == instance_id:
                return i
        raise KeyError(instance_id)

    def ids(self) -> List[str]:
        return [inst.id for inst in self.instances]


def find_cycle(descriptors: Iterable[JobDescriptor]) -> Optional[List[str]]:
    """
    Return one dependency cycle as a path (first node repeated at the end),
    or None if the descriptors form a DAG. Unknown ids are ignored here.
    """
    needs: Dict[str, List[str]] = {d.id: list(d.needs) for d in descriptors}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in needs}

    for root in needs:
        if color[root] != WHITE:
            continue
        # iterative DFS; stack holds (node, iterator over its needs)
        path: List[str] = [root]
        color[root] = GREY
        stack = [iter(needs[root])]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                stack.pop()
                color[path.pop()] = BLACK
                continue
            if nxt not in color:
                continue
            if color[nxt] == GREY:
                start = path.index(nxt)
                return path[start:] + [nxt]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(needs[nxt]))
    return None


def build_graph(
    descriptors: Iterable[JobDescriptor],
    env: Optional[Mapping[str, str]] = None,
) -> InstanceGraph:
    """
    Build the instance-level DAG.

    Every instance of a descriptor depends on every instance of each
    descriptor it `needs` (full fan-in join).
    A JobStore passed in is frozen once it validates.
    """
    store = descriptors if isinstance(descriptors, JobStore) else JobStore(descriptors)
    descs = store.all()

    cycle = find_cycle(descs)
    if cycle:
        raise CyclicDependency(cycle)
    store.freeze()

    graph = InstanceGraph()
    seen: Set[str] = set()
    for d in descs:
        idxs: List[int] = []
        for inst in expand(d, env):
            if inst.id in seen:
                raise DuplicateId(inst.id)
            seen.add(inst.id)
            idxs.append(len(graph.instances))
            graph.instances.append(inst)
            graph.deps.append(set())
            graph.dependents.append(set())
        graph.by_descriptor[d.id] = idxs

    for d in descs:
        for i in graph.by_descriptor[d.id]:
            for dep_id in d.needs:
                for j in graph.by_descriptor[dep_id]:
                    graph.deps[i].add(j)
                    graph.dependents[j].add(i)

    return graph


def topo_levels(graph: InstanceGraph) -> List[List[str]]:
    """
    Convert the DAG into topological "levels".
    Each level can run in parallel. Advisory only: the scheduler starts an
    instance as soon as its own dependencies settle.
    """
    indeg = [len(d) for d in graph.deps]
    q = deque(sorted((i for i, d in enumerate(indeg) if d == 0), key=lambda i: graph.instances[i].id))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(graph.instances[node].id)
            processed += 1

            for child in sorted(graph.dependents[node], key=lambda i: graph.instances[i].id):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(sorted(level))

    if processed != len(indeg):
        stuck = sorted(graph.instances[i].id for i, d in enumerate(indeg) if d > 0)
        raise CyclicDependency(stuck)

    return levels
