# dag.py
from __future__ import annotations

import heapq
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from .errors import CyclicDependency, UnknownDependency
from .matrix import expand_all
from .model import Job, JobInstance


def _find_cycle(deps: List[FrozenSet[int]]) -> Optional[List[int]]:
    """Iterative DFS over `deps` edges; returns one cycle as a closed index path."""
    white, gray, black = 0, 1, 2
    color = [white] * len(deps)

    for root in range(len(deps)):
        if color[root] != white:
            continue
        color[root] = gray
        path = [root]
        stack = [iter(sorted(deps[root]))]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = black
                stack.pop()
                continue
            if color[nxt] == gray:
                return path[path.index(nxt):] + [nxt]
            if color[nxt] == white:
                color[nxt] = gray
                path.append(nxt)
                stack.append(iter(sorted(deps[nxt])))
    return None


@dataclass(frozen=True)
class Pipeline:
    """
    Arena of job instances plus index-based dependency edges.

    deps[i]        instances that must finish before instance i
    dependents[i]  instances waiting on instance i

    Edges are resolved from job names once, at build time; scheduling only
    ever works with indices.
    """
    instances: List[JobInstance]
    deps: List[FrozenSet[int]]
    dependents: List[FrozenSet[int]]

    @classmethod
    def build(cls, jobs: Iterable[Job], variables: Optional[Mapping[str, Any]] = None) -> "Pipeline":
        return cls.from_instances(expand_all(jobs, variables))

    @classmethod
    def from_instances(cls, instances: List[JobInstance]) -> "Pipeline":
        # descriptor group: every instance produced from one job
        groups: Dict[str, List[int]] = {}
        for idx, inst in enumerate(instances):
            groups.setdefault(inst.job.name, []).append(idx)

        deps: List[FrozenSet[int]] = []
        for inst in instances:
            edges: Set[int] = set()
            for need in inst.job.needs:
                if need == inst.job.name:
                    raise CyclicDependency([need, need])
                if need not in groups:
                    raise UnknownDependency(inst.job.name, need, known=list(groups))
                edges.update(groups[need])
            deps.append(frozenset(edges))

        cycle = _find_cycle(deps)
        if cycle is not None:
            names: List[str] = []
            for idx in cycle:
                job_name = instances[idx].job.name
                if not names or names[-1] != job_name:
                    names.append(job_name)
            raise CyclicDependency(names)

        dependents: List[Set[int]] = [set() for _ in instances]
        for idx, edges in enumerate(deps):
            for d in edges:
                dependents[d].add(idx)

        return cls(
            instances=list(instances),
            deps=deps,
            dependents=[frozenset(s) for s in dependents],
        )

    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.instances)

    def index(self, name: str) -> int:
        for idx, inst in enumerate(self.instances):
            if inst.name == name:
                return idx
        raise KeyError(name)

    def name(self, idx: int) -> str:
        return self.instances[idx].name

    def group(self, job_name: str) -> List[int]:
        return [i for i, inst in enumerate(self.instances) if inst.job.name == job_name]

    def ready(self, completed: Iterable[int], started: Iterable[int] = ()) -> FrozenSet[int]:
        """
        Instances not yet started whose whole dependency set is in `completed`.

        Pure function of its arguments; callers re-evaluate it after every
        state change.
        """
        done = frozenset(completed)
        seen = done | frozenset(started)
        return frozenset(
            i for i in range(len(self.instances))
            if i not in seen and self.deps[i] <= done
        )

    def downstream(self, idx: int) -> Set[int]:
        """Every transitive dependent of `idx`."""
        out: Set[int] = set()
        q = deque(self.dependents[idx])
        while q:
            node = q.popleft()
            if node in out:
                continue
            out.add(node)
            q.extend(self.dependents[node])
        return out

    def order(self) -> List[int]:
        """Topological order; ties broken by instance name."""
        indeg = [len(d) for d in self.deps]
        heap = [(self.instances[i].name, i) for i, d in enumerate(indeg) if d == 0]
        heapq.heapify(heap)
        out: List[int] = []
        while heap:
            _, node = heapq.heappop(heap)
            out.append(node)
            for child in self.dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(heap, (self.instances[child].name, child))
        return out

    def levels(self) -> List[List[int]]:
        """
        Convert the DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = [len(d) for d in self.deps]
        q = deque(sorted((i for i, d in enumerate(indeg) if d == 0), key=self.name))

        levels: List[List[int]] = []
        while q:
            level: List[int] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self.dependents[node], key=self.name):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels
