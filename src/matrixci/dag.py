# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Set

from .errors import ConfigurationError
from .model import JobTemplate


@dataclass
class JobGraph:
    """
    Job-level `needs` graph of one run.

    dependents: job -> jobs that need it
    indegree:   job -> number of jobs it still waits for
    stages:     jobs grouped so that every job only needs jobs of earlier
                stages; stage order within a stage follows declaration order
    """
    dependents: Dict[str, Set[str]]
    indegree: Dict[str, int]
    stages: List[List[str]]


def job_graph(jobs: Iterable[JobTemplate], *, narrowed: bool = False) -> JobGraph:
    """
    Build the graph and its stages. Independent jobs (no `needs`) all land in
    the first stage.

    `narrowed` marks a run cut down by selectors: needs on jobs left out of
    it are dropped instead of rejected.

    Raises ConfigurationError for duplicate names, undefined needs and cycles.
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError("duplicate job names", details={"jobs": dupes})

    known = set(names)
    dependents: Dict[str, Set[str]] = {n: set() for n in names}
    indegree: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in known:
                if narrowed:
                    continue
                raise ConfigurationError(
                    f"job needs undefined job {need!r}",
                    job=job.name,
                    details={"known_jobs": sorted(known)},
                )
            if job.name not in dependents[need]:
                dependents[need].add(job.name)
                indegree[job.name] += 1

    stages: List[List[str]] = []
    waiting = dict(indegree)
    stage = [n for n in names if waiting[n] == 0]
    while stage:
        stages.append(stage)
        for node in stage:
            for child in dependents[node]:
                waiting[child] -= 1
        done = {n for s in stages for n in s}
        stage = [n for n in names if n not in done and waiting[n] == 0]

    placed = sum(len(s) for s in stages)
    if placed != len(names):
        stuck = sorted(n for n, d in waiting.items() if d > 0)
        raise ConfigurationError("job dependencies form a cycle", details={"stuck": stuck})

    return JobGraph(dependents=dependents, indegree=indegree, stages=stages)
