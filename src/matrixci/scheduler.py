# scheduler.py
from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from . import settings
from .cache import CacheStore
from .dag import job_graph
from .errors import CancellationFailure
from .executor import CancelSignal, run_instance
from .model import JobInstance, JobStatus
from .ui.console import Console, get_console


class Scheduler:
    """
    Runs the JobInstances of one Run on a bounded thread pool.

    - jobs are independent unless a template declares `needs`; independent
      jobs are all dispatched at once and interleave freely
    - at most `max_workers` instances run; the rest wait as Pending in the
      pool queue
    - fail_fast: the first Failed instance of a job cancels its siblings
      (Pending ones never start, Running ones stop at the next step boundary)
    - nothing is ever retried
    """

    def __init__(
        self,
        *,
        max_workers: int | None = None,
        repo_root: str | Path = ".",
        cache: Optional[CacheStore] = None,
        console: Optional[Console] = None,
        default_timeout: float | None = settings.STEP_TIMEOUT,
    ):
        self.max_workers = max_workers or settings.default_workers()
        self.repo_root = Path(repo_root).resolve()
        self.cache = cache
        self.console = console or get_console()
        self.default_timeout = default_timeout

    def _dispatch(self, instance: JobInstance, signal: CancelSignal) -> JobInstance:
        on_failure = None
        if instance.template.fail_fast:
            def on_failure(inst: JobInstance) -> None:
                signal.cancel(f"fail-fast: sibling {inst.name} failed")

        return run_instance(
            instance,
            cancel=signal,
            repo_root=self.repo_root,
            cache=self.cache,
            console=self.console,
            on_failure=on_failure,
            default_timeout=self.default_timeout,
        )

    def _skip_job(self, instances: List[JobInstance], reason: str) -> None:
        for inst in instances:
            inst.status = JobStatus.CANCELLED
            inst.finished_at = time.time()
            inst.error = CancellationFailure(f"cancelled: {reason}", job=inst.name, reason=reason)
            self.console.print_instance_finished(inst)

    def run(self, instances: Sequence[JobInstance]) -> List[JobInstance]:
        instances = list(instances)
        by_job: Dict[str, List[JobInstance]] = {}
        for inst in instances:
            by_job.setdefault(inst.job, []).append(inst)

        # Only dependencies present in this run count (selectors may narrow it).
        # Cycles are rejected here, before anything runs.
        graph = job_graph((group[0].template for group in by_job.values()), narrowed=True)
        adj, indeg = graph.dependents, dict(graph.indegree)

        signals = {name: CancelSignal() for name in by_job}
        remaining = {name: len(group) for name, group in by_job.items()}
        ready: List[str] = list(graph.stages[0]) if graph.stages else []
        in_flight: Dict[Future, JobInstance] = {}

        def job_done(name: str) -> None:
            # Walk dependents: release them, or cancel them if this job did not pass.
            pending = [name]
            while pending:
                done_name = pending.pop()
                passed = all(i.status is JobStatus.SUCCEEDED for i in by_job[done_name])
                for nxt in sorted(adj[done_name]):
                    if by_job[nxt][0].status is not JobStatus.PENDING:
                        continue  # already cancelled through another need
                    if passed:
                        indeg[nxt] -= 1
                        if indeg[nxt] == 0:
                            ready.append(nxt)
                    else:
                        self._skip_job(by_job[nxt], f"needed job {done_name!r} did not succeed")
                        pending.append(nxt)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="matrixci") as pool:
            while ready or in_flight:
                # schedule every instance of every ready job
                while ready:
                    name = ready.pop(0)
                    for inst in by_job[name]:
                        fut = pool.submit(self._dispatch, inst, signals[name])
                        in_flight[fut] = inst

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    inst = in_flight.pop(fut)
                    try:
                        fut.result()
                    except Exception as e:
                        # executor bug, not a step failure: still terminal, still fail-fast
                        self.console.print_exception(e)
                        inst.error = e
                        inst.status = JobStatus.FAILED
                        inst.finished_at = time.time()
                        if inst.template.fail_fast:
                            signals[inst.job].cancel(f"fail-fast: sibling {inst.name} failed")

                    remaining[inst.job] -= 1
                    if remaining[inst.job] == 0:
                        job_done(inst.job)

        return instances
