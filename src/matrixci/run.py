# run.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from . import settings
from .cache import CacheStore
from .dag import job_graph
from .errors import CIError
from .matrix import Selector, expand_all, select
from .model import JobInstance, JobStatus, JobTemplate, Pipeline, TriggerEvent, Verdict
from .scheduler import Scheduler
from .trigger import TriggerFilter, any_event
from .ui.console import Console, get_console


@dataclass
class Run:
    """One pipeline execution, created only for an accepted trigger event."""
    trigger: TriggerEvent
    job_instances: List[JobInstance]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    verdict: Verdict = Verdict.PENDING


@dataclass(frozen=True)
class InstanceOutcome:
    job: str
    name: str
    cell: str
    binding: Dict[str, Any]
    status: str
    optional: bool
    steps_run: int
    failed_step: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    duration: Optional[float] = None

    @classmethod
    def from_instance(cls, inst: JobInstance) -> "InstanceOutcome":
        failed_step = None
        error_kind = None
        message = None
        if inst.error is not None:
            error_kind = type(inst.error).__name__
            if isinstance(inst.error, CIError):
                message = inst.error.message
                failed_step = inst.error.step if inst.status is JobStatus.FAILED else None
            else:
                message = str(inst.error)
        return cls(
            job=inst.job,
            name=inst.name,
            cell=inst.cell,
            binding={k: v for k, v in inst.binding.items()},
            status=inst.status.value,
            optional=inst.template.optional,
            steps_run=len(inst.step_results),
            failed_step=failed_step,
            error_kind=error_kind,
            message=message,
            duration=inst.duration,
        )


@dataclass(frozen=True)
class RunReport:
    run_id: str
    trigger: TriggerEvent
    verdict: Verdict
    outcomes: Tuple[InstanceOutcome, ...]

    @property
    def failures(self) -> List[InstanceOutcome]:
        """Every required instance that did not succeed."""
        return [o for o in self.outcomes if not o.optional and o.status != JobStatus.SUCCEEDED.value]

    @property
    def exit_code(self) -> int:
        return 0 if self.verdict is Verdict.SUCCESS else 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "trigger": {
                "kind": self.trigger.kind.value,
                "branch": self.trigger.branch,
                "changed_paths": sorted(self.trigger.changed_paths),
            },
            "verdict": self.verdict.value,
            "instances": [o.__dict__ for o in self.outcomes],
            "failures": [
                {"job": o.job, "binding": o.binding, "status": o.status} for o in self.failures
            ],
        }


def aggregate(instances: Iterable[JobInstance]) -> Tuple[Verdict, List[Tuple[str, Dict[str, Any], JobStatus]]]:
    """
    Verdict once every instance is terminal: Success iff every required
    (non-optional) instance Succeeded. Also returns (job, binding, status)
    for each required instance that did not.
    """
    instances = list(instances)
    if any(not i.status.is_terminal for i in instances):
        return Verdict.PENDING, []

    failures = [
        (i.job, dict(i.binding), i.status)
        for i in instances
        if not i.template.optional and i.status is not JobStatus.SUCCEEDED
    ]
    return (Verdict.FAILURE if failures else Verdict.SUCCESS), failures


def _templates_of(jobs: Pipeline | Sequence[JobTemplate]) -> Tuple[str, List[JobTemplate], Optional[TriggerFilter]]:
    if isinstance(jobs, Pipeline):
        return jobs.name, list(jobs.jobs), jobs.triggers
    return "workflow", list(jobs), None


def plan_run(
    jobs: Pipeline | Sequence[JobTemplate],
    *,
    selectors: Sequence[Selector] = (),
) -> List[JobInstance]:
    """Validate and expand without running anything. Raises ConfigurationError."""
    _name, templates, _triggers = _templates_of(jobs)
    return select(expand_all(templates), selectors)


def plan_stages(
    jobs: Pipeline | Sequence[JobTemplate],
    *,
    selectors: Sequence[Selector] = (),
) -> List[List[JobInstance]]:
    """
    The planned instances grouped by dependency depth: jobs of a stage only
    need jobs of earlier stages. Without `needs` there is a single stage.
    """
    by_job: Dict[str, List[JobInstance]] = {}
    for inst in plan_run(jobs, selectors=selectors):
        by_job.setdefault(inst.job, []).append(inst)
    graph = job_graph((group[0].template for group in by_job.values()), narrowed=True)
    return [[inst for name in stage for inst in by_job[name]] for stage in graph.stages]


def execute_run(
    jobs: Pipeline | Sequence[JobTemplate],
    event: TriggerEvent,
    *,
    triggers: Optional[TriggerFilter] = None,
    selectors: Sequence[Selector] = (),
    max_workers: int | None = None,
    repo_root: str | Path = ".",
    cache_root: str | Path | None = settings.CACHE_DIR,
    console: Optional[Console] = None,
    default_timeout: float | None = settings.STEP_TIMEOUT,
) -> Optional[RunReport]:
    """
    Trigger filter -> Run -> matrix expansion -> scheduling -> verdict.

    Returns None when the event is rejected (no Run is created).
    Raises ConfigurationError before any instance exists if the definition
    is malformed.
    """
    console = console or get_console()
    name, templates, pipeline_triggers = _templates_of(jobs)
    trigger_filter = triggers or pipeline_triggers or any_event()

    decision = trigger_filter.decide(event)
    if not decision:
        console.print_trigger_rejected(decision.reason)
        return None

    instances = select(expand_all(templates), selectors)
    run = Run(trigger=event, job_instances=instances)
    console.print_run_started(run.id, name, event, len(instances))

    cache = CacheStore(cache_root) if cache_root is not None else None
    scheduler = Scheduler(
        max_workers=max_workers,
        repo_root=repo_root,
        cache=cache,
        console=console,
        default_timeout=default_timeout,
    )
    scheduler.run(run.job_instances)

    run.verdict, _failures = aggregate(run.job_instances)
    return RunReport(
        run_id=run.id,
        trigger=event,
        verdict=run.verdict,
        outcomes=tuple(InstanceOutcome.from_instance(i) for i in run.job_instances),
    )
