# model.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

if TYPE_CHECKING:
    from .trigger import TriggerFilter

# A step command is opaque: a shell string or a callable taking a StepContext.
Command = Union[str, Callable[["StepContext"], Any]]


class TriggerKind(str, Enum):
    PUSH = "push"
    MERGE_PROPOSAL = "merge_proposal"


@dataclass(frozen=True)
class TriggerEvent:
    """An inbound event (push or merge proposal) that may start a Run."""
    kind: TriggerKind
    branch: str
    changed_paths: frozenset[str] = frozenset()


@dataclass(frozen=True)
class StepSpec:
    """A single command (step) inside a CI job."""
    name: str
    run: Command
    cwd: str | None = None
    continue_on_error: bool = False
    timeout: float | None = None   # seconds; exceeding it fails the step
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class JobTemplate:
    """
    A CI job: ordered steps expanded over a matrix of axes.

    `matrix` keeps axis order (it drives instance naming and ordering).
    `needs` is empty for independent jobs, which is the default.
    """
    name: str
    steps: Tuple[StepSpec, ...]
    matrix: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ()
    fail_fast: bool = True
    optional: bool = False
    needs: Tuple[str, ...] = ()

    env: Mapping[str, str] = field(default_factory=dict)
    inputs: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()

    # cache knobs
    cache_dirs: Tuple[str, ...] = ()
    cache_enabled: bool = True
    cache_keep: int = 3

    @property
    def axes(self) -> List[str]:
        return [axis for axis, _values in self.matrix]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class Verdict(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class StepResult:
    name: str
    ok: bool
    exit_code: int | None = None
    duration: float = 0.0
    timed_out: bool = False
    continued: bool = False        # failed, but tolerated by continue_on_error
    output: str = ""


@dataclass(frozen=True)
class StepContext:
    """
    What a callable command gets to see about the instance running it.

    `stop` is set when the step ran past its timeout; long-running callables
    should poll it and return. The next step never starts before they do.
    """
    job: str
    instance: str
    step: str
    binding: Mapping[str, Any]
    env: Mapping[str, str]
    cwd: str
    stop: threading.Event = field(default_factory=threading.Event, compare=False, repr=False)


@dataclass
class JobInstance:
    """
    One matrix cell of a JobTemplate. Created by the matrix expander,
    mutated only by the scheduler/executor that owns it.
    """
    template: JobTemplate
    binding: Dict[str, Any]
    steps: Tuple[StepSpec, ...]
    env: Dict[str, str] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    step_cursor: int = 0
    step_results: List[StepResult] = field(default_factory=list)
    error: Optional[Exception] = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def job(self) -> str:
        return self.template.name

    @property
    def name(self) -> str:
        if not self.binding:
            return self.template.name
        values = ", ".join(str(v) for v in self.binding.values())
        return f"{self.template.name} ({values})"

    @property
    def cell(self) -> str:
        """Selector that reproduces just this instance: job:axis=value,..."""
        if not self.binding:
            return self.template.name
        pairs = ",".join(f"{k}={v}" for k, v in self.binding.items())
        return f"{self.template.name}:{pairs}"

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass(frozen=True)
class Pipeline:
    """A named set of job templates plus the trigger rules that start it."""
    name: str
    jobs: Tuple[JobTemplate, ...]
    triggers: Optional["TriggerFilter"] = None
