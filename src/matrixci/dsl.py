# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Optional, Dict, Sequence, Tuple, Union

from .errors import ConfigurationError
from .model import Command, JobTemplate, Pipeline, StepSpec, TriggerKind
from .trigger import TriggerFilter, TriggerRule


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: Command,
    *,
    cwd: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> StepSpec:
    """Create a step. `cmd` is a shell string or a callable(StepContext)."""
    return StepSpec(
        name=name,
        run=cmd,
        cwd=cwd,
        continue_on_error=continue_on_error,
        timeout=timeout,
        env={k: str(v) for k, v in (env or {}).items()},
    )


step = sh


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Ordered set of named axes.

    Example:
        job("check", sh(...), matrix=matrix(os=["ubuntu", "macos"], toolchain=["nightly"]))
    """
    def __init__(self, axes: Mapping[str, Iterable[Any]]):
        self.axes: Tuple[Tuple[str, Tuple[Any, ...]], ...] = tuple(
            (key, tuple(values)) for key, values in axes.items()
        )

    def size(self) -> int:
        n = 1
        for _axis, values in self.axes:
            n *= len(values)
        return n


def matrix(**axes: Iterable[Any]) -> Matrix:
    return Matrix(axes)


MatrixLike = Union[Matrix, Mapping[str, Iterable[Any]], None]


def _axes(m: MatrixLike) -> Tuple[Tuple[str, Tuple[Any, ...]], ...]:
    if m is None:
        return ()
    if isinstance(m, Matrix):
        return m.axes
    return Matrix(m).axes


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    matrix: MatrixLike = None,
    fail_fast: bool = True,
    optional: bool = False,
    needs: Optional[List[str]] = None,
    inputs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    cache_dirs: Optional[List[str]] = None,
    cache_enabled: bool = True,
    cache_keep: int = 3,
) -> JobTemplate:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ConfigurationError("job must have at least one step", job=name)

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobTemplate(
        name=name,
        steps=tuple(steps_final),
        matrix=_axes(matrix),
        fail_fast=fail_fast,
        optional=optional,
        needs=tuple(needs or ()),
        env={k: str(v) for k, v in (env or {}).items()},
        inputs=tuple(inputs or ()),
        requires=tuple(requires or ()),
        cache_dirs=tuple(cache_dirs or ()),
        cache_enabled=cache_enabled,
        cache_keep=cache_keep,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._axes: dict[str, tuple] = {}
        self._fail_fast: bool = True
        self._optional: bool = False
        self._inputs: list[str] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []

        self._cache_dirs: list[str] = []
        self._cache_enabled: bool = True
        self._cache_keep: int = 3

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(
        self,
        name: str,
        run: Command,
        cwd: str | None = None,
        *,
        continue_on_error: bool = False,
        timeout: float | None = None,
    ):
        self._steps.append(sh(name, run, cwd=cwd, continue_on_error=continue_on_error, timeout=timeout))
        return self

    def over(self, axis: str, *values: Any):
        """Add a matrix axis; call again for more axes (order is kept)."""
        self._axes[axis] = tuple(values)
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def optional(self, enabled: bool = True):
        self._optional = enabled
        return self

    def with_inputs(self, *paths: str):
        self._inputs.extend(paths)
        return self

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def cache_dirs(self, *dirs: str):
        self._cache_dirs = list(dirs)
        return self

    def cache_behavior(self, *, enabled: bool = True, keep: int = 3):
        self._cache_enabled = enabled
        self._cache_keep = keep
        return self

    def build(self) -> JobTemplate:
        return job(
            self.name,
            steps_list=self._steps,
            matrix=self._axes,
            fail_fast=self._fail_fast,
            optional=self._optional,
            needs=self._needs,
            inputs=self._inputs,
            env=self._env,
            requires=self._requires,
            cache_dirs=self._cache_dirs,
            cache_enabled=self._cache_enabled,
            cache_keep=self._cache_keep,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def on_push(branches: Sequence[str] = (), paths_ignore: Sequence[str] = ()) -> TriggerRule:
    return TriggerRule(TriggerKind.PUSH, tuple(branches), tuple(paths_ignore))


def on_merge_proposal(branches: Sequence[str] = (), paths_ignore: Sequence[str] = ()) -> TriggerRule:
    return TriggerRule(TriggerKind.MERGE_PROPOSAL, tuple(branches), tuple(paths_ignore))


def triggers(*rules: TriggerRule) -> TriggerFilter:
    return TriggerFilter(rules=tuple(rules))


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: JobTemplate) -> List[JobTemplate]:
    """
    Workflow definition helper.

        from matrixci import wf, job, sh

        def workflow():
            return wf(job(...), job(...))

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


def pipeline(name: str, *jobs: JobTemplate, on: Optional[TriggerFilter] = None) -> Pipeline:
    """Like wf(), but named and carrying trigger rules."""
    return Pipeline(name=name, jobs=tuple(jobs), triggers=on)
