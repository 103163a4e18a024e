# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .dag import job_graph
from .errors import ConfigurationError
from .model import JobInstance, JobTemplate, StepSpec

# ${{ matrix.os }} style expressions inside step names, commands, cwd and env
MATRIX_EXPR = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


def _interpolate(text: str, binding: Mapping[str, Any], *, job: str, step: str | None = None) -> str:
    def sub(m: re.Match) -> str:
        axis = m.group(1)
        if axis not in binding:
            raise ConfigurationError(
                f"matrix expression references undeclared axis {axis!r}",
                job=job,
                step=step,
                details={"expression": m.group(0), "axes": list(binding)},
            )
        return str(binding[axis])

    return MATRIX_EXPR.sub(sub, text)


def _resolve_step(step: StepSpec, binding: Mapping[str, Any], job: str) -> StepSpec:
    name = _interpolate(step.name, binding, job=job)
    run = step.run
    if isinstance(run, str):
        run = _interpolate(run, binding, job=job, step=name)
    cwd = _interpolate(step.cwd, binding, job=job, step=name) if step.cwd else step.cwd
    env = {k: _interpolate(str(v), binding, job=job, step=name) for k, v in step.env.items()}
    return replace(step, name=name, run=run, cwd=cwd, env=env)


def _axis_env(binding: Mapping[str, Any]) -> Dict[str, str]:
    return {f"MATRIX_{axis.upper().replace('-', '_')}": str(v) for axis, v in binding.items()}


def validate_template(template: JobTemplate) -> None:
    """Raise ConfigurationError if the template cannot be expanded."""
    if not template.name:
        raise ConfigurationError("job has an empty name")
    if not template.steps:
        raise ConfigurationError("job has no steps", job=template.name)

    seen: set[str] = set()
    for axis, values in template.matrix:
        if axis in seen:
            raise ConfigurationError(f"duplicate matrix axis {axis!r}", job=template.name)
        seen.add(axis)
        if len(values) == 0:
            raise ConfigurationError(f"matrix axis {axis!r} has no values", job=template.name)

    for step in template.steps:
        if not step.name:
            raise ConfigurationError("step has an empty name", job=template.name)
        if step.timeout is not None and step.timeout <= 0:
            raise ConfigurationError(
                "step timeout must be positive",
                job=template.name,
                step=step.name,
                details={"timeout": step.timeout},
            )

    # Expression check against a representative binding (first value per axis):
    # every cell declares the same axes, so one pass finds every bad reference.
    probe = {axis: values[0] for axis, values in template.matrix}
    for k, v in template.env.items():
        _interpolate(str(v), probe, job=template.name)
    for step in template.steps:
        _resolve_step(step, probe, template.name)


def expand(template: JobTemplate) -> List[JobInstance]:
    """
    Cartesian product of the template's axes, one JobInstance per tuple.

    Axis order is preserved, so the result is deterministic. A template with
    no axes yields exactly one instance with an empty binding.
    """
    validate_template(template)

    axes = [axis for axis, _ in template.matrix]
    value_lists = [values for _, values in template.matrix]

    instances: List[JobInstance] = []
    for combo in itertools.product(*value_lists):
        binding = dict(zip(axes, combo))
        env = {k: _interpolate(str(v), binding, job=template.name) for k, v in template.env.items()}
        env.update(_axis_env(binding))
        steps = tuple(_resolve_step(s, binding, template.name) for s in template.steps)
        instances.append(JobInstance(template=template, binding=binding, steps=steps, env=env))
    return instances


def expand_all(templates: Sequence[JobTemplate]) -> List[JobInstance]:
    """
    Validate every template (and the job graph) before creating anything,
    then expand them all. A ConfigurationError therefore leaves zero instances.
    """
    if not templates:
        raise ConfigurationError("workflow defines no jobs")
    for t in templates:
        validate_template(t)
    job_graph(templates)  # rejects duplicate, undefined and cyclic needs

    out: List[JobInstance] = []
    for t in templates:
        out.extend(expand(t))
    return out


# ---------------------------------------------------------------------
# Cell selection (reproduce one matrix cell in isolation)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Selector:
    job: str
    constraints: Tuple[Tuple[str, str], ...] = ()

    def matches(self, instance: JobInstance) -> bool:
        if instance.job != self.job:
            return False
        return all(str(instance.binding.get(axis)) == value for axis, value in self.constraints)


def parse_selector(text: str) -> Selector:
    """Parse `job` or `job:axis=value,axis=value`."""
    job, _, rest = text.strip().partition(":")
    if not job:
        raise ConfigurationError(f"invalid selector {text!r}")

    constraints: List[Tuple[str, str]] = []
    for part in filter(None, (p.strip() for p in rest.split(","))):
        axis, eq, value = part.partition("=")
        if not eq or not axis:
            raise ConfigurationError(f"invalid selector {text!r}", details={"expected": "job:axis=value,..."})
        constraints.append((axis.strip(), value.strip()))
    return Selector(job=job, constraints=tuple(constraints))


def select(instances: Iterable[JobInstance], selectors: Sequence[Selector]) -> List[JobInstance]:
    """Keep the instances matching any selector; no selectors keeps everything."""
    instances = list(instances)
    if not selectors:
        return instances

    templates = {i.job: i.template for i in instances}
    for sel in selectors:
        if sel.job not in templates:
            raise ConfigurationError(
                f"selector names unknown job {sel.job!r}", details={"known_jobs": sorted(templates)}
            )
        axes = templates[sel.job].axes
        for axis, _value in sel.constraints:
            if axis not in axes:
                raise ConfigurationError(f"selector names unknown axis {axis!r}", job=sel.job, details={"axes": axes})

    selected = [i for i in instances if any(sel.matches(i) for sel in selectors)]
    if not selected:
        raise ConfigurationError("selectors matched no matrix cells", details={"selectors": [s.job for s in selectors]})
    return selected
