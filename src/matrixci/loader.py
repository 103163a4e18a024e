"""Workflow loading.

CONTRACT
- Inputs: path to a Python workflow (`*.py`) or a YAML document (`*.yml`/`*.yaml`)
- Outputs:
  - Pipeline (name, job templates, trigger filter or None)
- Invariants:
  - YAML keys accept `snake_case` or `kebab-case` (`fail_fast` / `fail-fast`)
  - Unknown YAML keys are rejected
- Failure:
  - Raises ConfigurationError for a missing file, unsupported suffix,
    unparsable YAML, schema violations, undefined `uses` actions, or a
    Python workflow that does not produce job templates
"""

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError
from .model import JobTemplate, Pipeline, StepSpec, TriggerKind
from .trigger import TriggerFilter, TriggerRule


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=_kebab)


# -------------------- Schemas --------------------

class StepModel(_Model):
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    cwd: Optional[str] = None
    continue_on_error: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)
    env: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _one_command(self) -> "StepModel":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class JobModel(_Model):
    steps: List[StepModel] = Field(min_length=1)
    matrix: Dict[str, List[Any]] = Field(default_factory=dict)
    fail_fast: bool = True
    optional: bool = False
    needs: List[str] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    inputs: List[str] = Field(default_factory=list)
    requires: List[str] = Field(default_factory=list)
    cache_dirs: List[str] = Field(default_factory=list)
    cache_enabled: bool = True
    cache_keep: int = Field(default=3, ge=1)


class TriggerModel(_Model):
    branches: List[str] = Field(default_factory=list)
    paths_ignore: List[str] = Field(default_factory=list)


class WorkflowModel(_Model):
    name: str = "workflow"
    triggers: Optional[Dict[TriggerKind, Optional[TriggerModel]]] = None
    actions: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobModel] = Field(min_length=1)


# -------------------- YAML --------------------

def _str_env(env: Dict[str, Any]) -> Dict[str, str]:
    return {k: str(v) for k, v in env.items()}


def _to_step(job_name: str, s: StepModel, actions: Dict[str, str]) -> StepSpec:
    run = s.run
    if s.uses is not None:
        if s.uses not in actions:
            raise ConfigurationError(
                f"step uses undefined action {s.uses!r}",
                job=job_name,
                step=s.name,
                details={"known_actions": sorted(actions)},
            )
        run = actions[s.uses]
    return StepSpec(
        name=s.name,
        run=run,
        cwd=s.cwd,
        continue_on_error=s.continue_on_error,
        timeout=s.timeout,
        env=_str_env(s.env),
    )


def pipeline_from_dict(data: Any, *, source: str = "<dict>") -> Pipeline:
    """Validate a parsed workflow document and turn it into a Pipeline."""
    try:
        doc = WorkflowModel.model_validate(data)
    except ValidationError as e:
        details = {
            ".".join(str(p) for p in err["loc"]) or "<root>": err["msg"] for err in e.errors()
        }
        raise ConfigurationError(f"invalid workflow document {source}", details=details) from e

    jobs: List[JobTemplate] = []
    for name, j in doc.jobs.items():
        jobs.append(
            JobTemplate(
                name=name,
                steps=tuple(_to_step(name, s, doc.actions) for s in j.steps),
                matrix=tuple((axis, tuple(values)) for axis, values in j.matrix.items()),
                fail_fast=j.fail_fast,
                optional=j.optional,
                needs=tuple(j.needs),
                env=_str_env(j.env),
                inputs=tuple(j.inputs),
                requires=tuple(j.requires),
                cache_dirs=tuple(j.cache_dirs),
                cache_enabled=j.cache_enabled,
                cache_keep=j.cache_keep,
            )
        )

    trigger_filter = None
    if doc.triggers is not None:
        rules = []
        for kind, t in doc.triggers.items():
            t = t or TriggerModel()
            rules.append(TriggerRule(kind=kind, branches=tuple(t.branches), paths_ignore=tuple(t.paths_ignore)))
        trigger_filter = TriggerFilter(rules=tuple(rules))

    return Pipeline(name=doc.name, jobs=tuple(jobs), triggers=trigger_filter)


def _load_yaml(path: Path) -> Pipeline:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"could not parse {path.name}", details={"error": str(e)}) from e
    return pipeline_from_dict(data, source=path.name)


# -------------------- Python --------------------

def _load_python(path: Path) -> Pipeline:
    """
    The file must define either:
      - workflow() -> List[JobTemplate] | Pipeline
      - JOBS = [JobTemplate, ...]
    and may define TRIGGERS = triggers(...) when it returns a plain list.
    """
    module_name = f"matrixci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise ConfigurationError(
                    "workflow() was called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from matrixci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if isinstance(jobs, Pipeline):
        return jobs

    if not isinstance(jobs, list) or not all(isinstance(j, JobTemplate) for j in jobs):
        raise ConfigurationError(
            "Workflow must return/define a List[JobTemplate] or a Pipeline. "
            "Define workflow() -> List[JobTemplate] or JOBS = [JobTemplate, ...].",
            details={"file": path.name},
        )

    trigger_filter = globals_dict.get("TRIGGERS")
    if trigger_filter is not None and not isinstance(trigger_filter, TriggerFilter):
        raise ConfigurationError("TRIGGERS must be built with triggers(...)", details={"file": path.name})

    return Pipeline(name=path.stem, jobs=tuple(jobs), triggers=trigger_filter)


def load_workflow(path: str | Path) -> Pipeline:
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in (".yml", ".yaml"):
        return _load_yaml(wf_path)
    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    raise ConfigurationError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")
