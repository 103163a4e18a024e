from .dsl import job, sh, step, matrix, wf, pipeline, triggers, on_push, on_merge_proposal, JobBuilder, build
from .errors import CIError, StepFailure, TimeoutFailure, CancellationFailure, ConfigurationError
from .model import JobTemplate, StepSpec, JobInstance, JobStatus, TriggerEvent, TriggerKind, Verdict, Pipeline
from .run import execute_run, RunReport

__all__ = [
    "job", "sh", "step", "matrix", "wf", "pipeline", "triggers", "on_push", "on_merge_proposal",
    "JobBuilder", "build",
    "CIError", "StepFailure", "TimeoutFailure", "CancellationFailure", "ConfigurationError",
    "JobTemplate", "StepSpec", "JobInstance", "JobStatus", "TriggerEvent", "TriggerKind", "Verdict", "Pipeline",
    "execute_run", "RunReport",
]
