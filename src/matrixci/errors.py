# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON run report
      - debugging without full tracebacks
    """
    message: str
    job: str | None = None
    step: str | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class StepFailure(CIError):
    """A step's command reported failure. Never retried automatically."""
    cmd: str = ""
    exit_code: int | None = None
    output: str = ""


@dataclass(eq=False)
class TimeoutFailure(StepFailure):
    """
    A step ran past its timeout; handled like a StepFailure.

    `abandoned`: a callable ignored its stop request and is still running, so
    the instance cannot move on even with continue_on_error.
    """
    timeout: float | None = None
    abandoned: bool = False


@dataclass(eq=False)
class CancellationFailure(CIError):
    """
    The instance was stopped by the scheduler (a fail-fast sibling failed,
    or a needed job did not succeed). Not a root cause on its own.
    """
    reason: str = ""


@dataclass(eq=False)
class ConfigurationError(CIError):
    """Malformed pipeline definition, detected before any instance runs."""
