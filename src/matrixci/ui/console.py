"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..model import JobInstance, TriggerEvent
    from ..run import RunReport


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-step progress lines
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        event: "TriggerEvent",
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Workflow: {workflow}",
            f"Trigger: {event.kind.value} to {event.branch} ({len(event.changed_paths)} changed path(s))",
            f"Instances: {instance_count}",
            "",
        )

    def print_trigger_rejected(self, reason: str) -> None:
        self._emit(f"NOT TRIGGERED: {reason}")

    def print_plan_instance(self, instance: "JobInstance") -> None:
        """Print one expanded instance of the plan."""
        flags = []
        if not instance.template.fail_fast:
            flags.append("fail-fast off")
        if instance.template.optional:
            flags.append("optional")
        if instance.template.needs:
            flags.append(f"needs {', '.join(instance.template.needs)}")
        suffix = f" [{'; '.join(flags)}]" if flags else ""
        self._emit(f"  {instance.name}{suffix}")
        if self.debug:
            for step in instance.steps:
                self._emit(f"      - {step.name}")

    def print_instance_start(self, instance: "JobInstance") -> None:
        if not self.quiet:
            self._emit(f"[{instance.name}] JOB STARTED")

    def print_step(self, instance: "JobInstance", step: str) -> None:
        if not self.quiet:
            self._emit(f"[{instance.name}] STEP: {step}")

    def print_step_failed(
        self,
        instance: "JobInstance",
        step: str,
        exit_code: Optional[int] = None,
        output: str = "",
        continued: bool = False,
    ) -> None:
        """Print failure message for a step; output tail only in debug mode."""
        label = "STEP FAILED (continuing)" if continued else "STEP FAILED"
        lines = [f"[{instance.name}] {label}: {step}"]
        if exit_code is not None:
            lines.append(f"[{instance.name}] Exit code: {exit_code}")
        if self.debug and output:
            lines.extend(f"[{instance.name}] | {line}" for line in output.rstrip().splitlines())
        self._emit(*lines)

    def print_instance_finished(self, instance: "JobInstance") -> None:
        msg = f"[{instance.name}] STATUS: {instance.status.value}"
        if instance.error is not None and instance.status.value == "cancelled":
            msg += f" ({instance.error.message})"
        self._emit(msg)

    def print_cache_hit(self, instance: "JobInstance", reason: str) -> None:
        self._emit(f"[{instance.name}] CACHE: hit ({reason})")

    def print_cache_miss(self, instance: "JobInstance", reason: str = "cache miss") -> None:
        self._emit(f"[{instance.name}] CACHE: {reason}")

    def print_cache_saved(self, instance: "JobInstance", key: str) -> None:
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._emit(f"[{instance.name}] CACHE: saved ({short_key})")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for o in report.outcomes:
            status = "SUCCESS" if o.status == "succeeded" else o.status.upper()
            if o.optional:
                status += " (optional)"
            lines.append(f"  {o.name}: {status}")
        lines.append("")
        lines.append(f"VERDICT: {report.verdict.value.upper()}")
        if report.failures:
            lines.append("Failing cells:")
            for o in report.failures:
                why = f"step '{o.failed_step}'" if o.failed_step else (o.message or o.status)
                lines.append(f"  {o.cell}: {o.status} ({why})")
            lines.append("")
            lines.append("Reproduce one cell with:")
            lines.append(f"  matrixci run --only '{report.failures[0].cell}'")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message to stderr."""
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            self._emit("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
