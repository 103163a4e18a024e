# executor.py
from __future__ import annotations

import os
import signal
import subprocess
import tarfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from . import settings
from .cache import CacheStore
from .errors import CancellationFailure, StepFailure, TimeoutFailure
from .model import JobInstance, JobStatus, StepContext, StepResult, StepSpec
from .ui.console import Console, get_console


class CancelSignal:
    """
    Cooperative cancellation shared by the sibling instances of one job.
    Checked between steps only; a step that already started always finishes.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _tail(text: str | bytes | None) -> str:
    if not text:
        return ""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    return text[-settings.OUTPUT_TAIL:]


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

def _kill_tree(proc: subprocess.Popen) -> None:
    # the shell runs in its own session on POSIX, so the whole group goes
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()


def _run_shell(instance: JobInstance, step: StepSpec, cwd: Path, env: dict, timeout: float | None) -> StepResult:
    try:
        proc = subprocess.Popen(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=os.name == "posix",
        )
    except OSError as e:
        raise StepFailure(f"could not start command: {e}", job=instance.name, step=step.name, cmd=step.run) from e

    try:
        output, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired as e:
        _kill_tree(proc)
        output, _ = proc.communicate()
        raise TimeoutFailure(
            f"step exceeded timeout of {timeout}s",
            job=instance.name,
            step=step.name,
            cmd=step.run,
            output=_tail(output),
            timeout=timeout,
        ) from e

    if proc.returncode != 0:
        raise StepFailure(
            f"command exited with {proc.returncode}",
            job=instance.name,
            step=step.name,
            cmd=step.run,
            exit_code=proc.returncode,
            output=_tail(output),
        )
    return StepResult(name=step.name, ok=True, exit_code=0, output=_tail(output))


class _StepTimedOut(Exception):
    def __init__(self, timeout: float, abandoned: bool):
        super().__init__(timeout)
        self.abandoned = abandoned


def _call_with_timeout(fn: Callable[[StepContext], Any], ctx: StepContext, timeout: float | None) -> Any:
    if timeout is None:
        return fn(ctx)

    box: dict = {}

    def target() -> None:
        try:
            box["value"] = fn(ctx)
        except (Exception, SystemExit) as e:  # re-raised in the calling thread
            box["error"] = e

    t = threading.Thread(target=target, name=f"step:{ctx.instance}:{ctx.step}", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        # ask it to stop and wait, so the next step never overlaps this one
        ctx.stop.set()
        t.join(settings.STOP_GRACE)
        raise _StepTimedOut(timeout, abandoned=t.is_alive())
    if "error" in box:
        raise box["error"]
    return box.get("value")


def _run_callable(instance: JobInstance, step: StepSpec, cwd: Path, env: dict, timeout: float | None) -> StepResult:
    ctx = StepContext(
        job=instance.job,
        instance=instance.name,
        step=step.name,
        binding=dict(instance.binding),
        env=env,
        cwd=str(cwd),
    )
    cmd = getattr(step.run, "__qualname__", repr(step.run))
    try:
        value = _call_with_timeout(step.run, ctx, timeout)
    except _StepTimedOut as e:
        message = f"step exceeded timeout of {timeout}s"
        if e.abandoned:
            message += f" and ignored its stop request for {settings.STOP_GRACE}s"
        raise TimeoutFailure(
            message, job=instance.name, step=step.name, cmd=cmd, timeout=timeout, abandoned=e.abandoned
        ) from e
    except SystemExit as e:
        # sys.exit() inside a step ends the step, not the run
        if e.code is None or e.code == 0:
            return StepResult(name=step.name, ok=True, exit_code=0)
        exit_code = e.code if isinstance(e.code, int) else 1
        raise StepFailure(
            f"command called sys.exit({e.code!r})", job=instance.name, step=step.name, cmd=cmd, exit_code=exit_code
        ) from e
    except Exception as e:
        raise StepFailure(
            f"command raised {type(e).__name__}: {e}", job=instance.name, step=step.name, cmd=cmd, output=repr(e)
        ) from e

    # None/True -> success, False -> failure, int -> exit code
    if value is None or value is True:
        return StepResult(name=step.name, ok=True, exit_code=0)
    if value is False:
        exit_code = 1
    elif isinstance(value, int):
        exit_code = value
    else:
        return StepResult(name=step.name, ok=True, exit_code=0, output=_tail(str(value)))

    if exit_code != 0:
        raise StepFailure(
            f"command exited with {exit_code}", job=instance.name, step=step.name, cmd=cmd, exit_code=exit_code
        )
    return StepResult(name=step.name, ok=True, exit_code=0)


def run_step(
    instance: JobInstance,
    step: StepSpec,
    repo_root: Path,
    *,
    default_timeout: float | None = None,
) -> StepResult:
    """Run one step to completion. Raises StepFailure (or TimeoutFailure)."""
    cwd = (repo_root / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        raise StepFailure(f"cwd not found: {cwd}", job=instance.name, step=step.name)

    env = os.environ.copy()
    env.update(instance.env)
    env.update(step.env)
    timeout = step.timeout if step.timeout is not None else default_timeout

    started = time.monotonic()
    if isinstance(step.run, str):
        result = _run_shell(instance, step, cwd, env, timeout)
    else:
        result = _run_callable(instance, step, cwd, env, timeout)
    result.duration = time.monotonic() - started
    return result


# ----------------------------------------------------------------------
# Instance state machine
# ----------------------------------------------------------------------

def _finish(instance: JobInstance, status: JobStatus, console: Console) -> JobInstance:
    instance.status = status
    instance.finished_at = time.time()
    console.print_instance_finished(instance)
    return instance


def _cancel(instance: JobInstance, reason: str, console: Console) -> JobInstance:
    instance.error = CancellationFailure(f"cancelled: {reason}", job=instance.name, reason=reason)
    return _finish(instance, JobStatus.CANCELLED, console)


def _restore_cache(instance: JobInstance, cache: CacheStore, repo_root: Path, console: Console) -> None:
    try:
        hit = cache.restore(instance, repo_root=repo_root)
    except (OSError, ValueError) as e:
        console.print_cache_miss(instance, f"restore skipped: {e}")
        return
    if hit.hit:
        console.print_cache_hit(instance, hit.reason)
    else:
        console.print_cache_miss(instance, hit.reason)


def _save_cache(instance: JobInstance, cache: CacheStore, repo_root: Path, console: Console) -> None:
    try:
        key, _manifest = cache.save(instance, repo_root=repo_root)
        cache.prune(instance.job, keep=instance.template.cache_keep)
    except (OSError, ValueError, tarfile.TarError) as e:
        console.print_cache_miss(instance, f"save failed: {e}")
        return
    console.print_cache_saved(instance, key)


def run_instance(
    instance: JobInstance,
    *,
    cancel: Optional[CancelSignal] = None,
    repo_root: str | Path = ".",
    cache: Optional[CacheStore] = None,
    console: Optional[Console] = None,
    on_failure: Optional[Callable[[JobInstance], None]] = None,
    default_timeout: float | None = settings.STEP_TIMEOUT,
) -> JobInstance:
    """
    Drive one JobInstance: Pending -> Running -> Succeeded | Failed | Cancelled.

    - steps run strictly in order from step_cursor
    - a failing step freezes step_cursor on itself and fails the instance,
      unless the step is continue_on_error (a timed-out callable that ignores
      its stop request fails the instance regardless)
    - `cancel` is checked before the first step and between steps
    - `on_failure` runs before the status turns Failed (the scheduler uses
      it to cancel fail-fast siblings)
    """
    if instance.status is not JobStatus.PENDING:
        raise ValueError(f"{instance.name} is {instance.status.value}, only pending instances can run")

    console = console or get_console()
    root = Path(repo_root).resolve()

    if cancel is not None and cancel.cancelled:
        return _cancel(instance, cancel.reason, console)

    instance.status = JobStatus.RUNNING
    instance.started_at = time.time()
    console.print_instance_start(instance)

    caching = cache is not None and instance.template.cache_enabled and bool(instance.template.cache_dirs)
    if caching:
        _restore_cache(instance, cache, root, console)

    while instance.step_cursor < len(instance.steps):
        if cancel is not None and cancel.cancelled:
            return _cancel(instance, cancel.reason, console)

        step = instance.steps[instance.step_cursor]
        console.print_step(instance, step.name)
        try:
            result = run_step(instance, step, root, default_timeout=default_timeout)
        except StepFailure as failure:
            # a callable still running past its timeout freezes the instance
            continued = step.continue_on_error and not getattr(failure, "abandoned", False)
            result = StepResult(
                name=step.name,
                ok=False,
                exit_code=failure.exit_code,
                timed_out=isinstance(failure, TimeoutFailure),
                continued=continued,
                output=failure.output,
            )
            instance.step_results.append(result)
            console.print_step_failed(
                instance, step.name, failure.exit_code, failure.output, continued=continued
            )
            if not continued:
                instance.error = failure
                if on_failure is not None:
                    on_failure(instance)
                return _finish(instance, JobStatus.FAILED, console)
        else:
            instance.step_results.append(result)

        instance.step_cursor += 1

    if caching:
        _save_cache(instance, cache, root, console)
    return _finish(instance, JobStatus.SUCCEEDED, console)
