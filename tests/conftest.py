import threading

import pytest

from matrixci.ui.console import Console


class Recorder:
    """Callable step commands that remember which instance ran which step."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, ctx, label):
        with self._lock:
            self.calls.append((ctx.instance, label))

    def ok(self, label):
        def command(ctx):
            self._record(ctx, label)
        command.__qualname__ = f"ok:{label}"
        return command

    def fail(self, label, exit_code=1):
        def command(ctx):
            self._record(ctx, label)
            return exit_code
        command.__qualname__ = f"fail:{label}"
        return command

    def labels(self, instance_name=None):
        return [label for inst, label in self.calls if instance_name is None or inst == instance_name]


@pytest.fixture
def console():
    return Console(quiet=True)


@pytest.fixture
def recorder():
    return Recorder()
