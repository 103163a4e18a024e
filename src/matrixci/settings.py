from __future__ import annotations
import os

CACHE_DIR = os.environ.get("MATRIXCI_CACHE_DIR", ".matrixci/cache")
COMPARE_REF = os.environ.get("MATRIXCI_COMPARE_REF", "origin/main")
WORKERS = int(os.environ["MATRIXCI_WORKERS"]) if os.environ.get("MATRIXCI_WORKERS") else None
STEP_TIMEOUT = float(os.environ["MATRIXCI_STEP_TIMEOUT"]) if os.environ.get("MATRIXCI_STEP_TIMEOUT") else None
OUTPUT_TAIL = int(os.environ.get("MATRIXCI_OUTPUT_TAIL", "4000"))


def default_workers() -> int:
    if WORKERS is not None:
        return max(1, WORKERS)
    c = os.cpu_count() or 2
    return max(1, c - 1)

# seconds a timed-out callable step gets to honour its stop request
STOP_GRACE = float(os.environ.get("MATRIXCI_STOP_GRACE", "5"))
