# context.py
from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Set

from .model import OSFamily, StepResult


class CancelToken:
    """
    Cooperative cancellation for one workflow run.

    Step executors register their live processes here so that `cancel()`
    can send them a termination signal.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._procs: Set[subprocess.Popen] = set()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def register(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.add(proc)

    def unregister(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.discard(proc)

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            terminate(proc)

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


def terminate(proc: subprocess.Popen, *, force: bool = False) -> None:
    """Signal a step process and its children (it runs in its own session on POSIX)."""
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL if force else signal.SIGTERM)
        elif force:
            proc.kill()
        else:
            proc.terminate()
    except (ProcessLookupError, PermissionError):
        # already gone
        pass


@dataclass
class ExecutionContext:
    """
    Per-job mutable state threaded through step execution.

    Owned by exactly one JobRunner; never shared across jobs.
    """
    job_id: str
    os_family: OSFamily
    matrix: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    workdir: Optional[Path] = None
    cancel: CancelToken = field(default_factory=CancelToken)
    results: Dict[str, StepResult] = field(default_factory=dict)
    failed: bool = False

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set

    def record(self, result: StepResult) -> None:
        self.results[result.key] = result

    def step_status(self, key: str) -> Optional[str]:
        result = self.results.get(key)
        return result.status if result is not None else None

    def succeeded_so_far(self) -> bool:
        return not self.failed and not self.cancelled
