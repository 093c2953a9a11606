"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..model import JobConfig, JobResult, StepResult, WorkflowResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
                   and captured output of successful steps
            quiet: If True, only print errors and the final results
        """
        self.debug = debug
        self.quiet = quiet
        # jobs run on worker threads; keep multi-line blocks together
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
        repository: str,
        workflow: str,
        job_count: int,
        slots: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            f"Slots: {slots}",
            "",
        )

    def print_plan(self, jobs: Iterable["JobConfig"]) -> None:
        """Print the expanded job list."""
        self.print_header("PLAN")
        for job in jobs:
            lines = [f"  {job.id}  [{job.platform} -> {job.os_family.value}]"]
            for step in job.steps:
                what = step.run.splitlines()[0] if step.run else f"uses {step.uses}"
                lines.append(f"      - {step.name}: {what}")
            self._emit(*lines)

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        if not self.quiet:
            self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            self._emit(f"[{job}] STEP: {name}")

    def print_step_result(self, job: str, result: "StepResult") -> None:
        """Print one finished or skipped step."""
        if self.quiet:
            return
        status = result.outcome.value
        if result.reason is not None:
            status = f"{status} ({result.reason.value})"
        lines = [f"[{job}] {result.name}: {status} {result.duration:.1f}s"]
        if result.message and result.outcome.value == "failure":
            lines.append(f"[{job}]   {result.message}")
        if result.output and (self.debug or result.outcome.value == "failure"):
            lines.extend(f"[{job}] | {line}" for line in result.output.rstrip().splitlines()[-40:])
        self._emit(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        if not self.quiet:
            self._emit(f"\nJOB SKIPPED: {name} ({reason})")

    def print_job_finished(self, result: "JobResult") -> None:
        """Print job completion."""
        if self.quiet:
            return
        if result.status.value == "failure":
            reason = result.reason.value if result.reason else "failure"
            self._emit(f"JOB FAILED: {result.id} ({reason}) {result.duration:.1f}s")
        else:
            self._emit(f"JOB {result.status.value.upper()}: {result.id} {result.duration:.1f}s")

    def print_results(self, result: "WorkflowResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in result.jobs:
            status_display = "SUCCESS" if job.status.value == "success" else job.status.value.upper()
            if job.reason is not None:
                status_display = f"{status_display} ({job.reason.value})"
            if job.status.value == "failure" and not job.fails_workflow:
                status_display += " [allowed]"
            lines.append(f"  {job.id}: {status_display}")
        lines.append("-" * 40)
        overall = "SUCCESS" if result.status.value == "success" else "FAILED"
        if result.cancelled:
            overall += " (cancelled)"
        lines.append(f"  workflow: {overall} in {result.duration:.1f}s")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
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
