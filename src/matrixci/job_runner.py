# job_runner.py
from __future__ import annotations

import hashlib
import re
import time
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from .conditions import evaluate, render, uses_status_function
from .config import DEFAULT_JOB_MARGIN, DEFAULT_STEP_TIMEOUT
from .context import CancelToken, ExecutionContext
from .errors import InvalidCondition
from .executor import StepExecutor
from .model import JobConfig, JobResult, Outcome, Reason, StepResult, StepSpec
from .ui.console import Console, get_console


def job_slug(job_id: str) -> str:
    """Filesystem-safe, collision-free directory name for a job identity."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", job_id).strip("-") or "job"
    digest = hashlib.sha1(job_id.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


def skipped_step(step: StepSpec, reason: Reason, message: Optional[str] = None) -> StepResult:
    return StepResult(name=step.name, key=step.key, outcome=Outcome.SKIPPED, reason=reason, message=message)


def skipped_job(job: JobConfig, reason: Reason, message: Optional[str] = None) -> JobResult:
    """A job that never started: every step is recorded as Skipped."""
    return JobResult(
        id=job.id,
        job_name=job.job_name,
        matrix=dict(job.matrix),
        platform=job.platform,
        os_family=job.os_family,
        status=Outcome.SKIPPED,
        reason=reason,
        steps=tuple(skipped_step(s, reason) for s in job.steps),
        message=message,
        continue_on_error=job.continue_on_error,
    )


class JobRunner:
    """
    Runs one expanded job: Pending -> Running -> Succeeded | Failed | Skipped.

    Steps run strictly in declared order. A step without a guard runs only
    while the job has not failed. A failed step that is not marked
    continue-on-error fails the job; later steps are then Skipped unless
    their guard explicitly asks for failure() or always().
    """

    def __init__(
        self,
        executor: StepExecutor,
        *,
        workspace: Path,
        cancel: Optional[CancelToken] = None,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        job_margin: float = DEFAULT_JOB_MARGIN,
        workflow_env: Optional[Dict[str, str]] = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.workspace = Path(workspace)
        self.cancel = cancel or CancelToken()
        self.step_timeout = step_timeout
        self.job_margin = job_margin
        self.workflow_env = dict(workflow_env or {})
        self.console = console

    # ---- setup ----

    def _context(self, job: JobConfig) -> ExecutionContext:
        workdir = (self.workspace / job_slug(job.id)).resolve()
        workdir.mkdir(parents=True, exist_ok=True)

        context = ExecutionContext(
            job_id=job.id,
            os_family=job.os_family,
            matrix=dict(job.matrix),
            env={
                "CI": "true",
                "MATRIXCI": "true",
                "RUNNER_OS": job.os_family.value,
                "MATRIXCI_JOB": job.id,
                "MATRIXCI_WORKDIR": str(workdir),
            },
            workdir=workdir,
            cancel=self.cancel,
        )
        # workflow-level env, then job-level env; values may read matrix.*
        for layer in (self.workflow_env, job.env):
            for k, v in layer.items():
                context.env[k] = str(render(v, context))
        return context

    def _step_timeout(self, step: StepSpec) -> float:
        return step.timeout if step.timeout is not None else self.step_timeout

    def _budget(self, job: JobConfig) -> float:
        if job.timeout is not None:
            return job.timeout
        return sum(self._step_timeout(s) for s in job.steps) + self.job_margin

    # ---- per step ----

    @staticmethod
    def _should_run(step: StepSpec, context: ExecutionContext) -> bool:
        if step.guard is None:
            return context.succeeded_so_far()
        if uses_status_function(step.guard):
            return evaluate(step.guard, context)
        return context.succeeded_so_far() and evaluate(step.guard, context)

    @staticmethod
    def _render(step: StepSpec, context: ExecutionContext) -> StepSpec:
        return replace(
            step,
            name=str(render(step.name, context)),
            run=render(step.run, context),
            inputs={k: render(v, context) for k, v in step.inputs.items()},
            env={k: str(render(v, context)) for k, v in step.env.items()},
        )

    # ---- public ----

    def run(self, job: JobConfig) -> JobResult:
        console = self.console or get_console()
        start = time.monotonic()

        if self.cancel.is_set and not uses_status_function(job.guard):
            return skipped_job(job, Reason.CANCELLED)

        try:
            context = self._context(job)
            if job.guard is not None and not evaluate(job.guard, context):
                if context.cancelled:
                    return skipped_job(job, Reason.CANCELLED)
                console.print_job_skipped(job.id, "condition is false")
                return skipped_job(job, Reason.CONDITION_FALSE)
        except InvalidCondition as e:
            console.print_error("Invalid condition", f"job {job.id!r} cannot start", details=[e.message])
            return replace(
                skipped_job(job, Reason.PREVIOUS_FAILURE),
                status=Outcome.FAILED,
                reason=Reason.INVALID_CONDITION,
                message=e.message,
            )

        console.print_job_start(job.id)
        deadline = start + self._budget(job)
        results: List[StepResult] = []
        job_reason: Optional[Reason] = None
        message: Optional[str] = None
        aborted = False

        def _record(result: StepResult) -> None:
            results.append(result)
            context.record(result)
            console.print_step_result(job.id, result)

        for step in job.steps:
            if context.cancelled and not uses_status_function(step.guard):
                _record(skipped_step(step, Reason.CANCELLED))
                job_reason = job_reason or Reason.CANCELLED
                context.failed = True
                continue
            if aborted:
                _record(skipped_step(step, Reason.PREVIOUS_FAILURE))
                continue
            if step.requires_os and context.os_family not in step.requires_os:
                _record(skipped_step(step, Reason.MISSING_CAPABILITY))
                continue

            try:
                should_run = self._should_run(step, context)
                rendered = self._render(step, context) if should_run else step
            except InvalidCondition as e:
                _record(
                    StepResult(
                        name=step.name,
                        key=step.key,
                        outcome=Outcome.FAILED,
                        reason=Reason.INVALID_CONDITION,
                        message=e.message,
                    )
                )
                context.failed = True
                aborted = True
                job_reason = job_reason or Reason.INVALID_CONDITION
                message = message or e.message
                continue

            if not should_run:
                if context.cancelled:
                    reason = Reason.CANCELLED
                elif context.failed:
                    reason = Reason.PREVIOUS_FAILURE
                else:
                    reason = Reason.CONDITION_FALSE
                _record(skipped_step(step, reason))
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                _record(
                    StepResult(
                        name=rendered.name,
                        key=rendered.key,
                        outcome=Outcome.FAILED,
                        reason=Reason.TIMEOUT,
                        message="job time budget exhausted",
                    )
                )
                context.failed = True
                job_reason = job_reason or Reason.TIMEOUT
                continue

            step_context = context
            if context.cancelled:
                # opted in via cancelled()/always(): bounded by its timeout only
                step_context = replace(context, cancel=CancelToken())

            console.print_step(job.id, rendered.name)
            result = self.executor.run(rendered, step_context, min(self._step_timeout(step), remaining))
            _record(result)

            if result.outcome == Outcome.FAILED:
                if result.reason == Reason.CANCELLED:
                    context.failed = True
                    job_reason = Reason.CANCELLED
                elif not step.continue_on_error:
                    context.failed = True
                    job_reason = job_reason or result.reason
                    message = message or f"step {rendered.name!r} failed: {result.message}"

        status = Outcome.FAILED if context.failed else Outcome.SUCCEEDED
        job_result = JobResult(
            id=job.id,
            job_name=job.job_name,
            matrix=dict(job.matrix),
            platform=job.platform,
            os_family=job.os_family,
            status=status,
            reason=job_reason if status == Outcome.FAILED else None,
            steps=tuple(results),
            duration=time.monotonic() - start,
            message=message,
            continue_on_error=job.continue_on_error,
        )
        console.print_job_finished(job_result)
        return job_result
