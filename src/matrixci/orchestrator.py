# orchestrator.py
from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from .conditions import uses_status_function
from .config import RunnerConfig
from .context import CancelToken
from .dag import validate_needs
from .errors import InvalidMatrix, WorkflowLoadError
from .executor import ActionRegistry, StepExecutor
from .job_runner import JobRunner, skipped_job
from .matrix import expand_job
from .model import JobConfig, JobResult, Outcome, Reason, Workflow, WorkflowResult
from .platforms import host_os_family
from .ui.console import Console, get_console


WAIT_INTERVAL = 0.1


def _satisfies(result: JobResult) -> bool:
    """A needed job lets its dependents start: it succeeded, or failed under continue-on-error."""
    return result.status == Outcome.SUCCEEDED or (result.status == Outcome.FAILED and not result.fails_workflow)


@dataclass
class RunState:
    """
    Orchestration context for one workflow run.

    Created when `run()` starts and dropped once the result is built; the
    slot semaphore is the only resource shared between jobs.
    """
    slots: threading.BoundedSemaphore
    cancel: CancelToken = field(default_factory=CancelToken)
    results: Dict[str, JobResult] = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)


class WorkflowOrchestrator:
    """
    Expands a workflow into jobs, runs them on a bounded pool of execution
    slots and aggregates the results.

    Admission is FIFO in declaration order; a job whose `needs` have not
    finished waits without blocking jobs behind it.
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        *,
        executor: Optional[StepExecutor] = None,
        actions: Optional[ActionRegistry] = None,
        console: Optional[Console] = None,
    ):
        self.config = (config or RunnerConfig()).validate()
        if executor is None:
            if actions is None:
                actions = ActionRegistry.from_commands(self.config.actions)
            executor = StepExecutor(actions, output_limit=self.config.output_limit)
        self.executor = executor
        self.console = console
        self._state: Optional[RunState] = None

    # ------------------------------------------------------------------

    def plan(self, workflow: Workflow) -> List[JobConfig]:
        """
        Expand every declared job. Nothing is executed.

        Raises:
            WorkflowLoadError: no jobs, duplicate names, unknown or cyclic needs.
            InvalidMatrix: any matrix is malformed, or two jobs share an id
                (fatal before dispatch).
        """
        if not workflow.jobs:
            raise WorkflowLoadError("workflow defines no jobs")
        validate_needs(workflow.jobs)
        configs: List[JobConfig] = []
        owners: Dict[str, str] = {}
        for spec in workflow.jobs:
            for config in expand_job(spec, workflow.env):
                if config.id in owners:
                    raise InvalidMatrix(
                        f"job id {config.id!r} is produced by both {owners[config.id]!r} and {spec.name!r}",
                        job=spec.name,
                    )
                owners[config.id] = spec.name
                configs.append(config)
        return configs

    def cancel(self) -> None:
        """Cooperatively cancel the run in progress (no-op when idle)."""
        state = self._state
        if state is not None:
            state.cancel.cancel()

    def run(self, workflow: Workflow) -> WorkflowResult:
        console = self.console or get_console()
        jobs = self.plan(workflow)

        state = RunState(slots=threading.BoundedSemaphore(self.config.slots))
        self._state = state
        try:
            self._dispatch(workflow, jobs, state, console)
        finally:
            self._state = None

        ordered = tuple(state.results[j.id] for j in jobs)
        failed = any(r.fails_workflow for r in ordered)
        return WorkflowResult(
            name=workflow.name,
            status=Outcome.FAILED if failed else Outcome.SUCCEEDED,
            jobs=ordered,
            duration=time.monotonic() - state.started,
            cancelled=state.cancel.is_set,
        )

    # ------------------------------------------------------------------

    def _record(self, state: RunState, result: JobResult, console: Console) -> None:
        state.results[result.id] = result
        if result.status == Outcome.SKIPPED and result.reason is not None:
            console.print_job_skipped(result.id, result.reason.value)

    def _admit(
        self,
        pending: List[JobConfig],
        by_name: Dict[str, List[JobConfig]],
        in_flight: Dict[Future, JobConfig],
        pool: ThreadPoolExecutor,
        runner: JobRunner,
        state: RunState,
        console: Console,
    ) -> List[JobConfig]:
        host = host_os_family()
        waiting: List[JobConfig] = []
        slots_full = False

        for job in pending:
            if slots_full:
                waiting.append(job)
                continue

            deps = [d for name in job.needs for d in by_name[name]]
            if any(d.id not in state.results for d in deps):
                waiting.append(job)
                continue
            if not all(_satisfies(state.results[d.id]) for d in deps):
                self._record(state, skipped_job(job, Reason.DEPENDENCY_FAILED), console)
                continue
            if self.config.host_only and job.os_family != host:
                self._record(
                    state,
                    skipped_job(job, Reason.PLATFORM_UNAVAILABLE, f"host is {host.value}"),
                    console,
                )
                continue

            if not state.slots.acquire(blocking=False):
                slots_full = True
                waiting.append(job)
                continue
            in_flight[pool.submit(runner.run, job)] = job

        return waiting

    def _collect(self, fut: Future, job: JobConfig, state: RunState, console: Console) -> None:
        state.slots.release()
        try:
            result = fut.result()
        except Exception as e:  # recorded as this job's failure; siblings keep running
            console.print_error("Job crashed", f"job {job.id!r} raised {type(e).__name__}", details=[str(e)])
            console.print_exception(e)
            result = replace(
                skipped_job(job, Reason.INTERNAL_ERROR),
                status=Outcome.FAILED,
                message=f"{type(e).__name__}: {e}",
            )
        self._record(state, result, console)

        if result.fails_workflow and self.config.fail_fast and not state.cancel.is_set:
            console.print_info(f"fail-fast: {job.id} failed, cancelling remaining jobs")
            state.cancel.cancel()

    def _dispatch(self, workflow: Workflow, jobs: List[JobConfig], state: RunState, console: Console) -> None:
        runner = JobRunner(
            self.executor,
            workspace=self.config.workspace,
            cancel=state.cancel,
            step_timeout=self.config.step_timeout,
            job_margin=self.config.job_margin,
            workflow_env=workflow.env,
            console=console,
        )
        by_name: Dict[str, List[JobConfig]] = {}
        for job in jobs:
            by_name.setdefault(job.job_name, []).append(job)

        pending = list(jobs)
        in_flight: Dict[Future, JobConfig] = {}

        with ThreadPoolExecutor(max_workers=self.config.slots, thread_name_prefix="matrixci-slot") as pool:
            while pending or in_flight:
                try:
                    if state.cancel.is_set and pending:
                        # jobs guarded by always()/cancelled() stay queued; JobRunner decides
                        for job in pending:
                            if not uses_status_function(job.guard):
                                self._record(state, skipped_job(job, Reason.CANCELLED), console)
                        pending = [j for j in pending if uses_status_function(j.guard)]

                    before = len(pending)
                    pending = self._admit(pending, by_name, in_flight, pool, runner, state, console)

                    if not in_flight:
                        if pending and len(pending) == before:
                            # nothing running and nothing admissible: needs can never be met
                            for job in pending:
                                self._record(state, skipped_job(job, Reason.DEPENDENCY_FAILED), console)
                            pending = []
                        continue

                    done, _ = wait(list(in_flight), timeout=WAIT_INTERVAL, return_when=FIRST_COMPLETED)
                    for fut in done:
                        self._collect(fut, in_flight.pop(fut), state, console)
                except KeyboardInterrupt:
                    console.print_info("\nInterrupted: cancelling workflow")
                    state.cancel.cancel()
