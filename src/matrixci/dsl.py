# src/matrixci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Union

from .conditions import Guard, as_guard
from .model import JobSpec, MatrixSpec, OSFamily, StepSpec, Trigger, Workflow

GuardLike = Union[str, bool, Guard, None]


def _families(requires_os: Optional[Iterable[Union[str, OSFamily]]]) -> frozenset:
    return frozenset(OSFamily.parse(f) for f in (requires_os or ()))


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: Optional[str] = None,
    if_: GuardLike = None,
    requires_os: Optional[Iterable[Union[str, OSFamily]]] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
) -> StepSpec:
    """Create a shell step."""
    return StepSpec(
        name=name,
        run=cmd,
        id=id,
        guard=as_guard(if_),
        requires_os=_families(requires_os),
        env=dict(env or {}),
        cwd=cwd,
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


def uses(
    name: str,
    action: str,
    *,
    id: Optional[str] = None,
    if_: GuardLike = None,
    requires_os: Optional[Iterable[Union[str, OSFamily]]] = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: Optional[float] = None,
    **inputs: Any,
) -> StepSpec:
    """Create a reusable-action step; keyword arguments become its `with:` inputs."""
    return StepSpec(
        name=name,
        uses=action,
        inputs=dict(inputs),
        id=id,
        guard=as_guard(if_),
        requires_os=_families(requires_os),
        env=dict(env or {}),
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **axes: Iterable[Any],
) -> MatrixSpec:
    """
    Matrix declaration.

    Example:
        matrix(os=["ubuntu-latest", "macos-latest"], python=["3.11", "3.12"],
               exclude=[{"os": "macos-latest", "python": "3.11"}])
    """
    return MatrixSpec(
        axes={k: list(v) for k, v in axes.items()},
        include=[dict(e) for e in (include or [])],
        exclude=[dict(e) for e in (exclude or [])],
    )


# ---------------------------------------------------------------------
# Functional Job helper (nice DX)
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    matrix: Optional[MatrixSpec] = None,
    runs_on: Union[str, List[str]] = "local",
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    if_: GuardLike = None,
    timeout: Optional[float] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    continue_on_error: bool = False,
) -> JobSpec:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobSpec(
        name=name,
        steps=steps_final,
        matrix=matrix,
        runs_on=runs_on,
        needs=list(needs or []),
        env=dict(env or {}),
        guard=as_guard(if_),
        timeout=timeout,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._env: dict[str, str] = {}
        self._matrix: Optional[MatrixSpec] = None
        self._runs_on: Union[str, List[str]] = "local"
        self._guard: Optional[Guard] = None
        self._timeout: Optional[float] = None
        self._continue_on_error = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, *labels: str):
        self._runs_on = labels[0] if len(labels) == 1 else list(labels)
        return self

    def with_matrix(self, spec: MatrixSpec):
        self._matrix = spec
        return self

    def define_step(self, name: str, run: str, **options: Any):
        self._steps.append(sh(name, run, **options))
        return self

    def use_action(self, name: str, action: str, **options: Any):
        self._steps.append(uses(name, action, **options))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def when(self, guard: GuardLike):
        self._guard = as_guard(guard)
        return self

    def timeout_after(self, seconds: float):
        self._timeout = seconds
        return self

    def allow_failure(self, allowed: bool = True):
        self._continue_on_error = allowed
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return JobSpec(
            name=self.name,
            steps=list(self._steps),
            matrix=self._matrix,
            runs_on=self._runs_on,
            needs=list(self._needs),
            env=dict(self._env),
            guard=self._guard,
            timeout=self._timeout,
            continue_on_error=self._continue_on_error,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def on(event: str, *, branches: Optional[List[str]] = None, branches_ignore: Optional[List[str]] = None) -> Trigger:
    """Trigger helper: on("push", branches=["main"])."""
    return Trigger(
        event=event,
        branches=tuple(branches) if branches is not None else None,
        branches_ignore=tuple(branches_ignore or ()),
    )


def wf(
    *jobs: JobSpec,
    name: str = "workflow",
    env: Optional[Dict[str, str]] = None,
    triggers: Optional[List[Trigger]] = None,
) -> Workflow:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from matrixci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or define it directly:
        WORKFLOW = wf(job(...), job(...))
    """
    return Workflow(name=name, jobs=list(jobs), env=dict(env or {}), triggers=list(triggers or []))
