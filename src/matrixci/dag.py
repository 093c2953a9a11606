# dag.py
from __future__ import annotations

from typing import Dict, List

from .errors import WorkflowLoadError
from .model import JobSpec


def dependency_map(jobs: List[JobSpec]) -> Dict[str, List[str]]:
    """
    Map each declared job name to the jobs it needs.

    Raises:
        WorkflowLoadError: duplicate job names, or a need naming no job.
    """
    deps: Dict[str, List[str]] = {}
    for job in jobs:
        if job.name in deps:
            raise WorkflowLoadError(f"Duplicate job name: {job.name!r}", job=job.name)
        deps[job.name] = []

    for job in jobs:
        for need in job.needs:
            if need not in deps:
                raise WorkflowLoadError(
                    f"Job '{job.name}' needs missing job '{need}'",
                    job=job.name,
                    details={"known": sorted(deps)},
                )
            if need not in deps[job.name]:
                deps[job.name].append(need)
    return deps


def validate_needs(jobs: List[JobSpec]) -> List[str]:
    """
    Check that `needs` forms a DAG and return the job names in an order
    where every job follows its dependencies. Ties keep declaration order.
    """
    deps = dependency_map(jobs)
    order: List[str] = []
    done = set()

    while len(order) < len(deps):
        ready = [n for n in deps if n not in done and all(d in done for d in deps[n])]
        if not ready:
            stuck = [n for n in deps if n not in done]
            raise WorkflowLoadError(f"Job dependencies contain a cycle. Stuck jobs: {stuck}")
        order.extend(ready)
        done.update(ready)
    return order
