# matrix.py
from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .conditions import render
from .context import ExecutionContext
from .errors import InvalidCondition, InvalidMatrix
from .model import JobConfig, JobSpec, MatrixSpec
from .platforms import classify_platform, host_os_family, platform_label


@dataclass(frozen=True)
class MatrixCell:
    """One expanded axis combination (plus any include extras)."""
    values: Dict[str, Any]
    identity: Tuple[Tuple[str, Any], ...]
    include_index: Optional[int] = None


def _same(a: Any, b: Any) -> bool:
    # YAML gives 3.10 -> 3.1 (float) and '3.10' -> str; compare loosely on text
    if a == b:
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return False
    return str(a) == str(b)


def _identity_key(identity: Tuple[Tuple[str, Any], ...]) -> Tuple[Tuple[str, str], ...]:
    return tuple((k, repr(v)) for k, v in identity)


def _validate(spec: MatrixSpec) -> None:
    for name, values in spec.axes.items():
        if not isinstance(values, list):
            raise InvalidMatrix(f"axis {name!r} must be a list of values, got {type(values).__name__}")
        if not values:
            raise InvalidMatrix(f"axis {name!r} has no values")

    for i, entry in enumerate(spec.exclude):
        if not isinstance(entry, dict) or not entry:
            raise InvalidMatrix(f"exclude[{i}] must be a non-empty mapping")
        unknown = [k for k in entry if k not in spec.axes]
        if unknown:
            raise InvalidMatrix(
                f"exclude[{i}] references undeclared axis {unknown[0]!r}",
                details={"axes": list(spec.axes)},
            )

    for i, entry in enumerate(spec.include):
        if not isinstance(entry, dict) or not entry:
            raise InvalidMatrix(f"include[{i}] must be a non-empty mapping")


def expand(spec: MatrixSpec) -> List[MatrixCell]:
    """
    Expand a matrix into its ordered list of cells.

    Order is deterministic: Cartesian product in axis declaration order
    (first axis varies slowest), exclusions removed, then include entries
    applied in order. An include that matches existing combinations on
    all axes it names augments them with its extra keys; otherwise it
    adds exactly one new cell. Includes are never excluded.

    Raises:
        InvalidMatrix: empty axis, exclude on an undeclared axis, zero
            resulting jobs, or two cells with the same identity.
    """
    _validate(spec)
    axes = list(spec.axes)

    base: List[Dict[str, Any]] = []
    if axes:
        for combo in itertools.product(*(spec.axes[a] for a in axes)):
            values = dict(zip(axes, combo))
            if any(all(_same(values[k], v) for k, v in ex.items()) for ex in spec.exclude):
                continue
            base.append(values)

    cells: List[Tuple[Dict[str, Any], Tuple[Tuple[str, Any], ...], Optional[int]]] = [
        (values, tuple((a, values[a]) for a in axes), None) for values in base
    ]
    original = len(cells)

    for idx, entry in enumerate(spec.include):
        axis_keys = [k for k in axes if k in entry]
        matched = False
        for values, _identity, _ in cells[:original]:
            if all(_same(values[k], entry[k]) for k in axis_keys):
                values.update(entry)
                matched = True
        if matched:
            continue
        ordered = [k for k in axes if k in entry] + [k for k in entry if k not in spec.axes]
        values = {k: entry[k] for k in ordered}
        cells.append((values, tuple((k, values[k]) for k in ordered), idx))

    if not cells:
        raise InvalidMatrix("matrix expands to zero jobs")

    seen: Dict[Tuple[Tuple[str, str], ...], int] = {}
    for pos, (_values, identity, _) in enumerate(cells):
        key = _identity_key(identity)
        if key in seen:
            raise InvalidMatrix(
                f"duplicate job identity {dict(identity)!r}",
                details={"first": seen[key], "duplicate": pos},
            )
        seen[key] = pos

    return [MatrixCell(values=dict(v), identity=i, include_index=x) for v, i, x in cells]


def _display(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def format_job_id(job_name: str, identity: Tuple[Tuple[str, Any], ...]) -> str:
    """`test (ubuntu-latest, 3.12)` style identity; plain name without a matrix."""
    if not identity:
        return job_name
    return f"{job_name} ({', '.join(_display(v) for _, v in identity)})"


def expand_job(spec: JobSpec, workflow_env: Optional[Dict[str, str]] = None) -> List[JobConfig]:
    """
    Expand one declared job into its concrete JobConfigs.

    `runs_on` is rendered per cell (it usually reads `${{ matrix.os }}`)
    and classified into an OS family.

    Raises:
        InvalidMatrix: the matrix is invalid, two cells format to the same
            job id, or runs-on names an unknown platform.
    """
    if spec.matrix is not None:
        cells = expand(spec.matrix)
    else:
        cells = [MatrixCell(values={}, identity=())]

    env = dict(workflow_env or {})
    env.update(spec.env)

    configs: List[JobConfig] = []
    ids: Dict[str, int] = {}
    for pos, cell in enumerate(cells):
        job_id = format_job_id(spec.name, cell.identity)
        if job_id in ids:
            # distinct cells such as 1 and "1" can render to the same id
            raise InvalidMatrix(
                f"matrix cells {ids[job_id]} and {pos} both resolve to job id {job_id!r}",
                job=spec.name,
            )
        ids[job_id] = pos
        scope = ExecutionContext(job_id=job_id, os_family=host_os_family(), matrix=cell.values, env=env)
        try:
            if isinstance(spec.runs_on, (list, tuple)):
                labels: Any = [render(x, scope) for x in spec.runs_on]
            else:
                labels = render(str(spec.runs_on), scope)
            family = classify_platform(labels)
        except InvalidCondition as e:
            raise InvalidMatrix(f"cannot resolve runs-on: {e.message}", job=job_id) from e
        except ValueError as e:
            raise InvalidMatrix(str(e), job=job_id) from e

        configs.append(
            JobConfig(
                id=job_id,
                job_name=spec.name,
                matrix=dict(cell.values),
                axis_values=cell.identity,
                platform=platform_label(labels),
                os_family=family,
                steps=tuple(spec.steps),
                env=dict(spec.env),
                needs=tuple(spec.needs),
                guard=spec.guard,
                timeout=spec.timeout,
                include_index=cell.include_index,
                continue_on_error=spec.continue_on_error,
            )
        )
    return configs
