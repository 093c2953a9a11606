# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .conditions import compile_declared
from .errors import WorkflowLoadError
from .model import JobSpec, MatrixSpec, OSFamily, StepSpec, Trigger, Workflow


# ----------------------------------------------------------------------
# Declaration schema (YAML)
# ----------------------------------------------------------------------

class StepDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    requires_os: List[str] = Field(default_factory=list, alias="requires-os")

    @model_validator(mode="after")
    def _run_or_uses(self) -> "StepDoc":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step must define exactly one of 'run' or 'uses'")
        return self


class StrategyDoc(BaseModel):
    model_config = ConfigDict(extra="ignore")

    matrix: Optional[Dict[str, Any]] = None


class JobDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    runs_on: Union[str, List[str]] = Field(default="local", alias="runs-on")
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    needs: Union[str, List[str]] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    strategy: Optional[StrategyDoc] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    steps: List[StepDoc] = Field(min_length=1)


class WorkflowDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    on: Any = None
    env: Dict[str, Any] = Field(default_factory=dict)
    jobs: Dict[str, JobDoc] = Field(min_length=1)


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _env(values: Dict[str, Any]) -> Dict[str, str]:
    out = {}
    for k, v in values.items():
        if isinstance(v, bool):
            out[str(k)] = "true" if v else "false"
        else:
            out[str(k)] = "" if v is None else str(v)
    return out


def _names(value: Any) -> Optional[tuple]:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def parse_triggers(on: Any) -> List[Trigger]:
    """`on:` in its string, list or mapping form."""
    if on is None:
        return []
    if isinstance(on, str):
        return [Trigger(on)]
    if isinstance(on, list):
        return [Trigger(str(e)) for e in on]
    if isinstance(on, dict):
        triggers = []
        for event, cfg in on.items():
            cfg = cfg or {}
            if not isinstance(cfg, dict):
                raise WorkflowLoadError(f"trigger {event!r} must be a mapping")
            triggers.append(
                Trigger(
                    event=str(event),
                    branches=_names(cfg.get("branches")),
                    branches_ignore=_names(cfg.get("branches-ignore")) or (),
                )
            )
        return triggers
    raise WorkflowLoadError(f"unsupported 'on' value: {on!r}")


def _step_name(doc: StepDoc) -> str:
    if doc.name:
        return doc.name
    if doc.run is not None:
        first = doc.run.strip().splitlines()[0] if doc.run.strip() else ""
        return f"Run {first}"
    return f"Run {doc.uses}"


def _step(job: str, doc: StepDoc) -> StepSpec:
    try:
        requires = frozenset(OSFamily.parse(x) for x in doc.requires_os)
    except ValueError as e:
        raise WorkflowLoadError(str(e), job=job, step=_step_name(doc))
    return StepSpec(
        name=_step_name(doc),
        run=doc.run,
        uses=doc.uses,
        inputs=dict(doc.with_),
        id=doc.id,
        guard=compile_declared(doc.if_) if doc.if_ is not None else None,
        requires_os=requires,
        env=_env(doc.env),
        continue_on_error=doc.continue_on_error,
        timeout=doc.timeout_minutes * 60 if doc.timeout_minutes is not None else None,
        cwd=doc.working_directory,
    )


def _job(name: str, doc: JobDoc) -> JobSpec:
    matrix = None
    if doc.strategy is not None and doc.strategy.matrix is not None:
        matrix = MatrixSpec.from_dict(doc.strategy.matrix)
    return JobSpec(
        name=name,
        steps=[_step(name, s) for s in doc.steps],
        matrix=matrix,
        runs_on=doc.runs_on,
        needs=list(_names(doc.needs) or ()),
        env=_env(doc.env),
        guard=compile_declared(doc.if_) if doc.if_ is not None else None,
        timeout=doc.timeout_minutes * 60 if doc.timeout_minutes is not None else None,
        continue_on_error=doc.continue_on_error,
    )


def _validation_details(err: ValidationError) -> List[str]:
    return [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in err.errors()]


def parse_workflow(data: Any, *, source: Optional[str] = None) -> Workflow:
    """Build a Workflow from an already-parsed YAML/JSON document."""
    if not isinstance(data, dict):
        raise WorkflowLoadError("workflow document must be a mapping", details={"source": source})
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        raise WorkflowLoadError(
            "invalid workflow declaration",
            details={"source": source, "errors": "; ".join(_validation_details(e))},
        ) from e

    name = doc.name or (Path(source).stem if source else "workflow")
    return Workflow(
        name=name,
        jobs=[_job(job_name, job_doc) for job_name, job_doc in doc.jobs.items()],
        env=_env(doc.env),
        triggers=parse_triggers(doc.on),
        source=source,
    )


def load_yaml_workflow(path: str | Path) -> Workflow:
    wf_path = Path(path)
    try:
        data = yaml.safe_load(wf_path.read_text())
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"invalid YAML in {wf_path}", details={"error": e}) from e
    return parse_workflow(data, source=str(wf_path))


# ----------------------------------------------------------------------
# Python workflows (DSL)
# ----------------------------------------------------------------------

def _load_python_workflow(wf_path: Path) -> Workflow:
    """
    The file must define either:
      - workflow() -> Workflow | List[JobSpec]
      - WORKFLOW = Workflow(...)
      - JOBS = [JobSpec, ...]
    """
    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result: Any = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from matrixci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]

    if isinstance(result, list) and all(isinstance(j, JobSpec) for j in result):
        result = Workflow(name=wf_path.stem, jobs=result)
    if not isinstance(result, Workflow):
        raise WorkflowLoadError(
            "Workflow file must return/define a Workflow or a List[JobSpec]. "
            "Define workflow() -> wf(...), WORKFLOW = wf(...) or JOBS = [job(...), ...].",
            details={"source": str(wf_path)},
        )
    if result.source is None:
        result.source = str(wf_path)
    return result


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a YAML declaration (.yml/.yaml) or a Python file (.py).
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in (".yml", ".yaml"):
        return load_yaml_workflow(wf_path)
    if wf_path.suffix == ".py":
        return _load_python_workflow(wf_path)
    raise WorkflowLoadError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")
