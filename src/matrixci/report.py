# report.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .model import JobResult, StepResult, WorkflowResult


# -------------------- Schemas --------------------

class StepReport(BaseModel):
    name: str
    status: str
    reason: Optional[str] = None
    exit_code: Optional[int] = None
    duration: float
    message: Optional[str] = None


class JobReport(BaseModel):
    id: str
    job: str
    status: str
    reason: Optional[str] = None
    platform: str
    os_family: str
    matrix: Dict[str, Any] = Field(default_factory=dict)
    duration: float
    message: Optional[str] = None
    continue_on_error: bool = False
    steps: List[StepReport] = Field(default_factory=list)


class WorkflowReport(BaseModel):
    workflow: str
    status: str
    cancelled: bool = False
    duration: float
    jobs: List[JobReport]
    failed_jobs: List[str] = Field(default_factory=list)


# -------------------- Builders --------------------

def _step(result: StepResult) -> StepReport:
    return StepReport(
        name=result.name,
        status=result.status,
        reason=result.reason.value if result.reason else None,
        exit_code=result.exit_code,
        duration=round(result.duration, 3),
        message=result.message,
    )


def _job(result: JobResult) -> JobReport:
    return JobReport(
        id=result.id,
        job=result.job_name,
        status=result.status.value,
        reason=result.reason.value if result.reason else None,
        platform=result.platform,
        os_family=result.os_family.value,
        matrix=dict(result.matrix),
        duration=round(result.duration, 3),
        message=result.message,
        continue_on_error=result.continue_on_error,
        steps=[_step(s) for s in result.steps],
    )


def build_report(result: WorkflowResult) -> WorkflowReport:
    """Structured summary: every job is listed, whatever the aggregate status."""
    return WorkflowReport(
        workflow=result.name,
        status=result.status.value,
        cancelled=result.cancelled,
        duration=round(result.duration, 3),
        jobs=[_job(j) for j in result.jobs],
        failed_jobs=[j.id for j in result.failed_jobs],
    )


def write_report(result: WorkflowResult, path: str | Path) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(build_report(result).model_dump_json(indent=2) + "\n")
    return out
