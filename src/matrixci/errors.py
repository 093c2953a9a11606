# errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON report (reason strings)
      - debugging without full tracebacks
    """

    kind = "CIError"

    def __init__(
        self,
        message: str,
        *,
        job: Optional[str] = None,
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class InvalidMatrix(CIError):
    """Malformed or empty matrix. Fatal: raised before any job is dispatched."""

    kind = "InvalidMatrix"


class InvalidCondition(CIError):
    """Malformed guard expression. Fatal to the job evaluating it only."""

    kind = "InvalidCondition"


class WorkflowLoadError(CIError):
    """The workflow declaration could not be read or is structurally invalid."""

    kind = "WorkflowLoadError"


class ConfigError(CIError):
    """Runner configuration validation error."""

    kind = "ConfigError"
