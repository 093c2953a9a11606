from .conditions import (
    all_of,
    always,
    any_of,
    cancelled,
    compile_guard,
    failure,
    matrix_is,
    not_,
    os_is,
    step_outcome,
    success,
)
from .errors import CIError, ConfigError, InvalidCondition, InvalidMatrix, WorkflowLoadError
from .loader import load_workflow
from .model import JobSpec, MatrixSpec, OSFamily, Outcome, Reason, StepSpec, Workflow
from .orchestrator import WorkflowOrchestrator

# Imported last so the dsl ``matrix`` function is not shadowed by the
# ``matrixci.matrix`` submodule, which the imports above load.
from .dsl import JobBuilder, build, job, matrix, on, sh, uses, wf

__all__ = [
    "job", "sh", "uses", "matrix", "on", "wf", "JobBuilder", "build",
    "os_is", "matrix_is", "step_outcome", "success", "failure", "always", "cancelled",
    "all_of", "any_of", "not_", "compile_guard",
    "load_workflow", "WorkflowOrchestrator",
    "JobSpec", "StepSpec", "MatrixSpec", "Workflow", "OSFamily", "Outcome", "Reason",
    "CIError", "ConfigError", "InvalidCondition", "InvalidMatrix", "WorkflowLoadError",
]
