# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from .conditions import Guard


# ---------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------

class OSFamily(str, Enum):
    """Closed set of OS families a job can target."""
    LINUX = "Linux"
    MACOS = "macOS"
    WINDOWS = "Windows"

    @classmethod
    def parse(cls, name: str) -> "OSFamily":
        """Case-insensitive lookup by family name. Raises ValueError."""
        for member in cls:
            if member.value.lower() == str(name).strip().lower():
                return member
        raise ValueError(f"Unknown OS family: {name!r} (expected one of {[m.value for m in cls]})")


class Outcome(str, Enum):
    """Terminal status of a step, a job, or the whole workflow."""
    SUCCEEDED = "success"
    FAILED = "failure"
    SKIPPED = "skipped"


class Reason(str, Enum):
    """Why a step or job ended up Failed or Skipped."""
    NON_ZERO_EXIT = "NonZeroExit"
    TIMEOUT = "Timeout"
    LAUNCH_ERROR = "LaunchError"
    CANCELLED = "Cancelled"
    CONDITION_FALSE = "ConditionFalse"
    PREVIOUS_FAILURE = "PreviousFailure"
    INVALID_CONDITION = "InvalidCondition"
    MISSING_CAPABILITY = "MissingCapability"
    DEPENDENCY_FAILED = "DependencyFailed"
    PLATFORM_UNAVAILABLE = "PlatformUnavailable"
    INTERNAL_ERROR = "InternalError"


# ---------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepSpec:
    """
    A single unit of work inside a job: either a shell command (`run`)
    or a reusable action reference (`uses`) with its parameters (`inputs`).
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    guard: Optional["Guard"] = None
    requires_os: frozenset = frozenset()
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: Optional[float] = None       # seconds
    cwd: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must define exactly one of run/uses")

    @property
    def key(self) -> str:
        """Name under which later guards reference this step's outcome."""
        return self.id or self.name


@dataclass(frozen=True)
class MatrixSpec:
    """
    Matrix definition: ordered axes plus explicit include/exclude entries.

    axes:    {"os": ["ubuntu-latest", "macos-latest"], "python": ["3.11", "3.12"]}
    include: [{"os": "windows-2022", "python": "3.12"}, {"os": "ubuntu-latest", "coverage": True}]
    exclude: [{"os": "macos-latest", "python": "3.11"}]
    """
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatrixSpec":
        """Build from the declaration shape: axes at top level next to include/exclude."""
        data = dict(data or {})
        include = data.pop("include", None) or []
        exclude = data.pop("exclude", None) or []
        axes = {}
        for k, v in data.items():
            axes[str(k)] = list(v) if isinstance(v, (list, tuple)) else v
        return cls(axes=axes, include=[dict(e) for e in include], exclude=[dict(e) for e in exclude])


@dataclass
class JobSpec:
    """
    A declared job before matrix expansion.

    `runs_on` may reference matrix values, e.g. "${{ matrix.os }}".
    """
    name: str
    steps: List[StepSpec]
    matrix: Optional[MatrixSpec] = None
    runs_on: Any = "local"                 # str or list of labels
    needs: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    guard: Optional["Guard"] = None
    timeout: Optional[float] = None       # seconds, whole job
    continue_on_error: bool = False       # a failure does not fail the workflow


@dataclass(frozen=True)
class Trigger:
    """One `on:` entry: an event name with optional branch filters."""
    event: str
    branches: Optional[Tuple[str, ...]] = None
    branches_ignore: Tuple[str, ...] = ()

    def matches(self, event: str, branch: Optional[str]) -> bool:
        if event != self.event:
            return False
        if branch is None:
            return True
        if any(fnmatch(branch, p) for p in self.branches_ignore):
            return False
        if self.branches is None:
            return True
        return any(fnmatch(branch, p) for p in self.branches)


@dataclass
class Workflow:
    """A whole workflow declaration: triggers, workflow-level env, named jobs."""
    name: str
    jobs: List[JobSpec]
    env: Dict[str, str] = field(default_factory=dict)
    triggers: List[Trigger] = field(default_factory=list)
    source: Optional[str] = None

    def is_triggered_by(self, event: Optional[str], branch: Optional[str] = None) -> bool:
        """
        Decide whether an event should start this workflow at all.

        No event (manual local run) or no declared triggers always runs.
        """
        if event is None or not self.triggers:
            return True
        return any(t.matches(event, branch) for t in self.triggers)


@dataclass(frozen=True)
class JobConfig:
    """
    One fully resolved job produced by matrix expansion. Immutable.

    `axis_values` is the identity tuple; `matrix` also carries include extras.
    """
    id: str
    job_name: str
    matrix: Dict[str, Any]
    axis_values: Tuple[Tuple[str, Any], ...]
    platform: str
    os_family: OSFamily
    steps: Tuple[StepSpec, ...]
    env: Dict[str, str] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()
    guard: Optional["Guard"] = None
    timeout: Optional[float] = None
    include_index: Optional[int] = None
    continue_on_error: bool = False


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    name: str
    key: str
    outcome: Outcome
    reason: Optional[Reason] = None
    exit_code: Optional[int] = None
    output: str = ""
    duration: float = 0.0
    message: Optional[str] = None

    @property
    def status(self) -> str:
        """Status name as seen by guards: success/failure/skipped/cancelled."""
        if self.reason == Reason.CANCELLED:
            return "cancelled"
        return self.outcome.value


@dataclass(frozen=True)
class JobResult:
    id: str
    job_name: str
    matrix: Dict[str, Any]
    platform: str
    os_family: OSFamily
    status: Outcome
    reason: Optional[Reason] = None
    steps: Tuple[StepResult, ...] = ()
    duration: float = 0.0
    message: Optional[str] = None
    continue_on_error: bool = False

    @property
    def fails_workflow(self) -> bool:
        """Failed, and not excused by job-level continue-on-error. Cancellation is never excused."""
        return self.status == Outcome.FAILED and not (self.continue_on_error and self.reason != Reason.CANCELLED)


@dataclass(frozen=True)
class WorkflowResult:
    name: str
    status: Outcome
    jobs: Tuple[JobResult, ...]
    duration: float = 0.0
    cancelled: bool = False

    @property
    def failed_jobs(self) -> List[JobResult]:
        return [j for j in self.jobs if j.fails_workflow]

    @property
    def exit_code(self) -> int:
        return 0 if self.status == Outcome.SUCCEEDED else 1
