# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .errors import GateCIError
    from .triggers import Condition


@dataclass(frozen=True)
class Step:
    """A single shell command inside a job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class Matrix:
    """
    Named axes for fan-out.

    axes: ordered mapping axis name -> values. Expansion is the cartesian
          product in declaration order (last axis varies fastest).
    include: extra combinations, merged into a matching combination or appended.
    exclude: partial combinations removed from the product.
    """
    axes: Dict[str, List[str]] = field(default_factory=dict)
    include: List[Dict[str, str]] = field(default_factory=list)
    exclude: List[Dict[str, str]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.axes or self.include)


@dataclass
class JobDescriptor:
    """
    Static declaration of one unit of work.

    `needs` holds ids of descriptors that must settle before this one runs.
    `continue_on_error` is either a bool or the name of a matrix key whose
    per-instance value decides (e.g. "skip-error").
    """
    id: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    matrix: Matrix = field(default_factory=Matrix)
    condition: Optional["Condition"] = None
    timeout: float | None = None
    continue_on_error: bool | str = False
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class Pipeline:
    """A named set of job descriptors plus run-level gating."""
    name: str
    jobs: list[JobDescriptor]
    trigger: Optional["Condition"] = None
    concurrency_group: str | None = None
    cancel_in_progress: bool = True
    env: Dict[str, str] = field(default_factory=dict)


# ----------------------------------------------------------------------
# Run context
# ----------------------------------------------------------------------

class EventKind(str, enum.Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    RELEASE = "release"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str | EventKind) -> EventKind:
        if isinstance(value, EventKind):
            return value
        # GitHub calls manual runs workflow_dispatch
        if value == "workflow_dispatch":
            return cls.MANUAL
        return cls(value)


@dataclass(frozen=True)
class RunContext:
    """What triggered the run. Immutable for the run's lifetime."""
    event: EventKind = EventKind.MANUAL
    ref: str = ""
    action: str | None = None
    workflow: str = ""
    pr_number: int | None = None
    sha: str | None = None

    @property
    def branch(self) -> str:
        if self.ref.startswith("refs/heads/"):
            return self.ref[len("refs/heads/"):]
        if self.ref.startswith("refs/"):
            return ""
        return self.ref

    @property
    def tag(self) -> str:
        if self.ref.startswith("refs/tags/"):
            return self.ref[len("refs/tags/"):]
        return ""

    def as_scope(self) -> Dict[str, object]:
        """Flat view used for template interpolation."""
        return {
            "event": self.event.value,
            "event_name": self.event.value,
            "ref": self.ref,
            "branch": self.branch,
            "tag": self.tag,
            "action": self.action or "",
            "workflow": self.workflow,
            "pr_number": self.pr_number if self.pr_number is not None else "",
            "sha": self.sha or "",
        }


# ----------------------------------------------------------------------
# Instances and results
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobInstance:
    """One concrete, matrix-expanded execution unit."""
    descriptor_id: str
    matrix_values: Tuple[Tuple[str, str], ...]
    steps: Tuple[Step, ...]
    env: Tuple[Tuple[str, str], ...] = ()
    condition: Optional["Condition"] = None
    timeout: float | None = None
    continue_on_error: bool = False

    @property
    def id(self) -> str:
        if not self.matrix_values:
            return self.descriptor_id
        values = ", ".join(f"{k}={v}" for k, v in self.matrix_values)
        return f"{self.descriptor_id}[{values}]"

    @property
    def key(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        return (self.descriptor_id, self.matrix_values)

    @property
    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)


class InstanceState(str, enum.Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    ELIGIBLE = "eligible"
    RUNNING = "running"
    SETTLED = "settled"


class Outcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"

    @property
    def is_failure(self) -> bool:
        return self in (Outcome.FAILED, Outcome.TIMED_OUT, Outcome.CANCELLED)


class RunStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 3
EXIT_CANCELLED = 4

_EXIT_CODES = {
    RunStatus.SUCCEEDED: EXIT_OK,
    RunStatus.SKIPPED: EXIT_OK,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.CANCELLED: EXIT_CANCELLED,
}


@dataclass
class InstanceResult:
    outcome: Outcome
    exit_code: int | None = None
    reason: str = ""
    error: Optional["GateCIError"] = None
    duration: float = 0.0


@dataclass
class RunResult:
    """Outcome per instance id, in settle order."""
    run_id: str
    status: RunStatus = RunStatus.SUCCEEDED
    results: Dict[str, InstanceResult] = field(default_factory=dict)

    def outcome(self, instance_id: str) -> Outcome:
        return self.results[instance_id].outcome

    def outcomes(self) -> Dict[str, Outcome]:
        return {k: r.outcome for k, r in self.results.items()}

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.status]
