# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class GateCIError(Exception):
    """Base class for every error raised by gateci."""


# ----------------------------------------------------------------------
# Definition errors (fatal, raised before anything runs)
# ----------------------------------------------------------------------

class DefinitionError(GateCIError):
    """The pipeline definition is invalid. Fix the definition and re-run."""


class ConfigError(GateCIError):
    """A GATECI_* setting holds a value that cannot be used."""


class DuplicateId(DefinitionError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Duplicate job id: {job_id!r}")


class InvalidReference(DefinitionError):
    def __init__(self, job_id: str, missing: str, known: Optional[List[str]] = None):
        self.job_id = job_id
        self.missing = missing
        self.known = sorted(known or [])
        msg = f"Job {job_id!r} needs missing job {missing!r}"
        if self.known:
            msg += f". Known jobs: {self.known}"
        super().__init__(msg)


class CyclicDependency(DefinitionError):
    def __init__(self, path: List[str]):
        self.path = list(path)
        super().__init__("Dependency cycle: " + " -> ".join(self.path))


# ----------------------------------------------------------------------
# Run-time outcomes
# ----------------------------------------------------------------------

@dataclass
class InstanceFailure(GateCIError):
    """
    A single job instance failed (non-zero exit or timeout).

    Local to one instance: recorded on its result and propagated to
    dependents according to their continue_on_error policy.
    """
    instance: str
    exit_code: Optional[int]
    step: str | None = None
    reason: str = ""
    timed_out: bool = False

    def __str__(self) -> str:
        if self.timed_out:
            return f"[{self.instance}] timed out: {self.reason}"
        where = f" step '{self.step}'" if self.step else ""
        detail = f": {self.reason}" if self.reason else ""
        return f"[{self.instance}]{where} failed (exit={self.exit_code}){detail}"


@dataclass
class CancellationError(GateCIError):
    """An instance was cancelled. Not a failure of the instance itself."""
    instance: str
    reason: str = "cancelled"

    def __str__(self) -> str:
        return f"[{self.instance}] cancelled: {self.reason}"


@dataclass
class EngineFault(GateCIError):
    """Internal scheduling invariant violated. Aborts the run."""
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"engine fault: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)
