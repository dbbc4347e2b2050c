# src/gateci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from .model import JobDescriptor, Matrix, Pipeline, Step
from .triggers import Condition, TriggerRule, coerce_condition, triggers


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Dict[str, Iterable[Any]]] = None,
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **kw_axes: Iterable[Any],
) -> Matrix:
    """
    Build a Matrix.

    Example:
        matrix(python=["3.11", "3.12"], os=["linux", "mac"])
        matrix(include=[{"command": "clippy"}, {"command": "test"}])
    """
    merged: Dict[str, List[str]] = {}
    for k, values in list((axes or {}).items()) + list(kw_axes.items()):
        merged[k] = [str(v) for v in values]
    return Matrix(
        axes=merged,
        include=[{k: str(v) for k, v in d.items()} for d in (include or [])],
        exclude=[{k: str(v) for k, v in d.items()} for d in (exclude or [])],
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    matrix: Optional[Matrix] = None,
    when: Condition | str | None = None,
    timeout: float | None = None,
    continue_on_error: bool | str = False,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobDescriptor:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobDescriptor(
        id=id,
        steps=steps_final,
        needs=list(needs or []),
        matrix=matrix or Matrix(),
        condition=coerce_condition(when),
        timeout=timeout,
        continue_on_error=continue_on_error,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def gate(id: str, *, needs: List[str], when: Condition | str | None = None) -> JobDescriptor:
    """A join job that only waits for its dependencies (`echo pass`)."""
    return job(id, sh("pass", "echo pass"), needs=needs, when=when)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._matrix: Matrix = Matrix()
        self._condition: Optional[Condition] = None
        self._timeout: float | None = None
        self._continue_on_error: bool | str = False

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, m: Matrix):
        self._matrix = m
        return self

    def when(self, condition: Condition | str):
        self._condition = coerce_condition(condition)
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def continue_on_error(self, value: bool | str = True):
        self._continue_on_error = value
        return self

    def build(self) -> JobDescriptor:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")

        return JobDescriptor(
            id=self.id,
            steps=list(self._steps),
            needs=list(self._needs),
            matrix=self._matrix,
            condition=self._condition,
            timeout=self._timeout,
            continue_on_error=self._continue_on_error,
            env=dict(self._env),
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Pipeline helpers
# ---------------------------------------------------------------------

def wf(*jobs: JobDescriptor) -> List[JobDescriptor]:
    """
    Job list helper. Users can write:

        from gateci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )
    """
    return list(jobs)


def pipeline(
    name: str,
    *jobs: JobDescriptor,
    on: Optional[List[TriggerRule]] = None,
    when: Condition | str | None = None,
    concurrency_group: str | None = None,
    cancel_in_progress: bool = True,
    env: Optional[Dict[str, str]] = None,
) -> Pipeline:
    """
    Build a Pipeline.

    `on` lists trigger rules (any must match); `when` is an extra predicate
    ANDed with them.
    """
    trigger: Optional[Condition] = triggers(*on) if on else None
    extra = coerce_condition(when)
    if extra is not None:
        trigger = extra if trigger is None else trigger & extra

    return Pipeline(
        name=name,
        jobs=list(jobs),
        trigger=trigger,
        concurrency_group=concurrency_group,
        cancel_in_progress=cancel_in_progress,
        env={k: str(v) for k, v in (env or {}).items()},
    )
