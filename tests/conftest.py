from __future__ import annotations

import threading
import time

import pytest

from gateci.commands import StopSignal
from gateci.model import JobInstance
from gateci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


class FakeRunner:
    """
    In-process stand-in for the shell runner.

    exit_codes: instance id -> exit code (default 0)
    delays:     instance id -> seconds to "run"
    blocking:   instance ids that run until they receive a stop signal
    stubborn:   instance ids that ignore the stop signal and sleep `delays`
    """

    def __init__(self, exit_codes=None, delays=None, blocking=(), stubborn=(), deps=None):
        self.exit_codes = dict(exit_codes or {})
        self.delays = dict(delays or {})
        self.blocking = set(blocking)
        self.stubborn = set(stubborn)
        self.deps = deps or {}
        self.lock = threading.Lock()
        self.started: list[str] = []
        self.finished: set[str] = set()
        self.running: set[str] = set()
        self.max_parallel = 0
        self.violations: list[tuple[str, str]] = []
        self.started_event = {}

    def event_for(self, instance_id: str) -> threading.Event:
        with self.lock:
            return self.started_event.setdefault(instance_id, threading.Event())

    def __call__(self, inst: JobInstance, stop: StopSignal) -> int:
        with self.lock:
            for dep in self.deps.get(inst.id, ()):
                if dep in self.started and dep not in self.finished:
                    self.violations.append((inst.id, dep))
            self.started.append(inst.id)
            self.running.add(inst.id)
            self.max_parallel = max(self.max_parallel, len(self.running))
            ev = self.started_event.setdefault(inst.id, threading.Event())
        ev.set()
        try:
            if inst.id in self.blocking:
                stop.wait(10)
                return -15
            if inst.id in self.stubborn:
                time.sleep(self.delays.get(inst.id, 1.0))
                return 0
            delay = self.delays.get(inst.id, 0)
            if delay:
                stop.wait(delay)
            return self.exit_codes.get(inst.id, 0)
        finally:
            with self.lock:
                self.running.discard(inst.id)
                self.finished.add(inst.id)


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def ci_pipeline():
    """fmt, lint -> verify[x=1,2] -> gate -> publish (release only)."""
    from gateci.dsl import job, matrix, pipeline, sh
    from gateci.triggers import event

    def make(**kw):
        return pipeline(
            "CI",
            job("fmt", sh("fmt", "cargo fmt --check")),
            job("lint", sh("lint", "cargo sort --check")),
            job("verify", sh("verify", "cargo test ${{ matrix.x }}"), needs=["fmt", "lint"], matrix=matrix(x=[1, 2])),
            job("gate", sh("pass", "echo pass"), needs=["verify"]),
            job("publish", sh("publish", "cargo publish"), needs=["gate"], when=event("release")),
            **kw,
        )

    return make
