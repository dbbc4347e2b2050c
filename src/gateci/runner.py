# runner.py
from __future__ import annotations

import os
import queue
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Set

from .commands import CommandResult, CommandRunner, ShellRunner, StopSignal
from .dag import InstanceGraph, build_graph
from .errors import CancellationError, EngineFault, InstanceFailure
from .model import (
    InstanceResult,
    InstanceState,
    JobInstance,
    Outcome,
    Pipeline,
    RunContext,
    RunResult,
    RunStatus,
)
from .triggers import describe, evaluate
from .ui.console import get_console

DEFAULT_CANCEL_GRACE = 10.0


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


# ----------------------------------------------------------------------
# Run handle
# ----------------------------------------------------------------------

@dataclass
class _Completed:
    index: int
    future: Future


@dataclass
class _Cancel:
    reason: str


class Run:
    """
    Handle for one pipeline run.

    Other threads talk to a running scheduler only through this handle:
    `cancel()` posts a message to the scheduler loop and returns at once.
    """

    def __init__(self, run_id: str | None = None):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.result: Optional[RunResult] = None
        self.error: Optional[BaseException] = None
        self._messages: "queue.Queue[_Completed | _Cancel]" = queue.Queue()
        self._lock = threading.Lock()
        self._cancel_reason: str | None = None
        self._done = threading.Event()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Idempotent and safe from any thread."""
        with self._lock:
            if self._cancel_reason is not None:
                return
            self._cancel_reason = reason
        self._messages.put(_Cancel(reason))

    @property
    def cancelled(self) -> bool:
        return self._cancel_reason is not None

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> Optional[RunResult]:
        self._done.wait(timeout)
        return self.result

    def _post(self, msg: "_Completed | _Cancel") -> None:
        self._messages.put(msg)

    def _next(self, timeout: float | None) -> "Optional[_Completed | _Cancel]":
        try:
            return self._messages.get(timeout=timeout)
        except queue.Empty:
            return None

    def _finish(self, result: RunResult) -> None:
        self.result = result
        self._done.set()

    def __repr__(self) -> str:
        return f"Run({self.run_id!r}, cancelled={self.cancelled}, done={self.done})"


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------

@dataclass
class _Running:
    future: Future
    stop: StopSignal
    started: float
    deadline: float | None = None
    stop_kind: str | None = None  # "timeout" | "cancel"
    grace_deadline: float | None = None


@dataclass
class _Bookkeeping:
    state: List[InstanceState] = field(default_factory=list)
    remaining: List[int] = field(default_factory=list)
    failed_dep: List[Optional[str]] = field(default_factory=list)


class Scheduler:
    """
    Walks the instance graph and settles every instance exactly once.

    The scheduler loop is the only writer of instance state and of the
    RunResult. Workers report back by posting completion messages to the
    run handle; the loop reacts to those, to cancellation messages and to
    timeout deadlines.
    """

    def __init__(
        self,
        graph: InstanceGraph,
        context: RunContext,
        *,
        run: Optional[Run] = None,
        runner: Optional[CommandRunner] = None,
        max_workers: int | None = None,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
        trigger=None,
        pipeline_name: str = "pipeline",
    ):
        self.graph = graph
        self.context = context
        self.run = run or Run()
        self.runner: CommandRunner = runner or ShellRunner()
        self.max_workers = max_workers or default_workers()
        self.cancel_grace = cancel_grace
        self.trigger = trigger
        self.pipeline_name = pipeline_name

        n = len(graph)
        self._book = _Bookkeeping(
            state=[InstanceState.PENDING] * n,
            remaining=[len(d) for d in graph.deps],
            failed_dep=[None] * n,
        )
        self._ready: Deque[int] = deque()      # deps settled, condition not yet checked
        self._eligible: Deque[int] = deque()   # condition true, waiting for a worker slot
        self._running: Dict[int, _Running] = {}
        self._abandoned: Set[int] = set()
        self._cancelling = False
        self._result = RunResult(run_id=self.run.run_id)

    # ---- public ----

    def execute(self) -> RunResult:
        console = get_console()
        try:
            if not evaluate(self.trigger, self.context):
                reason = f"trigger not matched: {describe(self.trigger)}"
                console.print_run_skipped(self.pipeline_name, reason)
                for i, inst in enumerate(self.graph.instances):
                    self._book.state[i] = InstanceState.SETTLED
                    self._result.results[inst.id] = InstanceResult(Outcome.SKIPPED, reason=reason)
                self._result.status = RunStatus.SKIPPED
                return self._result

            console.print_run_started(self.pipeline_name, self.run.run_id, self.context, len(self.graph))
            try:
                self._loop()
            except EngineFault:
                self._result.status = RunStatus.FAILED
                raise
            self._result.status = self._final_status()
            return self._result
        finally:
            self.run._finish(self._result)

    # ---- loop ----

    def _loop(self) -> None:
        for i in range(len(self.graph)):
            if self._book.remaining[i] == 0:
                self._book.state[i] = InstanceState.ELIGIBLE
                self._ready.append(i)
            else:
                self._book.state[i] = InstanceState.BLOCKED

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"gateci-{self.run.run_id}")
        try:
            if self.run.cancelled:
                self._cancel(self.run.cancel_reason or "cancelled")

            while True:
                self._dispatch(pool)
                if len(self._result.results) == len(self.graph):
                    break
                if not self._running and not self._abandoned:
                    unsettled = [inst.id for i, inst in enumerate(self.graph.instances)
                                 if self._book.state[i] != InstanceState.SETTLED]
                    raise EngineFault("no running instances but run has not settled",
                                      {"unsettled": unsettled})

                msg = self.run._next(self._next_wakeup())
                if isinstance(msg, _Completed):
                    self._on_completed(msg)
                elif isinstance(msg, _Cancel):
                    self._cancel(msg.reason)
                self._check_deadlines()
        finally:
            for rec in self._running.values():
                rec.stop.set("run aborted")
            pool.shutdown(wait=not (self._abandoned or self._running), cancel_futures=True)

    def _dispatch(self, pool: ThreadPoolExecutor) -> None:
        if self._cancelling:
            return

        while self._ready:
            i = self._ready.popleft()
            inst = self.graph.instances[i]
            if not evaluate(inst.condition, self.context):
                self._settle(i, InstanceResult(Outcome.SKIPPED, reason=f"condition false: {describe(inst.condition)}"))
            else:
                self._eligible.append(i)

        # abandoned commands still occupy a pool thread
        while self._eligible and len(self._running) + len(self._abandoned) < self.max_workers:
            self._start(pool, self._eligible.popleft())

    def _start(self, pool: ThreadPoolExecutor, i: int) -> None:
        inst = self.graph.instances[i]
        if self._book.state[i] != InstanceState.ELIGIBLE:
            raise EngineFault("dispatching an instance that is not eligible",
                              {"instance": inst.id, "state": self._book.state[i].value})

        stop = StopSignal()
        now = time.monotonic()
        self._book.state[i] = InstanceState.RUNNING
        get_console().print_instance_started(inst.id)

        fut = pool.submit(self._invoke, inst, stop)
        self._running[i] = _Running(
            future=fut,
            stop=stop,
            started=now,
            deadline=(now + inst.timeout) if inst.timeout else None,
        )
        fut.add_done_callback(lambda f, i=i: self.run._post(_Completed(i, f)))

    def _invoke(self, inst: JobInstance, stop: StopSignal) -> CommandResult:
        out = self.runner(inst, stop)
        if isinstance(out, CommandResult):
            return out
        return CommandResult(exit_code=int(out))

    # ---- events ----

    def _on_completed(self, msg: _Completed) -> None:
        i = msg.index
        inst = self.graph.instances[i]
        rec = self._running.pop(i, None)
        if rec is None:
            if i in self._abandoned:
                # already force-settled after the grace period
                self._abandoned.discard(i)
                return
            raise EngineFault("completion for an instance that is not running", {"instance": inst.id})
        if self._book.state[i] != InstanceState.RUNNING:
            raise EngineFault("unexpected state on completion",
                              {"instance": inst.id, "state": self._book.state[i].value})

        duration = time.monotonic() - rec.started
        console = get_console()

        try:
            res = msg.future.result()
            error: Exception | None = None
        except Exception as e:
            res = None
            error = e

        if rec.stop_kind == "timeout":
            result = InstanceResult(
                Outcome.TIMED_OUT,
                exit_code=res.exit_code if res else None,
                reason=rec.stop.reason or "timed out",
                error=InstanceFailure(inst.id, res.exit_code if res else None,
                                      reason=rec.stop.reason or "timed out", timed_out=True),
                duration=duration,
            )
        elif rec.stop_kind == "cancel":
            result = InstanceResult(
                Outcome.CANCELLED,
                exit_code=res.exit_code if res else None,
                reason=rec.stop.reason or "cancelled",
                error=CancellationError(inst.id, rec.stop.reason or "cancelled"),
                duration=duration,
            )
        elif error is not None:
            result = InstanceResult(
                Outcome.FAILED,
                reason=str(error),
                error=InstanceFailure(inst.id, None, reason=f"{type(error).__name__}: {error}"),
                duration=duration,
            )
        elif res.exit_code == 0:
            result = InstanceResult(Outcome.SUCCEEDED, exit_code=0, duration=duration)
        else:
            result = InstanceResult(
                Outcome.FAILED,
                exit_code=res.exit_code,
                reason=f"step '{res.step}' failed" if res.step else "",
                error=InstanceFailure(inst.id, res.exit_code, step=res.step),
                duration=duration,
            )
            console.print_failure_output(inst.id, res.output)

        self._settle(i, result)

    def _cancel(self, reason: str) -> None:
        if self._cancelling:
            return
        self._cancelling = True
        self._ready.clear()
        self._eligible.clear()

        now = time.monotonic()
        for i, inst in enumerate(self.graph.instances):
            state = self._book.state[i]
            if state == InstanceState.RUNNING:
                rec = self._running[i]
                if rec.stop_kind is None:
                    rec.stop_kind = "cancel"
                    rec.stop.set(reason)
                    rec.grace_deadline = now + self.cancel_grace
            elif state != InstanceState.SETTLED:
                self._settle(i, InstanceResult(Outcome.CANCELLED, reason=reason,
                                               error=CancellationError(inst.id, reason)))

    def _check_deadlines(self) -> None:
        now = time.monotonic()
        for i, rec in list(self._running.items()):
            inst = self.graph.instances[i]
            if rec.stop_kind is None and rec.deadline is not None and now >= rec.deadline:
                rec.stop_kind = "timeout"
                rec.stop.set(f"timed out after {inst.timeout:g}s")
                rec.grace_deadline = now + self.cancel_grace
            elif rec.grace_deadline is not None and now >= rec.grace_deadline:
                # command ignored the stop signal; stop waiting for it
                del self._running[i]
                self._abandoned.add(i)
                reason = f"{rec.stop.reason} (forced after {self.cancel_grace:g}s grace)"
                if rec.stop_kind == "timeout":
                    result = InstanceResult(Outcome.TIMED_OUT, reason=reason,
                                            error=InstanceFailure(inst.id, None, reason=reason, timed_out=True),
                                            duration=now - rec.started)
                else:
                    result = InstanceResult(Outcome.CANCELLED, reason=reason,
                                            error=CancellationError(inst.id, reason),
                                            duration=now - rec.started)
                self._settle(i, result)

    def _next_wakeup(self) -> float | None:
        now = time.monotonic()
        times = []
        for rec in self._running.values():
            if rec.stop_kind is None and rec.deadline is not None:
                times.append(rec.deadline)
            if rec.grace_deadline is not None:
                times.append(rec.grace_deadline)
        if not times:
            return None
        return max(0.0, min(times) - now)

    # ---- settlement & propagation ----

    def _settle(self, index: int, result: InstanceResult) -> None:
        console = get_console()
        # third item: whether dependents should treat this settlement as a failure.
        # Skips caused by a failed dependency carry the failure forward.
        work = [(index, result, result.outcome.is_failure)]
        while work:
            i, res, blocking = work.pop()
            inst = self.graph.instances[i]
            if self._book.state[i] == InstanceState.SETTLED:
                raise EngineFault("instance settled twice", {"instance": inst.id})
            self._book.state[i] = InstanceState.SETTLED
            self._result.results[inst.id] = res
            console.print_instance_settled(inst.id, res)

            for d in sorted(self.graph.dependents[i]):
                self._book.remaining[d] -= 1
                if blocking and self._book.failed_dep[d] is None:
                    self._book.failed_dep[d] = inst.id
                if self._book.remaining[d] > 0 or self._book.state[d] == InstanceState.SETTLED:
                    continue
                if self._cancelling:
                    # _cancel settles every blocked instance itself
                    continue
                if self._book.state[d] != InstanceState.BLOCKED:
                    raise EngineFault("dependent released from an unexpected state",
                                      {"instance": self.graph.instances[d].id,
                                       "state": self._book.state[d].value})

                dep = self.graph.instances[d]
                failed = self._book.failed_dep[d]
                if failed is not None and not dep.continue_on_error:
                    work.append((d, InstanceResult(Outcome.SKIPPED, reason=f"dependency {failed} did not succeed"), True))
                else:
                    self._book.state[d] = InstanceState.ELIGIBLE
                    self._ready.append(d)

    def _final_status(self) -> RunStatus:
        if self._cancelling:
            return RunStatus.CANCELLED
        for inst in self.graph.instances:
            res = self._result.results[inst.id]
            if res.outcome.is_failure and not inst.continue_on_error:
                return RunStatus.FAILED
        return RunStatus.SUCCEEDED


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    pipeline: Pipeline,
    context: RunContext,
    *,
    run: Optional[Run] = None,
    runner: Optional[CommandRunner] = None,
    max_workers: int | None = None,
    cancel_grace: float = DEFAULT_CANCEL_GRACE,
) -> RunResult:
    """
    Execute one pipeline run to completion.

    Definition errors (duplicate ids, unknown references, cycles) are raised
    before anything is dispatched.
    """
    graph = build_graph(pipeline.jobs, pipeline.env)
    scheduler = Scheduler(
        graph,
        context,
        run=run,
        runner=runner,
        max_workers=max_workers,
        cancel_grace=cancel_grace,
        trigger=pipeline.trigger,
        pipeline_name=pipeline.name,
    )
    return scheduler.execute()
