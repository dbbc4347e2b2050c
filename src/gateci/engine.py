# engine.py
from __future__ import annotations

import threading
from typing import Dict, Optional

from .commands import CommandRunner
from .concurrency import ConcurrencyGroups, resolve_group_key
from .dag import InstanceGraph, build_graph
from .model import Pipeline, RunContext, RunResult, RunStatus
from .runner import DEFAULT_CANCEL_GRACE, Run, Scheduler
from .triggers import evaluate
from .ui.console import get_console


class Engine:
    """
    Owns the concurrency groups shared by every run it starts.

    `run()` executes a pipeline in the calling thread; `submit()` starts it
    on a background thread and returns the Run handle. Either way a run
    whose pipeline declares a concurrency group and whose trigger matches
    first takes that group's token, superseding (cancelling) the previous
    holder.
    """

    def __init__(
        self,
        *,
        runner: Optional[CommandRunner] = None,
        max_workers: int | None = None,
        cancel_grace: float = DEFAULT_CANCEL_GRACE,
        groups: Optional[ConcurrencyGroups] = None,
    ):
        self.runner = runner
        self.max_workers = max_workers
        self.cancel_grace = cancel_grace
        self.groups = groups or ConcurrencyGroups()
        self._threads: Dict[str, threading.Thread] = {}

    def plan(self, pipeline: Pipeline) -> InstanceGraph:
        """Validate the pipeline and expand it. Raises DefinitionError."""
        return build_graph(pipeline.jobs, pipeline.env)

    def run(self, pipeline: Pipeline, context: RunContext, *, run_id: str | None = None) -> RunResult:
        graph = self.plan(pipeline)
        run = Run(run_id)
        key = self._group_key(pipeline, context)
        if key is not None and pipeline.cancel_in_progress:
            self._acquire(pipeline, key, run)
            key_held = True
        else:
            key_held = False
        return self._execute(pipeline, graph, context, run, key, key_held)

    def submit(self, pipeline: Pipeline, context: RunContext, *, run_id: str | None = None) -> Run:
        """
        Start a run in the background.

        Definition errors are raised here, before anything starts. Taking the
        group token (and signalling the superseded run) also happens here, so
        the superseded run's shutdown never delays this one.
        """
        graph = self.plan(pipeline)
        run = Run(run_id)
        key = self._group_key(pipeline, context)
        key_held = False
        if key is not None and pipeline.cancel_in_progress:
            self._acquire(pipeline, key, run)
            key_held = True

        t = threading.Thread(
            target=self._execute_in_thread,
            args=(pipeline, graph, context, run, key, key_held),
            name=f"gateci-run-{run.run_id}",
            daemon=True,
        )
        self._threads[run.run_id] = t
        t.start()
        return run

    def join(self, timeout: float | None = None) -> None:
        """Wait for every background run started by this engine."""
        for t in list(self._threads.values()):
            t.join(timeout)

    # ---- internals ----

    @staticmethod
    def _group_key(pipeline: Pipeline, context: RunContext) -> str | None:
        if not pipeline.concurrency_group:
            return None
        # a run the trigger rejects settles SKIPPED without joining its group
        if not evaluate(pipeline.trigger, context):
            return None
        return resolve_group_key(pipeline.concurrency_group, context)

    def _acquire(self, pipeline: Pipeline, key: str, run: Run) -> None:
        previous = self.groups.acquire(key, run, cancel_in_progress=pipeline.cancel_in_progress)
        if previous is not None:
            get_console().print_superseded(key, previous.run_id, run.run_id)

    def _execute(
        self,
        pipeline: Pipeline,
        graph: InstanceGraph,
        context: RunContext,
        run: Run,
        key: str | None,
        key_held: bool,
    ) -> RunResult:
        if key is not None and not key_held:
            # queue behind the current holder instead of cancelling it
            self._acquire(pipeline, key, run)
        try:
            scheduler = Scheduler(
                graph,
                context,
                run=run,
                runner=self.runner,
                max_workers=self.max_workers,
                cancel_grace=self.cancel_grace,
                trigger=pipeline.trigger,
                pipeline_name=pipeline.name,
            )
            return scheduler.execute()
        finally:
            if key is not None:
                self.groups.release(key, run)

    def _execute_in_thread(self, *args) -> None:
        run: Run = args[3]
        try:
            self._execute(*args)
        except Exception as e:
            run.error = e
            get_console().print_exception(e)
            if not run.done:
                run._finish(RunResult(run_id=run.run_id, status=RunStatus.FAILED))
        finally:
            self._threads.pop(run.run_id, None)
