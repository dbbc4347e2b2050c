from .engine import Engine
from .loader import load_pipeline
from .model import EventKind, JobDescriptor, Pipeline, RunContext, RunResult, RunStatus, Outcome, Step
from .runner import Run, run_pipeline
from .triggers import TriggerRule, action, branch, event, tag, not_
# Imported last: loading the gateci.matrix submodule above would otherwise
# shadow the dsl `matrix` helper on the package namespace.
from .dsl import job, sh, matrix, wf, gate, pipeline, JobBuilder, build

__all__ = [
    "job", "sh", "matrix", "wf", "gate", "pipeline", "JobBuilder", "build",
    "Engine", "load_pipeline", "Run", "run_pipeline",
    "EventKind", "JobDescriptor", "Pipeline", "RunContext", "RunResult", "RunStatus", "Outcome", "Step",
    "TriggerRule", "action", "branch", "event", "tag", "not_",
]
