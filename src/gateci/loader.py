# loader.py
# Pipeline definitions: Python workflow files or YAML/JSON documents.
# Everything is validated here, before any job runs.

from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .dag import build_graph
from .errors import DefinitionError
from .model import EventKind, JobDescriptor, Matrix, Pipeline, Step
from .triggers import Condition, TriggerRule, parse_condition, triggers

Scalar = Union[str, int, float, bool]


def _s(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# -------------------- Schemas --------------------

class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSpec(_Model):
    name: Optional[str] = None
    run: str
    cwd: Optional[str] = None


class MatrixSpec(_Model):
    include: List[Dict[str, Scalar]] = Field(default_factory=list)
    exclude: List[Dict[str, Scalar]] = Field(default_factory=list)
    axes: Dict[str, List[Scalar]] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "MatrixSpec":
        # axes sit next to include/exclude, as in GitHub's strategy.matrix
        if not isinstance(raw, dict):
            raise DefinitionError(f"matrix must be a mapping, got {type(raw).__name__}")
        data = dict(raw)
        include = data.pop("include", [])
        exclude = data.pop("exclude", [])
        return cls(include=include, exclude=exclude, axes=data)


class JobSpec(_Model):
    id: str
    needs: List[str] = Field(default_factory=list, validation_alias=AliasChoices("needs", "depends_on"))
    run: Optional[str] = Field(default=None, validation_alias=AliasChoices("run", "command"))
    steps: List[StepSpec] = Field(default_factory=list)
    matrix: Optional[Dict[str, Any]] = None
    if_: Optional[str] = Field(default=None, validation_alias=AliasChoices("if", "if_"))
    timeout: Optional[float] = None
    timeout_minutes: Optional[float] = Field(default=None, validation_alias=AliasChoices("timeout_minutes", "timeout-minutes"))
    continue_on_error: Union[bool, str] = Field(default=False, validation_alias=AliasChoices("continue_on_error", "continue-on-error"))
    env: Dict[str, Scalar] = Field(default_factory=dict)
    concurrency_group: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("concurrency_group", "concurrency-group")
    )

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("timeout", "timeout_minutes")
    @classmethod
    def _positive(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("timeout must be positive")
        return v


class TriggerFilter(_Model):
    branches: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list)


class ConcurrencySpec(_Model):
    group: str
    cancel_in_progress: bool = Field(default=True, validation_alias=AliasChoices("cancel_in_progress", "cancel-in-progress"))


class PipelineSpec(_Model):
    name: str = "pipeline"
    on: Optional[Dict[str, Optional[TriggerFilter]]] = None
    if_: Optional[str] = Field(default=None, validation_alias=AliasChoices("if", "if_"))
    concurrency: Optional[Union[ConcurrencySpec, str]] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    jobs: List[JobSpec]

    @field_validator("on", mode="before")
    @classmethod
    def _on_mapping(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {v: None}
        if isinstance(v, list):
            return {e: None for e in v}
        return v

    @field_validator("jobs", mode="before")
    @classmethod
    def _jobs_list(cls, v: Any) -> Any:
        # GitHub style: jobs keyed by id
        if isinstance(v, dict):
            return [{"id": k, **(body or {})} for k, body in v.items()]
        return v


# -------------------- Conversion --------------------

def _condition(text: Optional[str]) -> Optional[Condition]:
    return parse_condition(text) if text else None


def _trigger_rules(on: Dict[str, Optional[TriggerFilter]]) -> List[TriggerRule]:
    rules: List[TriggerRule] = []
    for name, flt in on.items():
        try:
            kind = EventKind.parse(name)
        except ValueError:
            raise DefinitionError(f"Unknown trigger event {name!r}") from None
        flt = flt or TriggerFilter()
        rules.append(TriggerRule(kind, tuple(flt.branches), tuple(flt.types)))
    return rules


def _job_from_spec(spec: JobSpec) -> JobDescriptor:
    steps = [Step(name=s.name or s.run, run=s.run, cwd=s.cwd) for s in spec.steps]
    if spec.run:
        steps.insert(0, Step(name=spec.id, run=spec.run))
    if not steps:
        raise DefinitionError(f"Job {spec.id!r} has no steps (set `run` or `steps`)")

    m = Matrix()
    if spec.matrix:
        ms = MatrixSpec.from_raw(spec.matrix)
        m = Matrix(
            axes={k: [_s(v) for v in vals] for k, vals in ms.axes.items()},
            include=[{k: _s(v) for k, v in d.items()} for d in ms.include],
            exclude=[{k: _s(v) for k, v in d.items()} for d in ms.exclude],
        )

    timeout = spec.timeout
    if spec.timeout_minutes is not None:
        timeout = spec.timeout_minutes * 60

    return JobDescriptor(
        id=spec.id,
        steps=steps,
        needs=list(spec.needs),
        matrix=m,
        condition=_condition(spec.if_),
        timeout=timeout,
        continue_on_error=spec.continue_on_error,
        env={k: _s(v) for k, v in spec.env.items()},
    )


def pipeline_from_dict(data: Dict[str, Any], *, default_name: str = "pipeline") -> Pipeline:
    """Validate a parsed document and turn it into a Pipeline."""
    if not isinstance(data, dict):
        raise DefinitionError("Pipeline document must be a mapping")
    data = dict(data)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data:
        data["on"] = data.pop(True)
    data.setdefault("name", default_name)

    try:
        spec = PipelineSpec.model_validate(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise DefinitionError(f"Invalid pipeline definition: {details}") from e

    trigger: Optional[Condition] = triggers(*_trigger_rules(spec.on)) if spec.on else None
    extra = _condition(spec.if_)
    if extra is not None:
        trigger = extra if trigger is None else trigger & extra

    group: Optional[str] = None
    cancel_in_progress = True
    if isinstance(spec.concurrency, str):
        group = spec.concurrency
    elif spec.concurrency is not None:
        group = spec.concurrency.group
        cancel_in_progress = spec.concurrency.cancel_in_progress

    # a group named on jobs applies to the whole run; one token per run
    job_groups = sorted({j.concurrency_group for j in spec.jobs if j.concurrency_group})
    if job_groups:
        if len(job_groups) > 1 or (group is not None and group != job_groups[0]):
            declared = job_groups if group is None else [group, *job_groups]
            raise DefinitionError(f"Conflicting concurrency groups: {declared}; a pipeline has one group")
        group = job_groups[0]

    return Pipeline(
        name=spec.name,
        jobs=[_job_from_spec(j) for j in spec.jobs],
        trigger=trigger,
        concurrency_group=group,
        cancel_in_progress=cancel_in_progress,
        env={k: _s(v) for k, v in spec.env.items()},
    )


# -------------------- Loading --------------------

def _load_python(wf_path: Path) -> Pipeline:
    """
    The file must define one of:
      - pipeline() -> Pipeline   or   PIPELINE = Pipeline(...)
      - workflow() -> List[JobDescriptor]   or   JOBS = [JobDescriptor, ...]
    """
    module_name = f"gateci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    found: Any = None
    for name in ("pipeline", "workflow"):
        fn = globals_dict.get(name)
        if callable(fn) and getattr(fn, "__module__", None) == module_name:
            found = fn()
            break
    if found is None:
        found = globals_dict.get("PIPELINE", globals_dict.get("JOBS"))

    if isinstance(found, Pipeline):
        return found
    if isinstance(found, list) and all(isinstance(j, JobDescriptor) for j in found):
        return Pipeline(name=wf_path.stem, jobs=found)

    raise DefinitionError(
        f"{wf_path.name} must define pipeline() -> Pipeline, PIPELINE, "
        "workflow() -> List[JobDescriptor] or JOBS = [JobDescriptor, ...]"
    )


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load and validate a pipeline definition.

    Raises:
        FileNotFoundError: the file does not exist
        DefinitionError: the definition is malformed, has duplicate ids,
            unknown references or a dependency cycle
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        pipeline = _load_python(wf_path)
    elif suffix in (".yml", ".yaml", ".json"):
        text = wf_path.read_text(encoding="utf-8")
        try:
            data = json.loads(text) if suffix == ".json" else yaml.safe_load(text)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise DefinitionError(f"Could not parse {wf_path.name}: {e}") from e
        pipeline = pipeline_from_dict(data, default_name=wf_path.stem)
    else:
        raise DefinitionError(f"Unsupported workflow file type: {wf_path.name}")

    # surfaces duplicate ids, unknown references and cycles now
    build_graph(pipeline.jobs, pipeline.env)
    return pipeline
