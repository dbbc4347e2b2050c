# matrix.py
from __future__ import annotations

import itertools
from typing import Dict, List, Mapping, Optional

from .errors import DefinitionError
from .expressions import interpolate, truthy
from .model import JobDescriptor, JobInstance, Matrix, Step


def _is_subset(partial: Mapping[str, str], combo: Mapping[str, str]) -> bool:
    return all(k in combo and str(combo[k]) == str(v) for k, v in partial.items())


def combinations(matrix: Matrix) -> List[Dict[str, str]]:
    """
    Matrix value combinations in deterministic order.

    1. cartesian product of the axes (declaration order, last axis fastest)
    2. drop combinations matching any `exclude` entry
    3. apply `include` entries: an entry whose axis values match an existing
       combination and only adds new keys is merged into every such
       combination; otherwise it is appended as a combination of its own
    """
    keys = list(matrix.axes)
    combos: List[Dict[str, str]] = []
    if keys:
        for values in itertools.product(*(matrix.axes[k] for k in keys)):
            combos.append({k: str(v) for k, v in zip(keys, values)})

    if matrix.exclude:
        combos = [c for c in combos if not any(_is_subset(ex, c) for ex in matrix.exclude)]

    for inc in matrix.include:
        inc = {k: str(v) for k, v in inc.items()}
        axis_part = {k: v for k, v in inc.items() if k in matrix.axes}
        extra = {k: v for k, v in inc.items() if k not in matrix.axes}
        merged = False
        if axis_part and extra:
            for c in combos:
                if _is_subset(axis_part, c) and all(k not in c or c[k] == v for k, v in extra.items()):
                    c.update(extra)
                    merged = True
        if not merged and inc not in combos:
            combos.append(dict(inc))

    return combos


def _resolve_continue_on_error(value: bool | str, combo: Mapping[str, str]) -> bool:
    if isinstance(value, bool):
        return value
    # a matrix key name, e.g. "skip-error"
    return truthy(combo.get(value))


def expand(descriptor: JobDescriptor, env: Optional[Mapping[str, str]] = None) -> List[JobInstance]:
    """
    Expand one descriptor into its job instances.

    Step names, commands and env values may reference `${{ matrix.<key> }}`
    and `${{ env.<KEY> }}`. Job env is layered over `env` (pipeline env).
    """
    base_env: Dict[str, str] = dict(env or {})
    base_env.update(descriptor.env)

    combos = combinations(descriptor.matrix) if descriptor.matrix else [{}]
    if not combos:
        # every descriptor yields at least one instance
        raise DefinitionError(f"Job {descriptor.id!r}: matrix expands to no combinations")

    instances: List[JobInstance] = []
    for combo in combos:
        scope = {"matrix": combo, "env": base_env}
        job_env = {k: interpolate(str(v), scope) for k, v in base_env.items()}
        scope["env"] = job_env
        steps = tuple(
            Step(
                name=interpolate(s.name, scope),
                run=interpolate(s.run, scope),
                cwd=s.cwd,
            )
            for s in descriptor.steps
        )
        instances.append(
            JobInstance(
                descriptor_id=descriptor.id,
                matrix_values=tuple(combo.items()),
                steps=steps,
                env=tuple(job_env.items()),
                condition=descriptor.condition,
                timeout=descriptor.timeout,
                continue_on_error=_resolve_continue_on_error(descriptor.continue_on_error, combo),
            )
        )
    return instances
