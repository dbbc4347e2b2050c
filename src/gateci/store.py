# store.py
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Tuple

from .errors import CyclicDependency, DefinitionError, DuplicateId, InvalidReference
from .model import JobDescriptor


class JobStore:
    """
    Registry of job descriptors, keyed by id.

    Descriptors are validated on the way in: ids are unique and every
    `needs` entry points at a registered descriptor. Once a run starts the
    store is frozen.
    """

    def __init__(self, descriptors: Iterable[JobDescriptor] = ()):
        self._by_id: Dict[str, JobDescriptor] = {}
        self._frozen = False
        self.register_all(descriptors)

    def _check_mutable(self) -> None:
        if self._frozen:
            raise DefinitionError("Job store is frozen; a run has already started")

    def register(self, descriptor: JobDescriptor) -> None:
        self._check_mutable()
        if descriptor.id in self._by_id:
            raise DuplicateId(descriptor.id)
        for dep in descriptor.needs:
            if dep == descriptor.id:
                raise CyclicDependency([descriptor.id, descriptor.id])
            if dep not in self._by_id:
                raise InvalidReference(descriptor.id, dep, list(self._by_id))
        self._by_id[descriptor.id] = descriptor

    def register_all(self, descriptors: Iterable[JobDescriptor]) -> None:
        """
        Register a set whose members may reference each other in any order.
        Cycles are left to the graph builder.
        """
        self._check_mutable()
        batch: List[JobDescriptor] = list(descriptors)
        known = set(self._by_id)
        for d in batch:
            if d.id in known:
                raise DuplicateId(d.id)
            known.add(d.id)
        for d in batch:
            for dep in d.needs:
                if dep == d.id:
                    raise CyclicDependency([d.id, d.id])
                if dep not in known:
                    raise InvalidReference(d.id, dep, list(known))
        for d in batch:
            self._by_id[d.id] = d

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, job_id: str) -> JobDescriptor:
        return self._by_id[job_id]

    def all(self) -> Tuple[JobDescriptor, ...]:
        return tuple(self._by_id.values())

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[JobDescriptor]:
        return iter(self.all())
