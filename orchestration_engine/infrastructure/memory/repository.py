# orchestration_engine/infrastructure/memory/repository.py

import copy
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional
from uuid import UUID

from orchestration_engine.core.models import (
    Domain,
    Instance,
    ParkedDirectory,
    Registry,
    Stack,
)
from orchestration_engine.core.repository import StateStore
from orchestration_engine.core.state_machine import PERSISTED_STATES
from orchestration_engine.core.errors import PersistenceFailed


class InMemoryStateStore(StateStore):
    """
    Snapshot store kept in process memory.

    Subclasses override `_persist` to make the snapshot durable; the
    published registry is only swapped after `_persist` returns.
    """

    def __init__(self, registry: Optional[Registry] = None):
        self._committed: Registry = registry or Registry()
        self._working: Optional[Registry] = None
        self._lock = threading.RLock()
        self._version = 0

    # -------------------------
    # Snapshot / transactions
    # -------------------------

    @property
    def version(self) -> int:
        """Number of committed transactions."""
        return self._version

    def snapshot(self) -> Registry:
        return copy.deepcopy(self._committed)

    @contextmanager
    def transaction(self) -> Iterator[Registry]:
        with self._lock:
            # Nested transaction on the owning thread joins the outer one
            if self._working is not None:
                yield self._working
                return

            working = copy.deepcopy(self._committed)
            self._working = working
            try:
                yield working
                self._check_invariants(working)
                self._persist(working)
                self._committed = working
                self._version += 1
            finally:
                self._working = None

    def _persist(self, registry: Registry) -> None:
        pass

    @staticmethod
    def _check_invariants(registry: Registry) -> None:
        for instance in registry.instances.values():
            if instance.state not in PERSISTED_STATES:
                raise PersistenceFailed(
                    f"Refusing to persist {instance.name} in transient state {instance.state.value}"
                )
            if instance.running != (instance.pid is not None):
                raise PersistenceFailed(
                    f"Instance {instance.name} has running={instance.running} but pid={instance.pid}"
                )

    # -------------------------
    # Instances
    # -------------------------

    def get_instance(self, instance_id: UUID) -> Optional[Instance]:
        return copy.deepcopy(self._committed.instances.get(instance_id))

    def find_instance_by_name(self, name: str) -> Optional[Instance]:
        return copy.deepcopy(self._committed.find_instance_by_name(name))

    def list_instances(self) -> List[Instance]:
        instances = copy.deepcopy(list(self._committed.instances.values()))
        return sorted(instances, key=lambda i: i.created_at)

    def put_instance(self, instance: Instance) -> None:
        with self.transaction() as registry:
            registry.instances[instance.id] = copy.deepcopy(instance)

    def delete_instance(self, instance_id: UUID) -> None:
        with self.transaction() as registry:
            registry.instances.pop(instance_id, None)

    # -------------------------
    # Domains
    # -------------------------

    def get_domain(self, domain_id: UUID) -> Optional[Domain]:
        return copy.deepcopy(self._committed.domains.get(domain_id))

    def find_domain(self, full_domain: str) -> Optional[Domain]:
        return copy.deepcopy(self._committed.find_domain(full_domain))

    def list_domains(self) -> List[Domain]:
        domains = copy.deepcopy(list(self._committed.domains.values()))
        return sorted(domains, key=lambda d: d.full_domain)

    def put_domain(self, domain: Domain) -> None:
        with self.transaction() as registry:
            registry.domains[domain.id] = copy.deepcopy(domain)

    def delete_domain(self, domain_id: UUID) -> None:
        with self.transaction() as registry:
            registry.domains.pop(domain_id, None)

    # -------------------------
    # Stacks
    # -------------------------

    def get_stack(self, stack_id: UUID) -> Optional[Stack]:
        return copy.deepcopy(self._committed.stacks.get(stack_id))

    def list_stacks(self) -> List[Stack]:
        stacks = copy.deepcopy(list(self._committed.stacks.values()))
        return sorted(stacks, key=lambda s: s.created_at)

    def put_stack(self, stack: Stack) -> None:
        with self.transaction() as registry:
            registry.stacks[stack.id] = copy.deepcopy(stack)

    def delete_stack(self, stack_id: UUID) -> None:
        with self.transaction() as registry:
            registry.stacks.pop(stack_id, None)

    # -------------------------
    # Parked directories
    # -------------------------

    def get_parked_directory(self, parked_id: UUID) -> Optional[ParkedDirectory]:
        return copy.deepcopy(self._committed.parked_directories.get(parked_id))

    def find_parked_directory(self, path: str) -> Optional[ParkedDirectory]:
        for parked in self._committed.parked_directories.values():
            if parked.path == path:
                return copy.deepcopy(parked)
        return None

    def list_parked_directories(self) -> List[ParkedDirectory]:
        parked = copy.deepcopy(list(self._committed.parked_directories.values()))
        return sorted(parked, key=lambda p: p.path)

    def put_parked_directory(self, parked: ParkedDirectory) -> None:
        with self.transaction() as registry:
            registry.parked_directories[parked.id] = copy.deepcopy(parked)

    def delete_parked_directory(self, parked_id: UUID) -> None:
        with self.transaction() as registry:
            registry.parked_directories.pop(parked_id, None)
