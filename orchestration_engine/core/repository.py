# orchestration_engine/core/repository.py

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import List, Optional
from uuid import UUID

from orchestration_engine.core.models import (
    Domain,
    Instance,
    ParkedDirectory,
    Registry,
    Stack,
)


class StateStore(ABC):
    """
    Persistence contract for the orchestrator registry.

    Writes are serialized through a single writer. Reads return copies of
    the last committed snapshot and never observe a half-applied mutation.
    """

    # -------------------------
    # Snapshot / transactions
    # -------------------------

    @abstractmethod
    def snapshot(self) -> Registry:
        """Copy of the last committed registry."""
        raise NotImplementedError

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """
        Hold the writer lock and yield a working copy of the registry.
        The copy is persisted and published on clean exit and discarded
        on exception. Raises PersistenceFailed if the write fails.
        """
        raise NotImplementedError

    # -------------------------
    # Instances
    # -------------------------

    @abstractmethod
    def get_instance(self, instance_id: UUID) -> Optional[Instance]:
        raise NotImplementedError

    @abstractmethod
    def find_instance_by_name(self, name: str) -> Optional[Instance]:
        raise NotImplementedError

    @abstractmethod
    def list_instances(self) -> List[Instance]:
        raise NotImplementedError

    @abstractmethod
    def put_instance(self, instance: Instance) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_instance(self, instance_id: UUID) -> None:
        raise NotImplementedError

    # -------------------------
    # Domains
    # -------------------------

    @abstractmethod
    def get_domain(self, domain_id: UUID) -> Optional[Domain]:
        raise NotImplementedError

    @abstractmethod
    def find_domain(self, full_domain: str) -> Optional[Domain]:
        raise NotImplementedError

    @abstractmethod
    def list_domains(self) -> List[Domain]:
        raise NotImplementedError

    @abstractmethod
    def put_domain(self, domain: Domain) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_domain(self, domain_id: UUID) -> None:
        raise NotImplementedError

    # -------------------------
    # Stacks
    # -------------------------

    @abstractmethod
    def get_stack(self, stack_id: UUID) -> Optional[Stack]:
        raise NotImplementedError

    @abstractmethod
    def list_stacks(self) -> List[Stack]:
        raise NotImplementedError

    @abstractmethod
    def put_stack(self, stack: Stack) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_stack(self, stack_id: UUID) -> None:
        raise NotImplementedError

    # -------------------------
    # Parked directories
    # -------------------------

    @abstractmethod
    def get_parked_directory(self, parked_id: UUID) -> Optional[ParkedDirectory]:
        raise NotImplementedError

    @abstractmethod
    def find_parked_directory(self, path: str) -> Optional[ParkedDirectory]:
        raise NotImplementedError

    @abstractmethod
    def list_parked_directories(self) -> List[ParkedDirectory]:
        raise NotImplementedError

    @abstractmethod
    def put_parked_directory(self, parked: ParkedDirectory) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_parked_directory(self, parked_id: UUID) -> None:
        raise NotImplementedError
