# orchestration_engine/supervisor/supervisor.py
"""
Service Supervisor - spawns, stops and health-checks instance processes.

Operations on the same instance are serialized by a per-instance lock.
Operations on different instances run independently. Only STOPPED,
RUNNING and CRASHED are ever written to the store; STARTING and
STOPPING exist only while an operation holds the instance lock.
"""

import copy
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional
from uuid import UUID

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import (
    AlreadyRunning,
    BinaryMissing,
    NotFound,
    PortConflict,
    ProcessSpawnFailed,
)
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    Instance,
    InstanceState,
    ProcessManagerKind,
)
from orchestration_engine.core.repository import StateStore
from orchestration_engine.core.state_machine import InstanceStateMachine
from orchestration_engine.services.catalog import (
    HealthCheckKind,
    ServiceCatalog,
    ServiceDefinition,
)
from orchestration_engine.supervisor.health import HealthProber, is_port_free
from orchestration_engine.supervisor.launchers import LaunchSpec, ProcessLauncher

logger = logging.getLogger(__name__)


class ServiceSupervisor:
    def __init__(
        self,
        store: StateStore,
        catalog: ServiceCatalog,
        settings: OrchestratorSettings,
        launchers: Dict[ProcessManagerKind, ProcessLauncher],
        prober: HealthProber,
        events: Optional[EventEmitter] = None,
        port_probe: Callable[[int], bool] = is_port_free,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._catalog = catalog
        self._settings = settings
        self._launchers = launchers
        self._prober = prober
        self._events = events or NullEventEmitter()
        self._port_probe = port_probe
        self._sleep = sleep

        self._locks: Dict[UUID, threading.RLock] = {}
        self._locks_guard = threading.Lock()

        # Ports claimed by a start that has not been committed yet
        self._port_claims: Dict[int, UUID] = {}
        self._claims_lock = threading.Lock()

    # ============================================
    # PUBLIC OPERATIONS
    # ============================================

    def start(self, instance_id: UUID) -> Instance:
        with self.instance_lock(instance_id):
            return self._start_locked(instance_id)

    def stop(self, instance_id: UUID) -> Instance:
        """Stop the instance. Stopping a stopped instance is a no-op."""
        with self.instance_lock(instance_id):
            return self._stop_locked(instance_id)

    def restart(self, instance_id: UUID) -> Instance:
        with self.instance_lock(instance_id):
            self._stop_locked(instance_id)
            return self._start_locked(instance_id)

    def health_check(self, instance_id: UUID) -> Optional[bool]:
        """
        Probe one instance.

        Returns True/False, or None when the probe timed out. A dead
        process is reconciled to CRASHED.
        """
        with self.instance_lock(instance_id):
            instance = self._require(instance_id)
            if not instance.running:
                return False

            definition = self._catalog.get(instance.service_type)
            launcher = self._launcher_for(instance)

            if not launcher.is_alive(instance.pid, instance.name):
                self._reconcile_crash(instance)
                return False

            healthy = self._probe(instance, definition, launcher)
            if healthy != instance.healthy:
                instance.healthy = healthy
                self._save_runtime(instance)
                self._events.emit([OrchestratorEvent.instance_health_changed(instance)])

            return healthy

    def reconcile_all(self) -> List[UUID]:
        """Mark every running instance whose process vanished as crashed."""
        crashed = []
        for candidate in self._store.list_instances():
            if not candidate.running:
                continue

            with self.instance_lock(candidate.id):
                instance = self._store.get_instance(candidate.id)
                if instance is None or not instance.running:
                    continue
                launcher = self._launcher_for(instance)
                if not launcher.is_alive(instance.pid, instance.name):
                    self._reconcile_crash(instance)
                    crashed.append(instance.id)

        return crashed

    def instance_lock(self, instance_id: UUID) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(instance_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[instance_id] = lock
            return lock

    def forget(self, instance_id: UUID) -> None:
        """Drop bookkeeping for a deleted instance."""
        with self._locks_guard:
            self._locks.pop(instance_id, None)
        self._release_port(instance_id)

    def log_file(self, instance: Instance) -> Path:
        return self._settings.logs_dir / f"{instance.name}.log"

    # ============================================
    # START
    # ============================================

    def _start_locked(self, instance_id: UUID) -> Instance:
        instance = self._require(instance_id)

        if instance.running:
            raise AlreadyRunning(f"{instance.name} is already running (pid {instance.pid})")

        definition = self._catalog.get(instance.service_type)
        launcher = self._launcher_for(instance)

        self._claim_port(instance)
        try:
            binary = definition.binary_path(self._settings.resolved_binaries_dir, instance.version)
            if not launcher.is_available(binary):
                raise BinaryMissing(
                    f"{definition.display_name} {instance.version} is not installed ({binary})"
                )
            return self._spawn(instance, definition, launcher, binary)
        finally:
            self._release_port(instance.id)

    def _spawn(
        self,
        instance: Instance,
        definition: ServiceDefinition,
        launcher: ProcessLauncher,
        binary: Path,
    ) -> Instance:
        InstanceStateMachine.transition(instance, InstanceState.STARTING)

        data_dir = self._settings.instance_dir(instance.id)
        spec = LaunchSpec(
            name=instance.name,
            binary=binary,
            args=definition.start_args(instance, data_dir),
            cwd=data_dir,
            log_file=self.log_file(instance),
        )

        logger.info(f"[{instance.name}] Starting {definition.display_name} {instance.version} on port {instance.port}")

        pid = launcher.spawn(spec)

        self._sleep(self._settings.spawn_settle_seconds)
        if not launcher.is_alive(pid, instance.name):
            InstanceStateMachine.transition(instance, InstanceState.STOPPED)
            self._remove_pid_file(instance.id)
            self._save_runtime(instance)
            logger.error(f"[{instance.name}] ❌ Exited immediately after spawn")
            raise ProcessSpawnFailed(
                f"{instance.name} exited immediately after start; see {spec.log_file}"
            )

        InstanceStateMachine.transition(instance, InstanceState.RUNNING, pid=pid)
        self._write_pid_file(instance.id, pid)

        instance.healthy = self._startup_probe(instance, definition, launcher)

        try:
            self._save_runtime(instance)
        except Exception:
            launcher.terminate(pid, instance.name, self._settings.stop_grace_seconds)
            self._remove_pid_file(instance.id)
            raise

        logger.info(f"[{instance.name}] ✅ Running (pid {pid}, healthy={instance.healthy})")
        self._events.emit([OrchestratorEvent.instance_started(instance)])
        return copy.deepcopy(instance)

    def _startup_probe(
        self,
        instance: Instance,
        definition: ServiceDefinition,
        launcher: ProcessLauncher,
    ) -> Optional[bool]:
        """Poll until healthy or the bounded startup window closes."""
        deadline = time.monotonic() + self._settings.startup_probe_timeout
        result = None

        while True:
            result = self._probe(instance, definition, launcher)
            if result:
                return True
            if time.monotonic() >= deadline:
                return result
            self._sleep(self._settings.startup_probe_interval)

    def _probe(
        self,
        instance: Instance,
        definition: ServiceDefinition,
        launcher: ProcessLauncher,
    ) -> Optional[bool]:
        if not launcher.is_alive(instance.pid, instance.name):
            return False
        if definition.health_check.kind == HealthCheckKind.NONE:
            return True
        return self._prober.probe(
            definition.health_check,
            instance.port,
            self._settings.health_timeout,
        )

    # ============================================
    # STOP
    # ============================================

    def _stop_locked(self, instance_id: UUID) -> Instance:
        instance = self._require(instance_id)

        if not instance.running:
            if instance.state == InstanceState.CRASHED:
                InstanceStateMachine.transition(instance, InstanceState.STOPPED)
                self._save_runtime(instance)
            return instance

        launcher = self._launcher_for(instance)
        pid = instance.pid

        logger.info(f"[{instance.name}] Stopping (pid {pid})")
        InstanceStateMachine.transition(instance, InstanceState.STOPPING)

        try:
            launcher.terminate(pid, instance.name, self._settings.stop_grace_seconds)
        finally:
            InstanceStateMachine.transition(instance, InstanceState.STOPPED)
            self._remove_pid_file(instance.id)
            self._save_runtime(instance)

        logger.info(f"[{instance.name}] Stopped")
        self._events.emit([OrchestratorEvent.instance_stopped(instance)])
        return copy.deepcopy(instance)

    # ============================================
    # HELPERS
    # ============================================

    def _reconcile_crash(self, instance: Instance) -> None:
        if not instance.running:
            return

        logger.warning(f"[{instance.name}] ❌ Process {instance.pid} is gone, marking crashed")
        InstanceStateMachine.transition(instance, InstanceState.CRASHED)
        self._remove_pid_file(instance.id)
        self._save_runtime(instance)
        self._events.emit([OrchestratorEvent.instance_crashed(instance)])

    def _require(self, instance_id: UUID) -> Instance:
        instance = self._store.get_instance(instance_id)
        if instance is None:
            raise NotFound(f"Instance {instance_id} not found")
        return instance

    def _launcher_for(self, instance: Instance) -> ProcessLauncher:
        try:
            return self._launchers[instance.process_manager]
        except KeyError:
            raise BinaryMissing(
                f"No launcher configured for process manager {instance.process_manager.value}"
            )

    def _save_runtime(self, instance: Instance) -> None:
        """Write only runtime fields so concurrent edits to other fields survive."""
        with self._store.transaction() as registry:
            current = registry.instances.get(instance.id)
            if current is None:
                raise NotFound(f"Instance {instance.id} was deleted")
            current.state = instance.state
            current.pid = instance.pid
            current.healthy = instance.healthy

    def _claim_port(self, instance: Instance) -> None:
        with self._claims_lock:
            claimant = self._port_claims.get(instance.port)
            if claimant is not None and claimant != instance.id:
                raise PortConflict(instance.port, "an instance that is starting")

            for other in self._store.list_instances():
                if other.id != instance.id and other.running and other.port == instance.port:
                    raise PortConflict(instance.port, other.name)

            if not self._port_probe(instance.port):
                raise PortConflict(instance.port, "a process outside the registry")

            self._port_claims[instance.port] = instance.id

    def _release_port(self, instance_id: UUID) -> None:
        with self._claims_lock:
            for port, owner in list(self._port_claims.items()):
                if owner == instance_id:
                    del self._port_claims[port]

    def _pid_file(self, instance_id: UUID) -> Path:
        return self._settings.pids_dir / f"{instance_id}.pid"

    def _write_pid_file(self, instance_id: UUID, pid: int) -> None:
        path = self._pid_file(instance_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(pid))

    def _remove_pid_file(self, instance_id: UUID) -> None:
        self._pid_file(instance_id).unlink(missing_ok=True)
