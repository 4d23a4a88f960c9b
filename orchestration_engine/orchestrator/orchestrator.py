# orchestration_engine/orchestrator/orchestrator.py
"""
Orchestrator - the operation surface consumed by a GUI or CLI.

Validates against the registry first, then drives the supervisor, the
domain router and, for privileged setup only, the helper bridge.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import (
    AlreadyExists,
    AlreadyRunning,
    BinaryMissing,
    NotFound,
    NotRunning,
    OrchestrationError,
    PortConflict,
    ValidationFailed,
)
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    Domain,
    DomainTargetType,
    Instance,
    ParkedDirectory,
    ProcessManagerKind,
    Registry,
    ServiceType,
    Stack,
)
from orchestration_engine.core.repository import StateStore
from orchestration_engine.core.validation import validate_instance_name, validate_port
from orchestration_engine.dns.responder import DnsResponder, DnsStatus
from orchestration_engine.helper.bridge import PrivilegedHelperBridge
from orchestration_engine.parking.engine import ParkingEngine, ParkStatus, SyncResult
from orchestration_engine.routing.proxy import ProxyController
from orchestration_engine.routing.router import DomainResult, DomainRouter
from orchestration_engine.services.catalog import ServiceCatalog
from orchestration_engine.stacks.manager import StackDocument, StackManager
from orchestration_engine.stacks.models import ImportResult, MemberResult, StackExport
from orchestration_engine.supervisor.health import next_free_port
from orchestration_engine.supervisor.supervisor import ServiceSupervisor
from orchestration_engine.trust.manager import CertificateTrustManager, TrustStatus

logger = logging.getLogger(__name__)

InstanceRef = Union[UUID, str]


@dataclass
class CreateInstanceResult:
    instance: Instance
    domain: Optional[Domain] = None
    warnings: List[str] = field(default_factory=list)


class Orchestrator:
    def __init__(
        self,
        store: StateStore,
        catalog: ServiceCatalog,
        supervisor: ServiceSupervisor,
        router: DomainRouter,
        proxy: ProxyController,
        parking: ParkingEngine,
        stacks: StackManager,
        trust: CertificateTrustManager,
        bridge: PrivilegedHelperBridge,
        dns: DnsResponder,
        settings: OrchestratorSettings,
        events: Optional[EventEmitter] = None,
    ):
        self._store = store
        self._catalog = catalog
        self._supervisor = supervisor
        self._router = router
        self._proxy = proxy
        self._parking = parking
        self._stacks = stacks
        self._trust = trust
        self._bridge = bridge
        self._dns = dns
        self._settings = settings
        self._events = events or NullEventEmitter()

    # ============================================
    # INSTANCES
    # ============================================

    def create_instance(
        self,
        name: str,
        service_type: Union[ServiceType, str],
        version: str,
        port: Optional[int] = None,
        config: Optional[Dict[str, Any]] = None,
        subdomain: Optional[str] = None,
        ssl_enabled: bool = False,
        auto_start: bool = False,
        stack_id: Optional[UUID] = None,
    ) -> CreateInstanceResult:
        validate_instance_name(name)

        try:
            definition = self._catalog.get(service_type)
        except NotFound as e:
            raise ValidationFailed(str(e)) from e

        version = (version or "").strip()
        if not version:
            raise ValidationFailed("Version cannot be empty")

        validated_config = self._catalog.validate_config(definition.service_type, config)
        if port is not None:
            validate_port(port, allow_privileged=True)

        with self._store.transaction() as registry:
            if registry.find_instance_by_name(name) is not None:
                raise AlreadyExists(f"Instance '{name}' already exists")

            if stack_id is not None and stack_id not in registry.stacks:
                raise NotFound(f"Stack {stack_id} not found")

            port = self._allocate_port(registry, port, definition.default_port)

            instance = Instance(
                name=name,
                service_type=definition.service_type,
                version=version,
                port=port,
                process_manager=definition.process_manager,
                stack_id=stack_id,
                config=validated_config,
                auto_start=auto_start,
            )
            registry.instances[instance.id] = instance

            domain = None
            if subdomain:
                domain = self._router.add_domain(
                    registry,
                    subdomain,
                    DomainTargetType.INSTANCE,
                    instance.id,
                    ssl_enabled=ssl_enabled,
                )

        if domain is not None:
            def undo(registry: Registry) -> None:
                self._router.remove_domains(registry, lambda d: d.id == domain.id)
                registry.instances.pop(instance.id, None)

            self._router.render_or_undo(undo)

        logger.info(f"[{name}] ✅ Created {definition.display_name} {version} on port {port}")
        events = [
            OrchestratorEvent.build(
                "instance.created",
                instance.id,
                {"name": name, "service_type": definition.service_type.value, "port": port},
            )
        ]
        if domain is not None:
            events.append(OrchestratorEvent.domain_created(domain))
        self._events.emit(events)

        warnings = self._router.ssl_warnings(domain) if domain is not None else []

        if auto_start:
            try:
                self._supervisor.start(instance.id)
            except OrchestrationError as e:
                logger.error(f"[{name}] ❌ Auto-start failed, rolling back: {e}")
                self._remove_instance(instance.id)
                raise

        return CreateInstanceResult(
            instance=self._store.get_instance(instance.id),
            domain=self._store.get_domain(domain.id) if domain is not None else None,
            warnings=warnings,
        )

    def start_instance(self, ref: InstanceRef) -> Instance:
        return self._supervisor.start(self._resolve(ref).id)

    def stop_instance(self, ref: InstanceRef) -> Instance:
        return self._supervisor.stop(self._resolve(ref).id)

    def restart_instance(self, ref: InstanceRef) -> Instance:
        return self._supervisor.restart(self._resolve(ref).id)

    def delete_instance(self, ref: InstanceRef) -> Instance:
        instance = self._resolve(ref)
        # No start may slip in between the stop and the removal
        with self._supervisor.instance_lock(instance.id):
            self._supervisor.stop(instance.id)
            removed = self._remove_instance(instance.id)
        logger.info(f"[{instance.name}] Deleted ({len(removed)} domain(s) retracted)")
        return instance

    def rename_instance(self, ref: InstanceRef, new_name: str) -> Instance:
        validate_instance_name(new_name)
        instance = self._resolve(ref)

        with self._supervisor.instance_lock(instance.id):
            with self._store.transaction() as registry:
                current = registry.instances.get(instance.id)
                if current is None:
                    raise NotFound(f"Instance {instance.id} not found")
                if current.running:
                    raise AlreadyRunning(f"Stop {current.name} before renaming it")
                other = registry.find_instance_by_name(new_name)
                if other is not None and other.id != instance.id:
                    raise AlreadyExists(f"Instance '{new_name}' already exists")
                old_name = current.name
                current.name = new_name

        logger.info(f"[{new_name}] Renamed from {old_name}")
        self._emit_updated(instance.id, {"name": new_name, "previous_name": old_name})
        return self._store.get_instance(instance.id)

    def change_instance_version(self, ref: InstanceRef, version: str) -> Instance:
        instance = self._resolve(ref)
        version = (version or "").strip()
        if not version:
            raise ValidationFailed("Version cannot be empty")

        definition = self._catalog.get(instance.service_type)
        binary = definition.binary_path(self._settings.resolved_binaries_dir, version)

        with self._supervisor.instance_lock(instance.id):
            with self._store.transaction() as registry:
                current = registry.instances.get(instance.id)
                if current is None:
                    raise NotFound(f"Instance {instance.id} not found")
                if current.running:
                    raise AlreadyRunning(f"Stop {current.name} before changing its version")
                if current.process_manager == ProcessManagerKind.DIRECT and not binary.exists():
                    raise BinaryMissing(
                        f"{definition.display_name} {version} is not installed ({binary})"
                    )
                previous = current.version
                current.version = version

        logger.info(f"[{instance.name}] Version {previous} -> {version}")
        self._emit_updated(instance.id, {"version": version, "previous_version": previous})
        return self._store.get_instance(instance.id)

    def update_instance_config(self, ref: InstanceRef, config: Dict[str, Any]) -> Instance:
        """New config applies on the next start."""
        instance = self._resolve(ref)
        validated = self._catalog.validate_config(instance.service_type, config)

        with self._store.transaction() as registry:
            current = registry.instances.get(instance.id)
            if current is None:
                raise NotFound(f"Instance {instance.id} not found")
            current.config = validated

        self._emit_updated(instance.id, {"config_keys": sorted(validated)})
        return self._store.get_instance(instance.id)

    def instance_health(self, ref: InstanceRef) -> Optional[bool]:
        instance = self._resolve(ref)
        if not instance.running:
            raise NotRunning(f"{instance.name} is not running")
        return self._supervisor.health_check(instance.id)

    def list_instances(self) -> List[Instance]:
        return self._store.list_instances()

    def get_instance(self, ref: InstanceRef) -> Instance:
        return self._resolve(ref)

    # ============================================
    # DOMAINS
    # ============================================

    def create_domain(
        self,
        subdomain: str,
        target_type: Union[DomainTargetType, str],
        target_value: Union[str, int, UUID, Path],
        ssl_enabled: bool = False,
    ) -> DomainResult:
        return self._router.create_domain(
            subdomain,
            DomainTargetType(target_type),
            target_value,
            ssl_enabled=ssl_enabled,
        )

    def delete_domain(self, domain_id: UUID) -> Domain:
        return self._router.delete_domain(domain_id)

    def update_domain_ssl(self, domain_id: UUID, enabled: bool) -> DomainResult:
        return self._router.update_ssl(domain_id, enabled)

    def list_domains(self) -> List[Domain]:
        return self._store.list_domains()

    def get_domain(self, domain_id: UUID) -> Domain:
        domain = self._store.get_domain(domain_id)
        if domain is None:
            raise NotFound(f"Domain {domain_id} not found")
        return domain

    # ============================================
    # PARKING
    # ============================================

    def park(self, path, ssl_enabled: bool = False) -> ParkedDirectory:
        return self._parking.park(path, ssl_enabled=ssl_enabled)

    def forget(self, path) -> ParkedDirectory:
        return self._parking.forget(path)

    def refresh_parked(self, path, cancel: Optional[threading.Event] = None) -> SyncResult:
        return self._parking.refresh(path, cancel)

    def park_status(self, path) -> ParkStatus:
        return self._parking.status(path)

    def list_parked(self) -> List[ParkedDirectory]:
        return self._store.list_parked_directories()

    # ============================================
    # STACKS
    # ============================================

    def create_stack(
        self,
        name: str,
        description: Optional[str] = None,
        instance_ids: Optional[List[InstanceRef]] = None,
    ) -> Stack:
        ids = [self._resolve(ref).id for ref in instance_ids or []]
        return self._stacks.create(name, description, ids)

    def delete_stack(self, stack_id: UUID, cascade: bool = False) -> Stack:
        return self._stacks.delete(stack_id, cascade=cascade)

    def start_stack(self, stack_id: UUID, cancel: Optional[threading.Event] = None) -> List[MemberResult]:
        return self._stacks.start(stack_id, cancel)

    def stop_stack(self, stack_id: UUID, cancel: Optional[threading.Event] = None) -> List[MemberResult]:
        return self._stacks.stop(stack_id, cancel)

    def export_stack(self, stack_id: UUID) -> StackExport:
        return self._stacks.export(stack_id)

    def import_stack(self, doc: StackDocument, rename_conflicts: bool = False) -> ImportResult:
        return self._stacks.import_stack(doc, rename_conflicts=rename_conflicts)

    def list_stacks(self) -> List[Stack]:
        return self._store.list_stacks()

    def get_stack(self, stack_id: UUID) -> Stack:
        stack = self._store.get_stack(stack_id)
        if stack is None:
            raise NotFound(f"Stack {stack_id} not found")
        return stack

    def list_stack_members(self, stack_id: UUID) -> List[Instance]:
        return self._stacks.members(stack_id)

    # ============================================
    # TRUST / PRIVILEGED SETUP
    # ============================================

    def get_trust_status(self) -> TrustStatus:
        return self._trust.get_trust_status()

    def trust_ca(self) -> str:
        return self._trust.trust_ca()

    def install_proxy(self) -> str:
        """Render the configuration and register the proxy as a system daemon."""
        self._router.render_configuration()
        message = self._bridge.install_daemon(
            self._settings.proxy_daemon_label,
            self._proxy.daemon_definition(),
        )
        with self._store.transaction() as registry:
            registry.proxy_installed = True
        logger.info(f"✅ Proxy daemon {self._settings.proxy_daemon_label} installed")
        return message

    def uninstall_proxy(self) -> str:
        message = self._bridge.uninstall_daemon(self._settings.proxy_daemon_label)
        with self._store.transaction() as registry:
            registry.proxy_installed = False
        logger.info(f"Proxy daemon {self._settings.proxy_daemon_label} uninstalled")
        return message

    def install_resolver(self) -> str:
        return self._bridge.install_resolver(self._settings.tld, self._dns.port)

    def uninstall_resolver(self) -> str:
        return self._bridge.uninstall_resolver(self._settings.tld)

    # ============================================
    # DNS
    # ============================================

    def dns_start(self) -> DnsStatus:
        self._dns.start()
        status = self._dns.status()
        self._events.emit([
            OrchestratorEvent.build("dns.started", "dns", {"port": status.port, "tld": status.tld})
        ])
        return status

    def dns_stop(self) -> DnsStatus:
        self._dns.stop()
        self._events.emit([OrchestratorEvent.build("dns.stopped", "dns")])
        return self._dns.status()

    def dns_restart(self) -> DnsStatus:
        self.dns_stop()
        return self.dns_start()

    def dns_status(self) -> DnsStatus:
        return self._dns.status()

    # ============================================
    # HELPERS
    # ============================================

    def _resolve(self, ref: InstanceRef) -> Instance:
        return self._router.resolve_instance(self._store.snapshot(), ref)

    @staticmethod
    def _allocate_port(registry: Registry, port: Optional[int], default_port: int) -> int:
        if port is not None:
            owner = registry.port_owner(port)
            if owner is not None:
                raise PortConflict(port, owner.name)
            return port

        taken = [i.port for i in registry.instances.values()]
        allocated = next_free_port(default_port, taken)
        if allocated is None:
            raise ValidationFailed(f"No free port found from {default_port}")
        return allocated

    def _remove_instance(self, instance_id: UUID) -> List[Domain]:
        """Delete the record and every domain targeting it, then re-render."""
        with self._store.transaction() as registry:
            instance = registry.instances.get(instance_id)
            if instance is None:
                raise NotFound(f"Instance {instance_id} not found")
            removed = self._router.remove_domains(
                registry, lambda d: d.targets_instance(instance_id)
            )
            del registry.instances[instance_id]

        self._supervisor.forget(instance_id)
        if removed:
            self._router.render_configuration()

        self._events.emit(
            [OrchestratorEvent.build("instance.deleted", instance_id, {"name": instance.name})]
            + [OrchestratorEvent.domain_deleted(d) for d in removed]
        )
        return removed

    def _emit_updated(self, instance_id: UUID, metadata: Dict[str, Any]) -> None:
        self._events.emit([OrchestratorEvent.build("instance.updated", instance_id, metadata)])
