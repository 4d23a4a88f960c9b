# orchestration_engine/stacks/manager.py
"""
Stack Manager - named groups of instances.

Membership lives on the instance (stack_id); the stack record carries
only its name and description.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from typing import Any, Dict, Iterable, List, Optional, Set, Union
from uuid import UUID

from pydantic import ValidationError

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import (
    AlreadyExists,
    AlreadyRunning,
    NotFound,
    OrchestrationError,
    PortConflict,
    ValidationFailed,
)
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    DomainTargetType,
    Instance,
    InstanceState,
    Registry,
    Stack,
)
from orchestration_engine.core.repository import StateStore
from orchestration_engine.core.validation import validate_instance_name
from orchestration_engine.routing.router import DomainRouter
from orchestration_engine.services.catalog import ServiceCatalog, is_secret_key
from orchestration_engine.stacks.models import (
    STACK_SCHEMA_VERSION,
    ConflictKind,
    DomainExport,
    ImportConflict,
    ImportPreview,
    ImportResult,
    MemberResult,
    Requirement,
    ServiceExport,
    StackExport,
)
from orchestration_engine.supervisor.health import next_free_port
from orchestration_engine.supervisor.supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"

StackDocument = Union[StackExport, Dict[str, Any], str, bytes]


class StackManager:
    def __init__(
        self,
        store: StateStore,
        supervisor: ServiceSupervisor,
        router: DomainRouter,
        catalog: ServiceCatalog,
        settings: OrchestratorSettings,
        events: Optional[EventEmitter] = None,
    ):
        self._store = store
        self._supervisor = supervisor
        self._router = router
        self._catalog = catalog
        self._settings = settings
        self._events = events or NullEventEmitter()

    # ============================================
    # MEMBERSHIP
    # ============================================

    def create(
        self,
        name: str,
        description: Optional[str] = None,
        instance_ids: Iterable[UUID] = (),
    ) -> Stack:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("Stack name cannot be empty")

        with self._store.transaction() as registry:
            if self._find_stack(registry, name) is not None:
                raise AlreadyExists(f"Stack '{name}' already exists")

            stack = Stack(name=name, description=description)
            self._attach(registry, stack.id, instance_ids)
            registry.stacks[stack.id] = stack

        logger.info(f"✅ Created stack {name}")
        self._events.emit([
            OrchestratorEvent.build("stack.created", stack.id, {"name": name})
        ])
        return stack

    def add_instances(self, stack_id: UUID, instance_ids: Iterable[UUID]) -> Stack:
        with self._store.transaction() as registry:
            stack = self._require(registry, stack_id)
            self._attach(registry, stack_id, instance_ids)
            stack.touch()
        return self._store.get_stack(stack_id)

    def remove_instances(self, stack_id: UUID, instance_ids: Iterable[UUID]) -> Stack:
        with self._store.transaction() as registry:
            stack = self._require(registry, stack_id)
            for instance_id in instance_ids:
                instance = registry.instances.get(instance_id)
                if instance is not None and instance.stack_id == stack_id:
                    instance.stack_id = None
            stack.touch()
        return self._store.get_stack(stack_id)

    def members(self, stack_id: UUID) -> List[Instance]:
        registry = self._store.snapshot()
        self._require(registry, stack_id)
        members = registry.stack_members(stack_id)
        return sorted(members, key=lambda i: i.created_at)

    def delete(self, stack_id: UUID, cascade: bool = False) -> Stack:
        """
        Delete a stack.

        With cascade, members are stopped and deleted along with every
        domain targeting them; otherwise they are just released. Member
        locks are held from the stop until the records are gone.
        """
        stack = self._store.get_stack(stack_id)
        if stack is None:
            raise NotFound(f"Stack {stack_id} not found")

        members = self.members(stack_id)
        doomed = {m.id for m in members} if cascade else set()

        with ExitStack() as locks:
            # Fixed order so two cascades never wait on each other
            for instance_id in sorted(doomed, key=str):
                locks.enter_context(self._supervisor.instance_lock(instance_id))
            for instance_id in doomed:
                self._supervisor.stop(instance_id)

            with self._store.transaction() as registry:
                removed_domains = []
                for member in registry.stack_members(stack_id):
                    if member.id in doomed:
                        removed_domains += self._router.remove_domains(
                            registry, lambda d, i=member.id: d.targets_instance(i)
                        )
                        del registry.instances[member.id]
                    else:
                        member.stack_id = None
                registry.stacks.pop(stack_id, None)

            for instance_id in doomed:
                self._supervisor.forget(instance_id)

        if removed_domains:
            self._router.render_configuration()

        events = [OrchestratorEvent.build("stack.deleted", stack_id, {"name": stack.name})]
        events += [OrchestratorEvent.domain_deleted(d) for d in removed_domains]
        if cascade:
            events += [
                OrchestratorEvent.build("instance.deleted", m.id, {"name": m.name})
                for m in members
            ]
        self._events.emit(events)

        logger.info(f"Deleted stack {stack.name} (cascade={cascade}, {len(members)} member(s))")
        return stack

    # ============================================
    # START / STOP (fan-out)
    # ============================================

    def start(self, stack_id: UUID, cancel: Optional[threading.Event] = None) -> List[MemberResult]:
        return self._fan_out(stack_id, "start", cancel)

    def stop(self, stack_id: UUID, cancel: Optional[threading.Event] = None) -> List[MemberResult]:
        return self._fan_out(stack_id, "stop", cancel)

    def _fan_out(
        self,
        stack_id: UUID,
        action: str,
        cancel: Optional[threading.Event],
    ) -> List[MemberResult]:
        members = self.members(stack_id)
        if not members:
            return []

        workers = max(1, min(self._settings.stack_parallelism, len(members)))
        logger.info(f"Stack {stack_id}: {action} {len(members)} member(s) with {workers} worker(s)")

        futures = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"stack-{action}") as pool:
            for member in members:
                if cancel is not None and cancel.is_set():
                    logger.warning(f"Stack {action} cancelled before {member.name}")
                    break
                futures.append((member, pool.submit(self._run_member, member, action, cancel)))

        results = [future.result() for _, future in futures]
        failed = [r for r in results if not r.success]
        if failed:
            logger.warning(
                f"Stack {action}: {len(failed)} of {len(results)} member(s) failed: "
                + ", ".join(r.name for r in failed)
            )
        return results

    def _run_member(
        self,
        member: Instance,
        action: str,
        cancel: Optional[threading.Event] = None,
    ) -> MemberResult:
        # Queued members check again once a worker picks them up
        if cancel is not None and cancel.is_set():
            logger.info(f"[{member.name}] Skipped {action}: cancelled")
            return MemberResult(member.id, member.name, False, CANCELLED)

        try:
            if action == "start":
                self._supervisor.start(member.id)
            else:
                self._supervisor.stop(member.id)
        except AlreadyRunning:
            pass
        except OrchestrationError as e:
            return MemberResult(member.id, member.name, False, str(e))
        except Exception as e:
            logger.error(f"[{member.name}] Unexpected error during {action}: {e}", exc_info=True)
            return MemberResult(member.id, member.name, False, str(e))

        return MemberResult(member.id, member.name, True)

    # ============================================
    # EXPORT
    # ============================================

    def export(self, stack_id: UUID) -> StackExport:
        registry = self._store.snapshot()
        stack = self._require(registry, stack_id)
        members = sorted(registry.stack_members(stack_id), key=lambda i: i.created_at)

        services = []
        domains = []
        requirements = []
        for member in members:
            services.append(
                ServiceExport(
                    ref_id=member.name,
                    name=member.name,
                    service_type=member.service_type,
                    version=member.version,
                    port=member.port,
                    auto_start=member.auto_start,
                    config=self._strip_secrets(member),
                )
            )
            for domain in sorted(
                registry.domains_for_instance(member.id), key=lambda d: d.full_domain
            ):
                domains.append(
                    DomainExport(
                        subdomain=domain.subdomain,
                        target_ref=member.name,
                        ssl_enabled=domain.ssl_enabled,
                    )
                )
            requirement = Requirement(service_type=member.service_type, version=member.version)
            if requirement not in requirements:
                requirements.append(requirement)

        return StackExport(
            schema_version=STACK_SCHEMA_VERSION,
            name=stack.name,
            description=stack.description,
            created_at=stack.created_at,
            services=services,
            domains=domains,
            requirements=requirements,
        )

    def export_json(self, stack_id: UUID) -> str:
        return self.export(stack_id).model_dump_json(indent=2)

    def _strip_secrets(self, instance: Instance) -> Dict[str, Any]:
        definition = self._catalog.get(instance.service_type)
        config = {}
        for key, value in instance.config.items():
            config_field = definition.get_field(key)
            if is_secret_key(key) or (config_field is not None and config_field.secret):
                continue
            config[key] = value
        return config

    # ============================================
    # IMPORT
    # ============================================

    def preview_import(self, doc: StackDocument) -> ImportPreview:
        """Conflicts an import would hit against the current registry. Read-only."""
        export = self.parse(doc)
        registry = self._store.snapshot()
        return self._preview(registry, export)

    def import_stack(self, doc: StackDocument, rename_conflicts: bool = False) -> ImportResult:
        export = self.parse(doc)
        if export.schema_version > STACK_SCHEMA_VERSION:
            raise ValidationFailed(
                f"Stack schema version {export.schema_version} is newer than "
                f"supported version {STACK_SCHEMA_VERSION}"
            )

        with self._store.transaction() as registry:
            preview = self._preview(registry, export)
            if preview.conflicts and not rename_conflicts:
                self._raise_conflict(preview.conflicts[0])

            plan = self._plan_import(registry, export, rename_conflicts)
            result = self._apply_import(registry, export, plan)

        def undo(registry: Registry) -> None:
            for domain in result.domains_created:
                registry.domains.pop(domain.id, None)
            for instance in result.instances_created:
                registry.instances.pop(instance.id, None)
            registry.stacks.pop(result.stack.id, None)

        if result.domains_created:
            self._router.render_or_undo(undo)

        logger.info(
            f"✅ Imported stack {result.stack.name}: {len(result.instances_created)} instance(s), "
            f"{len(result.domains_created)} domain(s)"
        )
        self._events.emit(
            [
                OrchestratorEvent.build(
                    "stack.imported",
                    result.stack.id,
                    {"name": result.stack.name, "instances": len(result.instances_created)},
                )
            ]
            + [OrchestratorEvent.domain_created(d) for d in result.domains_created]
        )
        return result

    @staticmethod
    def parse(doc: StackDocument) -> StackExport:
        try:
            if isinstance(doc, StackExport):
                return doc
            if isinstance(doc, (str, bytes)):
                return StackExport.model_validate_json(doc)
            return StackExport.model_validate(doc)
        except ValidationError as e:
            raise ValidationFailed(f"Invalid stack document: {e}") from e

    def _preview(self, registry: Registry, export: StackExport) -> ImportPreview:
        self._check_document(export)
        preview = ImportPreview(
            stack_name=export.name,
            services=len(export.services),
            domains=len(export.domains),
        )

        if export.schema_version > STACK_SCHEMA_VERSION:
            preview.conflicts.append(
                ImportConflict(
                    ConflictKind.UNSUPPORTED_SCHEMA_VERSION,
                    str(export.schema_version),
                    f"Schema version {export.schema_version} is not supported",
                )
            )

        if self._find_stack(registry, export.name) is not None:
            preview.conflicts.append(
                ImportConflict(ConflictKind.NAME_EXISTS, export.name, f"Stack '{export.name}' already exists")
            )

        for service in export.services:
            if registry.find_instance_by_name(service.name) is not None:
                preview.conflicts.append(
                    ImportConflict(
                        ConflictKind.NAME_EXISTS,
                        service.name,
                        f"Instance '{service.name}' already exists",
                    )
                )
            owner = registry.port_owner(service.port)
            if owner is not None:
                preview.conflicts.append(
                    ImportConflict(
                        ConflictKind.PORT_IN_USE,
                        str(service.port),
                        f"Port {service.port} is assigned to {owner.name}",
                    )
                )

        for domain in export.domains:
            full = self._router.full_domain(self._router.normalize_subdomain(domain.subdomain))
            if registry.find_domain(full) is not None:
                preview.conflicts.append(
                    ImportConflict(ConflictKind.DOMAIN_EXISTS, full, f"Domain {full} already exists")
                )

        for requirement in export.requirements:
            definition = self._catalog.get(requirement.service_type)
            binary = definition.binary_path(
                self._settings.resolved_binaries_dir, requirement.version
            )
            if not binary.exists():
                preview.missing_binaries.append(requirement)

        return preview

    def _check_document(self, export: StackExport) -> None:
        """Internal consistency of the document itself."""
        if not export.name.strip():
            raise ValidationFailed("Stack name cannot be empty")

        refs = [s.ref_id for s in export.services]
        if len(set(refs)) != len(refs):
            raise ValidationFailed("Duplicate ref_id in stack document")

        names = [s.name for s in export.services]
        if len(set(names)) != len(names):
            raise ValidationFailed("Duplicate service name in stack document")

        ports = [s.port for s in export.services]
        if len(set(ports)) != len(ports):
            raise ValidationFailed("Duplicate port in stack document")

        for domain in export.domains:
            if domain.target_ref not in refs:
                raise ValidationFailed(
                    f"Domain {domain.subdomain} targets unknown service '{domain.target_ref}'"
                )

    @staticmethod
    def _raise_conflict(conflict: ImportConflict) -> None:
        if conflict.kind == ConflictKind.PORT_IN_USE:
            raise PortConflict(int(conflict.subject))
        if conflict.kind == ConflictKind.UNSUPPORTED_SCHEMA_VERSION:
            raise ValidationFailed(conflict.message)
        raise AlreadyExists(conflict.message)

    def _plan_import(
        self,
        registry: Registry,
        export: StackExport,
        rename: bool,
    ) -> Dict[str, Any]:
        """Resolve final names, ports, subdomains and configs. Raises before any mutation."""
        taken_names: Set[str] = {i.name for i in registry.instances.values()}
        taken_ports: Set[int] = {i.port for i in registry.instances.values()}
        taken_domains: Set[str] = {d.full_domain for d in registry.domains.values()}

        stack_name = export.name.strip()
        if rename:
            stack_names = {s.name.lower() for s in registry.stacks.values()}
            stack_name = _unique(stack_name, lambda n: n.lower() in stack_names)

        services: Dict[str, Dict[str, Any]] = {}
        for service in export.services:
            name = service.name
            if rename:
                name = _unique(name, lambda n: n in taken_names)
            validate_instance_name(name)

            port = service.port
            if rename and port in taken_ports:
                port = next_free_port(port + 1, taken_ports)
                if port is None:
                    raise PortConflict(service.port)

            config = self._catalog.validate_config(service.service_type, service.config)

            taken_names.add(name)
            taken_ports.add(port)
            services[service.ref_id] = {
                "name": name,
                "port": port,
                "config": config,
                "service": service,
            }

        subdomains = []
        for domain in export.domains:
            subdomain = self._router.normalize_subdomain(domain.subdomain)
            if rename:
                subdomain = _unique(
                    subdomain,
                    lambda s: self._router.full_domain(s) in taken_domains,
                )
            taken_domains.add(self._router.full_domain(subdomain))
            subdomains.append((subdomain, domain))

        return {"stack_name": stack_name, "services": services, "domains": subdomains}

    def _apply_import(
        self,
        registry: Registry,
        export: StackExport,
        plan: Dict[str, Any],
    ) -> ImportResult:
        stack = Stack(name=plan["stack_name"], description=export.description)
        registry.stacks[stack.id] = stack
        result = ImportResult(stack=stack)

        by_ref: Dict[str, Instance] = {}
        for ref_id, entry in plan["services"].items():
            service = entry["service"]
            definition = self._catalog.get(service.service_type)
            instance = Instance(
                name=entry["name"],
                service_type=service.service_type,
                version=service.version,
                port=entry["port"],
                state=InstanceState.STOPPED,
                process_manager=definition.process_manager,
                stack_id=stack.id,
                config=entry["config"],
                auto_start=service.auto_start,
            )
            registry.instances[instance.id] = instance
            by_ref[ref_id] = instance
            result.instances_created.append(instance)

        for subdomain, domain in plan["domains"]:
            created = self._router.add_domain(
                registry,
                subdomain,
                DomainTargetType.INSTANCE,
                by_ref[domain.target_ref].id,
                ssl_enabled=domain.ssl_enabled,
            )
            result.domains_created.append(created)

        return result

    # ============================================
    # HELPERS
    # ============================================

    @staticmethod
    def _find_stack(registry: Registry, name: str) -> Optional[Stack]:
        for stack in registry.stacks.values():
            if stack.name.lower() == name.lower():
                return stack
        return None

    @staticmethod
    def _require(registry: Registry, stack_id: UUID) -> Stack:
        stack = registry.stacks.get(stack_id)
        if stack is None:
            raise NotFound(f"Stack {stack_id} not found")
        return stack

    @staticmethod
    def _attach(registry: Registry, stack_id: UUID, instance_ids: Iterable[UUID]) -> None:
        for instance_id in instance_ids:
            instance = registry.instances.get(instance_id)
            if instance is None:
                raise NotFound(f"Instance {instance_id} not found")
            if instance.stack_id is not None and instance.stack_id != stack_id:
                raise ValidationFailed(
                    f"Instance {instance.name} already belongs to another stack"
                )
            instance.stack_id = stack_id


def _unique(base: str, taken) -> str:
    """base, base-2, base-3, ... until `taken` says no."""
    if not taken(base):
        return base
    counter = 2
    while taken(f"{base}-{counter}"):
        counter += 1
    return f"{base}-{counter}"
