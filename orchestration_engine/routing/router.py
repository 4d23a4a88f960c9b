# orchestration_engine/routing/router.py
"""
Domain Router - owns domain -> upstream mapping and the proxy configuration.

Every change to domains goes through this class so uniqueness checks and
proxy re-rendering stay in one place.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union
from uuid import UUID

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import (
    AlreadyExists,
    NotFound,
    ProxyReloadFailed,
    ValidationFailed,
)
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    Domain,
    DomainSource,
    DomainTargetType,
    Instance,
    Registry,
)
from orchestration_engine.core.repository import StateStore
from orchestration_engine.core.validation import validate_port, validate_subdomain
from orchestration_engine.routing.caddy import CaddyRenderer, Route
from orchestration_engine.routing.proxy import ProxyController
from orchestration_engine.trust.manager import CertificateTrustManager

logger = logging.getLogger(__name__)

CA_MISSING_WARNING = (
    "Local CA not found; HTTPS for {domain} takes effect once the proxy has "
    "created its CA (plain HTTP is served meanwhile)"
)


@dataclass
class DomainResult:
    domain: Domain
    warnings: List[str] = field(default_factory=list)


class DomainRouter:
    def __init__(
        self,
        store: StateStore,
        renderer: CaddyRenderer,
        proxy: ProxyController,
        trust: CertificateTrustManager,
        settings: OrchestratorSettings,
        events: Optional[EventEmitter] = None,
    ):
        self._store = store
        self._renderer = renderer
        self._proxy = proxy
        self._trust = trust
        self._settings = settings
        self._events = events or NullEventEmitter()
        self._render_lock = threading.Lock()

    # ============================================
    # NAMES / VALIDATION
    # ============================================

    def full_domain(self, subdomain: str) -> str:
        return f"{subdomain}.{self._settings.tld}"

    def normalize_subdomain(self, name: str) -> str:
        """Accept either 'api' or 'api.<tld>'."""
        name = (name or "").strip().lower().rstrip(".")
        suffix = f".{self._settings.tld}"
        if name.endswith(suffix):
            name = name[: -len(suffix)]
        return name

    def validate_new_domain(
        self,
        registry: Registry,
        subdomain: str,
        target_type: DomainTargetType,
        target_value: Union[str, int, UUID, Path],
    ) -> Tuple[str, str, str]:
        """
        Check a prospective domain against the registry.

        Returns (subdomain, full_domain, target_value) normalized.
        Raises ValidationFailed, AlreadyExists or NotFound. Never mutates.
        """
        subdomain = self.normalize_subdomain(subdomain)
        validate_subdomain(subdomain)
        full = self.full_domain(subdomain)

        existing = registry.find_domain(full)
        if existing is not None:
            raise AlreadyExists(f"Domain {full} already exists")

        target_type = DomainTargetType(target_type)

        if target_type == DomainTargetType.INSTANCE:
            instance = self.resolve_instance(registry, target_value)
            return subdomain, full, str(instance.id)

        if target_type == DomainTargetType.PORT:
            try:
                port = int(target_value)
            except (TypeError, ValueError):
                raise ValidationFailed(f"Invalid port: {target_value!r}")
            validate_port(port, allow_privileged=True)
            return subdomain, full, str(port)

        root = Path(str(target_value)).expanduser()
        if not root.is_dir():
            raise ValidationFailed(f"Static root {root} is not a directory")
        return subdomain, full, str(root.resolve())

    @staticmethod
    def resolve_instance(registry: Registry, ref: Union[str, UUID]) -> Instance:
        """Look an instance up by id, falling back to its name."""
        instance = None
        try:
            instance = registry.instances.get(UUID(str(ref)))
        except ValueError:
            pass
        if instance is None:
            instance = registry.find_instance_by_name(str(ref))
        if instance is None:
            raise NotFound(f"Instance {ref} not found")
        return instance

    # ============================================
    # OPERATIONS
    # ============================================

    def create_domain(
        self,
        subdomain: str,
        target_type: DomainTargetType,
        target_value: Union[str, int, UUID, Path],
        ssl_enabled: bool = False,
        source: DomainSource = DomainSource.MANUAL,
        parked_dir_id: Optional[UUID] = None,
    ) -> DomainResult:
        with self._store.transaction() as registry:
            domain = self.add_domain(
                registry,
                subdomain,
                target_type,
                target_value,
                ssl_enabled=ssl_enabled,
                source=source,
                parked_dir_id=parked_dir_id,
            )

        def undo(registry: Registry) -> None:
            self._remove(registry, domain.id)

        self.render_or_undo(undo)

        logger.info(f"Created domain {domain.full_domain} -> {domain.target_type.value}:{domain.target_value}")
        self._events.emit([OrchestratorEvent.domain_created(domain)])
        return DomainResult(domain=domain, warnings=self.ssl_warnings(domain))

    def add_domain(
        self,
        registry: Registry,
        subdomain: str,
        target_type: DomainTargetType,
        target_value: Union[str, int, UUID, Path],
        ssl_enabled: bool = False,
        source: DomainSource = DomainSource.MANUAL,
        parked_dir_id: Optional[UUID] = None,
    ) -> Domain:
        """
        Add a domain inside the caller's transaction without rendering.
        The caller must call render_configuration() after committing.
        """
        subdomain, full, value = self.validate_new_domain(
            registry, subdomain, target_type, target_value
        )
        domain = Domain(
            subdomain=subdomain,
            full_domain=full,
            target_type=DomainTargetType(target_type),
            target_value=value,
            ssl_enabled=ssl_enabled,
            source=source,
            parked_dir_id=parked_dir_id,
        )
        registry.domains[domain.id] = domain

        if domain.target_type == DomainTargetType.INSTANCE:
            registry.instances[UUID(value)].attach_domain(full)

        return domain

    def delete_domain(self, domain_id: UUID) -> Domain:
        with self._store.transaction() as registry:
            domain = registry.domains.get(domain_id)
            if domain is None:
                raise NotFound(f"Domain {domain_id} not found")
            self._remove(registry, domain_id)

        def undo(registry: Registry) -> None:
            registry.domains[domain.id] = domain
            if domain.target_type == DomainTargetType.INSTANCE:
                instance = registry.instances.get(UUID(domain.target_value))
                if instance is not None:
                    instance.attach_domain(domain.full_domain)

        self.render_or_undo(undo)

        logger.info(f"Deleted domain {domain.full_domain}")
        self._events.emit([OrchestratorEvent.domain_deleted(domain)])
        return domain

    def update_ssl(self, domain_id: UUID, enabled: bool) -> DomainResult:
        with self._store.transaction() as registry:
            domain = registry.domains.get(domain_id)
            if domain is None:
                raise NotFound(f"Domain {domain_id} not found")
            previous = domain.ssl_enabled
            domain.ssl_enabled = enabled

        def undo(registry: Registry) -> None:
            if domain_id in registry.domains:
                registry.domains[domain_id].ssl_enabled = previous

        self.render_or_undo(undo)

        updated = self._store.get_domain(domain_id)
        self._events.emit([
            OrchestratorEvent.build(
                "domain.updated",
                domain_id,
                {"full_domain": updated.full_domain, "ssl_enabled": enabled},
            )
        ])
        return DomainResult(domain=updated, warnings=self.ssl_warnings(updated))

    def delete_domains_for_instance(self, instance_id: UUID) -> List[Domain]:
        return self._delete_where(lambda d: d.targets_instance(instance_id))

    def delete_domains_for_parked(self, parked_dir_id: UUID) -> List[Domain]:
        return self._delete_where(lambda d: d.parked_dir_id == parked_dir_id)

    def remove_domains(self, registry: Registry, predicate: Callable[[Domain], bool]) -> List[Domain]:
        """Remove matching domains inside the caller's transaction without rendering."""
        removed = [d for d in registry.domains.values() if predicate(d)]
        for domain in removed:
            self._remove(registry, domain.id)
        return removed

    def _delete_where(self, predicate: Callable[[Domain], bool]) -> List[Domain]:
        with self._store.transaction() as registry:
            removed = self.remove_domains(registry, predicate)

        if removed:
            self.render_configuration()
            self._events.emit([OrchestratorEvent.domain_deleted(d) for d in removed])

        return removed

    # ============================================
    # RENDERING
    # ============================================

    def render_configuration(self) -> List[str]:
        """
        Rewrite the proxy configuration from the current registry and
        reload the proxy. Returns the rendered unit filenames.

        Raises ProxyReloadFailed; if config_written is False the previous
        configuration is still in place.
        """
        with self._render_lock:
            registry = self._store.snapshot()
            units = self._renderer.render(self.routes(registry))
            self._renderer.write(units)
            self._reload_with_retry()

        self._events.emit([
            OrchestratorEvent.build("proxy.reloaded", "proxy", {"units": len(units)})
        ])
        return list(units)

    def routes(self, registry: Registry) -> List[Route]:
        routes = []
        for domain in registry.domains.values():
            route = Route(domain=domain, tls=domain.ssl_enabled)

            if domain.target_type == DomainTargetType.INSTANCE:
                instance = registry.instances.get(UUID(domain.target_value))
                if instance is None:
                    logger.warning(
                        f"Skipping {domain.full_domain}: instance {domain.target_value} no longer exists"
                    )
                    continue
                route.upstream_port = instance.port

            elif domain.target_type == DomainTargetType.PORT:
                route.upstream_port = int(domain.target_value)

            else:
                route.static_root = domain.target_value

            routes.append(route)
        return routes

    def _reload_with_retry(self) -> None:
        try:
            self._proxy.reload()
        except ProxyReloadFailed as e:
            logger.warning(f"Proxy reload failed ({e}), retrying once")
            self._proxy.reload()

    def render_or_undo(self, undo: Callable[[Registry], None]) -> None:
        """Render; if the files could not be written, revert the registry change."""
        try:
            self.render_configuration()
        except ProxyReloadFailed as e:
            if not e.config_written:
                with self._store.transaction() as registry:
                    undo(registry)
            raise

    # ============================================
    # HELPERS
    # ============================================

    @staticmethod
    def _remove(registry: Registry, domain_id: UUID) -> None:
        domain = registry.domains.pop(domain_id, None)
        if domain is None:
            return
        if domain.target_type == DomainTargetType.INSTANCE:
            instance = registry.instances.get(UUID(domain.target_value))
            if instance is not None:
                instance.detach_domain(domain.full_domain)

    def ssl_warnings(self, domain: Domain) -> List[str]:
        if domain.ssl_enabled and not self._trust.ca_exists():
            warning = CA_MISSING_WARNING.format(domain=domain.full_domain)
            logger.warning(warning)
            return [warning]
        return []
