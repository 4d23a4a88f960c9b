#orchestration_engine\container.py

"""Dependency injection container - wires all services together."""

from dataclasses import dataclass
from typing import Optional

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.events import EventEmitter, LoggingEventEmitter
from orchestration_engine.core.models import ProcessManagerKind
from orchestration_engine.core.repository import StateStore
from orchestration_engine.dns.responder import DnsResponder
from orchestration_engine.helper.bridge import PrivilegedHelperBridge
from orchestration_engine.infrastructure.json_store.repository import JsonFileStateStore
from orchestration_engine.orchestrator.orchestrator import Orchestrator
from orchestration_engine.parking.engine import ParkingEngine, ParkWatcher
from orchestration_engine.routing.caddy import CaddyRenderer
from orchestration_engine.routing.proxy import ProxyController
from orchestration_engine.routing.router import DomainRouter
from orchestration_engine.services.catalog import ServiceCatalog
from orchestration_engine.stacks.manager import StackManager
from orchestration_engine.supervisor.health import HealthProber
from orchestration_engine.supervisor.launchers import (
    DirectProcessLauncher,
    ExternalSupervisorLauncher,
)
from orchestration_engine.supervisor.monitor import HealthMonitor
from orchestration_engine.supervisor.supervisor import ServiceSupervisor
from orchestration_engine.trust.manager import CertificateTrustManager


@dataclass
class Container:
    settings: OrchestratorSettings
    store: StateStore
    events: EventEmitter
    catalog: ServiceCatalog
    bridge: PrivilegedHelperBridge
    trust: CertificateTrustManager
    proxy: ProxyController
    router: DomainRouter
    supervisor: ServiceSupervisor
    monitor: HealthMonitor
    parking: ParkingEngine
    park_watcher: ParkWatcher
    stacks: StackManager
    dns: DnsResponder
    orchestrator: Orchestrator


def build_container(
    settings: OrchestratorSettings,
    store: Optional[StateStore] = None,
    bridge: Optional[PrivilegedHelperBridge] = None,
    events: Optional[EventEmitter] = None,
) -> Container:
    # ============================================
    # STATE / EVENTS
    # ============================================

    store = store or JsonFileStateStore(settings.state_file)
    events = events or LoggingEventEmitter()
    catalog = ServiceCatalog()

    # ============================================
    # PRIVILEGED HELPER / TRUST
    # ============================================

    bridge = bridge or PrivilegedHelperBridge(
        socket_path=settings.helper_socket_path,
        connect_timeout=settings.helper_connect_timeout,
        read_timeout=settings.helper_read_timeout,
        queue_size=settings.helper_queue_size,
    )
    trust = CertificateTrustManager(settings, bridge)

    # ============================================
    # ROUTING
    # ============================================

    proxy = ProxyController(settings)
    router = DomainRouter(
        store=store,
        renderer=CaddyRenderer(settings),
        proxy=proxy,
        trust=trust,
        settings=settings,
        events=events,
    )

    # ============================================
    # SUPERVISION
    # ============================================

    supervisor = ServiceSupervisor(
        store=store,
        catalog=catalog,
        settings=settings,
        launchers={
            ProcessManagerKind.DIRECT: DirectProcessLauncher(),
            ProcessManagerKind.EXTERNAL: ExternalSupervisorLauncher(
                executable=settings.external_supervisor_binary,
                timeout=settings.external_supervisor_timeout,
            ),
        },
        prober=HealthProber(),
        events=events,
    )
    monitor = HealthMonitor(store, supervisor, check_interval=settings.health_interval)

    # ============================================
    # PARKING / STACKS / DNS
    # ============================================

    parking = ParkingEngine(store, router, settings, events)
    park_watcher = ParkWatcher(parking, interval=settings.park_refresh_interval)

    stacks = StackManager(store, supervisor, router, catalog, settings, events)

    dns = DnsResponder(
        tld=settings.tld,
        port=settings.dns_port,
        address=settings.dns_address,
        upstream=(settings.dns_upstream_host, settings.dns_upstream_port),
        upstream_timeout=settings.dns_upstream_timeout,
    )

    orchestrator = Orchestrator(
        store=store,
        catalog=catalog,
        supervisor=supervisor,
        router=router,
        proxy=proxy,
        parking=parking,
        stacks=stacks,
        trust=trust,
        bridge=bridge,
        dns=dns,
        settings=settings,
        events=events,
    )

    return Container(
        settings=settings,
        store=store,
        events=events,
        catalog=catalog,
        bridge=bridge,
        trust=trust,
        proxy=proxy,
        router=router,
        supervisor=supervisor,
        monitor=monitor,
        parking=parking,
        park_watcher=park_watcher,
        stacks=stacks,
        dns=dns,
        orchestrator=orchestrator,
    )
