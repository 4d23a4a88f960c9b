#tests\conftest.py

"""Pytest configuration and fixtures."""

import itertools
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Set

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.events import RecordingEventEmitter
from orchestration_engine.core.models import ProcessManagerKind, ServiceType
from orchestration_engine.dns.responder import DnsResponder
from orchestration_engine.helper.bridge import PrivilegedHelperBridge
from orchestration_engine.infrastructure.memory.repository import InMemoryStateStore
from orchestration_engine.orchestrator.orchestrator import Orchestrator
from orchestration_engine.parking.engine import ParkingEngine
from orchestration_engine.routing.caddy import CaddyRenderer
from orchestration_engine.routing.proxy import ProxyController
from orchestration_engine.routing.router import DomainRouter
from orchestration_engine.services.catalog import HealthCheck, ServiceCatalog
from orchestration_engine.stacks.manager import StackManager
from orchestration_engine.supervisor.launchers import LaunchSpec, ProcessLauncher
from orchestration_engine.supervisor.supervisor import ServiceSupervisor
from orchestration_engine.trust.manager import CertificateTrustManager


# ============================================
# FAKES
# ============================================

class FakeLauncher(ProcessLauncher):
    """Launcher that hands out fake pids and tracks liveness in memory."""

    def __init__(self):
        self._pids = itertools.count(4000)
        self.alive: Set[int] = set()
        self.spawned: Dict[str, LaunchSpec] = {}
        self.spawn_count = 0
        self.terminated: list = []
        # Instance names whose process exits right after spawn
        self.die_on_spawn: Set[str] = set()
        # Called with the instance name during spawn / terminate
        self.on_spawn: Optional[Callable[[str], None]] = None
        self.on_terminate: Optional[Callable[[str], None]] = None

    def is_available(self, binary: Path) -> bool:
        return Path(binary).exists()

    def spawn(self, spec: LaunchSpec) -> int:
        pid = next(self._pids)
        self.spawn_count += 1
        self.spawned[spec.name] = spec
        if spec.name not in self.die_on_spawn:
            self.alive.add(pid)
        if self.on_spawn is not None:
            self.on_spawn(spec.name)
        return pid

    def is_alive(self, pid: int, name: str) -> bool:
        return pid in self.alive

    def terminate(self, pid: int, name: str, grace_seconds: float) -> None:
        if self.on_terminate is not None:
            self.on_terminate(name)
        self.terminated.append(pid)
        self.alive.discard(pid)

    def kill(self, pid: int) -> None:
        """Simulate a crash outside our control."""
        self.alive.discard(pid)


class FakeProber:
    """Health answers per port; healthy unless told otherwise."""

    def __init__(self):
        self.results: Dict[int, Optional[bool]] = {}
        self.calls = 0

    def probe(self, check: HealthCheck, port: int, timeout: float) -> Optional[bool]:
        self.calls += 1
        return self.results.get(port, True)


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    return OrchestratorSettings(
        _env_file=None,
        data_dir=tmp_path / "data",
        binaries_dir=tmp_path / "bin",
        helper_socket_path=tmp_path / "helper.sock",
        system_ca_bundle=tmp_path / "ca-bundle.pem",
        spawn_settle_seconds=0.0,
        startup_probe_timeout=0.0,
        startup_probe_interval=0.0,
        stop_grace_seconds=0.1,
        dns_port=0,
        stack_parallelism=4,
    )


@pytest.fixture
def install_binary(settings):
    """Create a fake service binary so the supervisor finds it."""
    catalog = ServiceCatalog()

    def install(service_type: ServiceType, version: str) -> Path:
        definition = catalog.get(service_type)
        path = definition.binary_path(settings.resolved_binaries_dir, version)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n")
        return path

    return install


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def events():
    return RecordingEventEmitter()


@pytest.fixture
def catalog():
    return ServiceCatalog()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def bridge(settings):
    """Bridge with no helper behind it (socket path does not exist)."""
    return PrivilegedHelperBridge(socket_path=settings.helper_socket_path)


def mock_bridge(handler, queue_size: int = 4) -> PrivilegedHelperBridge:
    """Bridge whose transport is answered in-process by `handler(request)`."""
    return PrivilegedHelperBridge(
        socket_path=Path("/nonexistent/helper.sock"),
        queue_size=queue_size,
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def trust(settings, bridge):
    return CertificateTrustManager(settings, bridge)


@pytest.fixture
def router(store, settings, trust, events):
    return DomainRouter(
        store=store,
        renderer=CaddyRenderer(settings),
        proxy=ProxyController(settings),
        trust=trust,
        settings=settings,
        events=events,
    )


@pytest.fixture
def supervisor(store, catalog, settings, launcher, prober, events):
    return ServiceSupervisor(
        store=store,
        catalog=catalog,
        settings=settings,
        launchers={
            ProcessManagerKind.DIRECT: launcher,
            ProcessManagerKind.EXTERNAL: launcher,
        },
        prober=prober,
        events=events,
        port_probe=lambda port: True,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def parking(store, router, settings, events):
    return ParkingEngine(store, router, settings, events)


@pytest.fixture
def stacks(store, supervisor, router, catalog, settings, events):
    return StackManager(store, supervisor, router, catalog, settings, events)


@pytest.fixture
def dns(settings):
    return DnsResponder(tld=settings.tld, port=0, upstream=("127.0.0.1", 9), upstream_timeout=0.2)


@pytest.fixture
def orchestrator(store, catalog, supervisor, router, parking, stacks, trust, bridge, dns, settings, events):
    return Orchestrator(
        store=store,
        catalog=catalog,
        supervisor=supervisor,
        router=router,
        proxy=router._proxy,
        parking=parking,
        stacks=stacks,
        trust=trust,
        bridge=bridge,
        dns=dns,
        settings=settings,
        events=events,
    )


@pytest.fixture
def make_certificate():
    """Write a self-signed CA certificate (PEM) to a path."""

    def make(path: Path, common_name: str = "Orchestrator Local CA") -> x509.Certificate:
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(key, hashes.SHA256())
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        return cert

    return make


def race_start_on_terminate(launcher: FakeLauncher, supervisor: ServiceSupervisor, instances):
    """
    While an instance's process is being terminated, try to start that
    instance from another thread.

    Returns (outcomes, threads): join the threads, then each outcome is
    "started" or the name of the exception the start raised.
    """
    by_name = {instance.name: instance.id for instance in instances}
    outcomes: list = []
    threads: list = []

    def attempt(instance_id):
        try:
            supervisor.start(instance_id)
            outcomes.append("started")
        except Exception as e:
            outcomes.append(type(e).__name__)

    def on_terminate(name: str) -> None:
        thread = threading.Thread(target=attempt, args=(by_name[name],))
        threads.append(thread)
        thread.start()
        # Give the racer time to reach the instance lock
        thread.join(0.2)

    launcher.on_terminate = on_terminate
    return outcomes, threads
