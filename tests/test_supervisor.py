#tests\test_supervisor.py

"""Test process supervision with a fake launcher."""

import socket
from uuid import uuid4

import pytest

from orchestration_engine.core.errors import (
    AlreadyRunning,
    BinaryMissing,
    NotFound,
    PortConflict,
    ProcessSpawnFailed,
)
from orchestration_engine.core.models import Instance, InstanceState, ServiceType
from orchestration_engine.services.catalog import HealthCheck
from orchestration_engine.supervisor.health import HealthProber, is_port_free, next_free_port
from orchestration_engine.supervisor.monitor import HealthMonitor


@pytest.fixture
def redis(store, install_binary):
    """A stopped redis instance with its binary installed."""
    install_binary(ServiceType.REDIS, "7.2")
    instance = Instance(name="redis-main", service_type=ServiceType.REDIS, version="7.2", port=6379)
    store.put_instance(instance)
    return instance


class TestStartStop:
    """Test the basic lifecycle."""

    def test_start_then_stop(self, supervisor, store, launcher, settings, redis):
        """Test start gives RUNNING with a pid, stop clears it."""
        started = supervisor.start(redis.id)

        assert started.state == InstanceState.RUNNING
        assert started.pid is not None
        assert started.healthy is True
        assert (settings.pids_dir / f"{redis.id}.pid").read_text() == str(started.pid)

        stored = store.get_instance(redis.id)
        assert stored.running
        assert stored.pid == started.pid

        stopped = supervisor.stop(redis.id)

        assert stopped.state == InstanceState.STOPPED
        assert stopped.pid is None
        assert store.get_instance(redis.id).pid is None
        assert started.pid in launcher.terminated
        assert not (settings.pids_dir / f"{redis.id}.pid").exists()

    def test_launch_spec(self, supervisor, launcher, settings, redis):
        """Test the launcher gets the catalog arguments and the log file."""
        supervisor.start(redis.id)
        spec = launcher.spawned["redis-main"]

        assert spec.binary.name == "redis-server"
        assert "--port" in spec.args
        assert spec.log_file == settings.logs_dir / "redis-main.log"
        assert spec.cwd == settings.instance_dir(redis.id)

    def test_start_twice(self, supervisor, redis):
        """Test starting a running instance raises AlreadyRunning."""
        supervisor.start(redis.id)
        with pytest.raises(AlreadyRunning):
            supervisor.start(redis.id)

    def test_stop_stopped_is_noop(self, supervisor, launcher, redis):
        """Test stopping a stopped instance does nothing."""
        result = supervisor.stop(redis.id)

        assert result.state == InstanceState.STOPPED
        assert launcher.terminated == []

    def test_restart(self, supervisor, redis):
        """Test restart replaces the process."""
        first = supervisor.start(redis.id)
        second = supervisor.restart(redis.id)

        assert second.running
        assert second.pid != first.pid

    def test_unknown_instance(self, supervisor):
        with pytest.raises(NotFound):
            supervisor.start(uuid4())

    def test_events(self, supervisor, events, redis):
        """Test start and stop are announced."""
        supervisor.start(redis.id)
        supervisor.stop(redis.id)

        assert len(events.of_type("instance.started")) == 1
        assert len(events.of_type("instance.stopped")) == 1


class TestStartFailures:
    """Test start refusals and spawn failures."""

    def test_missing_binary(self, supervisor, store):
        """Test a version that is not installed fails before spawning."""
        instance = Instance(name="pg", service_type=ServiceType.POSTGRESQL, version="16", port=5432)
        store.put_instance(instance)

        with pytest.raises(BinaryMissing):
            supervisor.start(instance.id)

        assert store.get_instance(instance.id).state == InstanceState.STOPPED

    def test_process_exits_immediately(self, supervisor, store, launcher, redis):
        """Test a process dying in the settle window leaves the instance STOPPED."""
        launcher.die_on_spawn.add("redis-main")

        with pytest.raises(ProcessSpawnFailed):
            supervisor.start(redis.id)

        stored = store.get_instance(redis.id)
        assert stored.state == InstanceState.STOPPED
        assert stored.pid is None

    def test_port_held_by_running_instance(self, supervisor, store, install_binary, redis):
        """Test a second instance on the same port is refused."""
        supervisor.start(redis.id)
        twin = Instance(name="redis-twin", service_type=ServiceType.REDIS, version="7.2", port=6379)
        store.put_instance(twin)

        with pytest.raises(PortConflict) as exc:
            supervisor.start(twin.id)

        assert exc.value.port == 6379
        assert exc.value.holder == "redis-main"
        assert store.get_instance(twin.id).state == InstanceState.STOPPED

    def test_port_held_outside_registry(self, supervisor, store, redis):
        """Test a port bound by a foreign process is refused."""
        supervisor._port_probe = lambda port: False

        with pytest.raises(PortConflict):
            supervisor.start(redis.id)

        assert store.get_instance(redis.id).pid is None

    def test_unhealthy_start_still_running(self, supervisor, prober, redis):
        """Test a failing startup probe leaves the instance running but unhealthy."""
        prober.results[6379] = False

        started = supervisor.start(redis.id)

        assert started.running
        assert started.healthy is False


class TestHealth:
    """Test health checks and crash reconciliation."""

    def test_health_changes_are_recorded(self, supervisor, store, prober, events, redis):
        """Test a health flip is stored and announced."""
        supervisor.start(redis.id)
        prober.results[6379] = False

        assert supervisor.health_check(redis.id) is False
        assert store.get_instance(redis.id).healthy is False
        assert len(events.of_type("instance.health_changed")) == 1

    def test_probe_timeout_is_unknown(self, supervisor, store, prober, redis):
        """Test a probe timeout reports None."""
        supervisor.start(redis.id)
        prober.results[6379] = None

        assert supervisor.health_check(redis.id) is None
        assert store.get_instance(redis.id).healthy is None

    def test_stopped_instance_is_not_healthy(self, supervisor, redis):
        assert supervisor.health_check(redis.id) is False

    def test_crash_detected_by_health_check(self, supervisor, store, launcher, events, redis):
        """Test a vanished process is marked CRASHED."""
        started = supervisor.start(redis.id)
        launcher.kill(started.pid)

        assert supervisor.health_check(redis.id) is False

        stored = store.get_instance(redis.id)
        assert stored.state == InstanceState.CRASHED
        assert stored.pid is None
        assert len(events.of_type("instance.crashed")) == 1

    def test_reconcile_all(self, supervisor, store, launcher, redis):
        """Test startup reconciliation marks dead processes crashed."""
        started = supervisor.start(redis.id)
        launcher.kill(started.pid)

        assert supervisor.reconcile_all() == [redis.id]
        assert store.get_instance(redis.id).state == InstanceState.CRASHED

    def test_crashed_can_be_started_again(self, supervisor, launcher, redis):
        """Test CRASHED -> RUNNING through a fresh start."""
        started = supervisor.start(redis.id)
        launcher.kill(started.pid)
        supervisor.reconcile_all()

        again = supervisor.start(redis.id)
        assert again.running

    def test_stop_crashed_resets_to_stopped(self, supervisor, store, launcher, redis):
        started = supervisor.start(redis.id)
        launcher.kill(started.pid)
        supervisor.reconcile_all()

        supervisor.stop(redis.id)
        assert store.get_instance(redis.id).state == InstanceState.STOPPED


class TestHealthMonitor:
    """Test the background monitor sweep."""

    def test_check_cycle_covers_running_instances(self, supervisor, store, redis):
        """Test one sweep probes every running instance."""
        supervisor.start(redis.id)
        monitor = HealthMonitor(store, supervisor, check_interval=60)

        results = monitor.check_cycle()

        assert results == {redis.id: True}

    def test_start_and_stop_thread(self, supervisor, store):
        monitor = HealthMonitor(store, supervisor, check_interval=60)
        monitor.start()
        assert monitor.running
        monitor.stop()
        assert not monitor.running


class TestProbes:
    """Test the real TCP probe and port helpers against loopback sockets."""

    def test_tcp_probe(self):
        """Test a listening socket is healthy and a closed port is not."""
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]
        try:
            assert HealthProber().probe(HealthCheck.tcp(), port, 1.0) is True
            assert not is_port_free(port)
        finally:
            listener.close()

        assert HealthProber().probe(HealthCheck.tcp(), port, 1.0) is False

    def test_next_free_port(self):
        """Test allocation skips taken ports."""
        assert next_free_port(6379, [6379, 6380]) == 6381
        assert next_free_port(65535, [65535]) is None
