#tests\test_store.py

"""Test the registry state stores."""

import json

import pytest

from orchestration_engine.core.errors import PersistenceFailed
from orchestration_engine.core.models import (
    Domain,
    DomainTargetType,
    Instance,
    InstanceState,
    ParkedDirectory,
    ServiceType,
    Stack,
)
from orchestration_engine.infrastructure.json_store.repository import JsonFileStateStore
from orchestration_engine.infrastructure.memory.repository import InMemoryStateStore


def redis(name="redis", port=6379, **kwargs):
    return Instance(name=name, service_type=ServiceType.REDIS, version="7.2", port=port, **kwargs)


class TestInMemoryStateStore:
    """Test transactions on the in-memory store."""

    def test_put_and_get_returns_copies(self, store):
        """Test reads never hand out the committed object."""
        instance = redis()
        store.put_instance(instance)

        loaded = store.get_instance(instance.id)
        loaded.name = "changed"

        assert store.get_instance(instance.id).name == "redis"

    def test_version_counts_commits(self, store):
        """Test each committed transaction bumps the version."""
        assert store.version == 0
        store.put_instance(redis())
        store.put_stack(Stack(name="shop"))
        assert store.version == 2

    def test_failed_transaction_discards_changes(self, store):
        """Test an exception inside a transaction leaves nothing behind."""
        instance = redis()
        store.put_instance(instance)

        with pytest.raises(RuntimeError):
            with store.transaction() as registry:
                registry.instances[instance.id].name = "half-done"
                raise RuntimeError("boom")

        assert store.get_instance(instance.id).name == "redis"
        assert store.version == 1

    def test_nested_transaction_joins_outer(self, store):
        """Test helper writes inside an open transaction commit once."""
        with store.transaction() as registry:
            store.put_instance(redis())
            assert len(registry.instances) == 1

        assert store.version == 1
        assert len(store.list_instances()) == 1

    def test_transient_state_refused(self, store):
        """Test STARTING never reaches the snapshot."""
        instance = redis(state=InstanceState.STARTING)

        with pytest.raises(PersistenceFailed):
            store.put_instance(instance)

        assert store.list_instances() == []

    def test_running_requires_pid(self, store):
        """Test running without a pid is refused."""
        with pytest.raises(PersistenceFailed):
            store.put_instance(redis(state=InstanceState.RUNNING))

    def test_lists_are_sorted(self, store):
        """Test domains sort by name and parked dirs by path."""
        store.put_domain(Domain("b", "b.test", DomainTargetType.PORT, "3000"))
        store.put_domain(Domain("a", "a.test", DomainTargetType.PORT, "3001"))
        store.put_parked_directory(ParkedDirectory(path="/z", target_port=8000))
        store.put_parked_directory(ParkedDirectory(path="/a", target_port=8000))

        assert [d.full_domain for d in store.list_domains()] == ["a.test", "b.test"]
        assert [p.path for p in store.list_parked_directories()] == ["/a", "/z"]


class TestJsonFileStateStore:
    """Test the durable JSON snapshot."""

    def test_missing_file_starts_empty(self, tmp_path):
        """Test a fresh data directory gives an empty registry."""
        store = JsonFileStateStore(tmp_path / "state.json")
        assert store.list_instances() == []

    def test_round_trip(self, tmp_path):
        """Test a committed registry is loaded back by a new store."""
        path = tmp_path / "state.json"
        store = JsonFileStateStore(path)
        instance = redis(config={"password": "secret"})
        stack = Stack(name="shop")
        instance.stack_id = stack.id
        store.put_stack(stack)
        store.put_instance(instance)

        reloaded = JsonFileStateStore(path)
        loaded = reloaded.get_instance(instance.id)

        assert loaded.name == "redis"
        assert loaded.service_type == ServiceType.REDIS
        assert loaded.stack_id == stack.id
        assert loaded.config == {"password": "secret"}
        assert reloaded.get_stack(stack.id).name == "shop"

    def test_no_temp_files_left(self, tmp_path):
        """Test the atomic write cleans up its temporary file."""
        store = JsonFileStateStore(tmp_path / "state.json")
        store.put_instance(redis())

        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_persist_failure_keeps_previous_snapshot(self, tmp_path, monkeypatch):
        """Test a failed write keeps both the file and memory at the last commit."""
        path = tmp_path / "state.json"
        store = JsonFileStateStore(path)
        store.put_instance(redis())
        before = path.read_text()

        def disk_full(src, dst):
            raise OSError("No space left on device")

        monkeypatch.setattr(
            "orchestration_engine.infrastructure.json_store.repository.os.replace",
            disk_full,
        )

        with pytest.raises(PersistenceFailed):
            store.put_instance(redis(name="second", port=6380))

        monkeypatch.undo()

        assert path.read_text() == before
        assert [i.name for i in store.list_instances()] == ["redis"]
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_unknown_fields_ignored(self, tmp_path):
        """Test snapshots from a newer version still load."""
        path = tmp_path / "state.json"
        store = JsonFileStateStore(path)
        instance = redis()
        store.put_instance(instance)

        data = json.loads(path.read_text())
        data["future_field"] = {"x": 1}
        data["instances"][str(instance.id)]["future_flag"] = True
        path.write_text(json.dumps(data))

        reloaded = JsonFileStateStore(path)
        assert reloaded.get_instance(instance.id).name == "redis"

    def test_corrupt_file_raises(self, tmp_path):
        """Test garbage on disk is reported, not silently replaced."""
        path = tmp_path / "state.json"
        path.write_text("{not json")

        with pytest.raises(PersistenceFailed):
            JsonFileStateStore(path)
