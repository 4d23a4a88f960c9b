#tests\test_parking.py

"""Test parked directories and their derived domains."""

import threading

import pytest

from orchestration_engine.core.errors import NotFound, ProxyReloadFailed, ValidationFailed
from orchestration_engine.core.models import DomainSource, DomainTargetType
from orchestration_engine.parking.engine import ParkWatcher
from orchestration_engine.parking.projects import ProjectType, detect_project_type, scan_directory


@pytest.fixture
def sites(tmp_path):
    """A parent directory with two projects and some noise."""
    parent = tmp_path / "Sites"
    parent.mkdir()
    (parent / "blog").mkdir()
    (parent / "My Shop").mkdir()
    (parent / ".hidden").mkdir()
    (parent / "node_modules").mkdir()
    (parent / "notes.txt").write_text("not a project")
    return parent


def domain_names(store):
    return [d.full_domain for d in store.list_domains()]


class TestProjects:
    """Test project scanning and detection."""

    def test_scan_skips_noise(self, sites):
        """Test hidden, tooling and non-directory entries are skipped."""
        assert [p.name for p in scan_directory(sites)] == ["My Shop", "blog"]

    @pytest.mark.parametrize(
        "marker, expected",
        [
            ("artisan", ProjectType.LARAVEL),
            ("symfony.lock", ProjectType.SYMFONY),
            ("wp-config.php", ProjectType.WORDPRESS),
            ("index.php", ProjectType.PHP),
            ("package.json", ProjectType.NODE),
            ("index.html", ProjectType.STATIC),
        ],
    )
    def test_detect(self, tmp_path, marker, expected):
        (tmp_path / marker).write_text("")
        assert detect_project_type(tmp_path) == expected

    def test_detect_unknown(self, tmp_path):
        assert detect_project_type(tmp_path) == ProjectType.UNKNOWN


class TestPark:
    """Test parking and forgetting."""

    def test_park_creates_domains(self, parking, store, settings, sites):
        """Test each child directory gets <slug>.<tld> pointing at the park port."""
        parked = parking.park(sites)

        assert domain_names(store) == ["blog.test", "my-shop.test"]
        assert parked.derived_domains == ["blog.test", "my-shop.test"]

        for domain in store.list_domains():
            assert domain.source == DomainSource.PARKED
            assert domain.target_type == DomainTargetType.PORT
            assert domain.target_port == settings.park_port
            assert domain.parked_dir_id == parked.id

        assert (settings.domains_dir / "blog.test.caddy").exists()

    def test_park_twice_returns_existing(self, parking, store, sites):
        """Test parking the same path again is a no-op."""
        first = parking.park(sites)
        second = parking.park(sites)

        assert second.id == first.id
        assert len(store.list_parked_directories()) == 1

    def test_park_custom_port(self, parking, store, sites):
        parking.park(sites, target_port=3000)
        assert {d.target_port for d in store.list_domains()} == {3000}

    def test_park_requires_directory(self, parking, tmp_path):
        with pytest.raises(ValidationFailed):
            parking.park(tmp_path / "missing")

    def test_forget_keeps_manual_domains(self, parking, router, store, sites):
        """Test forgetting retracts only derived domains."""
        parking.park(sites)
        router.create_domain("api", DomainTargetType.PORT, 4000)

        parking.forget(sites)

        assert domain_names(store) == ["api.test"]
        assert store.list_parked_directories() == []

    def test_forget_unknown(self, parking, tmp_path):
        with pytest.raises(NotFound):
            parking.forget(tmp_path)

    def test_events(self, parking, events, sites):
        parking.park(sites)
        parking.forget(sites)

        assert len(events.of_type("park.added")) == 1
        assert len(events.of_type("park.removed")) == 1
        assert len(events.of_type("domain.created")) == 2


class TestRefresh:
    """Test re-synchronizing derived domains."""

    def test_second_refresh_changes_nothing(self, parking, store, sites):
        """Test refresh with no filesystem change does not write the registry."""
        parking.park(sites)
        version = store.version

        result = parking.refresh(sites)

        assert not result.changed
        assert sorted(result.unchanged) == ["blog.test", "my-shop.test"]
        assert store.version == version

    def test_new_and_removed_directories(self, parking, store, sites):
        """Test added children gain domains and deleted ones lose them."""
        parking.park(sites)
        (sites / "api").mkdir()
        (sites / "blog").rmdir()

        result = parking.refresh(sites)

        assert result.added == ["api.test"]
        assert result.removed == ["blog.test"]
        assert domain_names(store) == ["api.test", "my-shop.test"]
        assert store.find_parked_directory(str(sites.resolve())).derived_domains == [
            "api.test",
            "my-shop.test",
        ]

    def test_failed_write_restores_derived_domains(self, parking, router, store, sites, monkeypatch):
        """Test a refresh whose config write fails leaves the parked record as it was."""
        parking.park(sites)
        (sites / "api").mkdir()

        def broken_write(units):
            raise ProxyReloadFailed("disk full", config_written=False)

        monkeypatch.setattr(router._renderer, "write", broken_write)

        with pytest.raises(ProxyReloadFailed):
            parking.refresh(sites)

        assert domain_names(store) == ["blog.test", "my-shop.test"]
        assert store.find_parked_directory(str(sites.resolve())).derived_domains == [
            "blog.test",
            "my-shop.test",
        ]

    def test_conflict_with_manual_domain(self, parking, router, store, sites):
        """Test a name already owned by a manual domain is reported, not replaced."""
        manual = router.create_domain("blog", DomainTargetType.PORT, 4000).domain

        parking.park(sites)

        assert store.get_domain(manual.id).source == DomainSource.MANUAL
        assert store.get_domain(manual.id).target_port == 4000
        result = parking.refresh(sites)
        assert result.conflicts == ["blog.test"]

    def test_unusable_and_colliding_names(self, parking, store, tmp_path):
        """Test names with no label or a duplicate slug are reported as errors."""
        parent = tmp_path / "work"
        parent.mkdir()
        (parent / "___").mkdir()
        (parent / "my_app").mkdir()
        (parent / "my-app").mkdir()

        parking.park(parent)
        result = parking.refresh(parent)

        assert domain_names(store) == ["my-app.test"]
        assert len(result.errors) == 2

    def test_parent_removed(self, parking, store, sites):
        """Test a vanished parent retracts every derived domain."""
        parking.park(sites)
        for child in ("blog", "My Shop", ".hidden", "node_modules"):
            (sites / child).rmdir()
        (sites / "notes.txt").unlink()
        sites.rmdir()

        result = parking.refresh(str(sites))

        assert sorted(result.removed) == ["blog.test", "my-shop.test"]
        assert store.list_domains() == []

    def test_cancelled_refresh(self, parking, store, sites):
        """Test a set cancel event stops before adding domains."""
        parking.park(sites)
        (sites / "api").mkdir()
        cancel = threading.Event()
        cancel.set()

        result = parking.refresh(sites, cancel=cancel)

        assert result.cancelled
        assert "api.test" not in domain_names(store)

    def test_refresh_all_skips_disabled(self, parking, store, sites):
        parked = parking.park(sites)
        with store.transaction() as registry:
            registry.parked_directories[parked.id].enabled = False

        assert parking.refresh_all() == {}

    def test_refresh_unknown(self, parking, tmp_path):
        with pytest.raises(NotFound):
            parking.refresh(tmp_path)


class TestStatus:
    """Test read-only park status."""

    def test_project_inside_parked_parent(self, parking, sites):
        """Test a child of a parked directory reports its domain."""
        (sites / "blog" / "artisan").write_text("")
        parking.park(sites)

        status = parking.status(sites / "blog")

        assert status.parked
        assert not status.is_parked_parent
        assert status.parked_path == str(sites.resolve())
        assert status.full_domain == "blog.test"
        assert status.project_type == ProjectType.LARAVEL

    def test_parked_parent_itself(self, parking, sites):
        parking.park(sites)

        status = parking.status(sites)

        assert not status.parked
        assert status.is_parked_parent

    def test_unparked_path(self, parking, tmp_path):
        status = parking.status(tmp_path)
        assert not status.parked
        assert not status.is_parked_parent

    def test_status_does_not_write(self, parking, store, sites):
        parking.park(sites)
        version = store.version

        parking.status(sites / "blog")

        assert store.version == version


class TestParkWatcher:
    """Test the background re-scan."""

    def test_watcher_picks_up_new_directory(self, parking, store, sites):
        """Test the first watcher sweep adds a new project."""
        parking.park(sites)
        (sites / "api").mkdir()

        watcher = ParkWatcher(parking, interval=60)
        watcher.start()
        try:
            for _ in range(100):
                if "api.test" in domain_names(store):
                    break
                threading.Event().wait(0.02)
        finally:
            watcher.stop()

        assert "api.test" in domain_names(store)
        assert not watcher.running
