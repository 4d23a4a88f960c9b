#tests\test_catalog.py

"""Test the service catalog and config validation."""

from pathlib import Path

import pytest

from orchestration_engine.core.errors import NotFound, ValidationFailed
from orchestration_engine.core.models import Instance, ProcessManagerKind, ServiceType
from orchestration_engine.services.catalog import HealthCheckKind, is_secret_key


class TestDefinitions:
    """Test catalog lookups."""

    def test_every_service_type_has_a_definition(self, catalog):
        """Test the catalog covers all service types."""
        assert {d.service_type for d in catalog.all()} == set(ServiceType)

    def test_lookup_by_value(self, catalog):
        """Test definitions can be looked up by string value."""
        assert catalog.get("redis").default_port == 6379

    def test_unknown_type(self, catalog):
        with pytest.raises(NotFound):
            catalog.get("oracle")

    def test_binary_path_layout(self, catalog):
        """Test binaries live under <dir>/<type>/<version>/<binary>."""
        path = catalog.get(ServiceType.POSTGRESQL).binary_path(Path("/opt/bin"), "16.1")
        assert path == Path("/opt/bin/postgresql/16.1/bin/postgres")

    def test_http_health_checks(self, catalog):
        """Test search services probe an HTTP endpoint."""
        check = catalog.get(ServiceType.MEILISEARCH).health_check
        assert check.kind == HealthCheckKind.HTTP
        assert check.path == "/health"

    def test_nodered_uses_external_supervisor(self, catalog):
        assert catalog.get(ServiceType.NODERED).process_manager == ProcessManagerKind.EXTERNAL


class TestConfigValidation:
    """Test per-service config schemas."""

    def test_defaults_applied(self, catalog):
        """Test missing optional fields take their defaults."""
        config = catalog.validate_config(ServiceType.MEMCACHED, {})
        assert config == {"memory": 64}

    def test_number_coercion(self, catalog):
        """Test numeric strings are coerced."""
        config = catalog.validate_config(ServiceType.MEMCACHED, {"memory": "128"})
        assert config["memory"] == 128

    def test_wrong_type_rejected(self, catalog):
        with pytest.raises(ValidationFailed):
            catalog.validate_config(ServiceType.MEMCACHED, {"memory": "lots"})

    def test_unknown_key_rejected(self, catalog):
        """Test keys outside the schema are refused."""
        with pytest.raises(ValidationFailed):
            catalog.validate_config(ServiceType.REDIS, {"maxmemory": "1gb"})

    def test_required_field(self, catalog):
        """Test FrankenPHP needs a document root."""
        with pytest.raises(ValidationFailed):
            catalog.validate_config(ServiceType.FRANKENPHP, {})

        config = catalog.validate_config(ServiceType.FRANKENPHP, {"document_root": "/srv/app/public"})
        assert config == {"document_root": "/srv/app/public"}


class TestStartArgs:
    """Test launch arguments built from an instance."""

    def test_redis_password(self, catalog, tmp_path):
        """Test the redis password is passed on the command line."""
        instance = Instance(
            name="cache",
            service_type=ServiceType.REDIS,
            version="7.2",
            port=6390,
            config={"password": "pw"},
        )
        args = catalog.get(ServiceType.REDIS).start_args(instance, tmp_path)

        assert args[:2] == ["--port", "6390"]
        assert "--requirepass" in args
        assert str(tmp_path) in args


class TestSecrets:
    """Test secret key detection used by stack export."""

    @pytest.mark.parametrize("key", ["password", "root_password", "master_key", "api_key", "token"])
    def test_secret_keys(self, key):
        assert is_secret_key(key)

    def test_plain_keys(self):
        assert not is_secret_key("document_root")
        assert not is_secret_key("memory")
