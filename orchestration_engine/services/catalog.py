# orchestration_engine/services/catalog.py
"""
Service catalog.

One ServiceDefinition per service type. Each definition declares its own
typed config fields, how it is launched, and how its health is probed.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from orchestration_engine.core.errors import NotFound, ValidationFailed
from orchestration_engine.core.models import (
    Instance,
    ProcessManagerKind,
    ServiceCategory,
    ServiceType,
)


SECRET_KEY_MARKERS = ("password", "master_key", "api_key", "token", "secret")


# ============================================
# SCHEMA TYPES
# ============================================

class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    PASSWORD = "password"
    BOOLEAN = "boolean"


class HealthCheckKind(str, Enum):
    TCP = "tcp"
    HTTP = "http"
    NONE = "none"


@dataclass(frozen=True)
class HealthCheck:
    kind: HealthCheckKind
    path: str = "/"

    @staticmethod
    def tcp() -> "HealthCheck":
        return HealthCheck(HealthCheckKind.TCP)

    @staticmethod
    def http(path: str) -> "HealthCheck":
        return HealthCheck(HealthCheckKind.HTTP, path)


@dataclass(frozen=True)
class ConfigField:
    key: str
    label: str
    field_type: FieldType = FieldType.STRING
    required: bool = False
    default: Any = None

    @property
    def secret(self) -> bool:
        return self.field_type == FieldType.PASSWORD or is_secret_key(self.key)


StartArgsBuilder = Callable[[Instance, Path], List[str]]


@dataclass(frozen=True)
class ServiceDefinition:
    service_type: ServiceType
    display_name: str
    category: ServiceCategory
    default_port: int
    binary_name: str
    health_check: HealthCheck
    start_args: StartArgsBuilder
    config_fields: List[ConfigField] = field(default_factory=list)
    process_manager: ProcessManagerKind = ProcessManagerKind.DIRECT

    def get_field(self, key: str) -> Optional[ConfigField]:
        for f in self.config_fields:
            if f.key == key:
                return f
        return None

    def binary_path(self, binaries_dir: Path, version: str) -> Path:
        return Path(binaries_dir) / self.service_type.value / version / self.binary_name


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_KEY_MARKERS)


# ============================================
# START ARGUMENTS
# ============================================

def _key_value_args(instance: Instance, data_dir: Path) -> List[str]:
    """redis / valkey"""
    args = [
        "--port", str(instance.port),
        "--dir", str(data_dir),
        "--bind", "127.0.0.1",
    ]
    password = instance.config.get("password")
    if password:
        args += ["--requirepass", str(password)]
    return args


def _meilisearch_args(instance: Instance, data_dir: Path) -> List[str]:
    args = [
        "--db-path", str(data_dir),
        "--http-addr", f"127.0.0.1:{instance.port}",
        "--env", "development",
    ]
    master_key = instance.config.get("master_key")
    if master_key:
        args += ["--master-key", str(master_key)]
    return args


def _typesense_args(instance: Instance, data_dir: Path) -> List[str]:
    return [
        "--data-dir", str(data_dir),
        "--api-port", str(instance.port),
        "--enable-cors",
        "--api-key", str(instance.config.get("api_key") or "xyz"),
    ]


def _mongodb_args(instance: Instance, data_dir: Path) -> List[str]:
    return [
        "--dbpath", str(data_dir),
        "--port", str(instance.port),
        "--bind_ip", "127.0.0.1",
    ]


def _mysql_args(instance: Instance, data_dir: Path) -> List[str]:
    return [
        f"--datadir={data_dir}",
        f"--port={instance.port}",
        "--bind-address=127.0.0.1",
        f"--socket={data_dir / 'mysql.sock'}",
    ]


def _postgresql_args(instance: Instance, data_dir: Path) -> List[str]:
    return [
        "-D", str(data_dir),
        "-p", str(instance.port),
        "-h", "127.0.0.1",
        "-k", str(data_dir),
    ]


def _memcached_args(instance: Instance, data_dir: Path) -> List[str]:
    return [
        "-l", "127.0.0.1",
        "-p", str(instance.port),
        "-m", str(instance.config.get("memory", 64)),
    ]


def _beanstalkd_args(instance: Instance, data_dir: Path) -> List[str]:
    return ["-l", "127.0.0.1", "-p", str(instance.port)]


def _minio_args(instance: Instance, data_dir: Path) -> List[str]:
    console_port = instance.config.get("console_port") or instance.port + 1
    return [
        "server", str(data_dir),
        "--address", f"127.0.0.1:{instance.port}",
        "--console-address", f"127.0.0.1:{console_port}",
    ]


def _mailpit_args(instance: Instance, data_dir: Path) -> List[str]:
    smtp_port = instance.config.get("smtp_port", 1025)
    return [
        "--listen", f"127.0.0.1:{instance.port}",
        "--smtp", f"127.0.0.1:{smtp_port}",
        "--database", str(data_dir / "mailpit.db"),
    ]


def _frankenphp_args(instance: Instance, data_dir: Path) -> List[str]:
    document_root = instance.config.get("document_root") or "."
    return [
        "php-server",
        "--listen", f"127.0.0.1:{instance.port}",
        "--root", str(document_root),
    ]


def _frpc_args(instance: Instance, data_dir: Path) -> List[str]:
    return ["-c", str(data_dir / "frpc.toml")]


def _nodered_args(instance: Instance, data_dir: Path) -> List[str]:
    return ["--userDir", str(data_dir), "--port", str(instance.port)]


# ============================================
# DEFINITIONS
# ============================================

_PASSWORD = ConfigField("password", "Password", FieldType.PASSWORD)

DEFINITIONS: Dict[ServiceType, ServiceDefinition] = {
    d.service_type: d
    for d in [
        ServiceDefinition(
            service_type=ServiceType.FRANKENPHP,
            display_name="FrankenPHP",
            category=ServiceCategory.APP_SERVER,
            default_port=8000,
            binary_name="frankenphp",
            health_check=HealthCheck.tcp(),
            start_args=_frankenphp_args,
            config_fields=[
                ConfigField("document_root", "Document Root", required=True),
            ],
        ),
        ServiceDefinition(
            service_type=ServiceType.MYSQL,
            display_name="MySQL",
            category=ServiceCategory.SQL,
            default_port=3306,
            binary_name="bin/mysqld",
            health_check=HealthCheck.tcp(),
            start_args=_mysql_args,
        ),
        ServiceDefinition(
            service_type=ServiceType.MARIADB,
            display_name="MariaDB",
            category=ServiceCategory.SQL,
            default_port=3307,
            binary_name="bin/mariadbd",
            health_check=HealthCheck.tcp(),
            start_args=_mysql_args,
        ),
        ServiceDefinition(
            service_type=ServiceType.POSTGRESQL,
            display_name="PostgreSQL",
            category=ServiceCategory.SQL,
            default_port=5432,
            binary_name="bin/postgres",
            health_check=HealthCheck.tcp(),
            start_args=_postgresql_args,
        ),
        ServiceDefinition(
            service_type=ServiceType.MONGODB,
            display_name="MongoDB",
            category=ServiceCategory.NOSQL,
            default_port=27017,
            binary_name="mongod",
            health_check=HealthCheck.tcp(),
            start_args=_mongodb_args,
        ),
        ServiceDefinition(
            service_type=ServiceType.REDIS,
            display_name="Redis",
            category=ServiceCategory.CACHE,
            default_port=6379,
            binary_name="redis-server",
            health_check=HealthCheck.tcp(),
            start_args=_key_value_args,
            config_fields=[_PASSWORD],
        ),
        ServiceDefinition(
            service_type=ServiceType.VALKEY,
            display_name="Valkey",
            category=ServiceCategory.CACHE,
            default_port=6380,
            binary_name="valkey-server",
            health_check=HealthCheck.tcp(),
            start_args=_key_value_args,
            config_fields=[_PASSWORD],
        ),
        ServiceDefinition(
            service_type=ServiceType.MEMCACHED,
            display_name="Memcached",
            category=ServiceCategory.CACHE,
            default_port=11211,
            binary_name="memcached",
            health_check=HealthCheck.tcp(),
            start_args=_memcached_args,
            config_fields=[
                ConfigField("memory", "Memory (MB)", FieldType.NUMBER, default=64),
            ],
        ),
        ServiceDefinition(
            service_type=ServiceType.MEILISEARCH,
            display_name="Meilisearch",
            category=ServiceCategory.SEARCH,
            default_port=7700,
            binary_name="meilisearch",
            health_check=HealthCheck.http("/health"),
            start_args=_meilisearch_args,
            config_fields=[
                ConfigField("master_key", "Master Key", FieldType.PASSWORD),
            ],
        ),
        ServiceDefinition(
            service_type=ServiceType.TYPESENSE,
            display_name="Typesense",
            category=ServiceCategory.SEARCH,
            default_port=8108,
            binary_name="typesense-server",
            health_check=HealthCheck.http("/health"),
            start_args=_typesense_args,
            config_fields=[
                ConfigField("api_key", "API Key", FieldType.PASSWORD, required=True, default="xyz"),
            ],
        ),
        ServiceDefinition(
            service_type=ServiceType.MINIO,
            display_name="MinIO",
            category=ServiceCategory.OBJECT_STORAGE,
            default_port=9000,
            binary_name="minio",
            health_check=HealthCheck.http("/minio/health/live"),
            start_args=_minio_args,
            config_fields=[
                ConfigField("root_user", "Root User", default="minioadmin"),
                ConfigField("root_password", "Root Password", FieldType.PASSWORD, default="minioadmin"),
                ConfigField("console_port", "Console Port", FieldType.NUMBER),
            ],
        ),
        ServiceDefinition(
            service_type=ServiceType.MAILPIT,
            display_name="Mailpit",
            category=ServiceCategory.MAIL,
            default_port=8025,
            binary_name="mailpit",
            health_check=HealthCheck.http("/livez"),
            start_args=_mailpit_args,
            config_fields=[
                ConfigField("smtp_port", "SMTP Port", FieldType.NUMBER, default=1025),
            ],
        ),
        ServiceDefinition(
            service_type=ServiceType.BEANSTALKD,
            display_name="Beanstalkd",
            category=ServiceCategory.QUEUE,
            default_port=11300,
            binary_name="beanstalkd",
            health_check=HealthCheck.tcp(),
            start_args=_beanstalkd_args,
        ),
        ServiceDefinition(
            service_type=ServiceType.FRPC,
            display_name="frp Client",
            category=ServiceCategory.TUNNEL,
            default_port=7400,
            binary_name="frpc",
            health_check=HealthCheck(HealthCheckKind.NONE),
            start_args=_frpc_args,
            config_fields=[
                ConfigField("server_addr", "Server Address", required=True),
                ConfigField("token", "Auth Token", FieldType.PASSWORD),
            ],
        ),
        ServiceDefinition(
            service_type=ServiceType.NODERED,
            display_name="Node-RED",
            category=ServiceCategory.WORKFLOW,
            default_port=1880,
            binary_name="node_modules/node-red/red.js",
            health_check=HealthCheck.http("/"),
            start_args=_nodered_args,
            process_manager=ProcessManagerKind.EXTERNAL,
        ),
    ]
}


class ServiceCatalog:
    """Lookup and config validation over the service definitions."""

    def __init__(self, definitions: Optional[Dict[ServiceType, ServiceDefinition]] = None):
        self._definitions = dict(definitions if definitions is not None else DEFINITIONS)

    def get(self, service_type: ServiceType) -> ServiceDefinition:
        try:
            return self._definitions[ServiceType(service_type)]
        except (KeyError, ValueError):
            raise NotFound(f"Unknown service type: {service_type}")

    def all(self) -> List[ServiceDefinition]:
        return list(self._definitions.values())

    def validate_config(
        self,
        service_type: ServiceType,
        config: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Validate a config blob against the service type's fields.

        Returns a new dict with defaults applied. Unknown keys, missing
        required fields and wrongly typed values raise ValidationFailed.
        """
        definition = self.get(service_type)
        config = dict(config or {})
        result: Dict[str, Any] = {}

        known = {f.key for f in definition.config_fields}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ValidationFailed(
                f"Unknown config keys for {definition.display_name}: {', '.join(unknown)}"
            )

        for f in definition.config_fields:
            value = config.get(f.key, f.default)

            if value is None or value == "":
                if f.required:
                    raise ValidationFailed(f"{f.label} is required")
                continue

            result[f.key] = _coerce(f, value)

        return result


def _coerce(f: ConfigField, value: Any) -> Any:
    if f.field_type == FieldType.NUMBER:
        if isinstance(value, bool):
            raise ValidationFailed(f"{f.label} must be a number")
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationFailed(f"{f.label} must be a number, got {value!r}")

    if f.field_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise ValidationFailed(f"{f.label} must be true or false")

    if not isinstance(value, str):
        raise ValidationFailed(f"{f.label} must be a string")
    return value
