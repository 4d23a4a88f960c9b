# orchestration_engine/core/models.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4


SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Enums
# -----------------------------

class ServiceType(str, Enum):
    FRANKENPHP = "frankenphp"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    POSTGRESQL = "postgresql"
    MONGODB = "mongodb"
    REDIS = "redis"
    VALKEY = "valkey"
    MEMCACHED = "memcached"
    MEILISEARCH = "meilisearch"
    TYPESENSE = "typesense"
    MINIO = "minio"
    MAILPIT = "mailpit"
    BEANSTALKD = "beanstalkd"
    FRPC = "frpc"
    NODERED = "nodered"


class ServiceCategory(str, Enum):
    APP_SERVER = "app-server"
    SQL = "sql"
    NOSQL = "nosql"
    CACHE = "cache"
    SEARCH = "search"
    OBJECT_STORAGE = "object-storage"
    MAIL = "mail"
    QUEUE = "queue"
    TUNNEL = "tunnel"
    WORKFLOW = "workflow"


class InstanceState(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    CRASHED = "CRASHED"


class ProcessManagerKind(str, Enum):
    DIRECT = "direct"
    EXTERNAL = "external"


class DomainTargetType(str, Enum):
    INSTANCE = "instance"
    PORT = "port"
    STATIC = "static"


class DomainSource(str, Enum):
    MANUAL = "manual"
    PARKED = "parked"


# -----------------------------
# Entities
# -----------------------------

@dataclass
class Instance:
    name: str
    service_type: ServiceType
    version: str
    port: int

    id: UUID = field(default_factory=uuid4)
    state: InstanceState = InstanceState.STOPPED
    pid: Optional[int] = None
    healthy: Optional[bool] = None

    domain: str = ""
    domain_enabled: bool = False
    mapped_domains: List[str] = field(default_factory=list)

    process_manager: ProcessManagerKind = ProcessManagerKind.DIRECT
    stack_id: Optional[UUID] = None
    config: Dict[str, Any] = field(default_factory=dict)
    auto_start: bool = False

    created_at: datetime = field(default_factory=utcnow)

    @property
    def running(self) -> bool:
        return self.state == InstanceState.RUNNING

    def attach_domain(self, full_domain: str) -> None:
        if full_domain not in self.mapped_domains:
            self.mapped_domains.append(full_domain)
        if not self.domain_enabled or not self.domain:
            self.domain = full_domain
            self.domain_enabled = True

    def detach_domain(self, full_domain: str) -> None:
        if full_domain in self.mapped_domains:
            self.mapped_domains.remove(full_domain)
        if self.domain == full_domain:
            if self.mapped_domains:
                self.domain = self.mapped_domains[0]
            else:
                self.domain = ""
                self.domain_enabled = False


@dataclass
class Domain:
    subdomain: str
    full_domain: str
    target_type: DomainTargetType
    target_value: str

    id: UUID = field(default_factory=uuid4)
    ssl_enabled: bool = False
    source: DomainSource = DomainSource.MANUAL
    parked_dir_id: Optional[UUID] = None
    created_at: datetime = field(default_factory=utcnow)

    def targets_instance(self, instance_id: UUID) -> bool:
        return (
            self.target_type == DomainTargetType.INSTANCE
            and self.target_value == str(instance_id)
        )

    @property
    def target_port(self) -> Optional[int]:
        if self.target_type == DomainTargetType.PORT:
            return int(self.target_value)
        return None


@dataclass
class Stack:
    name: str
    description: Optional[str] = None

    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()


@dataclass
class ParkedDirectory:
    path: str
    target_port: int

    id: UUID = field(default_factory=uuid4)
    enabled: bool = True
    ssl_enabled: bool = False
    derived_domains: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Registry:
    """Whole-store snapshot persisted by the state store."""
    schema_version: int = SCHEMA_VERSION
    instances: Dict[UUID, Instance] = field(default_factory=dict)
    domains: Dict[UUID, Domain] = field(default_factory=dict)
    stacks: Dict[UUID, Stack] = field(default_factory=dict)
    parked_directories: Dict[UUID, ParkedDirectory] = field(default_factory=dict)
    proxy_installed: bool = False

    def stack_members(self, stack_id: UUID) -> List[Instance]:
        return [i for i in self.instances.values() if i.stack_id == stack_id]

    def domains_for_instance(self, instance_id: UUID) -> List[Domain]:
        return [d for d in self.domains.values() if d.targets_instance(instance_id)]

    def domains_for_parked(self, parked_dir_id: UUID) -> List[Domain]:
        return [d for d in self.domains.values() if d.parked_dir_id == parked_dir_id]

    def find_domain(self, full_domain: str) -> Optional[Domain]:
        for d in self.domains.values():
            if d.full_domain == full_domain:
                return d
        return None

    def find_instance_by_name(self, name: str) -> Optional[Instance]:
        for i in self.instances.values():
            if i.name == name:
                return i
        return None

    def port_owner(self, port: int, exclude: Optional[UUID] = None) -> Optional[Instance]:
        for i in self.instances.values():
            if i.port == port and i.id != exclude:
                return i
        return None
