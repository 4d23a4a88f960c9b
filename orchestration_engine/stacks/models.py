"""Pydantic schemas for stack export/import."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orchestration_engine.core.models import Domain, Instance, ServiceType, Stack


STACK_SCHEMA_VERSION = 1


# ============================================
# Export document
# ============================================

class ServiceExport(BaseModel):
    """One member instance, referenced by ref_id inside the document."""

    ref_id: str
    name: str
    service_type: ServiceType
    version: str
    port: int = Field(ge=1, le=65535)
    auto_start: bool = False
    config: Dict[str, Any] = Field(default_factory=dict)


class DomainExport(BaseModel):
    subdomain: str
    target_ref: str
    ssl_enabled: bool = False


class Requirement(BaseModel):
    """A binary the importing machine needs installed."""

    service_type: ServiceType
    version: str

    model_config = ConfigDict(frozen=True)


class StackExport(BaseModel):
    """Portable stack document. Ids are never carried over."""

    schema_version: int = STACK_SCHEMA_VERSION
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    services: List[ServiceExport] = Field(default_factory=list)
    domains: List[DomainExport] = Field(default_factory=list)
    requirements: List[Requirement] = Field(default_factory=list)


# ============================================
# Import results
# ============================================

class ConflictKind(str, Enum):
    NAME_EXISTS = "name_exists"
    PORT_IN_USE = "port_in_use"
    DOMAIN_EXISTS = "domain_exists"
    UNSUPPORTED_SCHEMA_VERSION = "unsupported_schema_version"


@dataclass
class ImportConflict:
    kind: ConflictKind
    subject: str
    message: str


@dataclass
class ImportPreview:
    stack_name: str
    services: int
    domains: int
    conflicts: List[ImportConflict] = field(default_factory=list)
    missing_binaries: List[Requirement] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.conflicts


@dataclass
class ImportResult:
    stack: Stack
    instances_created: List[Instance] = field(default_factory=list)
    domains_created: List[Domain] = field(default_factory=list)


@dataclass
class MemberResult:
    instance_id: UUID
    name: str
    success: bool
    error: Optional[str] = None
