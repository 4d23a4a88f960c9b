# orchestration_engine/helper/protocol.py
"""
Privileged helper wire protocol.

A closed set of request kinds, each a pydantic model discriminated by
`kind`. Adding a privileged capability means adding a new kind here;
the helper never interprets free-form commands.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from orchestration_engine.trust.certificates import CertInfo


PROTOCOL_VERSION = 1


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ============================================
# REQUESTS
# ============================================

class PingRequest(_Request):
    kind: Literal["ping"] = "ping"


class GetCertInfoRequest(_Request):
    kind: Literal["get_cert_info"] = "get_cert_info"
    cert_path: str = Field(..., min_length=1)


class IsCaddyCATrustedRequest(_Request):
    kind: Literal["is_caddy_ca_trusted"] = "is_caddy_ca_trusted"
    cert_path: str = Field(..., min_length=1)


class TrustCARequest(_Request):
    kind: Literal["trust_ca"] = "trust_ca"
    cert_path: str = Field(..., min_length=1)


class InstallResolverRequest(_Request):
    kind: Literal["install_resolver"] = "install_resolver"
    tld: str = Field(..., min_length=2, max_length=63)
    dns_port: int = Field(..., ge=1, le=65535)


class UninstallResolverRequest(_Request):
    kind: Literal["uninstall_resolver"] = "uninstall_resolver"
    tld: str = Field(..., min_length=2, max_length=63)


class InstallDaemonRequest(_Request):
    kind: Literal["install_daemon"] = "install_daemon"
    label: str = Field(..., min_length=1, max_length=128)
    definition: str = Field(..., min_length=1, description="launchd plist or systemd unit content")


class UninstallDaemonRequest(_Request):
    kind: Literal["uninstall_daemon"] = "uninstall_daemon"
    label: str = Field(..., min_length=1, max_length=128)


class RestartDaemonRequest(_Request):
    kind: Literal["restart_daemon"] = "restart_daemon"
    label: str = Field(..., min_length=1, max_length=128)


class FixDataPermissionsRequest(_Request):
    kind: Literal["fix_data_permissions"] = "fix_data_permissions"
    path: str = Field(..., min_length=1)


class SetupPrivilegedDirectoryRequest(_Request):
    kind: Literal["setup_privileged_directory"] = "setup_privileged_directory"
    path: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1, max_length=32)


HelperRequest = Annotated[
    Union[
        PingRequest,
        GetCertInfoRequest,
        IsCaddyCATrustedRequest,
        TrustCARequest,
        InstallResolverRequest,
        UninstallResolverRequest,
        InstallDaemonRequest,
        UninstallDaemonRequest,
        RestartDaemonRequest,
        FixDataPermissionsRequest,
        SetupPrivilegedDirectoryRequest,
    ],
    Field(discriminator="kind"),
]

# Every other kind is safe to repeat
NON_IDEMPOTENT_KINDS = {"restart_daemon"}


class HelperEnvelope(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = PROTOCOL_VERSION
    request: HelperRequest


# ============================================
# RESPONSES
# ============================================

class FailureReason(str, Enum):
    INVALID_REQUEST = "invalid_request"
    UNSUPPORTED_VERSION = "unsupported_version"
    PATH_NOT_ALLOWED = "path_not_allowed"
    INVALID_USERNAME = "invalid_username"
    INVALID_LABEL = "invalid_label"
    NOT_FOUND = "not_found"
    COMMAND_FAILED = "command_failed"
    UNSUPPORTED_PLATFORM = "unsupported_platform"


class HelperFailure(BaseModel):
    reason: FailureReason
    message: str


class PongPayload(BaseModel):
    kind: Literal["pong"] = "pong"
    version: int = PROTOCOL_VERSION


class CertInfoPayload(BaseModel):
    kind: Literal["cert_info"] = "cert_info"
    exists: bool
    name: Optional[str] = None
    expiry: Optional[datetime] = None

    @property
    def wire(self) -> str:
        return self.to_cert_info().to_wire()

    def to_cert_info(self) -> CertInfo:
        return CertInfo(exists=self.exists, name=self.name, expiry=self.expiry)

    @staticmethod
    def from_cert_info(info: CertInfo) -> "CertInfoPayload":
        return CertInfoPayload(exists=info.exists, name=info.name, expiry=info.expiry)


class TrustPayload(BaseModel):
    kind: Literal["trust"] = "trust"
    trusted: bool


class AckPayload(BaseModel):
    kind: Literal["ack"] = "ack"
    message: str = "ok"


HelperPayload = Annotated[
    Union[PongPayload, CertInfoPayload, TrustPayload, AckPayload],
    Field(discriminator="kind"),
]


class HelperResponse(BaseModel):
    ok: bool
    payload: Optional[HelperPayload] = None
    error: Optional[HelperFailure] = None

    @staticmethod
    def success(payload) -> "HelperResponse":
        return HelperResponse(ok=True, payload=payload)

    @staticmethod
    def failure(reason: FailureReason, message: str) -> "HelperResponse":
        return HelperResponse(ok=False, error=HelperFailure(reason=reason, message=message))
