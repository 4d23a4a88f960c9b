# orchestration_engine/helper/bridge.py
"""Privileged helper client: marshals requests over the helper's Unix socket."""

import logging
import threading
from pathlib import Path
from typing import Optional, Type, TypeVar

import httpx
from pydantic import ValidationError

from orchestration_engine.core.errors import (
    HelperBusy,
    HelperRequestFailed,
    HelperTimeout,
    HelperUnavailable,
)
from orchestration_engine.helper.protocol import (
    NON_IDEMPOTENT_KINDS,
    AckPayload,
    CertInfoPayload,
    FixDataPermissionsRequest,
    GetCertInfoRequest,
    HelperEnvelope,
    HelperResponse,
    InstallDaemonRequest,
    InstallResolverRequest,
    IsCaddyCATrustedRequest,
    PingRequest,
    PongPayload,
    RestartDaemonRequest,
    SetupPrivilegedDirectoryRequest,
    TrustCARequest,
    TrustPayload,
    UninstallDaemonRequest,
    UninstallResolverRequest,
)
from orchestration_engine.trust.certificates import CertInfo

logger = logging.getLogger(__name__)

P = TypeVar("P")

REQUESTS_PATH = "/v1/requests"


class PrivilegedHelperBridge:
    """
    Client for the privileged helper.

    One request is in flight at a time. Up to `queue_size` further callers
    wait their turn; beyond that HelperBusy is raised instead of queueing
    without bound.
    """

    def __init__(
        self,
        socket_path: Path,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        queue_size: int = 4,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize bridge.

        Args:
            socket_path: Unix socket the helper listens on
            connect_timeout: Seconds to wait for the connection
            read_timeout: Seconds to wait for a reply
            queue_size: Callers allowed to wait behind the in-flight request
            transport: Override for the socket transport (tests)
        """
        self.socket_path = Path(socket_path)
        self.timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._transport = transport
        self._inflight = threading.Lock()
        self._slots = threading.BoundedSemaphore(queue_size + 1)

    # ============================================
    # TYPED OPERATIONS
    # ============================================

    def ping(self) -> PongPayload:
        return self._expect(self.send(PingRequest()), PongPayload)

    def is_available(self) -> bool:
        try:
            self.ping()
            return True
        except (HelperUnavailable, HelperTimeout, HelperRequestFailed) as e:
            logger.debug(f"[helper] Not available: {e}")
            return False

    def get_cert_info(self, cert_path: Path) -> CertInfo:
        payload = self.send(GetCertInfoRequest(cert_path=str(cert_path)))
        return self._expect(payload, CertInfoPayload).to_cert_info()

    def is_ca_trusted(self, cert_path: Path) -> bool:
        payload = self.send(IsCaddyCATrustedRequest(cert_path=str(cert_path)))
        return self._expect(payload, TrustPayload).trusted

    def trust_ca(self, cert_path: Path) -> str:
        return self._ack(TrustCARequest(cert_path=str(cert_path)))

    def install_resolver(self, tld: str, dns_port: int) -> str:
        return self._ack(InstallResolverRequest(tld=tld, dns_port=dns_port))

    def uninstall_resolver(self, tld: str) -> str:
        return self._ack(UninstallResolverRequest(tld=tld))

    def install_daemon(self, label: str, definition: str) -> str:
        return self._ack(InstallDaemonRequest(label=label, definition=definition))

    def uninstall_daemon(self, label: str) -> str:
        return self._ack(UninstallDaemonRequest(label=label))

    def restart_daemon(self, label: str) -> str:
        return self._ack(RestartDaemonRequest(label=label))

    def fix_data_permissions(self, path: Path) -> str:
        return self._ack(FixDataPermissionsRequest(path=str(path)))

    def setup_privileged_directory(self, path: Path, username: str) -> str:
        return self._ack(SetupPrivilegedDirectoryRequest(path=str(path), username=username))

    # ============================================
    # TRANSPORT
    # ============================================

    def send(self, request):
        """
        Send one request and return its success payload.

        Raises:
            HelperUnavailable: helper not installed or not listening
            HelperBusy: request queue full
            HelperTimeout: no reply within the read timeout (after one retry)
            HelperRequestFailed: helper replied with a failure reason
        """
        if self._transport is None and not self.socket_path.exists():
            raise HelperUnavailable(
                f"Privileged helper is not installed (no socket at {self.socket_path})"
            )

        if not self._slots.acquire(blocking=False):
            raise HelperBusy("Privileged helper request queue is full")

        try:
            with self._inflight:
                try:
                    return self._send_once(request)
                except HelperTimeout:
                    if request.kind in NON_IDEMPOTENT_KINDS:
                        raise
                    logger.warning(f"[helper] {request.kind} timed out, retrying once")
                    return self._send_once(request)
        finally:
            self._slots.release()

    def _client(self) -> httpx.Client:
        transport = self._transport or httpx.HTTPTransport(uds=str(self.socket_path))
        return httpx.Client(
            transport=transport,
            base_url="http://helper",
            timeout=self.timeout,
        )

    def _send_once(self, request):
        envelope = HelperEnvelope(request=request)

        try:
            with self._client() as client:
                response = client.post(
                    REQUESTS_PATH,
                    content=envelope.model_dump_json(),
                    headers={"content-type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise HelperTimeout(
                f"Privileged helper did not answer {request.kind} within {self.timeout.read}s"
            ) from e
        except httpx.TransportError as e:
            raise HelperUnavailable(f"Cannot connect to privileged helper: {e}") from e

        if response.status_code == 422:
            raise HelperRequestFailed("invalid_request", response.text)

        if response.status_code != 200:
            raise HelperRequestFailed(
                "command_failed",
                f"Helper returned HTTP {response.status_code}: {response.text}",
            )

        try:
            parsed = HelperResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise HelperRequestFailed("invalid_response", str(e)) from e

        if not parsed.ok:
            error = parsed.error
            reason = error.reason.value if error else "command_failed"
            message = error.message if error else "unknown failure"
            logger.error(f"[helper] ❌ {request.kind} failed: {reason}: {message}")
            raise HelperRequestFailed(reason, message)

        return parsed.payload

    def _ack(self, request) -> str:
        return self._expect(self.send(request), AckPayload).message

    @staticmethod
    def _expect(payload, payload_type: Type[P]) -> P:
        if not isinstance(payload, payload_type):
            raise HelperRequestFailed(
                "invalid_response",
                f"Expected {payload_type.__name__}, got {type(payload).__name__}",
            )
        return payload
