# orchestration_engine/trust/manager.py
"""Certificate Trust Manager - reports whether the proxy's local CA exists and is trusted."""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import (
    CertificateNotFound,
    CertificateNotTrusted,
    HelperError,
)
from orchestration_engine.helper.bridge import PrivilegedHelperBridge
from orchestration_engine.trust import certificates

logger = logging.getLogger(__name__)


@dataclass
class TrustStatus:
    ca_exists: bool
    is_trusted: bool
    ca_path: str
    cert_name: Optional[str] = None
    expiry: Optional[datetime] = None
    # Set when the CA file is there but cannot be parsed
    problem: Optional[str] = None


class CertificateTrustManager:
    """
    Reads CA material directly where it can and asks the privileged
    helper where it cannot. It never changes trust by itself.
    """

    def __init__(self, settings: OrchestratorSettings, bridge: PrivilegedHelperBridge):
        self._settings = settings
        self._bridge = bridge

    @property
    def ca_path(self) -> Path:
        return self._settings.ca_cert_path

    def ca_exists(self) -> bool:
        try:
            os.stat(self.ca_path)
        except FileNotFoundError:
            return False
        except PermissionError:
            # Parent directory not traversable; the file may still be there
            return True
        return True

    def get_trust_status(self) -> TrustStatus:
        """
        Raises:
            HelperUnavailable / HelperTimeout: direct read denied and the
                helper cannot be reached
        """
        path = self.ca_path

        try:
            info = certificates.read_cert_info(path)
        except PermissionError:
            logger.info(f"CA at {path} is not readable, asking privileged helper")
            info = self._bridge.get_cert_info(path)
            trusted = info.exists and self._bridge.is_ca_trusted(path)
            return self._status(info, trusted)
        except ValueError as e:
            logger.warning(f"CA at {path} is not a PEM certificate: {e}")
            return TrustStatus(
                ca_exists=True,
                is_trusted=False,
                ca_path=str(path),
                problem=f"Not a PEM certificate: {e}",
            )

        if not info.exists:
            return self._status(info, False)

        return self._status(info, self._query_trust(path))

    def require_trusted(self) -> TrustStatus:
        status = self.get_trust_status()
        if not status.ca_exists:
            raise CertificateNotFound(f"Local CA not found at {status.ca_path}")
        if status.problem:
            raise CertificateNotTrusted(f"Local CA at {status.ca_path} is unusable: {status.problem}")
        if not status.is_trusted:
            raise CertificateNotTrusted(
                f"Local CA '{status.cert_name}' is not trusted by the system; "
                f"browsers will show certificate warnings"
            )
        return status

    def trust_ca(self) -> str:
        """User-consented trust, performed by the helper."""
        if not self.ca_exists():
            raise CertificateNotFound(f"Local CA not found at {self.ca_path}")
        return self._bridge.trust_ca(self.ca_path)

    def _query_trust(self, path: Path) -> bool:
        try:
            return self._bridge.is_ca_trusted(path)
        except HelperError as e:
            logger.debug(f"Helper trust query unavailable ({e}), checking locally")
            return certificates.is_ca_trusted(path, self._settings.system_ca_bundle)

    def _status(self, info: certificates.CertInfo, trusted: bool) -> TrustStatus:
        return TrustStatus(
            ca_exists=info.exists,
            is_trusted=trusted,
            ca_path=str(self.ca_path),
            cert_name=info.name,
            expiry=info.expiry,
        )
