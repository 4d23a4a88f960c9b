# orchestration_engine/trust/certificates.py
"""Read-only certificate inspection shared by the orchestrator and the helper."""

import logging
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

logger = logging.getLogger(__name__)

NOT_FOUND = "not_found"


@dataclass
class CertInfo:
    exists: bool
    name: Optional[str] = None
    expiry: Optional[datetime] = None

    def to_wire(self) -> str:
        """'not_found' or 'exists|<name>|<expiry>'."""
        if not self.exists:
            return NOT_FOUND
        expiry = self.expiry.isoformat() if self.expiry else ""
        return f"exists|{self.name or ''}|{expiry}"

    @staticmethod
    def from_wire(value: str) -> "CertInfo":
        if value == NOT_FOUND:
            return CertInfo(exists=False)

        parts = value.split("|", 2)
        if len(parts) != 3 or parts[0] != "exists":
            raise ValueError(f"Malformed certificate info: {value!r}")

        expiry = datetime.fromisoformat(parts[2]) if parts[2] else None
        return CertInfo(exists=True, name=parts[1] or None, expiry=expiry)


def load_certificate(path: Path) -> x509.Certificate:
    """Raises FileNotFoundError / PermissionError from the read."""
    return x509.load_pem_x509_certificate(Path(path).read_bytes())


def read_cert_info(path: Path) -> CertInfo:
    """
    Certificate name and expiry.

    A missing file gives CertInfo(exists=False). PermissionError is left
    to the caller, which decides whether to ask the privileged helper.
    """
    try:
        cert = load_certificate(path)
    except FileNotFoundError:
        return CertInfo(exists=False)

    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    name = common_names[0].value if common_names else cert.subject.rfc4514_string()
    return CertInfo(exists=True, name=name, expiry=cert.not_valid_after_utc)


def fingerprint(cert: x509.Certificate) -> bytes:
    return cert.fingerprint(hashes.SHA256())


def is_ca_trusted(
    cert_path: Path,
    system_bundle: Path,
    platform: str = sys.platform,
    timeout: float = 10.0,
) -> bool:
    """
    Query the OS trust store without modifying it.

    macOS asks `security verify-cert`; elsewhere the certificate is
    looked up by fingerprint in the system CA bundle.
    """
    cert_path = Path(cert_path)
    if not cert_path.exists():
        return False

    if platform == "darwin":
        try:
            result = subprocess.run(
                ["security", "verify-cert", "-c", str(cert_path), "-p", "ssl", "-l"],
                capture_output=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Trust query failed for {cert_path}: {e}")
            return False
        return result.returncode == 0

    return bundle_contains(cert_path, system_bundle)


def bundle_contains(cert_path: Path, bundle_path: Path) -> bool:
    try:
        wanted = fingerprint(load_certificate(cert_path))
        bundle = x509.load_pem_x509_certificates(Path(bundle_path).read_bytes())
    except FileNotFoundError:
        return False
    except ValueError as e:
        logger.warning(f"Unreadable CA bundle {bundle_path}: {e}")
        return False

    return any(fingerprint(cert) == wanted for cert in bundle)
