# orchestration_engine/core/errors.py

# -----------------------------
# Base Errors
# -----------------------------

class OrchestrationError(Exception):
    """Base class for all orchestration engine errors."""
    pass


# -----------------------------
# Validation / Registry Errors
# -----------------------------

class ValidationFailed(OrchestrationError):
    """Malformed input (invalid label, port out of range, bad config)."""
    pass


class NotFound(OrchestrationError):
    """Unknown id, name or path."""
    pass


class AlreadyExists(OrchestrationError):
    """Duplicate name or domain."""
    pass


class InvalidStateTransition(OrchestrationError):
    """Illegal instance state transition attempted."""
    pass


# -----------------------------
# Process Errors
# -----------------------------

class PortConflict(OrchestrationError):
    def __init__(self, port: int, holder: str | None = None):
        self.port = port
        self.holder = holder
        if holder:
            super().__init__(f"Port {port} is already used by {holder}")
        else:
            super().__init__(f"Port {port} is already in use")


class BinaryMissing(OrchestrationError):
    """Service binary for the selected version is not installed."""
    pass


class ProcessSpawnFailed(OrchestrationError):
    pass


class AlreadyRunning(OrchestrationError):
    pass


class NotRunning(OrchestrationError):
    pass


# -----------------------------
# Routing / Persistence Errors
# -----------------------------

class ProxyReloadFailed(OrchestrationError):
    """
    Proxy configuration could not be written or the proxy refused to reload.

    config_written is True when the new files are on disk and only the
    reload signal failed; the proxy picks them up on its next start.
    """

    def __init__(self, message: str, config_written: bool = False):
        self.config_written = config_written
        super().__init__(message)


class PersistenceFailed(OrchestrationError):
    """State snapshot could not be loaded or written."""
    pass


class PortInUse(OrchestrationError):
    """A listener could not bind its fixed port."""

    def __init__(self, port: int, address: str = "127.0.0.1"):
        self.port = port
        self.address = address
        super().__init__(
            f"Port {port} on {address} is already in use "
            f"(another resolver may be listening)"
        )


# -----------------------------
# Certificate Errors
# -----------------------------

class CertificateNotFound(OrchestrationError):
    pass


class CertificateNotTrusted(OrchestrationError):
    """Informational: the local CA exists but the OS does not trust it."""
    pass


# -----------------------------
# Privileged Helper Errors
# -----------------------------

class HelperError(OrchestrationError):
    pass


class HelperUnavailable(HelperError):
    """Privileged helper is not installed or not running."""
    pass


class HelperBusy(HelperUnavailable):
    """Bridge request queue is full."""
    pass


class HelperTimeout(HelperError):
    """No reply from the helper within the bounded window."""
    pass


class HelperRequestFailed(HelperError):
    """Helper replied with a typed failure reason."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.message = message
        super().__init__(f"{reason}: {message}")
