#orchestration_engine\core\validation.py
import re
import unicodedata
from typing import Iterable

from orchestration_engine.core.errors import ValidationFailed


INSTANCE_NAME_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9_-]*[A-Za-z0-9])?$")
DNS_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
TLD_RE = re.compile(r"^[a-z0-9]{2,63}$")
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")

MIN_INSTANCE_PORT = 1024
MAX_PORT = 65535


# -------------------------
# Slugs
# -------------------------

def slugify(name: str) -> str:
    """
    Turn a display name into a DNS-safe label.

    "My API" -> "my-api", "Test_Server 123" -> "test-server-123"
    """
    value = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-z0-9]+", "-", value.lower())
    return value.strip("-")[:63].strip("-")


def unique_slug(name: str, taken: Iterable[str]) -> str:
    """Slugify and append -2, -3, ... until the label is free."""
    taken = set(taken)
    base = slugify(name)
    if base not in taken:
        return base

    counter = 2
    while f"{base}-{counter}" in taken:
        counter += 1
    return f"{base}-{counter}"


# -------------------------
# Names / labels
# -------------------------

def validate_instance_name(name: str) -> None:
    if not name:
        raise ValidationFailed("Instance name cannot be empty")

    if len(name) > 64:
        raise ValidationFailed("Instance name cannot exceed 64 characters")

    if not INSTANCE_NAME_RE.match(name):
        raise ValidationFailed(
            "Instance name must contain only letters, digits, hyphens and "
            "underscores, and must start and end with a letter or digit"
        )


def validate_subdomain(subdomain: str) -> None:
    """Validate a (possibly multi-level) subdomain like 'api' or 'app.shop'."""
    if not subdomain:
        raise ValidationFailed("Domain name cannot be empty")

    if len(subdomain) > 253:
        raise ValidationFailed("Domain name cannot exceed 253 characters")

    for label in subdomain.split("."):
        if not label:
            raise ValidationFailed(
                f"Domain name '{subdomain}' has an empty label"
            )
        if len(label) > 63:
            raise ValidationFailed(f"Domain label '{label}' exceeds 63 characters")
        if not DNS_LABEL_RE.match(label):
            raise ValidationFailed(
                f"Domain label '{label}' is invalid: use lowercase letters, "
                f"digits and hyphens, starting and ending with a letter or digit"
            )


def validate_tld(tld: str) -> None:
    if not TLD_RE.match(tld or ""):
        raise ValidationFailed(
            f"TLD '{tld}' must be 2-63 lowercase letters or digits"
        )


# -------------------------
# Ports
# -------------------------

def validate_port(port: int, *, allow_privileged: bool = False) -> None:
    if not isinstance(port, int) or isinstance(port, bool):
        raise ValidationFailed(f"Port must be an integer, got {port!r}")

    if port <= 0 or port > MAX_PORT:
        raise ValidationFailed(f"Port {port} is out of range 1-{MAX_PORT}")

    if not allow_privileged and port < MIN_INSTANCE_PORT:
        raise ValidationFailed(
            f"Port {port} is below {MIN_INSTANCE_PORT}; privileged ports are not allowed"
        )


# -------------------------
# Privileged inputs
# -------------------------

def validate_username(username: str) -> None:
    if not username:
        raise ValidationFailed("Username cannot be empty")

    if "/" in username or "\0" in username:
        raise ValidationFailed("Username contains invalid characters")

    if len(username) > 32 or not USERNAME_RE.match(username):
        raise ValidationFailed(f"Invalid username: {username!r}")
