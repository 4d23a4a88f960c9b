#privileged_helper\config.py

from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class HelperSettings(BaseSettings):
    """Privileged helper configuration from environment variables (ORCH_HELPER_*)."""

    model_config = SettingsConfigDict(
        env_prefix="ORCH_HELPER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Socket
    socket_path: Path = Path("/var/run/orchestrator-helper.sock")
    client_uid: Optional[int] = None
    client_gid: Optional[int] = None

    # Every path a request names must live under one of these
    allowed_roots: List[Path] = Field(
        default_factory=lambda: [
            Path("/opt/orchestrator"),
            Path("/Library/Application Support/Orchestrator"),
        ]
    )

    # The only daemons install/uninstall/restart may touch
    allowed_daemon_labels: List[str] = Field(
        default_factory=lambda: ["dev.orchestrator.proxy"]
    )

    # System locations
    resolver_dir: Path = Path("/etc/resolver")
    resolved_conf_dir: Path = Path("/etc/systemd/resolved.conf.d")
    launchd_dir: Path = Path("/Library/LaunchDaemons")
    systemd_dir: Path = Path("/etc/systemd/system")
    system_keychain: Path = Path("/Library/Keychains/System.keychain")
    ca_install_dir: Path = Path("/usr/local/share/ca-certificates")
    system_ca_bundle: Path = Path("/etc/ssl/certs/ca-certificates.crt")

    command_timeout: float = 30.0
