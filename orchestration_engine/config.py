#orchestration_engine\config.py

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "orchestrator"


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration from environment variables (ORCH_*)."""

    model_config = SettingsConfigDict(
        env_prefix="ORCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Paths
    data_dir: Path = Field(default_factory=_default_data_dir)
    binaries_dir: Optional[Path] = None
    caddy_data_dir: Optional[Path] = None

    # Domains / DNS
    tld: str = "test"
    dns_port: int = 5354
    dns_address: str = "127.0.0.1"
    dns_upstream_host: str = "1.1.1.1"
    dns_upstream_port: int = 53
    dns_upstream_timeout: float = 2.0

    # Reverse proxy
    proxy_http_port: int = 80
    proxy_https_port: int = 443
    caddy_binary: Optional[Path] = None
    caddy_admin: str = "localhost:2019"
    proxy_reload_timeout: float = 10.0
    proxy_daemon_label: str = "dev.orchestrator.proxy"
    ca_name: str = "Orchestrator Local CA"

    # Privileged helper
    helper_socket_path: Path = Path("/var/run/orchestrator-helper.sock")
    helper_connect_timeout: float = 10.0
    helper_read_timeout: float = 30.0
    helper_queue_size: int = 4

    # Supervisor
    spawn_settle_seconds: float = 0.5
    startup_probe_timeout: float = 10.0
    startup_probe_interval: float = 0.25
    health_timeout: float = 2.0
    health_interval: float = 10.0
    stop_grace_seconds: float = 5.0
    external_supervisor_binary: str = "pm2"
    external_supervisor_timeout: float = 30.0

    # Parking / stacks
    park_port: int = 8000
    park_refresh_interval: float = 30.0
    stack_parallelism: int = 8

    # Trust store probe
    system_ca_bundle: Path = Path("/etc/ssl/certs/ca-certificates.crt")

    # -------------------------
    # Derived paths
    # -------------------------

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def resolved_binaries_dir(self) -> Path:
        return self.binaries_dir or self.data_dir / "bin"

    @property
    def instances_dir(self) -> Path:
        return self.data_dir / "instances"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def pids_dir(self) -> Path:
        return self.data_dir / "pids"

    @property
    def caddy_dir(self) -> Path:
        return self.data_dir / "caddy"

    @property
    def caddyfile_path(self) -> Path:
        return self.caddy_dir / "Caddyfile"

    @property
    def domains_dir(self) -> Path:
        return self.caddy_dir / "domains"

    @property
    def resolved_caddy_data_dir(self) -> Path:
        return self.caddy_data_dir or self.caddy_dir / "data"

    @property
    def ca_cert_path(self) -> Path:
        return self.resolved_caddy_data_dir / "caddy" / "pki" / "authorities" / "local" / "root.crt"

    def instance_dir(self, instance_id) -> Path:
        return self.instances_dir / str(instance_id)
