# orchestration_engine/routing/proxy.py
"""Reverse-proxy daemon control."""

import logging
import os
import subprocess
import sys
from typing import Callable

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import ProxyReloadFailed
from orchestration_engine.routing.templates import (
    LAUNCHD_PLIST,
    SYSTEMD_UNIT,
    resolve_template,
)

logger = logging.getLogger(__name__)


class ProxyController:
    """
    Signals the proxy to pick up new configuration.

    With a caddy binary configured, `caddy reload` swaps the config
    gracefully through the admin API. Without one, the main Caddyfile is
    touched for a proxy running with --watch.
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self._settings = settings
        self._runner = runner

    def reload(self) -> None:
        caddyfile = self._settings.caddyfile_path

        if self._settings.caddy_binary is None:
            try:
                os.utime(caddyfile, None)
            except OSError as e:
                raise ProxyReloadFailed(
                    f"Cannot touch {caddyfile}: {e}", config_written=True
                ) from e
            logger.debug(f"Touched {caddyfile} for watch-mode reload")
            return

        command = [
            str(self._settings.caddy_binary),
            "reload",
            "--config", str(caddyfile),
            "--adapter", "caddyfile",
            "--address", self._settings.caddy_admin,
        ]

        try:
            result = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self._settings.proxy_reload_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProxyReloadFailed(
                f"caddy reload timed out after {self._settings.proxy_reload_timeout}s",
                config_written=True,
            ) from e
        except OSError as e:
            raise ProxyReloadFailed(f"Cannot run caddy: {e}", config_written=True) from e

        if result.returncode != 0:
            raise ProxyReloadFailed(
                f"caddy reload failed: {(result.stderr or result.stdout).strip()}",
                config_written=True,
            )

        logger.info("✅ Proxy configuration reloaded")

    def daemon_definition(self, platform: str = sys.platform) -> str:
        """launchd plist (macOS) or systemd unit (Linux) running caddy in watch mode."""
        variables = {
            "label": self._settings.proxy_daemon_label,
            "caddy": self._settings.caddy_binary or "caddy",
            "caddyfile": self._settings.caddyfile_path,
            "data_dir": self._settings.resolved_caddy_data_dir,
            "log": self._settings.logs_dir / "caddy.log",
        }
        template = LAUNCHD_PLIST if platform == "darwin" else SYSTEMD_UNIT
        return resolve_template(template, variables)
