# orchestration_engine/routing/caddy.py
"""Caddy configuration rendering: one unit file per domain plus a main Caddyfile."""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import ProxyReloadFailed
from orchestration_engine.core.models import Domain
from orchestration_engine.routing.templates import (
    ERROR_PAGE,
    MAIN_CADDYFILE,
    PROXY_BLOCK,
    STATIC_BLOCK,
    resolve_template,
)

logger = logging.getLogger(__name__)

UNIT_SUFFIX = ".caddy"


@dataclass
class Route:
    """A domain resolved to what the proxy should do with it."""
    domain: Domain
    upstream_port: Optional[int] = None
    static_root: Optional[str] = None
    tls: bool = False

    @property
    def filename(self) -> str:
        return f"{self.domain.full_domain}{UNIT_SUFFIX}"


def _error_page(title: str, body: str) -> str:
    html = resolve_template(ERROR_PAGE, {"title": title, "body": body})
    return html.replace("`", "\\`")


class CaddyRenderer:
    def __init__(self, settings: OrchestratorSettings):
        self._settings = settings

    # -------------------------
    # Rendering (pure)
    # -------------------------

    def main_caddyfile(self) -> str:
        admin = self._settings.caddy_admin if self._settings.caddy_binary else "off"
        return resolve_template(
            MAIN_CADDYFILE,
            {
                "admin": admin,
                "ca_name": self._settings.ca_name,
                "access_log": self._settings.logs_dir / "caddy-access.log",
                "tld": self._settings.tld,
            },
        )

    def domain_unit(self, route: Route) -> str:
        header = f"# Route: {route.domain.id}\n"
        schemes = ["http", "https"] if route.tls else ["http"]
        blocks = [self._block(route, scheme) for scheme in schemes]
        return header + "\n".join(blocks)

    def render(self, routes: List[Route]) -> Dict[str, str]:
        """Filename -> unit content, ordered by domain name."""
        ordered = sorted(routes, key=lambda r: r.domain.full_domain)
        return {route.filename: self.domain_unit(route) for route in ordered}

    def _block(self, route: Route, scheme: str) -> str:
        domain = route.domain.full_domain
        variables = {
            "scheme": scheme,
            "domain": domain,
            "tls": "    tls internal\n" if scheme == "https" else "",
        }

        if route.static_root is not None:
            variables.update(
                root=route.static_root,
                error_404=_error_page(
                    "Not Found",
                    f"The requested page on <code>{domain}</code> could not be found.",
                ),
            )
            return resolve_template(STATIC_BLOCK, variables)

        port = route.upstream_port
        public_port = (
            self._settings.proxy_https_port if scheme == "https" else self._settings.proxy_http_port
        )
        variables.update(
            port=port,
            public_port=public_port,
            error_502=_error_page(
                "Service Not Running",
                f"Could not connect to <code>127.0.0.1:{port}</code> for {domain}.",
            ),
            error_503=_error_page(
                "Service Unavailable",
                f"The service at <code>127.0.0.1:{port}</code> is temporarily unavailable.",
            ),
            error_504=_error_page(
                "Gateway Timeout",
                f"Request to <code>127.0.0.1:{port}</code> timed out.",
            ),
        )
        return resolve_template(PROXY_BLOCK, variables)

    # -------------------------
    # Writing (staged)
    # -------------------------

    def write(self, units: Dict[str, str]) -> None:
        """
        Replace the whole configuration.

        Units are written into a staging directory that is swapped in by
        rename once complete, so a failure leaves the previous
        configuration untouched. Stale unit files vanish with the swap.
        """
        caddy_dir = self._settings.caddy_dir
        domains_dir = self._settings.domains_dir
        staging = None
        retired = None

        try:
            caddy_dir.mkdir(parents=True, exist_ok=True)
            self._settings.logs_dir.mkdir(parents=True, exist_ok=True)

            staging = Path(tempfile.mkdtemp(prefix=".domains-", dir=caddy_dir))
            for filename, content in units.items():
                (staging / filename).write_text(content)

            main_tmp = caddy_dir / ".Caddyfile.tmp"
            main_tmp.write_text(self.main_caddyfile())

            if domains_dir.exists():
                retired = caddy_dir / f".domains-old-{os.getpid()}"
                if retired.exists():
                    shutil.rmtree(retired)
                os.rename(domains_dir, retired)

            try:
                os.rename(staging, domains_dir)
            except OSError:
                if retired is not None:
                    os.rename(retired, domains_dir)
                    retired = None
                raise
            staging = None

            os.replace(main_tmp, self._settings.caddyfile_path)
        except OSError as e:
            logger.error(f"❌ Failed to write proxy configuration: {e}")
            raise ProxyReloadFailed(f"Cannot write proxy configuration: {e}") from e
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)
            if retired is not None:
                shutil.rmtree(retired, ignore_errors=True)

        logger.info(f"Wrote {len(units)} domain unit(s) to {domains_dir}")

    def current_units(self) -> List[str]:
        domains_dir = self._settings.domains_dir
        if not domains_dir.exists():
            return []
        return sorted(p.name for p in domains_dir.glob(f"*{UNIT_SUFFIX}"))
