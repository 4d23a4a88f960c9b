# orchestration_engine/supervisor/health.py
"""Protocol-level health probes and port helpers."""

import logging
import socket
from typing import Iterable, Optional

import requests

from orchestration_engine.services.catalog import HealthCheck, HealthCheckKind

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


class HealthProber:
    """
    Answers healthy / unhealthy / unknown for a service port.

    True: the service answered. False: connection refused or server error.
    None: the probe timed out, so health cannot be told.
    """

    def probe(self, check: HealthCheck, port: int, timeout: float) -> Optional[bool]:
        if check.kind == HealthCheckKind.HTTP:
            return self._http_check(port, check.path, timeout)
        if check.kind == HealthCheckKind.TCP:
            return self._tcp_check(port, timeout)
        return None

    def _http_check(self, port: int, path: str, timeout: float) -> Optional[bool]:
        url = f"http://{LOOPBACK}:{port}{path}"
        try:
            response = requests.get(url, timeout=timeout)
            return response.status_code < 500
        except requests.exceptions.Timeout:
            logger.debug(f"HTTP health check timed out: {url}")
            return None
        except requests.exceptions.ConnectionError:
            return False
        except requests.exceptions.RequestException as e:
            logger.debug(f"HTTP health check error for {url}: {e}")
            return False

    def _tcp_check(self, port: int, timeout: float) -> Optional[bool]:
        try:
            with socket.create_connection((LOOPBACK, port), timeout=timeout):
                return True
        except socket.timeout:
            return None
        except OSError:
            return False


# -------------------------
# Ports
# -------------------------

def is_port_free(port: int, host: str = LOOPBACK) -> bool:
    """Whether a TCP listener could bind host:port right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


def next_free_port(start: int, taken: Iterable[int], limit: int = 1000) -> Optional[int]:
    """First port >= start not in `taken`, or None after `limit` attempts."""
    taken = set(taken)
    for port in range(start, min(start + limit, 65536)):
        if port not in taken:
            return port
    return None
