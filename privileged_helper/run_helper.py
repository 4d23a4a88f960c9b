# privileged_helper/run_helper.py
"""Run the privileged helper on its Unix socket (must run as root)."""

import logging
import os
import socket
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import uvicorn

from privileged_helper.config import HelperSettings
from privileged_helper.server import create_app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def bind_socket(settings: HelperSettings) -> socket.socket:
    """
    Create the listening socket so only the configured client can connect:
    mode 0600, owned by the client uid.
    """
    path = settings.socket_path
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists() or path.is_symlink():
        path.unlink()

    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    old_umask = os.umask(0o177)
    try:
        sock.bind(str(path))
    finally:
        os.umask(old_umask)

    os.chmod(path, 0o600)
    if settings.client_uid is not None:
        gid = settings.client_gid if settings.client_gid is not None else -1
        os.chown(path, settings.client_uid, gid)

    sock.listen(16)
    return sock


def main():
    """Main entry point."""
    settings = HelperSettings()

    if settings.client_uid is None:
        logger.warning("ORCH_HELPER_CLIENT_UID is not set; only root can reach the helper")

    logger.info(f"Starting Privileged Helper on {settings.socket_path}")

    sock = bind_socket(settings)
    config = uvicorn.Config(create_app(settings), log_level="info")
    server = uvicorn.Server(config)

    try:
        server.run(sockets=[sock])
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        sock.close()
        settings.socket_path.unlink(missing_ok=True)


if __name__ == "__main__":
    main()
