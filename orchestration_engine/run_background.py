# orchestration_engine/run_background.py
"""Run the background services: DNS responder, health monitor and park watcher."""

import logging
import signal
import sys
import threading

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.container import build_container
from orchestration_engine.core.errors import PortInUse

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    settings = OrchestratorSettings()
    container = build_container(settings)
    stop_event = threading.Event()

    def signal_handler(sig, frame):
        """Handle Ctrl+C gracefully."""
        logger.info("🛑 Shutting down background services...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info("=" * 80)
    logger.info("🚀 LOCAL SERVICE ORCHESTRATOR")
    logger.info("=" * 80)
    logger.info(f"Data dir: {settings.data_dir}")
    logger.info(f"TLD: .{settings.tld}")
    logger.info(f"DNS: {settings.dns_address}:{settings.dns_port}")
    logger.info(f"Health interval: {settings.health_interval}s")
    logger.info(f"Park refresh interval: {settings.park_refresh_interval}s")
    logger.info("")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 80)

    # Processes that died while we were not watching
    crashed = container.supervisor.reconcile_all()
    if crashed:
        logger.warning(f"Reconciled {len(crashed)} crashed instance(s) on startup")

    try:
        container.orchestrator.dns_start()
    except PortInUse as e:
        logger.error(f"❌ {e}")
        sys.exit(1)

    container.monitor.start()
    container.park_watcher.start()

    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        container.park_watcher.stop()
        container.monitor.stop()
        container.orchestrator.dns_stop()
        logger.info("Stopped")


if __name__ == "__main__":
    main()
