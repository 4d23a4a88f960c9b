# orchestration_engine/supervisor/monitor.py
"""
Health Monitor - periodic health sweep over running instances.

Crash detection happens here, on the timer, rather than through
OS process-exit notifications.
"""

import logging
import threading
from typing import Dict, Optional
from uuid import UUID

from orchestration_engine.core.repository import StateStore
from orchestration_engine.supervisor.supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Background thread that health-checks every running instance.

    - Checks every `check_interval` seconds
    - Dead processes are reconciled to CRASHED by the supervisor
    - Probe timeouts leave health unknown
    """

    def __init__(
        self,
        store: StateStore,
        supervisor: ServiceSupervisor,
        check_interval: float = 10.0,
    ):
        self._store = store
        self._supervisor = supervisor
        self.check_interval = check_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="health-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"🏥 Health monitor started (interval {self.check_interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Health monitor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.check_cycle()
            except Exception as e:
                logger.error(f"Error in health check cycle: {e}", exc_info=True)

            self._stop_event.wait(self.check_interval)

    def check_cycle(self) -> Dict[UUID, Optional[bool]]:
        """Single sweep. Returns instance id -> healthy."""
        results: Dict[UUID, Optional[bool]] = {}
        running = [i for i in self._store.list_instances() if i.running]

        if not running:
            logger.debug("No running instances to check")
            return results

        logger.debug(f"Checking health of {len(running)} instance(s)")

        for instance in running:
            if self._stop_event.is_set():
                break
            try:
                results[instance.id] = self._supervisor.health_check(instance.id)
            except Exception as e:
                logger.error(f"[{instance.name}] Health check error: {e}")

        return results
