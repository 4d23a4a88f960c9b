# orchestration_engine/supervisor/launchers.py
"""
Process launchers.

DirectProcessLauncher spawns the service binary itself.
ExternalSupervisorLauncher hands the process to pm2 and asks pm2 for
its pid and status.
"""

import json
import logging
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from orchestration_engine.core.errors import BinaryMissing, ProcessSpawnFailed

logger = logging.getLogger(__name__)


@dataclass
class LaunchSpec:
    """Everything needed to spawn one instance process."""
    name: str
    binary: Path
    args: List[str]
    cwd: Path
    log_file: Path
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def command(self) -> List[str]:
        return [str(self.binary), *self.args]


class ProcessLauncher(ABC):
    @abstractmethod
    def is_available(self, binary: Path) -> bool:
        """Whether the binary (and any supervisor it needs) is installed."""
        raise NotImplementedError

    @abstractmethod
    def spawn(self, spec: LaunchSpec) -> int:
        """Start the process and return its pid. Raises ProcessSpawnFailed."""
        raise NotImplementedError

    @abstractmethod
    def is_alive(self, pid: int, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def terminate(self, pid: int, name: str, grace_seconds: float) -> None:
        """Graceful stop, force-kill after the grace period."""
        raise NotImplementedError


# ============================================
# DIRECT SPAWN
# ============================================

class DirectProcessLauncher(ProcessLauncher):
    def __init__(self):
        self._children: Dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def is_available(self, binary: Path) -> bool:
        return Path(binary).is_file()

    def spawn(self, spec: LaunchSpec) -> int:
        spec.log_file.parent.mkdir(parents=True, exist_ok=True)
        spec.cwd.mkdir(parents=True, exist_ok=True)

        logger.info(f"[{spec.name}] Spawning: {' '.join(spec.command)}")

        try:
            with open(spec.log_file, "ab") as log:
                process = subprocess.Popen(
                    spec.command,
                    cwd=spec.cwd,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    env=spec.env or None,
                    start_new_session=True,
                )
        except FileNotFoundError as e:
            raise BinaryMissing(f"{spec.binary} not found") from e
        except OSError as e:
            raise ProcessSpawnFailed(f"Failed to spawn {spec.name}: {e}") from e

        with self._lock:
            self._children[process.pid] = process

        return process.pid

    def is_alive(self, pid: int, name: str) -> bool:
        with self._lock:
            child = self._children.get(pid)

        if child is not None:
            # poll() also reaps the child so it does not linger as a zombie
            return child.poll() is None

        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def terminate(self, pid: int, name: str, grace_seconds: float) -> None:
        try:
            process = psutil.Process(pid)
            process.terminate()
            try:
                process.wait(timeout=grace_seconds)
            except psutil.TimeoutExpired:
                logger.warning(
                    f"[{name}] Did not exit within {grace_seconds}s, sending SIGKILL"
                )
                process.kill()
                process.wait(timeout=grace_seconds)
        except psutil.NoSuchProcess:
            logger.debug(f"[{name}] Process {pid} already gone")
        finally:
            with self._lock:
                child = self._children.pop(pid, None)
            if child is not None:
                child.poll()


# ============================================
# EXTERNAL SUPERVISOR (pm2)
# ============================================

class ExternalSupervisorLauncher(ProcessLauncher):
    def __init__(self, executable: str = "pm2", timeout: float = 30.0):
        self.executable = executable
        self.timeout = timeout

    def is_available(self, binary: Path) -> bool:
        return shutil.which(self.executable) is not None and Path(binary).exists()

    def spawn(self, spec: LaunchSpec) -> int:
        spec.log_file.parent.mkdir(parents=True, exist_ok=True)
        spec.cwd.mkdir(parents=True, exist_ok=True)

        # Stale entries with the same name make pm2 refuse to start
        self._run(["delete", spec.name], check=False)
        self._run(
            [
                "start", str(spec.binary),
                "--name", spec.name,
                "--cwd", str(spec.cwd),
                "--output", str(spec.log_file),
                "--error", str(spec.log_file),
                "--no-autorestart",
                "--", *spec.args,
            ],
            check=True,
        )

        entry = self._find(spec.name)
        if not entry or not entry.get("pid"):
            raise ProcessSpawnFailed(f"pm2 did not report a pid for {spec.name}")

        return int(entry["pid"])

    def is_alive(self, pid: int, name: str) -> bool:
        entry = self._find(name)
        if not entry:
            return False
        status = entry.get("pm2_env", {}).get("status")
        return status == "online" and int(entry.get("pid") or 0) == pid

    def terminate(self, pid: int, name: str, grace_seconds: float) -> None:
        self._run(["delete", name], check=False)

    # -------------------------
    # pm2 CLI
    # -------------------------

    def list_processes(self) -> List[dict]:
        result = self._run(["jlist"], check=True)
        try:
            return json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise ProcessSpawnFailed(f"Unreadable pm2 process list: {e}") from e

    def _find(self, name: str) -> Optional[dict]:
        for entry in self.list_processes():
            if entry.get("name") == name:
                return entry
        return None

    def _run(self, args: List[str], check: bool) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                [self.executable, *args],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise BinaryMissing(f"{self.executable} is not installed") from e
        except subprocess.TimeoutExpired as e:
            raise ProcessSpawnFailed(
                f"{self.executable} {args[0]} timed out after {self.timeout}s"
            ) from e

        if check and result.returncode != 0:
            raise ProcessSpawnFailed(
                f"{self.executable} {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}"
            )
        return result
