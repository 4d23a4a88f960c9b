# privileged_helper/handlers.py
"""
Request handlers for the privileged helper.

Each handler validates every argument it was given before touching the
system, and reports failure as a typed reason instead of an exit code.
"""

import logging
import os
import pwd
import re
import shutil
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, List

from orchestration_engine.core.errors import ValidationFailed
from orchestration_engine.core.validation import validate_tld, validate_username
from orchestration_engine.dns.responder import resolver_file_content
from orchestration_engine.helper.protocol import (
    AckPayload,
    CertInfoPayload,
    FailureReason,
    FixDataPermissionsRequest,
    GetCertInfoRequest,
    HelperResponse,
    InstallDaemonRequest,
    InstallResolverRequest,
    IsCaddyCATrustedRequest,
    PongPayload,
    RestartDaemonRequest,
    SetupPrivilegedDirectoryRequest,
    TrustCARequest,
    TrustPayload,
    UninstallDaemonRequest,
    UninstallResolverRequest,
)
from orchestration_engine.trust import certificates
from privileged_helper.config import HelperSettings

logger = logging.getLogger(__name__)

LABEL_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

SUPPORTED_PLATFORMS = ("darwin", "linux")


class HandlerFailure(Exception):
    """Raised inside a handler; becomes a failure response."""

    def __init__(self, reason: FailureReason, message: str):
        self.reason = reason
        self.message = message
        super().__init__(message)


class HelperHandlers:
    def __init__(
        self,
        settings: HelperSettings,
        platform: str = sys.platform,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self._settings = settings
        self._platform = platform
        self._runner = runner
        # System changes are applied one at a time
        self._lock = threading.Lock()

        self._handlers = {
            "ping": self.ping,
            "get_cert_info": self.get_cert_info,
            "is_caddy_ca_trusted": self.is_caddy_ca_trusted,
            "trust_ca": self.trust_ca,
            "install_resolver": self.install_resolver,
            "uninstall_resolver": self.uninstall_resolver,
            "install_daemon": self.install_daemon,
            "uninstall_daemon": self.uninstall_daemon,
            "restart_daemon": self.restart_daemon,
            "fix_data_permissions": self.fix_data_permissions,
            "setup_privileged_directory": self.setup_privileged_directory,
        }

    def handle(self, request) -> HelperResponse:
        handler = self._handlers.get(request.kind)
        if handler is None:
            return HelperResponse.failure(
                FailureReason.INVALID_REQUEST, f"Unsupported request kind: {request.kind}"
            )

        logger.info(f"[helper] Handling {request.kind}")
        try:
            with self._lock:
                payload = handler(request)
        except HandlerFailure as e:
            logger.warning(f"[helper] ❌ {request.kind}: {e.reason.value}: {e.message}")
            return HelperResponse.failure(e.reason, e.message)
        except Exception as e:
            logger.error(f"[helper] ❌ {request.kind} crashed: {e}", exc_info=True)
            return HelperResponse.failure(FailureReason.COMMAND_FAILED, str(e))

        return HelperResponse.success(payload)

    # ============================================
    # CERTIFICATES
    # ============================================

    def ping(self, request) -> PongPayload:
        return PongPayload()

    def get_cert_info(self, request: GetCertInfoRequest) -> CertInfoPayload:
        path = self._allowed_path(request.cert_path)
        try:
            info = certificates.read_cert_info(path)
        except ValueError as e:
            raise HandlerFailure(FailureReason.COMMAND_FAILED, f"Not a PEM certificate: {e}")
        return CertInfoPayload.from_cert_info(info)

    def is_caddy_ca_trusted(self, request: IsCaddyCATrustedRequest) -> TrustPayload:
        path = self._allowed_path(request.cert_path)
        trusted = certificates.is_ca_trusted(
            path,
            self._settings.system_ca_bundle,
            platform=self._platform,
            timeout=self._settings.command_timeout,
        )
        return TrustPayload(trusted=trusted)

    def trust_ca(self, request: TrustCARequest) -> AckPayload:
        path = self._allowed_path(request.cert_path)
        if not path.exists():
            raise HandlerFailure(FailureReason.NOT_FOUND, f"Certificate {path} not found")

        self._require_platform()

        if certificates.is_ca_trusted(
            path,
            self._settings.system_ca_bundle,
            platform=self._platform,
            timeout=self._settings.command_timeout,
        ):
            return AckPayload(message="CA already trusted")

        if self._platform == "darwin":
            self._run([
                "security", "add-trusted-cert",
                "-d",
                "-r", "trustRoot",
                "-k", str(self._settings.system_keychain),
                str(path),
            ])
        else:
            target_dir = self._settings.ca_install_dir
            target_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target_dir / "orchestrator-local-ca.crt")
            self._run(["update-ca-certificates"])

        return AckPayload(message="CA trusted")

    # ============================================
    # RESOLVER
    # ============================================

    def install_resolver(self, request: InstallResolverRequest) -> AckPayload:
        tld = self._valid_tld(request.tld)
        self._require_platform()

        if self._platform == "darwin":
            resolver_dir = self._settings.resolver_dir
            resolver_dir.mkdir(parents=True, exist_ok=True)
            (resolver_dir / tld).write_text(resolver_file_content(request.dns_port))
        else:
            conf_dir = self._settings.resolved_conf_dir
            conf_dir.mkdir(parents=True, exist_ok=True)
            (conf_dir / f"{tld}.conf").write_text(
                f"[Resolve]\nDNS=127.0.0.1:{request.dns_port}\nDomains=~{tld}\n"
            )
            self._run(["systemctl", "restart", "systemd-resolved"])

        return AckPayload(message=f"Resolver installed for .{tld}")

    def uninstall_resolver(self, request: UninstallResolverRequest) -> AckPayload:
        tld = self._valid_tld(request.tld)
        self._require_platform()

        if self._platform == "darwin":
            (self._settings.resolver_dir / tld).unlink(missing_ok=True)
        else:
            conf = self._settings.resolved_conf_dir / f"{tld}.conf"
            if conf.exists():
                conf.unlink()
                self._run(["systemctl", "restart", "systemd-resolved"])

        return AckPayload(message=f"Resolver uninstalled for .{tld}")

    # ============================================
    # DAEMONS
    # ============================================

    def install_daemon(self, request: InstallDaemonRequest) -> AckPayload:
        label = self._valid_label(request.label)
        self._require_platform()
        unit = self._daemon_file(label)
        unit.parent.mkdir(parents=True, exist_ok=True)

        if self._platform == "darwin":
            # Reinstall: drop the previous definition first
            self._run(["launchctl", "unload", "-w", str(unit)], check=False)
            unit.write_text(request.definition)
            os.chmod(unit, 0o644)
            self._run(["launchctl", "load", "-w", str(unit)])
        else:
            unit.write_text(request.definition)
            os.chmod(unit, 0o644)
            self._run(["systemctl", "daemon-reload"])
            self._run(["systemctl", "enable", "--now", label])

        return AckPayload(message=f"Daemon {label} installed")

    def uninstall_daemon(self, request: UninstallDaemonRequest) -> AckPayload:
        label = self._valid_label(request.label)
        self._require_platform()
        unit = self._daemon_file(label)

        if self._platform == "darwin":
            self._run(["launchctl", "unload", "-w", str(unit)], check=False)
            unit.unlink(missing_ok=True)
        else:
            self._run(["systemctl", "disable", "--now", label], check=False)
            unit.unlink(missing_ok=True)
            self._run(["systemctl", "daemon-reload"])

        return AckPayload(message=f"Daemon {label} uninstalled")

    def restart_daemon(self, request: RestartDaemonRequest) -> AckPayload:
        label = self._valid_label(request.label)
        self._require_platform()

        if not self._daemon_file(label).exists():
            raise HandlerFailure(FailureReason.NOT_FOUND, f"Daemon {label} is not installed")

        if self._platform == "darwin":
            self._run(["launchctl", "kickstart", "-k", f"system/{label}"])
        else:
            self._run(["systemctl", "restart", label])

        return AckPayload(message=f"Daemon {label} restarted")

    # ============================================
    # DIRECTORIES
    # ============================================

    def fix_data_permissions(self, request: FixDataPermissionsRequest) -> AckPayload:
        """Make a data directory written by a root daemon readable again (755)."""
        path = self._allowed_path(request.path)
        if not path.exists():
            return AckPayload(message="Path does not exist yet, nothing to fix")

        os.chmod(path, 0o755)
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                target = os.path.join(root, name)
                if not os.path.islink(target):
                    os.chmod(target, 0o755)

        return AckPayload(message=f"Permissions fixed for {path}")

    def setup_privileged_directory(self, request: SetupPrivilegedDirectoryRequest) -> AckPayload:
        try:
            validate_username(request.username)
        except ValidationFailed as e:
            raise HandlerFailure(FailureReason.INVALID_USERNAME, str(e))

        path = self._allowed_path(request.path)

        try:
            user = pwd.getpwnam(request.username)
        except KeyError:
            raise HandlerFailure(FailureReason.INVALID_USERNAME, f"No such user: {request.username}")

        path.mkdir(parents=True, exist_ok=True)
        stat = path.stat()
        if stat.st_uid == user.pw_uid:
            return AckPayload(message=f"{path} already owned by {request.username}")

        os.chown(path, user.pw_uid, user.pw_gid)
        return AckPayload(message=f"{path} is now owned by {request.username}")

    # ============================================
    # VALIDATION
    # ============================================

    def _allowed_path(self, raw: str) -> Path:
        if "\0" in raw:
            raise HandlerFailure(FailureReason.PATH_NOT_ALLOWED, "Path contains a NUL byte")

        path = Path(raw)
        if not path.is_absolute():
            raise HandlerFailure(FailureReason.PATH_NOT_ALLOWED, f"Path must be absolute: {raw}")

        # Resolve symlinks and '..' before checking the prefix
        resolved = path.resolve()
        for root in self._allowed_roots():
            if resolved == root or resolved.is_relative_to(root):
                return resolved

        raise HandlerFailure(
            FailureReason.PATH_NOT_ALLOWED,
            f"{resolved} is outside the directories the helper may touch",
        )

    def _allowed_roots(self) -> List[Path]:
        return [Path(root).resolve() for root in self._settings.allowed_roots]

    def _valid_label(self, label: str) -> str:
        if not LABEL_RE.match(label) or ".." in label:
            raise HandlerFailure(FailureReason.INVALID_LABEL, f"Invalid daemon label: {label!r}")
        if label not in self._settings.allowed_daemon_labels:
            raise HandlerFailure(
                FailureReason.INVALID_LABEL,
                f"Daemon {label!r} is not managed by the helper",
            )
        return label

    @staticmethod
    def _valid_tld(tld: str) -> str:
        try:
            validate_tld(tld)
        except ValidationFailed as e:
            raise HandlerFailure(FailureReason.INVALID_REQUEST, str(e))
        return tld

    def _require_platform(self) -> None:
        if self._platform not in SUPPORTED_PLATFORMS:
            raise HandlerFailure(
                FailureReason.UNSUPPORTED_PLATFORM,
                f"Platform {self._platform} is not supported",
            )

    def _daemon_file(self, label: str) -> Path:
        if self._platform == "darwin":
            return self._settings.launchd_dir / f"{label}.plist"
        return self._settings.systemd_dir / f"{label}.service"

    def _run(self, command: List[str], check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = self._runner(
                command,
                capture_output=True,
                text=True,
                timeout=self._settings.command_timeout,
            )
        except subprocess.TimeoutExpired:
            raise HandlerFailure(
                FailureReason.COMMAND_FAILED,
                f"{command[0]} timed out after {self._settings.command_timeout}s",
            )
        except OSError as e:
            raise HandlerFailure(FailureReason.COMMAND_FAILED, f"Cannot run {command[0]}: {e}")

        if check and result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise HandlerFailure(
                FailureReason.COMMAND_FAILED,
                f"{' '.join(command[:2])} failed: {output}",
            )
        return result
