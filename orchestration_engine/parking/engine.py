# orchestration_engine/parking/engine.py
"""
Parking Engine - one domain per child directory of a watched parent.

Derived domains are created and retracted through the Domain Router only,
so uniqueness checks and proxy rendering stay in one place.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from orchestration_engine.config import OrchestratorSettings
from orchestration_engine.core.errors import (
    AlreadyExists,
    NotFound,
    ValidationFailed,
)
from orchestration_engine.core.events import EventEmitter, NullEventEmitter
from orchestration_engine.core.events_model import OrchestratorEvent
from orchestration_engine.core.models import (
    Domain,
    DomainSource,
    DomainTargetType,
    ParkedDirectory,
    Registry,
)
from orchestration_engine.core.repository import StateStore
from orchestration_engine.core.validation import slugify, validate_port
from orchestration_engine.parking.projects import (
    ProjectType,
    detect_project_type,
    scan_directory,
)
from orchestration_engine.routing.router import DomainRouter

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass
class ParkStatus:
    """
    parked: the path is a project inside a parked parent.
    is_parked_parent: the path itself is a parked directory.
    """
    parked: bool
    is_parked_parent: bool = False
    parked_path: Optional[str] = None
    subdomain: Optional[str] = None
    full_domain: Optional[str] = None
    project_type: Optional[ProjectType] = None


def normalize_path(path) -> str:
    return str(Path(path).expanduser().resolve())


class ParkingEngine:
    def __init__(
        self,
        store: StateStore,
        router: DomainRouter,
        settings: OrchestratorSettings,
        events: Optional[EventEmitter] = None,
    ):
        self._store = store
        self._router = router
        self._settings = settings
        self._events = events or NullEventEmitter()
        # One refresh at a time; park/forget/watcher may race otherwise
        self._lock = threading.RLock()

    # ============================================
    # PARK / FORGET
    # ============================================

    def park(
        self,
        path,
        ssl_enabled: bool = False,
        target_port: Optional[int] = None,
    ) -> ParkedDirectory:
        resolved = normalize_path(path)
        if not Path(resolved).is_dir():
            raise ValidationFailed(f"{resolved} is not a directory")

        port = self._settings.park_port if target_port is None else target_port
        validate_port(port, allow_privileged=True)

        with self._lock:
            existing = self._store.find_parked_directory(resolved)
            if existing is not None:
                logger.info(f"{resolved} is already parked")
                return existing

            parked = ParkedDirectory(
                path=resolved,
                target_port=port,
                ssl_enabled=ssl_enabled,
            )
            self._store.put_parked_directory(parked)
            logger.info(f"✅ Parked {resolved} -> 127.0.0.1:{port}")
            self._events.emit([
                OrchestratorEvent.build("park.added", parked.id, {"path": resolved})
            ])

            self.refresh(resolved)

        return self._store.get_parked_directory(parked.id)

    def forget(self, path) -> ParkedDirectory:
        resolved = normalize_path(path)

        with self._lock:
            parked = self._store.find_parked_directory(resolved)
            if parked is None:
                raise NotFound(f"{resolved} is not parked")

            removed = self._router.delete_domains_for_parked(parked.id)
            self._store.delete_parked_directory(parked.id)

        logger.info(f"Forgot {resolved} ({len(removed)} domain(s) retracted)")
        self._events.emit([
            OrchestratorEvent.build(
                "park.removed",
                parked.id,
                {"path": resolved, "domains": [d.full_domain for d in removed]},
            )
        ])
        return parked

    # ============================================
    # REFRESH
    # ============================================

    def refresh(self, path, cancel: Optional[threading.Event] = None) -> SyncResult:
        resolved = normalize_path(path)

        with self._lock:
            parked = self._store.find_parked_directory(resolved)
            if parked is None:
                raise NotFound(f"{resolved} is not parked")
            return self._sync(parked, cancel)

    def refresh_all(self, cancel: Optional[threading.Event] = None) -> Dict[str, SyncResult]:
        results = {}
        for parked in self._store.list_parked_directories():
            if cancel is not None and cancel.is_set():
                break
            if not parked.enabled:
                continue
            try:
                results[parked.path] = self.refresh(parked.path, cancel)
            except NotFound:
                # Forgotten between listing and refreshing
                continue
        return results

    def _sync(self, parked: ParkedDirectory, cancel: Optional[threading.Event]) -> SyncResult:
        result = SyncResult()
        parent = Path(parked.path)

        if not parent.is_dir():
            # Parent vanished: every derived domain goes
            logger.warning(f"Parked directory {parked.path} no longer exists")
            desired: Dict[str, str] = {}
        else:
            desired = self._desired_subdomains(parent, result)

        snapshot = self._store.snapshot()
        current = {d.subdomain: d for d in snapshot.domains_for_parked(parked.id)}
        to_add, to_remove = self._plan(snapshot, desired, current, result)

        kept = (set(current) - set(to_remove)) | set(to_add)
        derived = sorted(self._router.full_domain(s) for s in kept)
        record = snapshot.parked_directories.get(parked.id)
        cache_stale = record is not None and record.derived_domains != derived

        if not to_add and not to_remove and not cache_stale:
            logger.debug(f"Parked {parked.path}: nothing to do")
            return result

        previous_derived = list(record.derived_domains) if record is not None else None
        created, deleted = self._apply(parked, to_add, to_remove, cancel, result)

        if created or deleted:
            def undo(registry: Registry) -> None:
                for domain in created:
                    registry.domains.pop(domain.id, None)
                for domain in deleted:
                    registry.domains[domain.id] = domain
                restored = registry.parked_directories.get(parked.id)
                if restored is not None and previous_derived is not None:
                    restored.derived_domains = previous_derived

            self._router.render_or_undo(undo)

            self._events.emit(
                [OrchestratorEvent.domain_created(d) for d in created]
                + [OrchestratorEvent.domain_deleted(d) for d in deleted]
            )

        self._events.emit([
            OrchestratorEvent.build(
                "park.refreshed",
                parked.id,
                {"added": result.added, "removed": result.removed},
            )
        ])
        logger.info(
            f"Refreshed {parked.path}: +{len(result.added)} -{len(result.removed)} "
            f"={len(result.unchanged)} conflicts={len(result.conflicts)}"
        )
        return result

    def _desired_subdomains(self, parent: Path, result: SyncResult) -> Dict[str, str]:
        """Subdomain -> directory name for every child worth a domain."""
        desired: Dict[str, str] = {}
        try:
            children = scan_directory(parent)
        except OSError as e:
            result.errors.append(f"Cannot list {parent}: {e}")
            return desired

        for child in children:
            subdomain = slugify(child.name)
            if not subdomain:
                result.errors.append(f"{child.name}: no usable domain label")
                continue
            if subdomain in desired:
                result.errors.append(
                    f"{child.name}: label '{subdomain}' already taken by {desired[subdomain]}"
                )
                continue
            desired[subdomain] = child.name
        return desired

    def _plan(
        self,
        registry: Registry,
        desired: Dict[str, str],
        current: Dict[str, Domain],
        result: SyncResult,
    ) -> Tuple[List[str], List[str]]:
        to_add = []
        for subdomain in sorted(desired):
            if subdomain in current:
                result.unchanged.append(self._router.full_domain(subdomain))
                continue
            full = self._router.full_domain(subdomain)
            if registry.find_domain(full) is not None:
                result.conflicts.append(full)
                continue
            to_add.append(subdomain)

        to_remove = sorted(s for s in current if s not in desired)
        return to_add, to_remove

    def _apply(
        self,
        parked: ParkedDirectory,
        to_add: List[str],
        to_remove: List[str],
        cancel: Optional[threading.Event],
        result: SyncResult,
    ) -> Tuple[List[Domain], List[Domain]]:
        created: List[Domain] = []
        deleted: List[Domain] = []

        with self._store.transaction() as registry:
            for subdomain in to_remove:
                if cancel is not None and cancel.is_set():
                    result.cancelled = True
                    break
                full = self._router.full_domain(subdomain)
                removed = self._router.remove_domains(
                    registry,
                    lambda d: d.parked_dir_id == parked.id and d.subdomain == subdomain,
                )
                deleted.extend(removed)
                if removed:
                    result.removed.append(full)

            for subdomain in to_add:
                if cancel is not None and cancel.is_set():
                    result.cancelled = True
                    break
                try:
                    domain = self._router.add_domain(
                        registry,
                        subdomain,
                        DomainTargetType.PORT,
                        parked.target_port,
                        ssl_enabled=parked.ssl_enabled,
                        source=DomainSource.PARKED,
                        parked_dir_id=parked.id,
                    )
                except AlreadyExists:
                    result.conflicts.append(self._router.full_domain(subdomain))
                    continue
                except ValidationFailed as e:
                    result.errors.append(f"{subdomain}: {e}")
                    continue
                created.append(domain)
                result.added.append(domain.full_domain)

            record = registry.parked_directories.get(parked.id)
            if record is not None:
                record.derived_domains = sorted(
                    d.full_domain for d in registry.domains_for_parked(parked.id)
                )

        if result.cancelled:
            logger.warning(f"Refresh of {parked.path} cancelled")

        return created, deleted

    # ============================================
    # STATUS (read-only)
    # ============================================

    def status(self, path) -> ParkStatus:
        resolved = Path(normalize_path(path))
        registry = self._store.snapshot()

        parked_paths = {p.path: p for p in registry.parked_directories.values()}
        is_parent = str(resolved) in parked_paths

        parent = parked_paths.get(str(resolved.parent))
        if parent is None:
            return ParkStatus(
                parked=False,
                is_parked_parent=is_parent,
                parked_path=str(resolved) if is_parent else None,
            )

        subdomain = slugify(resolved.name)
        full_domain = None
        if subdomain:
            domain = registry.find_domain(self._router.full_domain(subdomain))
            if domain is not None and domain.parked_dir_id == parent.id:
                full_domain = domain.full_domain

        return ParkStatus(
            parked=full_domain is not None,
            is_parked_parent=is_parent,
            parked_path=parent.path,
            subdomain=subdomain or None,
            full_domain=full_domain,
            project_type=detect_project_type(resolved) if resolved.is_dir() else None,
        )


class ParkWatcher:
    """Background thread re-scanning every parked directory on a timer."""

    def __init__(self, engine: ParkingEngine, interval: float = 30.0):
        self._engine = engine
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="park-watcher",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Park watcher started (interval {self.interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Park watcher stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._engine.refresh_all(cancel=self._stop_event)
            except Exception as e:
                logger.error(f"Error refreshing parked directories: {e}", exc_info=True)

            self._stop_event.wait(self.interval)
