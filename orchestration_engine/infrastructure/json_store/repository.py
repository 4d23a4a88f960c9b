# orchestration_engine/infrastructure/json_store/repository.py
"""Durable state store: whole-registry JSON snapshot, atomically replaced."""

import logging
import os
import tempfile
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from orchestration_engine.core.errors import PersistenceFailed
from orchestration_engine.core.models import SCHEMA_VERSION, Registry
from orchestration_engine.infrastructure.memory.repository import InMemoryStateStore

logger = logging.getLogger(__name__)

REGISTRY_ADAPTER = TypeAdapter(Registry)


def load_registry(path: Path) -> Registry:
    """
    Load a snapshot from disk.

    Unknown fields are ignored and missing fields take their defaults, so
    snapshots written by older or newer versions still load.
    """
    if not path.exists():
        logger.info(f"No state file at {path}, starting with an empty registry")
        return Registry()

    try:
        registry = REGISTRY_ADAPTER.validate_json(path.read_bytes())
    except OSError as e:
        raise PersistenceFailed(f"Cannot read state file {path}: {e}") from e
    except ValidationError as e:
        raise PersistenceFailed(f"State file {path} is corrupt: {e}") from e

    if registry.schema_version > SCHEMA_VERSION:
        logger.warning(
            f"State file {path} has schema version {registry.schema_version}, "
            f"newer than supported {SCHEMA_VERSION}; unknown fields are ignored"
        )

    return registry


class JsonFileStateStore(InMemoryStateStore):
    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(load_registry(self.path))

    def _persist(self, registry: Registry) -> None:
        registry.schema_version = SCHEMA_VERSION
        data = REGISTRY_ADAPTER.dump_json(registry, indent=2)

        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                dir=self.path.parent,
            )
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(f"❌ Failed to write state snapshot {self.path}: {e}")
            raise PersistenceFailed(f"Cannot write state file {self.path}: {e}") from e
