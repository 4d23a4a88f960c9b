"""Event models for the orchestration engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class OrchestratorEvent:
    """Base orchestrator event."""

    event_type: str
    subject_id: str
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def build(event_type: str, subject_id: Any, metadata: Optional[Dict[str, Any]] = None):
        return OrchestratorEvent(
            event_type=event_type,
            subject_id=str(subject_id),
            timestamp=datetime.now(timezone.utc),
            metadata=metadata or {},
        )

    @staticmethod
    def instance_started(instance):
        """Instance reached RUNNING."""
        return OrchestratorEvent.build(
            "instance.started",
            instance.id,
            {
                "name": instance.name,
                "pid": instance.pid,
                "port": instance.port,
                "healthy": instance.healthy,
            },
        )

    @staticmethod
    def instance_stopped(instance):
        return OrchestratorEvent.build(
            "instance.stopped", instance.id, {"name": instance.name}
        )

    @staticmethod
    def instance_crashed(instance):
        """Running instance whose process disappeared."""
        return OrchestratorEvent.build(
            "instance.crashed", instance.id, {"name": instance.name}
        )

    @staticmethod
    def instance_health_changed(instance):
        return OrchestratorEvent.build(
            "instance.health_changed",
            instance.id,
            {"name": instance.name, "healthy": instance.healthy},
        )

    @staticmethod
    def domain_created(domain):
        return OrchestratorEvent.build(
            "domain.created",
            domain.id,
            {
                "full_domain": domain.full_domain,
                "target_type": domain.target_type.value,
                "target_value": domain.target_value,
            },
        )

    @staticmethod
    def domain_deleted(domain):
        return OrchestratorEvent.build(
            "domain.deleted", domain.id, {"full_domain": domain.full_domain}
        )
