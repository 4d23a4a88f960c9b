# orchestration_engine/core/state_machine.py

from orchestration_engine.core.errors import InvalidStateTransition
from orchestration_engine.core.models import Instance, InstanceState


ALLOWED_TRANSITIONS = {
    InstanceState.STOPPED: {
        InstanceState.STARTING,
    },
    InstanceState.STARTING: {
        InstanceState.RUNNING,
        InstanceState.STOPPED,
    },
    InstanceState.RUNNING: {
        InstanceState.STOPPING,
        InstanceState.CRASHED,
    },
    InstanceState.STOPPING: {
        InstanceState.STOPPED,
    },
    InstanceState.CRASHED: {
        InstanceState.STARTING,
        InstanceState.STOPPED,
    },
}

# States that may be written to the snapshot
PERSISTED_STATES = {
    InstanceState.STOPPED,
    InstanceState.RUNNING,
    InstanceState.CRASHED,
}


class InstanceStateMachine:
    @staticmethod
    def can_transition(current: InstanceState, new_state: InstanceState) -> bool:
        return new_state in ALLOWED_TRANSITIONS.get(current, set())

    @staticmethod
    def transition(
        instance: Instance,
        new_state: InstanceState,
        *,
        pid: int | None = None,
    ) -> Instance:
        current = instance.state

        if current == new_state:
            return instance

        if not InstanceStateMachine.can_transition(current, new_state):
            raise InvalidStateTransition(
                f"Cannot transition {instance.name} from {current.value} to {new_state.value}"
            )

        # pid semantics: present iff RUNNING
        if new_state == InstanceState.RUNNING:
            if pid is None:
                raise InvalidStateTransition(
                    f"Cannot mark {instance.name} running without a pid"
                )
            instance.pid = pid

        elif new_state == InstanceState.STARTING:
            instance.pid = None
            instance.healthy = None

        elif new_state == InstanceState.CRASHED:
            instance.pid = None
            instance.healthy = False

        elif new_state == InstanceState.STOPPED:
            instance.pid = None
            instance.healthy = None

        instance.state = new_state
        return instance
