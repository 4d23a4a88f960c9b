#tests\test_state_machine.py

"""Test instance state transitions."""

import pytest

from orchestration_engine.core.errors import InvalidStateTransition
from orchestration_engine.core.models import Instance, InstanceState, ServiceType
from orchestration_engine.core.state_machine import InstanceStateMachine


class TestInstanceStateMachine:
    """Test the instance lifecycle."""

    @pytest.fixture
    def instance(self):
        """Create a stopped instance."""
        return Instance(
            name="redis-main",
            service_type=ServiceType.REDIS,
            version="7.2",
            port=6379,
        )

    # -------------------------
    # HAPPY PATH
    # -------------------------

    def test_initial_state(self, instance):
        """Test instance starts STOPPED without a pid."""
        assert instance.state == InstanceState.STOPPED
        assert instance.pid is None
        assert instance.healthy is None

    def test_full_lifecycle(self, instance):
        """Test STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED."""
        InstanceStateMachine.transition(instance, InstanceState.STARTING)
        InstanceStateMachine.transition(instance, InstanceState.RUNNING, pid=1234)

        assert instance.running
        assert instance.pid == 1234

        InstanceStateMachine.transition(instance, InstanceState.STOPPING)
        InstanceStateMachine.transition(instance, InstanceState.STOPPED)

        assert instance.state == InstanceState.STOPPED
        assert instance.pid is None

    def test_crash_clears_pid(self, instance):
        """Test RUNNING -> CRASHED drops the pid and marks unhealthy."""
        InstanceStateMachine.transition(instance, InstanceState.STARTING)
        InstanceStateMachine.transition(instance, InstanceState.RUNNING, pid=99)
        instance.healthy = True

        InstanceStateMachine.transition(instance, InstanceState.CRASHED)

        assert instance.state == InstanceState.CRASHED
        assert instance.pid is None
        assert instance.healthy is False

    def test_crashed_can_restart(self, instance):
        """Test CRASHED -> STARTING is allowed."""
        InstanceStateMachine.transition(instance, InstanceState.STARTING)
        InstanceStateMachine.transition(instance, InstanceState.RUNNING, pid=99)
        InstanceStateMachine.transition(instance, InstanceState.CRASHED)

        assert InstanceStateMachine.can_transition(InstanceState.CRASHED, InstanceState.STARTING)
        InstanceStateMachine.transition(instance, InstanceState.STARTING)
        assert instance.state == InstanceState.STARTING

    def test_same_state_is_noop(self, instance):
        """Test transitioning to the current state changes nothing."""
        InstanceStateMachine.transition(instance, InstanceState.STOPPED)
        assert instance.state == InstanceState.STOPPED

    # -------------------------
    # REJECTED TRANSITIONS
    # -------------------------

    def test_stopped_to_running_rejected(self, instance):
        """Test instances cannot skip STARTING."""
        with pytest.raises(InvalidStateTransition):
            InstanceStateMachine.transition(instance, InstanceState.RUNNING, pid=1)

    def test_running_requires_pid(self, instance):
        """Test RUNNING without a pid is rejected."""
        InstanceStateMachine.transition(instance, InstanceState.STARTING)

        with pytest.raises(InvalidStateTransition):
            InstanceStateMachine.transition(instance, InstanceState.RUNNING)

    def test_stopping_to_running_rejected(self, instance):
        """Test STOPPING only leads to STOPPED."""
        InstanceStateMachine.transition(instance, InstanceState.STARTING)
        InstanceStateMachine.transition(instance, InstanceState.RUNNING, pid=5)
        InstanceStateMachine.transition(instance, InstanceState.STOPPING)

        assert not InstanceStateMachine.can_transition(InstanceState.STOPPING, InstanceState.RUNNING)
        with pytest.raises(InvalidStateTransition):
            InstanceStateMachine.transition(instance, InstanceState.CRASHED)
