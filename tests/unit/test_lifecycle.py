"""
Unit tests for the lifecycle controller (guardian/backup/lifecycle.py).
"""

from pathlib import Path

import pytest

from guardian.approval import STOP_UNIT, UNSAFE_BACKUP
from guardian.backup.lifecycle import (
    BackupCancelled,
    LifecycleController,
    LifecycleError,
    LifecycleTimeout,
    UnitState,
    state_from_runtime,
)
from guardian.backup.runtime import RuntimeCommandError, RuntimeTimeout


@pytest.fixture
def controller(fake_runtime, approver, no_sleep):
    return LifecycleController(fake_runtime, approver, stop_timeout=30, sleep=no_sleep)


def start_session(controller, name='jellyfin'):
    unit = controller.inspect(name, Path('/opt') / name)
    return controller.begin(unit)


class TestStateMapping:

    @pytest.mark.parametrize('status,state', [
        ('running', UnitState.RUNNING),
        ('exited', UnitState.STOPPED),
        ('created', UnitState.STOPPED),
        ('restarting', UnitState.STARTING),
        ('not_found', UnitState.NOT_FOUND),
        ('paused', UnitState.UNKNOWN),
        (None, UnitState.UNKNOWN),
    ])
    def test_state_from_runtime(self, status, state):
        assert state_from_runtime(status) is state


class TestQuiesce:

    def test_running_unit_is_stopped_after_approval(self, controller, fake_runtime, approver):
        session = start_session(controller)

        controller.quiesce(session)

        assert approver.actions == [STOP_UNIT]
        assert fake_runtime.called('stop') == [('stop', 'jellyfin', 30)]
        assert session.was_running
        assert session.stopped_by_controller
        assert fake_runtime.states['jellyfin'] == 'exited'
        assert session.transitions == ['running', 'stopping', 'stopped']

    def test_declined_stop_cancels_without_touching_unit(self, controller, fake_runtime, approver):
        approver.answer = False
        session = start_session(controller)

        with pytest.raises(BackupCancelled):
            controller.quiesce(session)

        assert fake_runtime.called('stop') == []
        assert session.approvals == {STOP_UNIT: False}

    def test_stop_disabled_flags_unsafe_backup(self, fake_runtime, approver, no_sleep):
        controller = LifecycleController(fake_runtime, approver, stop_for_backup=False, sleep=no_sleep)
        session = start_session(controller)

        controller.quiesce(session)

        assert approver.actions == [UNSAFE_BACKUP]
        assert session.unsafe
        assert fake_runtime.called('stop') == []

    def test_stopped_unit_needs_no_approval(self, controller, fake_runtime, approver):
        fake_runtime.states['jellyfin'] = 'exited'
        session = start_session(controller)

        controller.quiesce(session)

        assert approver.questions == []
        assert not session.stop_issued
        assert not session.was_running

    def test_unreadable_state_is_fatal(self, controller, fake_runtime, approver):
        fake_runtime.states['jellyfin'] = 'unknown'
        session = start_session(controller)

        with pytest.raises(LifecycleError, match='Cannot determine state'):
            controller.quiesce(session)

        assert approver.questions == []
        assert fake_runtime.called('stop') == []
        assert not session.unsafe

    def test_stop_timeout_is_fatal(self, controller, fake_runtime):
        fake_runtime.stop_error = RuntimeTimeout('no answer')
        session = start_session(controller)

        with pytest.raises(LifecycleTimeout):
            controller.quiesce(session)

        assert session.stop_issued
        assert not session.stopped_by_controller

    def test_stop_timeout_is_tolerated_if_unit_stopped_anyway(self, controller, fake_runtime):
        def slow_stop(name, timeout):
            fake_runtime.states[name] = 'exited'
            raise RuntimeTimeout('late')

        fake_runtime.stop = slow_stop
        session = start_session(controller)

        controller.quiesce(session)

        assert session.stopped_by_controller

    def test_stop_not_observed_raises(self, controller, fake_runtime):
        fake_runtime.stop_leaves_running = True
        session = start_session(controller)

        with pytest.raises(LifecycleError):
            controller.quiesce(session)

    def test_state_is_rechecked_after_failed_stop_command(self, controller, fake_runtime):
        fake_runtime.stop_error = RuntimeCommandError('daemon said no')
        session = start_session(controller)

        with pytest.raises(LifecycleError):
            controller.quiesce(session)

        assert fake_runtime.called('get_state')[-1] == ('get_state', 'jellyfin')
        assert len(fake_runtime.called('get_state')) == 2

    def test_settle_delay_after_stop(self, fake_runtime, approver, no_sleep):
        controller = LifecycleController(fake_runtime, approver, stop_settle_seconds=2, sleep=no_sleep)

        controller.quiesce(start_session(controller))

        assert no_sleep.delays == [2]


class TestRestore:

    def test_restart_after_stop(self, controller, fake_runtime):
        session = start_session(controller)
        controller.quiesce(session)

        controller.restore(session)

        assert fake_runtime.called('start') == [('start', 'jellyfin')]
        assert session.restart_attempted
        assert session.restart_succeeded is True
        assert session.post_run_status == 'running'

    def test_no_restart_when_controller_did_not_stop(self, controller, fake_runtime):
        fake_runtime.states['jellyfin'] = 'exited'
        session = start_session(controller)
        controller.quiesce(session)

        controller.restore(session)

        assert fake_runtime.called('start') == []
        assert not session.restart_attempted
        assert fake_runtime.states['jellyfin'] == 'exited'

    def test_failed_restart_is_recorded_not_raised(self, controller, fake_runtime):
        session = start_session(controller)
        controller.quiesce(session)
        fake_runtime.start_error = RuntimeCommandError('port in use')

        controller.restore(session)

        assert session.restart_succeeded is False
        assert session.post_run_status == 'exited'

    def test_restart_attempted_after_stop_timeout(self, controller, fake_runtime):
        fake_runtime.stop_error = RuntimeTimeout('no answer')
        fake_runtime.stop_leaves_running = True
        session = start_session(controller)
        with pytest.raises(LifecycleTimeout):
            controller.quiesce(session)

        controller.restore(session)

        assert session.restart_attempted
        assert session.restart_succeeded is True
        assert fake_runtime.called('start') == []

    def test_session_to_dict(self, controller):
        session = start_session(controller)
        controller.quiesce(session)
        controller.restore(session)

        data = session.to_dict()

        assert data['pre_run_state'] == 'running'
        assert data['was_running'] is True
        assert data['stopped_by_controller'] is True
        assert data['restart_succeeded'] is True
        assert data['approvals'] == {STOP_UNIT: True}
