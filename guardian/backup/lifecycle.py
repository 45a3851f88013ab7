"""
Lifecycle control of a managed unit around a backup.

RUNNING -> STOPPING -> STOPPED before compression (when policy allows and
the approver agrees), STOPPED -> STARTING -> RUNNING afterwards. State is
always re-read from the runtime after a command; nothing is assumed.
"""

import enum
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from guardian import log_success
from guardian.approval import STOP_UNIT, UNSAFE_BACKUP
from .runtime import RuntimeCommandError, RuntimeTimeout, STATE_NOT_FOUND


logger = logging.getLogger(__name__)


class UnitState(enum.Enum):
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    STARTING = 'starting'
    NOT_FOUND = 'not_found'
    UNKNOWN = 'unknown'


_RUNTIME_STATES = {
    'running': UnitState.RUNNING,
    'restarting': UnitState.STARTING,
    'removing': UnitState.STOPPING,
    'exited': UnitState.STOPPED,
    'created': UnitState.STOPPED,
    'dead': UnitState.STOPPED,
    STATE_NOT_FOUND: UnitState.NOT_FOUND,
}


def state_from_runtime(status: Optional[str]) -> UnitState:
    return _RUNTIME_STATES.get((status or '').lower(), UnitState.UNKNOWN)


class LifecycleError(Exception):
    """Raised when a unit cannot be brought into the state a backup needs."""
    pass


class LifecycleTimeout(LifecycleError):
    """Raised when a stop request is not acknowledged within the timeout."""
    pass


class BackupCancelled(Exception):
    """Raised when the approver declines a gated transition."""
    pass


@dataclass
class ManagedUnit:
    name: str
    data_root: Path
    runtime_status: str

    @property
    def state(self) -> UnitState:
        return state_from_runtime(self.runtime_status)


@dataclass
class LifecycleSession:
    """What the controller did to one unit during one run."""
    unit: ManagedUnit
    pre_run_status: str
    interactive: bool
    was_running: bool = False
    stop_issued: bool = False
    stopped_by_controller: bool = False
    unsafe: bool = False
    restart_attempted: bool = False
    restart_succeeded: Optional[bool] = None
    post_run_status: Optional[str] = None
    approvals: Dict[str, bool] = field(default_factory=dict)
    transitions: List[str] = field(default_factory=list)

    def record(self, state: UnitState):
        self.transitions.append(state.value)

    def to_dict(self) -> dict:
        return {
            'pre_run_state': self.pre_run_status,
            'was_running': self.was_running,
            'stopped_by_controller': self.stopped_by_controller,
            'unsafe_live_backup': self.unsafe,
            'restart_attempted': self.restart_attempted,
            'restart_succeeded': self.restart_succeeded,
            'post_run_state': self.post_run_status,
            'interactive': self.interactive,
            'approvals': dict(self.approvals),
            'transitions': list(self.transitions),
        }


class LifecycleController:
    """
    Drives a unit through stop / backup / restart.
    """

    def __init__(
        self,
        runtime,
        approver,
        stop_for_backup: bool = True,
        stop_timeout: int = 30,
        stop_settle_seconds: float = 2.0,
        start_settle_seconds: float = 3.0,
        sleep=time.sleep
    ):
        self.runtime = runtime
        self.approver = approver
        self.stop_for_backup = stop_for_backup
        self.stop_timeout = stop_timeout
        self.stop_settle_seconds = stop_settle_seconds
        self.start_settle_seconds = start_settle_seconds
        self._sleep = sleep

    @classmethod
    def from_config(cls, config, runtime, approver, sleep=time.sleep) -> 'LifecycleController':
        return cls(
            runtime,
            approver,
            stop_for_backup=config.stop_for_backup,
            stop_timeout=config.stop_timeout,
            stop_settle_seconds=config.stop_settle_seconds,
            start_settle_seconds=config.start_settle_seconds,
            sleep=sleep
        )

    def inspect(self, name: str, data_root: Path) -> ManagedUnit:
        return ManagedUnit(name=name, data_root=Path(data_root), runtime_status=self.runtime.get_state(name))

    def begin(self, unit: ManagedUnit) -> LifecycleSession:
        session = LifecycleSession(
            unit=unit,
            pre_run_status=unit.runtime_status,
            interactive=getattr(self.approver, 'interactive', False),
            was_running=unit.state is UnitState.RUNNING
        )
        session.record(unit.state)
        return session

    def quiesce(self, session: LifecycleSession):
        """
        Make the unit safe to back up.

        Raises:
            BackupCancelled: If the approver declines stopping / a live backup
            LifecycleTimeout: If the stop request times out and the unit is not stopped
            LifecycleError: If the unit is not observed stopped after the stop request,
                or its state could not be read
        """
        unit = session.unit
        logger.info("Container status: %s", unit.runtime_status)

        if unit.state is UnitState.RUNNING and self.stop_for_backup:
            approved = self.approver.confirm(
                STOP_UNIT,
                f"Container {unit.name} is RUNNING and will be STOPPED for the backup "
                f"(restarted automatically afterwards). Continue with container stop?"
            )
            session.approvals[STOP_UNIT] = approved
            if not approved:
                logger.info("Backup of %s cancelled: stop not approved", unit.name)
                raise BackupCancelled(f"Stop of {unit.name} not approved")
            self._stop(session)

        elif unit.state is UnitState.RUNNING:
            approved = self.approver.confirm(
                UNSAFE_BACKUP,
                f"Container {unit.name} is RUNNING but auto-stop is DISABLED; the backup "
                f"may be inconsistent. Continue backup with running container?"
            )
            session.approvals[UNSAFE_BACKUP] = approved
            if not approved:
                logger.info("Backup of %s cancelled: live backup not approved", unit.name)
                raise BackupCancelled(f"Live backup of {unit.name} not approved")
            session.unsafe = True
            logger.warning("Backing up %s while running, data may be inconsistent", unit.name)

        elif unit.state is UnitState.STOPPED:
            log_success(logger, "Container %s is already stopped, safe to backup", unit.name)

        elif unit.state is UnitState.UNKNOWN:
            raise LifecycleError(f"Cannot determine state of {unit.name} (status: {unit.runtime_status})")

        else:
            logger.info("Container %s status: %s", unit.name, unit.runtime_status)

    def _stop(self, session: LifecycleSession):
        name = session.unit.name
        logger.info("Stopping container %s (timeout %ss)", name, self.stop_timeout)
        session.record(UnitState.STOPPING)
        session.stop_issued = True

        timed_out = False
        try:
            self.runtime.stop(name, self.stop_timeout)
        except RuntimeTimeout as e:
            timed_out = True
            logger.error("Stop of %s timed out: %s", name, e)
        except RuntimeCommandError as e:
            logger.error("Stop command for %s failed: %s", name, e)

        self._sleep(self.stop_settle_seconds)
        observed = self.runtime.get_state(name)
        observed_state = state_from_runtime(observed)
        session.record(observed_state)

        if observed_state is UnitState.STOPPED:
            session.stopped_by_controller = True
            log_success(logger, "Container %s stopped gracefully", name)
            return

        if timed_out:
            raise LifecycleTimeout(
                f"Container {name} did not stop within {self.stop_timeout}s (status: {observed})"
            )
        raise LifecycleError(f"Container {name} was not stopped (status: {observed})")

    def restore(self, session: LifecycleSession):
        """
        Restart the unit if this controller issued a stop. Never raises for a
        failed restart: the outcome is logged and recorded on the session.
        """
        if not session.stop_issued:
            return

        name = session.unit.name
        session.restart_attempted = True
        current = self.runtime.get_state(name)

        if state_from_runtime(current) is UnitState.RUNNING:
            session.post_run_status = current
            session.restart_succeeded = True
            session.record(UnitState.RUNNING)
            logger.warning("Container %s is already running, no restart needed", name)
            return

        logger.info("Restarting container %s", name)
        session.record(UnitState.STARTING)
        try:
            self.runtime.start(name)
        except RuntimeCommandError as e:
            logger.error("Failed to restart container %s: %s", name, e)

        self._sleep(self.start_settle_seconds)
        observed = self.runtime.get_state(name)
        session.post_run_status = observed
        session.record(state_from_runtime(observed))

        if state_from_runtime(observed) is UnitState.RUNNING:
            session.restart_succeeded = True
            log_success(logger, "Container %s restarted successfully", name)
        else:
            session.restart_succeeded = False
            logger.warning("Container %s may not have started properly (status: %s)", name, observed)
