"""
Backup executor - orchestrates the complete backup run of one unit.

Workflow:
1. Read unit state, locate its data root and run the health checks
2. Verify database integrity (before touching the unit)
3. Stop the unit (policy + approval)
4. Stream the data root into a compressed artifact
5. Restart the unit (always, when this run stopped it)
6. Write the run ledger beside the artifact
7. Replicate to remote storage
8. Enforce local retention
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from guardian import log_success
from .compression import (
    ARTIFACT_PATTERN, TIMESTAMP_FORMAT, CompressionFailure, CompressionPipeline,
    exclusion_patterns, measure_source
)
from .health import InsufficientSpace, free_space_gb, preflight
from .integrity import IntegrityFailure, IntegrityVerifier
from .ledger import build_ledger, write_ledger
from .lifecycle import BackupCancelled, LifecycleController, LifecycleError, UnitState
from .replicator import RemoteReplicator
from .retention import SCOPE_LOCAL, RetentionFailure, RetentionManager
from .runtime import RuntimeCommandError


logger = logging.getLogger(__name__)

STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'
STATUS_DRY_RUN = 'dry_run'


class UnitNotFound(Exception):
    """Raised when a unit or its data root does not exist."""
    pass


@dataclass
class BackupResult:
    unit: str
    status: str = STATUS_FAILED
    error: Optional[str] = None
    error_type: Optional[str] = None
    artifact: Optional[object] = None
    ledger_path: Optional[Path] = None
    session: Optional[object] = None
    integrity: Optional[object] = None
    replication: Optional[object] = None
    local_retention: Optional[object] = None
    plan: Dict[str, object] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status in (STATUS_SUCCESS, STATUS_DRY_RUN)

    @property
    def replication_failed(self) -> bool:
        return bool(self.replication is not None and self.replication.attempted and not self.replication.succeeded)


def create_run_directory(backup_root, timestamp: Optional[str] = None) -> Path:
    """
    Create (if needed) the run directory <backup_root>/<timestamp>.

    Artifact names carry the unit name, so several units may share one run directory.
    """
    timestamp = timestamp or datetime.now().strftime(TIMESTAMP_FORMAT)
    run_dir = Path(backup_root) / timestamp
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def backup_history(backup_root) -> List[Dict[str, object]]:
    """
    Run directories under the backup root, newest first.

    Returns:
        List of dicts with 'name', 'path', 'artifacts' and 'size' keys
    """
    root = Path(backup_root)
    if not root.is_dir():
        return []

    history = []
    for run_dir in root.iterdir():
        if not run_dir.is_dir():
            continue
        artifacts = [p for p in run_dir.iterdir() if p.is_file() and ARTIFACT_PATTERN.match(p.name)]
        size = sum(p.stat().st_size for p in run_dir.rglob('*') if p.is_file())
        history.append({
            'name': run_dir.name,
            'path': str(run_dir),
            'artifacts': sorted(p.name for p in artifacts),
            'size': size,
        })
    history.sort(key=lambda h: h['name'], reverse=True)
    return history


def discover_units(runtime, config) -> List[str]:
    """
    Names of the containers matching the configured unit filter.

    Raises:
        RuntimeCommandError: If the runtime cannot be queried
    """
    return [c.name for c in runtime.list_containers(config.unit_filter)]


class BackupExecutor:
    """
    Orchestrates the complete backup run for one unit.
    """

    def __init__(
        self,
        unit_name: str,
        config,
        runtime,
        approver,
        log_buffer=None,
        verifier=None,
        pipeline=None,
        retention=None,
        replicator=None,
        sleep=time.sleep
    ):
        """
        Args:
            unit_name: Container name
            config: Immutable Config for this process
            runtime: Container runtime (get_state / stop / start)
            approver: Approval callback for gated transitions
            log_buffer: SessionLogBuffer feeding the ledger's trailing window
            verifier / pipeline / retention / replicator: Component overrides
            sleep: Sleep function used for settle delays
        """
        self.unit_name = unit_name
        self.config = config
        self.runtime = runtime
        self.approver = approver
        self.log_buffer = log_buffer
        self.verifier = verifier or IntegrityVerifier.from_config(config)
        self.pipeline = pipeline or CompressionPipeline.from_config(config)
        self.retention = retention or RetentionManager(config.backup_root)
        if replicator is None and config.remote_enabled:
            replicator = RemoteReplicator(config.remote, self.retention)
        self.replicator = replicator
        self.controller = LifecycleController.from_config(config, runtime, approver, sleep=sleep)

    @property
    def data_root(self) -> Path:
        return self.config.data_root_for(self.unit_name)

    def execute(self, run_dir=None) -> BackupResult:
        """
        Execute the backup of this unit.

        Args:
            run_dir: Shared run directory (created under the backup root when omitted)

        Returns:
            BackupResult. Unit-level failures are reported in the result, not raised.
        """
        if self.config.dry_run:
            return self.dry_run()

        started_at = datetime.now()
        result = BackupResult(unit=self.unit_name)
        logger.info("Starting backup of container: %s", self.unit_name)

        try:
            self._run(result, run_dir)
            result.status = STATUS_SUCCESS
        except BackupCancelled as e:
            result.status = STATUS_CANCELLED
            self._fail(result, e)
        except (UnitNotFound, InsufficientSpace, IntegrityFailure, LifecycleError, CompressionFailure,
                RuntimeCommandError) as e:
            self._fail(result, e)
        except KeyboardInterrupt:
            result.status = STATUS_CANCELLED
            result.error = 'Interrupted'
            result.error_type = 'KeyboardInterrupt'
            logger.error("Backup of %s interrupted", self.unit_name)
            self._write_ledger(result, started_at)
            raise

        self._write_ledger(result, started_at)

        if result.artifact is None:
            return result

        if self.replicator is not None:
            result.replication = self.replicator.replicate(result.artifact.path, self.unit_name)
            if result.replication_failed:
                logger.warning("Remote replication failed, local backup stands: %s", result.replication.error)

        try:
            result.local_retention = self.retention.enforce(SCOPE_LOCAL, self.unit_name, self.config.local_retention)
        except RetentionFailure as e:
            logger.warning("Local retention failed: %s", e)

        log_success(logger, "Backup of %s completed successfully", self.unit_name)
        return result

    def _run(self, result: BackupResult, run_dir):
        unit = self.controller.inspect(self.unit_name, self.data_root)
        if unit.state is UnitState.NOT_FOUND:
            raise UnitNotFound(f"Container {self.unit_name} not found")
        if unit.state is UnitState.UNKNOWN:
            raise LifecycleError(f"Cannot determine state of {self.unit_name} (status: {unit.runtime_status})")
        if not self.data_root.is_dir():
            raise UnitNotFound(f"Data directory not found: {self.data_root}")

        preflight(self.config, self.data_root)

        if self.config.integrity_check:
            result.integrity = self.verifier.verify(self.data_root)
            if not result.integrity.passed:
                raise IntegrityFailure(result.integrity)
        else:
            logger.warning("Database integrity check disabled for this run")

        session = self.controller.begin(unit)
        result.session = session
        try:
            self.controller.quiesce(session)
            run_dir = Path(run_dir) if run_dir else create_run_directory(self.config.backup_root)
            logger.info("Backup directory: %s", run_dir)
            result.artifact = self.pipeline.run(self.data_root, run_dir, self.unit_name)
        finally:
            self.controller.restore(session)

    def _fail(self, result: BackupResult, error: Exception):
        result.error = str(error)
        result.error_type = type(error).__name__
        if result.status == STATUS_CANCELLED:
            logger.warning("Backup of %s cancelled: %s", self.unit_name, error)
        else:
            logger.error("Backup of %s failed: %s", self.unit_name, error)

    def _write_ledger(self, result: BackupResult, started_at: datetime):
        entry = build_ledger(
            unit_name=self.unit_name,
            data_root=self.data_root,
            config=self.config,
            started_at=started_at,
            session=result.session,
            integrity_report=result.integrity,
            compression_result=result.artifact,
            status=result.status,
            error=result.error,
            log_buffer=self.log_buffer
        )
        artifact_path = result.artifact.path if result.artifact is not None else None
        result.ledger_path = write_ledger(entry, artifact_path)

    def dry_run(self) -> BackupResult:
        """
        Report what a backup of this unit would do, without doing it.
        """
        result = BackupResult(unit=self.unit_name, status=STATUS_DRY_RUN)
        unit = self.controller.inspect(self.unit_name, self.data_root)
        status, state = unit.runtime_status, unit.state
        data_exists = self.data_root.is_dir()

        plan = {
            'unit': self.unit_name,
            'state': status,
            'would_stop': state is UnitState.RUNNING and self.config.stop_for_backup,
            'unsafe_live_backup': state is UnitState.RUNNING and not self.config.stop_for_backup,
            'data_root': str(self.data_root),
            'data_root_exists': data_exists,
            'source_size': measure_source(self.data_root) if data_exists else None,
            'integrity_check': self.config.integrity_check,
            'exclusions': exclusion_patterns(),
            'destination': str(self.pipeline.plan_path(
                Path(self.config.backup_root) / '<timestamp>', self.unit_name, '<timestamp>'
            )),
            'remote': self.config.remote.provider if self.config.remote_enabled else None,
            'local_retention': self.config.local_retention,
            'free_space_gb': round(free_space_gb(self.config.backup_root), 1),
            'min_free_space_gb': self.config.min_free_space_gb,
        }
        result.plan = plan

        logger.info("DRY RUN MODE - No changes will be made")
        logger.info("Container: %s (status: %s)", self.unit_name, status)
        if plan['would_stop']:
            logger.info("Would stop container %s", self.unit_name)
        elif plan['unsafe_live_backup']:
            logger.warning("Would back up %s while running (auto-stop disabled)", self.unit_name)
        if not data_exists:
            logger.warning("Data directory not found: %s", self.data_root)
        elif plan['source_size'] is not None:
            logger.info("Would backup: %s (%.2f MB)", self.data_root, plan['source_size'] / 1024 / 1024)
        logger.info("Exclusions: %s", ', '.join(plan['exclusions']))
        logger.info("Destination: %s", plan['destination'])
        if plan['min_free_space_gb'] and plan['free_space_gb'] < plan['min_free_space_gb']:
            logger.warning(
                "Only %.1fGB free on %s, the backup would be refused",
                plan['free_space_gb'], self.config.backup_root
            )
        if plan['remote']:
            logger.info("Would upload to %s storage", plan['remote'])
        return result


@dataclass
class BatchSummary:
    results: List[BackupResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed(self) -> List[str]:
        return [r.unit for r in self.results if not r.succeeded]

    @property
    def ok(self) -> bool:
        return self.total > 0 and not self.failed


def run_batch(unit_names, config, runtime, approver, log_buffer=None, executor_factory=None) -> BatchSummary:
    """
    Back up units one after another. A failing unit does not stop the batch.

    Returns:
        BatchSummary
    """
    factory = executor_factory or (
        lambda name: BackupExecutor(name, config, runtime, approver, log_buffer=log_buffer)
    )
    summary = BatchSummary()
    run_dir = None
    if not config.dry_run:
        run_dir = create_run_directory(config.backup_root)

    for name in unit_names:
        logger.info("Processing container: %s", name)
        summary.results.append(factory(name).execute(run_dir))

    if summary.ok:
        log_success(logger, "Backup summary: %d/%d successful", summary.succeeded, summary.total)
    else:
        logger.warning(
            "Backup summary: %d/%d successful (failed: %s)",
            summary.succeeded, summary.total, ', '.join(summary.failed) or 'none'
        )

    if run_dir is not None and not any(run_dir.iterdir()):
        os.rmdir(run_dir)
    return summary
