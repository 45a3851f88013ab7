"""
Run ledger: one structured record per unit run, persisted beside the artifact.
"""

import json
import logging
import os
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from guardian import __version__
from .compression import exclusion_patterns, sidecar_path


logger = logging.getLogger(__name__)

SESSION_TAIL_LINES = 50


class SessionLogBuffer(logging.Handler):
    """Keeps the last N formatted session log lines in memory."""

    def __init__(self, capacity: int = SESSION_TAIL_LINES):
        super().__init__()
        self._lines = deque(maxlen=capacity)

    def emit(self, record):
        try:
            self._lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def tail(self) -> List[str]:
        return list(self._lines)


@dataclass(frozen=True)
class RunLedgerEntry:
    unit: str
    data_root: str
    pre_run_state: Optional[str]
    lifecycle: Dict[str, Any]
    policy: Dict[str, Any]
    integrity: Optional[Dict[str, Any]]
    artifact: Optional[Dict[str, Any]]
    replication_plan: Dict[str, Any]
    status: str
    error: Optional[str]
    started_at: str
    finished_at: str
    guardian_version: str = __version__
    exclusions: List[str] = field(default_factory=exclusion_patterns)
    session_log_tail: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def policy_snapshot(config) -> dict:
    """Configuration flags in effect for a run."""
    remote = config.remote
    return {
        'stop_for_backup': config.stop_for_backup,
        'stop_timeout': config.stop_timeout,
        'integrity_check': config.integrity_check,
        'integrity_checker': config.integrity_checker,
        'compression_enabled': config.compression_enabled,
        'compression_level': config.compression_level,
        'parallel_compression': config.parallel_compression,
        'local_retention': config.local_retention,
        'non_interactive': config.non_interactive,
        'remote_enabled': config.remote_enabled,
        'remote_provider': remote.provider if remote else None,
        'remote_retention': remote.retention if remote else None,
        'auto_upload': remote.auto_upload if remote else None,
        'verify_upload': remote.verify_upload if remote else None,
        'delete_local_after_upload': remote.delete_local_after_upload if remote else None,
    }


def replication_plan(config, artifact_present: bool) -> dict:
    remote = config.remote
    will_replicate = bool(artifact_present and config.remote_enabled and remote.auto_upload)
    return {
        'will_replicate': will_replicate,
        'provider': remote.provider if remote else None,
        'verify': bool(will_replicate and remote.verify_upload),
        'delete_local_after_upload': bool(will_replicate and remote.delete_local_after_upload),
    }


def build_ledger(
    unit_name: str,
    data_root,
    config,
    started_at: datetime,
    session=None,
    integrity_report=None,
    compression_result=None,
    status: str = 'failed',
    error: Optional[str] = None,
    log_buffer: Optional[SessionLogBuffer] = None
) -> RunLedgerEntry:
    """
    Assemble the ledger entry for one unit run.

    Args:
        unit_name: Unit identifier
        data_root: Data root that was (or would have been) archived
        config: Config in effect
        started_at: Run start time
        session: LifecycleSession, if the lifecycle stage was reached
        integrity_report: IntegrityReport, if integrity was checked
        compression_result: CompressionResult, if an artifact was produced
        status: 'success' or 'failed'
        error: Error message for failed runs
        log_buffer: Session log buffer providing the trailing window

    Returns:
        RunLedgerEntry
    """
    artifact = None
    if compression_result is not None:
        artifact = {
            'path': str(compression_result.path),
            'filename': compression_result.path.name,
            'timestamp': compression_result.timestamp,
            'size_bytes': compression_result.compressed_size,
            'original_size_bytes': compression_result.original_size,
            'streamed_bytes': compression_result.streamed_bytes,
            'compressor': compression_result.compressor,
            'duration_seconds': compression_result.duration_seconds,
        }

    return RunLedgerEntry(
        unit=unit_name,
        data_root=str(data_root),
        pre_run_state=session.pre_run_status if session is not None else None,
        lifecycle=session.to_dict() if session is not None else {},
        policy=policy_snapshot(config),
        integrity=integrity_report.summary() if integrity_report is not None else None,
        artifact=artifact,
        replication_plan=replication_plan(config, artifact is not None),
        status=status,
        error=error,
        started_at=started_at.isoformat(timespec='seconds'),
        finished_at=datetime.now().isoformat(timespec='seconds'),
        session_log_tail=log_buffer.tail() if log_buffer is not None else [],
    )


def write_ledger(entry: RunLedgerEntry, artifact_path=None) -> Optional[Path]:
    """
    Persist the ledger as <artifact base>.log next to the artifact.

    Without an artifact the entry goes to the session log only.

    Returns:
        Path of the written ledger, or None
    """
    payload = json.dumps(entry.to_dict(), indent=2, default=str)

    if artifact_path is None:
        logger.info("Run ledger for %s (no artifact):\n%s", entry.unit, payload)
        return None

    path = sidecar_path(artifact_path)
    tmp_path = path.with_name(path.name + '.partial')
    try:
        with open(tmp_path, 'w') as f:
            f.write(payload + '\n')
        os.replace(tmp_path, path)
    except OSError as e:
        logger.error("Failed to write run ledger %s: %s", path, e)
        logger.info("Run ledger for %s:\n%s", entry.unit, payload)
        return None

    logger.info("Backup log: %s", path)
    return path


def read_ledger(path) -> dict:
    with open(path, 'r') as f:
        return json.load(f)
