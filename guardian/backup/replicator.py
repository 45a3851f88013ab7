"""
Replication of a finished artifact to the configured remote provider.

Order per artifact: pre-flight connection test, upload, optional size
verification, remote retention, then (only when allowed) removal of the
local copy. A replication failure never fails the local backup.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from guardian import log_success
from .retention import SCOPE_REMOTE, RetentionFailure
from .storage import MISMATCH, VERIFIED, ReplicationFailure, create_storage


logger = logging.getLogger(__name__)

VERIFICATION_SKIPPED = 'skipped'


@dataclass
class ReplicationOutcome:
    provider: Optional[str] = None
    attempted: bool = False
    skipped_reason: Optional[str] = None
    uploaded: bool = False
    remote_location: Optional[str] = None
    verification: Optional[str] = None
    remote_deleted: List[str] = field(default_factory=list)
    local_deleted: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.uploaded and self.verification != MISMATCH

    def to_dict(self) -> dict:
        return {
            'provider': self.provider,
            'attempted': self.attempted,
            'skipped_reason': self.skipped_reason,
            'uploaded': self.uploaded,
            'remote_location': self.remote_location,
            'verification': self.verification,
            'remote_deleted': list(self.remote_deleted),
            'local_deleted': self.local_deleted,
            'error': self.error,
        }


class RemoteReplicator:
    """
    Uploads artifacts to one RemoteTarget and applies its remote policy.
    """

    def __init__(self, remote_target, retention_manager, storage=None):
        """
        Args:
            remote_target: RemoteTarget from the configuration (may be None)
            retention_manager: RetentionManager used for the remote tier
            storage: Provider instance (created from remote_target when omitted)
        """
        self.remote = remote_target
        self.retention = retention_manager
        self._storage = storage

    @property
    def storage(self):
        if self._storage is None:
            try:
                self._storage = create_storage(self.remote)
            except ValueError as e:
                raise ReplicationFailure(str(e))
        return self._storage

    def skip_reason(self, artifact_path) -> Optional[str]:
        if self.remote is None or not self.remote.enabled:
            return 'remote storage disabled'
        if not self.remote.auto_upload:
            return 'auto-upload disabled'
        if artifact_path is None or not Path(artifact_path).is_file():
            return 'no artifact'
        return None

    def replicate(self, artifact_path, unit_name: str) -> ReplicationOutcome:
        """
        Replicate one artifact.

        Returns:
            ReplicationOutcome (never raises for provider errors)
        """
        outcome = ReplicationOutcome(provider=self.remote.provider if self.remote else None)
        reason = self.skip_reason(artifact_path)
        if reason:
            outcome.skipped_reason = reason
            logger.info("Remote replication skipped: %s", reason)
            return outcome

        artifact_path = Path(artifact_path)
        outcome.attempted = True
        logger.info("Uploading backup to %s storage", self.remote.provider.upper())

        try:
            storage = self.storage
            storage.test_connection()
        except ReplicationFailure as e:
            outcome.error = f"Remote connection test failed: {e}"
            logger.error(outcome.error)
            return outcome

        try:
            outcome.remote_location = storage.upload(artifact_path)
        except ReplicationFailure as e:
            outcome.error = str(e)
            logger.error("Remote upload failed: %s", e)
            logger.warning("Local backup kept: %s", artifact_path)
            return outcome
        outcome.uploaded = True
        log_success(logger, "Upload completed: %s", outcome.remote_location)

        if self.remote.verify_upload:
            outcome.verification = storage.verify(artifact_path)
            if outcome.verification == VERIFIED:
                log_success(logger, "Upload verified successfully")
            elif outcome.verification == MISMATCH:
                outcome.error = f"Upload verification failed for {artifact_path.name}"
                logger.warning("Local backup kept: %s", artifact_path)
                return outcome
        else:
            outcome.verification = VERIFICATION_SKIPPED

        try:
            report = self.retention.enforce(SCOPE_REMOTE, unit_name, self.remote.retention, storage=storage)
            outcome.remote_deleted = list(report.deleted)
        except RetentionFailure as e:
            logger.warning("Remote cleanup failed: %s", e)

        if self.remote.delete_local_after_upload:
            if outcome.verification in (VERIFIED, VERIFICATION_SKIPPED):
                self._delete_local(artifact_path, outcome)
            else:
                logger.warning(
                    "Upload of %s could not be verified (%s), local backup kept",
                    artifact_path.name, outcome.verification
                )

        return outcome

    @staticmethod
    def _delete_local(artifact_path: Path, outcome: ReplicationOutcome):
        try:
            artifact_path.unlink()
        except OSError as e:
            logger.warning("Could not delete local backup %s: %s", artifact_path, e)
            return
        outcome.local_deleted = True
        logger.info("Local backup deleted after successful upload: %s", artifact_path.name)

    def test(self) -> bool:
        """
        Operator-invoked connection diagnostic.

        Returns:
            True if the provider answered
        """
        if self.remote is None or not self.remote.enabled:
            logger.warning("Remote storage is not enabled")
            return False

        logger.info("Testing %s connection", self.remote.provider.upper())
        try:
            self.storage.test_connection()
        except ReplicationFailure as e:
            logger.error("%s connection failed: %s", self.remote.provider.upper(), e)
            return False
        log_success(logger, "%s connection successful: %s", self.remote.provider.upper(), self.storage.location)
        return True
