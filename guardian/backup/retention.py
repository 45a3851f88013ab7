"""
Retention policy enforcement for backup artifacts.

Keeps the newest N artifacts of a unit in a tier (local backup root or a
remote provider) and deletes the rest. A keep count of zero means
unbounded retention. Deleting everything is the separate, explicitly
approved bulk cleanup. Ledgers whose artifact was removed after upload
are swept locally with the same keep count.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Sequence

from guardian import log_success
from guardian.approval import BULK_CLEANUP
from .compression import ARTIFACT_PATTERN, PARTIAL_SUFFIX, artifact_matcher, ledger_matcher, sidecar_path


logger = logging.getLogger(__name__)

SCOPE_LOCAL = 'local'
SCOPE_REMOTE = 'remote'


class RetentionFailure(Exception):
    """Raised when retention cleanup could not complete."""
    pass


def select_expired(items_newest_first: Sequence, keep_count: int) -> List:
    """
    Items beyond the newest keep_count.

    keep_count 0 keeps everything.
    """
    if keep_count <= 0:
        return []
    return list(items_newest_first[keep_count:])


@dataclass
class LocalArtifact:
    path: Path
    modified: datetime
    size: int

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class RetentionReport:
    scope: str
    unit: str
    keep_count: int
    found: int = 0
    deleted: List[str] = field(default_factory=list)
    ledgers_deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def kept(self) -> int:
        return self.found - len(self.deleted)


class RetentionManager:
    """
    Enforces "keep newest N" per unit for the local backup root and,
    through a storage provider, for the remote tier.
    """

    def __init__(self, backup_root):
        self.backup_root = Path(backup_root)

    def list_local_artifacts(self, unit_name: str) -> List[LocalArtifact]:
        """
        Artifacts of unit_name under the backup root, newest first.

        Only names of the exact form <unit>_<YYYYmmdd_HHMMSS>.tar[.gz] are
        candidates; partial files and other units' artifacts never match.
        """
        if not self.backup_root.is_dir():
            return []

        matcher = artifact_matcher(unit_name)
        artifacts = []
        for path in self.backup_root.rglob('*'):
            if not matcher.match(path.name) or not path.is_file():
                continue
            stat = path.stat()
            artifacts.append(LocalArtifact(
                path=path,
                modified=datetime.fromtimestamp(stat.st_mtime),
                size=stat.st_size
            ))

        artifacts.sort(key=lambda a: (a.modified, a.name), reverse=True)
        return artifacts

    def enforce(self, scope: str, unit_name: str, keep_count: int, storage=None) -> RetentionReport:
        """
        Apply keep-newest-N to one tier.

        Args:
            scope: 'local' or 'remote'
            unit_name: Unit whose artifacts are considered
            keep_count: Number of newest artifacts to keep (0 = keep all)
            storage: RemoteStorage provider (required for remote scope)

        Returns:
            RetentionReport

        Raises:
            RetentionFailure: If the candidate set cannot be listed
            ValueError: On an unknown scope or missing storage
        """
        if scope == SCOPE_LOCAL:
            report = self._enforce_local(unit_name, keep_count)
        elif scope == SCOPE_REMOTE:
            if storage is None:
                raise ValueError("Remote retention requires a storage provider")
            report = storage.cleanup(unit_name, keep_count)
        else:
            raise ValueError(f"Invalid retention scope: {scope}")

        for error in report.errors:
            logger.warning(error)
        return report

    def _enforce_local(self, unit_name: str, keep_count: int) -> RetentionReport:
        report = RetentionReport(scope=SCOPE_LOCAL, unit=unit_name, keep_count=keep_count)

        if keep_count <= 0:
            logger.info("Local retention disabled (keep count 0), keeping all backups of %s", unit_name)
            return report

        logger.info("Cleaning up old local backups (keeping %d)", keep_count)
        try:
            artifacts = self.list_local_artifacts(unit_name)
        except OSError as e:
            raise RetentionFailure(f"Cannot list local backups of {unit_name}: {e}")

        report.found = len(artifacts)
        for artifact in select_expired(artifacts, keep_count):
            try:
                artifact.path.unlink()
            except OSError as e:
                report.errors.append(f"Failed to delete {artifact.path}: {e}")
                continue
            report.deleted.append(artifact.name)
            logger.info("Removed old backup: %s", artifact.name)

            ledger = sidecar_path(artifact.path)
            try:
                if ledger.exists():
                    ledger.unlink()
            except OSError as e:
                report.errors.append(f"Failed to delete ledger {ledger}: {e}")

            self._remove_empty_run_dir(artifact.path.parent)

        self._sweep_orphaned_ledgers(unit_name, keep_count, report)

        if report.deleted:
            log_success(logger, "Local cleanup completed, removed %d old backup(s)", len(report.deleted))
        else:
            logger.info("No old local backups to remove (%d found)", report.found)
        return report

    def list_orphaned_ledgers(self, unit_name: str) -> List[Path]:
        """
        Ledgers of unit_name whose artifact no longer exists locally, newest first.

        These are left behind when the artifact was removed after upload.
        """
        if not self.backup_root.is_dir():
            return []

        matcher = ledger_matcher(unit_name)
        orphans = []
        for path in self.backup_root.rglob('*.log'):
            if not matcher.match(path.name) or not path.is_file():
                continue
            stem = path.name[:-len('.log')]
            if any(path.with_name(stem + ext).exists() for ext in ('.tar.gz', '.tar')):
                continue
            orphans.append(path)

        orphans.sort(key=lambda p: p.name, reverse=True)
        return orphans

    def _sweep_orphaned_ledgers(self, unit_name: str, keep_count: int, report: RetentionReport):
        try:
            orphans = self.list_orphaned_ledgers(unit_name)
        except OSError as e:
            report.errors.append(f"Cannot list ledgers of {unit_name}: {e}")
            return

        for ledger in select_expired(orphans, keep_count):
            try:
                ledger.unlink()
            except OSError as e:
                report.errors.append(f"Failed to delete ledger {ledger}: {e}")
                continue
            report.ledgers_deleted.append(ledger.name)
            logger.info("Removed ledger of uploaded backup: %s", ledger.name)
            self._remove_empty_run_dir(ledger.parent)

    def _remove_empty_run_dir(self, directory: Path):
        if directory == self.backup_root:
            return
        try:
            directory.rmdir()
            logger.debug("Removed empty run directory %s", directory)
        except OSError:
            pass

    def inventory(self) -> Dict[str, int]:
        """Counts used to describe a bulk cleanup before approval."""
        counts = {'artifacts': 0, 'run_dirs': 0, 'bytes': 0}
        if not self.backup_root.is_dir():
            return counts
        for path in self.backup_root.rglob('*'):
            if path.is_file() and ARTIFACT_PATTERN.match(path.name):
                counts['artifacts'] += 1
                counts['bytes'] += path.stat().st_size
        counts['run_dirs'] = sum(1 for p in self.backup_root.iterdir() if p.is_dir())
        return counts

    def purge_all(self, approver) -> Dict[str, object]:
        """
        Bulk cleanup: delete every artifact, ledger and run directory under the backup root.

        Requires approval for BULK_CLEANUP; declined approval deletes nothing.

        Returns:
            Dict with 'approved', 'removed' (run directories and loose files) and 'errors'
        """
        summary = {'approved': False, 'removed': [], 'errors': []}
        inventory = self.inventory()

        if not inventory['run_dirs'] and not inventory['artifacts']:
            logger.info("No backups found in %s", self.backup_root)
            summary['approved'] = True
            return summary

        logger.warning(
            "Bulk cleanup will delete %d backup(s) in %d run directories (%.2f MB) under %s",
            inventory['artifacts'], inventory['run_dirs'],
            inventory['bytes'] / 1024 / 1024, self.backup_root
        )
        approved = approver.confirm(
            BULK_CLEANUP,
            f"This will permanently delete ALL backups in {self.backup_root}."
        )
        if not approved:
            logger.info("Bulk cleanup cancelled")
            return summary
        summary['approved'] = True

        for entry in sorted(self.backup_root.iterdir()):
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                elif ARTIFACT_PATTERN.match(entry.name) or entry.name.endswith(('.log', PARTIAL_SUFFIX)):
                    entry.unlink()
                else:
                    continue
            except OSError as e:
                error = f"Failed to remove {entry}: {e}"
                logger.error(error)
                summary['errors'].append(error)
                continue
            summary['removed'].append(entry.name)

        if summary['errors']:
            logger.error("Bulk cleanup finished with %d error(s)", len(summary['errors']))
        else:
            log_success(logger, "All backups have been deleted (%d entries)", len(summary['removed']))
        return summary
