"""
Unit tests for retention policy enforcement (guardian/backup/retention.py).
"""

import os
import time
from datetime import datetime, timedelta

import pytest

from guardian.approval import BULK_CLEANUP, PolicyApprover
from guardian.backup.retention import (
    SCOPE_LOCAL,
    SCOPE_REMOTE,
    RetentionFailure,
    RetentionManager,
    select_expired,
)


def make_artifact(backup_root, unit, timestamp, age_hours, ledger=True):
    run_dir = backup_root / timestamp
    run_dir.mkdir(parents=True, exist_ok=True)
    artifact = run_dir / f"{unit}_{timestamp}.tar.gz"
    artifact.write_bytes(b'backup')
    mtime = time.time() - age_hours * 3600
    os.utime(artifact, (mtime, mtime))
    if ledger:
        (run_dir / f"{unit}_{timestamp}.log").write_text('{}')
    return artifact


@pytest.fixture
def backup_root(tmp_path):
    root = tmp_path / 'backups'
    root.mkdir()
    return root


class TestSelectExpired:

    def test_keeps_newest(self):
        assert select_expired(['d', 'c', 'b', 'a'], 2) == ['b', 'a']

    def test_zero_keeps_everything(self):
        assert select_expired(['d', 'c', 'b', 'a'], 0) == []

    def test_fewer_items_than_keep_count(self):
        assert select_expired(['a'], 3) == []


class TestLocalRetention:

    def test_removes_exactly_the_oldest(self, backup_root):
        artifacts = [
            make_artifact(backup_root, 'media1', f'2024011{i}_120000', age_hours=48 - i * 10)
            for i in range(5)
        ]

        report = RetentionManager(backup_root).enforce(SCOPE_LOCAL, 'media1', 2)

        assert report.found == 5
        assert len(report.deleted) == 3
        assert [a.exists() for a in artifacts] == [False, False, False, True, True]

    def test_sidecar_ledger_and_empty_run_dir_removed(self, backup_root):
        old = make_artifact(backup_root, 'media1', '20240110_120000', age_hours=10)
        make_artifact(backup_root, 'media1', '20240111_120000', age_hours=1)

        RetentionManager(backup_root).enforce(SCOPE_LOCAL, 'media1', 1)

        assert not old.exists()
        assert not old.with_name('media1_20240110_120000.log').exists()
        assert not old.parent.exists()

    def test_keep_count_zero_is_noop(self, backup_root):
        artifacts = [make_artifact(backup_root, 'media1', f'2024011{i}_120000', age_hours=i) for i in range(4)]

        report = RetentionManager(backup_root).enforce(SCOPE_LOCAL, 'media1', 0)

        assert report.deleted == []
        assert all(a.exists() for a in artifacts)

    def test_other_units_untouched(self, backup_root):
        make_artifact(backup_root, 'media1', '20240110_120000', age_hours=10)
        make_artifact(backup_root, 'media1', '20240111_120000', age_hours=1)
        other = make_artifact(backup_root, 'media10', '20240101_120000', age_hours=100)
        shared_dir_other = make_artifact(backup_root, 'vfx', '20240110_120000', age_hours=10)

        RetentionManager(backup_root).enforce(SCOPE_LOCAL, 'media1', 1)

        assert other.exists()
        assert shared_dir_other.exists()

    def test_partial_files_are_not_candidates(self, backup_root):
        make_artifact(backup_root, 'media1', '20240111_120000', age_hours=1)
        partial = backup_root / '20240101_120000' / 'media1_20240101_120000.tar.gz.partial'
        partial.parent.mkdir()
        partial.write_bytes(b'half')

        manager = RetentionManager(backup_root)

        assert [a.name for a in manager.list_local_artifacts('media1')] == ['media1_20240111_120000.tar.gz']

    def test_ledgers_of_uploaded_backups_are_swept(self, backup_root):
        for i in range(4):
            make_artifact(backup_root, 'media1', f'2024011{i}_120000', age_hours=48 - i).unlink()
        kept_artifact = make_artifact(backup_root, 'media1', '20240101_120000', age_hours=200)
        other_unit = make_artifact(backup_root, 'vfx', '20240110_120000', age_hours=48)
        other_unit.unlink()

        manager = RetentionManager(backup_root)
        report = manager.enforce(SCOPE_LOCAL, 'media1', 2)

        assert report.deleted == []
        assert report.ledgers_deleted == ['media1_20240111_120000.log', 'media1_20240110_120000.log']
        assert [p.name for p in manager.list_orphaned_ledgers('media1')] == [
            'media1_20240113_120000.log', 'media1_20240112_120000.log'
        ]
        assert not (backup_root / '20240111_120000').exists()
        assert kept_artifact.exists()
        assert kept_artifact.with_name('media1_20240101_120000.log').exists()
        assert other_unit.with_name('vfx_20240110_120000.log').exists()

    def test_orphaned_ledgers_kept_when_retention_disabled(self, backup_root):
        make_artifact(backup_root, 'media1', '20240110_120000', age_hours=1).unlink()

        report = RetentionManager(backup_root).enforce(SCOPE_LOCAL, 'media1', 0)

        assert report.ledgers_deleted == []
        assert (backup_root / '20240110_120000' / 'media1_20240110_120000.log').exists()

    def test_missing_backup_root(self, tmp_path):
        report = RetentionManager(tmp_path / 'missing').enforce(SCOPE_LOCAL, 'media1', 2)

        assert report.found == 0

    def test_unknown_scope(self, backup_root):
        with pytest.raises(ValueError):
            RetentionManager(backup_root).enforce('offsite', 'media1', 2)


class TestRemoteRetention:

    def test_remote_keeps_newest(self, backup_root, memory_storage):
        now = datetime.now()
        for day in range(4):
            memory_storage.add(f'media1_2024011{day}_120000.tar.gz', now - timedelta(days=4 - day))
        memory_storage.add('vfx_20240101_120000.tar.gz', now - timedelta(days=30))

        report = RetentionManager(backup_root).enforce(SCOPE_REMOTE, 'media1', 2, storage=memory_storage)

        assert sorted(report.deleted) == ['media1_20240110_120000.tar.gz', 'media1_20240111_120000.tar.gz']
        assert sorted(memory_storage.objects) == [
            'media1_20240112_120000.tar.gz', 'media1_20240113_120000.tar.gz', 'vfx_20240101_120000.tar.gz'
        ]

    def test_remote_keep_zero_is_noop(self, backup_root, memory_storage):
        memory_storage.add('media1_20240110_120000.tar.gz', datetime.now())

        report = RetentionManager(backup_root).enforce(SCOPE_REMOTE, 'media1', 0, storage=memory_storage)

        assert report.deleted == []
        assert 'list' not in memory_storage.events

    def test_remote_listing_failure(self, backup_root, memory_storage):
        from guardian.backup.storage import ReplicationFailure

        def broken_listing():
            raise ReplicationFailure('timeout')

        memory_storage.list_files = broken_listing

        with pytest.raises(RetentionFailure):
            RetentionManager(backup_root).enforce(SCOPE_REMOTE, 'media1', 1, storage=memory_storage)

    def test_remote_requires_storage(self, backup_root):
        with pytest.raises(ValueError):
            RetentionManager(backup_root).enforce(SCOPE_REMOTE, 'media1', 1)


class TestBulkCleanup:

    def test_declined_deletes_nothing(self, backup_root, approver):
        artifact = make_artifact(backup_root, 'media1', '20240110_120000', age_hours=1)
        approver.answer = False

        summary = RetentionManager(backup_root).purge_all(approver)

        assert summary['approved'] is False
        assert artifact.exists()
        assert approver.actions == [BULK_CLEANUP]

    def test_approved_deletes_everything(self, backup_root, approver):
        make_artifact(backup_root, 'media1', '20240110_120000', age_hours=1)
        make_artifact(backup_root, 'vfx', '20240111_120000', age_hours=1)
        unrelated = backup_root / 'README'
        unrelated.write_text('keep me')

        summary = RetentionManager(backup_root).purge_all(approver)

        assert summary['approved'] is True
        assert sorted(summary['removed']) == ['20240110_120000', '20240111_120000']
        assert [p.name for p in backup_root.iterdir()] == ['README']

    def test_non_interactive_policy_refuses_bulk_cleanup(self, backup_root):
        artifact = make_artifact(backup_root, 'media1', '20240110_120000', age_hours=1)

        summary = RetentionManager(backup_root).purge_all(PolicyApprover())

        assert summary['approved'] is False
        assert artifact.exists()

    def test_nothing_to_clean(self, backup_root, approver):
        summary = RetentionManager(backup_root).purge_all(approver)

        assert summary['removed'] == []
        assert approver.questions == []
