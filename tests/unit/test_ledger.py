"""
Unit tests for the run ledger (guardian/backup/ledger.py).
"""

import logging
from datetime import datetime
from pathlib import Path

from guardian.backup.compression import CompressionResult
from guardian.backup.ledger import (
    SessionLogBuffer,
    build_ledger,
    policy_snapshot,
    read_ledger,
    replication_plan,
    write_ledger,
)
from guardian.backup.lifecycle import LifecycleController


def compression_result(path):
    return CompressionResult(
        path=Path(path),
        original_size=4096,
        compressed_size=Path(path).stat().st_size,
        streamed_bytes=5120,
        compressor='gzip',
        duration_seconds=0.5,
        timestamp='20240115_120000'
    )


class TestSessionLogBuffer:

    def test_keeps_trailing_window(self):
        buffer = SessionLogBuffer(capacity=3)
        buffer.setFormatter(logging.Formatter('%(message)s'))
        log = logging.getLogger('guardian.test.ledger')
        log.addHandler(buffer)
        log.setLevel(logging.INFO)
        try:
            for i in range(5):
                log.info("line %d", i)
        finally:
            log.removeHandler(buffer)

        assert buffer.tail() == ['line 2', 'line 3', 'line 4']


class TestPolicy:

    def test_policy_snapshot_without_remote(self, make_config):
        snapshot = policy_snapshot(make_config(LOCAL_RETENTION=5))

        assert snapshot['local_retention'] == 5
        assert snapshot['remote_enabled'] is False
        assert snapshot['remote_provider'] is None

    def test_replication_plan(self, make_config):
        config = make_config(
            REMOTE_STORAGE_ENABLED='true', REMOTE_STORAGE_TYPE='rclone', RCLONE_REMOTE='r',
            DELETE_LOCAL_AFTER_UPLOAD='true'
        )

        assert replication_plan(config, artifact_present=True) == {
            'will_replicate': True,
            'provider': 'rclone',
            'verify': True,
            'delete_local_after_upload': True,
        }
        assert replication_plan(config, artifact_present=False)['will_replicate'] is False


class TestLedger:

    def test_ledger_written_beside_artifact(self, make_config, artifact_file, fake_runtime, approver, no_sleep):
        config = make_config()
        controller = LifecycleController(fake_runtime, approver, sleep=no_sleep)
        session = controller.begin(controller.inspect('jellyfin', config.data_root_for('jellyfin')))
        controller.quiesce(session)
        controller.restore(session)
        buffer = SessionLogBuffer()
        buffer.setFormatter(logging.Formatter('%(message)s'))
        buffer.emit(logging.makeLogRecord({'msg': 'Starting backup of container: jellyfin'}))

        entry = build_ledger(
            'jellyfin', config.data_root_for('jellyfin'), config, datetime(2024, 1, 15, 12, 0, 0),
            session=session, compression_result=compression_result(artifact_file),
            status='success', log_buffer=buffer
        )
        path = write_ledger(entry, artifact_file)

        assert path == artifact_file.with_name('jellyfin_20240115_120000.log')
        data = read_ledger(path)
        assert data['unit'] == 'jellyfin'
        assert data['status'] == 'success'
        assert data['pre_run_state'] == 'running'
        assert data['lifecycle']['restart_succeeded'] is True
        assert data['artifact']['filename'] == artifact_file.name
        assert data['artifact']['size_bytes'] == artifact_file.stat().st_size
        assert data['started_at'] == '2024-01-15T12:00:00'
        assert data['replication_plan']['will_replicate'] is False
        assert 'cache/*' in data['exclusions']
        assert data['session_log_tail'] == ['Starting backup of container: jellyfin']
        assert not path.with_name(path.name + '.partial').exists()

    def test_failed_run_without_artifact_goes_to_log(self, make_config, caplog):
        config = make_config()
        entry = build_ledger(
            'jellyfin', config.data_root_for('jellyfin'), config, datetime.now(),
            status='failed', error='Data directory not found'
        )

        with caplog.at_level(logging.INFO, logger='guardian.backup.ledger'):
            assert write_ledger(entry) is None

        assert 'Data directory not found' in caplog.text
        assert entry.artifact is None
        assert entry.lifecycle == {}
