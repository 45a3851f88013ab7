"""
Shared pytest fixtures for Guardian tests.

This module provides fixtures for:
- Config values rooted in a temporary directory
- A fake container runtime and recording approvers
- Unit data roots with SQLite databases
- An in-memory remote storage provider
- Mock fixtures for external services (S3, SSH)
"""

import os
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from guardian.backup.runtime import ContainerInfo, MountInfo, RuntimeCommandError, STATE_NOT_FOUND
from guardian.backup.storage import RemoteObject, RemoteStorage, ReplicationFailure
from guardian.config import DEFAULTS, build_config


class FakeRuntime:
    """
    In-memory container runtime.

    states maps container name -> status string. stop() moves a container to
    'exited' and start() to 'running' unless told to misbehave.
    """

    def __init__(self, states: Optional[Dict[str, str]] = None, images: Optional[Dict[str, str]] = None):
        self.states = dict(states or {})
        self.images = dict(images or {})
        self.calls: List[tuple] = []
        self.stop_error = None
        self.start_error = None
        self.stop_leaves_running = False
        self.start_leaves_stopped = False
        self.mounts: Dict[str, List[MountInfo]] = {}
        self.available = True

    def ping(self):
        return self.available

    def get_state(self, name):
        self.calls.append(('get_state', name))
        return self.states.get(name, STATE_NOT_FOUND)

    def stop(self, name, timeout):
        self.calls.append(('stop', name, timeout))
        if self.stop_error is not None:
            raise self.stop_error
        if not self.stop_leaves_running:
            self.states[name] = 'exited'

    def start(self, name):
        self.calls.append(('start', name))
        if self.start_error is not None:
            raise self.start_error
        if not self.start_leaves_stopped:
            self.states[name] = 'running'

    def list_containers(self, name_filter=None):
        needle = (name_filter or '').lower()
        return [
            ContainerInfo(name=name, image=self.images.get(name, 'jellyfin/jellyfin:latest'), state=state)
            for name, state in sorted(self.states.items())
            if not needle or needle in name.lower() or needle in self.images.get(name, 'jellyfin/jellyfin:latest')
        ]

    def get_mounts(self, name):
        if name not in self.states:
            raise RuntimeCommandError(f"Container {name} not found")
        return self.mounts.get(name, [])

    def called(self, action):
        return [c for c in self.calls if c[0] == action]


class RecordingApprover:
    """Approver answering from a fixed policy and recording every question."""

    def __init__(self, answer: bool = True, interactive: bool = True):
        self.answer = answer
        self.interactive = interactive
        self.questions: List[tuple] = []

    def confirm(self, action, message):
        self.questions.append((action, message))
        return self.answer

    @property
    def actions(self):
        return [action for action, _ in self.questions]


class InMemoryStorage(RemoteStorage):
    """Remote provider keeping uploaded artifacts in a dict."""

    provider = 'memory'

    def __init__(self, report_size=True, size_offset=0, fail_upload=False, fail_connection=False, size_error=None):
        super().__init__(settings=None, timeout=5)
        self.objects: Dict[str, RemoteObject] = {}
        self.report_size = report_size
        self.size_offset = size_offset
        self.fail_upload = fail_upload
        self.fail_connection = fail_connection
        self.size_error = size_error
        self.events: List[str] = []

    @property
    def location(self):
        return 'memory://backups'

    def add(self, name, modified, size=10):
        self.objects[name] = RemoteObject(name=name, modified=modified, size=size)

    def upload(self, local_path):
        self.events.append('upload')
        if self.fail_upload:
            raise ReplicationFailure('upload refused')
        local_path = Path(local_path)
        self.add(local_path.name, datetime.now() + timedelta(days=365), local_path.stat().st_size)
        return f"memory://backups/{local_path.name}"

    def remote_size(self, filename):
        self.events.append('verify')
        if self.size_error is not None:
            raise self.size_error
        if not self.report_size:
            return None
        return self.objects[filename].size + self.size_offset

    def list_files(self):
        self.events.append('list')
        return list(self.objects.values())

    def delete(self, filename):
        self.events.append(f'delete:{filename}')
        del self.objects[filename]

    def test_connection(self):
        self.events.append('test')
        if self.fail_connection:
            raise ReplicationFailure('unreachable')
        return True


def make_sqlite_db(path: Path, rows: int = 3):
    """Create a small valid SQLite database."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    try:
        conn.execute('CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)')
        conn.executemany('INSERT INTO items (name) VALUES (?)', [(f'item{i}',) for i in range(rows)])
        conn.commit()
    finally:
        conn.close()
    return path


def make_corrupt_db(path: Path):
    """Create a file that looks like a database by name but is not one."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b'this is definitely not an sqlite database' * 50)
    return path


@pytest.fixture
def make_config(tmp_path):
    """
    Factory building a Config rooted in tmp_path.

    Settle delays are zero, progress and pigz are off. Keyword arguments are
    raw KEY=value overrides.
    """
    def _make(**overrides):
        values = dict(DEFAULTS)
        values.update({
            'BACKUP_BASE_DIR': str(tmp_path / 'backups'),
            'LOG_DIR': str(tmp_path / 'logs'),
            'CONFIG_DIR': str(tmp_path / 'config'),
            'DATA_ROOT_BASE': str(tmp_path / 'opt'),
            'STOP_SETTLE_SECONDS': '0',
            'START_SETTLE_SECONDS': '0',
            'SHOW_PROGRESS': 'false',
            'PARALLEL_COMPRESSION': 'false',
            'MIN_FREE_SPACE_GB': '0',
        })
        values.update({k: str(v) for k, v in overrides.items()})
        return build_config(values)

    return _make


@pytest.fixture
def make_unit(tmp_path):
    """
    Factory creating a unit data root under <tmp>/opt/<name>.

    Creates config files, transient content that must be excluded,
    `good_dbs` valid databases and `bad_dbs` corrupt ones.
    """
    def _make(name='jellyfin', good_dbs=2, bad_dbs=0):
        root = tmp_path / 'opt' / name
        (root / 'config').mkdir(parents=True, exist_ok=True)
        (root / 'config' / 'system.xml').write_text('<ServerConfiguration />')
        (root / 'metadata' / 'library').mkdir(parents=True, exist_ok=True)
        (root / 'metadata' / 'library' / 'poster.jpg').write_bytes(os.urandom(2048))
        (root / 'cache' / 'images').mkdir(parents=True, exist_ok=True)
        (root / 'cache' / 'images' / 'resized.jpg').write_bytes(os.urandom(4096))
        (root / 'log').mkdir(exist_ok=True)
        (root / 'log' / 'server.log').write_text('log line\n')
        (root / 'transcodes').mkdir(exist_ok=True)
        (root / 'transcodes' / 'segment.ts').write_bytes(b'x' * 1000)
        (root / 'scratch.tmp').write_text('temp')

        for i in range(good_dbs):
            make_sqlite_db(root / 'data' / f'library{i}.db')
        for i in range(bad_dbs):
            make_corrupt_db(root / 'data' / f'broken{i}.db')
        return root

    return _make


@pytest.fixture
def fake_runtime():
    return FakeRuntime({'jellyfin': 'running'})


@pytest.fixture
def approver():
    return RecordingApprover(answer=True)


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays = []

    def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched class; its return value's open_sftp() yields a MagicMock.
    """
    with patch('guardian.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def artifact_file(tmp_path):
    """A small artifact file named like a real backup."""
    run_dir = tmp_path / 'backups' / '20240115_120000'
    run_dir.mkdir(parents=True)
    path = run_dir / 'jellyfin_20240115_120000.tar.gz'
    path.write_bytes(b'artifact data' * 100)
    return path


@pytest.fixture
def sqlite_db():
    """Factory for valid SQLite databases."""
    return make_sqlite_db


@pytest.fixture
def corrupt_db():
    """Factory for corrupt database files."""
    return make_corrupt_db
