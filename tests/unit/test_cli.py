"""
Unit tests for the command line interface (guardian/cli.py).
"""

import logging
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from guardian import __version__
from guardian.cli import cli
from guardian.config import write_config_file


@pytest.fixture(autouse=True)
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def env(tmp_path):
    main_config = tmp_path / 'guardian.conf'
    remote_config = tmp_path / 'remote.conf'
    write_config_file(main_config, {})
    write_config_file(remote_config, {})
    return {
        'GUARDIAN_CONFIG': str(main_config),
        'GUARDIAN_REMOTE_CONFIG': str(remote_config),
        'BACKUP_BASE_DIR': str(tmp_path / 'backups'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'CONFIG_DIR': str(tmp_path / 'config'),
        'DATA_ROOT_BASE': str(tmp_path / 'opt'),
        'STOP_SETTLE_SECONDS': '0',
        'START_SETTLE_SECONDS': '0',
        'SHOW_PROGRESS': 'false',
        'PARALLEL_COMPRESSION': 'false',
        'MIN_FREE_SPACE_GB': '0',
    }


@pytest.fixture
def invoke(env, fake_runtime):
    def _invoke(*args, input=None, runtime=None):
        runner = CliRunner()
        return runner.invoke(
            cli, list(args), obj={'runtime': runtime or fake_runtime}, env=env, input=input
        )

    return _invoke


class TestModes:

    def test_version(self, invoke):
        result = invoke('--version')

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_no_mode_prints_help(self, invoke):
        result = invoke()

        assert result.exit_code == 2
        assert '--container' in result.output

    def test_unknown_option_is_usage_error(self, invoke):
        result = invoke('--frobnicate')

        assert result.exit_code == 2

    def test_configuration_error_exits_2(self, invoke, env):
        env['COMPRESSION_LEVEL'] = '12'

        result = invoke('--list')

        assert result.exit_code == 2
        assert 'COMPRESSION_LEVEL' in result.output

    def test_list(self, invoke, fake_runtime):
        fake_runtime.states['jellyfin-test'] = 'exited'

        result = invoke('--list')

        assert result.exit_code == 0
        assert 'jellyfin ' in result.output
        assert 'jellyfin-test' in result.output

    def test_docker_unavailable(self, invoke, fake_runtime):
        fake_runtime.available = False

        result = invoke('--list')

        assert result.exit_code == 1
        assert 'Docker is not running' in result.output

    def test_history_without_backups(self, invoke):
        result = invoke('--history')

        assert result.exit_code == 0
        assert 'No backups found' in result.output

    def test_test_remote_when_disabled(self, invoke):
        assert invoke('--test-remote').exit_code == 1


class TestBackup:

    def test_container_backup_with_confirmation(self, invoke, make_unit, fake_runtime, tmp_path):
        make_unit('jellyfin')

        result = invoke('--container', 'jellyfin', input='y\n')

        assert result.exit_code == 0, result.output
        assert fake_runtime.called('stop') and fake_runtime.called('start')
        assert len(list((tmp_path / 'backups').rglob('jellyfin_*.tar.gz'))) == 1

    def test_declined_confirmation_fails(self, invoke, make_unit, fake_runtime, tmp_path):
        make_unit('jellyfin')

        result = invoke('--container', 'jellyfin', input='n\n')

        assert result.exit_code == 1
        assert fake_runtime.called('stop') == []
        assert list((tmp_path / 'backups').rglob('*.tar.gz')) == []

    def test_non_interactive_no_compress(self, invoke, make_unit, tmp_path):
        make_unit('jellyfin')

        result = invoke('-c', 'jellyfin', '-y', '--no-compress')

        assert result.exit_code == 0, result.output
        assert len(list((tmp_path / 'backups').rglob('jellyfin_*.tar'))) == 1

    def test_backup_dir_override(self, invoke, make_unit, tmp_path):
        make_unit('jellyfin')

        result = invoke('-c', 'jellyfin', '-y', '--backup-dir', str(tmp_path / 'elsewhere'))

        assert result.exit_code == 0, result.output
        assert len(list((tmp_path / 'elsewhere').rglob('jellyfin_*.tar.gz'))) == 1

    def test_failed_backup_exits_1(self, invoke, make_unit):
        make_unit('jellyfin', good_dbs=1, bad_dbs=1)

        result = invoke('-c', 'jellyfin', '-y')

        assert result.exit_code == 1

    def test_no_verify_skips_integrity(self, invoke, make_unit):
        make_unit('jellyfin', good_dbs=1, bad_dbs=1)

        result = invoke('-c', 'jellyfin', '-y', '--no-verify')

        assert result.exit_code == 0, result.output

    def test_dry_run(self, invoke, make_unit, fake_runtime, tmp_path):
        make_unit('jellyfin')

        result = invoke('-c', 'jellyfin', '--dry-run')

        assert result.exit_code == 0, result.output
        assert fake_runtime.called('stop') == []
        assert not (tmp_path / 'backups').exists()

    def test_all(self, invoke, make_unit, fake_runtime, tmp_path):
        fake_runtime.states['jellyfin2'] = 'exited'
        make_unit('jellyfin')
        make_unit('jellyfin2')

        result = invoke('--all', '-y')

        assert result.exit_code == 0, result.output
        assert len(list((tmp_path / 'backups').rglob('*.tar.gz'))) == 2

    def test_all_without_matches(self, invoke, fake_runtime):
        fake_runtime.states = {'postgres': 'running'}
        fake_runtime.images = {'postgres': 'postgres:16'}

        assert invoke('--all', '-y').exit_code == 1


class TestCleanup:

    def test_cleanup_requires_phrase(self, invoke, tmp_path):
        run_dir = tmp_path / 'backups' / '20240115_120000'
        run_dir.mkdir(parents=True)
        (run_dir / 'jellyfin_20240115_120000.tar.gz').write_bytes(b'x')

        declined = invoke('--cleanup', input='yes\n')
        assert declined.exit_code == 0
        assert run_dir.exists()

        accepted = invoke('--cleanup', input='DELETE ALL\n')
        assert accepted.exit_code == 0
        assert not run_dir.exists()

    def test_cleanup_non_interactive_refused(self, invoke, tmp_path):
        run_dir = tmp_path / 'backups' / '20240115_120000'
        run_dir.mkdir(parents=True)
        (run_dir / 'jellyfin_20240115_120000.tar.gz').write_bytes(b'x')

        invoke('--cleanup', '-y')

        assert run_dir.exists()


class TestSchedule:

    def test_schedule_runs_scheduler(self, invoke):
        with patch('guardian.scheduler.run_scheduled') as run_scheduled:
            result = invoke('--schedule', '0 3 * * *')

        assert result.exit_code == 0, result.output
        assert run_scheduled.call_args.args[0] == '0 3 * * *'

    def test_invalid_schedule(self, invoke):
        result = invoke('--schedule', 'every night')

        assert result.exit_code == 2
        assert 'Invalid cron expression' in result.output
