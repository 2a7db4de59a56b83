"""
Unit tests for the process entrypoint (vaultkeeper/main.py).

Tests startup validation and exit codes.
"""

from unittest.mock import AsyncMock, patch

import pytest

from vaultkeeper import main as main_module
from vaultkeeper.backup.storage import StorageError
from vaultkeeper.config import ConfigError, StorageSettings


@pytest.fixture
def entrypoint(clean_env, tmp_path):
    """Patch everything main() reaches outside of configuration."""
    clean_env.setenv('BACKUP_WORK_DIR', str(tmp_path / 'work'))

    with patch.object(main_module, 'load_dotenv'), \
            patch.object(main_module, 'configure_logging') as mock_logging, \
            patch.object(main_module, 'run_backups', new=AsyncMock(return_value=[])) as mock_run, \
            patch.object(main_module, 'init_scheduler') as mock_init, \
            patch.object(main_module, 'start_scheduler') as mock_start, \
            patch.object(main_module, 'stop_scheduler') as mock_stop, \
            patch.object(main_module, 'create_storage') as mock_storage:
        yield {
            'env': clean_env,
            'create_storage': mock_storage,
            'configure_logging': mock_logging,
            'run_backups': mock_run,
            'init_scheduler': mock_init,
            'start_scheduler': mock_start,
            'stop_scheduler': mock_stop,
        }


class TestMain:
    """Test main() exit codes and dispatch."""

    def test_no_trigger_exits_1(self, entrypoint):
        entrypoint['env'].setenv('AWS_S3_BUCKET', 'bucket')

        assert main_module.main() == 1
        entrypoint['init_scheduler'].assert_not_called()
        entrypoint['run_backups'].assert_not_called()

    def test_cloud_without_bucket_exits_1(self, entrypoint):
        entrypoint['env'].setenv('RUN_ON_STARTUP', 'true')

        assert main_module.main() == 1
        entrypoint['run_backups'].assert_not_called()

    def test_r2_without_endpoint_exits_1(self, entrypoint):
        entrypoint['env'].setenv('CRON_JOB_INTERVAL', '0 2 * * *')
        entrypoint['env'].setenv('AWS_S3_BUCKET', 'bucket')
        entrypoint['env'].setenv('STORAGE_PROVIDER', 'r2')

        assert main_module.main() == 1

    def test_malformed_setting_exits_1(self, entrypoint):
        entrypoint['env'].setenv('DOWNLOAD_BATCH_SIZE', 'lots')

        assert main_module.main() == 1
        entrypoint['configure_logging'].assert_called_once_with()

    def test_run_once_without_schedule(self, entrypoint):
        entrypoint['env'].setenv('RUN_ON_STARTUP', 'true')
        entrypoint['env'].setenv('BACKUP_STORAGE', 'local')
        entrypoint['env'].setenv('LOG_LEVEL', 'DEBUG')

        assert main_module.main() == 0

        entrypoint['run_backups'].assert_awaited_once()
        entrypoint['init_scheduler'].assert_not_called()
        entrypoint['configure_logging'].assert_called_once_with('DEBUG', None)

    def test_scheduled_mode(self, entrypoint):
        entrypoint['env'].setenv('CRON_JOB_INTERVAL', '0 2 * * *')
        entrypoint['env'].setenv('AWS_S3_BUCKET', 'bucket')

        assert main_module.main() == 0

        config = entrypoint['init_scheduler'].call_args[0][0]
        assert config.cron_expression == '0 2 * * *'
        entrypoint['start_scheduler'].assert_called_once()
        entrypoint['run_backups'].assert_not_called()

    def test_invalid_cron_exits_1(self, entrypoint):
        entrypoint['env'].setenv('CRON_JOB_INTERVAL', 'every night')
        entrypoint['env'].setenv('AWS_S3_BUCKET', 'bucket')
        entrypoint['init_scheduler'].side_effect = ConfigError('Invalid CRON_JOB_INTERVAL format')

        assert main_module.main() == 1
        entrypoint['start_scheduler'].assert_not_called()

    def test_interrupt_stops_scheduler(self, entrypoint):
        entrypoint['env'].setenv('CRON_JOB_INTERVAL', '0 2 * * *')
        entrypoint['env'].setenv('AWS_S3_BUCKET', 'bucket')
        entrypoint['start_scheduler'].side_effect = KeyboardInterrupt

        assert main_module.main() == 0
        entrypoint['stop_scheduler'].assert_called_once()


class TestStorageCheck:
    """Test the startup bucket check."""

    def test_cloud_mode_checks_bucket(self, entrypoint):
        entrypoint['env'].setenv('CRON_JOB_INTERVAL', '0 2 * * *')
        entrypoint['env'].setenv('AWS_S3_BUCKET', 'bucket')

        assert main_module.main() == 0

        entrypoint['create_storage'].assert_called_once()
        entrypoint['create_storage'].return_value.test_connection.assert_called_once_with()

    def test_local_mode_skips_check(self, entrypoint):
        entrypoint['env'].setenv('RUN_ON_STARTUP', 'true')
        entrypoint['env'].setenv('BACKUP_STORAGE', 'local')

        assert main_module.main() == 0

        entrypoint['create_storage'].assert_not_called()

    def test_failed_check_is_not_fatal(self, entrypoint, caplog):
        entrypoint['env'].setenv('RUN_ON_STARTUP', 'true')
        entrypoint['env'].setenv('AWS_S3_BUCKET', 'bucket')
        entrypoint['create_storage'].return_value.test_connection.side_effect = \
            StorageError('Bucket does not exist: bucket')

        with caplog.at_level('WARNING', logger='vaultkeeper.main'):
            assert main_module.main() == 0

        entrypoint['run_backups'].assert_awaited_once()
        assert 'Bucket does not exist' in caplog.text

    def test_check_storage_against_moto(self, mock_s3, make_config):
        def settings(bucket):
            return StorageSettings(bucket=bucket, region='us-east-1',
                                   access_key='test_key', secret_key='test_secret')

        assert main_module.check_storage(make_config(storage=settings('test-bucket'))) is True
        assert main_module.check_storage(make_config(storage=settings('absent'))) is False
