"""Tests for configuration loading and logging setup."""

import logging

from sitara_crm.utils.config import PersistenceConfig, load_config
from sitara_crm.utils.logging import setup_logging, setup_logging_from_config


def write_yaml(path, text):
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_reads_yaml(self, tmp_path):
        config_path = write_yaml(tmp_path / 'config.yaml', """
api:
  url: http://example.test/api
backups:
  max_backups: 7
""")
        config = load_config(config_path, env_path=tmp_path / 'missing.env')

        assert config['api']['url'] == 'http://example.test/api'
        assert config['backups']['max_backups'] == 7
        assert config['storage']['path'] == './data/sitara_crm.db'

    def test_expands_env_references(self, tmp_path, monkeypatch):
        monkeypatch.setenv('CRM_HOST_URL', 'http://from-env.test/api')
        config_path = write_yaml(tmp_path / 'config.yaml', "api:\n  url: ${CRM_HOST_URL}\n")

        config = load_config(config_path, env_path=tmp_path / 'missing.env')

        assert config['api']['url'] == 'http://from-env.test/api'

    def test_env_overrides_win(self, tmp_path, env_vars):
        config_path = write_yaml(tmp_path / 'config.yaml', "api:\n  url: http://yaml.test/api\n")

        config = load_config(config_path, env_path=tmp_path / 'missing.env')

        assert config['api']['url'] == 'http://crm.test/api'
        assert config['storage']['path'].endswith('env.db')
        assert config['logging']['level'] == 'DEBUG'

    def test_dotenv_file_loaded(self, tmp_path, monkeypatch):
        monkeypatch.delenv('SITARA_MAX_BACKUPS', raising=False)
        env_path = write_yaml(tmp_path / '.env', "SITARA_MAX_BACKUPS=4\n")

        config = load_config(tmp_path / 'none.yaml', env_path=env_path)
        monkeypatch.delenv('SITARA_MAX_BACKUPS', raising=False)

        assert config['backups']['max_backups'] == '4'
        assert PersistenceConfig.from_config(config).MAX_BACKUPS == 4

    def test_every_backup_setting_overridable(self, tmp_path, monkeypatch):
        monkeypatch.setenv('SITARA_QUOTA_PRUNE_KEEP', '1')
        monkeypatch.setenv('SITARA_LOG_BACKUP_COUNT', '9')

        settings = PersistenceConfig.from_config(load_config(tmp_path / 'none.yaml', env_path=tmp_path / 'missing.env'))

        assert settings.QUOTA_PRUNE_KEEP == 1
        assert settings.LOG_BACKUP_COUNT == 9


class TestPersistenceConfig:
    def test_defaults(self):
        config = PersistenceConfig.from_config({})
        assert config.MAX_BACKUPS == 10
        assert config.QUOTA_PRUNE_KEEP == 3
        assert config.MIGRATION_TIMEOUT == 60.0
        assert config.LOAD_TIMEOUT == 30.0
        assert config.AUTO_MIGRATE is True
        assert config.validate() == []

    def test_string_values_coerced(self):
        config = PersistenceConfig.from_config({
            'timeouts': {'probe': '2.5'},
            'storage': {'capacity_bytes': '2048'},
            'migration': {'auto_migrate': 'no'},
        })
        assert config.PROBE_TIMEOUT == 2.5
        assert config.STORAGE_CAPACITY_BYTES == 2048
        assert config.AUTO_MIGRATE is False

    def test_validate_reports_every_problem(self):
        config = PersistenceConfig(
            API_URL='crm.local',
            PROBE_TIMEOUT=0,
            MAX_BACKUPS=2,
            QUOTA_PRUNE_KEEP=5,
            LOG_LEVEL='LOUD',
        )
        errors = config.validate()
        assert len(errors) == 4


class TestLogging:
    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / 'logs' / 'sitara.log'
        logger = setup_logging('debug', str(log_file))

        logging.getLogger('sitara_crm.tests').info('hello from tests')
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
        assert 'hello from tests' in log_file.read_text()

        # Reconfiguring replaces handlers instead of stacking them
        assert len(setup_logging('INFO').handlers) == 1

    def test_http_client_loggers_quieted(self):
        setup_logging('DEBUG')
        assert logging.getLogger('httpx').level == logging.WARNING
        assert logging.getLogger('httpcore').level == logging.WARNING

    def test_setup_from_settings(self, tmp_path):
        settings = PersistenceConfig.from_config({
            'logging': {'level': 'warning', 'file': str(tmp_path / 'crm.log'), 'max_size_mb': '2', 'backup_count': 1},
        })

        logger = setup_logging_from_config(settings)

        assert logger.level == logging.WARNING
        rotating = [h for h in logger.handlers if hasattr(h, 'maxBytes')]
        assert rotating[0].maxBytes == 2 * 1024 * 1024
        assert rotating[0].backupCount == 1
        setup_logging('INFO')
