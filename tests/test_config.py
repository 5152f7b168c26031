"""
Tests for configuration loading, validation and the runtime context.
"""
import os

import pytest
import yaml

from automation_hub.config import (
    ConfigError,
    _convert_env_value,
    apply_env_overrides,
    load_config,
    load_env_file,
    load_yaml_config,
)
from automation_hub.config_schema import AppConfigSchema, EmailConfig, TelegramConfig
from automation_hub.runtime import build_app_context


def _write(tmp_path, data):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(data), encoding='utf-8')
    return path


def test_load_config_valid(config_file):
    config = load_config(config_file, env_path=None)

    assert isinstance(config, AppConfigSchema)
    assert [s.name for s in config.email.services] == ['cloudflare', 'perplexity', 'github']
    assert config.email.services[0].config.telegram_chat_id == '111'
    assert config.hook[0].path == '/webhook/qbitorrent'
    assert config.server.port == 8080


def test_load_yaml_config_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="Config file not found"):
        load_yaml_config(tmp_path / 'missing.yaml')


def test_load_yaml_config_invalid_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("email: [unclosed", encoding='utf-8')
    with pytest.raises(ConfigError, match="YAML parse error"):
        load_yaml_config(path)


def test_load_yaml_config_non_mapping(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("- just\n- a list\n", encoding='utf-8')
    with pytest.raises(ConfigError, match="must be a mapping"):
        load_yaml_config(path)


def test_missing_email_section(tmp_path):
    with pytest.raises(ConfigError, match="email"):
        load_config(_write(tmp_path, {'telegram': {'bot_token': 'x'}}), env_path=None)


def test_unknown_top_level_key(tmp_path, config_dict):
    config_dict['imap'] = {}
    with pytest.raises(ConfigError, match="imap"):
        load_config(_write(tmp_path, config_dict), env_path=None)


def test_duplicate_processor_names_rejected(tmp_path, config_dict):
    services = config_dict['email']['services']
    services.append({'name': 'CloudFlare', 'config': dict(services[0]['config'])})
    with pytest.raises(ConfigError, match="Duplicate processor name"):
        load_config(_write(tmp_path, config_dict), env_path=None)


def test_duplicate_webhook_paths_rejected(tmp_path, config_dict):
    config_dict['hook'].append(dict(config_dict['hook'][0], name='other'))
    with pytest.raises(ConfigError, match="Duplicate webhook paths"):
        load_config(_write(tmp_path, config_dict), env_path=None)


@pytest.mark.parametrize('template', ['No placeholder', 'Two %s and %s', 'Number %d'])
def test_processor_template_needs_one_placeholder(tmp_path, config_dict, template):
    config_dict['email']['services'][0]['config']['telegram_message'] = template
    with pytest.raises(ConfigError, match="placeholder"):
        load_config(_write(tmp_path, config_dict), env_path=None)


def test_webhook_template_needs_two_placeholders(tmp_path, config_dict):
    config_dict['hook'][0]['config']['telegram_message'] = 'Only %s'
    with pytest.raises(ConfigError, match="placeholder"):
        load_config(_write(tmp_path, config_dict), env_path=None)


def test_webhook_path_must_be_absolute(tmp_path, config_dict):
    config_dict['hook'][0]['path'] = 'webhook/qbitorrent'
    with pytest.raises(ConfigError, match="must start with '/'"):
        load_config(_write(tmp_path, config_dict), env_path=None)


def test_invalid_code_pattern_is_not_a_config_error(tmp_path, config_dict):
    config_dict['email']['services'][2]['config']['code_pattern'] = r'(\d{6'
    config = load_config(_write(tmp_path, config_dict), env_path=None)
    assert config.email.services[2].config.code_pattern == r'(\d{6'


@pytest.mark.parametrize('value', [0, None])
def test_polling_interval_defaults_to_60(tmp_path, config_dict, value):
    config_dict['email']['polling_interval'] = value
    config = load_config(_write(tmp_path, config_dict), env_path=None)
    assert config.email.polling_interval == 60


def test_single_subject_string_is_accepted(tmp_path, config_dict):
    config_dict['email']['services'][0]['config']['email_subject'] = 'yourdomain.com'
    config = load_config(_write(tmp_path, config_dict), env_path=None)
    assert config.email.services[0].config.email_subject == ['yourdomain.com']


def test_environment_override(config_file, monkeypatch):
    monkeypatch.setenv('AUTOMATION_EMAIL_POLLING_INTERVAL', '30')
    monkeypatch.setenv('AUTOMATION_SERVER_ENABLED', 'false')

    config = load_config(config_file, env_path=None)

    assert config.email.polling_interval == 30
    assert config.server.enabled is False


def test_apply_env_overrides_ignores_unknown_sections(caplog):
    config = {'email': {'host': 'imap.test.com'}}
    environ = {
        'AUTOMATION_EMAIL_HOST': 'imap.other.com',
        'AUTOMATION_HOOK_PATH': '/x',
        'AUTOMATION_BROKEN': '1',
        'PATH': '/usr/bin',
    }

    result = apply_env_overrides(config, environ)

    assert result == {'email': {'host': 'imap.other.com'}}
    assert "Unknown configuration section" in caplog.text
    assert "Invalid environment variable format" in caplog.text


def test_apply_env_overrides_masks_secrets(caplog):
    caplog.set_level('INFO', logger='automation_hub')
    apply_env_overrides({}, {'AUTOMATION_EMAIL_PASSWORD': 'hunter2'})
    assert 'hunter2' not in caplog.text
    assert 'email.password=***' in caplog.text


@pytest.mark.parametrize('section,key,raw,expected', [
    ('server', 'enabled', 'OFF', False),
    ('server', 'enabled', 'yes', True),
    ('email', 'polling_interval', '42', 42),
    ('telegram', 'retry_base_delay', '1.5', 1.5),
    ('email', 'host', 'imap.test.com', 'imap.test.com'),
    ('email', 'password', '123456', '123456'),
    ('email', 'username', '0042', '0042'),
    ('telegram', 'bot_token', 'true', 'true'),
])
def test_convert_env_value(section, key, raw, expected):
    assert _convert_env_value(section, key, raw) == expected


def test_convert_env_value_rejects_non_numeric_port():
    with pytest.raises(ConfigError, match="email.port must be an integer"):
        _convert_env_value('email', 'port', 'imaps')


def test_numeric_credentials_from_environment(config_file, monkeypatch):
    monkeypatch.setenv('AUTOMATION_EMAIL_PASSWORD', '123456')
    monkeypatch.setenv('AUTOMATION_EMAIL_USERNAME', '0042')

    config = load_config(config_file, env_path=None)

    assert config.email.password == '123456'
    assert config.email.username == '0042'


def test_load_env_file(tmp_path, monkeypatch):
    monkeypatch.setenv('HUB_TEST_SECRET', 'placeholder')
    monkeypatch.delenv('HUB_TEST_SECRET')
    env_file = tmp_path / '.env'
    env_file.write_text('HUB_TEST_SECRET=loaded\n', encoding='utf-8')

    assert load_env_file(env_file) is True
    assert load_env_file(tmp_path / 'missing.env') is False
    assert load_env_file(None) is False

    assert os.environ['HUB_TEST_SECRET'] == 'loaded'


class TestServerAddress:
    def test_address_sets_host_and_port(self, tmp_path, config_dict):
        config_dict['server'] = {'address': '127.0.0.1:9090'}
        config = load_config(_write(tmp_path, config_dict), env_path=None)
        assert (config.server.host, config.server.port) == ('127.0.0.1', 9090)

    def test_address_without_host_binds_all_interfaces(self, tmp_path, config_dict):
        config_dict['server'] = {'address': ':8081'}
        config = load_config(_write(tmp_path, config_dict), env_path=None)
        assert (config.server.host, config.server.port) == ('0.0.0.0', 8081)

    def test_malformed_address(self, tmp_path, config_dict):
        config_dict['server'] = {'address': 'localhost'}
        with pytest.raises(ConfigError, match="host:port"):
            load_config(_write(tmp_path, config_dict), env_path=None)

    def test_unknown_server_key(self, tmp_path, config_dict):
        config_dict['server']['listen'] = ':8080'
        with pytest.raises(ConfigError, match="listen"):
            load_config(_write(tmp_path, config_dict), env_path=None)


class TestSecrets:
    def test_inline_password_wins(self, monkeypatch):
        monkeypatch.setenv('EMAIL_PASSWORD', 'from-env')
        config = EmailConfig(host='h', username='u', password='inline')
        assert config.resolve_password() == 'inline'

    def test_password_from_named_env_var(self, monkeypatch):
        monkeypatch.setenv('MY_IMAP_PASSWORD', 'from-env')
        config = EmailConfig(host='h', username='u', password_env='MY_IMAP_PASSWORD')
        assert config.resolve_password() == 'from-env'

    def test_missing_password(self, monkeypatch):
        monkeypatch.delenv('EMAIL_PASSWORD', raising=False)
        with pytest.raises(ValueError, match="EMAIL_PASSWORD"):
            EmailConfig(host='h', username='u').resolve_password()

    def test_bot_token_from_env(self, monkeypatch):
        monkeypatch.setenv('TELEGRAM_BOT_TOKEN', 'env-token')
        assert TelegramConfig().resolve_bot_token() == 'env-token'

    def test_email_repr_hides_password(self):
        assert 'inline-secret' not in repr(EmailConfig(host='h', username='u', password='inline-secret'))


class TestBuildAppContext:
    def test_builds_registry_and_client(self, config_file):
        context = build_app_context(config_file, env_path=None)

        assert [p.name for p in context.registry] == ['cloudflare', 'perplexity', 'github']
        assert context.telegram.bot_token == 'TEST-TOKEN'
        assert context.telegram.max_retries == 3
        assert [hook.name for hook in context.webhooks] == ['qbittorrent']

    def test_missing_bot_token_is_config_error(self, tmp_path, config_dict, monkeypatch):
        monkeypatch.delenv('TELEGRAM_BOT_TOKEN', raising=False)
        del config_dict['telegram']['bot_token']
        with pytest.raises(ConfigError, match="bot token"):
            build_app_context(_write(tmp_path, config_dict), env_path=None)

    def test_missing_password_is_config_error(self, tmp_path, config_dict, monkeypatch):
        monkeypatch.delenv('EMAIL_PASSWORD', raising=False)
        del config_dict['email']['password']
        with pytest.raises(ConfigError, match="password"):
            build_app_context(_write(tmp_path, config_dict), env_path=None)

    def test_accepts_preloaded_config(self, app_config):
        context = build_app_context(config=app_config)
        assert context.config is app_config
