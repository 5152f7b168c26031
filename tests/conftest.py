"""
Test fixtures for automation-hub tests.

This module provides:
- Configuration fixtures (dict, YAML file, validated schema)
- A mocked Telegram client and an AppContext built around it
- Email factories
- Isolation of environment overrides and of the application logger
"""
import logging
import os
from unittest.mock import Mock

import pytest
import yaml

from automation_hub.config_schema import AppConfigSchema
from automation_hub.models import Email
from automation_hub.processors import ProcessorRegistry
from automation_hub.runtime import AppContext
from automation_hub.telegram_client import TelegramClient

# ============================================================================
# Isolation
# ============================================================================

@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Drop override variables from the developer's shell."""
    for key in list(os.environ):
        if key.startswith('AUTOMATION_') or key in ('LOG_LEVEL', 'LOG_FORMAT', 'LOG_FILE'):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_app_logger():
    """init_logging() detaches the app logger from root; undo it so caplog keeps working."""
    yield
    app_logger = logging.getLogger('automation_hub')
    for handler in app_logger.handlers[:]:
        handler.close()
        app_logger.removeHandler(handler)
    app_logger.propagate = True
    app_logger.setLevel(logging.NOTSET)


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def config_dict():
    """Return a complete configuration dictionary with three processors and one webhook."""
    return {
        'server': {'host': '127.0.0.1', 'port': 8080, 'enabled': True},
        'email': {
            'host': 'imap.test.com',
            'port': 993,
            'username': 'me@test.com',
            'password': 'imap-secret',
            'polling_interval': 60,
            'services': [
                {
                    'name': 'cloudflare',
                    'config': {
                        'email_from': 'notify.cloudflare.com',
                        'email_subject': ['yourdomain.com'],
                        'telegram_chat_id': 111,
                        'telegram_message': 'Cloudflare code: `%s`',
                    },
                },
                {
                    'name': 'perplexity',
                    'config': {
                        'email_from': 'perplexity.ai',
                        'email_subject': ['Sign in to Perplexity', 'Inicia sesión'],
                        'telegram_chat_id': '222',
                        'telegram_message': 'Perplexity code: `%s`',
                    },
                },
                {
                    'name': 'github',
                    'config': {
                        'email_from': 'github.com',
                        'email_subject': ['verification code'],
                        'telegram_chat_id': '333',
                        'telegram_message': 'GitHub code: `%s`',
                        'code_pattern': r'\b\d{6}\b',
                    },
                },
            ],
        },
        'telegram': {
            'bot_token': 'TEST-TOKEN',
            'chat_ids': {'torrent': '444'},
        },
        'hook': [
            {
                'name': 'qbittorrent',
                'path': '/webhook/qbitorrent',
                'config': {'telegram_chat_id': '444', 'telegram_message': 'Done: %s at %s'},
            },
        ],
        'logging': {'level': 'INFO', 'format': 'plain'},
    }


@pytest.fixture
def config_file(tmp_path, config_dict):
    """Write config_dict to a temporary config.yaml and return its path."""
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(config_dict, allow_unicode=True), encoding='utf-8')
    return path


@pytest.fixture
def app_config(config_dict):
    return AppConfigSchema.model_validate(config_dict)


# ============================================================================
# Runtime Fixtures
# ============================================================================

@pytest.fixture
def mock_telegram():
    """TelegramClient double; send_message succeeds unless a test sets side_effect."""
    telegram = Mock(spec=TelegramClient)
    telegram.send_message.return_value = {'ok': True}
    return telegram


@pytest.fixture
def app_context(app_config, mock_telegram):
    registry = ProcessorRegistry.from_config(app_config.email.services, mock_telegram)
    return AppContext(config=app_config, telegram=mock_telegram, registry=registry)


@pytest.fixture
def make_email():
    """Factory for Email objects with sensible defaults."""
    counter = {'uid': 100}

    def _make(sender='noreply@notify.cloudflare.com', subject='yourdomain.com code',
              body='Your code is 482913', uid=None, flags=()):
        counter['uid'] += 1
        return Email(
            uid=uid or str(counter['uid']),
            subject=subject,
            sender=sender,
            text_plain=body,
            message_id=f"<{counter['uid']}@test>",
            flags=flags,
        )

    return _make
