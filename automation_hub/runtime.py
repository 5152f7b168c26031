"""
Runtime context.

AppContext bundles everything the monitor and the webhook app need: the
validated configuration, the shared Telegram client, the processor registry
and the application logger. It is built once at startup and passed in
explicitly; there are no module-level singletons.

Usage:
    >>> from automation_hub.runtime import build_app_context
    >>> context = build_app_context('config/config.yaml', '.env')
    >>> EmailMonitor(context).run(stop_event)
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from automation_hub.config import ConfigError, load_config
from automation_hub.config_schema import AppConfigSchema, WebhookConfig
from automation_hub.processors import ProcessorRegistry, default_torrent_webhook
from automation_hub.telegram_client import TelegramClient

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """
    Process-wide collaborators, built once at startup.

    Attributes:
        config: Validated configuration
        telegram: Shared notifier for email and webhook paths
        registry: Email processors in configuration order
        logger: Application logger
    """
    config: AppConfigSchema
    telegram: TelegramClient
    registry: ProcessorRegistry
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger('automation_hub'))

    @property
    def webhooks(self) -> List[WebhookConfig]:
        """
        Configured webhook routes.

        Falls back to the legacy qBittorrent route when no hooks are
        configured but telegram.chat_ids.torrent is set.
        """
        if self.config.hook:
            return list(self.config.hook)
        torrent_chat = self.config.telegram.chat_ids.get('torrent')
        if torrent_chat:
            return [default_torrent_webhook(torrent_chat)]
        return []


def build_telegram_client(config: AppConfigSchema) -> TelegramClient:
    telegram_config = config.telegram
    return TelegramClient(
        bot_token=telegram_config.resolve_bot_token(),
        api_url=telegram_config.api_url,
        timeout=telegram_config.timeout,
        max_retries=telegram_config.max_retries,
        retry_base_delay=telegram_config.retry_base_delay,
    )


def build_app_context(
    config_path: Union[str, Path] = 'config/config.yaml',
    env_path: Optional[Union[str, Path]] = '.env',
    config: Optional[AppConfigSchema] = None
) -> AppContext:
    """
    Load configuration (unless given) and construct the runtime context.

    Raises:
        ConfigError: If configuration is invalid or secrets are missing
    """
    if config is None:
        config = load_config(config_path, env_path)
    try:
        telegram = build_telegram_client(config)
        # fail at startup rather than on the first tick
        config.email.resolve_password()
    except ValueError as e:
        raise ConfigError(str(e)) from e

    registry = ProcessorRegistry.from_config(config.email.services, telegram)
    return AppContext(config=config, telegram=telegram, registry=registry)
