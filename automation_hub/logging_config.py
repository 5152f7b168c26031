"""
Logging Configuration Module

Centralized logging setup for automation-hub. init_logging() is called once
at startup (by the CLI) and configures the 'automation_hub' logger; every
module logs through logging.getLogger(__name__) and inherits its handlers.

Key Features:
    - Plain text and JSON formats
    - Optional rotating log file
    - Context fields (correlation_id, processor) on every record
    - Environment and runtime overrides

Usage:
    >>> from automation_hub.logging_config import init_logging
    >>> init_logging()
    >>> init_logging(overrides={'level': 'DEBUG', 'format': 'json'})
"""
import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from automation_hub.logging_context import get_logging_context

ROOT_LOGGER_NAME = 'automation_hub'

DEFAULT_CONFIG = {
    'level': 'INFO',
    'format': 'plain',  # 'plain' or 'json'
    'file': None,
    'max_bytes': 10 * 1024 * 1024,  # 10MB
    'backup_count': 5,
}

# Environment variable overrides
ENV_VAR_MAPPING = {
    'LOG_LEVEL': 'level',
    'LOG_FORMAT': 'format',
    'LOG_FILE': 'file',
}

PLAIN_FORMAT = '%(asctime)s %(levelname)-8s [%(correlation_id)s] [%(processor)s] [%(component)s] %(message)s'


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Formats log records as one JSON object per line with context fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'message': record.getMessage(),
            'component': getattr(record, 'component', record.name),
        }

        for field in ('correlation_id', 'processor'):
            value = getattr(record, field, None)
            if value not in (None, '-'):
                log_data[field] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Adds correlation_id, processor and component fields to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_logging_context()
        record.correlation_id = context.get('correlation_id', '-')
        record.processor = context.get('processor', '-')
        if not hasattr(record, 'component'):
            # Last part of the module path, e.g. 'monitor' from 'automation_hub.monitor'
            record.component = record.name.rsplit('.', 1)[-1]
        return True


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    config = config.copy()
    for env_var, key in ENV_VAR_MAPPING.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        if key == 'level':
            config[key] = env_value.upper()
        elif key == 'format':
            config[key] = env_value.lower()
        else:
            config[key] = env_value
    return config


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == 'json':
        return JSONFormatter()
    return logging.Formatter(fmt=PLAIN_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def _setup_handlers(logger: logging.Logger, config: Dict[str, Any]) -> None:
    context_filter = ContextFilter()
    level = getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO)
    formatter = _build_formatter(config.get('format', 'plain'))

    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(context_filter)
    logger.addHandler(console_handler)

    if config.get('file'):
        file_path = Path(config['file'])
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            str(file_path),
            maxBytes=config.get('max_bytes', DEFAULT_CONFIG['max_bytes']),
            backupCount=config.get('backup_count', DEFAULT_CONFIG['backup_count']),
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        logger.addHandler(file_handler)


def init_logging(overrides: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """
    Initialize the application's logging configuration.

    Precedence (lowest to highest): defaults, LOG_* environment variables,
    runtime overrides (usually the logging section of the config file and
    CLI flags).

    Args:
        overrides: Optional dictionary, e.g. {'level': 'DEBUG', 'file': 'logs/hub.log'}

    Returns:
        The configured 'automation_hub' logger
    """
    config = _apply_env_overrides(DEFAULT_CONFIG)
    if overrides:
        config.update({k: v for k, v in overrides.items() if v is not None})

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    root_logger.setLevel(getattr(logging, str(config.get('level', 'INFO')).upper(), logging.INFO))
    root_logger.propagate = False
    _setup_handlers(root_logger, config)

    root_logger.debug(f"Logging initialized: level={config.get('level')}, format={config.get('format')}")
    return root_logger
