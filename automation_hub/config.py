"""
Configuration loading.

Reads config/config.yaml, loads secrets from a .env file, applies
environment variable overrides and validates the result against
AppConfigSchema.

Environment Variable Overrides:
    Scalar keys of the server, email, telegram and logging sections can be
    overridden with AUTOMATION_<SECTION>_<KEY> (uppercase, underscores).

    Examples:
        AUTOMATION_EMAIL_HOST=imap.custom.com
        AUTOMATION_EMAIL_POLLING_INTERVAL=30
        AUTOMATION_LOGGING_LEVEL=DEBUG
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from automation_hub.config_schema import AppConfigSchema

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUTOMATION_"

# Only these sections accept scalar overrides; services and hooks are lists
OVERRIDABLE_SECTIONS = ('server', 'email', 'telegram', 'logging')


class ConfigError(Exception):
    """
    Raised when configuration loading or validation fails.

    This exception is raised for:
    - Missing config files
    - Invalid YAML syntax
    - Schema validation failures (missing keys, bad values, duplicates)
    """
    pass


def load_yaml_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load and parse a YAML configuration file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Dictionary containing the parsed configuration

    Raises:
        ConfigError: If the file doesn't exist or contains invalid YAML
    """
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"YAML parse error: {e}")
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(config).__name__}")
    return config


def load_env_file(env_path: Optional[Union[str, Path]]) -> bool:
    """Load a .env file if it exists. Returns True when a file was loaded."""
    if env_path and os.path.exists(env_path):
        load_dotenv(env_path)
        logger.info(f"Loaded environment variables from {env_path}")
        return True
    return False


# Overrides of these fields are converted; everything else stays a string
INT_FIELDS = {
    'server': ['port'],
    'email': ['port', 'polling_interval', 'timeout', 'fetch_batch_size'],
    'telegram': ['max_retries', 'timeout'],
}
FLOAT_FIELDS = {
    'telegram': ['retry_base_delay'],
}
BOOL_FIELDS = {
    'server': ['enabled'],
}


def _convert_env_value(section: str, key: str, value: str) -> Any:
    """
    Convert an override string to the type of the field it targets.

    Raises:
        ConfigError: If a numeric field gets a non-numeric value
    """
    if key in INT_FIELDS.get(section, []):
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"Environment variable value for {section}.{key} must be an integer, got: {value}")

    if key in FLOAT_FIELDS.get(section, []):
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"Environment variable value for {section}.{key} must be a number, got: {value}")

    if key in BOOL_FIELDS.get(section, []):
        return value.lower() in ('true', '1', 'yes', 'on')

    return value


def apply_env_overrides(config_dict: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Apply AUTOMATION_<SECTION>_<KEY> overrides to a configuration dictionary.

    Args:
        config_dict: Configuration dictionary from YAML
        environ: Environment mapping (default: os.environ)

    Returns:
        Configuration dictionary with overrides applied

    Raises:
        ConfigError: If a numeric override is not a number
    """
    environ = os.environ if environ is None else environ
    overrides_applied = []

    for env_key, env_value in environ.items():
        if not env_key.startswith(ENV_PREFIX):
            continue

        parts = env_key[len(ENV_PREFIX):].split('_', 1)
        if len(parts) != 2:
            logger.warning(f"Invalid environment variable format: {env_key} (expected {ENV_PREFIX}<SECTION>_<KEY>)")
            continue

        section, key = parts[0].lower(), parts[1].lower()
        if section not in OVERRIDABLE_SECTIONS:
            logger.warning(f"Unknown configuration section in environment variable: {env_key}")
            continue

        section_dict = config_dict.setdefault(section, {})
        if not isinstance(section_dict, dict):
            continue
        section_dict[key] = _convert_env_value(section, key, env_value)
        # Secrets are not echoed to the log
        shown = '***' if 'password' in key or 'token' in key else section_dict[key]
        overrides_applied.append(f"{section}.{key}={shown}")

    if overrides_applied:
        logger.info(f"Applied {len(overrides_applied)} environment variable overrides: {', '.join(overrides_applied)}")

    return config_dict


def load_config(
    config_path: Union[str, Path] = "config/config.yaml",
    env_path: Optional[Union[str, Path]] = ".env"
) -> AppConfigSchema:
    """
    Load, override and validate the application configuration.

    Args:
        config_path: Path to the YAML configuration file
        env_path: Optional .env file with secrets (ignored when missing)

    Returns:
        Validated AppConfigSchema

    Raises:
        ConfigError: If the file is missing, malformed or fails validation
    """
    load_env_file(env_path)
    raw = load_yaml_config(config_path)
    raw = apply_env_overrides(raw)

    try:
        config = AppConfigSchema.model_validate(raw)
    except ValidationError as e:
        error_details = []
        for error in e.errors():
            field_path = '.'.join(str(loc) for loc in error['loc'])
            error_details.append(f"{field_path}: {error['msg']}")
        raise ConfigError(f"Configuration validation failed: {'; '.join(error_details)}") from e

    logger.info(
        f"Configuration loaded from {config_path}: "
        f"{len(config.email.services)} processor(s), {len(config.hook)} webhook(s)"
    )
    return config
