"""
Configuration Schema

Pydantic models describing config/config.yaml. The loader in config.py
parses the YAML, applies environment overrides and validates the result
against AppConfigSchema.

Sections:
    server   - inbound webhook HTTP server
    email    - mailbox credentials, polling and the ordered processor list
    telegram - bot credentials and delivery retry settings
    hook     - ordered list of webhook routes
    logging  - log level, format and optional file
"""
import os
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_POLLING_INTERVAL = 60


def _check_template(template: str, placeholders: int) -> str:
    """Ensure a printf-style template renders with the given argument count."""
    try:
        template % (('x',) * placeholders)
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"Template must contain exactly {placeholders} '%s' placeholder(s): {template!r} ({e})"
        )
    return template


class ServerConfig(BaseModel):
    """Webhook HTTP server section."""
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8080, description="Bind port")
    enabled: bool = Field(default=True, description="Start the webhook server with `run`")

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode='before')
    @classmethod
    def split_address(cls, data):
        """Accept the older `address: "host:port"` form (":8080" binds all interfaces)."""
        if not isinstance(data, dict) or 'address' not in data:
            return data
        data = dict(data)
        address = str(data.pop('address') or '')
        host, sep, port = address.rpartition(':')
        if not sep or not port.isdigit():
            raise ValueError(f"Server address must look like 'host:port', got {address!r}")
        data.setdefault('host', host or "0.0.0.0")
        data.setdefault('port', int(port))
        return data

    @field_validator('port')
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v


class ServiceProcessorConfig(BaseModel):
    """Matching, extraction and notification settings of one email processor."""
    email_from: str = Field(default="", description="Substring the sender address must contain")
    email_subject: List[str] = Field(default_factory=list, description="Subject substrings (match any)")
    telegram_chat_id: str = Field(..., description="Destination chat id")
    telegram_message: str = Field(..., description="Message template with one %s placeholder for the code")
    code_pattern: Optional[str] = Field(default=None, description="Optional custom extraction regex")

    @field_validator('telegram_chat_id', mode='before')
    @classmethod
    def coerce_chat_id(cls, v):
        # YAML reads unquoted chat ids as integers
        return str(v) if isinstance(v, int) else v

    @field_validator('email_subject', mode='before')
    @classmethod
    def coerce_subjects(cls, v):
        if isinstance(v, str):
            return [v]
        return v

    @field_validator('telegram_message')
    @classmethod
    def validate_message(cls, v: str) -> str:
        return _check_template(v, 1)


class ServiceConfig(BaseModel):
    """One named email processor definition."""
    name: str
    config: ServiceProcessorConfig

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Processor name cannot be empty")
        return v.strip()


class EmailConfig(BaseModel):
    """Mailbox section."""
    host: str = Field(..., description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP port (993 SSL, 143 STARTTLS)")
    username: str = Field(..., description="Mailbox username")
    password: Optional[str] = Field(default=None, repr=False, description="Inline password (prefer password_env)")
    password_env: str = Field(default="EMAIL_PASSWORD", description="Environment variable holding the password")
    mailbox: str = Field(default="INBOX", description="Folder to watch")
    polling_interval: int = Field(default=DEFAULT_POLLING_INTERVAL, description="Seconds between ticks")
    timeout: int = Field(default=30, description="IMAP socket timeout in seconds")
    fetch_batch_size: int = Field(default=20, description="UIDs per FETCH command")
    services: List[ServiceConfig] = Field(default_factory=list)

    @field_validator('port')
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError(f"Port must be between 1 and 65535, got {v}")
        return v

    @field_validator('polling_interval', mode='before')
    @classmethod
    def default_polling_interval(cls, v):
        # 0 or null means "use the default", as in older configs
        if v in (None, 0, '0', ''):
            return DEFAULT_POLLING_INTERVAL
        return v

    @field_validator('polling_interval', 'timeout', 'fetch_batch_size')
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v

    @field_validator('services')
    @classmethod
    def validate_unique_names(cls, v: List[ServiceConfig]) -> List[ServiceConfig]:
        seen = set()
        for service in v:
            key = service.name.lower()
            if key in seen:
                raise ValueError(f"Duplicate processor name (case-insensitive): {service.name}")
            seen.add(key)
        return v

    def resolve_password(self) -> str:
        """
        Return the mailbox password.

        The inline `password` wins; otherwise the variable named by
        `password_env` is read.

        Raises:
            ValueError: If no password is available
        """
        if self.password:
            return self.password
        password = os.environ.get(self.password_env)
        if not password:
            raise ValueError(
                f"Mailbox password not set: define 'password' or environment variable {self.password_env}"
            )
        return password


class TelegramConfig(BaseModel):
    """Notification channel section."""
    bot_token: Optional[str] = Field(default=None, repr=False)
    bot_token_env: str = Field(default="TELEGRAM_BOT_TOKEN")
    api_url: str = Field(default="https://api.telegram.org")
    chat_ids: Dict[str, str] = Field(default_factory=dict)
    max_retries: int = Field(default=3, description="Delivery attempts per message")
    retry_base_delay: float = Field(default=1.0, description="Backoff before the 2nd attempt, doubled after")
    timeout: int = Field(default=30, description="HTTP timeout in seconds")

    @field_validator('chat_ids', mode='before')
    @classmethod
    def coerce_chat_ids(cls, v):
        if isinstance(v, dict):
            return {k: str(val) for k, val in v.items()}
        return v

    @field_validator('max_retries', 'timeout')
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v

    @field_validator('retry_base_delay')
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"retry_base_delay cannot be negative, got {v}")
        return v

    def resolve_bot_token(self) -> str:
        if self.bot_token:
            return self.bot_token
        token = os.environ.get(self.bot_token_env)
        if not token:
            raise ValueError(
                f"Telegram bot token not set: define 'bot_token' or environment variable {self.bot_token_env}"
            )
        return token


class WebhookProcessorConfig(BaseModel):
    """Destination and template of one webhook route."""
    telegram_chat_id: str
    telegram_message: str = Field(..., description="Template with two %s placeholders: name, path")

    @field_validator('telegram_chat_id', mode='before')
    @classmethod
    def coerce_chat_id(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator('telegram_message')
    @classmethod
    def validate_message(cls, v: str) -> str:
        return _check_template(v, 2)


class WebhookConfig(BaseModel):
    """One inbound webhook route."""
    name: str
    path: str
    config: WebhookProcessorConfig

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith('/'):
            raise ValueError(f"Webhook path must start with '/': {v}")
        return v


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(default="plain")
    file: Optional[str] = Field(default=None, description="Rotating log file; console only when unset")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Invalid log level: {v}")
        return v

    @field_validator('format')
    @classmethod
    def validate_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ('plain', 'json'):
            raise ValueError(f"Log format must be 'plain' or 'json', got {v}")
        return v


class AppConfigSchema(BaseModel):
    """Root configuration document."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    email: EmailConfig
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    hook: List[WebhookConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode='after')
    def validate_unique_hook_paths(self) -> 'AppConfigSchema':
        paths = [hook.path for hook in self.hook]
        duplicates = sorted({p for p in paths if paths.count(p) > 1})
        if duplicates:
            raise ValueError(f"Duplicate webhook paths: {duplicates}")
        return self
