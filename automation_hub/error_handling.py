"""
Error handling utilities for consistent error management and logging.

This module provides:
- Standard error codes per failure category
- Error logging with operation context
- Error categorization for the exceptions raised by this package
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCode:
    """Standard error codes for different error categories."""
    # Configuration errors (1xxx)
    CONFIG_MISSING = "E1001"
    CONFIG_INVALID = "E1002"
    PATTERN_INVALID = "E1003"

    # IMAP errors (2xxx)
    IMAP_CONNECTION_FAILED = "E2001"
    IMAP_AUTH_FAILED = "E2002"
    IMAP_FETCH_FAILED = "E2003"
    IMAP_FLAG_FAILED = "E2004"
    IMAP_SELECT_FAILED = "E2005"
    IMAP_SEARCH_FAILED = "E2006"

    # Notification errors (3xxx)
    TELEGRAM_SEND_FAILED = "E3001"
    TELEGRAM_INVALID_CHAT = "E3002"

    # Processing errors (5xxx)
    EMAIL_PROCESSING_FAILED = "E5001"
    WEBHOOK_PROCESSING_FAILED = "E5002"

    # Unknown errors (9xxx)
    UNKNOWN_ERROR = "E9001"


def log_error_with_context(
    error: Exception,
    error_code: str,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
    level: int = logging.ERROR,
    include_traceback: bool = False
) -> None:
    """
    Log an error with standardized context information.

    Args:
        error: The exception that occurred
        error_code: Standard error code from ErrorCode
        operation: Description of the operation that failed
        context: Additional context (email UID, subject, chat id, ...)
        level: Logging level (default: ERROR)
        include_traceback: Whether to include the traceback

    Example:
        >>> try:
        ...     session.login()
        ... except IMAPConnectionError as e:
        ...     log_error_with_context(e, ErrorCode.IMAP_AUTH_FAILED, "Logging in to mailbox",
        ...                            context={'host': 'imap.example.com'})
    """
    context_str = ""
    if context:
        context_items = [f"{k}={v}" for k, v in context.items() if v is not None]
        if context_items:
            context_str = f" | Context: {', '.join(context_items)}"

    log_message = f"[{error_code}] {operation} failed: {type(error).__name__}: {error}{context_str}"
    logger.log(level, log_message, exc_info=include_traceback)


def categorize_error(error: Exception) -> tuple[str, str]:
    """
    Categorize an error and return its error code and category.

    Example:
        >>> categorize_error(TelegramError("boom"))
        ('E3001', 'Notification')
    """
    # Local imports avoid a cycle: these modules log through this one
    from automation_hub.config import ConfigError
    from automation_hub.imap_client import IMAPConnectionError, IMAPFetchError
    from automation_hub.telegram_client import InvalidChatIdError, TelegramError

    if isinstance(error, ConfigError):
        return ErrorCode.CONFIG_INVALID, "Configuration"
    elif isinstance(error, IMAPConnectionError):
        return ErrorCode.IMAP_CONNECTION_FAILED, "IMAP"
    elif isinstance(error, IMAPFetchError):
        return ErrorCode.IMAP_FETCH_FAILED, "IMAP"
    elif isinstance(error, InvalidChatIdError):
        return ErrorCode.TELEGRAM_INVALID_CHAT, "Notification"
    elif isinstance(error, TelegramError):
        return ErrorCode.TELEGRAM_SEND_FAILED, "Notification"
    elif isinstance(error, (ValueError, TypeError)):
        return ErrorCode.EMAIL_PROCESSING_FAILED, "Processing"
    else:
        return ErrorCode.UNKNOWN_ERROR, "Unknown"
