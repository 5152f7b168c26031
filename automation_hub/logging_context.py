"""
Logging context.

Stores contextual fields (correlation_id for the current tick or request,
processor for the processor handling a message) that ContextFilter in
logging_config.py adds to every log record.

Usage:
    >>> from automation_hub.logging_context import with_logging_context
    >>>
    >>> with with_logging_context(correlation_id='abc-123'):
    ...     logger.info("This log will include correlation_id")
"""
import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Optional

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('correlation_id', default=None)
_processor: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar('processor', default=None)


def new_correlation_id() -> str:
    """Short random id for a tick or webhook request."""
    return uuid.uuid4().hex[:12]


def get_logging_context() -> Dict[str, Any]:
    """Return the non-empty context fields."""
    context = {}
    correlation_id = _correlation_id.get()
    processor = _processor.get()
    if correlation_id is not None:
        context['correlation_id'] = correlation_id
    if processor is not None:
        context['processor'] = processor
    return context


@contextmanager
def with_logging_context(correlation_id: Optional[str] = None, processor: Optional[str] = None):
    """
    Set context fields for the duration of a block.

    Fields that are not passed keep their current value. Previous values are
    restored on exit.
    """
    tokens = []
    if correlation_id is not None:
        tokens.append((_correlation_id, _correlation_id.set(correlation_id)))
    if processor is not None:
        tokens.append((_processor, _processor.set(processor)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
