"""
Code extraction for email processors.

Pattern resolution (once per processor, at construction):
    1. custom `code_pattern` from the processor config, if it compiles
    2. built-in default for the lowercase processor name
    3. generic fallback: a 4-8 character alphanumeric token

Extraction (per message):
    - transport headers (everything up to the first blank line) are stripped
      before matching, except for processors whose provider sends the code
      in the first lines (cloudflare)
    - GENERIC: first match of the resolved pattern
    - MARKER_GATED: find "directly:" / "directamente:" (case-insensitive),
      then try a 5-6 digit code, a hyphenated code and finally the resolved
      pattern in the text after the marker. No marker means no code.

Misses return NOT_FOUND_CODE so templates always get a string.
"""
import binascii
import logging
import re
from typing import Optional, Pattern

from automation_hub.error_handling import ErrorCode, log_error_with_context
from automation_hub.models import NOT_FOUND_CODE, ExtractionStrategy

logger = logging.getLogger(__name__)

GENERIC_PATTERN = r'\b[a-zA-Z0-9]{4,8}\b'

DEFAULT_PATTERNS = {
    'cloudflare': r'\b\d{6}\b',
    # Perplexity sends either a numeric code or one like aw9s5-y1zoy
    'perplexity': r'(?:\d{5,6}|[a-zA-Z0-9]+-[a-zA-Z0-9]+)',
}

# Providers whose body is matched without stripping headers
UNSTRIPPED_PROCESSORS = frozenset({'cloudflare'})

MARKER_GATED_PROCESSORS = frozenset({'perplexity'})

# English and Spanish variants of the same anchor phrase, in search order
CODE_MARKERS = ('directly:', 'directamente:')

MARKER_CANDIDATE_PATTERNS = (
    ('numeric', re.compile(r'\b(\d{5,6})\b')),
    ('alphanumeric', re.compile(r'\b([a-zA-Z0-9]+-[a-zA-Z0-9]+)\b')),
)

PREVIEW_LENGTH = 200


def resolve_code_pattern(name: str, custom_pattern: Optional[str] = None) -> Pattern[str]:
    """
    Choose the extraction pattern for a processor.

    An invalid custom pattern is logged and ignored; it never surfaces as a
    per-message error.

    Args:
        name: Processor name (matched case-insensitively against defaults)
        custom_pattern: Optional regex from the processor config

    Returns:
        Compiled pattern
    """
    if custom_pattern:
        try:
            return re.compile(custom_pattern)
        except re.error as e:
            log_error_with_context(
                e, ErrorCode.PATTERN_INVALID,
                f"Compiling custom code pattern for processor '{name}' (using default)",
                context={'pattern': custom_pattern}, level=logging.WARNING
            )

    default = DEFAULT_PATTERNS.get(name.lower())
    if default is not None:
        return re.compile(default)
    return re.compile(GENERIC_PATTERN)


def strategy_for(name: str) -> ExtractionStrategy:
    if name.lower() in MARKER_GATED_PROCESSORS:
        return ExtractionStrategy.MARKER_GATED
    return ExtractionStrategy.GENERIC


def decode_quoted_printable(text: str) -> str:
    """
    Decode quoted-printable text.

    Text without '=' is returned unchanged. Decoded bytes that are not
    valid UTF-8 are read as ISO-8859-1, so soft line breaks are still
    joined for Latin-1 bodies.
    """
    if '=' not in text:
        return text
    try:
        decoded = binascii.a2b_qp(text.encode('utf-8'))
    except binascii.Error as e:
        logger.warning(f"Failed to decode quoted-printable content: {e}")
        return text
    try:
        return decoded.decode('utf-8')
    except UnicodeDecodeError:
        logger.debug("Quoted-printable content is not UTF-8, reading it as ISO-8859-1")
        return decoded.decode('iso-8859-1')


def strip_mime_headers(text: str) -> str:
    """Drop everything up to and including the first blank line."""
    header_end = text.find('\n\n')
    if header_end != -1:
        return text[header_end + 2:]
    header_end = text.find('\r\n\r\n')
    if header_end != -1:
        return text[header_end + 4:]
    return text


def truncate(text: str, max_len: int = PREVIEW_LENGTH) -> str:
    if len(text) <= max_len:
        return text
    return text[:max_len] + '...'


def _extract_after_marker(text: str, pattern: Pattern[str], name: str) -> str:
    search_text = None
    for marker in CODE_MARKERS:
        match = re.search(re.escape(marker), text, re.IGNORECASE)
        if match:
            search_text = text[match.end():]
            logger.debug(f"Code marker '{marker}' found for processor '{name}'")
            break

    if search_text is None:
        logger.warning(f"None of the code markers {list(CODE_MARKERS)} found in '{name}' email")
        return NOT_FOUND_CODE

    for label, candidate in MARKER_CANDIDATE_PATTERNS:
        match = candidate.search(search_text)
        if match:
            logger.info(f"Code extracted for '{name}' ({label} format): {match.group(1)}")
            return match.group(1)

    match = pattern.search(search_text)
    if match:
        logger.info(f"Code extracted for '{name}' (fallback pattern): {match.group(0)}")
        return match.group(0)

    logger.warning(f"Code not found after marker in '{name}' email: {truncate(search_text, 300)!r}")
    return NOT_FOUND_CODE


def extract_code(
    text: str,
    pattern: Pattern[str],
    name: str,
    strategy: ExtractionStrategy = ExtractionStrategy.GENERIC
) -> str:
    """
    Extract a code from (already decoded) message text.

    Args:
        text: Message text
        pattern: Resolved pattern of the processor
        name: Processor name
        strategy: Extraction strategy of the processor

    Returns:
        The code, or NOT_FOUND_CODE
    """
    if name.lower() in UNSTRIPPED_PROCESSORS:
        body = text
    else:
        body = strip_mime_headers(text)

    if strategy is ExtractionStrategy.MARKER_GATED:
        return _extract_after_marker(body, pattern, name)

    match = pattern.search(body)
    if match:
        logger.info(f"Code extracted for '{name}': {match.group(0)}")
        return match.group(0)

    logger.warning(
        f"Code not found in '{name}' email (pattern={pattern.pattern!r}, preview={truncate(body)!r})"
    )
    return NOT_FOUND_CODE


def render_template(template: str, *values: str) -> str:
    """Fill the printf-style %s placeholders of a notification template."""
    return template % values
