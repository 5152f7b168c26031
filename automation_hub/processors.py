"""
Email and webhook processors.

An EmailProcessor is one configured rule: a sender filter, subject filters,
a notification template and an extraction pattern resolved once at
construction. ProcessorRegistry keeps them in configuration order and hands
each email to the first processor that matches.

Integration Pattern:
    1. Build: registry = ProcessorRegistry.from_config(config.email.services, telegram)
    2. Dispatch: processor = registry.find_processor(email)
    3. Process: processor.process(email)  # raises TelegramError on failure
    4. Mark read: should_mark_as_read(processor.name)
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Sequence

from automation_hub.config_schema import (
    ServiceConfig,
    ServiceProcessorConfig,
    WebhookConfig,
    WebhookProcessorConfig,
)
from automation_hub.error_handling import categorize_error, log_error_with_context
from automation_hub.extraction import (
    decode_quoted_printable,
    extract_code,
    render_template,
    resolve_code_pattern,
    strategy_for,
)
from automation_hub.logging_context import with_logging_context
from automation_hub.models import Email, ProcessOutcome, WebhookPayload
from automation_hub.telegram_client import TelegramClient

logger = logging.getLogger(__name__)

# Processors whose emails are marked read after a successful notification.
# Messages handled by any other processor stay unread in the mailbox.
MARK_AS_READ_PROCESSORS = frozenset({'cloudflare', 'perplexity'})

LEGACY_TORRENT_WEBHOOK_PATH = '/webhook/qbitorrent'
LEGACY_TORRENT_MESSAGE = (
    "\U0001F4E5 **Download completed successfully!** \U0001F3AC\n"
    "\n"
    "\U0001F50D **Name:**  \n"
    "%s\n"
    "\n"
    "\U0001F4CD **Path:**  \n"
    "%s"
)


class EmailProcessor:
    """
    Configuration-driven email processor.

    Attributes:
        name: Processor name from the configuration
        config: Matching and notification settings
        pattern: Extraction pattern, resolved once
        strategy: GENERIC or MARKER_GATED
    """

    def __init__(self, name: str, config: ServiceProcessorConfig, telegram: TelegramClient):
        self.name = name
        self.config = config
        self.telegram = telegram
        self.pattern = resolve_code_pattern(name, config.code_pattern)
        self.strategy = strategy_for(name)

    def __repr__(self) -> str:
        return f"EmailProcessor(name={self.name!r}, strategy={self.strategy.value})"

    @property
    def sender(self) -> str:
        return self.config.email_from

    def should_process(self, email: Email) -> bool:
        """True when the sender matches and at least one subject filter matches."""
        if self.config.email_from not in email.sender:
            return False
        return any(subject in email.subject for subject in self.config.email_subject)

    def extract(self, email: Email) -> str:
        text = decode_quoted_printable(email.text_plain)
        logger.debug(
            f"Processing email content (from={email.sender}, subject={email.subject!r}, text={text!r})"
        )
        return extract_code(text, self.pattern, self.name, self.strategy)

    def render(self, code: str) -> str:
        return render_template(self.config.telegram_message, code)

    def process(self, email: Email) -> None:
        """
        Extract the code and send the notification.

        Raises:
            TelegramError: If delivery fails
        """
        code = self.extract(email)
        self.telegram.send_message(self.config.telegram_chat_id, self.render(code))


def should_mark_as_read(processor_name: str) -> bool:
    """True when emails handled by this processor are marked read after success."""
    return processor_name.lower() in MARK_AS_READ_PROCESSORS


class ProcessorRegistry:
    """Ordered, read-only collection of email processors."""

    def __init__(self, processors: Sequence[EmailProcessor] = ()):
        self._processors = tuple(processors)

    @classmethod
    def from_config(cls, services: Iterable[ServiceConfig],
                    telegram: Optional[TelegramClient]) -> 'ProcessorRegistry':
        processors = []
        for service in services:
            processor = EmailProcessor(service.name, service.config, telegram)
            processors.append(processor)
            logger.info(
                f"Loaded email processor '{service.name}' "
                f"(email_from={service.config.email_from!r}, email_subject={service.config.email_subject})"
            )
        return cls(processors)

    @property
    def processors(self) -> tuple:
        return self._processors

    def __len__(self) -> int:
        return len(self._processors)

    def __iter__(self):
        return iter(self._processors)

    def get(self, name: str) -> Optional[EmailProcessor]:
        for processor in self._processors:
            if processor.name.lower() == name.lower():
                return processor
        return None

    def find_processor(self, email: Email) -> Optional[EmailProcessor]:
        """Return the first processor, in configuration order, that accepts the email."""
        for processor in self._processors:
            if processor.should_process(email):
                return processor
        return None

    def sender_filters(self) -> List[str]:
        """
        Distinct sender filters for server-side search.

        Empty when there are no processors or when any processor has no
        sender filter, since that processor accepts every sender.
        """
        senders = []
        for processor in self._processors:
            if not processor.sender:
                return []
            if processor.sender not in senders:
                senders.append(processor.sender)
        return senders

    def dispatch(self, email: Email) -> ProcessOutcome:
        """Find a processor for the email and run it, capturing the result."""
        processor = self.find_processor(email)
        if processor is None:
            logger.info(f"Email ignored (no matching processor): subject={email.subject!r}, from={email.sender}")
            return ProcessOutcome(email=email)

        with with_logging_context(processor=processor.name):
            logger.info(f"Processing email: subject={email.subject!r}, from={email.sender}")
            try:
                processor.process(email)
            except Exception as e:
                error_code, _ = categorize_error(e)
                log_error_with_context(
                    e, error_code, "Processing email",
                    context={'uid': email.uid, 'subject': email.subject}
                )
                return ProcessOutcome(email=email, processor_name=processor.name, error=e)
            logger.info(f"Email processed successfully: {email.subject!r}")
        return ProcessOutcome(email=email, processor_name=processor.name, success=True)

    def process_batch(self, emails: Sequence[Email], max_workers: int = 4) -> List[ProcessOutcome]:
        """
        Dispatch many emails in parallel.

        Returns once every email has been handled, with one outcome per email
        in input order. Not used by the polling loop, which dispatches one
        email at a time as fetch results arrive.
        """
        if not emails:
            return []
        logger.info(f"Processing {len(emails)} emails concurrently (max_workers={max_workers})")
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(self.dispatch, emails))


class WebhookProcessor:
    """Formats a webhook route's template with (name, path) and sends it."""

    def __init__(self, config: WebhookProcessorConfig, telegram: TelegramClient):
        self.config = config
        self.telegram = telegram

    def render(self, payload: WebhookPayload) -> str:
        return render_template(self.config.telegram_message, payload.name, payload.path)

    def process(self, payload: WebhookPayload) -> None:
        """
        Raises:
            TelegramError: If delivery fails
        """
        self.telegram.send_message(self.config.telegram_chat_id, self.render(payload))


def default_torrent_webhook(chat_id: str) -> WebhookConfig:
    """Route used by older deployments that only configured telegram.chat_ids.torrent."""
    return WebhookConfig(
        name='qbittorrent',
        path=LEGACY_TORRENT_WEBHOOK_PATH,
        config=WebhookProcessorConfig(telegram_chat_id=chat_id, telegram_message=LEGACY_TORRENT_MESSAGE),
    )
