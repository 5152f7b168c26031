"""
Email monitoring loop.

Every polling_interval seconds the monitor opens a new mailbox session,
searches unread messages (one search per processor sender when possible),
streams the fetched messages through the processor registry and logs out.

Per message:
    - no matching processor: logged as ignored, left unread
    - processing failed: logged, left unread (retried on a later tick)
    - processed: marked read only for processors in MARK_AS_READ_PROCESSORS

A tick that fails at connect, login, select, search or fetch is abandoned
and simply retried on the next timer fire.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from automation_hub.error_handling import ErrorCode, log_error_with_context
from automation_hub.imap_client import IMAPClientError, MailboxSession
from automation_hub.logging_context import new_correlation_id, with_logging_context
from automation_hub.models import Email
from automation_hub.processors import should_mark_as_read
from automation_hub.runtime import AppContext

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Counters for one tick."""
    found: int = 0
    processed: int = 0
    failed: int = 0
    ignored: int = 0
    marked_read: int = 0
    aborted: bool = False

    def summary(self) -> str:
        status = "aborted" if self.aborted else "completed"
        return (
            f"Tick {status}: found={self.found}, processed={self.processed}, failed={self.failed}, "
            f"ignored={self.ignored}, marked_read={self.marked_read}"
        )


class EmailMonitor:
    """
    Timer-driven ingestion loop.

    Args:
        context: Application context (config, registry, notifier)
        session_factory: Builds a fresh MailboxSession per tick (injectable for tests)
    """

    def __init__(self, context: AppContext, session_factory: Optional[Callable[[], MailboxSession]] = None):
        self.context = context
        self.registry = context.registry
        self.email_config = context.config.email
        self._session_factory = session_factory or (lambda: MailboxSession.from_config(self.email_config))
        self._tick_lock = threading.Lock()

    @property
    def polling_interval(self) -> int:
        return self.email_config.polling_interval

    def run(self, stop_event: threading.Event) -> None:
        """
        Run ticks until stop_event is set.

        The next wait starts only after the previous tick has finished, so
        ticks never overlap.
        """
        logger.info(
            f"Starting email monitoring (polling_interval={self.polling_interval}s, "
            f"processors={len(self.registry)})"
        )
        while not stop_event.wait(self.polling_interval):
            try:
                self.check_emails(stop_event)
            except Exception as e:
                log_error_with_context(e, ErrorCode.UNKNOWN_ERROR, "Running tick", include_traceback=True)
        logger.info("Email monitoring stopped")

    def check_emails(self, stop_event: Optional[threading.Event] = None) -> TickResult:
        """Run a single tick."""
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still running, skipping this one")
            return TickResult(aborted=True)
        try:
            with with_logging_context(correlation_id=new_correlation_id()):
                result = self._run_tick(stop_event)
                if result.found or result.aborted:
                    logger.info(result.summary())
                return result
        finally:
            self._tick_lock.release()

    def _open_session(self) -> Optional[MailboxSession]:
        try:
            session = self._session_factory()
        except ValueError as e:
            log_error_with_context(e, ErrorCode.CONFIG_MISSING, "Preparing mailbox session")
            return None

        steps = (
            (session.connect, ErrorCode.IMAP_CONNECTION_FAILED, "Connecting to IMAP server"),
            (session.login, ErrorCode.IMAP_AUTH_FAILED, "Logging in to IMAP server"),
            (session.select, ErrorCode.IMAP_SELECT_FAILED, f"Selecting {self.email_config.mailbox}"),
        )
        for step, error_code, operation in steps:
            try:
                step()
            except IMAPClientError as e:
                log_error_with_context(
                    e, error_code, operation,
                    context={'host': self.email_config.host, 'port': self.email_config.port}
                )
                session.logout()
                return None
        return session

    def _run_tick(self, stop_event: Optional[threading.Event]) -> TickResult:
        result = TickResult()
        session = self._open_session()
        if session is None:
            result.aborted = True
            return result

        try:
            try:
                uids = session.search_unseen(self.registry.sender_filters())
            except IMAPClientError as e:
                log_error_with_context(e, ErrorCode.IMAP_SEARCH_FAILED, "Searching unread emails")
                result.aborted = True
                return result

            result.found = len(uids)
            if not uids:
                return result

            try:
                for email in session.iter_messages(uids, stop_event):
                    self._handle_email(session, email, result)
            except IMAPClientError as e:
                log_error_with_context(e, ErrorCode.IMAP_FETCH_FAILED, "Fetching emails")
                result.aborted = True
        finally:
            session.logout()

        return result

    def _handle_email(self, session: MailboxSession, email: Email, result: TickResult) -> None:
        outcome = self.registry.dispatch(email)
        if not outcome.matched:
            result.ignored += 1
            return
        if not outcome.success:
            result.failed += 1
            return

        result.processed += 1
        if not should_mark_as_read(outcome.processor_name):
            logger.debug(f"Leaving email UID {email.uid} unread (processor '{outcome.processor_name}')")
            return

        if session.mark_seen(email.uid):
            result.marked_read += 1
        else:
            log_error_with_context(
                IMAPClientError(f"STORE refused for UID {email.uid}"),
                ErrorCode.IMAP_FLAG_FAILED, "Marking email as read",
                context={'uid': email.uid, 'subject': email.subject}
            )
