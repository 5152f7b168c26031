"""
IMAP mailbox session.

One MailboxSession is one connect -> login -> select -> search -> fetch ->
(mark read) -> logout cycle. Sessions are short-lived: the monitor opens a
new one for every tick and never shares it.

Fetching uses BODY.PEEK so reading a message never sets \\Seen; only
mark_seen() does. iter_messages() runs the FETCH commands on a producer
thread and yields messages as they are parsed, so the caller can process
(and mark read) earlier messages while later chunks are still being fetched.
All IMAP commands go through one lock because imaplib connections are not
thread-safe.
"""
import email
import imaplib
import logging
import queue
import re
import threading
from email.header import decode_header
from email.utils import parseaddr
from enum import Enum
from typing import Iterator, List, Optional, Sequence

from automation_hub.config_schema import EmailConfig
from automation_hub.models import Email

logger = logging.getLogger(__name__)

SEEN_FLAG = '\\Seen'

HEADER_FIELDS = 'FROM SUBJECT MESSAGE-ID CONTENT-TYPE'
FETCH_ITEMS = f'(UID FLAGS BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})] BODY.PEEK[TEXT])'

_MESSAGE_START_RE = re.compile(rb'^\d+ \(')
_UID_RE = re.compile(rb'UID (\d+)')
_FLAGS_RE = re.compile(rb'FLAGS \(([^)]*)\)')

_FETCH_DONE = object()


class IMAPClientError(Exception):
    """Base exception for IMAP client errors."""
    pass


class IMAPConnectionError(IMAPClientError):
    """Raised when connecting, authenticating or selecting the mailbox fails."""
    pass


class IMAPFetchError(IMAPClientError):
    """Raised when searching or fetching messages fails."""
    pass


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SELECTED = "selected"
    LOGGED_OUT = "logged_out"


def decode_mime_header(header_value: Optional[str]) -> str:
    """Decode a MIME-encoded header value (e.g. =?UTF-8?B?...?=)."""
    if not header_value:
        return ''
    try:
        decoded_string = ''
        for part, encoding in decode_header(header_value):
            if isinstance(part, bytes):
                decoded_string += part.decode(encoding or 'utf-8', errors='replace')
            else:
                decoded_string += part
        return decoded_string.strip()
    except (LookupError, ValueError) as e:
        logger.warning(f"Error decoding header '{header_value}': {e}")
        return str(header_value)


def quote_search_string(value: str) -> str:
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def _decode_text(payload: bytes, charset: Optional[str]) -> str:
    try:
        return payload.decode(charset or 'utf-8', errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def _build_email(meta: bytes, header: bytes, text: bytes) -> Optional[Email]:
    uid_match = _UID_RE.search(meta)
    if not uid_match:
        # Unsolicited FETCH (e.g. a flag update for another message)
        return None

    flags_match = _FLAGS_RE.search(meta)
    flags = tuple(flags_match.group(1).decode('ascii', errors='replace').split()) if flags_match else ()

    headers = email.message_from_bytes(header)
    sender = parseaddr(decode_mime_header(headers.get('From', '')))[1]
    # multipart bodies keep their part headers; the charset only applies to single-part text
    charset = None if headers.get_content_maintype() == 'multipart' else headers.get_content_charset()

    return Email(
        uid=uid_match.group(1).decode('ascii'),
        subject=decode_mime_header(headers.get('Subject', '')),
        sender=sender,
        text_plain=_decode_text(text, charset),
        message_id=(headers.get('Message-ID') or '').strip(),
        flags=flags,
    )


def parse_fetch_response(data: Sequence) -> List[Email]:
    """
    Parse the response of a UID FETCH issued with FETCH_ITEMS.

    imaplib returns each message as one or more (prefix, literal) tuples
    followed by a closing bytes element. UID and FLAGS may appear in any
    prefix or in the closing element.
    """
    parsed = []
    current = None
    for item in data:
        if isinstance(item, tuple):
            meta, literal = item[0], item[1]
        elif isinstance(item, bytes):
            meta, literal = item, None
        else:
            continue

        if _MESSAGE_START_RE.match(meta):
            current = {'meta': b'', 'header': b'', 'text': b''}
            parsed.append(current)
        if current is None:
            continue

        current['meta'] += meta + b' '
        if literal is not None:
            section = meta[meta.upper().rfind(b'BODY['):].upper()
            if b'HEADER' in section:
                current['header'] = literal
            else:
                current['text'] = literal

    emails = []
    for entry in parsed:
        built = _build_email(entry['meta'], entry['header'], entry['text'])
        if built is not None:
            emails.append(built)
    return emails


class MailboxSession:
    """
    Short-lived authenticated IMAP session.

    Example:
        with MailboxSession.from_config(config.email) as session:
            uids = session.search_unseen(['notify.cloudflare.com'])
            for message in session.iter_messages(uids):
                ...
                session.mark_seen(message.uid)
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        mailbox: str = 'INBOX',
        timeout: int = 30,
        fetch_batch_size: int = 20
    ):
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self.mailbox = mailbox
        self.timeout = timeout
        self.fetch_batch_size = max(1, fetch_batch_size)
        self._imap: Optional[imaplib.IMAP4] = None
        self._lock = threading.RLock()
        self.state = SessionState.DISCONNECTED

    @classmethod
    def from_config(cls, config: EmailConfig) -> 'MailboxSession':
        return cls(
            host=config.host,
            port=config.port,
            username=config.username,
            password=config.resolve_password(),
            mailbox=config.mailbox,
            timeout=config.timeout,
            fetch_batch_size=config.fetch_batch_size,
        )

    def __repr__(self) -> str:
        return f"MailboxSession(host={self.host!r}, port={self.port}, state={self.state.value})"

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logout()

    def _require(self, *states: SessionState) -> None:
        if self.state not in states or self._imap is None:
            raise IMAPClientError(
                f"Invalid session state {self.state.value}, expected one of {[s.value for s in states]}"
            )

    def connect(self) -> None:
        """
        Open the TLS connection (SSL on 993, STARTTLS on 143).

        Raises:
            IMAPConnectionError: If the connection cannot be established
        """
        self._require_disconnected()
        logger.info(f"Connecting to IMAP server {self.host}:{self.port}")
        try:
            if self.port == 993:
                self._imap = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
            elif self.port == 143:
                self._imap = imaplib.IMAP4(self.host, self.port, timeout=self.timeout)
                self._imap.starttls()
            else:
                logger.warning(f"Port {self.port} not standard (143/993), defaulting to SSL")
                self._imap = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
        except (imaplib.IMAP4.error, OSError) as e:
            self._imap = None
            raise IMAPConnectionError(f"IMAP connection failed: {e}") from e
        self.state = SessionState.CONNECTED

    def _require_disconnected(self) -> None:
        if self.state is not SessionState.DISCONNECTED:
            raise IMAPClientError(f"Session already used (state={self.state.value})")

    def login(self) -> None:
        """
        Raises:
            IMAPConnectionError: If authentication fails
        """
        self._require(SessionState.CONNECTED)
        try:
            with self._lock:
                self._imap.login(self.username, self._password)
        except (imaplib.IMAP4.error, OSError) as e:
            raise IMAPConnectionError(f"IMAP authentication failed: {e}") from e
        self.state = SessionState.AUTHENTICATED
        logger.debug(f"Authenticated as {self.username}")

    def select(self) -> None:
        """
        Select the mailbox read-write (flags are changed later in the session).

        Raises:
            IMAPConnectionError: If the mailbox cannot be selected
        """
        self._require(SessionState.AUTHENTICATED)
        try:
            with self._lock:
                typ, data = self._imap.select(self.mailbox)
        except (imaplib.IMAP4.error, OSError) as e:
            raise IMAPConnectionError(f"Failed to select {self.mailbox}: {e}") from e
        if typ != 'OK':
            raise IMAPConnectionError(f"Failed to select {self.mailbox}: {data}")
        self.state = SessionState.SELECTED

    def open(self) -> None:
        """connect(), login() and select() in one call."""
        self.connect()
        try:
            self.login()
            self.select()
        except IMAPClientError:
            self.logout()
            raise

    def _search(self, criteria: str) -> List[str]:
        try:
            with self._lock:
                typ, data = self._imap.uid('SEARCH', None, criteria)
        except (imaplib.IMAP4.error, OSError) as e:
            raise IMAPFetchError(f"IMAP search failed ({criteria}): {e}") from e
        except UnicodeEncodeError as e:
            # imaplib sends commands as ASCII
            raise IMAPFetchError(f"IMAP search failed ({criteria}): non-ASCII search criteria") from e
        if typ != 'OK':
            raise IMAPFetchError(f"IMAP search failed ({criteria}): {typ} {data}")
        if not data or not data[0]:
            return []
        raw = data[0].decode('ascii') if isinstance(data[0], bytes) else str(data[0])
        return raw.split()

    def search_unseen(self, sender_filters: Optional[Sequence[str]] = None) -> List[str]:
        """
        Search unread messages.

        With sender filters, one UNSEEN FROM search is issued per distinct
        sender and the UIDs are merged; without, a single UNSEEN search.

        Returns:
            Unique UIDs in ascending order

        Raises:
            IMAPFetchError: If a search fails
        """
        self._require(SessionState.SELECTED)
        senders = list(dict.fromkeys(s for s in (sender_filters or []) if s))
        if senders:
            criteria = [f'UNSEEN FROM {quote_search_string(sender)}' for sender in senders]
        else:
            criteria = ['UNSEEN']

        uids = set()
        for criterion in criteria:
            found = self._search(criterion)
            logger.debug(f"Search {criterion!r} returned {len(found)} UID(s)")
            uids.update(found)

        result = sorted(uids, key=int)
        if result:
            logger.info(f"Found {len(result)} unread email(s)")
        return result

    def fetch(self, uids: Sequence[str]) -> List[Email]:
        """
        Fetch headers, text and flags for a set of UIDs in one command.

        Raises:
            IMAPFetchError: If the FETCH fails
        """
        self._require(SessionState.SELECTED)
        if not uids:
            return []
        uid_set = ','.join(uids)
        try:
            with self._lock:
                typ, data = self._imap.uid('FETCH', uid_set, FETCH_ITEMS)
        except (imaplib.IMAP4.error, OSError) as e:
            raise IMAPFetchError(f"Failed to fetch messages {uid_set}: {e}") from e
        if typ != 'OK':
            raise IMAPFetchError(f"Failed to fetch messages {uid_set}: {data}")
        emails = parse_fetch_response(data or [])
        emails.sort(key=lambda e: int(e.uid))
        return emails

    @staticmethod
    def _put(results: queue.Queue, item, abandoned: threading.Event) -> bool:
        while not abandoned.is_set():
            try:
                results.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _produce(
        self,
        uids: Sequence[str],
        results: queue.Queue,
        stop_event: Optional[threading.Event],
        abandoned: threading.Event
    ) -> None:
        try:
            for start in range(0, len(uids), self.fetch_batch_size):
                if abandoned.is_set():
                    return
                if stop_event is not None and stop_event.is_set():
                    logger.info(f"Stop requested, skipping fetch of {len(uids) - start} remaining message(s)")
                    break
                for message in self.fetch(uids[start:start + self.fetch_batch_size]):
                    if not self._put(results, message, abandoned):
                        return
        except IMAPClientError as e:
            self._put(results, e, abandoned)
            return
        except Exception as e:
            # the consumer is blocked on the queue and must always be woken up
            self._put(results, IMAPFetchError(f"Unexpected error while fetching: {e}"), abandoned)
            return
        self._put(results, _FETCH_DONE, abandoned)

    def iter_messages(
        self,
        uids: Sequence[str],
        stop_event: Optional[threading.Event] = None
    ) -> Iterator[Email]:
        """
        Yield fetched messages as they arrive.

        A producer thread issues one FETCH per chunk of fetch_batch_size UIDs
        and hands parsed messages over through a bounded queue.

        Raises:
            IMAPFetchError: After yielding the messages fetched before the failure
        """
        self._require(SessionState.SELECTED)
        if not uids:
            return

        results: queue.Queue = queue.Queue(maxsize=self.fetch_batch_size)
        abandoned = threading.Event()
        producer = threading.Thread(
            target=self._produce,
            args=(list(uids), results, stop_event, abandoned),
            name='imap-fetch',
            daemon=True,
        )
        producer.start()
        try:
            while True:
                item = results.get()
                if item is _FETCH_DONE:
                    break
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            abandoned.set()
            producer.join(timeout=self.timeout)

    def _store(self, uid: str, command: str) -> bool:
        self._require(SessionState.SELECTED)
        try:
            with self._lock:
                typ, data = self._imap.uid('STORE', uid, command, f'({SEEN_FLAG})')
        except (imaplib.IMAP4.error, OSError) as e:
            logger.error(f"Error changing {SEEN_FLAG} on email UID {uid}: {e}")
            return False
        if typ != 'OK':
            logger.error(f"Failed to change {SEEN_FLAG} on email UID {uid}: {data}")
            return False
        return True

    def mark_seen(self, uid: str) -> bool:
        """Add \\Seen to a message. Returns False if the server refused."""
        if self._store(uid, '+FLAGS'):
            logger.debug(f"Marked email UID {uid} as read")
            return True
        return False

    def mark_unseen(self, uid: str) -> bool:
        """Remove \\Seen from a message. Returns False if the server refused."""
        if self._store(uid, '-FLAGS'):
            logger.debug(f"Marked email UID {uid} as unread")
            return True
        return False

    def logout(self) -> None:
        """Close the session. Best effort: failures are logged, never raised."""
        if self._imap is None:
            self.state = SessionState.LOGGED_OUT
            return
        try:
            with self._lock:
                if self.state in (SessionState.AUTHENTICATED, SessionState.SELECTED):
                    self._imap.logout()
                    logger.debug("IMAP session logged out")
                else:
                    self._imap.shutdown()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.warning(f"Failed to logout from IMAP server: {e}")
        finally:
            self._imap = None
            self.state = SessionState.LOGGED_OUT
