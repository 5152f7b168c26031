"""
Data models for the email and webhook pipelines.

Email is built by the mailbox session from one fetched entry and lives for a
single tick. ProcessOutcome is what the batch API reports per email.
WebhookPayload is the JSON body accepted by webhook routes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Flows into notification templates when no code could be extracted
NOT_FOUND_CODE = "Not found"


class ExtractionStrategy(Enum):
    """
    How a processor locates its code in a message body.

    Values:
        GENERIC: First match of the processor's resolved pattern
        MARKER_GATED: Only search the text after an anchor phrase
    """
    GENERIC = "generic"
    MARKER_GATED = "marker_gated"


@dataclass(frozen=True)
class Email:
    """
    One fetched mailbox message.

    Fields:
        uid: Mailbox UID, stable within a session; used for flag changes
        subject: Decoded Subject header
        sender: Bare sender address (no display name)
        text_plain: Raw text section of the message, possibly transport-encoded
        message_id: Message-ID header value
        flags: Flags reported by the server at fetch time
    """
    uid: str
    subject: str
    sender: str
    text_plain: str = field(default='', repr=False)
    message_id: str = ''
    flags: Tuple[str, ...] = ()

    @property
    def is_seen(self) -> bool:
        return '\\Seen' in self.flags


@dataclass
class ProcessOutcome:
    """Result of dispatching one email through the processor registry."""
    email: Email
    processor_name: Optional[str] = None
    success: bool = False
    error: Optional[Exception] = None

    @property
    def matched(self) -> bool:
        return self.processor_name is not None


class WebhookPayload(BaseModel):
    """
    Inbound webhook body.

    `name` and `path` feed the route template. The qBittorrent keys
    `torrent_name` and `save_path` are accepted as aliases.
    """
    name: str = Field(validation_alias=AliasChoices('name', 'torrent_name'))
    path: str = Field(validation_alias=AliasChoices('path', 'save_path'))

    model_config = ConfigDict(extra='ignore')
