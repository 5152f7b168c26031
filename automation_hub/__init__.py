"""automation-hub: mailbox code relay and webhook notifications to Telegram."""

__version__ = '1.0.0'
