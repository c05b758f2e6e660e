"""Core modules for email reconciliation."""

from .logging import configure_logging, get_logger
from .errors import AuthExpiredError, MailSyncError, NotFoundError, RemoteAPIError
from .models import (
    Attachment,
    CompanySyncResult,
    Confidence,
    ConversationMessage,
    Direction,
    MailboxConnection,
    MatchResult,
    ParsedEmail,
    Quote,
    StrategyName,
    SyncCursor,
    ThreadSyncResult,
)
from .store import ConversationStore, QuoteLookup

__all__ = [
    "configure_logging",
    "get_logger",
    "AuthExpiredError",
    "MailSyncError",
    "NotFoundError",
    "RemoteAPIError",
    "Attachment",
    "CompanySyncResult",
    "Confidence",
    "ConversationMessage",
    "Direction",
    "MailboxConnection",
    "MatchResult",
    "ParsedEmail",
    "Quote",
    "StrategyName",
    "SyncCursor",
    "ThreadSyncResult",
    "ConversationStore",
    "QuoteLookup",
]
