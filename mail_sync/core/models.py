"""
Data models for email reconciliation.

Uses dataclasses for clean, typed data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Direction(str, Enum):
    """Direction of a message relative to the connected mailbox."""

    INBOUND = "inbound"  # Client wrote to us
    OUTBOUND = "outbound"  # We wrote to the client


class Confidence(str, Enum):
    """How much a match result can be trusted."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class StrategyName(str, Enum):
    """Matching strategy that produced a result."""

    THREAD = "thread"
    SUBJECT = "subject"
    CLIENT = "client"
    BODY = "body"


@dataclass
class Attachment:
    """Attachment metadata harvested from a Gmail part."""

    filename: str
    mime_type: str = ""
    size: int = 0
    attachment_id: str = ""


@dataclass
class ParsedEmail:
    """A Gmail message normalized for matching and storage."""

    id: str = ""
    thread_id: str = ""
    from_email: str = ""
    from_name: str = ""
    to: str = ""
    cc: str = ""
    bcc: str = ""
    subject: str = ""
    body: str = ""
    date: datetime | None = None
    labels: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def sender_domain(self) -> str:
        """Domain part of the sender address, lower-cased."""
        if "@" not in self.from_email:
            return ""
        _, _, domain = self.from_email.rpartition("@")
        return domain.lower()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "from_email": self.from_email,
            "from_name": self.from_name,
            "to": self.to,
            "cc": self.cc,
            "subject": self.subject,
            "body": self.body,
            "date": self.date.isoformat() if self.date else None,
            "labels": self.labels,
            "attachments": [a.filename for a in self.attachments],
        }


@dataclass
class MatchResult:
    """Outcome of resolving an email to a quote. Never persisted."""

    quote_id: str | None
    confidence: Confidence
    strategy: StrategyName
    reasoning: str
    is_fallback: bool = False

    @property
    def matched(self) -> bool:
        return self.quote_id is not None


@dataclass
class Quote:
    """Business record a conversation is about. Read-only here."""

    id: str
    company_id: str
    client_email: str = ""
    client_name: str | None = None
    project_title: str | None = None
    status: str | None = None
    parent_quote_id: str | None = None
    created_at: datetime | None = None


@dataclass
class MailboxConnection:
    """Stored OAuth credentials for a connected Gmail mailbox."""

    id: str
    user_id: str
    company_id: str
    email_address: str
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass
class SyncCursor:
    """Per-company sync bookkeeping."""

    company_id: str
    user_id: str
    last_sync_at: datetime | None = None
    last_message_id: str | None = None
    sync_enabled: bool = True
    sync_frequency_minutes: int = 15

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "company_id": self.company_id,
            "user_id": self.user_id,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_message_id": self.last_message_id,
            "sync_enabled": self.sync_enabled,
            "sync_frequency_minutes": self.sync_frequency_minutes,
        }


@dataclass
class ConversationMessage:
    """Persisted record of one email in a quote conversation."""

    company_id: str
    quote_id: str
    gmail_message_id: str
    direction: Direction
    to: str
    subject: str
    body: str
    user_id: str = ""
    gmail_thread_id: str | None = None
    from_email: str | None = None
    cc: str | None = None
    bcc: str | None = None
    attachments: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    is_read: bool = False
    email_type: str | None = None
    sent_at: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_parsed(
        cls,
        email: ParsedEmail,
        company_id: str,
        quote_id: str,
        direction: Direction,
        user_id: str = "",
    ) -> "ConversationMessage":
        """Build the row to store for a matched email."""
        return cls(
            company_id=company_id,
            user_id=user_id,
            quote_id=quote_id,
            gmail_message_id=email.id,
            gmail_thread_id=email.thread_id or None,
            direction=direction,
            from_email=email.from_email or None,
            to=email.to,
            cc=email.cc or None,
            bcc=email.bcc or None,
            subject=email.subject,
            body=email.body,
            attachments=[a.filename for a in email.attachments],
            labels=list(email.labels),
            is_read=False,
            email_type="client_response" if direction == Direction.INBOUND else "follow_up",
            sent_at=email.date,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "id": self.id,
            "company_id": self.company_id,
            "quote_id": self.quote_id,
            "gmail_message_id": self.gmail_message_id,
            "gmail_thread_id": self.gmail_thread_id,
            "direction": self.direction.value,
            "from_email": self.from_email,
            "to": self.to,
            "cc": self.cc,
            "bcc": self.bcc,
            "subject": self.subject,
            "body": self.body,
            "attachments": self.attachments,
            "labels": self.labels,
            "is_read": self.is_read,
            "email_type": self.email_type,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }


@dataclass
class ThreadSyncResult:
    """Result from checking one Gmail thread."""

    thread_id: str
    fetched: int = 0
    new: int = 0
    stored: int = 0
    filtered: int = 0
    unmatched: int = 0
    last_message_id: str | None = None
    error: str | None = None

    @property
    def updated(self) -> bool:
        """A failed thread counts as not updated even if some rows landed."""
        return self.stored > 0 and self.error is None


@dataclass
class CompanySyncResult:
    """Result from one sync pass over a company."""

    company_id: str
    status: str = "success"  # "success", "skipped", "failed"
    updated_thread_ids: list[str] = field(default_factory=list)
    threads_checked: int = 0
    messages_stored: int = 0
    thread_errors: int = 0
    last_message_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "status": self.status,
            "updated_thread_ids": self.updated_thread_ids,
            "threads_checked": self.threads_checked,
            "messages_stored": self.messages_stored,
            "thread_errors": self.thread_errors,
            "reason": self.reason,
        }
