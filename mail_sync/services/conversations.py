"""
Read side of stored conversations: grouping messages by Gmail thread.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from mail_sync.core.models import ConversationMessage, Direction, Quote

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(value: datetime | None) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Conversation:
    """All stored messages of one Gmail thread."""

    conversation_id: str
    quote_id: str
    client_email: str
    client_name: str | None = None
    project_title: str | None = None
    quote_status: str | None = None
    last_email_at: datetime | None = None
    unread: int = 0
    emails: list[ConversationMessage] = field(default_factory=list)

    @property
    def total_emails(self) -> int:
        return len(self.emails)

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "quote_id": self.quote_id,
            "client_email": self.client_email,
            "client_name": self.client_name,
            "project_title": self.project_title,
            "quote_status": self.quote_status,
            "total_emails": self.total_emails,
            "unread": self.unread,
            "last_email_at": self.last_email_at.isoformat() if self.last_email_at else None,
            "emails": [email.to_dict() for email in self.emails],
        }


def group_into_conversations(
    messages: list[ConversationMessage],
    quotes: dict[str, Quote] | None = None,
) -> list[Conversation]:
    """
    Group stored messages into conversations keyed by Gmail thread id.

    Messages without a thread id form a conversation of their own. The
    client address comes from the first message seen for the thread, and
    quote details are attached when `quotes` has them.

    Args:
        messages: Stored messages, any order
        quotes: Quotes by id, used to decorate conversations

    Returns:
        Conversations, most recently active first; emails inside each
        conversation keep the order they were given in
    """
    quotes = quotes or {}
    conversations: dict[str, Conversation] = {}

    for message in messages:
        key = message.gmail_thread_id or message.id or message.gmail_message_id
        conversation = conversations.get(key)
        if conversation is None:
            quote = quotes.get(message.quote_id)
            conversation = conversations[key] = Conversation(
                conversation_id=key,
                quote_id=message.quote_id,
                client_email=message.to,
                client_name=quote.client_name if quote else None,
                project_title=quote.project_title if quote else None,
                quote_status=quote.status if quote else None,
                last_email_at=message.sent_at,
            )

        conversation.emails.append(message)
        if message.direction == Direction.INBOUND and not message.is_read:
            conversation.unread += 1
        if _sort_key(message.sent_at) > _sort_key(conversation.last_email_at):
            conversation.last_email_at = message.sent_at

    return sorted(
        conversations.values(),
        key=lambda c: _sort_key(c.last_email_at),
        reverse=True,
    )
