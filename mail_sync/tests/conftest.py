"""
Shared pytest fixtures for mail_sync tests.
"""

import base64
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from mail_sync.core.models import (
    ConversationMessage,
    Direction,
    MailboxConnection,
    Quote,
    SyncCursor,
)
from mail_sync.core.store import ConversationStore, QuoteLookup

COMPANY_ID = "company-1"
OWNER_ID = "user-1"
MAILBOX = "studio@example.com"
CLIENT = "sarah.smith@gmail.com"
QUOTE_ID = "3f2a9c10-7b1e-4d2a-9c3e-5a6b7c8d9e0f"
OLDER_QUOTE_ID = "1a2b3c4d-0000-4000-8000-000000000001"
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def b64(text: str) -> str:
    """Gmail-style URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def gmail_message(
    message_id: str,
    thread_id: str = "t1",
    sender: str = f"Sarah Smith <{CLIENT}>",
    to: str = MAILBOX,
    subject: str = "Re: Wedding quote",
    body: str = "Thanks, looks good!",
    labels: list[str] | None = None,
    date: str = "Mon, 03 Mar 2025 10:00:00 +0000",
) -> dict:
    """Minimal Gmail message resource in format=full."""
    return {
        "id": message_id,
        "threadId": thread_id,
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "internalDate": "1741000000000",
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": to},
                {"name": "Subject", "value": subject},
                {"name": "Date", "value": date},
            ],
            "body": {"data": b64(body)},
        },
    }


class InMemoryStore(ConversationStore, QuoteLookup):
    """Dict-backed store with the same contract as the PostgreSQL one."""

    def __init__(self):
        self.messages: list[ConversationMessage] = []
        self.cursors: dict[str, SyncCursor] = {}
        self.connections: dict[str, MailboxConnection] = {}
        self.quotes: dict[str, Quote] = {}
        self.saved_tokens: list[tuple] = []
        self._lock = threading.Lock()

    # Test setup helpers

    def add_quote(self, quote: Quote) -> Quote:
        self.quotes[quote.id] = quote
        return quote

    def add_connection(self, connection: MailboxConnection) -> MailboxConnection:
        self.connections[connection.company_id] = connection
        return connection

    # Conversation messages

    def existing_message_ids(self, company_id: str, gmail_message_ids: set[str]) -> set[str]:
        stored = {m.gmail_message_id for m in self.messages if m.company_id == company_id}
        return stored & set(gmail_message_ids)

    def insert_message(self, message: ConversationMessage) -> bool:
        with self._lock:
            for existing in self.messages:
                if (
                    existing.company_id == message.company_id
                    and existing.gmail_message_id == message.gmail_message_id
                ):
                    return False
            message.id = str(len(self.messages) + 1)
            message.created_at = datetime.now(timezone.utc)
            self.messages.append(message)
            return True

    def find_thread_quote_id(self, company_id: str, thread_id: str) -> str | None:
        for message in self.list_thread_messages(company_id, thread_id):
            if self.get_quote(company_id, message.quote_id) is not None:
                return message.quote_id
        return None

    def outbound_thread_ids(self, company_id: str) -> list[str]:
        thread_ids: list[str] = []
        for message in self.messages:
            if (
                message.company_id == company_id
                and message.direction == Direction.OUTBOUND
                and message.gmail_thread_id
                and message.gmail_thread_id not in thread_ids
            ):
                thread_ids.append(message.gmail_thread_id)
        return thread_ids

    def list_company_messages(self, company_id: str) -> list[ConversationMessage]:
        messages = [m for m in self.messages if m.company_id == company_id]
        return sorted(messages, key=_sent_at, reverse=True)

    def list_thread_messages(self, company_id: str, thread_id: str) -> list[ConversationMessage]:
        messages = [
            m for m in self.messages
            if m.company_id == company_id and m.gmail_thread_id == thread_id
        ]
        return sorted(messages, key=_sent_at)

    def mark_message_read(self, company_id: str, gmail_message_id: str) -> bool:
        for message in self.messages:
            if message.company_id == company_id and message.gmail_message_id == gmail_message_id:
                message.is_read = True
                return True
        return False

    def list_quote_messages(self, company_id: str, quote_id: str) -> list[ConversationMessage]:
        messages = [
            m for m in self.messages
            if m.company_id == company_id and m.quote_id == quote_id
        ]
        return sorted(messages, key=_sent_at, reverse=True)

    def conversation_id_for_quote(self, company_id: str, quote_id: str) -> str | None:
        for message in self.list_quote_messages(company_id, quote_id):
            if message.gmail_thread_id:
                return message.gmail_thread_id
        return None

    def delete_message(self, company_id: str, gmail_message_id: str) -> bool:
        with self._lock:
            for message in self.messages:
                if message.company_id == company_id and message.gmail_message_id == gmail_message_id:
                    self.messages.remove(message)
                    return True
        return False

    def delete_conversation(self, company_id: str, thread_id: str) -> int:
        with self._lock:
            kept = [
                m for m in self.messages
                if not (m.company_id == company_id and m.gmail_thread_id == thread_id)
            ]
            deleted = len(self.messages) - len(kept)
            self.messages = kept
        return deleted

    # Sync cursors

    def get_cursor(self, company_id: str) -> SyncCursor | None:
        return self.cursors.get(company_id)

    def get_or_create_cursor(self, company_id: str, user_id: str) -> SyncCursor:
        cursor = self.cursors.get(company_id)
        if cursor is None:
            cursor = self.cursors[company_id] = SyncCursor(company_id=company_id, user_id=user_id)
        return cursor

    def list_enabled_cursors(self) -> list[SyncCursor]:
        return [c for c in self.cursors.values() if c.sync_enabled]

    def update_cursor(self, company_id, last_sync_at, last_message_id=None) -> None:
        cursor = self.cursors[company_id]
        cursor.last_sync_at = last_sync_at
        if last_message_id is not None:
            cursor.last_message_id = last_message_id

    def set_sync_enabled(self, company_id: str, user_id: str, enabled: bool) -> SyncCursor:
        cursor = self.get_or_create_cursor(company_id, user_id)
        cursor.sync_enabled = enabled
        return cursor

    def update_sync_config(self, company_id, user_id, enabled, frequency_minutes) -> SyncCursor:
        cursor = self.get_or_create_cursor(company_id, user_id)
        cursor.sync_enabled = enabled
        cursor.sync_frequency_minutes = frequency_minutes
        return cursor

    # Mailbox connections

    def get_mailbox_connection(self, company_id, user_id=None) -> MailboxConnection | None:
        connection = self.connections.get(company_id)
        if connection is None or (user_id and connection.user_id != user_id):
            return None
        return connection

    def save_tokens(self, connection_id, access_token, expires_at, refresh_token=None) -> None:
        self.saved_tokens.append((connection_id, access_token, expires_at, refresh_token))

    # Quotes

    def get_quote(self, company_id: str, quote_id: str) -> Quote | None:
        quote = self.quotes.get(quote_id)
        if quote is None or quote.company_id != company_id:
            return None
        return quote

    def _company_quotes(self, company_id: str) -> list[Quote]:
        quotes = [q for q in self.quotes.values() if q.company_id == company_id]
        return sorted(quotes, key=lambda q: q.created_at or _EPOCH, reverse=True)

    def find_quote_by_client_email(self, company_id: str, email: str) -> Quote | None:
        for quote in self._company_quotes(company_id):
            if quote.client_email.lower() == email.lower():
                return quote
        return None

    def find_quote_by_client_domain(self, company_id: str, domain: str) -> Quote | None:
        for quote in self._company_quotes(company_id):
            if domain.lower() in quote.client_email.lower():
                return quote
        return None

    def most_recent_quote(self, company_id: str) -> Quote | None:
        quotes = self._company_quotes(company_id)
        return quotes[0] if quotes else None

    def get_quotes(self, quote_ids: list[str]) -> dict[str, Quote]:
        return {qid: self.quotes[qid] for qid in quote_ids if qid in self.quotes}


def _sent_at(message: ConversationMessage) -> datetime:
    return message.sent_at or _EPOCH


@pytest.fixture
def store() -> InMemoryStore:
    """Empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def sample_quote() -> Quote:
    """Quote for Sarah's wedding."""
    return Quote(
        id=QUOTE_ID,
        company_id=COMPANY_ID,
        client_email=CLIENT,
        client_name="Sarah Smith",
        project_title="Phu Quoc wedding",
        status="sent",
        created_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def older_quote() -> Quote:
    """An older quote for a different client of the same company."""
    return Quote(
        id=OLDER_QUOTE_ID,
        company_id=COMPANY_ID,
        client_email="john@acme.io",
        client_name="John",
        project_title="Corporate retreat",
        status="draft",
        created_at=datetime(2024, 11, 5, tzinfo=timezone.utc),
    )


@pytest.fixture
def connection() -> MailboxConnection:
    """Mailbox connection with a token that is good for another hour."""
    return MailboxConnection(
        id="conn-1",
        user_id=OWNER_ID,
        company_id=COMPANY_ID,
        email_address=MAILBOX,
        access_token="access-token",
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        refresh_token="refresh-token",
    )


@pytest.fixture
def outbound_message(sample_quote) -> ConversationMessage:
    """The quote email we sent, which started thread t1."""
    return ConversationMessage(
        company_id=COMPANY_ID,
        user_id=OWNER_ID,
        quote_id=sample_quote.id,
        gmail_message_id="m1",
        gmail_thread_id="t1",
        direction=Direction.OUTBOUND,
        from_email=MAILBOX,
        to=CLIENT,
        subject=f"Your quote #{sample_quote.id}",
        body="Please find your quote attached.",
        email_type="quote_sent",
        sent_at=datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def seeded_store(store, sample_quote, older_quote, connection, outbound_message) -> InMemoryStore:
    """Store with two quotes, a mailbox connection and one sent quote email."""
    store.add_quote(sample_quote)
    store.add_quote(older_quote)
    store.add_connection(connection)
    store.insert_message(outbound_message)
    return store


@pytest.fixture
def mock_gmail():
    """Mock Gmail client; no messages anywhere unless a test says otherwise."""
    client = MagicMock()
    client.fetch_thread_messages.return_value = []
    client.fetch_recent_messages.return_value = []
    return client


@pytest.fixture
def mock_tokens():
    """Token provider that always hands out the same token."""
    tokens = MagicMock()
    tokens.token_for.return_value = "token"
    return tokens


@pytest.fixture
def make_gmail_message():
    """Factory for Gmail message resources, see gmail_message()."""
    return gmail_message
