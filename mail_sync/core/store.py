"""
Abstract storage interfaces used by the sync engine.

The sync engine only talks to these interfaces, so the PostgreSQL
implementation can be swapped for an in-memory one in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from mail_sync.core.models import (
    ConversationMessage,
    MailboxConnection,
    Quote,
    SyncCursor,
)


class QuoteLookup(ABC):
    """Read-only access to quotes owned by a company."""

    @abstractmethod
    def get_quote(self, company_id: str, quote_id: str) -> Quote | None:
        """Return the quote if it exists and belongs to the company."""
        pass

    @abstractmethod
    def find_quote_by_client_email(self, company_id: str, email: str) -> Quote | None:
        """Most recent quote whose client email equals `email` (case-insensitive)."""
        pass

    @abstractmethod
    def find_quote_by_client_domain(self, company_id: str, domain: str) -> Quote | None:
        """Most recent quote whose client email contains `domain`."""
        pass

    @abstractmethod
    def most_recent_quote(self, company_id: str) -> Quote | None:
        """The company's most recently created quote."""
        pass

    @abstractmethod
    def get_quotes(self, quote_ids: list[str]) -> dict[str, Quote]:
        """Quotes by id, for decorating conversation listings."""
        pass


class ConversationStore(ABC):
    """Persistence for conversation messages, sync cursors and mailbox tokens."""

    # Conversation messages

    @abstractmethod
    def existing_message_ids(self, company_id: str, gmail_message_ids: set[str]) -> set[str]:
        """
        Return the subset of ids already stored for the company.

        Only an optimization to skip decode work; insert_message() is the
        real deduplication point.
        """
        pass

    @abstractmethod
    def insert_message(self, message: ConversationMessage) -> bool:
        """
        Insert the message unless its Gmail id is already stored for the company.

        Returns:
            True if a row was written, False if it already existed
        """
        pass

    @abstractmethod
    def find_thread_quote_id(self, company_id: str, thread_id: str) -> str | None:
        """Quote id of the earliest stored message in the thread whose quote still exists."""
        pass

    @abstractmethod
    def outbound_thread_ids(self, company_id: str) -> list[str]:
        """Distinct thread ids of outbound messages stored for the company."""
        pass

    @abstractmethod
    def list_company_messages(self, company_id: str) -> list[ConversationMessage]:
        """All stored messages for the company, newest first."""
        pass

    @abstractmethod
    def list_thread_messages(self, company_id: str, thread_id: str) -> list[ConversationMessage]:
        """Stored messages of one thread, oldest first."""
        pass

    @abstractmethod
    def mark_message_read(self, company_id: str, gmail_message_id: str) -> bool:
        """Set the local read flag. Returns False if no such message."""
        pass

    @abstractmethod
    def list_quote_messages(self, company_id: str, quote_id: str) -> list[ConversationMessage]:
        """Stored messages linked to one quote, newest first."""
        pass

    @abstractmethod
    def conversation_id_for_quote(self, company_id: str, quote_id: str) -> str | None:
        """Thread id of the quote's most recent stored message, None if it has none."""
        pass

    @abstractmethod
    def delete_message(self, company_id: str, gmail_message_id: str) -> bool:
        """Remove one stored message. Returns False if no such message."""
        pass

    @abstractmethod
    def delete_conversation(self, company_id: str, thread_id: str) -> int:
        """Remove every stored message of a thread. Returns how many were removed."""
        pass

    # Sync cursors

    @abstractmethod
    def get_cursor(self, company_id: str) -> SyncCursor | None:
        pass

    @abstractmethod
    def get_or_create_cursor(self, company_id: str, user_id: str) -> SyncCursor:
        """Return the company cursor, creating an enabled one if absent."""
        pass

    @abstractmethod
    def list_enabled_cursors(self) -> list[SyncCursor]:
        pass

    @abstractmethod
    def update_cursor(
        self,
        company_id: str,
        last_sync_at: datetime,
        last_message_id: str | None = None,
    ) -> None:
        """Stamp the cursor. `last_message_id` is left untouched when None."""
        pass

    @abstractmethod
    def set_sync_enabled(self, company_id: str, user_id: str, enabled: bool) -> SyncCursor:
        pass

    @abstractmethod
    def update_sync_config(
        self,
        company_id: str,
        user_id: str,
        enabled: bool,
        frequency_minutes: int,
    ) -> SyncCursor:
        pass

    # Mailbox connections

    @abstractmethod
    def get_mailbox_connection(
        self,
        company_id: str,
        user_id: str | None = None,
    ) -> MailboxConnection | None:
        pass

    @abstractmethod
    def save_tokens(
        self,
        connection_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """Persist a refreshed token pair. Refresh token kept when None.

        Raises:
            NotFoundError: If the connection no longer exists
        """
        pass
