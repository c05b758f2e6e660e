"""
PostgreSQL repository for conversations, sync cursors and mailbox connections.

Also serves the read-only quote lookups the matcher needs.
"""

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator

import psycopg
from psycopg.rows import dict_row

from mail_sync.config import settings
from mail_sync.core.errors import NotFoundError
from mail_sync.core.logging import get_logger
from mail_sync.core.models import (
    ConversationMessage,
    Direction,
    MailboxConnection,
    Quote,
    SyncCursor,
)
from mail_sync.core.store import ConversationStore, QuoteLookup

log = get_logger(__name__)

MESSAGE_COLUMNS = """
    id, company_id, user_id, quote_id, gmail_message_id, gmail_thread_id,
    direction, from_email, "to", cc, bcc, subject, body, attachments,
    is_read, gmail_labels, email_type, sent_at, created_at
"""

QUOTE_COLUMNS = """
    id, company_id, client_email, client_name, project_title, status,
    parent_quote_id, created_at
"""

CURSOR_COLUMNS = """
    company_id, user_id, last_sync_at, last_message_id, sync_enabled,
    sync_frequency_minutes
"""


def _load_json_list(value: Any) -> list[str]:
    """Columns hold JSON arrays as text; tolerate NULL and junk."""
    if not value:
        return []
    if isinstance(value, list):
        return value
    try:
        loaded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return loaded if isinstance(loaded, list) else []


def _row_to_message(row: dict[str, Any]) -> ConversationMessage:
    return ConversationMessage(
        id=str(row["id"]),
        company_id=str(row["company_id"]),
        user_id=str(row["user_id"] or ""),
        quote_id=str(row["quote_id"]),
        gmail_message_id=row["gmail_message_id"],
        gmail_thread_id=row["gmail_thread_id"],
        direction=Direction(row["direction"]),
        from_email=row["from_email"],
        to=row["to"] or "",
        cc=row["cc"],
        bcc=row["bcc"],
        subject=row["subject"] or "",
        body=row["body"] or "",
        attachments=_load_json_list(row["attachments"]),
        labels=_load_json_list(row["gmail_labels"]),
        is_read=bool(row["is_read"]),
        email_type=row["email_type"],
        sent_at=row["sent_at"],
        created_at=row["created_at"],
    )


def _row_to_quote(row: dict[str, Any]) -> Quote:
    return Quote(
        id=str(row["id"]),
        company_id=str(row["company_id"]),
        client_email=row["client_email"] or "",
        client_name=row["client_name"],
        project_title=row["project_title"],
        status=row["status"],
        parent_quote_id=str(row["parent_quote_id"]) if row["parent_quote_id"] else None,
        created_at=row["created_at"],
    )


def _row_to_cursor(row: dict[str, Any]) -> SyncCursor:
    return SyncCursor(
        company_id=str(row["company_id"]),
        user_id=str(row["user_id"] or ""),
        last_sync_at=row["last_sync_at"],
        last_message_id=row["last_message_id"],
        sync_enabled=bool(row["sync_enabled"]),
        sync_frequency_minutes=row["sync_frequency_minutes"] or 15,
    )


class Database(ConversationStore, QuoteLookup):
    """PostgreSQL operations for the sync engine."""

    def __init__(self, connection_string: str | None = None):
        """
        Initialize database connection settings.

        Args:
            connection_string: PostgreSQL connection URL. Uses settings if not provided.
        """
        self.connection_string = connection_string or settings.database_url

    @contextmanager
    def get_connection(self) -> Generator[psycopg.Connection, None, None]:
        """Get a database connection as a context manager."""
        conn = psycopg.connect(self.connection_string, row_factory=dict_row)
        try:
            yield conn
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create the tables owned by the sync engine if they do not exist.

        The quotes table belongs to the quoting product and is only read.
        """
        schema_sql = """
        CREATE EXTENSION IF NOT EXISTS pgcrypto;

        -- gmail_connections: OAuth tokens per (user, company)
        CREATE TABLE IF NOT EXISTS gmail_connections (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID NOT NULL,
            company_id UUID NOT NULL,
            gmail_email VARCHAR(255) NOT NULL,
            access_token VARCHAR(2048) NOT NULL,
            refresh_token VARCHAR(2048),
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
            UNIQUE (user_id, company_id)
        );

        -- email_sync_status: one sync cursor per company
        CREATE TABLE IF NOT EXISTS email_sync_status (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            company_id UUID NOT NULL UNIQUE,
            user_id UUID NOT NULL,
            last_sync_at TIMESTAMPTZ,
            last_message_id VARCHAR(255),
            sync_enabled BOOLEAN DEFAULT TRUE,
            sync_frequency_minutes INTEGER DEFAULT 15,
            created_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW() NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sync_status_enabled ON email_sync_status(sync_enabled);

        -- email_threads: one row per stored Gmail message
        CREATE TABLE IF NOT EXISTS email_threads (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id UUID,
            company_id UUID NOT NULL,
            quote_id UUID NOT NULL,
            gmail_message_id VARCHAR(255) NOT NULL,
            gmail_thread_id VARCHAR(255),
            direction VARCHAR(10) DEFAULT 'outbound' NOT NULL,
            from_email VARCHAR(255),
            "to" TEXT NOT NULL,
            cc TEXT,
            bcc TEXT,
            subject VARCHAR(500) NOT NULL,
            body TEXT NOT NULL,
            attachments TEXT,
            include_quote_pdf BOOLEAN DEFAULT FALSE,
            is_read BOOLEAN DEFAULT FALSE,
            gmail_labels TEXT,
            email_type VARCHAR(50),
            sent_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
            created_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW() NOT NULL,
            UNIQUE (company_id, gmail_message_id)
        );

        CREATE INDEX IF NOT EXISTS idx_email_threads_thread ON email_threads(company_id, gmail_thread_id);
        CREATE INDEX IF NOT EXISTS idx_email_threads_quote ON email_threads(quote_id);
        CREATE INDEX IF NOT EXISTS idx_email_threads_sent ON email_threads(sent_at DESC);
        """

        with self.get_connection() as conn:
            conn.execute(schema_sql)
            conn.commit()
            log.info("database_schema_initialized")

    # Conversation messages

    def existing_message_ids(self, company_id: str, gmail_message_ids: set[str]) -> set[str]:
        """Return which of the given Gmail ids are already stored for the company."""
        if not gmail_message_ids:
            return set()

        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT gmail_message_id FROM email_threads
                WHERE company_id = %s AND gmail_message_id = ANY(%s)
                """,
                (company_id, list(gmail_message_ids)),
            ).fetchall()
            return {row["gmail_message_id"] for row in rows}

    def insert_message(self, message: ConversationMessage) -> bool:
        """
        Insert a conversation message if its Gmail id is new for the company.

        The unique (company_id, gmail_message_id) constraint makes this safe
        under concurrent sync passes.

        Args:
            message: Message to store

        Returns:
            True if inserted, False if a row with the same Gmail id existed
        """
        sql = """
        INSERT INTO email_threads (
            user_id, company_id, quote_id, gmail_message_id, gmail_thread_id,
            direction, from_email, "to", cc, bcc, subject, body, attachments,
            is_read, gmail_labels, email_type, sent_at
        ) VALUES (
            %(user_id)s, %(company_id)s, %(quote_id)s, %(gmail_message_id)s,
            %(gmail_thread_id)s, %(direction)s, %(from_email)s, %(to)s, %(cc)s,
            %(bcc)s, %(subject)s, %(body)s, %(attachments)s, %(is_read)s,
            %(gmail_labels)s, %(email_type)s, COALESCE(%(sent_at)s, NOW())
        )
        ON CONFLICT (company_id, gmail_message_id) DO NOTHING
        RETURNING id
        """

        params = {
            "user_id": message.user_id or None,
            "company_id": message.company_id,
            "quote_id": message.quote_id,
            "gmail_message_id": message.gmail_message_id,
            "gmail_thread_id": message.gmail_thread_id,
            "direction": message.direction.value,
            "from_email": message.from_email,
            "to": message.to,
            "cc": message.cc,
            "bcc": message.bcc,
            "subject": message.subject[:500],
            "body": message.body,
            "attachments": json.dumps(message.attachments) if message.attachments else None,
            "is_read": message.is_read,
            "gmail_labels": json.dumps(message.labels),
            "email_type": message.email_type,
            "sent_at": message.sent_at,
        }

        with self.get_connection() as conn:
            result = conn.execute(sql, params).fetchone()
            conn.commit()

        if result:
            message.id = str(result["id"])
            log.info(
                "message_inserted",
                message_id=message.gmail_message_id,
                thread_id=message.gmail_thread_id,
                direction=message.direction.value,
            )
            return True

        log.info("message_already_stored", message_id=message.gmail_message_id)
        return False

    def find_thread_quote_id(self, company_id: str, thread_id: str) -> str | None:
        """
        Quote id already associated with a Gmail thread for this company.

        Rows whose quote has since been deleted are skipped, so a later
        message pointing at a live quote still anchors the thread.
        """
        if not thread_id:
            return None

        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT t.quote_id FROM email_threads t
                JOIN quotes q ON q.id = t.quote_id AND q.company_id = t.company_id
                WHERE t.company_id = %s AND t.gmail_thread_id = %s
                ORDER BY t.sent_at ASC
                LIMIT 1
                """,
                (company_id, thread_id),
            ).fetchone()
            return str(row["quote_id"]) if row else None

    def outbound_thread_ids(self, company_id: str) -> list[str]:
        """Distinct thread ids of conversations the company started."""
        with self.get_connection() as conn:
            rows = conn.execute(
                """
                SELECT gmail_thread_id, MAX(sent_at) AS last_sent
                FROM email_threads
                WHERE company_id = %s
                  AND direction = 'outbound'
                  AND gmail_thread_id IS NOT NULL
                GROUP BY gmail_thread_id
                ORDER BY last_sent DESC
                """,
                (company_id,),
            ).fetchall()
            return [row["gmail_thread_id"] for row in rows]

    def list_company_messages(self, company_id: str) -> list[ConversationMessage]:
        with self.get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM email_threads
                WHERE company_id = %s
                ORDER BY sent_at DESC
                """,
                (company_id,),
            ).fetchall()
            return [_row_to_message(row) for row in rows]

    def list_thread_messages(self, company_id: str, thread_id: str) -> list[ConversationMessage]:
        with self.get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM email_threads
                WHERE company_id = %s AND gmail_thread_id = %s
                ORDER BY sent_at ASC
                """,
                (company_id, thread_id),
            ).fetchall()
            return [_row_to_message(row) for row in rows]

    def mark_message_read(self, company_id: str, gmail_message_id: str) -> bool:
        with self.get_connection() as conn:
            cur = conn.execute(
                """
                UPDATE email_threads
                SET is_read = TRUE, updated_at = NOW()
                WHERE company_id = %s AND gmail_message_id = %s
                """,
                (company_id, gmail_message_id),
            )
            conn.commit()
            return cur.rowcount > 0

    def list_quote_messages(self, company_id: str, quote_id: str) -> list[ConversationMessage]:
        with self.get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM email_threads
                WHERE company_id = %s AND quote_id = %s
                ORDER BY sent_at DESC
                """,
                (company_id, quote_id),
            ).fetchall()
            return [_row_to_message(row) for row in rows]

    def conversation_id_for_quote(self, company_id: str, quote_id: str) -> str | None:
        """Gmail thread id of the quote's most recent stored message."""
        with self.get_connection() as conn:
            row = conn.execute(
                """
                SELECT gmail_thread_id FROM email_threads
                WHERE company_id = %s AND quote_id = %s
                  AND gmail_thread_id IS NOT NULL
                ORDER BY sent_at DESC
                LIMIT 1
                """,
                (company_id, quote_id),
            ).fetchone()
            return row["gmail_thread_id"] if row else None

    def delete_message(self, company_id: str, gmail_message_id: str) -> bool:
        with self.get_connection() as conn:
            cur = conn.execute(
                "DELETE FROM email_threads WHERE company_id = %s AND gmail_message_id = %s",
                (company_id, gmail_message_id),
            )
            conn.commit()

        if cur.rowcount > 0:
            log.info("message_deleted", company_id=company_id, message_id=gmail_message_id)
            return True
        return False

    def delete_conversation(self, company_id: str, thread_id: str) -> int:
        """Delete every stored message of a Gmail thread. Returns the row count."""
        with self.get_connection() as conn:
            cur = conn.execute(
                "DELETE FROM email_threads WHERE company_id = %s AND gmail_thread_id = %s",
                (company_id, thread_id),
            )
            conn.commit()

        deleted = cur.rowcount
        if deleted:
            log.info("conversation_deleted", company_id=company_id, thread_id=thread_id, deleted=deleted)
        return deleted

    # Sync cursors

    def get_cursor(self, company_id: str) -> SyncCursor | None:
        with self.get_connection() as conn:
            row = conn.execute(
                f"SELECT {CURSOR_COLUMNS} FROM email_sync_status WHERE company_id = %s",
                (company_id,),
            ).fetchone()
            return _row_to_cursor(row) if row else None

    def get_or_create_cursor(self, company_id: str, user_id: str) -> SyncCursor:
        """
        Return the company's cursor, creating it (enabled) on first use.

        A cursor left without an owner gets `user_id` filled in.
        """
        with self.get_connection() as conn:
            conn.execute(
                """
                INSERT INTO email_sync_status (company_id, user_id, sync_enabled)
                VALUES (%s, %s, TRUE)
                ON CONFLICT (company_id) DO UPDATE
                SET user_id = COALESCE(email_sync_status.user_id, EXCLUDED.user_id)
                """,
                (company_id, user_id),
            )
            row = conn.execute(
                f"SELECT {CURSOR_COLUMNS} FROM email_sync_status WHERE company_id = %s",
                (company_id,),
            ).fetchone()
            conn.commit()
            return _row_to_cursor(row)

    def list_enabled_cursors(self) -> list[SyncCursor]:
        with self.get_connection() as conn:
            rows = conn.execute(
                f"SELECT {CURSOR_COLUMNS} FROM email_sync_status WHERE sync_enabled = TRUE"
            ).fetchall()
            return [_row_to_cursor(row) for row in rows]

    def update_cursor(
        self,
        company_id: str,
        last_sync_at: datetime,
        last_message_id: str | None = None,
    ) -> None:
        with self.get_connection() as conn:
            conn.execute(
                """
                UPDATE email_sync_status
                SET last_sync_at = %s,
                    last_message_id = COALESCE(%s, last_message_id),
                    updated_at = NOW()
                WHERE company_id = %s
                """,
                (last_sync_at, last_message_id, company_id),
            )
            conn.commit()
            log.info("sync_cursor_updated", company_id=company_id, last_message_id=last_message_id)

    def set_sync_enabled(self, company_id: str, user_id: str, enabled: bool) -> SyncCursor:
        with self.get_connection() as conn:
            row = conn.execute(
                f"""
                INSERT INTO email_sync_status (company_id, user_id, sync_enabled)
                VALUES (%s, %s, %s)
                ON CONFLICT (company_id) DO UPDATE
                SET sync_enabled = EXCLUDED.sync_enabled, updated_at = NOW()
                RETURNING {CURSOR_COLUMNS}
                """,
                (company_id, user_id, enabled),
            ).fetchone()
            conn.commit()
            log.info("sync_enabled_changed", company_id=company_id, enabled=enabled)
            return _row_to_cursor(row)

    def update_sync_config(
        self,
        company_id: str,
        user_id: str,
        enabled: bool,
        frequency_minutes: int,
    ) -> SyncCursor:
        with self.get_connection() as conn:
            row = conn.execute(
                f"""
                INSERT INTO email_sync_status
                    (company_id, user_id, sync_enabled, sync_frequency_minutes)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (company_id) DO UPDATE
                SET sync_enabled = EXCLUDED.sync_enabled,
                    sync_frequency_minutes = EXCLUDED.sync_frequency_minutes,
                    updated_at = NOW()
                RETURNING {CURSOR_COLUMNS}
                """,
                (company_id, user_id, enabled, frequency_minutes),
            ).fetchone()
            conn.commit()
            log.info(
                "sync_config_updated",
                company_id=company_id,
                enabled=enabled,
                frequency_minutes=frequency_minutes,
            )
            return _row_to_cursor(row)

    # Mailbox connections

    def get_mailbox_connection(
        self,
        company_id: str,
        user_id: str | None = None,
    ) -> MailboxConnection | None:
        sql = """
        SELECT id, user_id, company_id, gmail_email, access_token, refresh_token, expires_at
        FROM gmail_connections
        WHERE company_id = %s
        """
        params: tuple = (company_id,)
        if user_id:
            sql += " AND user_id = %s"
            params = (company_id, user_id)
        sql += " ORDER BY updated_at DESC LIMIT 1"

        with self.get_connection() as conn:
            row = conn.execute(sql, params).fetchone()
            if not row:
                return None

            expires_at = row["expires_at"]
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)

            return MailboxConnection(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                company_id=str(row["company_id"]),
                email_address=row["gmail_email"],
                access_token=row["access_token"],
                refresh_token=row["refresh_token"],
                expires_at=expires_at,
            )

    def save_tokens(
        self,
        connection_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
    ) -> None:
        """
        Store a refreshed token pair on the connection.

        Raises:
            NotFoundError: If the connection was removed in the meantime
        """
        with self.get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE gmail_connections
                SET access_token = %s,
                    refresh_token = COALESCE(%s, refresh_token),
                    expires_at = %s,
                    updated_at = NOW()
                WHERE id = %s
                """,
                (access_token, refresh_token, expires_at, connection_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Mailbox connection {connection_id} not found")
            conn.commit()
            log.info("mailbox_tokens_saved", connection_id=connection_id)

    # Quote lookups

    def get_quote(self, company_id: str, quote_id: str) -> Quote | None:
        with self.get_connection() as conn:
            try:
                row = conn.execute(
                    f"SELECT {QUOTE_COLUMNS} FROM quotes WHERE id = %s AND company_id = %s",
                    (quote_id, company_id),
                ).fetchone()
            except psycopg.errors.InvalidTextRepresentation:
                # Candidate ids pulled out of free text are not always valid UUIDs
                return None
            return _row_to_quote(row) if row else None

    def find_quote_by_client_email(self, company_id: str, email: str) -> Quote | None:
        with self.get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT {QUOTE_COLUMNS} FROM quotes
                WHERE company_id = %s AND LOWER(client_email) = LOWER(%s)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (company_id, email),
            ).fetchone()
            return _row_to_quote(row) if row else None

    def find_quote_by_client_domain(self, company_id: str, domain: str) -> Quote | None:
        with self.get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT {QUOTE_COLUMNS} FROM quotes
                WHERE company_id = %s AND client_email ILIKE %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (company_id, f"%{domain}%"),
            ).fetchone()
            return _row_to_quote(row) if row else None

    def most_recent_quote(self, company_id: str) -> Quote | None:
        with self.get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT {QUOTE_COLUMNS} FROM quotes
                WHERE company_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (company_id,),
            ).fetchone()
            return _row_to_quote(row) if row else None

    def get_quotes(self, quote_ids: list[str]) -> dict[str, Quote]:
        if not quote_ids:
            return {}

        with self.get_connection() as conn:
            rows = conn.execute(
                f"SELECT {QUOTE_COLUMNS} FROM quotes WHERE id = ANY(%s)",
                (list(quote_ids),),
            ).fetchall()
            return {str(row["id"]): _row_to_quote(row) for row in rows}

