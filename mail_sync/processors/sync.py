"""
Sync processor: pulls new Gmail messages into quote conversations.

For every company with sync enabled, walks the Gmail threads the company
started (outbound messages we already stored), fetches each thread, and
ingests messages we have not seen yet:

    fetch -> decode -> noise filter -> match to quote -> store -> mark read

One broken thread never blocks the rest of the company, and one broken
company never blocks the other companies.
"""

import argparse
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any

from mail_sync.config import settings
from mail_sync.core.database import Database
from mail_sync.core.errors import NotFoundError, RemoteAPIError
from mail_sync.core.logging import bind_context, clear_context, configure_logging, get_logger
from mail_sync.core.models import (
    CompanySyncResult,
    ConversationMessage,
    Direction,
    MailboxConnection,
    ParsedEmail,
    ThreadSyncResult,
)
from mail_sync.core.store import ConversationStore, QuoteLookup
from mail_sync.processors.base import BaseProcessor
from mail_sync.services.gmail import GmailClient, TokenProvider
from mail_sync.sync.decoder import decode_message
from mail_sync.sync.filters import should_process
from mail_sync.sync.matcher import MatchResolver

log = get_logger(__name__)

STORED = "stored"
FILTERED = "filtered"
UNMATCHED = "unmatched"
DUPLICATE = "duplicate"


def classify_direction(from_email: str, mailbox_address: str) -> Direction:
    """Outbound when the connected mailbox sent it, inbound otherwise."""
    if from_email and from_email.strip().lower() == (mailbox_address or "").strip().lower():
        return Direction.OUTBOUND
    return Direction.INBOUND


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncProcessor(BaseProcessor):
    """
    Orchestrates sync passes over companies, threads and messages.

    Holds no state between passes beyond its collaborators, so a pass can be
    triggered from the scheduler, the API or the CLI.

    Setting `stop_event` (or calling stop()) ends a running pass early: no
    further companies are started and each thread stops before its next
    message. Unprocessed messages stay new and are picked up by a later pass.
    """

    def __init__(
        self,
        store: ConversationStore | None = None,
        quotes: QuoteLookup | None = None,
        client: GmailClient | None = None,
        tokens: TokenProvider | None = None,
        resolver: MatchResolver | None = None,
        max_workers: int | None = None,
        scan_unread: bool | None = None,
        stop_event: threading.Event | None = None,
    ):
        if store is None:
            store = Database()
        self.store = store
        if quotes is None:
            quotes = store if isinstance(store, QuoteLookup) else Database()
        self.quotes = quotes
        self.client = client or GmailClient()
        self.tokens = tokens or TokenProvider(self.client, self.store)
        self.resolver = resolver or MatchResolver(self.store, self.quotes)
        self.max_workers = max_workers or settings.sync_max_workers
        self.scan_unread = settings.sync_scan_unread if scan_unread is None else scan_unread
        self.stop_event = stop_event if stop_event is not None else threading.Event()

    def stop(self) -> None:
        """Ask a running pass to finish early."""
        self.stop_event.set()

    def process(self) -> dict:
        """Sync every enabled company and return aggregate statistics."""
        results = self.sync_all()
        return {
            "companies": len(results),
            "failed": sum(1 for r in results.values() if r.status == "failed"),
            "messages_stored": sum(r.messages_stored for r in results.values()),
            "updated_threads": sum(len(r.updated_thread_ids) for r in results.values()),
        }

    def sync_all(self) -> dict[str, CompanySyncResult]:
        """
        Run a sync pass for every company with sync enabled.

        Companies share no state, so they are fanned out over a bounded
        thread pool. Messages inside one thread are still handled in order.

        Returns:
            Result per company id
        """
        cursors = self.store.list_enabled_cursors()
        log.info("sync_all_starting", companies=len(cursors), workers=self.max_workers)

        results: dict[str, CompanySyncResult] = {}
        if not cursors:
            return results

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="mail-sync") as pool:
            futures = {
                pool.submit(self._sync_company_isolated, cursor.company_id, cursor.user_id): cursor
                for cursor in cursors
            }
            for future in as_completed(futures):
                result = future.result()
                results[result.company_id] = result

        log.info(
            "sync_all_complete",
            companies=len(results),
            failed=sum(1 for r in results.values() if r.status == "failed"),
            messages_stored=sum(r.messages_stored for r in results.values()),
        )
        return results

    def _sync_company_isolated(self, company_id: str, user_id: str) -> CompanySyncResult:
        """sync_company() that never raises, for use inside sync_all()."""
        if self.stop_event.is_set():
            return CompanySyncResult(company_id=company_id, status="skipped", reason="stopped")
        try:
            return self.sync_company(company_id, user_id)
        except Exception as e:
            log.error("company_sync_failed", company_id=company_id, error=str(e), exc_info=True)
            return CompanySyncResult(company_id=company_id, status="failed", reason=str(e))

    def sync_company(self, company_id: str, owner_id: str) -> CompanySyncResult:
        """
        Check every conversation the company started for new messages.

        Args:
            company_id: Company to sync
            owner_id: User on whose behalf the mailbox is read

        Returns:
            CompanySyncResult whose updated_thread_ids lists threads that
            received new messages, for upstream cache invalidation

        Raises:
            ValueError: If owner_id is empty
        """
        if not owner_id or not owner_id.strip():
            raise ValueError("owner_id is required and cannot be empty")

        bind_context(company_id=company_id)
        try:
            return self._sync_company(company_id, owner_id)
        finally:
            clear_context()

    def _sync_company(self, company_id: str, owner_id: str) -> CompanySyncResult:
        result = CompanySyncResult(company_id=company_id)
        log.info("company_sync_starting", owner_id=owner_id)

        cursor = self.store.get_or_create_cursor(company_id, owner_id)
        if not cursor.sync_enabled:
            log.info("company_sync_disabled")
            result.status = "skipped"
            result.reason = "sync_disabled"
            return result

        connection = self.store.get_mailbox_connection(company_id, cursor.user_id or owner_id)
        if connection is None:
            log.info("no_mailbox_connection")
            result.status = "skipped"
            result.reason = "no_mailbox_connection"
            self.store.update_cursor(company_id, _utcnow())
            return result

        for thread_id in self.store.outbound_thread_ids(company_id):
            if self.stop_event.is_set():
                break
            thread_result = self.check_thread(company_id, thread_id, connection)
            self._merge(result, thread_result)

        if self.scan_unread and not self.stop_event.is_set():
            for thread_result in self.scan_inbox(company_id, connection):
                self._merge(result, thread_result)

        self.store.update_cursor(company_id, _utcnow(), result.last_message_id)

        if self.stop_event.is_set():
            log.info("company_sync_stopped", threads_checked=result.threads_checked)
            result.reason = "stopped"

        log.info(
            "company_sync_complete",
            threads_checked=result.threads_checked,
            updated_threads=len(result.updated_thread_ids),
            messages_stored=result.messages_stored,
            thread_errors=result.thread_errors,
        )
        return result

    @staticmethod
    def _merge(result: CompanySyncResult, thread_result: ThreadSyncResult) -> None:
        result.threads_checked += 1
        result.messages_stored += thread_result.stored
        if thread_result.error:
            result.thread_errors += 1
        if thread_result.last_message_id:
            result.last_message_id = thread_result.last_message_id
        if thread_result.updated and thread_result.thread_id not in result.updated_thread_ids:
            result.updated_thread_ids.append(thread_result.thread_id)

    def check_thread(
        self,
        company_id: str,
        thread_id: str,
        connection: MailboxConnection,
    ) -> ThreadSyncResult:
        """
        Ingest messages of one Gmail thread that are not stored yet.

        Any failure is logged and reported on the result instead of raised,
        so the caller can carry on with the next thread.

        Args:
            company_id: Company owning the thread
            thread_id: Gmail thread id
            connection: Mailbox connection to read with

        Returns:
            ThreadSyncResult; `updated` is True only if a new message was stored
            and the thread finished without error
        """
        result = ThreadSyncResult(thread_id=thread_id)
        thread_log = log.bind(thread_id=thread_id)

        try:
            token = self.tokens.token_for(connection)
            raw_messages = self.client.fetch_thread_messages(token, thread_id)
            result.fetched = len(raw_messages)

            ids = {raw["id"] for raw in raw_messages if raw.get("id")}
            known = self.store.existing_message_ids(company_id, ids)
            new_messages = [raw for raw in raw_messages if raw.get("id") and raw["id"] not in known]
            result.new = len(new_messages)

            if not new_messages:
                thread_log.debug("thread_up_to_date", fetched=result.fetched)
                return result

            # Provider order; each insert must land before the next message is matched
            for index, raw in enumerate(new_messages):
                if self.stop_event.is_set():
                    thread_log.info("thread_check_stopped", remaining=len(new_messages) - index)
                    break
                outcome = self.ingest_message(raw, company_id, connection, token)
                self._count(result, outcome, raw["id"])

            thread_log.info(
                "thread_checked",
                fetched=result.fetched,
                new=result.new,
                stored=result.stored,
                filtered=result.filtered,
                unmatched=result.unmatched,
            )
        except Exception as e:
            thread_log.error("thread_check_failed", error=str(e), error_type=type(e).__name__)
            result.error = str(e)

        return result

    @staticmethod
    def _count(result: ThreadSyncResult, outcome: str, message_id: str) -> None:
        if outcome == STORED:
            result.stored += 1
            result.last_message_id = message_id
        elif outcome == FILTERED:
            result.filtered += 1
        elif outcome == UNMATCHED:
            result.unmatched += 1

    def ingest_message(
        self,
        raw: dict[str, Any],
        company_id: str,
        connection: MailboxConnection,
        token: str,
    ) -> str:
        """
        Run one Gmail message through decode, filter, match and store.

        Args:
            raw: Gmail message resource (format=full)
            company_id: Company the message is ingested for
            connection: Mailbox connection (its address decides direction)
            token: Access token for the follow-up mark-as-read call

        Returns:
            One of "stored", "filtered", "unmatched", "duplicate"
        """
        email = decode_message(raw)

        if not should_process(email):
            return FILTERED

        match = self.resolver.resolve(email, company_id)
        if not match.matched:
            log.info("email_unmatched", message_id=email.id, subject=email.subject[:100])
            return UNMATCHED

        direction = classify_direction(email.from_email, connection.email_address)
        message = ConversationMessage.from_parsed(
            email,
            company_id=company_id,
            quote_id=match.quote_id,
            direction=direction,
            user_id=connection.user_id,
        )

        if not self.store.insert_message(message):
            return DUPLICATE

        if direction == Direction.INBOUND:
            try:
                self.client.mark_read(token, email.id)
            except RemoteAPIError as e:
                # The row is stored; Gmail keeps showing it unread until next time
                log.warning("gmail_mark_read_failed", message_id=email.id, status=e.status)

        return STORED

    def scan_inbox(self, company_id: str, connection: MailboxConnection) -> list[ThreadSyncResult]:
        """
        Ingest recent unread inbox messages, including ones outside known threads.

        Messages are handled oldest first so earlier replies are visible to the
        thread strategy when later ones are matched.

        Returns:
            One ThreadSyncResult per Gmail thread touched by the scan
        """
        per_thread: dict[str, ThreadSyncResult] = {}
        try:
            token = self.tokens.token_for(connection)
            stubs = self.client.fetch_recent_messages(
                token,
                max_results=settings.sync_unread_max_results,
                query=settings.sync_unread_query,
            )
            known = self.store.existing_message_ids(
                company_id, {stub["id"] for stub in stubs if stub.get("id")}
            )
            pending = [stub for stub in reversed(stubs) if stub.get("id") and stub["id"] not in known]

            for stub in pending:
                if self.stop_event.is_set():
                    break
                thread_id = stub.get("threadId", "")
                thread_result = per_thread.setdefault(thread_id, ThreadSyncResult(thread_id=thread_id))
                thread_result.fetched += 1
                thread_result.new += 1
                try:
                    raw = self.client.get_message_details(token, stub["id"])
                    outcome = self.ingest_message(raw, company_id, connection, token)
                except RemoteAPIError as e:
                    log.warning("inbox_message_failed", message_id=stub["id"], status=e.status)
                    thread_result.error = str(e)
                    continue
                self._count(thread_result, outcome, stub["id"])

            log.info(
                "inbox_scanned",
                fetched=len(stubs),
                new=len(pending),
                stored=sum(r.stored for r in per_thread.values()),
            )
        except Exception as e:
            log.error("inbox_scan_failed", error=str(e), error_type=type(e).__name__)
            per_thread[""] = ThreadSyncResult(thread_id="", error=str(e))

        return list(per_thread.values())

    def list_mailbox(
        self,
        company_id: str,
        user_id: str | None = None,
        max_results: int = 50,
        query: str | None = None,
    ) -> list[ParsedEmail]:
        """
        Read recent messages straight from the company's mailbox.

        Nothing is filtered, matched or stored; this is a live view.

        Args:
            company_id: Company whose mailbox to read
            user_id: Restrict to the connection owned by this user
            max_results: Maximum number of messages to list
            query: Gmail search query (e.g. "from:someone@example.com")

        Returns:
            Decoded messages, newest first

        Raises:
            NotFoundError: No mailbox connection for the company
            AuthExpiredError: The connection needs to be re-authorized
            RemoteAPIError: Gmail rejected a request
        """
        connection = self.store.get_mailbox_connection(company_id, user_id)
        if connection is None:
            raise NotFoundError(f"No Gmail connection found for company {company_id}")

        token = self.tokens.token_for(connection)
        stubs = self.client.fetch_recent_messages(token, max_results=max_results, query=query)
        emails = [
            decode_message(self.client.get_message_details(token, stub["id"]))
            for stub in stubs
            if stub.get("id")
        ]
        log.info("mailbox_listed", company_id=company_id, count=len(emails), query=query)
        return emails


def main():
    """CLI entry point for a manual sync pass."""
    parser = argparse.ArgumentParser(
        description="Sync Gmail conversations into quote threads",
    )
    parser.add_argument(
        "--company",
        help="Only sync this company id (requires --user)",
    )
    parser.add_argument(
        "--user",
        help="Owner user id for --company",
    )
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="Create the sync tables before syncing",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    args = parser.parse_args()

    configure_logging(log_level=args.log_level, json_output=settings.log_json)

    if args.company and not args.user:
        log.error("company_requires_user", error="--company requires --user")
        return

    db = Database()
    if args.init_schema:
        db.init_schema()

    processor = SyncProcessor(store=db, quotes=db)

    if args.company:
        result = processor.sync_company(args.company, args.user)
        log.info("sync_summary", **result.to_dict())
    else:
        stats = processor.process()
        log.info("sync_summary", **stats)


if __name__ == "__main__":
    main()
