"""
Gmail REST API client.

Pure I/O: token refresh, thread/message fetch, search and mark-as-read.
No matching or storage logic lives here.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from mail_sync.config import settings
from mail_sync.core.errors import AuthExpiredError, RemoteAPIError
from mail_sync.core.logging import get_logger
from mail_sync.core.models import MailboxConnection
from mail_sync.core.store import ConversationStore

log = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenGrant:
    """Response of an OAuth refresh_token grant."""

    access_token: str
    expires_in: int = 3600
    refresh_token: str | None = None

    def expires_at(self, now: datetime | None = None) -> datetime:
        return (now or _utcnow()) + timedelta(seconds=self.expires_in)


class GmailClient:
    """Client for the Gmail REST API, authenticated per call with a bearer token."""

    def __init__(
        self,
        api_url: str | None = None,
        token_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.api_url = (api_url or settings.gmail_api_url).rstrip("/")
        self.token_url = token_url or settings.google_token_url
        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.timeout = timeout or settings.gmail_request_timeout
        self.refresh_margin = timedelta(minutes=settings.token_refresh_margin_minutes)
        self.session = session or requests.Session()

    def _request(
        self,
        method: str,
        url: str,
        token: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Send a request and return the decoded JSON body.

        Raises:
            RemoteAPIError: On any non-2xx status
        """
        headers = kwargs.pop("headers", {})
        if token:
            headers["Authorization"] = f"Bearer {token}"

        response = self.session.request(
            method,
            url,
            headers=headers,
            timeout=self.timeout,
            **kwargs,
        )

        if not response.ok:
            log.warning(
                "gmail_request_failed",
                method=method,
                url=url,
                status=response.status_code,
            )
            raise RemoteAPIError(response.status_code, response.text, url=url)

        if not response.content:
            return {}
        return response.json()

    # Tokens

    def refresh_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Args:
            refresh_token: Stored OAuth refresh token

        Returns:
            TokenGrant with the new access token and its lifetime
        """
        data = self._request(
            "POST",
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        log.info("gmail_token_refreshed", expires_in=data.get("expires_in"))
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=int(data.get("expires_in", 3600)),
            refresh_token=data.get("refresh_token"),
        )

    def needs_refresh(self, expires_at: datetime, now: datetime | None = None) -> bool:
        """True once the token is inside the refresh safety margin."""
        return (now or _utcnow()) >= expires_at - self.refresh_margin

    def get_valid_token(
        self,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> str:
        """
        Return a usable access token, refreshing it when close to expiry.

        Args:
            access_token: Current access token
            refresh_token: Refresh token, if the connection has one
            expires_at: Expiry of the current access token

        Returns:
            An access token that should be valid for the next request

        Raises:
            AuthExpiredError: Token expired and nothing to refresh it with
            RemoteAPIError: The refresh request was rejected
        """
        now = _utcnow()
        if not self.needs_refresh(expires_at, now):
            return access_token

        if refresh_token:
            return self.refresh_token(refresh_token).access_token

        if now >= expires_at:
            raise AuthExpiredError("Gmail access token expired and no refresh token is stored")

        # Inside the margin but still valid; use it while it lasts
        return access_token

    # Messages

    def fetch_thread_messages(self, token: str, thread_id: str) -> list[dict[str, Any]]:
        """Fetch every message of a thread in full format, in thread order."""
        data = self._request(
            "GET",
            f"{self.api_url}/threads/{thread_id}",
            token=token,
            params={"format": "full"},
        )
        return data.get("messages", [])

    def fetch_recent_messages(
        self,
        token: str,
        max_results: int = 50,
        query: str | None = None,
    ) -> list[dict[str, Any]]:
        """
        List recent messages, optionally filtered by a Gmail search query.

        Returns:
            Message stubs ({"id", "threadId"}); use get_message_details() for content
        """
        params: dict[str, Any] = {"maxResults": max_results}
        if query:
            params["q"] = query

        data = self._request("GET", f"{self.api_url}/messages", token=token, params=params)
        return data.get("messages", [])

    def get_message_details(self, token: str, message_id: str) -> dict[str, Any]:
        """Fetch one message with its full header/body/attachment tree."""
        return self._request(
            "GET",
            f"{self.api_url}/messages/{message_id}",
            token=token,
            params={"format": "full"},
        )

    def mark_read(self, token: str, message_id: str) -> None:
        """Remove the UNREAD label from a message."""
        self._request(
            "POST",
            f"{self.api_url}/messages/{message_id}/modify",
            token=token,
            json={"removeLabelIds": ["UNREAD"]},
        )
        log.info("gmail_message_marked_read", message_id=message_id)


class TokenProvider:
    """
    Hands out valid access tokens for stored mailbox connections.

    Refreshes are single-flight per connection: callers that need a token
    while another refresh for the same connection is running wait for it
    and reuse the token it stored instead of refreshing again.
    """

    def __init__(self, client: GmailClient, store: ConversationStore):
        self.client = client
        self.store = store
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Latest token per connection, so waiters see the result of a refresh
        self._tokens: dict[str, tuple[str, datetime]] = {}

    def _lock_for(self, connection_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(connection_id)
            if lock is None:
                lock = self._locks[connection_id] = threading.Lock()
            return lock

    def token_for(self, connection: MailboxConnection) -> str:
        """
        Return a valid access token for the connection, refreshing if needed.

        Raises:
            AuthExpiredError: Token expired and no refresh token is stored
            RemoteAPIError: The refresh request was rejected
        """
        with self._lock_for(connection.id):
            access_token, expires_at = self._tokens.get(
                connection.id,
                (connection.access_token, connection.expires_at),
            )
            if expires_at < connection.expires_at:
                access_token, expires_at = connection.access_token, connection.expires_at

            if not self.client.needs_refresh(expires_at):
                return access_token

            if not connection.refresh_token:
                # Let the client decide between "still usable" and expired
                return self.client.get_valid_token(access_token, None, expires_at)

            grant = self.client.refresh_token(connection.refresh_token)
            new_expiry = grant.expires_at()
            self.store.save_tokens(
                connection.id,
                grant.access_token,
                new_expiry,
                refresh_token=grant.refresh_token,
            )
            self._tokens[connection.id] = (grant.access_token, new_expiry)
            connection.access_token = grant.access_token
            connection.expires_at = new_expiry
            if grant.refresh_token:
                connection.refresh_token = grant.refresh_token
            return grant.access_token
