"""Unit tests for the Gmail client and token provider."""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from mail_sync.core.errors import AuthExpiredError, RemoteAPIError
from mail_sync.core.models import MailboxConnection
from mail_sync.services.gmail import GmailClient, TokenGrant, TokenProvider


def _response(status: int = 200, payload: dict | None = None, text: str = ""):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = text
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session) -> GmailClient:
    return GmailClient(
        api_url="https://gmail.test/v1/users/me",
        token_url="https://oauth.test/token",
        client_id="client-id",
        client_secret="client-secret",
        timeout=5,
        session=session,
    )


class TestGmailRequests:
    """Tests for the REST calls."""

    def test_fetch_thread_messages(self, client, session):
        """Test a thread is fetched in full format with a bearer token."""
        session.request.return_value = _response(payload={"messages": [{"id": "m1"}, {"id": "m2"}]})

        messages = client.fetch_thread_messages("tok", "t1")

        assert [m["id"] for m in messages] == ["m1", "m2"]
        args, kwargs = session.request.call_args
        assert args == ("GET", "https://gmail.test/v1/users/me/threads/t1")
        assert kwargs["params"] == {"format": "full"}
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["timeout"] == 5

    def test_fetch_recent_messages_with_query(self, client, session):
        """Test list parameters are passed through."""
        session.request.return_value = _response(payload={"messages": [{"id": "m9", "threadId": "t9"}]})

        stubs = client.fetch_recent_messages("tok", max_results=10, query="is:unread")

        assert stubs == [{"id": "m9", "threadId": "t9"}]
        assert session.request.call_args.kwargs["params"] == {"maxResults": 10, "q": "is:unread"}

    def test_empty_list(self, client, session):
        """Test a list response without messages gives an empty list."""
        session.request.return_value = _response(payload={"resultSizeEstimate": 0})

        assert client.fetch_recent_messages("tok") == []

    def test_mark_read(self, client, session):
        """Test mark-as-read removes the UNREAD label."""
        session.request.return_value = _response(payload={"id": "m1"})

        client.mark_read("tok", "m1")

        args, kwargs = session.request.call_args
        assert args == ("POST", "https://gmail.test/v1/users/me/messages/m1/modify")
        assert kwargs["json"] == {"removeLabelIds": ["UNREAD"]}

    def test_non_2xx_raises_remote_api_error(self, client, session):
        """Test error responses carry status and body."""
        session.request.return_value = _response(status=404, text='{"error": "not found"}')

        with pytest.raises(RemoteAPIError) as exc_info:
            client.get_message_details("tok", "missing")

        assert exc_info.value.status == 404
        assert "not found" in exc_info.value.body
        assert exc_info.value.retryable is False

    def test_server_errors_are_retryable(self):
        """Test 5xx and 429 are marked retryable."""
        assert RemoteAPIError(503, "").retryable is True
        assert RemoteAPIError(429, "").retryable is True
        assert RemoteAPIError(401, "").retryable is False


class TestTokens:
    """Tests for token refresh rules."""

    def test_refresh_token_grant(self, client, session):
        """Test the refresh grant is posted as a form."""
        session.request.return_value = _response(payload={"access_token": "new", "expires_in": 1800})

        grant = client.refresh_token("refresh")

        assert grant.access_token == "new"
        assert grant.expires_in == 1800
        assert grant.refresh_token is None
        args, kwargs = session.request.call_args
        assert args == ("POST", "https://oauth.test/token")
        assert kwargs["data"]["grant_type"] == "refresh_token"
        assert kwargs["data"]["refresh_token"] == "refresh"

    def test_fresh_token_used_as_is(self, client, session):
        """Test a token with plenty of life left is not refreshed."""
        expires_at = datetime.now(timezone.utc) + timedelta(hours=1)

        assert client.get_valid_token("old", "refresh", expires_at) == "old"
        session.request.assert_not_called()

    def test_refreshes_inside_margin(self, client, session):
        """Test a token expiring within five minutes is refreshed proactively."""
        session.request.return_value = _response(payload={"access_token": "new", "expires_in": 3600})
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=4)

        assert client.get_valid_token("old", "refresh", expires_at) == "new"

    def test_expired_without_refresh_token(self, client, session):
        """Test an expired token with nothing to refresh fails without a request."""
        expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

        with pytest.raises(AuthExpiredError):
            client.get_valid_token("old", None, expires_at)

        session.request.assert_not_called()

    def test_inside_margin_without_refresh_token(self, client, session):
        """Test a still-valid token is used even if it cannot be refreshed."""
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=2)

        assert client.get_valid_token("old", None, expires_at) == "old"
        session.request.assert_not_called()

    def test_grant_expiry(self):
        """Test expires_at is computed from expires_in."""
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)

        assert TokenGrant("tok", expires_in=60).expires_at(now) == now + timedelta(seconds=60)


class TestTokenProvider:
    """Tests for per-connection token handout."""

    def _connection(self, minutes_left: int, refresh_token: str | None = "refresh"):
        return MailboxConnection(
            id="conn-1",
            user_id="user-1",
            company_id="company-1",
            email_address="studio@example.com",
            access_token="old",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=minutes_left),
            refresh_token=refresh_token,
        )

    def test_returns_current_token(self, client, session):
        """Test a valid token is handed out without refreshing."""
        provider = TokenProvider(client, MagicMock())

        assert provider.token_for(self._connection(60)) == "old"
        session.request.assert_not_called()

    def test_refresh_is_persisted(self, client, session):
        """Test a refreshed token is saved and set on the connection."""
        session.request.return_value = _response(
            payload={"access_token": "new", "expires_in": 3600, "refresh_token": "rotated"}
        )
        store = MagicMock()
        provider = TokenProvider(client, store)
        connection = self._connection(1)

        assert provider.token_for(connection) == "new"

        store.save_tokens.assert_called_once()
        args, kwargs = store.save_tokens.call_args
        assert args[:2] == ("conn-1", "new")
        assert kwargs["refresh_token"] == "rotated"
        assert connection.access_token == "new"
        assert connection.refresh_token == "rotated"

    def test_expired_without_refresh_token(self, client, session):
        """Test AuthExpiredError surfaces from the provider."""
        provider = TokenProvider(client, MagicMock())

        with pytest.raises(AuthExpiredError):
            provider.token_for(self._connection(-5, refresh_token=None))

        session.request.assert_not_called()

    def test_concurrent_callers_share_one_refresh(self, client, session):
        """Test parallel callers needing a refresh trigger exactly one."""
        def slow_refresh(*args, **kwargs):
            time.sleep(0.05)
            return _response(payload={"access_token": "new", "expires_in": 3600})

        session.request.side_effect = slow_refresh
        store = MagicMock()
        provider = TokenProvider(client, store)
        # Separate objects for the same stored connection, as separate passes load them
        connections = [self._connection(1) for _ in range(5)]
        tokens: list[str] = []

        def worker(connection):
            tokens.append(provider.token_for(connection))

        threads = [threading.Thread(target=worker, args=(c,)) for c in connections]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tokens == ["new"] * 5
        assert session.request.call_count == 1
        assert store.save_tokens.call_count == 1
