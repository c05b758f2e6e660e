"""
Error taxonomy for the sync engine.
"""


class MailSyncError(Exception):
    """Base class for sync engine errors."""


class AuthExpiredError(MailSyncError):
    """No usable access token and no way to refresh it.

    Not retryable until the mailbox owner re-authorizes the connection.
    """


class RemoteAPIError(MailSyncError):
    """Non-2xx response from the mailbox provider."""

    def __init__(self, status: int, body: str, url: str = ""):
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"Gmail API returned {status} for {url or 'request'}: {body[:200]}")

    @property
    def retryable(self) -> bool:
        """Rate limits and server errors are worth retrying on a later pass."""
        return self.status == 429 or self.status >= 500


class NotFoundError(MailSyncError):
    """A connection, cursor or record that was expected does not exist."""
