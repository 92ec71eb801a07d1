import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

import httpx
from sqlalchemy.orm import Session

from ..config import settings
from ..models.user import User
from .google_auth import GoogleAuth, OAuthError

logger = logging.getLogger(__name__)


class GmailAPIError(Exception):
    """
    Error raised by GmailClient.

    Attributes:
        code: Stable error code (UNAUTHENTICATED, RATE_LIMITED, TOKEN_REFRESH_ERROR, ...)
        retriable: Whether repeating the call later could succeed
        status: HTTP status returned by Gmail, if any
    """

    def __init__(self, message: str, code: str = "GMAIL_API_ERROR", retriable: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retriable = retriable
        self.status = status


def _error_code(status: int) -> str:
    if status == 401:
        return "UNAUTHENTICATED"
    if status == 404:
        return "NOT_FOUND"
    if status == 429:
        return "RATE_LIMITED"
    if 500 <= status < 600:
        return "SERVER_ERROR"
    return "GMAIL_API_ERROR"


def _error_message(error: httpx.HTTPStatusError) -> str:
    try:
        return error.response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"Gmail API returned HTTP {error.response.status_code}"


def _parse_header_date(value: str) -> Optional[datetime]:
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class GmailClient:
    """
    Read-only Gmail REST client for one user.

    All calls go through execute_with_rate_limit, which paces requests per
    one-second window and retries 429/5xx responses with exponential backoff.
    Expired access tokens are refreshed and written back to the User row.
    """

    BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"
    METADATA_HEADERS = ["From", "Subject", "Date"]

    def __init__(
        self,
        user: User,
        db: Session,
        http_client: Optional[httpx.AsyncClient] = None,
        auth: Optional[GoogleAuth] = None,
        max_requests_per_second: Optional[int] = None,
        retry_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.user = user
        self.db = db
        self.auth = auth or GoogleAuth()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=30)

        self.max_requests_per_second = max_requests_per_second or settings.GMAIL_MAX_REQUESTS_PER_SECOND
        self.retry_delay = settings.GMAIL_RETRY_DELAY if retry_delay is None else retry_delay
        self.max_retries = settings.GMAIL_MAX_RETRIES if max_retries is None else max_retries

        self._window_start = 0.0
        self._request_count = 0

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    async def _pace(self):
        now = time.monotonic()
        if now - self._window_start < 1.0:
            self._request_count += 1
            if self._request_count > self.max_requests_per_second:
                logger.debug(f"Gmail request budget spent for this second, pausing {self.retry_delay}s")
                await asyncio.sleep(self.retry_delay)
        else:
            self._window_start = now
            self._request_count = 1

    async def execute_with_rate_limit(self, fn: Callable[[], Awaitable]):
        """
        Run a Gmail call with pacing and retries.

        Args:
            fn: Zero-argument coroutine function performing one HTTP request

        Raises:
            GmailAPIError: After retries are exhausted or on a non-retriable failure
        """
        await self._pace()

        retries = 0
        while True:
            try:
                return await fn()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                retriable = status == 429 or 500 <= status < 600
                if retriable and retries < self.max_retries:
                    retries += 1
                    delay = (2 ** retries) * self.retry_delay
                    logger.warning(f"Gmail returned {status}, retrying in {delay}s (attempt {retries}/{self.max_retries})")
                    await asyncio.sleep(delay)
                    continue
                raise GmailAPIError(_error_message(e), _error_code(status), retriable, status) from e
            except httpx.TransportError as e:
                raise GmailAPIError(f"Network error talking to Gmail: {e}", "NETWORK_ERROR", True) from e

    async def _get(self, path: str, params: Optional[Dict] = None) -> Dict:
        async def call():
            response = await self.http_client.get(
                f"{self.BASE_URL}{path}",
                headers={"Authorization": f"Bearer {self.user.gmail_access_token}"},
                params=params,
            )
            response.raise_for_status()
            return response.json()

        return await self.execute_with_rate_limit(call)

    async def ensure_valid_token(self):
        """Refresh the access token if it is missing an expiry or expires within 5 minutes."""
        expires_at = self.user.token_expires_at
        if expires_at and datetime.utcnow() < expires_at - timedelta(minutes=5):
            return

        try:
            tokens = await asyncio.to_thread(self.auth.refresh_access_token, self.user.gmail_refresh_token)
        except OAuthError as e:
            raise GmailAPIError(str(e), "TOKEN_REFRESH_ERROR", True) from e

        self.user.gmail_access_token = tokens["access_token"]
        if tokens.get("refresh_token"):
            self.user.gmail_refresh_token = tokens["refresh_token"]
        self.user.token_expires_at = tokens["expires_at"]
        self.db.commit()
        logger.info(f"Refreshed Gmail access token for {self.user.email}")

    # ------------------------------------------------------------------
    # Gmail operations
    # ------------------------------------------------------------------

    async def list_emails(
        self,
        max_results: int = 100,
        page_token: Optional[str] = None,
        label_ids: Optional[List[str]] = None,
        q: Optional[str] = None,
    ) -> Dict:
        """
        List messages and fetch their metadata in parallel.

        Returns:
            Dictionary with "emails" (Gmail message resources, metadata format)
            and "next_page_token"
        """
        await self.ensure_valid_token()

        params = {"maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        if label_ids:
            params["labelIds"] = label_ids
        if q:
            params["q"] = q

        data = await self._get("/messages", params)
        messages = data.get("messages", [])

        emails = await asyncio.gather(*[
            self._get(
                f"/messages/{message['id']}",
                {"format": "metadata", "metadataHeaders": self.METADATA_HEADERS},
            )
            for message in messages
        ])

        return {
            "emails": list(emails),
            "next_page_token": data.get("nextPageToken"),
        }

    async def get_email(self, message_id: str, format: str = "full") -> Dict:
        """Fetch a single message by id."""
        await self.ensure_valid_token()
        return await self._get(f"/messages/{message_id}", {"format": format})

    async def list_labels(self) -> List[Dict]:
        await self.ensure_valid_token()
        data = await self._get("/labels")
        return data.get("labels", [])

    async def get_user_profile(self) -> Dict:
        await self.ensure_valid_token()
        return await self._get("/profile")

    # The connection is read-only; anything that writes to the mailbox is refused.

    async def create_label(self, *args, **kwargs):
        raise GmailAPIError("Creating labels is not available in read-only mode", "READ_ONLY_MODE", False)

    async def update_label(self, *args, **kwargs):
        raise GmailAPIError("Updating labels is not available in read-only mode", "READ_ONLY_MODE", False)

    async def delete_label(self, *args, **kwargs):
        raise GmailAPIError("Deleting labels is not available in read-only mode", "READ_ONLY_MODE", False)

    async def modify_message_labels(self, *args, **kwargs):
        raise GmailAPIError("Modifying message labels is not available in read-only mode", "READ_ONLY_MODE", False)

    @staticmethod
    def parse_email_metadata(message: Dict) -> Dict:
        """
        Extract subject, sender, received date and read state from a message.

        received_at comes from the Date header, then internalDate, then now (naive UTC).
        """
        subject = ""
        sender = ""
        received_at = None
        label_ids = message.get("labelIds") or []

        for header in (message.get("payload") or {}).get("headers") or []:
            name = (header.get("name") or "").lower()
            if name == "subject":
                subject = header.get("value", "")
            elif name == "from":
                sender = header.get("value", "")
            elif name == "date":
                received_at = _parse_header_date(header.get("value", ""))

        if received_at is None and message.get("internalDate"):
            try:
                timestamp = int(message["internalDate"]) / 1000
                received_at = datetime.fromtimestamp(timestamp, tz=timezone.utc).replace(tzinfo=None)
            except (TypeError, ValueError):
                received_at = None

        if received_at is None:
            received_at = datetime.utcnow()

        return {
            "subject": subject,
            "sender": sender,
            "received_at": received_at,
            "is_read": "UNREAD" not in label_ids,
        }


def create_gmail_client_for_user(user: Optional[User], db: Session, **kwargs) -> Optional[GmailClient]:
    """Return a GmailClient, or None when the user has no complete set of Gmail tokens."""
    if not user or not user.gmail_connected:
        return None
    return GmailClient(user, db, **kwargs)
