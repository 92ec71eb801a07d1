"""Tests for the read-only Gmail REST client."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from triage.services import gmail as gmail_module
from triage.services.gmail import GmailAPIError, GmailClient, create_gmail_client_for_user
from triage.services.google_auth import OAuthError


class TestListEmails:
    def test_fetches_metadata_for_each_message(self, make_message, gmail_handler, make_gmail_client):
        handler = gmail_handler(
            messages=[make_message("m1", subject="First"), make_message("m2", subject="Second")],
            next_page_token="page-2",
        )
        client = make_gmail_client(handler)

        result = asyncio.run(client.list_emails(max_results=2, q="after:0"))

        assert [email["id"] for email in result["emails"]] == ["m1", "m2"]
        assert result["next_page_token"] == "page-2"

        listing = handler.requests[0]
        assert listing.url.params["maxResults"] == "2"
        assert listing.url.params["q"] == "after:0"

        detail = handler.requests[1]
        assert detail.url.params["format"] == "metadata"
        assert detail.url.params.get_list("metadataHeaders") == ["From", "Subject", "Date"]
        assert detail.headers["Authorization"] == "Bearer access-token"

    def test_passes_label_ids_and_page_token(self, gmail_handler, make_gmail_client):
        handler = gmail_handler(messages=[])
        client = make_gmail_client(handler)

        result = asyncio.run(client.list_emails(page_token="abc", label_ids=["INBOX", "IMPORTANT"]))

        assert result == {"emails": [], "next_page_token": None}
        assert handler.requests[0].url.params["pageToken"] == "abc"
        assert handler.requests[0].url.params.get_list("labelIds") == ["INBOX", "IMPORTANT"]


class TestRetries:
    def test_retries_rate_limited_requests(self, make_gmail_client):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429, json={"error": {"message": "Rate Limit Exceeded"}})
            return httpx.Response(200, json={"emailAddress": "me@example.com"})

        client = make_gmail_client(handler)
        profile = asyncio.run(client.get_user_profile())

        assert profile["emailAddress"] == "me@example.com"
        assert len(calls) == 2

    def test_gives_up_after_max_retries(self, make_gmail_client):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, json={"error": {"message": "Backend Error"}})

        client = make_gmail_client(handler, max_retries=3)

        with pytest.raises(GmailAPIError) as exc_info:
            asyncio.run(client.get_user_profile())

        assert len(calls) == 4  # first attempt + 3 retries
        assert exc_info.value.code == "SERVER_ERROR"
        assert exc_info.value.retriable is True
        assert exc_info.value.status == 503
        assert exc_info.value.message == "Backend Error"

    def test_backoff_doubles_each_attempt(self, make_gmail_client):
        def handler(request):
            return httpx.Response(500)

        client = make_gmail_client(handler, retry_delay=1.0, max_retries=3)
        sleep = AsyncMock()

        with patch.object(gmail_module.asyncio, "sleep", sleep):
            with pytest.raises(GmailAPIError):
                asyncio.run(client.get_user_profile())

        assert [call.args[0] for call in sleep.call_args_list] == [2.0, 4.0, 8.0]

    def test_unauthorized_is_not_retried(self, make_gmail_client):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        client = make_gmail_client(handler)

        with pytest.raises(GmailAPIError) as exc_info:
            asyncio.run(client.get_user_profile())

        assert len(calls) == 1
        assert exc_info.value.code == "UNAUTHENTICATED"
        assert exc_info.value.retriable is False

    def test_missing_message_is_not_found(self, gmail_handler, make_gmail_client):
        client = make_gmail_client(gmail_handler(messages=[]))

        with pytest.raises(GmailAPIError) as exc_info:
            asyncio.run(client.get_email("missing"))

        assert exc_info.value.code == "NOT_FOUND"
        assert exc_info.value.status == 404

    def test_network_failure(self, make_gmail_client):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_gmail_client(handler)

        with pytest.raises(GmailAPIError) as exc_info:
            asyncio.run(client.list_labels())

        assert exc_info.value.code == "NETWORK_ERROR"


class TestRateLimit:
    def test_pauses_when_window_budget_is_spent(self, make_gmail_client):
        client = make_gmail_client(Mock(), max_requests_per_second=2, retry_delay=0.5)
        sleep = AsyncMock()

        async def three_calls():
            for _ in range(3):
                await client._pace()

        with patch.object(gmail_module.asyncio, "sleep", sleep):
            asyncio.run(three_calls())

        sleep.assert_awaited_once_with(0.5)

    def test_new_window_resets_counter(self, make_gmail_client):
        client = make_gmail_client(Mock(), max_requests_per_second=1)
        client._window_start = 0.0
        client._request_count = 50

        asyncio.run(client._pace())

        assert client._request_count == 1


class TestReadOnly:
    @pytest.mark.parametrize("method", ["create_label", "update_label", "delete_label", "modify_message_labels"])
    def test_write_operations_are_refused(self, make_gmail_client, method):
        client = make_gmail_client(Mock())

        with pytest.raises(GmailAPIError) as exc_info:
            asyncio.run(getattr(client, method)("anything"))

        assert exc_info.value.code == "READ_ONLY_MODE"
        assert exc_info.value.retriable is False


class TestTokenRefresh:
    def test_refreshes_expiring_token(self, user, db_session, gmail_handler, make_gmail_client):
        user.token_expires_at = datetime.utcnow() + timedelta(minutes=2)
        db_session.commit()
        new_expiry = datetime.utcnow() + timedelta(hours=1)
        auth = Mock()
        auth.refresh_access_token.return_value = {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_at": new_expiry,
        }
        handler = gmail_handler()
        client = make_gmail_client(handler, auth=auth)

        asyncio.run(client.get_user_profile())

        auth.refresh_access_token.assert_called_once_with("refresh-token")
        db_session.refresh(user)
        assert user.gmail_access_token == "new-access"
        assert user.gmail_refresh_token == "new-refresh"
        assert user.token_expires_at == new_expiry
        assert handler.requests[0].headers["Authorization"] == "Bearer new-access"

    def test_valid_token_is_not_refreshed(self, gmail_handler, make_gmail_client):
        auth = Mock()
        client = make_gmail_client(gmail_handler(), auth=auth)

        asyncio.run(client.get_user_profile())

        auth.refresh_access_token.assert_not_called()

    def test_refresh_failure(self, user, db_session, make_gmail_client):
        user.token_expires_at = datetime.utcnow() - timedelta(minutes=1)
        db_session.commit()
        auth = Mock()
        auth.refresh_access_token.side_effect = OAuthError("invalid_grant")
        client = make_gmail_client(Mock(), auth=auth)

        with pytest.raises(GmailAPIError) as exc_info:
            asyncio.run(client.list_labels())

        assert exc_info.value.code == "TOKEN_REFRESH_ERROR"


class TestParseEmailMetadata:
    def test_reads_headers(self, make_message):
        message = make_message(
            "m1",
            subject="Quarterly update",
            sender="Bob <bob@example.com>",
            date="Tue, 07 Jan 2025 09:30:00 -0500",
            label_ids=["INBOX"],
        )

        metadata = GmailClient.parse_email_metadata(message)

        assert metadata["subject"] == "Quarterly update"
        assert metadata["sender"] == "Bob <bob@example.com>"
        assert metadata["received_at"] == datetime(2025, 1, 7, 14, 30)
        assert metadata["is_read"] is True

    def test_unread_label(self, make_message):
        metadata = GmailClient.parse_email_metadata(make_message("m1", label_ids=["INBOX", "UNREAD"]))
        assert metadata["is_read"] is False

    def test_falls_back_to_internal_date(self, make_message):
        message = make_message("m1", date="not a date", internal_date="1736157600000")

        metadata = GmailClient.parse_email_metadata(message)

        assert metadata["received_at"] == datetime(2025, 1, 6, 10, 0)

    def test_falls_back_to_now(self, make_message):
        before = datetime.utcnow()
        metadata = GmailClient.parse_email_metadata(make_message("m1", date=None))

        assert metadata["received_at"] >= before

    def test_missing_headers(self):
        metadata = GmailClient.parse_email_metadata({"id": "m1"})

        assert metadata["subject"] == ""
        assert metadata["sender"] == ""


def test_client_requires_all_tokens(user, db_session):
    assert isinstance(create_gmail_client_for_user(user, db_session), GmailClient)

    user.gmail_refresh_token = None
    assert create_gmail_client_for_user(user, db_session) is None
    assert create_gmail_client_for_user(None, db_session) is None
