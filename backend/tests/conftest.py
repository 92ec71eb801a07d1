"""Shared test fixtures for all test modules."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LLM_API_KEY", "test-key")

import base64
from collections.abc import Generator
from datetime import datetime, timedelta
from unittest.mock import Mock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from triage.database import Base, get_db
from triage.dependencies import get_current_user, get_gmail_client, get_optional_gmail_client
from triage.main import app
from triage.models import User
from triage.services.gmail import GmailClient

GMAIL_PREFIX = "/gmail/v1/users/me"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """In-memory SQLite session shared across threads for TestClient requests."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    session = TestingSession()
    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def user(db_session: Session) -> User:
    """A user with a valid, unexpired Gmail connection."""
    user = User(
        email="me@example.com",
        display_name="me",
        gmail_access_token="access-token",
        gmail_refresh_token="refresh-token",
        token_expires_at=datetime.utcnow() + timedelta(hours=1),
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


# ============================================================================
# Gmail Fixtures
# ============================================================================

def encode_body(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


@pytest.fixture
def make_message():
    """
    Factory for Gmail message resources.

    Usage:
        message = make_message("m1", subject="Hi", body="Hello there")
    """
    def factory(
        message_id,
        subject="Hello",
        sender="Alice <alice@example.com>",
        date="Mon, 06 Jan 2025 10:00:00 +0000",
        label_ids=("INBOX", "UNREAD"),
        body=None,
        parts=None,
        snippet="A short snippet",
        internal_date=None,
    ):
        headers = [{"name": "Subject", "value": subject}, {"name": "From", "value": sender}]
        if date is not None:
            headers.append({"name": "Date", "value": date})

        payload = {"mimeType": "multipart/alternative" if parts else "text/plain", "headers": headers}
        if body is not None:
            payload["body"] = {"data": encode_body(body)}
        if parts is not None:
            payload["parts"] = parts

        message = {
            "id": message_id,
            "threadId": f"thread-{message_id}",
            "labelIds": list(label_ids),
            "snippet": snippet,
            "payload": payload,
        }
        if internal_date is not None:
            message["internalDate"] = internal_date
        return message

    return factory


@pytest.fixture
def make_part():
    def factory(mime_type, text=None, parts=None):
        part = {"mimeType": mime_type, "body": {"data": encode_body(text)} if text is not None else {"size": 0}}
        if parts is not None:
            part["parts"] = parts
        return part

    return factory


@pytest.fixture
def gmail_handler():
    """
    Build an httpx.MockTransport handler serving a fake mailbox.

    Usage:
        handler = gmail_handler(messages=[...], labels=[...])
    """
    def factory(messages=(), labels=(), profile=None, next_page_token=None):
        by_id = {message["id"]: message for message in messages}
        profile = profile or {"emailAddress": "me@example.com", "messagesTotal": 1234, "threadsTotal": 987}

        def handler(request: httpx.Request) -> httpx.Response:
            handler.requests.append(request)
            path = request.url.path[len(GMAIL_PREFIX):]

            if path == "/profile":
                return httpx.Response(200, json=profile)
            if path == "/labels":
                return httpx.Response(200, json={"labels": list(labels)})
            if path == "/messages":
                listing = {"messages": [{"id": m["id"], "threadId": m["threadId"]} for m in messages]}
                if next_page_token:
                    listing["nextPageToken"] = next_page_token
                return httpx.Response(200, json=listing)
            if path.startswith("/messages/"):
                message = by_id.get(path.split("/")[-1])
                if message is None:
                    return httpx.Response(404, json={"error": {"code": 404, "message": "Requested entity was not found."}})
                return httpx.Response(200, json=message)
            return httpx.Response(404, json={"error": {"code": 404, "message": "Unknown path"}})

        handler.requests = []
        return handler

    return factory


@pytest.fixture
def make_gmail_client(db_session: Session, user: User):
    """Factory for GmailClient instances backed by a mock transport, with no retry delay."""
    def factory(handler, **kwargs):
        kwargs.setdefault("retry_delay", 0)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return GmailClient(kwargs.pop("user", user), db_session, http_client=http_client, **kwargs)

    return factory


# ============================================================================
# LLM Fixtures
# ============================================================================

@pytest.fixture
def llm_response():
    """Factory for chat completion responses carrying `content`."""
    def factory(content):
        return Mock(choices=[Mock(message=Mock(content=content))])

    return factory


@pytest.fixture
def fake_llm():
    """
    Patch the classifier's LLM client.

    Usage:
        fake_llm.chat.completions.create.return_value = llm_response('{"classification": "ATTN"}')
    """
    client = Mock()
    with patch("triage.services.classifier.get_client", return_value=client):
        yield client


# ============================================================================
# API Fixtures
# ============================================================================

@pytest.fixture
def api(db_session: Session, user: User) -> Generator[TestClient, None, None]:
    """TestClient signed in as `user`, without a Gmail client."""
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_current_user] = lambda: user
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def use_gmail(api: TestClient):
    """Install a GmailClient for the current test's requests."""
    def install(gmail_client):
        app.dependency_overrides[get_gmail_client] = lambda: gmail_client
        app.dependency_overrides[get_optional_gmail_client] = lambda: gmail_client
        return gmail_client

    return install
