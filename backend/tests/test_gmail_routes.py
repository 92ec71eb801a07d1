"""Tests for the /api/gmail endpoints."""

from datetime import datetime

import httpx

from triage.dependencies import get_current_user
from triage.main import app
from triage.models import Email, Label, ProcessingStats


def test_requires_sign_in(api):
    del app.dependency_overrides[get_current_user]

    response = api.get("/api/gmail/connection")

    assert response.status_code == 401
    assert response.json()["detail"] == {"message": "Unauthorized", "code": "UNAUTHORIZED"}


def test_not_connected_is_400(api, user, db_session):
    user.clear_gmail_tokens()
    db_session.commit()

    response = api.get("/api/gmail/labels")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "GMAIL_NOT_CONNECTED"


class TestConnection:
    def test_connected(self, api, user, db_session, use_gmail, gmail_handler, make_gmail_client):
        db_session.add(ProcessingStats(
            user_id=user.id, batch_id="sync-1", status="COMPLETED", end_time=datetime(2025, 1, 6, 12, 0),
        ))
        db_session.commit()
        use_gmail(make_gmail_client(gmail_handler()))

        response = api.get("/api/gmail/connection")

        assert response.status_code == 200
        assert response.json() == {
            "connected": True,
            "email": "me@example.com",
            "stats": {"messages_total": 1234, "threads_total": 987, "last_sync": "2025-01-06T12:00:00"},
        }

    def test_without_tokens(self, api, use_gmail):
        use_gmail(None)

        assert api.get("/api/gmail/connection").json() == {"connected": False}

    def test_rejected_tokens_are_cleared(self, api, user, db_session, use_gmail, make_gmail_client):
        use_gmail(make_gmail_client(lambda request: httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})))

        response = api.get("/api/gmail/connection")

        assert response.status_code == 200
        assert response.json()["connected"] is False
        assert response.json()["error"]["code"] == "UNAUTHENTICATED"
        db_session.refresh(user)
        assert user.gmail_access_token is None
        assert user.gmail_connected is False

    def test_disconnect(self, api, user, db_session):
        response = api.delete("/api/gmail/connection")

        assert response.json() == {"connected": False}
        db_session.refresh(user)
        assert user.gmail_refresh_token is None


class TestEmails:
    def test_lists_and_stores_new_emails(self, api, db_session, use_gmail, make_message, gmail_handler, make_gmail_client):
        handler = gmail_handler(messages=[make_message("m1", subject="Hi")], next_page_token="next")
        use_gmail(make_gmail_client(handler))

        response = api.get("/api/gmail/emails", params={"max_results": 5, "label_ids": "INBOX,UNREAD"})

        assert response.status_code == 200
        body = response.json()
        assert body["next_page_token"] == "next"
        assert body["emails"][0]["id"] == "m1"
        assert body["emails"][0]["subject"] == "Hi"
        assert body["emails"][0]["is_read"] is False
        assert handler.requests[0].url.params.get_list("labelIds") == ["INBOX", "UNREAD"]
        assert db_session.query(Email).filter(Email.gmail_id == "m1").count() == 1

    def test_gmail_401_clears_tokens(self, api, user, db_session, use_gmail, make_gmail_client):
        use_gmail(make_gmail_client(lambda request: httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})))

        response = api.get("/api/gmail/emails")

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "UNAUTHENTICATED"
        db_session.refresh(user)
        assert user.gmail_connected is False

    def test_sync(self, api, db_session, use_gmail, make_message, gmail_handler, make_gmail_client):
        use_gmail(make_gmail_client(gmail_handler(messages=[make_message("m1")])))

        response = api.post("/api/gmail/emails/sync")

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        assert response.json()["total"] == 1234
        assert db_session.query(ProcessingStats).one().status == "COMPLETED"

    def test_content_prefers_html(self, api, use_gmail, make_message, make_part, gmail_handler, make_gmail_client):
        message = make_message("m1", parts=[make_part("text/plain", "plain"), make_part("text/html", "<p>rich</p>")])
        use_gmail(make_gmail_client(gmail_handler(messages=[message])))

        response = api.get("/api/gmail/emails/m1/content")

        assert response.status_code == 200
        assert response.json()["content"] == "<p>rich</p>"
        assert response.json()["thread_id"] == "thread-m1"

    def test_content_not_found(self, api, use_gmail, gmail_handler, make_gmail_client):
        use_gmail(make_gmail_client(gmail_handler(messages=[])))

        response = api.get("/api/gmail/emails/missing/content")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    def test_today_queries_since_midnight(self, api, use_gmail, make_message, gmail_handler, make_gmail_client):
        handler = gmail_handler(messages=[make_message("m1")])
        use_gmail(make_gmail_client(handler))

        response = api.get("/api/gmail/today")

        midnight = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)
        assert response.status_code == 200
        assert len(response.json()["emails"]) == 1
        assert handler.requests[0].url.params["q"] == f"after:{int(midnight.timestamp())}"
        assert handler.requests[0].url.params["maxResults"] == "50"

    def test_recent_is_not_stored(self, api, db_session, use_gmail, make_message, gmail_handler, make_gmail_client):
        use_gmail(make_gmail_client(gmail_handler(messages=[make_message("m1", body="<b>Hello</b>")])))

        response = api.get("/api/gmail/recent")

        assert response.json()["emails"][0]["content"] == "Hello"
        assert db_session.query(Email).count() == 0


def test_labels_are_mirrored(api, db_session, use_gmail, gmail_handler, make_gmail_client):
    labels = [
        {"id": "INBOX", "name": "INBOX", "type": "system"},
        {"id": "Label_1", "name": "Receipts", "type": "user", "color": {"backgroundColor": "#fff", "textColor": "#000"}},
    ]
    use_gmail(make_gmail_client(gmail_handler(labels=labels)))

    response = api.get("/api/gmail/labels")

    assert response.status_code == 200
    body = {label["gmail_label_id"]: label for label in response.json()["labels"]}
    assert body["INBOX"]["is_default"] is True
    assert body["Label_1"]["color"] == {"background_color": "#fff", "text_color": "#000"}
    assert db_session.query(Label).count() == 2


def test_important_emails(api, use_gmail, fake_llm, llm_response, make_message, gmail_handler, make_gmail_client):
    use_gmail(make_gmail_client(gmail_handler(messages=[make_message("m1"), make_message("m2")])))
    fake_llm.chat.completions.create.return_value = llm_response(
        '{"important_emails": [{"id": "m2", "summary": "Bill due Friday"}]}'
    )

    response = api.get("/api/gmail/important")

    assert response.status_code == 200
    emails = response.json()["emails"]
    assert [email["id"] for email in emails] == ["m2"]
    assert emails[0]["summary"] == "Bill due Friday"


def test_important_emails_llm_failure(api, use_gmail, fake_llm, llm_response, gmail_handler, make_gmail_client, make_message):
    use_gmail(make_gmail_client(gmail_handler(messages=[make_message("m1")])))
    fake_llm.chat.completions.create.return_value = llm_response("not json at all")

    response = api.get("/api/gmail/important")

    assert response.status_code == 500
    assert response.json()["detail"]["code"] == "CLASSIFICATION_ERROR"
