import asyncio
import logging
from typing import Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import (
    api_error,
    get_current_user,
    get_gmail_client,
    get_optional_gmail_client,
    gmail_error_to_http,
)
from ..models import ProcessingStats, User
from ..services.classifier import ClassificationError, analyze_important_emails
from ..services.content import extract_display_content
from ..services.gmail import GmailAPIError, GmailClient
from ..services.mailbox import (
    email_summary,
    fetch_recent_emails,
    label_to_dict,
    save_email_metadata,
    sync_labels,
    sync_mailbox,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/gmail", tags=["gmail"])


@router.get("/connection")
async def get_connection(
    user: User = Depends(get_current_user),
    client: Optional[GmailClient] = Depends(get_optional_gmail_client),
    db: Session = Depends(get_db),
):
    """
    Report whether Gmail is connected, with mailbox totals and the last sync time.

    Tokens Gmail refuses are cleared, so the next call reports connected: false.
    """
    if client is None:
        return {"connected": False}

    try:
        profile = await client.get_user_profile()
    except GmailAPIError as e:
        logger.error(f"Error checking Gmail connection: {e.message}")
        if e.code in ("UNAUTHENTICATED", "TOKEN_REFRESH_ERROR"):
            user.clear_gmail_tokens()
            db.commit()
        return {
            "connected": False,
            "error": {"message": e.message, "code": e.code},
        }

    latest_sync = db.query(ProcessingStats).filter(
        ProcessingStats.user_id == user.id,
        ProcessingStats.status == "COMPLETED",
    ).order_by(ProcessingStats.end_time.desc()).first()

    return {
        "connected": True,
        "email": profile.get("emailAddress"),
        "stats": {
            "messages_total": profile.get("messagesTotal"),
            "threads_total": profile.get("threadsTotal"),
            "last_sync": latest_sync.end_time.isoformat() if latest_sync and latest_sync.end_time else None,
        },
    }


@router.delete("/connection")
async def disconnect(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Forget the stored Gmail tokens."""
    user.clear_gmail_tokens()
    db.commit()
    logger.info(f"Gmail disconnected for {user.email}")
    return {"connected": False}


@router.get("/emails")
async def list_emails(
    max_results: int = Query(default=50, ge=1, le=500, description="Number of emails to list"),
    page_token: Optional[str] = Query(default=None),
    label_ids: Optional[str] = Query(default=None, description="Comma separated Gmail label ids"),
    q: Optional[str] = Query(default=None, description="Gmail search query"),
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """
    List emails from Gmail and store the ones not seen before.

    Returns:
        dict: emails and next_page_token
    """
    labels = [label.strip() for label in label_ids.split(",") if label.strip()] if label_ids else None

    try:
        response = await client.list_emails(
            max_results=max_results,
            page_token=page_token,
            label_ids=labels,
            q=q,
        )
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    emails = []
    for message in response["emails"]:
        metadata = client.parse_email_metadata(message)
        save_email_metadata(db, user, message, metadata)
        emails.append(email_summary(message, metadata))

    return {"emails": emails, "next_page_token": response["next_page_token"]}


@router.post("/emails/sync")
async def sync_emails(
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """Upsert the 100 latest emails and record the run."""
    try:
        return await sync_mailbox(db, user, client)
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)


@router.get("/emails/{email_id}/content")
async def get_email_content(
    email_id: str,
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """
    Get the displayable body of one email.

    HTML is preferred; the snippet is returned when the message has no body data.
    """
    try:
        message = await client.get_email(email_id)
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    metadata = client.parse_email_metadata(message)
    return {
        "id": message["id"],
        "thread_id": message.get("threadId"),
        "subject": metadata["subject"],
        "sender": metadata["sender"],
        "received_at": metadata["received_at"].isoformat(),
        "content": extract_display_content(message),
        "snippet": message.get("snippet", ""),
    }


@router.get("/labels")
async def list_labels(
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """Mirror Gmail labels into the database and return them."""
    try:
        gmail_labels = await client.list_labels()
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    labels = sync_labels(db, user, gmail_labels)
    return {"labels": [label_to_dict(label) for label in labels]}


@router.get("/recent")
async def recent_emails(
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """The 100 latest emails with cleaned body text. Nothing is stored."""
    try:
        emails = await fetch_recent_emails(client)
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    return {"emails": emails}


@router.get("/today")
async def todays_emails(
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """Emails received since local midnight; new ones are stored."""
    midnight = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0)

    try:
        response = await client.list_emails(max_results=50, q=f"after:{int(midnight.timestamp())}")
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    emails = []
    for message in response["emails"]:
        metadata = client.parse_email_metadata(message)
        save_email_metadata(db, user, message, metadata)
        emails.append(email_summary(message, metadata))

    return {"emails": emails}


@router.get("/important")
async def important_emails(
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """Recent emails the LLM picked as important, each with a short summary."""
    try:
        emails = await fetch_recent_emails(client)
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    try:
        analysis = await asyncio.to_thread(analyze_important_emails, emails)
    except ClassificationError as e:
        logger.error(f"Error analyzing important emails: {str(e)}")
        raise api_error(500, str(e), "CLASSIFICATION_ERROR")

    summaries = {item["id"]: item["summary"] for item in analysis}
    return {
        "emails": [
            dict(email, summary=summaries[email["id"]])
            for email in emails
            if email["id"] in summaries
        ]
    }
