"""
Mirror Gmail messages and labels into the local database.
"""

import json
import asyncio
import logging
import time
from typing import Dict, List, Optional
from datetime import datetime

from sqlalchemy.orm import Session

from ..models import Email, Label, ProcessingStats, User
from .content import clean_email_content, extract_recent_content
from .gmail import GmailClient

logger = logging.getLogger(__name__)


def email_summary(message: Dict, metadata: Dict, **extra) -> Dict:
    """API representation of a Gmail message plus its parsed metadata."""
    summary = {
        "id": message["id"],
        "thread_id": message.get("threadId"),
        "subject": metadata["subject"],
        "snippet": message.get("snippet", ""),
        "sender": metadata["sender"],
        "received_at": metadata["received_at"].isoformat(),
        "is_read": metadata["is_read"],
        "label_ids": message.get("labelIds") or [],
    }
    summary.update(extra)
    return summary


def save_email_metadata(db: Session, user: User, message: Dict, metadata: Dict, update: bool = False) -> Email:
    """
    Store a Gmail message's metadata for the user.

    Args:
        db: Database session
        user: Owner of the mailbox
        message: Gmail message resource
        metadata: Output of GmailClient.parse_email_metadata
        update: Overwrite an existing row instead of leaving it untouched

    Returns:
        The stored Email row
    """
    email = db.query(Email).filter(
        Email.user_id == user.id,
        Email.gmail_id == message["id"],
    ).first()

    if email and not update:
        return email

    if email is None:
        email = Email(user_id=user.id, gmail_id=message["id"])
        db.add(email)

    email.thread_id = message.get("threadId")
    email.subject = metadata["subject"]
    email.snippet = message.get("snippet", "")
    email.sender = metadata["sender"]
    email.received_at = metadata["received_at"]
    email.is_read = metadata["is_read"]
    email.label_ids = json.dumps(message.get("labelIds") or [])

    db.commit()
    return email


def update_email_category(db: Session, user: User, gmail_id: str, result: Dict) -> bool:
    """Copy a classification onto the stored Email row; returns False when no row exists."""
    email = db.query(Email).filter(
        Email.user_id == user.id,
        Email.gmail_id == gmail_id,
    ).first()
    if not email:
        return False

    email.category = result["classification"]
    email.category_confidence = result["confidence"]
    db.commit()
    return True


async def fetch_recent_emails(client: GmailClient, max_results: int = 100) -> List[Dict]:
    """
    List the latest messages and attach cleaned body text to each.

    Bodies that cannot be fetched are left empty rather than failing the batch.
    """
    response = await client.list_emails(max_results=max_results)
    messages = response["emails"]

    async def load_content(message_id: str) -> str:
        try:
            full = await client.get_email(message_id)
        except Exception as e:
            logger.warning(f"Could not fetch body for {message_id}: {e}")
            return ""
        return clean_email_content(extract_recent_content(full))

    contents = await asyncio.gather(*[load_content(message["id"]) for message in messages])

    return [
        email_summary(message, client.parse_email_metadata(message), content=content)
        for message, content in zip(messages, contents)
    ]


async def sync_mailbox(db: Session, user: User, client: GmailClient, max_results: int = 100) -> Dict:
    """
    Upsert the latest messages and record the run in ProcessingStats.

    Returns:
        dict: status, processed count, mailbox total and batch id
    """
    profile = await client.get_user_profile()

    batch_id = f"sync-{int(time.time() * 1000)}"
    stats = ProcessingStats(user_id=user.id, batch_id=batch_id, status="PROCESSING")
    db.add(stats)
    db.commit()

    try:
        response = await client.list_emails(max_results=max_results)
    except Exception:
        stats.status = "FAILED"
        stats.end_time = datetime.utcnow()
        db.commit()
        raise

    success_count = 0
    error_count = 0
    for message in response["emails"]:
        try:
            save_email_metadata(db, user, message, client.parse_email_metadata(message), update=True)
            success_count += 1
        except Exception as e:
            db.rollback()
            logger.error(f"Error processing email {message.get('id')}: {str(e)}")
            error_count += 1

    stats.end_time = datetime.utcnow()
    stats.emails_processed = len(response["emails"])
    stats.success_count = success_count
    stats.error_count = error_count
    stats.status = "COMPLETED"
    db.commit()

    logger.info(f"Sync {batch_id} for {user.email}: {success_count} stored, {error_count} failed")

    return {
        "status": "success",
        "processed": len(response["emails"]),
        "total": profile.get("messagesTotal", 0),
        "batch_id": batch_id,
    }


def _label_color(gmail_label: Dict) -> Optional[str]:
    color = gmail_label.get("color")
    if not color:
        return None
    return f"{color.get('backgroundColor')}|{color.get('textColor')}"


def sync_labels(db: Session, user: User, gmail_labels: List[Dict]) -> List[Label]:
    """Insert Gmail labels the user does not have yet and return all of the user's labels."""
    existing = {
        label.gmail_label_id
        for label in db.query(Label).filter(Label.user_id == user.id).all()
    }

    added = 0
    for gmail_label in gmail_labels:
        if gmail_label["id"] in existing:
            continue
        db.add(Label(
            user_id=user.id,
            name=gmail_label.get("name", gmail_label["id"]),
            gmail_label_id=gmail_label["id"],
            color=_label_color(gmail_label),
            is_default=gmail_label.get("type") == "system",
        ))
        existing.add(gmail_label["id"])
        added += 1

    if added:
        db.commit()
        logger.info(f"Stored {added} new labels for {user.email}")

    return db.query(Label).filter(Label.user_id == user.id).order_by(Label.id).all()


def label_to_dict(label: Label) -> Dict:
    color = None
    if label.color:
        background, _, text = label.color.partition("|")
        color = {"background_color": background, "text_color": text}

    return {
        "id": label.id,
        "name": label.name,
        "gmail_label_id": label.gmail_label_id,
        "color": color,
        "is_default": label.is_default,
        "description": label.description,
    }
