import asyncio
import json
import logging
from typing import List, Optional
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import (
    api_error,
    get_current_user,
    get_gmail_client,
    get_optional_gmail_client,
    gmail_error_to_http,
)
from ..models import ClassifiedEmail, Email, User
from ..services.classifier import (
    ClassificationError,
    classify_email,
    classify_email_content,
    classify_emails_bulk,
    store_classification,
)
from ..services.gmail import GmailAPIError, GmailClient
from ..services.mailbox import fetch_recent_emails, update_email_category

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/gmail", tags=["classification"])


class ClassifyRequest(BaseModel):
    email_id: str


class EmailContent(BaseModel):
    id: Optional[str] = None  # Gmail id, if the email is stored
    sender: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    email_date: Optional[str] = None


class BatchContentRequest(BaseModel):
    emails: List[EmailContent]


def _custom_prompt(user: User) -> Optional[str]:
    return user.preference.custom_prompt if user.preference else None


def _batch_summary(results: list) -> dict:
    successful = sum(1 for result in results if result["success"])
    return {
        "processed": len(results),
        "successful": successful,
        "failed": len(results) - successful,
        "results": results,
    }


@router.post("/emails/classify")
async def classify_single_email(
    request: ClassifyRequest,
    user: User = Depends(get_current_user),
    client: GmailClient = Depends(get_gmail_client),
    db: Session = Depends(get_db),
):
    """
    Classify one Gmail message with the user's prompt and store the result.

    Args:
        request: Body with the Gmail message id

    Returns:
        dict: The bucket, reason and confidence
    """
    if not request.email_id.strip():
        raise api_error(400, "Email ID is required", "INVALID_REQUEST")

    try:
        message = await client.get_email(request.email_id)
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    # The LLM client blocks, so it runs in a worker thread
    classification = await asyncio.to_thread(classify_email, message, _custom_prompt(user))
    store_classification(db, request.email_id, user.id, classification)
    update_email_category(db, user, request.email_id, classification)

    return {
        "success": True,
        "email_id": request.email_id,
        "classification": classification["classification"],
        "reason": classification["reason"],
        "confidence": classification["confidence"],
    }


@router.get("/emails/classify/batch")
async def classify_stored_emails(
    batch_size: int = Query(default=10, ge=1, le=100, description="Number of stored emails to classify"),
    only_new: bool = Query(default=False, description="Skip emails that already have a category"),
    user: User = Depends(get_current_user),
    client: Optional[GmailClient] = Depends(get_optional_gmail_client),
    db: Session = Depends(get_db),
):
    """
    Classify the most recent stored emails one by one.

    Failures are reported per email and do not stop the batch.
    """
    query = db.query(Email).filter(Email.user_id == user.id)
    if only_new:
        query = query.filter(Email.category.is_(None))
    emails = query.order_by(Email.received_at.desc()).limit(batch_size).all()

    if not emails:
        return {"message": "No emails to classify"}

    if client is None:
        raise api_error(400, "Gmail account not connected", "GMAIL_NOT_CONNECTED")

    custom_prompt = _custom_prompt(user)
    results = []
    for email in emails:
        try:
            message = await client.get_email(email.gmail_id)
        except GmailAPIError as e:
            logger.error(f"Error fetching email {email.gmail_id}: {e.message}")
            results.append({"email_id": email.gmail_id, "error": e.message, "success": False})
            continue

        classification = await asyncio.to_thread(classify_email, message, custom_prompt)
        store_classification(db, email.gmail_id, user.id, classification)
        update_email_category(db, user, email.gmail_id, classification)
        results.append({
            "email_id": email.gmail_id,
            "classification": classification["classification"],
            "success": True,
        })

    return _batch_summary(results)


@router.post("/emails/classify/batch")
async def classify_email_batch(
    request: BatchContentRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Classify caller-supplied email content.

    Items that carry the id of a stored email also update that email's category.
    """
    if not request.emails:
        raise api_error(400, "Valid email array is required", "INVALID_REQUEST")

    custom_prompt = _custom_prompt(user)
    results = []
    for item in request.emails:
        if not item.sender or not item.subject or not item.content:
            results.append({
                "input": item.model_dump(),
                "error": "Missing required email fields",
                "success": False,
            })
            continue

        classification = await asyncio.to_thread(
            classify_email_content,
            item.sender,
            item.subject,
            item.content,
            email_date=item.email_date,
            custom_prompt=custom_prompt,
        )

        if item.id and update_email_category(db, user, item.id, classification):
            store_classification(db, item.id, user.id, classification)

        results.append({
            "input": {"sender": item.sender, "subject": item.subject, "date": item.email_date},
            "classification": classification["classification"],
            "reason": classification["reason"],
            "confidence": classification["confidence"],
            "success": True,
        })

    return _batch_summary(results)


def _classified_to_dict(record: ClassifiedEmail) -> dict:
    return {
        "id": record.id,
        "subject": record.subject,
        "snippet": record.snippet,
        "sender": record.sender,
        "received_at": record.received_at.isoformat() if record.received_at else None,
        "is_read": record.is_read,
        "classification_type": record.classification_type,
        "classification_reason": record.classification_reason,
    }


def _upsert_classified_email(db: Session, user: User, email: dict, classification: dict):
    record = db.query(ClassifiedEmail).filter(
        ClassifiedEmail.id == email["id"],
        ClassifiedEmail.user_id == user.id,
    ).first()
    if record is None:
        record = ClassifiedEmail(
            id=email["id"],
            user_id=user.id,
            thread_id=email.get("thread_id"),
            subject=email.get("subject"),
            snippet=email.get("snippet"),
            sender=email.get("sender"),
            received_at=datetime.fromisoformat(email["received_at"]),
            is_read=email.get("is_read", False),
            label_ids=json.dumps(email.get("label_ids") or []),
            content=email.get("content"),
        )
        db.add(record)

    record.classification_type = classification["classification"]
    record.classification_reason = classification["reason"]


@router.get("/classify")
async def classified_emails(
    mode: Optional[str] = Query(default=None, description="'fetch' to classify recent emails now"),
    user: User = Depends(get_current_user),
    client: Optional[GmailClient] = Depends(get_optional_gmail_client),
    db: Session = Depends(get_db),
):
    """
    Bulk-classified emails.

    With mode=fetch, the recent emails are classified in one LLM call and
    stored; otherwise the 20 latest stored results are returned.
    """
    if mode != "fetch":
        records = db.query(ClassifiedEmail).filter(
            ClassifiedEmail.user_id == user.id,
        ).order_by(ClassifiedEmail.received_at.desc()).limit(20).all()
        return {"emails": [_classified_to_dict(record) for record in records]}

    if client is None:
        raise api_error(400, "Gmail account not connected", "GMAIL_NOT_CONNECTED")

    try:
        emails = await fetch_recent_emails(client)
    except GmailAPIError as e:
        raise gmail_error_to_http(e, user, db)

    try:
        classifications = await asyncio.to_thread(classify_emails_bulk, emails)
    except ClassificationError as e:
        logger.error(f"Error in bulk classification: {str(e)}")
        raise api_error(500, str(e), "CLASSIFICATION_ERROR")

    classified = []
    for email in emails:
        classification = classifications.get(email["id"])
        if not classification:
            continue
        _upsert_classified_email(db, user, email, classification)
        classified.append(dict(email, classification=classification))

    db.commit()
    return {"emails": classified}
