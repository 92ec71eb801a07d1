import json
import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import api_error, get_current_user
from ..models import User, UserPreference

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["preferences"])

DEFAULT_FREQUENCY = "HOURLY"


class PreferencesUpdate(BaseModel):
    custom_prompt: Optional[str] = None
    priority_senders: Optional[List[str]] = None
    ignored_senders: Optional[List[str]] = None
    content_keywords: Optional[List[str]] = None
    processing_frequency: Optional[str] = None
    processing_schedule: Optional[Any] = None


def _load(value: Optional[str], default):
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"Stored preference is not valid JSON: {value!r}")
        return default


def _dump(value) -> Optional[str]:
    return json.dumps(value) if value else None


def _get_or_create(db: Session, user: User) -> UserPreference:
    preference = db.query(UserPreference).filter(UserPreference.user_id == user.id).first()
    if not preference:
        preference = UserPreference(user_id=user.id, processing_frequency=DEFAULT_FREQUENCY)
        db.add(preference)
    return preference


def preference_to_dict(preference: Optional[UserPreference]) -> dict:
    if preference is None:
        return {
            "custom_prompt": "",
            "priority_senders": [],
            "ignored_senders": [],
            "content_keywords": [],
            "processing_frequency": DEFAULT_FREQUENCY,
            "processing_schedule": None,
        }

    return {
        "custom_prompt": preference.custom_prompt or "",
        "priority_senders": _load(preference.priority_senders, []),
        "ignored_senders": _load(preference.ignored_senders, []),
        "content_keywords": _load(preference.content_keywords, []),
        "processing_frequency": preference.processing_frequency or DEFAULT_FREQUENCY,
        "processing_schedule": _load(preference.processing_schedule, None),
        "updated_at": preference.updated_at.isoformat() if preference.updated_at else None,
    }


@router.get("/preferences")
async def get_preferences(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    Get the user's triage preferences.

    Returns:
        dict: Preferences, or the defaults when none are saved
    """
    preference = db.query(UserPreference).filter(UserPreference.user_id == user.id).first()
    return preference_to_dict(preference)


@router.post("/preferences")
async def update_preferences(
    update: PreferencesUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Create or replace the user's triage preferences.

    Lists and the schedule are stored as JSON text; omitted fields are cleared.
    """
    preference = _get_or_create(db, user)
    preference.custom_prompt = update.custom_prompt
    preference.priority_senders = _dump(update.priority_senders)
    preference.ignored_senders = _dump(update.ignored_senders)
    preference.content_keywords = _dump(update.content_keywords)
    preference.processing_frequency = update.processing_frequency or DEFAULT_FREQUENCY
    preference.processing_schedule = _dump(update.processing_schedule)

    db.commit()
    db.refresh(preference)

    return {
        "message": "Preferences updated successfully",
        "preferences": preference_to_dict(preference),
    }


@router.get("/user/classification-settings")
async def get_classification_settings(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    preference = db.query(UserPreference).filter(UserPreference.user_id == user.id).first()
    return {"classification_prompt": preference.custom_prompt if preference and preference.custom_prompt else None}


@router.post("/user/classification-settings")
async def update_classification_settings(
    payload: dict = Body(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Save the prompt that replaces the default classification instructions."""
    prompt = payload.get("classification_prompt")
    if not isinstance(prompt, str):
        raise api_error(400, "Invalid prompt format", "INVALID_REQUEST")

    preference = _get_or_create(db, user)
    preference.custom_prompt = prompt
    db.commit()

    return {"success": True}


@router.post("/sync-preferences")
async def sync_preferences(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Return the stored prompt so clients can pick up changes made elsewhere."""
    preference = db.query(UserPreference).filter(UserPreference.user_id == user.id).first()
    if not preference:
        return {"message": "No preferences found to sync", "synced": False}

    return {
        "message": "Preferences synced successfully",
        "custom_prompt": preference.custom_prompt,
        "synced": True,
    }
