import logging

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .database import get_db
from .models import User
from .services.gmail import GmailAPIError, create_gmail_client_for_user

logger = logging.getLogger(__name__)


def api_error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"message": message, "code": code})


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """Resolve the signed-in user from the session cookie."""
    user_id = request.session.get("user_id")
    user = db.query(User).filter(User.id == user_id).first() if user_id else None
    if not user:
        raise api_error(401, "Unauthorized", "UNAUTHORIZED")
    return user


async def get_gmail_client(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Yield a GmailClient for the current user, or 400 if Gmail is not connected."""
    client = create_gmail_client_for_user(user, db)
    if client is None:
        raise api_error(400, "Gmail account not connected", "GMAIL_NOT_CONNECTED")
    try:
        yield client
    finally:
        await client.aclose()


async def get_optional_gmail_client(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Like get_gmail_client, but yields None instead of failing when Gmail is not connected."""
    client = create_gmail_client_for_user(user, db)
    try:
        yield client
    finally:
        if client is not None:
            await client.aclose()


def gmail_error_to_http(error: GmailAPIError, user: User, db: Session) -> HTTPException:
    """
    Translate a GmailAPIError into an HTTPException.

    Rejected or unrefreshable tokens are cleared so the user is asked to
    reconnect instead of failing on every request.
    """
    if error.code in ("UNAUTHENTICATED", "TOKEN_REFRESH_ERROR"):
        logger.warning(f"Gmail rejected tokens for {user.email}, clearing them: {error.message}")
        user.clear_gmail_tokens()
        db.commit()
        return api_error(401, error.message, error.code)

    if error.code == "NOT_FOUND":
        return api_error(404, error.message, error.code)

    logger.error(f"Gmail API error ({error.code}): {error.message}")
    return api_error(500, error.message, error.code)
