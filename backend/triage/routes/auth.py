import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..dependencies import api_error, get_current_user
from ..models.user import User
from ..services.google_auth import GoogleAuth, OAuthError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _dashboard_redirect(**params) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/dashboard?{urlencode(params)}")


@router.get("/login")
async def login(request: Request):
    """
    Start the Google OAuth flow for read-only Gmail access.

    Returns:
        Redirect to Google's consent screen
    """
    try:
        auth_url, state, code_verifier = GoogleAuth().build_auth_url()
    except OAuthError as e:
        raise api_error(500, str(e), "OAUTH_NOT_CONFIGURED")

    request.session["oauth_state"] = state
    if code_verifier:
        request.session["oauth_code_verifier"] = code_verifier

    return RedirectResponse(url=auth_url)


@router.get("/callback")
async def callback(
    request: Request,
    code: str = None,
    state: str = None,
    error: str = None,
    db: Session = Depends(get_db),
):
    """
    Handle the OAuth callback from Google.

    Args:
        code: Authorization code from Google
        state: State issued by /login
        error: Error reported by Google (e.g. access_denied)
        db: Database session

    Returns:
        Redirect to the frontend dashboard with the outcome in the query string
    """
    if error:
        logger.warning(f"Google OAuth returned an error: {error}")
        return _dashboard_redirect(error=error)

    if not code or not state:
        return _dashboard_redirect(error="missing_params")

    expected_state = request.session.pop("oauth_state", None)
    code_verifier = request.session.pop("oauth_code_verifier", None)
    if state != expected_state:
        logger.warning("OAuth state mismatch on callback")
        return _dashboard_redirect(error="invalid_state")

    try:
        user = await GoogleAuth().handle_callback(code, state, code_verifier, db)
    except Exception as e:
        logger.error(f"Error in Google OAuth callback: {str(e)}")
        return _dashboard_redirect(error="oauth_failed")

    request.session["user_id"] = user.id
    return _dashboard_redirect(gmail="connected")


@router.get("/me")
async def get_me(user: User = Depends(get_current_user)):
    """
    Get the logged-in user's information.

    Returns:
        dict: id, email, display name and Gmail connection state
    """
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "gmail_connected": user.gmail_connected,
    }


@router.post("/logout")
async def logout(request: Request):
    request.session.clear()
    return {"message": "Logged out"}
