import logging
import secrets
from typing import Dict, Optional, Tuple
from datetime import datetime, timedelta

import httpx
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from sqlalchemy.orm import Session

from ..config import settings
from ..models.user import User

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """Raised when Google refuses an authorization code or refresh token."""


class GoogleAuth:
    """
    Google OAuth 2.0 helper for the read-only Gmail connection.

    Builds the consent URL, exchanges the authorization code for tokens,
    refreshes expired access tokens and stores them on the User row.
    """

    SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
    AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
    TOKEN_URI = "https://oauth2.googleapis.com/token"
    PROFILE_URL = "https://gmail.googleapis.com/gmail/v1/users/me/profile"

    def __init__(self):
        self.client_id = settings.GOOGLE_CLIENT_ID
        self.client_secret = settings.GOOGLE_CLIENT_SECRET
        self.redirect_uri = settings.GOOGLE_REDIRECT_URI

    def _client_config(self) -> Dict:
        if not self.client_id or not self.client_secret:
            raise OAuthError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set")
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": self.AUTH_URI,
                "token_uri": self.TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def _flow(self, state: Optional[str] = None, code_verifier: Optional[str] = None) -> Flow:
        return Flow.from_client_config(
            self._client_config(),
            scopes=self.SCOPES,
            redirect_uri=self.redirect_uri,
            state=state,
            code_verifier=code_verifier,
        )

    def build_auth_url(self) -> Tuple[str, str, Optional[str]]:
        """
        Generate the Google consent URL.

        Returns:
            (authorization_url, state, code_verifier). The caller keeps state and
            code_verifier in the session to validate the callback.
        """
        state = secrets.token_urlsafe(24)
        flow = self._flow(state=state)
        auth_url, _ = flow.authorization_url(
            access_type="offline",
            prompt="consent",  # Forces a refresh_token on every consent
            include_granted_scopes="true",
        )
        return auth_url, state, flow.code_verifier

    def exchange_code(self, code: str, state: str, code_verifier: Optional[str] = None) -> Dict:
        """
        Exchange an authorization code for access and refresh tokens.

        Returns:
            Dictionary with access_token, refresh_token and expires_at (naive UTC)
        """
        flow = self._flow(state=state, code_verifier=code_verifier)
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            raise OAuthError(f"Failed to acquire token: {e}") from e

        credentials = flow.credentials
        return {
            "access_token": credentials.token,
            "refresh_token": credentials.refresh_token,
            "expires_at": credentials.expiry or datetime.utcnow() + timedelta(hours=1),
        }

    def refresh_access_token(self, refresh_token: str) -> Dict:
        """
        Use a refresh token to obtain a new access token.

        Returns:
            Dictionary with access_token, refresh_token (possibly rotated) and expires_at
        """
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=self.SCOPES,
        )
        try:
            credentials.refresh(GoogleRequest())
        except Exception as e:
            raise OAuthError(f"Failed to refresh token: {e}") from e

        return {
            "access_token": credentials.token,
            "refresh_token": credentials.refresh_token or refresh_token,
            "expires_at": credentials.expiry or datetime.utcnow() + timedelta(hours=1),
        }

    async def get_user_info(self, access_token: str) -> Dict:
        """
        Read the Gmail profile behind an access token.

        The gmail.readonly scope is enough for users.getProfile, so no
        extra identity scopes are requested.
        """
        async with httpx.AsyncClient(timeout=30) as client:
            response = await client.get(
                self.PROFILE_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            data = response.json()

            return {
                "email": data.get("emailAddress"),
                "messages_total": data.get("messagesTotal", 0),
                "threads_total": data.get("threadsTotal", 0),
            }

    async def handle_callback(self, code: str, state: str, code_verifier: Optional[str], db: Session) -> User:
        """
        Complete the OAuth flow and store the tokens on the matching user.

        Args:
            code: Authorization code from Google
            state: State value issued with the consent URL
            code_verifier: PKCE verifier issued with the consent URL, if any
            db: Database session

        Returns:
            The created or updated User
        """
        tokens = self.exchange_code(code, state, code_verifier)
        user_info = await self.get_user_info(tokens["access_token"])
        if not user_info.get("email"):
            raise OAuthError("Gmail profile did not include an email address")

        user = db.query(User).filter(User.email == user_info["email"]).first()
        if user:
            user.gmail_access_token = tokens["access_token"]
            # Google only returns a refresh token on consent; keep the old one otherwise
            if tokens.get("refresh_token"):
                user.gmail_refresh_token = tokens["refresh_token"]
            user.token_expires_at = tokens["expires_at"]
        else:
            user = User(
                email=user_info["email"],
                display_name=user_info["email"].split("@")[0],
                gmail_access_token=tokens["access_token"],
                gmail_refresh_token=tokens.get("refresh_token"),
                token_expires_at=tokens["expires_at"],
            )
            db.add(user)

        db.commit()
        db.refresh(user)
        logger.info(f"Gmail connected for {user.email}")
        return user
