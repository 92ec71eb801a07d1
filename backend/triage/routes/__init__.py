from .auth import router as auth_router
from .gmail import router as gmail_router
from .classify import router as classify_router
from .preferences import router as preferences_router
from .waitlist import router as waitlist_router

__all__ = ["auth_router", "gmail_router", "classify_router", "preferences_router", "waitlist_router"]
