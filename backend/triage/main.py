import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from .config import settings
from .database import get_db, init_db
from .models import User
from .routes import auth_router, gmail_router, classify_router, preferences_router, waitlist_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting up Gmail Triage API...")
    init_db()
    logger.info("Database initialized and ready")

    yield

    logger.info("Shutting down Gmail Triage API...")


# Create FastAPI app
app = FastAPI(
    title="Gmail Triage API",
    description="Backend API that sorts a read-only Gmail inbox into triage buckets with an LLM",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Signed cookie holding user_id and the OAuth state
app.add_middleware(SessionMiddleware, secret_key=settings.SECRET_KEY)

# Include routers
app.include_router(auth_router)
app.include_router(gmail_router)
app.include_router(classify_router)
app.include_router(preferences_router)
app.include_router(waitlist_router)


# Health check endpoint
@app.get("/api/health")
async def health_check(db: Session = Depends(get_db)):
    """Health check endpoint with user count."""
    return {
        "status": "ok",
        "users": db.query(User).count()
    }


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Gmail Triage API",
        "version": "1.0.0",
        "docs": "/docs"
    }
