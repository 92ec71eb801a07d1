import os
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[2]
load_dotenv(BASE_DIR / ".env")


def _as_list(value: str) -> list:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./triage.db")
    SECRET_KEY: str = os.getenv("SECRET_KEY", "change-me")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Google OAuth
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET")
    GOOGLE_REDIRECT_URI: str = os.getenv(
        "GOOGLE_REDIRECT_URI", "http://localhost:8000/api/auth/callback"
    )

    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    CORS_ORIGINS: list = _as_list(os.getenv("CORS_ORIGINS")) or [FRONTEND_URL]

    # OpenAI-compatible chat completions endpoint (Groq, Gemini, OpenAI)
    LLM_API_KEY: str = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "https://api.groq.com/openai/v1")
    LLM_MODEL: str = os.getenv("LLM_MODEL", "llama-3.3-70b-versatile")

    # Gmail request pacing
    GMAIL_MAX_REQUESTS_PER_SECOND: int = int(os.getenv("GMAIL_MAX_REQUESTS_PER_SECOND", "20"))
    GMAIL_RETRY_DELAY: float = float(os.getenv("GMAIL_RETRY_DELAY", "1.0"))
    GMAIL_MAX_RETRIES: int = int(os.getenv("GMAIL_MAX_RETRIES", "3"))


settings = Settings()
