from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class User(Base):
    """
    User model for storing Gmail OAuth tokens and user information.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    display_name = Column(String)

    # Gmail OAuth tokens (read-only scope)
    gmail_access_token = Column(String, nullable=True)
    gmail_refresh_token = Column(String, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    emails = relationship("Email", back_populates="user", cascade="all, delete-orphan")
    preference = relationship("UserPreference", back_populates="user", uselist=False, cascade="all, delete-orphan")

    @property
    def gmail_connected(self) -> bool:
        return bool(self.gmail_access_token and self.gmail_refresh_token and self.token_expires_at)

    def clear_gmail_tokens(self):
        self.gmail_access_token = None
        self.gmail_refresh_token = None
        self.token_expires_at = None

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"
