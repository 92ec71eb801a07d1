from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class UserPreference(Base):
    __tablename__ = "user_preferences"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    custom_prompt = Column(Text, nullable=True)  # Replaces the default classification prompt
    priority_senders = Column(Text)  # JSON string list
    ignored_senders = Column(Text)  # JSON string list
    content_keywords = Column(Text)  # JSON string list
    processing_frequency = Column(String, default="HOURLY")
    processing_schedule = Column(Text, nullable=True)  # JSON string
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="preference")

    def __repr__(self):
        return f"<UserPreference(user_id={self.user_id}, frequency='{self.processing_frequency}')>"
