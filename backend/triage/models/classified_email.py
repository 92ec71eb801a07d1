from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text
from datetime import datetime
from ..database import Base


class ClassifiedEmail(Base):
    """Snapshot of a recent email together with its bulk classification."""
    __tablename__ = "classified_emails"

    id = Column(String, primary_key=True)  # Gmail message id
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    thread_id = Column(String)
    subject = Column(String)
    snippet = Column(Text)
    sender = Column(String)
    received_at = Column(DateTime, index=True)
    is_read = Column(Boolean, default=False)
    label_ids = Column(Text)  # JSON string of Gmail label ids
    content = Column(Text)
    classification_type = Column(String, nullable=True)
    classification_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<ClassifiedEmail(id='{self.id}', type='{self.classification_type}')>"
