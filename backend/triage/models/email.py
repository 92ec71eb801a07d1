from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, ForeignKey, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from ..database import Base


class Email(Base):
    __tablename__ = "emails"
    __table_args__ = (UniqueConstraint("user_id", "gmail_id", name="uq_emails_user_gmail"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    gmail_id = Column(String, index=True, nullable=False)
    thread_id = Column(String, index=True)
    subject = Column(String)
    snippet = Column(Text)
    sender = Column(String)
    received_at = Column(DateTime, default=datetime.utcnow)
    is_read = Column(Boolean, default=False)
    label_ids = Column(Text)  # JSON string of Gmail label ids

    # Classification fields
    category = Column(String, nullable=True)  # ATTN, FK-U, MARKETING, TAKE-A-LOOK, HMMMM
    category_confidence = Column(Float, nullable=True)  # 0.0 to 1.0

    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="emails")

    def __repr__(self):
        return f"<Email(id={self.id}, subject='{self.subject}', from='{self.sender}')>"
