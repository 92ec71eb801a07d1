from sqlalchemy import Column, Integer, String, DateTime, Float, ForeignKey, Text, UniqueConstraint
from datetime import datetime
from ..database import Base


class EmailClassification(Base):
    """
    Latest classification of a Gmail message for a user.

    One row per (email_id, user_id); re-classifying overwrites it.
    """
    __tablename__ = "email_classifications"
    __table_args__ = (UniqueConstraint("email_id", "user_id", name="uq_classification_email_user"),)

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(String, nullable=False, index=True)  # Gmail message id
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    category = Column(String, nullable=False)
    confidence = Column(Float, nullable=False)  # 0.0 to 1.0
    reason = Column(Text)
    classified_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<EmailClassification(email_id='{self.email_id}', category='{self.category}')>"
