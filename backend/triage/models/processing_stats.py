from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from datetime import datetime
from ..database import Base


class ProcessingStats(Base):
    __tablename__ = "processing_stats"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    batch_id = Column(String, unique=True, nullable=False)
    start_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    end_time = Column(DateTime, nullable=True)
    emails_processed = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    status = Column(String, default="PROCESSING")  # PROCESSING, COMPLETED, FAILED

    def __repr__(self):
        return f"<ProcessingStats(batch_id='{self.batch_id}', status='{self.status}')>"
