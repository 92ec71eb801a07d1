from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, UniqueConstraint
from ..database import Base


class Label(Base):
    __tablename__ = "labels"
    __table_args__ = (UniqueConstraint("user_id", "gmail_label_id", name="uq_labels_user_gmail"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    gmail_label_id = Column(String, nullable=False)
    color = Column(String, nullable=True)  # "backgroundColor|textColor"
    is_default = Column(Boolean, default=False)  # Gmail system label
    description = Column(String, nullable=True)

    def __repr__(self):
        return f"<Label(name='{self.name}', gmail_label_id='{self.gmail_label_id}')>"
