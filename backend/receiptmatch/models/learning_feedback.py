from sqlalchemy import Column, String, Text, Boolean, DateTime, ForeignKey, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from receiptmatch.database import Base
import uuid


class LearningFeedback(Base):
    """Write-once record of a user's verdict on a match"""
    __tablename__ = "learning_feedback"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    match_id = Column(Uuid(as_uuid=True), ForeignKey("matches.id"), nullable=False, index=True)
    was_correct = Column(Boolean, nullable=False, index=True)
    correct_transaction_id = Column(String(64), nullable=True)
    correct_receipt_id = Column(String(64), nullable=True)
    user_id = Column(String(64), nullable=False, index=True)
    feedback_date = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    notes = Column(Text, nullable=True)

    # Relationships
    match = relationship("Match", back_populates="feedback")
