from sqlalchemy import Column, String, Text, DateTime, Numeric, Uuid, Index
from sqlalchemy.sql import func
from receiptmatch.database import Base
import uuid


class MatchRejection(Base):
    """Explicit "these do not match" decision; keeps the pair from being suggested again"""
    __tablename__ = "match_rejections"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False, index=True)
    receipt_id = Column(String(64), nullable=False, index=True)
    original_confidence = Column(Numeric(5, 4), nullable=True)
    rejected_by = Column(String(64), nullable=False)
    rejected_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reason = Column(Text, nullable=True)
    correct_transaction_id = Column(String(64), nullable=True)
    correct_receipt_id = Column(String(64), nullable=True)

    __table_args__ = (
        Index("idx_match_rejections_pair", "transaction_id", "receipt_id"),
    )
