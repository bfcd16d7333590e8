from sqlalchemy import Column, String, Text, Boolean, DateTime, Numeric, ForeignKey, Index, Uuid, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from receiptmatch.database import Base
from receiptmatch.models.columns import JSONDocument
import uuid


class Match(Base):
    """Persisted pairing between a transaction and a receipt"""
    __tablename__ = "matches"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False, index=True)
    receipt_id = Column(String(64), nullable=False, index=True)
    match_type = Column(String(20), nullable=False, index=True)  # 'auto', 'suggested', 'manual', 'reviewed', 'rejected'
    confidence_score = Column(Numeric(5, 4), nullable=True)  # 0.0000 to 1.0000
    criteria = Column(JSONDocument, nullable=True)  # MatchCriteria snapshot
    reasoning = Column(JSONDocument, nullable=True)
    warnings = Column(JSONDocument, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    superseded_by_id = Column(Uuid(as_uuid=True), ForeignKey("matches.id"), nullable=True)
    matched_by = Column(String(64), nullable=True)  # 'system' or a user id
    matched_at = Column(DateTime(timezone=True), server_default=func.now())
    reviewed_by = Column(String(64), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    feedback = relationship("LearningFeedback", back_populates="match")

    __table_args__ = (
        # At most one active match per transaction
        Index(
            "uq_matches_active_transaction",
            "transaction_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("idx_matches_pair", "transaction_id", "receipt_id"),
    )
