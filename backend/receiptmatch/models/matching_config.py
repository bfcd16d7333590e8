from sqlalchemy import Column, String, Integer, Boolean, Float, DateTime, Uuid, Index
from sqlalchemy.sql import func
from receiptmatch.database import Base
from receiptmatch.models.columns import JSONDocument
import uuid


class MatchingConfigVersion(Base):
    """One version of an organization's matching tunables; superseded, never deleted"""
    __tablename__ = "matching_configs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    is_current = Column(Boolean, nullable=False, default=True)
    amount_tolerance_percentage = Column(Float, nullable=False)
    amount_tolerance_fixed = Column(Float, nullable=False)
    date_window_days = Column(Integer, nullable=False)
    merchant_similarity_threshold = Column(Float, nullable=False)
    location_radius_km = Column(Float, nullable=False)
    auto_match_threshold = Column(Float, nullable=False)
    suggest_threshold = Column(Float, nullable=False)
    confidence_weights = Column(JSONDocument, nullable=False)
    max_candidates = Column(Integer, nullable=False)
    enable_learning = Column(Boolean, nullable=False, default=True)
    updated_by = Column(String(64), nullable=True)  # user id, 'system' or 'learning'
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("uq_matching_configs_org_version", "organization_id", "version", unique=True),
    )
