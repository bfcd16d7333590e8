from sqlalchemy import Column, String, Integer, Boolean, Numeric, DateTime, Uuid, UniqueConstraint
from sqlalchemy.sql import func
from receiptmatch.database import Base
from receiptmatch.models.columns import JSONDocument
import uuid


class MerchantMapping(Base):
    """Organization-scoped canonical merchant name and the raw variants that map to it"""
    __tablename__ = "merchant_mappings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    raw_names = Column(JSONDocument, nullable=False)  # List of raw merchant strings
    canonical_name = Column(String(255), nullable=False)
    category = Column(String(100), nullable=True)
    confidence = Column(Numeric(5, 4), nullable=False, default=0.8)
    created_from = Column(String(20), nullable=False, default="manual")  # 'transaction', 'receipt', 'manual', 'learning'
    verified = Column(Boolean, nullable=False, default=False)
    usage_count = Column(Integer, nullable=False, default=0)
    last_used = Column(DateTime(timezone=True), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "canonical_name", name="uq_merchant_mappings_org_canonical"),
    )
