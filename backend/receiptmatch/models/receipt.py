from sqlalchemy import Column, String, Text, Date, DateTime, Numeric, Float, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy import Uuid
from receiptmatch.database import Base
from receiptmatch.models.columns import JSONDocument
import uuid


class Receipt(Base):
    """Receipt as produced by the OCR collaborator (read-only here)"""
    __tablename__ = "receipts"

    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    uploaded_by = Column(String(64), nullable=False, index=True)
    total_amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    receipt_date = Column(Date, nullable=False, index=True)
    merchant_id = Column(String(64), nullable=True)
    merchant_name = Column(String(255), nullable=True)  # Raw extracted name
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="processed")
    metadata_json = Column("metadata", JSONDocument, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    extracted_fields = relationship("ExtractedField", back_populates="receipt", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_receipts_org_date", "organization_id", "receipt_date"),
    )


class ExtractedField(Base):
    """Single OCR-extracted field with its extraction confidence"""
    __tablename__ = "extracted_fields"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    receipt_id = Column(String(64), ForeignKey("receipts.id"), nullable=False, index=True)
    field_name = Column(String(100), nullable=False)  # 'total', 'merchant_name', 'date', ...
    field_value = Column(Text, nullable=False)
    field_type = Column(String(50), nullable=True)  # 'amount', 'date', 'text'
    confidence_score = Column(Numeric(5, 4), nullable=True)
    verified = Column(Boolean, nullable=False, default=False)

    # Relationships
    receipt = relationship("Receipt", back_populates="extracted_fields")
