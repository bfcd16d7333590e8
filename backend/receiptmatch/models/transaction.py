from sqlalchemy import Column, String, Text, Date, DateTime, Numeric, Float, Index
from sqlalchemy.sql import func
from receiptmatch.database import Base
from receiptmatch.models.columns import JSONDocument


class Transaction(Base):
    """Bank/card transaction as delivered by the bank-feed collaborator (read-only here)"""
    __tablename__ = "transactions"

    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False, index=True)
    account_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    authorized_user_ids = Column(JSONDocument, nullable=True)  # Delegates allowed to submit receipts
    amount = Column(Numeric(15, 2), nullable=False)  # Negative = debit
    currency = Column(String(3), nullable=False, default="USD")
    transaction_date = Column(Date, nullable=False, index=True)
    posted_date = Column(Date, nullable=True)
    description = Column(Text, nullable=False, default="")
    merchant_name = Column(String(255), nullable=True)
    merchant_category = Column(String(100), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    address = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="posted")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_transactions_org_date", "organization_id", "transaction_date"),
    )
