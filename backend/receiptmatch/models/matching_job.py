from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Uuid
from sqlalchemy.sql import func
from receiptmatch.database import Base
from receiptmatch.models.columns import JSONDocument
import uuid


class MatchingJob(Base):
    """Background matching job executed by the worker pool"""
    __tablename__ = "matching_jobs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # 'single', 'bulk', 'reprocess'
    status = Column(String(20), nullable=False, default="pending", index=True)  # 'pending', 'running', 'completed', 'failed', 'cancelled'
    priority = Column(Integer, nullable=False, default=100)
    scope = Column(JSONDocument, nullable=True)

    # Execution
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    deadline = Column(DateTime(timezone=True), nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    # Progress
    progress_total = Column(Integer, nullable=False, default=0)
    progress_completed = Column(Integer, nullable=False, default=0)
    current_operation = Column(String(200), nullable=True)

    # Outcome
    result = Column(JSONDocument, nullable=True)
    warnings = Column(JSONDocument, nullable=True)
    error_message = Column(Text, nullable=True)

    # Metadata
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
