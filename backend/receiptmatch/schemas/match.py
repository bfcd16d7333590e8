from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any
from datetime import datetime, date
from decimal import Decimal
from uuid import UUID

from receiptmatch.schemas.matching import (
    MatchType,
    MatchCandidate,
    TransactionRecord,
    ReceiptRecord,
)


class MatchResponse(BaseModel):
    """Persisted match as returned by the API"""
    id: UUID
    organization_id: str
    transaction_id: str
    receipt_id: str
    match_type: MatchType
    confidence_score: Optional[float] = None
    criteria: Optional[Dict[str, Any]] = None
    reasoning: Optional[List[str]] = None
    warnings: Optional[List[str]] = None
    is_active: bool
    superseded_by_id: Optional[UUID] = None
    matched_by: Optional[str] = None
    matched_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MatchCorrection(BaseModel):
    """The pairing the user says is actually correct"""
    correct_transaction_id: Optional[str] = None
    correct_receipt_id: Optional[str] = None


class ConfirmMatchRequest(BaseModel):
    user_id: str
    notes: Optional[str] = None


class RejectMatchRequest(BaseModel):
    user_id: str
    reason: Optional[str] = None
    correction: Optional[MatchCorrection] = None


class ManualMatchRequest(BaseModel):
    organization_id: str
    transaction_id: str
    receipt_id: str
    user_id: str
    notes: Optional[str] = None


class FeedbackRequest(BaseModel):
    was_correct: bool
    user_id: str
    correction: Optional[MatchCorrection] = None
    notes: Optional[str] = None


class FeedbackResponse(BaseModel):
    id: UUID
    organization_id: str
    match_id: UUID
    was_correct: bool
    correct_transaction_id: Optional[str] = None
    correct_receipt_id: Optional[str] = None
    user_id: str
    feedback_date: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class MatchDecision(BaseModel):
    """Outcome applied to one pair during a batch run"""
    transaction_id: str
    receipt_id: str
    match_type: MatchType
    confidence_score: float
    match_id: Optional[UUID] = None
    reasoning: List[str] = []
    warnings: List[str] = []


class AutoMatchStats(BaseModel):
    transactions_processed: int = 0
    receipts_processed: int = 0
    auto_matched: int = 0
    suggested: int = 0
    unmatched: int = 0
    conflicts: int = 0
    processing_time_ms: float = 0.0


class AutoMatchResult(BaseModel):
    """Result of a synchronous auto-match run over one batch"""
    candidates: List[MatchCandidate] = []
    decisions: List[MatchDecision] = []
    unmatched_transaction_ids: List[str] = []
    unmatched_receipt_ids: List[str] = []
    warnings: List[str] = []
    stats: AutoMatchStats = AutoMatchStats()


class AutoMatchRequest(BaseModel):
    organization_id: str
    transactions: List[TransactionRecord] = []
    receipts: List[ReceiptRecord] = []
    config_overrides: Optional[Dict[str, Any]] = None
    persist: bool = True
    queue: bool = False  # Submit a bulk job instead of matching inline
    priority: int = 100


class AutoMatchResponse(BaseModel):
    result: Optional[AutoMatchResult] = None
    job_id: Optional[UUID] = None


class UnmatchedFilters(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    user_id: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)


class UnmatchedTransaction(BaseModel):
    id: str
    amount: Decimal
    currency: str
    transaction_date: date
    description: str
    merchant_name: Optional[str] = None
    user_id: str

    class Config:
        from_attributes = True


class UnmatchedReceipt(BaseModel):
    id: str
    total_amount: Decimal
    currency: str
    receipt_date: date
    merchant_name: Optional[str] = None
    uploaded_by: str

    class Config:
        from_attributes = True


class UnmatchedItems(BaseModel):
    transactions: List[UnmatchedTransaction] = []
    receipts: List[UnmatchedReceipt] = []


class MatchingMetrics(BaseModel):
    organization_id: str
    period_start: datetime
    period_end: datetime
    total_transactions: int = 0
    total_receipts: int = 0
    auto_matched: int = 0
    manual_matched: int = 0
    reviewed: int = 0
    pending_suggestions: int = 0
    rejected: int = 0
    unmatched_transactions: int = 0
    unmatched_receipts: int = 0
    match_rate: float = 0.0
    average_confidence: float = 0.0
    accuracy_rate: float = 0.0
    processing_time_avg_ms: float = 0.0
    user_corrections: int = 0


class LearningStats(BaseModel):
    organization_id: str
    total_feedback: int = 0
    correct_feedback: int = 0
    accuracy_rate: float = 0.0
    mappings_learned: int = 0
    last_adaptation: Optional[datetime] = None
