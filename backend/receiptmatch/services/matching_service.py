"""
Matching Service - facade over the matching engine used by the API routers.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy import and_, exists, func
from sqlalchemy.orm import Session
from uuid import UUID

from receiptmatch.exceptions import NotFoundError, ValidationError
from receiptmatch.models.learning_feedback import LearningFeedback
from receiptmatch.models.match import Match
from receiptmatch.models.matching_job import MatchingJob
from receiptmatch.models.receipt import Receipt
from receiptmatch.models.transaction import Transaction
from receiptmatch.schemas.config import MatchingConfig
from receiptmatch.schemas.match import (
    AutoMatchResult,
    MatchCorrection,
    MatchingMetrics,
    LearningStats,
    UnmatchedFilters,
    UnmatchedItems,
    UnmatchedTransaction,
    UnmatchedReceipt,
)
from receiptmatch.schemas.matching import TransactionRecord, ReceiptRecord, MatchCandidate
from receiptmatch.services.config_store import ConfigStore, config_store
from receiptmatch.services.job_processor import JobProcessor, job_processor
from receiptmatch.services.learning_store import LearningStore, learning_store
from receiptmatch.services.match_orchestrator import MatchOrchestrator, match_orchestrator
from receiptmatch.utils.records import transaction_record, receipt_record

logger = logging.getLogger(__name__)


class MatchingService:
    """Entry point for every matching operation exposed over HTTP"""

    def __init__(
        self,
        orchestrator: Optional[MatchOrchestrator] = None,
        learning: Optional[LearningStore] = None,
        configs: Optional[ConfigStore] = None,
        jobs: Optional[JobProcessor] = None
    ):
        self.orchestrator = orchestrator or match_orchestrator
        self.learning = learning or learning_store
        self.configs = configs or config_store
        self.jobs = jobs or job_processor

    @property
    def generator(self):
        return self.orchestrator.generator

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def run_auto_match(
        self,
        db: Session,
        organization_id: str,
        transactions: List[TransactionRecord],
        receipts: List[ReceiptRecord],
        config_overrides: Optional[Dict[str, Any]] = None,
        persist: bool = True
    ) -> AutoMatchResult:
        """
        Match a batch of transactions against a batch of receipts.

        Args:
            config_overrides: Partial config applied to this run only (validated)
            persist: When False, decisions are computed but nothing is written
        """
        config = self.configs.with_overrides(self.configs.get(db, organization_id), config_overrides)
        logger.info(
            f"Auto-match for organization {organization_id}: {len(transactions)} transactions, "
            f"{len(receipts)} receipts (config v{config.version}, persist={persist})"
        )
        return self.orchestrator.process_batch(
            db, organization_id, transactions, receipts, config, persist=persist
        )

    def get_suggestions(self, db: Session, organization_id: str, item_id: str, item_type: str) -> List[MatchCandidate]:
        """Ranked candidates for one transaction or receipt, read-only"""
        config = self.configs.get(db, organization_id)
        if item_type == "transaction":
            row = db.query(Transaction).filter(
                Transaction.id == item_id,
                Transaction.organization_id == organization_id
            ).first()
            if not row:
                raise NotFoundError("Transaction", item_id)
            candidates, _ = self.generator.for_transaction(db, transaction_record(row), config)
        elif item_type == "receipt":
            row = db.query(Receipt).filter(
                Receipt.id == item_id,
                Receipt.organization_id == organization_id
            ).first()
            if not row:
                raise NotFoundError("Receipt", item_id)
            candidates, _ = self.generator.for_receipt(db, receipt_record(row), config)
        else:
            raise ValidationError(f"item_type must be 'transaction' or 'receipt', got '{item_type}'", field="item_type")
        return candidates

    def confirm_match(self, db: Session, match_id: UUID, user_id: str, notes: Optional[str] = None) -> Match:
        self.learning.submit_feedback(db, match_id, was_correct=True, user_id=user_id, notes=notes)
        return self.orchestrator.get_match(db, match_id)

    def reject_match(
        self,
        db: Session,
        match_id: UUID,
        user_id: str,
        reason: Optional[str] = None,
        correction: Optional[MatchCorrection] = None
    ) -> Match:
        self.learning.submit_feedback(
            db, match_id, was_correct=False, user_id=user_id, correction=correction, notes=reason
        )
        return self.orchestrator.get_match(db, match_id)

    def create_manual_match(
        self,
        db: Session,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        user_id: str,
        notes: Optional[str] = None
    ) -> Match:
        return self.orchestrator.create_manual(db, organization_id, transaction_id, receipt_id, user_id, notes=notes)

    def submit_feedback(
        self,
        db: Session,
        match_id: UUID,
        was_correct: bool,
        user_id: str,
        correction: Optional[MatchCorrection] = None,
        notes: Optional[str] = None
    ) -> LearningFeedback:
        return self.learning.submit_feedback(db, match_id, was_correct, user_id, correction=correction, notes=notes)

    def list_unmatched(self, db: Session, organization_id: str, filters: Optional[UnmatchedFilters] = None) -> UnmatchedItems:
        """Transactions and receipts without an active match"""
        filters = filters or UnmatchedFilters()

        txn_active = exists().where(and_(Match.transaction_id == Transaction.id, Match.is_active.is_(True)))
        txn_query = db.query(Transaction).filter(
            Transaction.organization_id == organization_id,
            ~txn_active
        )
        if filters.date_from:
            txn_query = txn_query.filter(Transaction.transaction_date >= filters.date_from)
        if filters.date_to:
            txn_query = txn_query.filter(Transaction.transaction_date <= filters.date_to)
        if filters.min_amount is not None:
            txn_query = txn_query.filter(func.abs(Transaction.amount) >= float(filters.min_amount))
        if filters.max_amount is not None:
            txn_query = txn_query.filter(func.abs(Transaction.amount) <= float(filters.max_amount))
        if filters.user_id:
            txn_query = txn_query.filter(Transaction.user_id == filters.user_id)

        receipt_active = exists().where(and_(Match.receipt_id == Receipt.id, Match.is_active.is_(True)))
        receipt_query = db.query(Receipt).filter(
            Receipt.organization_id == organization_id,
            ~receipt_active
        )
        if filters.date_from:
            receipt_query = receipt_query.filter(Receipt.receipt_date >= filters.date_from)
        if filters.date_to:
            receipt_query = receipt_query.filter(Receipt.receipt_date <= filters.date_to)
        if filters.min_amount is not None:
            receipt_query = receipt_query.filter(func.abs(Receipt.total_amount) >= float(filters.min_amount))
        if filters.max_amount is not None:
            receipt_query = receipt_query.filter(func.abs(Receipt.total_amount) <= float(filters.max_amount))
        if filters.user_id:
            receipt_query = receipt_query.filter(Receipt.uploaded_by == filters.user_id)

        transactions = txn_query.order_by(Transaction.transaction_date.desc(), Transaction.id).limit(filters.limit).all()
        receipts = receipt_query.order_by(Receipt.receipt_date.desc(), Receipt.id).limit(filters.limit).all()
        return UnmatchedItems(
            transactions=[UnmatchedTransaction.model_validate(row) for row in transactions],
            receipts=[UnmatchedReceipt.model_validate(row) for row in receipts],
        )

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def submit_bulk_job(
        self,
        db: Session,
        organization_id: str,
        scope: Optional[Dict[str, Any]] = None,
        priority: int = 100,
        kind: str = "bulk",
        deadline_seconds: Optional[int] = None
    ) -> UUID:
        return self.jobs.submit(
            db, organization_id, kind=kind, scope=scope, priority=priority, deadline_seconds=deadline_seconds
        )

    def get_job_status(self, db: Session, job_id: UUID) -> MatchingJob:
        return self.jobs.get_job(db, job_id)

    def cancel_job(self, db: Session, job_id: UUID) -> MatchingJob:
        return self.jobs.cancel(db, job_id)

    # ------------------------------------------------------------------
    # Metrics and config
    # ------------------------------------------------------------------

    def get_metrics(self, db: Session, organization_id: str, period_days: int = 30) -> MatchingMetrics:
        period_end = datetime.now(timezone.utc)
        period_start = period_end - timedelta(days=period_days)
        start_date = period_start.date()

        total_transactions = db.query(func.count(Transaction.id)).filter(
            Transaction.organization_id == organization_id,
            Transaction.transaction_date >= start_date
        ).scalar() or 0
        total_receipts = db.query(func.count(Receipt.id)).filter(
            Receipt.organization_id == organization_id,
            Receipt.receipt_date >= start_date
        ).scalar() or 0

        matches = db.query(Match).filter(
            Match.organization_id == organization_id,
            Match.matched_at >= period_start
        ).all()
        active = [m for m in matches if m.is_active]
        by_type: Dict[str, int] = {}
        for match in active:
            by_type[match.match_type] = by_type.get(match.match_type, 0) + 1
        pending = sum(1 for m in matches if m.match_type == "suggested" and not m.is_active)
        rejected = sum(1 for m in matches if m.match_type == "rejected")
        scored = [float(m.confidence_score) for m in active if m.confidence_score is not None]

        txn_active = exists().where(and_(Match.transaction_id == Transaction.id, Match.is_active.is_(True)))
        unmatched_transactions = db.query(func.count(Transaction.id)).filter(
            Transaction.organization_id == organization_id,
            Transaction.transaction_date >= start_date,
            ~txn_active
        ).scalar() or 0
        receipt_active = exists().where(and_(Match.receipt_id == Receipt.id, Match.is_active.is_(True)))
        unmatched_receipts = db.query(func.count(Receipt.id)).filter(
            Receipt.organization_id == organization_id,
            Receipt.receipt_date >= start_date,
            ~receipt_active
        ).scalar() or 0

        feedback = db.query(LearningFeedback).filter(
            LearningFeedback.organization_id == organization_id,
            LearningFeedback.feedback_date >= period_start
        ).all()
        correct = sum(1 for f in feedback if f.was_correct)
        corrections = sum(1 for f in feedback if f.correct_transaction_id or f.correct_receipt_id)

        jobs = db.query(MatchingJob).filter(
            MatchingJob.organization_id == organization_id,
            MatchingJob.status == "completed",
            MatchingJob.completed_at >= period_start
        ).all()
        per_transaction = [
            (j.completed_at - j.started_at).total_seconds() * 1000 / j.progress_total
            for j in jobs if j.started_at and j.completed_at and j.progress_total
        ]

        return MatchingMetrics(
            organization_id=organization_id,
            period_start=period_start,
            period_end=period_end,
            total_transactions=total_transactions,
            total_receipts=total_receipts,
            auto_matched=by_type.get("auto", 0),
            manual_matched=by_type.get("manual", 0),
            reviewed=by_type.get("reviewed", 0),
            pending_suggestions=pending,
            rejected=rejected,
            unmatched_transactions=unmatched_transactions,
            unmatched_receipts=unmatched_receipts,
            match_rate=(total_transactions - unmatched_transactions) / total_transactions if total_transactions else 0.0,
            average_confidence=sum(scored) / len(scored) if scored else 0.0,
            accuracy_rate=correct / len(feedback) if feedback else 0.0,
            processing_time_avg_ms=sum(per_transaction) / len(per_transaction) if per_transaction else 0.0,
            user_corrections=corrections,
        )

    def get_config(self, db: Session, organization_id: str) -> MatchingConfig:
        return self.configs.get(db, organization_id)

    def update_config(self, db: Session, organization_id: str, partial: Dict[str, Any], updated_by: Optional[str] = None) -> MatchingConfig:
        return self.configs.update(db, organization_id, partial, updated_by=updated_by)

    def adapt_config(self, db: Session, organization_id: str) -> MatchingConfig:
        return self.learning.adapt(db, organization_id)

    def get_learning_stats(self, db: Session, organization_id: str) -> LearningStats:
        return self.learning.stats(db, organization_id)


# Singleton instance
matching_service = MatchingService()
