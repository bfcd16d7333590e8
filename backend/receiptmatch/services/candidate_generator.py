"""
Candidate Generator - bounds the search space for one anchor item and ranks the survivors.

The window is +/- date_window_days around the anchor date and the amount tolerance band
around the anchor amount. Without an explicit pool the window is pushed down into the
database query, so cost follows recent activity rather than history size.
"""
import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Set, Tuple
from sqlalchemy import func, exists, and_
from sqlalchemy.orm import Session, selectinload

from receiptmatch.config import settings
from receiptmatch.exceptions import ProcessingTimeoutError
from receiptmatch.models.match import Match
from receiptmatch.models.match_rejection import MatchRejection
from receiptmatch.models.receipt import Receipt
from receiptmatch.models.transaction import Transaction
from receiptmatch.schemas.config import MatchingConfig
from receiptmatch.schemas.matching import TransactionRecord, ReceiptRecord, MatchCandidate
from receiptmatch.services.scoring_engine import ScoringEngine, scoring_engine
from receiptmatch.utils.records import transaction_record, receipt_record, convert_rows

logger = logging.getLogger(__name__)

Checkpoint = Optional[Callable[[], None]]


class CandidateGenerator:
    """Produces a ranked, truncated candidate list per anchor item"""

    def __init__(self, engine: Optional[ScoringEngine] = None, timeout_seconds: Optional[float] = None):
        self.engine = engine or scoring_engine
        self.timeout_seconds = (
            settings.scoring_timeout_seconds if timeout_seconds is None else timeout_seconds
        )

    # ------------------------------------------------------------------
    # Windowing
    # ------------------------------------------------------------------

    def receipt_amount_bounds(self, transaction_amount: Decimal, config: MatchingConfig) -> Tuple[float, float]:
        """Loose range of receipt totals that can be within tolerance of a transaction amount"""
        anchor = abs(Decimal(transaction_amount))
        fixed = Decimal(str(config.amount_tolerance_fixed))
        percentage = Decimal(str(config.amount_tolerance_percentage))
        lower = min(anchor - fixed, anchor / (1 + percentage))
        if percentage < 1:
            upper = max(anchor + fixed, anchor / (1 - percentage))
        else:
            upper = None
        return self._loosen(lower, upper)

    def transaction_amount_bounds(self, receipt_amount: Decimal, config: MatchingConfig) -> Tuple[float, float]:
        """Loose range of transaction amounts within tolerance of a receipt total"""
        anchor = abs(Decimal(receipt_amount))
        tolerance = self.engine.amount_tolerance(anchor, config)
        return self._loosen(anchor - tolerance, anchor + tolerance)

    @staticmethod
    def _loosen(lower: Decimal, upper: Optional[Decimal]) -> Tuple[float, float]:
        # Widened by a cent; the exact band is re-checked in Python
        low = max(float(lower) - 0.01, 0.0)
        high = float(upper) + 0.01 if upper is not None else float("inf")
        return low, high

    def within_amount_band(self, transaction_amount: Decimal, receipt_amount: Decimal, config: MatchingConfig) -> bool:
        difference = abs(abs(Decimal(transaction_amount)) - abs(Decimal(receipt_amount)))
        return difference <= self.engine.amount_tolerance(receipt_amount, config)

    def within_date_window(self, first, second, config: MatchingConfig) -> bool:
        return abs((first - second).days) <= config.date_window_days

    def rejected_receipts(self, db: Optional[Session], transaction_id: str) -> Set[str]:
        if db is None:
            return set()
        rows = db.query(MatchRejection.receipt_id).filter(
            MatchRejection.transaction_id == transaction_id
        ).all()
        return {row[0] for row in rows}

    def rejected_transactions(self, db: Optional[Session], receipt_id: str) -> Set[str]:
        if db is None:
            return set()
        rows = db.query(MatchRejection.transaction_id).filter(
            MatchRejection.receipt_id == receipt_id
        ).all()
        return {row[0] for row in rows}

    def query_receipts(self, db: Session, transaction: TransactionRecord, config: MatchingConfig) -> List[ReceiptRecord]:
        """Receipts of the organization inside the window and without an active match"""
        window = timedelta(days=config.date_window_days)
        lower, upper = self.receipt_amount_bounds(transaction.amount, config)
        has_active = exists().where(and_(Match.receipt_id == Receipt.id, Match.is_active.is_(True)))
        query = db.query(Receipt).options(selectinload(Receipt.extracted_fields)).filter(
            Receipt.organization_id == transaction.organization_id,
            Receipt.receipt_date >= transaction.transaction_date - window,
            Receipt.receipt_date <= transaction.transaction_date + window,
            func.abs(Receipt.total_amount) >= lower,
            ~has_active
        )
        if upper != float("inf"):
            query = query.filter(func.abs(Receipt.total_amount) <= upper)
        rows = query.order_by(Receipt.id).all()
        return convert_rows(rows, receipt_record)

    def query_transactions(self, db: Session, receipt: ReceiptRecord, config: MatchingConfig) -> List[TransactionRecord]:
        """Transactions of the organization inside the window and without an active match"""
        window = timedelta(days=config.date_window_days)
        lower, upper = self.transaction_amount_bounds(receipt.total_amount, config)
        has_active = exists().where(and_(Match.transaction_id == Transaction.id, Match.is_active.is_(True)))
        rows = db.query(Transaction).filter(
            Transaction.organization_id == receipt.organization_id,
            Transaction.transaction_date >= receipt.receipt_date - window,
            Transaction.transaction_date <= receipt.receipt_date + window,
            func.abs(Transaction.amount) >= lower,
            func.abs(Transaction.amount) <= upper,
            ~has_active
        ).order_by(Transaction.id).all()
        return convert_rows(rows, transaction_record)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def for_transaction(
        self,
        db: Optional[Session],
        transaction: TransactionRecord,
        config: MatchingConfig,
        receipts: Optional[Iterable[ReceiptRecord]] = None,
        excluded_receipt_ids: Optional[Set[str]] = None,
        checkpoint: Checkpoint = None
    ) -> Tuple[List[MatchCandidate], List[str]]:
        """
        Ranked receipt candidates for one transaction.

        Returns:
            (candidates, warnings) tuple; warnings hold skipped-candidate timeouts
        """
        if db is not None:
            self.engine.normalizer.ensure_loaded(db, transaction.organization_id)
        if receipts is None:
            receipts = self.query_receipts(db, transaction, config)
        pool = [
            receipt for receipt in receipts
            if receipt.organization_id == transaction.organization_id
            and self.within_date_window(transaction.transaction_date, receipt.receipt_date, config)
            and self.within_amount_band(transaction.amount, receipt.total_amount, config)
        ]

        excluded = set(excluded_receipt_ids or ()) | self.rejected_receipts(db, transaction.id)
        pairs = [(transaction, receipt) for receipt in pool if receipt.id not in excluded]
        return self._rank(pairs, config, lambda c: c.receipt_id, checkpoint)

    def for_receipt(
        self,
        db: Optional[Session],
        receipt: ReceiptRecord,
        config: MatchingConfig,
        transactions: Optional[Iterable[TransactionRecord]] = None,
        excluded_transaction_ids: Optional[Set[str]] = None,
        checkpoint: Checkpoint = None
    ) -> Tuple[List[MatchCandidate], List[str]]:
        """Ranked transaction candidates for one receipt"""
        if db is not None:
            self.engine.normalizer.ensure_loaded(db, receipt.organization_id)
        if transactions is None:
            transactions = self.query_transactions(db, receipt, config)
        pool = [
            transaction for transaction in transactions
            if transaction.organization_id == receipt.organization_id
            and self.within_date_window(transaction.transaction_date, receipt.receipt_date, config)
            and self.within_amount_band(transaction.amount, receipt.total_amount, config)
        ]

        excluded = set(excluded_transaction_ids or ()) | self.rejected_transactions(db, receipt.id)
        pairs = [(transaction, receipt) for transaction in pool if transaction.id not in excluded]
        return self._rank(pairs, config, lambda c: c.transaction_id, checkpoint)

    def _rank(self, pairs, config: MatchingConfig, counterpart_id, checkpoint: Checkpoint) -> Tuple[List[MatchCandidate], List[str]]:
        floor = config.suggest_threshold / 2
        candidates: List[MatchCandidate] = []
        warnings: List[str] = []

        for transaction, receipt in pairs:
            if checkpoint is not None:
                checkpoint()
            deadline = time.monotonic() + self.timeout_seconds
            try:
                candidate = self.engine.score(transaction, receipt, config, deadline=deadline)
            except ProcessingTimeoutError as e:
                logger.warning(f"Skipping candidate: {e.message}")
                warnings.append(e.message)
                continue
            if candidate.confidence_score < floor:
                continue
            candidates.append(candidate)

        candidates.sort(key=lambda c: (-c.confidence_score, counterpart_id(c)))
        return candidates[:config.max_candidates], warnings


# Singleton instance
candidate_generator = CandidateGenerator()
