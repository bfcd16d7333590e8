"""
Match Orchestrator - turns scored candidates into persisted matches.

Responsibilities:
- Threshold decisions (auto / suggested / none) with hard-rule blocks
- The at-most-one-active-match-per-transaction invariant
- State transitions: confirm, manual pairing, reject
- Greedy batch conflict resolution in strictly descending confidence
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from receiptmatch.exceptions import (
    ConcurrencyConflictError,
    NotFoundError,
    ValidationError,
)
from receiptmatch.models.match import Match
from receiptmatch.models.match_rejection import MatchRejection
from receiptmatch.models.receipt import Receipt
from receiptmatch.models.transaction import Transaction
from receiptmatch.schemas.config import MatchingConfig
from receiptmatch.schemas.match import MatchCorrection, MatchDecision, AutoMatchResult, AutoMatchStats
from receiptmatch.schemas.matching import TransactionRecord, ReceiptRecord, MatchCandidate
from receiptmatch.services.candidate_generator import CandidateGenerator, candidate_generator
from receiptmatch.services.config_store import ConfigStore, config_store
from receiptmatch.utils.locks import KeyedLock
from receiptmatch.utils.records import transaction_record, receipt_record

logger = logging.getLogger(__name__)

AUTO = "auto"
SUGGESTED = "suggested"

# Process-wide: serializes activations of the same transaction across sessions and threads
transaction_locks = KeyedLock()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _confidence(value: Optional[float]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(round(value, 4)))


class MatchOrchestrator:
    """Decision policy and invariant enforcement for matches"""

    def __init__(
        self,
        generator: Optional[CandidateGenerator] = None,
        configs: Optional[ConfigStore] = None,
        locks: Optional[KeyedLock] = None
    ):
        self.generator = generator or candidate_generator
        self.configs = configs or config_store
        self.locks = locks or transaction_locks

    @property
    def engine(self):
        return self.generator.engine

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(self, candidate: MatchCandidate, config: MatchingConfig) -> Optional[str]:
        """
        Returns:
            'auto', 'suggested' or None (the pair stays unmatched)
        """
        confidence = candidate.confidence_score
        if confidence < config.suggest_threshold:
            return None
        if confidence >= config.auto_match_threshold:
            reason = self.engine.auto_blocked_reason(candidate)
            if reason is None:
                return AUTO
            logger.debug(f"Auto-match blocked for {candidate.transaction_id}/{candidate.receipt_id}: {reason}")
        return SUGGESTED

    # ------------------------------------------------------------------
    # Activation (compare-and-swap)
    # ------------------------------------------------------------------

    def get_match(self, db: Session, match_id) -> Match:
        match = db.query(Match).filter(Match.id == match_id).first()
        if not match:
            raise NotFoundError("Match", match_id)
        return match

    def active_match(self, db: Session, transaction_id: str) -> Optional[Match]:
        return db.query(Match).filter(
            Match.transaction_id == transaction_id,
            Match.is_active.is_(True)
        ).first()

    def activate(
        self,
        db: Session,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        match_type: str,
        user_id: str = "system",
        candidate: Optional[MatchCandidate] = None,
        existing: Optional[Match] = None,
        supersede: bool = True,
        notes: Optional[str] = None
    ) -> Match:
        """
        Make one match the active match of its transaction in a single database transaction.

        Observes the current active match, retires it with a conditional update and
        activates the new one. With supersede=False an existing active match is a conflict.

        Raises:
            ConcurrencyConflictError: another writer changed the active match first
        """
        with self.locks.hold(transaction_id):
            try:
                current = self.active_match(db, transaction_id)
                if existing is not None:
                    match = existing
                else:
                    match = Match(
                        id=uuid.uuid4(),
                        organization_id=organization_id,
                        transaction_id=transaction_id,
                        receipt_id=receipt_id,
                        match_type=match_type,
                        is_active=False,
                        matched_by=user_id,
                        matched_at=_now(),
                        notes=notes,
                    )
                    if candidate is not None:
                        self._apply_candidate(match, candidate)
                    db.add(match)
                    db.flush()

                if current is not None and current.id != match.id:
                    if not supersede:
                        raise ConcurrencyConflictError(
                            transaction_id,
                            f"Transaction {transaction_id} already has active match {current.id}"
                        )
                    retired = db.query(Match).filter(
                        Match.id == current.id,
                        Match.is_active.is_(True)
                    ).update(
                        {Match.is_active: False, Match.superseded_by_id: match.id},
                        synchronize_session=False
                    )
                    if retired != 1:
                        raise ConcurrencyConflictError(transaction_id)
                    logger.info(f"Match {current.id} superseded by {match.id} for transaction {transaction_id}")

                match.match_type = match_type
                match.is_active = True
                if existing is not None:
                    match.reviewed_by = user_id
                    match.reviewed_at = _now()
                    if notes:
                        match.notes = notes
                db.flush()
                db.commit()
            except IntegrityError:
                db.rollback()
                raise ConcurrencyConflictError(transaction_id)
            except ConcurrencyConflictError:
                db.rollback()
                raise

        db.refresh(match)
        logger.info(f"Activated {match_type} match {match.id}: transaction {transaction_id} -> receipt {receipt_id}")
        return match

    def _activate_with_retry(self, db: Session, surface_conflict: bool, **kwargs) -> Optional[Match]:
        """One retry after a conflict; a second conflict is raised or reported as None"""
        try:
            return self.activate(db, **kwargs)
        except ConcurrencyConflictError as first:
            logger.warning(f"Activation conflict, retrying: {first.message}")
        try:
            return self.activate(db, **kwargs)
        except ConcurrencyConflictError:
            if surface_conflict:
                raise
            logger.warning(f"Second activation conflict for transaction {kwargs['transaction_id']}, downgrading")
            return None

    @staticmethod
    def _apply_candidate(match: Match, candidate: MatchCandidate):
        match.confidence_score = _confidence(candidate.confidence_score)
        match.criteria = candidate.match_criteria.model_dump(mode="json")
        match.reasoning = list(candidate.reasoning)
        match.warnings = list(candidate.warnings)

    def record_suggestion(self, db: Session, organization_id: str, candidate: MatchCandidate) -> Tuple[Match, bool]:
        """
        Persist an inactive suggested match unless the pair already has one.

        Returns:
            (match, created) tuple
        """
        existing = db.query(Match).filter(
            Match.transaction_id == candidate.transaction_id,
            Match.receipt_id == candidate.receipt_id,
            Match.match_type == SUGGESTED
        ).first()
        if existing:
            return existing, False

        match = Match(
            id=uuid.uuid4(),
            organization_id=organization_id,
            transaction_id=candidate.transaction_id,
            receipt_id=candidate.receipt_id,
            match_type=SUGGESTED,
            is_active=False,
            matched_by="system",
            matched_at=_now(),
        )
        self._apply_candidate(match, candidate)
        db.add(match)
        db.commit()
        db.refresh(match)
        return match, True

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_batch(
        self,
        db: Optional[Session],
        organization_id: str,
        transactions: Iterable[TransactionRecord],
        receipts: Iterable[ReceiptRecord],
        config: MatchingConfig,
        persist: bool = True,
        checkpoint: Optional[Callable[[], None]] = None,
        on_transaction: Optional[Callable[[str], None]] = None
    ) -> AutoMatchResult:
        """
        Greedy batch matching.

        Candidates of the whole batch are walked in descending confidence (ties by
        transaction id, then receipt id). Auto candidates claim their receipt first;
        transactions left without an auto match get at most one suggestion.
        """
        started = time.monotonic()
        transactions = sorted(transactions, key=lambda t: t.id)
        receipts = sorted(receipts, key=lambda r: r.id)
        for record in list(transactions) + list(receipts):
            if record.organization_id != organization_id:
                raise ValidationError(
                    f"{record.id} belongs to organization {record.organization_id}, not {organization_id}",
                    field="organization_id"
                )

        active_transactions: Set[str] = set()
        consumed_receipts: Set[str] = set()
        if db is not None:
            active_transactions = self._active_ids(db, Match.transaction_id, [t.id for t in transactions])
            consumed_receipts = self._active_ids(db, Match.receipt_id, [r.id for r in receipts])

        open_receipts = [r for r in receipts if r.id not in consumed_receipts]
        all_candidates: List[MatchCandidate] = []
        warnings: List[str] = []
        for transaction in transactions:
            if transaction.id in active_transactions:
                continue
            candidates, skipped = self.generator.for_transaction(
                db, transaction, config, receipts=open_receipts, checkpoint=checkpoint
            )
            all_candidates.extend(candidates)
            warnings.extend(skipped)
            if on_transaction is not None:
                on_transaction(transaction.id)

        all_candidates.sort(key=lambda c: (-c.confidence_score, c.transaction_id, c.receipt_id))

        decisions: List[MatchDecision] = []
        matched: Set[str] = set(active_transactions)
        suggested: Set[str] = set()
        suggested_receipts: Set[str] = set()
        stats = AutoMatchStats(
            transactions_processed=len(transactions),
            receipts_processed=len(receipts),
        )

        # Pass 1: auto matches claim receipts in confidence order
        for candidate in all_candidates:
            if checkpoint is not None:
                checkpoint()
            if candidate.transaction_id in matched or candidate.receipt_id in consumed_receipts:
                continue
            if self.decide(candidate, config) != AUTO:
                continue

            match = None
            if persist:
                match = self._activate_with_retry(
                    db,
                    surface_conflict=False,
                    organization_id=organization_id,
                    transaction_id=candidate.transaction_id,
                    receipt_id=candidate.receipt_id,
                    match_type=AUTO,
                    candidate=candidate,
                    supersede=False,
                )
                if match is None:
                    stats.conflicts += 1
                    self._suggest(db, organization_id, candidate, persist, decisions, suggested, suggested_receipts, stats)
                    continue

            matched.add(candidate.transaction_id)
            consumed_receipts.add(candidate.receipt_id)
            stats.auto_matched += 1
            decisions.append(self._decision(candidate, AUTO, match))

        # Pass 2: best remaining candidate per transaction becomes a suggestion
        for candidate in all_candidates:
            if checkpoint is not None:
                checkpoint()
            if candidate.transaction_id in matched or candidate.transaction_id in suggested:
                continue
            if candidate.receipt_id in consumed_receipts:
                continue
            if self.decide(candidate, config) is None:
                continue
            self._suggest(db, organization_id, candidate, persist, decisions, suggested, suggested_receipts, stats)

        unmatched_transactions = [
            t.id for t in transactions
            if t.id not in matched and t.id not in suggested
        ]
        unmatched_receipts = [
            r.id for r in receipts
            if r.id not in consumed_receipts and r.id not in suggested_receipts
        ]
        stats.unmatched = len(unmatched_transactions)
        stats.processing_time_ms = (time.monotonic() - started) * 1000

        logger.info(
            f"Batch for organization {organization_id}: {stats.auto_matched} auto, "
            f"{stats.suggested} suggested, {stats.unmatched} unmatched, {stats.conflicts} conflicts"
        )
        return AutoMatchResult(
            candidates=all_candidates,
            decisions=decisions,
            unmatched_transaction_ids=unmatched_transactions,
            unmatched_receipt_ids=unmatched_receipts,
            warnings=warnings,
            stats=stats,
        )

    def _suggest(self, db, organization_id, candidate, persist, decisions, suggested, suggested_receipts, stats):
        match = None
        if persist:
            match, created = self.record_suggestion(db, organization_id, candidate)
            if not created:
                logger.debug(f"Suggestion {match.id} already exists for {candidate.transaction_id}/{candidate.receipt_id}")
        suggested.add(candidate.transaction_id)
        suggested_receipts.add(candidate.receipt_id)
        stats.suggested += 1
        decisions.append(self._decision(candidate, SUGGESTED, match))

    @staticmethod
    def _decision(candidate: MatchCandidate, match_type: str, match: Optional[Match]) -> MatchDecision:
        return MatchDecision(
            transaction_id=candidate.transaction_id,
            receipt_id=candidate.receipt_id,
            match_type=match_type,
            confidence_score=candidate.confidence_score,
            match_id=match.id if match is not None else None,
            reasoning=candidate.reasoning,
            warnings=candidate.warnings,
        )

    @staticmethod
    def _active_ids(db: Session, column, ids: List[str]) -> Set[str]:
        if not ids:
            return set()
        rows = db.query(column).filter(column.in_(ids), Match.is_active.is_(True)).all()
        return {row[0] for row in rows}

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def confirm(self, db: Session, match_id, user_id: str, notes: Optional[str] = None) -> Match:
        """
        Confirm a match. A suggestion becomes the active 'reviewed' match, superseding
        whatever was active; an already-active match just gets the review stamp.

        Raises:
            NotFoundError, ValidationError (rejected match), ConcurrencyConflictError
        """
        match = self.get_match(db, match_id)
        if match.match_type == "rejected":
            raise ValidationError(f"Match {match_id} was rejected and cannot be confirmed", field="match_id")

        if match.is_active:
            if match.match_type == AUTO:
                match.match_type = "reviewed"
            match.reviewed_by = user_id
            match.reviewed_at = _now()
            if notes:
                match.notes = notes
            db.commit()
            db.refresh(match)
            logger.info(f"Match {match.id} confirmed by {user_id}")
            return match

        return self._activate_with_retry(
            db,
            surface_conflict=True,
            organization_id=match.organization_id,
            transaction_id=match.transaction_id,
            receipt_id=match.receipt_id,
            match_type="reviewed",
            user_id=user_id,
            existing=match,
            supersede=True,
            notes=notes,
        )

    def create_manual(
        self,
        db: Session,
        organization_id: str,
        transaction_id: str,
        receipt_id: str,
        user_id: str,
        notes: Optional[str] = None
    ) -> Match:
        """
        User-driven pairing; becomes the active match of the transaction.

        Raises:
            NotFoundError: transaction or receipt does not exist in the organization
        """
        transaction = db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.organization_id == organization_id
        ).first()
        if not transaction:
            raise NotFoundError("Transaction", transaction_id)
        receipt = db.query(Receipt).filter(
            Receipt.id == receipt_id,
            Receipt.organization_id == organization_id
        ).first()
        if not receipt:
            raise NotFoundError("Receipt", receipt_id)

        candidate = None
        try:
            config = self.configs.get(db, organization_id)
            candidate = self.engine.score(transaction_record(transaction), receipt_record(receipt), config)
        except ValidationError as e:
            logger.warning(f"Manual match {transaction_id}/{receipt_id} stored without criteria: {e.message}")

        return self._activate_with_retry(
            db,
            surface_conflict=True,
            organization_id=organization_id,
            transaction_id=transaction_id,
            receipt_id=receipt_id,
            match_type="manual",
            user_id=user_id,
            candidate=candidate,
            supersede=True,
            notes=notes,
        )

    def reject(
        self,
        db: Session,
        match_id,
        user_id: str,
        reason: Optional[str] = None,
        correction: Optional[MatchCorrection] = None
    ) -> Match:
        """Mark a match rejected, deactivate it and remember the pair as rejected"""
        match = self.get_match(db, match_id)
        if match.match_type == "rejected":
            return match

        with self.locks.hold(match.transaction_id):
            try:
                match.match_type = "rejected"
                match.is_active = False
                match.reviewed_by = user_id
                match.reviewed_at = _now()
                if reason:
                    match.notes = reason
                db.add(MatchRejection(
                    organization_id=match.organization_id,
                    transaction_id=match.transaction_id,
                    receipt_id=match.receipt_id,
                    original_confidence=match.confidence_score,
                    rejected_by=user_id,
                    rejected_at=_now(),
                    reason=reason,
                    correct_transaction_id=correction.correct_transaction_id if correction else None,
                    correct_receipt_id=correction.correct_receipt_id if correction else None,
                ))
                db.commit()
            except Exception:
                db.rollback()
                raise

        db.refresh(match)
        logger.info(f"Match {match.id} rejected by {user_id}")
        return match


# Singleton instance
match_orchestrator = MatchOrchestrator()
