"""
Learning Store - user feedback ingestion and bounded configuration adaptation.

Feedback is append-only. Positive feedback grows the organization's merchant mappings;
negative feedback with a correction can be promoted to a manual match. Periodically
`adapt` nudges confidence weights and thresholds toward what the recent feedback says,
never by more than one step per run.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from receiptmatch.config import settings
from receiptmatch.exceptions import NotFoundError
from receiptmatch.models.learning_feedback import LearningFeedback
from receiptmatch.models.match import Match
from receiptmatch.models.matching_config import MatchingConfigVersion
from receiptmatch.models.merchant_mapping import MerchantMapping
from receiptmatch.models.receipt import Receipt
from receiptmatch.models.transaction import Transaction
from receiptmatch.schemas.config import MatchingConfig, CRITERIA
from receiptmatch.schemas.match import MatchCorrection, LearningStats
from receiptmatch.services.config_store import ConfigStore, config_store
from receiptmatch.services.match_orchestrator import MatchOrchestrator, match_orchestrator
from receiptmatch.services.merchant_normalizer import MerchantNormalizer, merchant_normalizer, normalize

logger = logging.getLogger(__name__)

CRITERIA_KEYS = {
    "amount": "amount_match",
    "date": "date_match",
    "merchant": "merchant_match",
    "location": "location_match",
    "user": "user_match",
    "currency": "currency_match",
}


@dataclass
class FeedbackSample:
    was_correct: bool
    confidence: float
    sub_scores: Dict[str, Optional[float]]


def _step_toward(current: float, target: float, max_step: float) -> float:
    delta = target - current
    if abs(delta) <= max_step:
        return target
    return current + max_step if delta > 0 else current - max_step


def bounded_distribution(raw: Dict[str, float], lower: float, upper: float) -> Dict[str, float]:
    """
    Scale non-negative values to sum to 1.0 with every value inside [lower, upper].

    Each pass pins the values above ``upper`` (or, when there are none, the values below
    ``lower``) and re-scales the rest over the remaining mass. Keys with no raw mass share
    it evenly.

    Raises:
        ValueError: no distribution inside the bounds sums to 1.0
    """
    if not raw or len(raw) * lower > 1.0 + 1e-9 or len(raw) * upper < 1.0 - 1e-9:
        raise ValueError(f"Cannot fit {len(raw)} values summing to 1.0 inside [{lower}, {upper}]")

    pinned: Dict[str, float] = {}
    while len(pinned) < len(raw):
        free = [key for key in raw if key not in pinned]
        remaining = 1.0 - sum(pinned.values())
        total = sum(max(raw[key], 0.0) for key in free)
        if total > 0:
            scaled = {key: max(raw[key], 0.0) / total * remaining for key in free}
        else:
            scaled = {key: remaining / len(free) for key in free}

        over = {key: upper for key, value in scaled.items() if value > upper}
        under = {key: lower for key, value in scaled.items() if value < lower}
        if not over and not under:
            pinned.update(scaled)
            break
        pinned.update(over or under)

    # Everything pinned: move the leftover into the keys with room in that direction
    leftover = 1.0 - sum(pinned.values())
    if abs(leftover) > 1e-12:
        if leftover > 0:
            room = {key: upper - value for key, value in pinned.items()}
        else:
            room = {key: value - lower for key, value in pinned.items()}
        total_room = sum(room.values())
        for key, value in room.items():
            pinned[key] += leftover * value / total_room

    assert abs(sum(pinned.values()) - 1.0) < 1e-9
    return {key: pinned[key] for key in raw}


def best_separating_threshold(correct: List[float], incorrect: List[float]) -> Optional[float]:
    """Threshold maximizing (correct >= t) + (incorrect < t); ties favor the higher threshold"""
    if not correct or not incorrect:
        return None
    best_threshold, best_hits = None, -1
    for threshold in sorted(set(correct) | {value + 1e-4 for value in incorrect}):
        hits = sum(1 for value in correct if value >= threshold) + sum(1 for value in incorrect if value < threshold)
        if hits >= best_hits:
            best_threshold, best_hits = threshold, hits
    return min(max(best_threshold, 0.0), 1.0)


class LearningStore:
    """Feedback log and adaptation of per-organization matching config"""

    def __init__(
        self,
        orchestrator: Optional[MatchOrchestrator] = None,
        configs: Optional[ConfigStore] = None,
        normalizer: Optional[MerchantNormalizer] = None
    ):
        self.orchestrator = orchestrator or match_orchestrator
        self.configs = configs or config_store
        self.normalizer = normalizer or merchant_normalizer

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def submit_feedback(
        self,
        db: Session,
        match_id,
        was_correct: bool,
        user_id: str,
        correction: Optional[MatchCorrection] = None,
        notes: Optional[str] = None,
        promote_correction: Optional[bool] = None
    ) -> LearningFeedback:
        """
        Record a verdict on a match and act on it.

        Positive feedback confirms a pending match and folds the merchant pair into the
        mappings. Negative feedback rejects the match; a correction naming the true pair
        is optionally promoted to an active manual match.

        Raises:
            NotFoundError: unknown match
            ValidationError: confirming a rejected match
        """
        match = self.orchestrator.get_match(db, match_id)
        if promote_correction is None:
            promote_correction = settings.promote_corrections

        if was_correct:
            match = self.orchestrator.confirm(db, match.id, user_id, notes=notes)
        elif match.match_type != "rejected":
            match = self.orchestrator.reject(db, match.id, user_id, reason=notes, correction=correction)

        feedback = LearningFeedback(
            organization_id=match.organization_id,
            match_id=match.id,
            was_correct=was_correct,
            correct_transaction_id=correction.correct_transaction_id if correction else None,
            correct_receipt_id=correction.correct_receipt_id if correction else None,
            user_id=user_id,
            feedback_date=datetime.now(timezone.utc),
            notes=notes,
        )
        db.add(feedback)
        db.commit()
        db.refresh(feedback)
        logger.info(f"Feedback {feedback.id} on match {match.id}: {'correct' if was_correct else 'incorrect'} (by {user_id})")

        if was_correct:
            self._learn_merchant_pair(db, match)
        elif correction is not None and promote_correction:
            self._promote_correction(db, match, correction, user_id)

        return feedback

    def _learn_merchant_pair(self, db: Session, match: Match):
        transaction = db.query(Transaction).filter(Transaction.id == match.transaction_id).first()
        receipt = db.query(Receipt).filter(Receipt.id == match.receipt_id).first()
        if transaction is None or receipt is None:
            return

        transaction_name = transaction.merchant_name or transaction.description
        receipt_name = receipt.merchant_name
        if not transaction_name or not receipt_name:
            return
        if normalize(transaction_name) == normalize(receipt_name):
            return

        self.normalizer.ensure_loaded(db, match.organization_id)
        comparison = self.normalizer.compare(transaction_name, receipt_name, match.organization_id)
        if comparison.similarity < settings.merchant_learning_min_similarity:
            logger.info(
                f"Not learning merchant pair '{transaction_name}' / '{receipt_name}': "
                f"similarity {comparison.similarity:.2f} below floor"
            )
            return
        self.normalizer.learn(db, match.organization_id, transaction_name, receipt_name, should_match=True)

    def _promote_correction(self, db: Session, match: Match, correction: MatchCorrection, user_id: str):
        transaction_id = correction.correct_transaction_id or match.transaction_id
        receipt_id = correction.correct_receipt_id or match.receipt_id
        if transaction_id == match.transaction_id and receipt_id == match.receipt_id:
            return
        try:
            self.orchestrator.create_manual(
                db, match.organization_id, transaction_id, receipt_id, user_id,
                notes=f"Correction of rejected match {match.id}"
            )
        except NotFoundError as e:
            logger.warning(f"Correction for match {match.id} not promoted: {e.message}")

    # ------------------------------------------------------------------
    # Adaptation
    # ------------------------------------------------------------------

    def samples(self, db: Session, organization_id: str, since: datetime) -> List[FeedbackSample]:
        rows = db.query(LearningFeedback, Match).join(
            Match, LearningFeedback.match_id == Match.id
        ).filter(
            LearningFeedback.organization_id == organization_id,
            LearningFeedback.feedback_date >= since
        ).all()

        samples = []
        for feedback, match in rows:
            if not match.criteria or match.confidence_score is None:
                continue
            sub_scores = {}
            for name, key in CRITERIA_KEYS.items():
                part = match.criteria.get(key) or {}
                if name == "location" and not part.get("available", False):
                    sub_scores[name] = None
                else:
                    sub_scores[name] = float(part.get("score", 0.0))
            samples.append(FeedbackSample(
                was_correct=feedback.was_correct,
                confidence=float(match.confidence_score),
                sub_scores=sub_scores,
            ))
        return samples

    def adapt(self, db: Session, organization_id: str, now: Optional[datetime] = None) -> MatchingConfig:
        """
        Adjust weights and thresholds from recent feedback.

        Returns:
            The newly published config, or the current one when nothing changed
        """
        current = self.configs.get(db, organization_id)
        if not current.enable_learning:
            logger.info(f"Learning disabled for organization {organization_id}")
            return current

        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=settings.learning_window_days)
        samples = self.samples(db, organization_id, since)
        if len(samples) < settings.learning_min_feedback:
            logger.info(
                f"Not adapting config for {organization_id}: {len(samples)} feedback samples, "
                f"need {settings.learning_min_feedback}"
            )
            return current

        step = settings.learning_max_step
        correct = [s for s in samples if s.was_correct]
        incorrect = [s for s in samples if not s.was_correct]

        weights = current.confidence_weights.model_dump()
        new_weights = dict(weights)
        if correct and incorrect:
            gaps = {}
            for name in CRITERIA:
                good = [s.sub_scores[name] for s in correct if s.sub_scores[name] is not None]
                bad = [s.sub_scores[name] for s in incorrect if s.sub_scores[name] is not None]
                if good and bad:
                    gaps[name] = max(sum(good) / len(good) - sum(bad) / len(bad), 0.0)
                else:
                    gaps[name] = 0.0
            if sum(gaps.values()) > 0:
                target = bounded_distribution(gaps, settings.learning_min_weight, settings.learning_max_weight)
                largest = max(abs(target[name] - weights[name]) for name in CRITERIA)
                scale = min(1.0, step / largest) if largest > 0 else 0.0
                # One shared scale keeps the sum at 1.0 and every move within the step
                new_weights = {name: weights[name] + scale * (target[name] - weights[name]) for name in CRITERIA}

        auto = current.auto_match_threshold
        target_auto = best_separating_threshold(
            [s.confidence for s in correct], [s.confidence for s in incorrect]
        )
        if target_auto is not None:
            auto = _step_toward(auto, target_auto, step)

        suggest = current.suggest_threshold
        if correct:
            suggest = _step_toward(suggest, min(s.confidence for s in correct), step)
        suggest = min(suggest, auto)

        changed = (
            any(abs(new_weights[name] - weights[name]) > 1e-9 for name in CRITERIA)
            or abs(auto - current.auto_match_threshold) > 1e-9
            or abs(suggest - current.suggest_threshold) > 1e-9
        )
        if not changed:
            logger.info(f"Feedback for {organization_id} suggests no config change")
            return current

        data = current.model_dump(exclude={"organization_id", "version", "updated_by", "created_at"})
        data["confidence_weights"] = new_weights
        data["auto_match_threshold"] = auto
        data["suggest_threshold"] = suggest
        logger.info(
            f"Adapting config for {organization_id} from {len(samples)} samples: "
            f"auto {current.auto_match_threshold:.3f}->{auto:.3f}, suggest {current.suggest_threshold:.3f}->{suggest:.3f}"
        )
        return self.configs.publish(db, organization_id, data, updated_by="learning")

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self, db: Session, organization_id: str) -> LearningStats:
        total = db.query(func.count(LearningFeedback.id)).filter(
            LearningFeedback.organization_id == organization_id
        ).scalar() or 0
        correct = db.query(func.count(LearningFeedback.id)).filter(
            LearningFeedback.organization_id == organization_id,
            LearningFeedback.was_correct.is_(True)
        ).scalar() or 0
        mappings = db.query(func.count(MerchantMapping.id)).filter(
            MerchantMapping.organization_id == organization_id,
            MerchantMapping.created_from == "learning"
        ).scalar() or 0
        last_adaptation = db.query(func.max(MatchingConfigVersion.created_at)).filter(
            MatchingConfigVersion.organization_id == organization_id,
            MatchingConfigVersion.updated_by == "learning"
        ).scalar()

        return LearningStats(
            organization_id=organization_id,
            total_feedback=total,
            correct_feedback=correct,
            accuracy_rate=correct / total if total else 0.0,
            mappings_learned=mappings,
            last_adaptation=last_adaptation,
        )


# Singleton instance
learning_store = LearningStore()
