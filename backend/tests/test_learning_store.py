"""
Unit Tests for Feedback and Learning
====================================

Tests for:
- Positive feedback growing merchant mappings until a pair auto-matches
- Negative feedback rejecting and promoting a correction
- Bounded adaptation of weights and thresholds
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from receiptmatch.config import settings
from receiptmatch.models import LearningFeedback, Match, MatchRejection, MerchantMapping
from receiptmatch.schemas.config import CRITERIA
from receiptmatch.schemas.match import MatchCorrection
from receiptmatch.services.learning_store import bounded_distribution, best_separating_threshold
from receiptmatch.utils.records import transaction_record, receipt_record

from conftest import ORG_ID, USER_ID, add_transaction, add_receipt


def stored_pair(db, suffix, amount, txn_merchant, receipt_merchant, receipt_currency="USD"):
    txn = add_transaction(db, f"txn_{suffix}", f"-{amount}", date(2024, 3, 5), merchant=txn_merchant)
    receipt = add_receipt(
        db, f"rcpt_{suffix}", amount, date(2024, 3, 5), merchant=receipt_merchant, currency=receipt_currency
    )
    return transaction_record(txn), receipt_record(receipt)


def scored_match(db, was_correct, confidence, scores, feedback_date):
    criteria = {
        "amount_match": {"score": scores["amount"]},
        "date_match": {"score": scores["date"]},
        "merchant_match": {"score": scores["merchant"]},
        "location_match": {"available": False, "score": 0.0},
        "user_match": {"score": scores["user"]},
        "currency_match": {"score": scores["currency"]},
    }
    match = Match(
        id=uuid.uuid4(),
        organization_id=ORG_ID,
        transaction_id=f"txn_{uuid.uuid4().hex[:8]}",
        receipt_id=f"rcpt_{uuid.uuid4().hex[:8]}",
        match_type="reviewed" if was_correct else "rejected",
        confidence_score=Decimal(str(confidence)),
        criteria=criteria,
        is_active=was_correct,
    )
    db.add(match)
    db.flush()
    db.add(LearningFeedback(
        organization_id=ORG_ID,
        match_id=match.id,
        was_correct=was_correct,
        user_id=USER_ID,
        feedback_date=feedback_date,
    ))
    db.commit()


GOOD_SCORES = {"amount": 1.0, "date": 1.0, "merchant": 1.0, "user": 1.0, "currency": 1.0}
BAD_SCORES = {"amount": 1.0, "date": 0.5, "merchant": 0.0, "user": 1.0, "currency": 1.0}


# =============================================================================
# FEEDBACK TESTS
# =============================================================================

class TestFeedback:

    def test_positive_feedback_teaches_merchant_alias(self, db, orchestrator, learning, configs):
        config = configs.get(db, ORG_ID)
        pairs = [
            stored_pair(db, str(i), amount, "Starbucks Coffee", "STARBUCKS STORE 123")
            for i, amount in enumerate(("10.00", "20.00", "30.00"), start=1)
        ]
        result = orchestrator.process_batch(
            db, ORG_ID, [t for t, _ in pairs], [r for _, r in pairs], config
        )
        assert result.stats.suggested == 3
        assert all(d.confidence_score < config.auto_match_threshold for d in result.decisions)

        for decision in result.decisions:
            learning.submit_feedback(db, decision.match_id, True, USER_ID)

        mapping = db.query(MerchantMapping).one()
        assert mapping.usage_count == 3
        assert mapping.created_from == "learning"
        assert learning.normalizer.compare("Starbucks Coffee", "STARBUCKS STORE 123", ORG_ID).similarity == 1.0

        txn, receipt = stored_pair(db, "4", "40.00", "Starbucks Coffee", "STARBUCKS STORE 123")
        rerun = orchestrator.process_batch(db, ORG_ID, [txn], [receipt], config)
        assert [d.match_type for d in rerun.decisions] == ["auto"]

    def test_positive_feedback_confirms_suggestion(self, db, orchestrator, learning, configs):
        config = configs.get(db, ORG_ID)
        txn, receipt = stored_pair(db, "1", "25.00", "Blue Bottle", "Blue Bottle", receipt_currency="EUR")
        result = orchestrator.process_batch(db, ORG_ID, [txn], [receipt], config)

        feedback = learning.submit_feedback(db, result.decisions[0].match_id, True, USER_ID, notes="looks right")

        match = orchestrator.get_match(db, feedback.match_id)
        assert match.match_type == "reviewed"
        assert match.is_active is True
        assert feedback.was_correct is True
        assert db.query(MerchantMapping).count() == 0

    def test_negative_feedback_promotes_correction(self, db, orchestrator, learning, configs):
        config = configs.get(db, ORG_ID)
        txn, receipt = stored_pair(db, "1", "25.00", "Blue Bottle", "Blue Bottle", receipt_currency="EUR")
        add_receipt(db, "rcpt_right", "25.00", date(2024, 3, 6), merchant="Blue Bottle")
        result = orchestrator.process_batch(db, ORG_ID, [txn], [receipt], config)
        match_id = result.decisions[0].match_id

        learning.submit_feedback(
            db, match_id, False, USER_ID,
            correction=MatchCorrection(correct_receipt_id="rcpt_right"),
            promote_correction=True,
        )

        assert orchestrator.get_match(db, match_id).match_type == "rejected"
        assert db.query(MatchRejection).count() == 1
        active = orchestrator.active_match(db, "txn_1")
        assert active.receipt_id == "rcpt_right"
        assert active.match_type == "manual"

    def test_negative_feedback_without_promotion(self, db, orchestrator, learning):
        match = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        learning.submit_feedback(
            db, match.id, False, USER_ID,
            correction=MatchCorrection(correct_receipt_id="rcpt_2"),
            promote_correction=False,
        )
        assert orchestrator.active_match(db, "txn_1") is None

    def test_feedback_is_append_only(self, db, orchestrator, learning):
        match = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        learning.submit_feedback(db, match.id, False, USER_ID)
        learning.submit_feedback(db, match.id, False, USER_ID, notes="still wrong")
        assert db.query(LearningFeedback).count() == 2
        assert db.query(MatchRejection).count() == 1


# =============================================================================
# ADAPTATION TESTS
# =============================================================================

class TestAdaptation:

    def _seed(self, db, correct=6, incorrect=6):
        now = datetime.now(timezone.utc)
        for _ in range(correct):
            scored_match(db, True, 0.95, GOOD_SCORES, now)
        for _ in range(incorrect):
            scored_match(db, False, 0.6, BAD_SCORES, now)

    def test_adapt_moves_within_step(self, db, learning, configs):
        before = configs.get(db, ORG_ID)
        self._seed(db)

        after = learning.adapt(db, ORG_ID)

        step = settings.learning_max_step
        assert after.version == before.version + 1
        assert after.updated_by == "learning"
        assert after.auto_match_threshold == pytest.approx(before.auto_match_threshold + step)
        assert after.suggest_threshold == pytest.approx(before.suggest_threshold + step)
        assert after.suggest_threshold <= after.auto_match_threshold
        for name in CRITERIA:
            old = getattr(before.confidence_weights, name)
            new = getattr(after.confidence_weights, name)
            assert abs(new - old) <= step + 1e-9
        assert after.confidence_weights.total() == pytest.approx(1.0)
        assert after.confidence_weights.merchant > before.confidence_weights.merchant
        assert after.confidence_weights.amount < before.confidence_weights.amount

    @pytest.mark.parametrize("bad_scores,grows", [
        ({**GOOD_SCORES, "merchant": 0.0}, "merchant"),
        ({**GOOD_SCORES, "amount": 0.2}, "amount"),
        ({**GOOD_SCORES, "merchant": 0.0, "user": 0.0}, "merchant"),
    ])
    def test_adapt_with_few_separating_criteria(self, db, learning, configs, bad_scores, grows):
        before = configs.get(db, ORG_ID)
        now = datetime.now(timezone.utc)
        for _ in range(6):
            scored_match(db, True, 0.95, GOOD_SCORES, now)
            scored_match(db, False, 0.6, bad_scores, now)

        after = learning.adapt(db, ORG_ID)

        assert after.version == before.version + 1
        assert after.confidence_weights.total() == pytest.approx(1.0)
        assert getattr(after.confidence_weights, grows) > getattr(before.confidence_weights, grows)
        for name in CRITERIA:
            old = getattr(before.confidence_weights, name)
            assert abs(getattr(after.confidence_weights, name) - old) <= settings.learning_max_step + 1e-9

    def test_too_little_feedback(self, db, learning, configs):
        before = configs.get(db, ORG_ID)
        self._seed(db, correct=2, incorrect=2)
        assert learning.adapt(db, ORG_ID).version == before.version

    def test_learning_disabled(self, db, learning, configs):
        configs.update(db, ORG_ID, {"enable_learning": False}, updated_by=USER_ID)
        disabled = configs.get(db, ORG_ID)
        self._seed(db)
        assert learning.adapt(db, ORG_ID).version == disabled.version

    def test_old_feedback_ignored(self, db, learning, configs):
        before = configs.get(db, ORG_ID)
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        for _ in range(6):
            scored_match(db, True, 0.95, GOOD_SCORES, old)
            scored_match(db, False, 0.6, BAD_SCORES, old)
        assert learning.adapt(db, ORG_ID).version == before.version

    def test_stats(self, db, learning, configs):
        configs.get(db, ORG_ID)
        self._seed(db, correct=9, incorrect=3)
        learning.adapt(db, ORG_ID)

        stats = learning.stats(db, ORG_ID)
        assert stats.total_feedback == 12
        assert stats.correct_feedback == 9
        assert stats.accuracy_rate == pytest.approx(0.75)
        assert stats.last_adaptation is not None


class TestHelpers:

    def test_bounded_distribution(self):
        result = bounded_distribution({"a": 0.0, "b": 1.0, "c": 3.0}, 0.1, 0.6)
        assert sum(result.values()) == pytest.approx(1.0)
        assert result["a"] == pytest.approx(0.1)
        assert result["c"] == pytest.approx(0.6)
        assert result["b"] == pytest.approx(0.3)

    @pytest.mark.parametrize("raw", [
        {"amount": 0.0, "date": 0.0, "merchant": 1.0, "location": 0.0, "user": 0.0, "currency": 0.0},
        {"amount": 0.0, "date": 0.5, "merchant": 1.0, "location": 0.0, "user": 0.0, "currency": 0.0},
        {"amount": 0.8, "date": 0.8, "merchant": 0.8, "location": 0.0, "user": 0.0, "currency": 0.0},
        {"amount": 0.001, "date": 0.0, "merchant": 5.0, "location": 2.0, "user": 0.0, "currency": 0.0},
        {"amount": 1.0, "date": 1.0, "merchant": 1.0, "location": 1.0, "user": 1.0, "currency": 1.0},
        {"amount": 0.0, "date": 0.0, "merchant": 0.0, "location": 0.0, "user": 0.0, "currency": 0.0},
    ])
    def test_bounded_distribution_sums_to_one(self, raw):
        result = bounded_distribution(raw, 0.01, 0.6)
        assert set(result) == set(raw)
        assert sum(result.values()) == pytest.approx(1.0)
        for value in result.values():
            assert 0.01 - 1e-9 <= value <= 0.6 + 1e-9

    def test_bounded_distribution_single_gap_spreads_rest(self):
        result = bounded_distribution({"merchant": 1.0, "date": 0.0, "amount": 0.0}, 0.01, 0.6)
        assert result["merchant"] == pytest.approx(0.6)
        assert result["date"] == pytest.approx(0.2)
        assert result["amount"] == pytest.approx(0.2)

    def test_bounded_distribution_tight_bounds(self):
        result = bounded_distribution({"a": 1.0, "b": 0.0}, 0.45, 0.6)
        assert result == {"a": pytest.approx(0.55), "b": pytest.approx(0.45)}

    def test_bounded_distribution_infeasible_bounds(self):
        with pytest.raises(ValueError):
            bounded_distribution({"a": 1.0, "b": 1.0}, 0.6, 0.9)

    def test_best_separating_threshold(self):
        assert best_separating_threshold([0.9, 0.95], [0.4, 0.5]) == pytest.approx(0.9)
        assert best_separating_threshold([0.9], []) is None
