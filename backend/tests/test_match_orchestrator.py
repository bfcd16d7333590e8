"""
Unit Tests for Match Orchestration
==================================

Tests for:
- Greedy batch resolution (receipts claimed once, strictly by confidence)
- Idempotent re-runs and dry runs
- At most one active match per transaction under concurrent writers
- Confirm / manual / reject state transitions
"""

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from receiptmatch.exceptions import ConcurrencyConflictError, NotFoundError, ValidationError
from receiptmatch.models import Match, MatchRejection
from receiptmatch.schemas.match import MatchCorrection
from receiptmatch.services.match_orchestrator import MatchOrchestrator
from receiptmatch.utils.locks import KeyedLock
from receiptmatch.utils.records import transaction_record, receipt_record

from conftest import ORG_ID, USER_ID, make_txn, make_receipt, add_transaction, add_receipt


def active_matches(db, transaction_id):
    return db.query(Match).filter(Match.transaction_id == transaction_id, Match.is_active.is_(True)).all()


# =============================================================================
# BATCH TESTS
# =============================================================================

class TestBatch:

    def test_receipt_claimed_by_best_transaction(self, db, orchestrator, config):
        transactions = [
            make_txn(id="txn_a", amount="-50.00"),
            make_txn(id="txn_b", amount="-50.01"),
        ]
        receipts = [make_receipt(id="rcpt_1", total="50.00")]

        result = orchestrator.process_batch(db, ORG_ID, transactions, receipts, config)

        assert result.stats.auto_matched == 1
        assert [(d.transaction_id, d.receipt_id, d.match_type) for d in result.decisions] == [
            ("txn_a", "rcpt_1", "auto"),
        ]
        assert result.unmatched_transaction_ids == ["txn_b"]
        assert result.unmatched_receipt_ids == []
        assert len(active_matches(db, "txn_a")) == 1
        assert db.query(Match).filter(Match.transaction_id == "txn_b").count() == 0

    def test_suggestion_for_mid_confidence_pair(self, db, orchestrator, config):
        transactions = [make_txn(id="txn_1", currency="USD")]
        receipts = [make_receipt(id="rcpt_1", currency="EUR")]

        result = orchestrator.process_batch(db, ORG_ID, transactions, receipts, config)

        assert result.stats.suggested == 1
        assert result.stats.auto_matched == 0
        match = db.query(Match).one()
        assert match.match_type == "suggested"
        assert match.is_active is False
        assert result.unmatched_transaction_ids == []

    def test_rerun_is_idempotent(self, db, orchestrator, config):
        transactions = [
            make_txn(id="txn_auto"),
            make_txn(id="txn_suggest", amount="-18.00", currency="CAD"),
        ]
        receipts = [
            make_receipt(id="rcpt_auto"),
            make_receipt(id="rcpt_suggest", total="18.00"),
        ]

        orchestrator.process_batch(db, ORG_ID, transactions, receipts, config)
        first_count = db.query(Match).count()
        second = orchestrator.process_batch(db, ORG_ID, transactions, receipts, config)

        assert first_count == 2
        assert db.query(Match).count() == first_count
        assert second.stats.auto_matched == 0
        assert len(active_matches(db, "txn_auto")) == 1

    def test_dry_run_writes_nothing(self, db, orchestrator, config):
        result = orchestrator.process_batch(
            db, ORG_ID, [make_txn()], [make_receipt()], config, persist=False
        )
        assert result.stats.auto_matched == 1
        assert result.decisions[0].match_id is None
        assert db.query(Match).count() == 0

    def test_dry_run_without_database(self, orchestrator, config):
        result = orchestrator.process_batch(None, ORG_ID, [make_txn()], [make_receipt()], config, persist=False)
        assert result.stats.auto_matched == 1

    def test_foreign_organization_rejected(self, db, orchestrator, config):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.process_batch(
                db, ORG_ID, [make_txn()], [make_receipt(organization_id="org_other")], config
            )
        assert exc_info.value.field == "organization_id"

    def test_nothing_in_window_is_unmatched(self, db, orchestrator, config):
        result = orchestrator.process_batch(
            db, ORG_ID, [make_txn(txn_date=date(2024, 1, 1))], [make_receipt(receipt_date=date(2024, 3, 1))], config
        )
        assert result.unmatched_transaction_ids == ["txn_1"]
        assert result.unmatched_receipt_ids == ["rcpt_1"]
        assert result.stats.unmatched == 1

    def test_progress_reported_per_transaction(self, db, orchestrator, config):
        seen = []
        orchestrator.process_batch(
            db, ORG_ID, [make_txn(id="txn_2"), make_txn(id="txn_1")], [], config,
            on_transaction=seen.append,
        )
        assert seen == ["txn_1", "txn_2"]


# =============================================================================
# ACTIVATION TESTS
# =============================================================================

class TestActivation:

    def test_conflict_without_supersede(self, db, orchestrator):
        orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        with pytest.raises(ConcurrencyConflictError):
            orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_2", "auto", supersede=False)
        assert [m.receipt_id for m in active_matches(db, "txn_1")] == ["rcpt_1"]

    def test_supersede_links_previous(self, db, orchestrator):
        first = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        second = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_2", "manual", user_id=USER_ID)

        db.refresh(first)
        assert first.is_active is False
        assert first.superseded_by_id == second.id
        assert [m.id for m in active_matches(db, "txn_1")] == [second.id]

    def _race(self, session_factory, orchestrator, supersede):
        barrier = threading.Barrier(2)

        def attempt(receipt_id):
            session = session_factory()
            try:
                barrier.wait()
                orchestrator.activate(session, ORG_ID, "txn_1", receipt_id, "auto", supersede=supersede)
                return "ok"
            except ConcurrencyConflictError:
                return "conflict"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            return list(pool.map(attempt, ["rcpt_1", "rcpt_2"]))

    def test_concurrent_auto_activations(self, db, session_factory, orchestrator):
        outcomes = self._race(session_factory, orchestrator, supersede=False)
        assert sorted(outcomes) == ["conflict", "ok"]
        assert len(active_matches(db, "txn_1")) == 1

    def test_concurrent_superseding_activations(self, db, session_factory, orchestrator):
        outcomes = self._race(session_factory, orchestrator, supersede=True)
        assert outcomes == ["ok", "ok"]
        assert len(active_matches(db, "txn_1")) == 1
        assert db.query(Match).filter(Match.superseded_by_id.isnot(None)).count() == 1

    @pytest.mark.parametrize("supersede", [False, True])
    def test_unique_index_guards_separate_processes(self, db, session_factory, generator, configs, supersede):
        # No shared lock between workers, as with several API or worker processes
        workers = 5
        barrier = threading.Barrier(workers)

        def attempt(receipt_id):
            orchestrator = MatchOrchestrator(generator=generator, configs=configs, locks=KeyedLock())
            session = session_factory()
            try:
                barrier.wait()
                orchestrator.activate(session, ORG_ID, "txn_1", receipt_id, "auto", supersede=supersede)
                return "ok"
            except ConcurrencyConflictError:
                return "conflict"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(attempt, [f"rcpt_{i}" for i in range(workers)]))

        assert set(outcomes) <= {"ok", "conflict"}
        assert "ok" in outcomes
        if not supersede:
            assert outcomes.count("ok") == 1
        db.expire_all()
        assert len(active_matches(db, "txn_1")) == 1


# =============================================================================
# USER ACTION TESTS
# =============================================================================

class TestUserActions:

    def _suggestion(self, db, orchestrator, config):
        result = orchestrator.process_batch(
            db, ORG_ID, [make_txn(currency="USD")], [make_receipt(currency="EUR")], config
        )
        return orchestrator.get_match(db, result.decisions[0].match_id)

    def test_confirm_suggestion_activates(self, db, orchestrator, config):
        suggestion = self._suggestion(db, orchestrator, config)
        confirmed = orchestrator.confirm(db, suggestion.id, USER_ID, notes="checked")

        assert confirmed.id == suggestion.id
        assert confirmed.match_type == "reviewed"
        assert confirmed.is_active is True
        assert confirmed.reviewed_by == USER_ID
        assert confirmed.notes == "checked"

    def test_confirm_auto_marks_reviewed(self, db, orchestrator):
        match = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        confirmed = orchestrator.confirm(db, match.id, USER_ID)
        assert confirmed.match_type == "reviewed"
        assert confirmed.is_active is True

    def test_confirm_supersedes_other_active(self, db, orchestrator, config):
        suggestion = self._suggestion(db, orchestrator, config)
        other = orchestrator.activate(db, ORG_ID, suggestion.transaction_id, "rcpt_other", "manual")

        orchestrator.confirm(db, suggestion.id, USER_ID)
        db.refresh(other)
        assert other.is_active is False
        assert other.superseded_by_id == suggestion.id

    def test_confirm_rejected_fails(self, db, orchestrator):
        match = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        orchestrator.reject(db, match.id, USER_ID)
        with pytest.raises(ValidationError):
            orchestrator.confirm(db, match.id, USER_ID)

    def test_confirm_unknown_match(self, db, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.confirm(db, uuid.uuid4(), USER_ID)

    def test_manual_match_supersedes_auto(self, db, orchestrator):
        add_transaction(db, "txn_1", "-25.00", date(2024, 2, 10))
        add_receipt(db, "rcpt_1", "25.00", date(2024, 2, 10))
        add_receipt(db, "rcpt_2", "25.00", date(2024, 2, 11))
        auto = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")

        manual = orchestrator.create_manual(db, ORG_ID, "txn_1", "rcpt_2", USER_ID, notes="right one")

        db.refresh(auto)
        assert manual.match_type == "manual"
        assert manual.is_active is True
        assert manual.matched_by == USER_ID
        assert manual.criteria is not None
        assert auto.superseded_by_id == manual.id

    def test_manual_match_requires_rows(self, db, orchestrator):
        add_transaction(db, "txn_1", "-25.00", date(2024, 2, 10))
        with pytest.raises(NotFoundError) as exc_info:
            orchestrator.create_manual(db, ORG_ID, "txn_1", "rcpt_missing", USER_ID)
        assert exc_info.value.entity == "Receipt"
        with pytest.raises(NotFoundError):
            orchestrator.create_manual(db, ORG_ID, "txn_missing", "rcpt_missing", USER_ID)

    def test_reject_records_pair(self, db, orchestrator):
        match = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        correction = MatchCorrection(correct_receipt_id="rcpt_9")

        rejected = orchestrator.reject(db, match.id, USER_ID, reason="wrong store", correction=correction)

        assert rejected.match_type == "rejected"
        assert rejected.is_active is False
        rejection = db.query(MatchRejection).one()
        assert rejection.transaction_id == "txn_1"
        assert rejection.receipt_id == "rcpt_1"
        assert rejection.correct_receipt_id == "rcpt_9"
        assert rejection.reason == "wrong store"

    def test_reject_is_idempotent(self, db, orchestrator):
        match = orchestrator.activate(db, ORG_ID, "txn_1", "rcpt_1", "auto")
        orchestrator.reject(db, match.id, USER_ID)
        orchestrator.reject(db, match.id, USER_ID)
        assert db.query(MatchRejection).count() == 1

    def test_rejected_pair_not_proposed_again(self, db, orchestrator, config):
        txn = add_transaction(db, "txn_1", "-25.00", date(2024, 2, 10))
        receipt = add_receipt(db, "rcpt_1", "25.00", date(2024, 2, 10))
        transactions = [transaction_record(txn)]
        receipts = [receipt_record(receipt)]

        first = orchestrator.process_batch(db, ORG_ID, transactions, receipts, config)
        orchestrator.reject(db, first.decisions[0].match_id, USER_ID)
        second = orchestrator.process_batch(db, ORG_ID, transactions, receipts, config)

        assert second.decisions == []
        assert second.unmatched_transaction_ids == ["txn_1"]
