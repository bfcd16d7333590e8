"""
Unit Tests for the Matching Job Processor
=========================================

Tests for:
- Bulk, single and reprocess jobs against the database
- Worker pool lifecycle and recovery of unfinished jobs
- Retry with exponential backoff for transient failures
- Cancellation and deadlines
"""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from receiptmatch.exceptions import ConcurrencyConflictError, ValidationError
from receiptmatch.models import Match, MatchingJob
from receiptmatch.services.job_processor import JobProcessor

from conftest import ORG_ID, add_transaction, add_receipt


def reload(db, processor, job_id):
    db.expire_all()
    return processor.get_job(db, job_id)


def seed_pairs(db, organization_id=ORG_ID, prefix=""):
    for index, amount in enumerate(("10.00", "20.00", "30.00"), start=1):
        add_transaction(db, f"{prefix}txn_{index}", f"-{amount}", date(2024, 4, index), organization_id=organization_id)
        add_receipt(db, f"{prefix}rcpt_{index}", amount, date(2024, 4, index), organization_id=organization_id)


# =============================================================================
# JOB KIND TESTS
# =============================================================================

class TestJobKinds:

    def test_bulk_job_matches_everything(self, db, processor):
        seed_pairs(db)
        job_id = processor.submit(db, ORG_ID, kind="bulk")

        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "completed"
        assert job.attempts == 1
        assert (job.progress_completed, job.progress_total) == (3, 3)
        assert job.result["auto_matched"] == 3
        assert job.completed_at is not None
        assert db.query(Match).filter(Match.is_active.is_(True)).count() == 3

    def test_rerun_changes_nothing(self, db, processor):
        seed_pairs(db)
        asyncio.run(processor.run_job(processor.submit(db, ORG_ID)))
        count = db.query(Match).count()

        job_id = processor.submit(db, ORG_ID)
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "completed"
        assert job.progress_total == 0
        assert job.result["auto_matched"] == 0
        assert db.query(Match).count() == count

    def test_bulk_date_scope(self, db, processor):
        seed_pairs(db)
        job_id = processor.submit(db, ORG_ID, scope={"date_from": date(2024, 4, 2), "date_to": date(2024, 4, 2)})
        assert reload(db, processor, job_id).scope == {"date_from": "2024-04-02", "date_to": "2024-04-02"}

        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.progress_total == 1
        assert job.result["auto_matched"] == 1

    def test_single_job(self, db, processor):
        seed_pairs(db)
        job_id = processor.submit(db, ORG_ID, kind="single", scope={"transaction_id": "txn_2"})

        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "completed"
        assert job.result["auto_matched"] == 1
        active = db.query(Match).filter(Match.is_active.is_(True)).one()
        assert (active.transaction_id, active.receipt_id) == ("txn_2", "rcpt_2")

    def test_single_job_unknown_transaction_fails(self, db, processor):
        job_id = processor.submit(db, ORG_ID, kind="single", scope={"transaction_id": "txn_missing"})
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "failed"
        assert job.attempts == 1
        assert "txn_missing" in job.error_message

    def test_reprocess_revisits_suggestions(self, db, processor):
        add_transaction(db, "txn_1", "-25.00", date(2024, 4, 1))
        add_receipt(db, "rcpt_1", "25.00", date(2024, 4, 1), currency="EUR")
        add_transaction(db, "txn_2", "-99.00", date(2024, 4, 1))
        asyncio.run(processor.run_job(processor.submit(db, ORG_ID)))
        assert db.query(Match).filter(Match.match_type == "suggested").count() == 1

        job_id = processor.submit(db, ORG_ID, kind="reprocess")
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.progress_total == 1
        assert job.result["suggested"] == 1
        assert db.query(Match).count() == 1

    def test_malformed_receipt_skipped(self, db, processor):
        seed_pairs(db)
        add_receipt(db, "rcpt_bad", "20.00", date(2024, 4, 2), currency="")
        job_id = processor.submit(db, ORG_ID)

        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "completed"
        assert job.result["auto_matched"] == 3
        assert len(job.warnings) == 1
        assert "rcpt_bad" in job.warnings[0]
        assert db.query(Match).filter(Match.is_active.is_(True)).count() == 3
        assert db.query(Match).filter(Match.receipt_id == "rcpt_bad").count() == 0

    def test_malformed_transaction_skipped(self, db, processor):
        seed_pairs(db)
        add_transaction(db, "txn_bad", "-20.00", date(2024, 4, 2), currency="")
        job_id = processor.submit(db, ORG_ID)

        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "completed"
        assert (job.progress_completed, job.progress_total) == (4, 4)
        assert job.result["auto_matched"] == 3
        assert any("txn_bad" in warning for warning in job.warnings)

    def test_invalid_submissions(self, db, processor):
        with pytest.raises(ValidationError) as exc_info:
            processor.submit(db, ORG_ID, kind="nightly")
        assert exc_info.value.field == "kind"
        with pytest.raises(ValidationError):
            processor.submit(db, ORG_ID, kind="single")
        assert db.query(MatchingJob).count() == 0


# =============================================================================
# RETRY TESTS
# =============================================================================

class TestRetries:

    def test_transient_conflict_is_retried(self, db, processor, monkeypatch):
        seed_pairs(db)
        original = processor._dispatch
        calls = []

        def flaky(session, job, checkpoint):
            calls.append(job.id)
            if len(calls) == 1:
                raise ConcurrencyConflictError("txn_1")
            return original(session, job, checkpoint)

        monkeypatch.setattr(processor, "_dispatch", flaky)
        job_id = processor.submit(db, ORG_ID)
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "completed"
        assert job.attempts == 2
        assert job.result["auto_matched"] == 3

    def test_gives_up_after_max_attempts(self, db, processor, monkeypatch):
        def down(session, job, checkpoint):
            raise OperationalError("SELECT 1", {}, Exception("database is down"))

        monkeypatch.setattr(processor, "_dispatch", down)
        job_id = processor.submit(db, ORG_ID)
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "failed"
        assert job.attempts == 3
        assert job.error_message.startswith("Failed after 3 attempts")

    def test_permanent_error_not_retried(self, db, processor, monkeypatch):
        def broken(session, job, checkpoint):
            raise ValueError("bad scope")

        monkeypatch.setattr(processor, "_dispatch", broken)
        job_id = processor.submit(db, ORG_ID)
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "failed"
        assert job.attempts == 1
        assert job.error_message == "bad scope"

    def test_backoff_doubles(self, db, session_factory, orchestrator, configs, monkeypatch):
        processor = JobProcessor(session_factory, orchestrator, configs, worker_count=1, backoff_base_seconds=1.0)

        def conflict(session, job, checkpoint):
            raise ConcurrencyConflictError("txn_1")

        monkeypatch.setattr(processor, "_dispatch", conflict)
        job_id = processor.submit(db, ORG_ID)

        assert processor._execute_attempt(job_id) == 1.0
        assert reload(db, processor, job_id).status == "pending"
        assert processor._execute_attempt(job_id) == 2.0
        assert processor._execute_attempt(job_id) is None
        assert reload(db, processor, job_id).status == "failed"


# =============================================================================
# CANCELLATION AND DEADLINE TESTS
# =============================================================================

class TestCancellation:

    def test_cancel_pending_job(self, db, processor):
        job_id = processor.submit(db, ORG_ID)
        job = processor.cancel(db, job_id)
        assert job.status == "cancelled"
        assert job.cancel_requested is True

        asyncio.run(processor.run_job(job_id))
        job = reload(db, processor, job_id)
        assert job.status == "cancelled"
        assert job.attempts == 0

    def test_cancel_running_job(self, db, session_factory, processor, monkeypatch):
        def cancelled_midway(session, job, checkpoint):
            other = session_factory()
            try:
                processor.cancel(other, job.id)
            finally:
                other.close()
            checkpoint()
            return {"result": {}}

        monkeypatch.setattr(processor, "_dispatch", cancelled_midway)
        job_id = processor.submit(db, ORG_ID)
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "cancelled"
        assert job.current_operation == "Cancelled while running"

    def test_cancel_finished_job_is_noop(self, db, processor):
        job_id = processor.submit(db, ORG_ID)
        asyncio.run(processor.run_job(job_id))
        job = processor.cancel(db, reload(db, processor, job_id).id)
        assert job.status == "completed"

    def test_deadline_exceeded(self, db, processor):
        seed_pairs(db)
        job_id = processor.submit(db, ORG_ID, deadline_seconds=-1)
        asyncio.run(processor.run_job(job_id))

        job = reload(db, processor, job_id)
        assert job.status == "failed"
        assert "deadline" in job.error_message
        assert db.query(Match).count() == 0


# =============================================================================
# WORKER POOL TESTS
# =============================================================================

class TestWorkerPool:

    def test_workers_drain_queue_and_recover_pending(self, db, processor):
        seed_pairs(db)
        seed_pairs(db, organization_id="org_other", prefix="other_")
        recovered_id = processor.submit(db, ORG_ID)

        async def scenario():
            await processor.start()
            assert processor.running
            queued_id = processor.submit(db, "org_other", priority=200)
            await processor.join()
            await processor.stop()
            return queued_id

        queued_id = asyncio.run(scenario())

        assert not processor.running
        for job_id in (recovered_id, queued_id):
            job = reload(db, processor, job_id)
            assert job.status == "completed"
            assert job.result["auto_matched"] == 3

    def test_running_job_requeued_on_start(self, db, processor):
        job_id = processor.submit(db, ORG_ID)
        job = processor.get_job(db, job_id)
        job.status = "running"
        db.commit()

        async def scenario():
            await processor.start()
            await processor.join()
            await processor.stop()

        asyncio.run(scenario())
        assert reload(db, processor, job_id).status == "completed"


# =============================================================================
# HOUSEKEEPING TESTS
# =============================================================================

class TestHousekeeping:

    def test_stats(self, db, processor):
        finished = processor.submit(db, ORG_ID)
        asyncio.run(processor.run_job(finished))
        processor.submit(db, ORG_ID)
        processor.cancel(db, processor.submit(db, ORG_ID))

        stats = processor.stats(db)
        assert (stats.completed, stats.pending, stats.cancelled) == (1, 1, 1)
        assert stats.workers == 0

    def test_list_jobs_filters(self, db, processor):
        processor.submit(db, ORG_ID)
        processor.cancel(db, processor.submit(db, ORG_ID))
        processor.submit(db, "org_other")

        assert len(processor.list_jobs(db, organization_id=ORG_ID)) == 2
        assert len(processor.list_jobs(db, status="cancelled")) == 1

    def test_cleanup_removes_old_finished_jobs(self, db, processor):
        old = processor.cancel(db, processor.submit(db, ORG_ID))
        old.completed_at = datetime.now(timezone.utc) - timedelta(days=30)
        db.commit()
        processor.cancel(db, processor.submit(db, ORG_ID))
        processor.submit(db, ORG_ID)

        assert processor.cleanup(db, max_age_days=7) == 1
        assert db.query(MatchingJob).count() == 2
