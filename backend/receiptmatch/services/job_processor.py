"""
Job Processor - bounded asyncio worker pool for matching jobs.

Jobs are rows in matching_jobs (kind, scope, deadline, attempts). A fixed number of
workers pull job ids from a priority queue (higher priority first, then FIFO) and run
each attempt in a thread with its own database session.

Features:
- Retry of transient failures with exponential backoff, up to max_attempts
- Progress committed after every transaction
- Cancellation and deadline checks between pairs
- Recovery of unfinished jobs on start
"""
import asyncio
import itertools
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from sqlalchemy import and_, exists, func, or_
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload

from receiptmatch.config import settings
from receiptmatch.database import SessionLocal
from receiptmatch.exceptions import (
    ConcurrencyConflictError,
    JobCancelledError,
    NotFoundError,
    ProcessingTimeoutError,
    ValidationError,
)
from receiptmatch.models.match import Match
from receiptmatch.models.match_rejection import MatchRejection
from receiptmatch.models.matching_job import MatchingJob
from receiptmatch.models.receipt import Receipt
from receiptmatch.models.transaction import Transaction
from receiptmatch.schemas.job import JobStats
from receiptmatch.services.config_store import ConfigStore, config_store
from receiptmatch.services.match_orchestrator import MatchOrchestrator, match_orchestrator
from receiptmatch.utils.records import transaction_record, receipt_record, convert_rows

logger = logging.getLogger(__name__)

JOB_KINDS = ("single", "bulk", "reprocess")
FINISHED = ("completed", "failed", "cancelled")
TRANSIENT_ERRORS = (ConcurrencyConflictError, OperationalError, TimeoutError)
MAX_STORED_WARNINGS = 100


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored here is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _as_date(value) -> date:
    return value if isinstance(value, date) else date.fromisoformat(str(value))


class JobProcessor:
    """Priority queue plus a fixed pool of asyncio workers"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        orchestrator: Optional[MatchOrchestrator] = None,
        configs: Optional[ConfigStore] = None,
        worker_count: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        batch_size: Optional[int] = None
    ):
        self.session_factory = session_factory or SessionLocal
        self.orchestrator = orchestrator or match_orchestrator
        self.configs = configs or config_store
        self.worker_count = worker_count or settings.job_worker_count
        self.backoff_base_seconds = (
            settings.job_backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self.batch_size = batch_size or settings.job_batch_size

        self._queue: Optional[asyncio.PriorityQueue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._workers: List[asyncio.Task] = []
        self._sequence = itertools.count()
        self._cancel_requested: Set[uuid.UUID] = set()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Spawn the workers and re-queue jobs left pending or running by a previous process"""
        if self.running:
            logger.warning("Job processor already running")
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.PriorityQueue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"matching-worker-{index}")
            for index in range(self.worker_count)
        ]
        recovered = await asyncio.to_thread(self._recover_unfinished)
        logger.info(f"Job processor started with {self.worker_count} workers, {recovered} jobs recovered")

    async def stop(self):
        if not self.running:
            return
        logger.info("Stopping job processor...")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queue = None
        self._loop = None
        logger.info("Job processor stopped")

    async def join(self):
        """Wait until every queued job has finished"""
        if self._queue is not None:
            await self._queue.join()

    def _recover_unfinished(self) -> int:
        db = self.session_factory()
        try:
            jobs = db.query(MatchingJob).filter(
                MatchingJob.status.in_(("pending", "running"))
            ).order_by(MatchingJob.created_at).all()
            for job in jobs:
                if job.status == "running":
                    job.status = "pending"
                    job.current_operation = "Re-queued after restart"
            db.commit()
            for job in jobs:
                self._enqueue(job.id, job.priority)
            return len(jobs)
        finally:
            db.close()

    def _enqueue(self, job_id: uuid.UUID, priority: int):
        if self._queue is None or self._loop is None:
            return
        item = (-priority, next(self._sequence), job_id)
        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None
        if running_loop is self._loop:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(
        self,
        db: Session,
        organization_id: str,
        kind: str = "bulk",
        scope: Optional[Dict[str, Any]] = None,
        priority: int = 100,
        deadline_seconds: Optional[int] = None,
        max_attempts: Optional[int] = None
    ) -> uuid.UUID:
        """
        Persist a pending job and queue it.

        Raises:
            ValidationError: unknown kind, or a single job without transaction_id
        """
        if kind not in JOB_KINDS:
            raise ValidationError(f"Unknown job kind: {kind}", field="kind")
        scope = {
            key: value.isoformat() if isinstance(value, date) else value
            for key, value in (scope or {}).items() if value is not None
        }
        if kind == "single" and not scope.get("transaction_id"):
            raise ValidationError("Single jobs need a transaction_id", field="scope.transaction_id")

        deadline_seconds = deadline_seconds if deadline_seconds is not None else settings.job_deadline_seconds
        job = MatchingJob(
            id=uuid.uuid4(),
            organization_id=organization_id,
            kind=kind,
            status="pending",
            priority=priority,
            scope=scope,
            attempts=0,
            max_attempts=max_attempts or settings.job_max_attempts,
            deadline=_now() + timedelta(seconds=deadline_seconds),
            cancel_requested=False,
            progress_total=0,
            progress_completed=0,
            created_at=_now(),
        )
        db.add(job)
        db.commit()
        db.refresh(job)

        self._enqueue(job.id, priority)
        logger.info(f"Submitted {kind} job {job.id} for organization {organization_id} (priority {priority})")
        return job.id

    def get_job(self, db: Session, job_id) -> MatchingJob:
        job = db.query(MatchingJob).filter(MatchingJob.id == job_id).first()
        if not job:
            raise NotFoundError("Job", job_id)
        return job

    def cancel(self, db: Session, job_id) -> MatchingJob:
        """
        Request cancellation. Pending jobs are cancelled at once; running jobs stop
        at their next checkpoint.
        """
        job = self.get_job(db, job_id)
        if job.status in FINISHED:
            return job

        job.cancel_requested = True
        if job.status == "pending":
            job.status = "cancelled"
            job.completed_at = _now()
            job.current_operation = "Cancelled before start"
        self._cancel_requested.add(job.id)
        db.commit()
        db.refresh(job)
        logger.info(f"Cancellation requested for job {job.id} (status {job.status})")
        return job

    def list_jobs(self, db: Session, organization_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> List[MatchingJob]:
        query = db.query(MatchingJob)
        if organization_id:
            query = query.filter(MatchingJob.organization_id == organization_id)
        if status:
            query = query.filter(MatchingJob.status == status)
        return query.order_by(MatchingJob.created_at.desc()).limit(limit).all()

    def stats(self, db: Session) -> JobStats:
        counts = dict(
            db.query(MatchingJob.status, func.count(MatchingJob.id)).group_by(MatchingJob.status).all()
        )
        return JobStats(
            pending=counts.get("pending", 0),
            running=counts.get("running", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
            cancelled=counts.get("cancelled", 0),
            queued=self._queue.qsize() if self._queue is not None else 0,
            workers=len(self._workers),
        )

    def cleanup(self, db: Session, max_age_days: Optional[int] = None) -> int:
        """Delete finished jobs older than max_age_days; returns the number removed"""
        max_age_days = settings.job_retention_days if max_age_days is None else max_age_days
        cutoff = _now() - timedelta(days=max_age_days)
        removed = db.query(MatchingJob).filter(
            MatchingJob.status.in_(FINISHED),
            MatchingJob.completed_at.isnot(None),
            MatchingJob.completed_at < cutoff
        ).delete(synchronize_session=False)
        db.commit()
        if removed:
            logger.info(f"Cleaned up {removed} finished jobs older than {max_age_days} days")
        return removed

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, index: int):
        while True:
            _, _, job_id = await self._queue.get()
            try:
                await self.run_job(job_id)
            except Exception as e:
                logger.error(f"Worker {index} crashed on job {job_id}: {str(e)}", exc_info=True)
            finally:
                self._queue.task_done()

    async def run_job(self, job_id: uuid.UUID):
        """Run attempts until the job reaches a final state, sleeping between retries"""
        while True:
            retry_delay = await asyncio.to_thread(self._execute_attempt, job_id)
            if retry_delay is None:
                return
            await asyncio.sleep(retry_delay)

    def _execute_attempt(self, job_id: uuid.UUID) -> Optional[float]:
        """
        One attempt of a job in its own session.

        Returns:
            Seconds to wait before the next attempt, or None when the job is finished
        """
        db = self.session_factory()
        try:
            job = db.query(MatchingJob).filter(MatchingJob.id == job_id).first()
            if job is None:
                logger.warning(f"Job {job_id} disappeared before it ran")
                return None
            if job.status in FINISHED:
                return None
            if job.cancel_requested:
                self._finish(db, job, "cancelled", operation="Cancelled before start")
                return None

            job.status = "running"
            job.attempts = (job.attempts or 0) + 1
            job.started_at = job.started_at or _now()
            job.current_operation = f"Attempt {job.attempts}/{job.max_attempts}"
            db.commit()
            logger.info(f"Running {job.kind} job {job.id} (attempt {job.attempts}/{job.max_attempts})")

            try:
                result = self._dispatch(db, job, self._checkpoint(job))
            except JobCancelledError:
                db.rollback()
                self._finish(db, job, "cancelled", operation="Cancelled while running")
                return None
            except ProcessingTimeoutError as e:
                db.rollback()
                self._finish(db, job, "failed", error=e.message)
                return None
            except TRANSIENT_ERRORS as e:
                db.rollback()
                if job.attempts < job.max_attempts:
                    delay = self.backoff_base_seconds * (2 ** (job.attempts - 1))
                    job.status = "pending"
                    job.current_operation = f"Retrying in {delay:.1f}s after: {str(e)[:150]}"
                    db.commit()
                    logger.warning(f"Job {job.id} attempt {job.attempts} failed transiently, retrying in {delay:.1f}s: {str(e)}")
                    return delay
                self._finish(db, job, "failed", error=f"Failed after {job.attempts} attempts: {str(e)}")
                return None
            except Exception as e:
                db.rollback()
                logger.error(f"Job {job.id} failed: {str(e)}", exc_info=True)
                self._finish(db, job, "failed", error=str(e))
                return None

            job.result = result.get("result")
            job.warnings = result.get("warnings", [])[:MAX_STORED_WARNINGS]
            self._finish(db, job, "completed", operation="Done")
            return None
        finally:
            db.close()

    def _finish(self, db: Session, job: MatchingJob, status: str, error: Optional[str] = None, operation: Optional[str] = None):
        job.status = status
        job.completed_at = _now()
        if error:
            job.error_message = error
            job.current_operation = "Failed"
        elif operation:
            job.current_operation = operation
        db.commit()
        self._cancel_requested.discard(job.id)
        log = logger.error if status == "failed" else logger.info
        log(f"Job {job.id} {status}" + (f": {error}" if error else ""))

    def _checkpoint(self, job: MatchingJob) -> Callable[[], None]:
        job_id = job.id
        deadline = _as_utc(job.deadline)

        def checkpoint():
            if job_id in self._cancel_requested:
                raise JobCancelledError(f"Job {job_id} was cancelled")
            if deadline is not None and _now() > deadline:
                raise ProcessingTimeoutError(f"Job {job_id} exceeded its deadline")

        return checkpoint

    # ------------------------------------------------------------------
    # Job kinds
    # ------------------------------------------------------------------

    def _dispatch(self, db: Session, job: MatchingJob, checkpoint: Callable[[], None]) -> Dict[str, Any]:
        checkpoint()
        # Cancellation requested by another process
        db.refresh(job)
        if job.cancel_requested:
            raise JobCancelledError(f"Job {job.id} was cancelled")

        scope = job.scope or {}
        if job.kind == "single":
            transaction_ids = self._single_scope(db, job, scope)
        elif job.kind == "bulk":
            transaction_ids = self._unmatched_transaction_ids(db, job.organization_id, scope)
        elif job.kind == "reprocess":
            transaction_ids = self._reprocess_transaction_ids(db, job.organization_id, scope)
        else:
            raise ValidationError(f"Unknown job kind: {job.kind}", field="kind")

        config = self.configs.get(db, job.organization_id)
        batch_size = scope.get("batch_size") or self.batch_size

        job.progress_total = len(transaction_ids)
        job.progress_completed = 0
        db.commit()

        totals = {"transactions_processed": 0, "auto_matched": 0, "suggested": 0, "unmatched": 0, "conflicts": 0}
        warnings: List[str] = []

        def on_transaction(transaction_id: str):
            job.progress_completed += 1
            job.current_operation = f"Scored transaction {transaction_id}"
            db.commit()

        for start in range(0, len(transaction_ids), batch_size):
            checkpoint()
            batch_ids = transaction_ids[start:start + batch_size]
            rows = db.query(Transaction).filter(Transaction.id.in_(batch_ids)).order_by(Transaction.id).all()
            transactions = convert_rows(rows, transaction_record, warnings)
            if len(transactions) < len(rows):
                job.progress_completed += len(rows) - len(transactions)
                db.commit()
            receipts = self._receipt_pool(db, job.organization_id, transactions, config, warnings)

            outcome = self.orchestrator.process_batch(
                db,
                job.organization_id,
                transactions,
                receipts,
                config,
                checkpoint=checkpoint,
                on_transaction=on_transaction,
            )
            totals["transactions_processed"] += outcome.stats.transactions_processed
            totals["auto_matched"] += outcome.stats.auto_matched
            totals["suggested"] += outcome.stats.suggested
            totals["unmatched"] += outcome.stats.unmatched
            totals["conflicts"] += outcome.stats.conflicts
            warnings.extend(outcome.warnings)

        logger.info(f"Job {job.id} processed {totals['transactions_processed']} transactions: {totals}")
        return {"result": totals, "warnings": warnings}

    def _single_scope(self, db: Session, job: MatchingJob, scope: Dict[str, Any]) -> List[str]:
        transaction_id = scope.get("transaction_id")
        transaction = db.query(Transaction).filter(
            Transaction.id == transaction_id,
            Transaction.organization_id == job.organization_id
        ).first()
        if not transaction:
            raise NotFoundError("Transaction", transaction_id)
        return [transaction.id]

    def _unmatched_query(self, db: Session, organization_id: str, scope: Dict[str, Any]):
        has_active = exists().where(and_(Match.transaction_id == Transaction.id, Match.is_active.is_(True)))
        query = db.query(Transaction.id).filter(
            Transaction.organization_id == organization_id,
            ~has_active
        )
        if scope.get("date_from"):
            query = query.filter(Transaction.transaction_date >= _as_date(scope["date_from"]))
        if scope.get("date_to"):
            query = query.filter(Transaction.transaction_date <= _as_date(scope["date_to"]))
        return query

    def _unmatched_transaction_ids(self, db: Session, organization_id: str, scope: Dict[str, Any]) -> List[str]:
        rows = self._unmatched_query(db, organization_id, scope).order_by(
            Transaction.transaction_date, Transaction.id
        ).all()
        return [row[0] for row in rows]

    def _reprocess_transaction_ids(self, db: Session, organization_id: str, scope: Dict[str, Any]) -> List[str]:
        """Unmatched transactions that already have pending suggestions or rejections"""
        has_suggestion = exists().where(and_(
            Match.transaction_id == Transaction.id,
            Match.match_type == "suggested",
            Match.is_active.is_(False)
        ))
        has_rejection = exists().where(MatchRejection.transaction_id == Transaction.id)
        rows = self._unmatched_query(db, organization_id, scope).filter(
            or_(has_suggestion, has_rejection)
        ).order_by(Transaction.transaction_date, Transaction.id).all()
        return [row[0] for row in rows]

    def _receipt_pool(self, db: Session, organization_id: str, transactions, config, warnings=None) -> list:
        """Unmatched receipts dated within the window around the batch"""
        if not transactions:
            return []
        window = timedelta(days=config.date_window_days)
        earliest = min(t.transaction_date for t in transactions) - window
        latest = max(t.transaction_date for t in transactions) + window
        has_active = exists().where(and_(Match.receipt_id == Receipt.id, Match.is_active.is_(True)))
        rows = db.query(Receipt).options(selectinload(Receipt.extracted_fields)).filter(
            Receipt.organization_id == organization_id,
            Receipt.receipt_date >= earliest,
            Receipt.receipt_date <= latest,
            ~has_active
        ).order_by(Receipt.id).all()
        return convert_rows(rows, receipt_record, warnings)


# Singleton instance
job_processor = JobProcessor()
