"""
Jobs API router - bulk matching jobs.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from uuid import UUID

from receiptmatch.database import get_db
from receiptmatch.schemas.job import JobCreate, JobCreatedResponse, JobResponse, JobStats
from receiptmatch.services.job_processor import JobProcessor, job_processor
from receiptmatch.services.matching_service import MatchingService
from receiptmatch.routers.matching import get_matching_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def get_job_processor() -> JobProcessor:
    return job_processor


@router.post("", response_model=JobCreatedResponse, status_code=202)
def submit_job(
    request: JobCreate,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    job_id = service.submit_bulk_job(
        db,
        request.organization_id,
        scope=request.scope.model_dump(mode="json", exclude_none=True),
        priority=request.priority,
        kind=request.kind,
        deadline_seconds=request.deadline_seconds,
    )
    job = service.get_job_status(db, job_id)
    return JobCreatedResponse(job_id=job_id, status=job.status)


@router.get("", response_model=List[JobResponse])
def list_jobs(
    organization_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="pending, running, completed, failed or cancelled"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    processor: JobProcessor = Depends(get_job_processor)
):
    return processor.list_jobs(db, organization_id=organization_id, status=status, limit=limit)


@router.get("/stats", response_model=JobStats)
def get_job_stats(
    db: Session = Depends(get_db),
    processor: JobProcessor = Depends(get_job_processor)
):
    return processor.stats(db)


@router.post("/cleanup")
def cleanup_jobs(
    max_age_days: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    processor: JobProcessor = Depends(get_job_processor)
):
    removed = processor.cleanup(db, max_age_days)
    return {"removed": removed}


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: UUID,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.get_job_status(db, job_id)


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(
    job_id: UUID,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.cancel_job(db, job_id)
