"""
Matching API router - auto-matching, suggestions, review actions and metrics.
"""
import logging
from typing import List, Optional
from datetime import date
from decimal import Decimal
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from uuid import UUID

from receiptmatch.database import get_db
from receiptmatch.schemas.match import (
    AutoMatchRequest,
    AutoMatchResponse,
    ConfirmMatchRequest,
    RejectMatchRequest,
    ManualMatchRequest,
    FeedbackRequest,
    FeedbackResponse,
    MatchResponse,
    MatchingMetrics,
    LearningStats,
    UnmatchedFilters,
    UnmatchedItems,
)
from receiptmatch.schemas.matching import MatchCandidate
from receiptmatch.services.matching_service import MatchingService, matching_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/matching", tags=["matching"])


def get_matching_service() -> MatchingService:
    return matching_service


@router.post("/auto", response_model=AutoMatchResponse)
def run_auto_match(
    request: AutoMatchRequest,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    """
    Match the given transactions against the given receipts.
    With queue=true a bulk job over the organization's unmatched items is submitted instead.
    """
    if request.queue:
        job_id = service.submit_bulk_job(db, request.organization_id, priority=request.priority)
        return AutoMatchResponse(job_id=job_id)

    result = service.run_auto_match(
        db,
        request.organization_id,
        request.transactions,
        request.receipts,
        config_overrides=request.config_overrides,
        persist=request.persist,
    )
    return AutoMatchResponse(result=result)


@router.get("/suggestions/{item_type}/{item_id}", response_model=List[MatchCandidate])
def get_suggestions(
    item_type: str,
    item_id: str,
    organization_id: str = Query(..., description="Organization owning the item"),
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    """Ranked candidates for a transaction or a receipt"""
    return service.get_suggestions(db, organization_id, item_id, item_type)


@router.get("/unmatched", response_model=UnmatchedItems)
def list_unmatched(
    organization_id: str = Query(...),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    min_amount: Optional[Decimal] = Query(None),
    max_amount: Optional[Decimal] = Query(None),
    user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    filters = UnmatchedFilters(
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
        user_id=user_id,
        limit=limit,
    )
    return service.list_unmatched(db, organization_id, filters)


@router.get("/metrics", response_model=MatchingMetrics)
def get_metrics(
    organization_id: str = Query(...),
    period_days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.get_metrics(db, organization_id, period_days)


@router.get("/learning-stats", response_model=LearningStats)
def get_learning_stats(
    organization_id: str = Query(...),
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.get_learning_stats(db, organization_id)


@router.post("/manual", response_model=MatchResponse, status_code=201)
def create_manual_match(
    request: ManualMatchRequest,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    """Pair a transaction and a receipt by hand; supersedes any active match"""
    return service.create_manual_match(
        db,
        request.organization_id,
        request.transaction_id,
        request.receipt_id,
        request.user_id,
        notes=request.notes,
    )


@router.post("/{match_id}/confirm", response_model=MatchResponse)
def confirm_match(
    match_id: UUID,
    request: ConfirmMatchRequest,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.confirm_match(db, match_id, request.user_id, notes=request.notes)


@router.post("/{match_id}/reject", response_model=MatchResponse)
def reject_match(
    match_id: UUID,
    request: RejectMatchRequest,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.reject_match(
        db, match_id, request.user_id, reason=request.reason, correction=request.correction
    )


@router.post("/{match_id}/feedback", response_model=FeedbackResponse, status_code=201)
def submit_feedback(
    match_id: UUID,
    request: FeedbackRequest,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.submit_feedback(
        db,
        match_id,
        request.was_correct,
        request.user_id,
        correction=request.correction,
        notes=request.notes,
    )
