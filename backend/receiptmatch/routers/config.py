"""
Config API router - per-organization matching configuration.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from receiptmatch.database import get_db
from receiptmatch.schemas.config import MatchingConfig, MatchingConfigUpdate
from receiptmatch.services.matching_service import MatchingService
from receiptmatch.routers.matching import get_matching_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/config", tags=["config"])


@router.get("/{organization_id}", response_model=MatchingConfig)
def get_config(
    organization_id: str,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    """Current config; defaults are created on first access"""
    return service.get_config(db, organization_id)


@router.put("/{organization_id}", response_model=MatchingConfig)
def update_config(
    organization_id: str,
    update: MatchingConfigUpdate,
    updated_by: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    """Validate and publish a new config version; invalid updates keep the current one"""
    partial = update.model_dump(exclude_none=True)
    return service.update_config(db, organization_id, partial, updated_by=updated_by)


@router.get("/{organization_id}/history", response_model=List[MatchingConfig])
def get_config_history(
    organization_id: str,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    return service.configs.history(db, organization_id, limit=limit)


@router.post("/{organization_id}/learn", response_model=MatchingConfig)
def learn_from_feedback(
    organization_id: str,
    db: Session = Depends(get_db),
    service: MatchingService = Depends(get_matching_service)
):
    """Adapt weights and thresholds from recent feedback"""
    return service.adapt_config(db, organization_id)
