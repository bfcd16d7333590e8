"""
Config Store - versioned per-organization matching configuration.

Every change writes a new MatchingConfigVersion row and retires the previous one.
The current version is cached as a frozen MatchingConfig; readers take the cached
reference without locking, writers swap in a new snapshot under the lock.
"""
import logging
import threading
from typing import Dict, Any, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session

from receiptmatch.config import settings
from receiptmatch.models.matching_config import MatchingConfigVersion
from receiptmatch.schemas.config import (
    MatchingConfig,
    ConfidenceWeights,
    merge_config,
    check_config_invariants,
)

logger = logging.getLogger(__name__)


def default_config_values() -> Dict[str, Any]:
    """Onboarding defaults, taken from settings"""
    return {
        "amount_tolerance_percentage": settings.default_amount_tolerance_percentage,
        "amount_tolerance_fixed": settings.default_amount_tolerance_fixed,
        "date_window_days": settings.default_date_window_days,
        "merchant_similarity_threshold": settings.default_merchant_similarity_threshold,
        "location_radius_km": settings.default_location_radius_km,
        "auto_match_threshold": settings.default_auto_match_threshold,
        "suggest_threshold": settings.default_suggest_threshold,
        "confidence_weights": ConfidenceWeights().model_dump(),
        "max_candidates": settings.default_max_candidates,
        "enable_learning": settings.default_enable_learning,
    }


class ConfigStore:
    """Publishes immutable MatchingConfig snapshots per organization"""

    def __init__(self):
        self._lock = threading.RLock()
        self._snapshots: Dict[str, MatchingConfig] = {}

    def get(self, db: Session, organization_id: str) -> MatchingConfig:
        """
        Current config for an organization.

        Creates version 1 with defaults the first time an organization is seen.
        """
        snapshot = self._snapshots.get(organization_id)
        if snapshot is not None:
            return snapshot

        with self._lock:
            snapshot = self._snapshots.get(organization_id)
            if snapshot is not None:
                return snapshot

            row = self._current_row(db, organization_id)
            if row is None:
                logger.info(f"No matching config for organization {organization_id}, creating defaults")
                return self._publish_locked(db, organization_id, default_config_values(), updated_by="system")

            snapshot = MatchingConfig.model_validate(row)
            self._snapshots[organization_id] = snapshot
            return snapshot

    def update(self, db: Session, organization_id: str, partial: Dict[str, Any], updated_by: Optional[str] = None) -> MatchingConfig:
        """
        Validate and publish a partial update.

        Raises:
            ConfigInvalidError: the merged config breaks an invariant; nothing is written
        """
        with self._lock:
            current = self.get(db, organization_id)
            data = merge_config(current, partial)
            check_config_invariants(data)
            return self._publish_locked(db, organization_id, data, updated_by=updated_by)

    def publish(self, db: Session, organization_id: str, data: Dict[str, Any], updated_by: Optional[str] = None) -> MatchingConfig:
        """Validate and publish a complete config payload as a new version"""
        check_config_invariants(data)
        with self._lock:
            return self._publish_locked(db, organization_id, data, updated_by=updated_by)

    def with_overrides(self, config: MatchingConfig, overrides: Optional[Dict[str, Any]]) -> MatchingConfig:
        """Validated, unpersisted variant of a config for a single run"""
        if not overrides:
            return config
        data = merge_config(config, overrides)
        check_config_invariants(data)
        return MatchingConfig(
            organization_id=config.organization_id,
            version=config.version,
            updated_by=config.updated_by,
            created_at=config.created_at,
            **data
        )

    def history(self, db: Session, organization_id: str, limit: int = 20) -> List[MatchingConfig]:
        rows = db.query(MatchingConfigVersion).filter(
            MatchingConfigVersion.organization_id == organization_id
        ).order_by(MatchingConfigVersion.version.desc()).limit(limit).all()
        return [MatchingConfig.model_validate(row) for row in rows]

    def reset(self, organization_id: Optional[str] = None):
        with self._lock:
            if organization_id is None:
                self._snapshots = {}
            else:
                self._snapshots.pop(organization_id, None)

    def _current_row(self, db: Session, organization_id: str) -> Optional[MatchingConfigVersion]:
        return db.query(MatchingConfigVersion).filter(
            MatchingConfigVersion.organization_id == organization_id,
            MatchingConfigVersion.is_current.is_(True)
        ).order_by(MatchingConfigVersion.version.desc()).first()

    def _publish_locked(self, db: Session, organization_id: str, data: Dict[str, Any], updated_by: Optional[str]) -> MatchingConfig:
        latest = db.query(func.max(MatchingConfigVersion.version)).filter(
            MatchingConfigVersion.organization_id == organization_id
        ).scalar() or 0

        try:
            db.query(MatchingConfigVersion).filter(
                MatchingConfigVersion.organization_id == organization_id,
                MatchingConfigVersion.is_current.is_(True)
            ).update({MatchingConfigVersion.is_current: False}, synchronize_session=False)

            weights = data["confidence_weights"]
            if hasattr(weights, "model_dump"):
                weights = weights.model_dump()

            row = MatchingConfigVersion(
                organization_id=organization_id,
                version=latest + 1,
                is_current=True,
                amount_tolerance_percentage=data["amount_tolerance_percentage"],
                amount_tolerance_fixed=data["amount_tolerance_fixed"],
                date_window_days=data["date_window_days"],
                merchant_similarity_threshold=data["merchant_similarity_threshold"],
                location_radius_km=data["location_radius_km"],
                auto_match_threshold=data["auto_match_threshold"],
                suggest_threshold=data["suggest_threshold"],
                confidence_weights=dict(weights),
                max_candidates=data["max_candidates"],
                enable_learning=data["enable_learning"],
                updated_by=updated_by,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
        except Exception:
            db.rollback()
            raise

        snapshot = MatchingConfig.model_validate(row)
        self._snapshots[organization_id] = snapshot
        logger.info(f"Published matching config v{snapshot.version} for organization {organization_id} (by {updated_by})")
        return snapshot


# Singleton instance
config_store = ConfigStore()
