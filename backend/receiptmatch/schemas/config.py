from pydantic import BaseModel
from typing import Optional, Dict, Any
from datetime import datetime

from receiptmatch.exceptions import ConfigInvalidError


CRITERIA = ("amount", "date", "merchant", "location", "user", "currency")
WEIGHT_SUM_TOLERANCE = 1e-6


class ConfidenceWeights(BaseModel):
    """Per-criterion coefficients; must sum to 1.0"""
    amount: float = 0.35
    date: float = 0.20
    merchant: float = 0.25
    location: float = 0.10
    user: float = 0.05
    currency: float = 0.05

    class Config:
        frozen = True

    def total(self) -> float:
        return sum(getattr(self, name) for name in CRITERIA)


class MatchingConfig(BaseModel):
    """Immutable snapshot of an organization's matching tunables"""
    organization_id: Optional[str] = None
    version: int = 0
    amount_tolerance_percentage: float = 0.05
    amount_tolerance_fixed: float = 1.00
    date_window_days: int = 7
    merchant_similarity_threshold: float = 0.7
    location_radius_km: float = 5.0
    auto_match_threshold: float = 0.85
    suggest_threshold: float = 0.5
    confidence_weights: ConfidenceWeights = ConfidenceWeights()
    max_candidates: int = 10
    enable_learning: bool = True
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        frozen = True
        from_attributes = True


class ConfidenceWeightsUpdate(BaseModel):
    amount: Optional[float] = None
    date: Optional[float] = None
    merchant: Optional[float] = None
    location: Optional[float] = None
    user: Optional[float] = None
    currency: Optional[float] = None


class MatchingConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their current value"""
    amount_tolerance_percentage: Optional[float] = None
    amount_tolerance_fixed: Optional[float] = None
    date_window_days: Optional[int] = None
    merchant_similarity_threshold: Optional[float] = None
    location_radius_km: Optional[float] = None
    auto_match_threshold: Optional[float] = None
    suggest_threshold: Optional[float] = None
    confidence_weights: Optional[ConfidenceWeightsUpdate] = None
    max_candidates: Optional[int] = None
    enable_learning: Optional[bool] = None


def merge_config(current: MatchingConfig, update: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay a partial update onto the current config, weights merged per criterion"""
    data = current.model_dump(exclude={"organization_id", "version", "updated_by", "created_at"})
    for key, value in update.items():
        if value is None:
            continue
        if key == "confidence_weights":
            weights = dict(data["confidence_weights"])
            weights.update({k: v for k, v in value.items() if v is not None})
            data["confidence_weights"] = weights
        else:
            data[key] = value
    return data


def check_config_invariants(data: Dict[str, Any]) -> None:
    """
    Validate a full config payload.

    Raises:
        ConfigInvalidError naming the first offending field
    """
    for name in ("amount_tolerance_percentage", "merchant_similarity_threshold",
                 "auto_match_threshold", "suggest_threshold"):
        value = data.get(name)
        if value is None or not 0.0 <= float(value) <= 1.0:
            raise ConfigInvalidError(name, f"must be between 0 and 1, got {value}")

    if data.get("amount_tolerance_fixed") is None or float(data["amount_tolerance_fixed"]) < 0:
        raise ConfigInvalidError("amount_tolerance_fixed", "must be zero or positive")
    if data.get("date_window_days") is None or int(data["date_window_days"]) < 1:
        raise ConfigInvalidError("date_window_days", "must be at least 1 day")
    if data.get("location_radius_km") is None or float(data["location_radius_km"]) <= 0:
        raise ConfigInvalidError("location_radius_km", "must be positive")
    if data.get("max_candidates") is None or int(data["max_candidates"]) < 1:
        raise ConfigInvalidError("max_candidates", "must be at least 1")

    if float(data["suggest_threshold"]) > float(data["auto_match_threshold"]):
        raise ConfigInvalidError(
            "suggest_threshold",
            f"must not exceed auto_match_threshold ({data['auto_match_threshold']})"
        )

    weights = data.get("confidence_weights") or {}
    if isinstance(weights, BaseModel):
        weights = weights.model_dump()
    for name in CRITERIA:
        value = weights.get(name)
        if value is None:
            raise ConfigInvalidError(f"confidence_weights.{name}", "is required")
        if not 0.0 <= float(value) <= 1.0:
            raise ConfigInvalidError(f"confidence_weights.{name}", f"must be between 0 and 1, got {value}")
    total = sum(float(weights[name]) for name in CRITERIA)
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise ConfigInvalidError("confidence_weights", f"must sum to 1.0, got {total:.6f}")
