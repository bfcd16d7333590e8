from pydantic import BaseModel, field_validator
from typing import List, Optional, Literal
from decimal import Decimal
from datetime import date
import math


MatchType = Literal["auto", "suggested", "manual", "reviewed", "rejected"]


class Location(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None

    class Config:
        frozen = True


class ExtractedFieldRecord(BaseModel):
    field_name: str
    field_value: str
    field_type: Optional[str] = None
    confidence_score: Optional[float] = None
    verified: bool = False

    class Config:
        from_attributes = True
        frozen = True


def _check_currency(value: str) -> str:
    code = (value or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid currency code: {value!r}")
    return code


def _check_amount(value: Decimal) -> Decimal:
    if not value.is_finite():
        raise ValueError(f"Amount must be a finite number, got {value}")
    return value


class TransactionRecord(BaseModel):
    """Transaction as seen by the matching core"""
    id: str
    organization_id: str
    amount: Decimal  # Negative = debit
    currency: str = "USD"
    transaction_date: date
    posted_date: Optional[date] = None
    description: str = ""
    merchant_name: Optional[str] = None
    merchant_category: Optional[str] = None
    location: Optional[Location] = None
    user_id: str
    authorized_user_ids: List[str] = []
    account_id: str
    status: str = "posted"

    class Config:
        frozen = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return _check_currency(value)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Decimal) -> Decimal:
        return _check_amount(value)


class ReceiptRecord(BaseModel):
    """Receipt as seen by the matching core"""
    id: str
    organization_id: str
    total_amount: Decimal
    currency: str = "USD"
    receipt_date: date
    merchant_name: Optional[str] = None
    merchant_id: Optional[str] = None
    location: Optional[Location] = None
    uploaded_by: str
    status: str = "processed"
    extracted_fields: List[ExtractedFieldRecord] = []

    class Config:
        frozen = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, value: str) -> str:
        return _check_currency(value)

    @field_validator("total_amount")
    @classmethod
    def validate_total_amount(cls, value: Decimal) -> Decimal:
        return _check_amount(value)


class AmountMatch(BaseModel):
    matched: bool
    transaction_amount: float
    receipt_amount: float
    difference: float
    difference_percentage: float
    tolerance_applied: float
    score: float


class DateMatch(BaseModel):
    matched: bool
    transaction_date: date
    receipt_date: date
    days_difference: int
    score: float


class MerchantMatch(BaseModel):
    matched: bool
    transaction_merchant: str
    receipt_merchant: str
    similarity_score: float
    canonical_name: Optional[str] = None
    score: float


class LocationMatch(BaseModel):
    available: bool
    matched: bool
    distance_km: Optional[float] = None
    same_address: bool = False
    score: float


class UserMatch(BaseModel):
    matched: bool
    transaction_user: str
    receipt_user: str
    score: float


class CurrencyMatch(BaseModel):
    matched: bool
    transaction_currency: str
    receipt_currency: str
    score: float


class MatchCriteria(BaseModel):
    """Per-criterion sub-results of one evaluation"""
    amount_match: AmountMatch
    date_match: DateMatch
    merchant_match: MerchantMatch
    location_match: LocationMatch
    user_match: UserMatch
    currency_match: CurrencyMatch

    def sub_scores(self) -> dict:
        """Sub-score per criterion; location is None when it could not be evaluated"""
        return {
            "amount": self.amount_match.score,
            "date": self.date_match.score,
            "merchant": self.merchant_match.score,
            "location": self.location_match.score if self.location_match.available else None,
            "user": self.user_match.score,
            "currency": self.currency_match.score,
        }


class MatchCandidate(BaseModel):
    """Scored, not yet committed pairing"""
    transaction_id: str
    receipt_id: str
    confidence_score: float
    match_criteria: MatchCriteria
    reasoning: List[str] = []
    warnings: List[str] = []


class MerchantComparison(BaseModel):
    similarity: float
    canonical_name: Optional[str] = None
    confidence: float


def location_is_valid(location: Optional[Location]) -> bool:
    """Coordinates present, finite and within geographic bounds"""
    if location is None or location.latitude is None or location.longitude is None:
        return False
    lat, lon = location.latitude, location.longitude
    if math.isnan(lat) or math.isnan(lon) or math.isinf(lat) or math.isinf(lon):
        return False
    return abs(lat) <= 90 and abs(lon) <= 180
