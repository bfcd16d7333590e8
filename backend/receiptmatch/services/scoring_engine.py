"""
Scoring Engine - combines per-criterion sub-scores into one confidence value.

Each criterion yields a typed sub-result with a score in [0, 1]. The final confidence
is the weighted mean over the criteria that could be evaluated, so a missing location
never penalizes a pair. Reasoning and warning strings explain the result to reviewers.
"""
import logging
import math
import time
from decimal import Decimal
from typing import Optional, List, Tuple

from receiptmatch.config import settings
from receiptmatch.exceptions import ProcessingTimeoutError
from receiptmatch.schemas.config import MatchingConfig, CRITERIA
from receiptmatch.schemas.matching import (
    TransactionRecord,
    ReceiptRecord,
    AmountMatch,
    DateMatch,
    MerchantMatch,
    LocationMatch,
    UserMatch,
    CurrencyMatch,
    MatchCriteria,
    MatchCandidate,
    location_is_valid,
)
from receiptmatch.services.merchant_normalizer import MerchantNormalizer, merchant_normalizer
from receiptmatch.services.location_matcher import LocationMatcher, location_matcher

logger = logging.getLogger(__name__)


class ScoringEngine:
    """Scores one transaction/receipt pair against a MatchingConfig"""

    def __init__(
        self,
        normalizer: Optional[MerchantNormalizer] = None,
        locations: Optional[LocationMatcher] = None,
        currency_cap_margin: Optional[float] = None
    ):
        self.normalizer = normalizer or merchant_normalizer
        self.locations = locations or location_matcher
        self.currency_cap_margin = (
            settings.currency_cap_margin if currency_cap_margin is None else currency_cap_margin
        )

    def score(
        self,
        transaction: TransactionRecord,
        receipt: ReceiptRecord,
        config: MatchingConfig,
        deadline: Optional[float] = None
    ) -> MatchCandidate:
        """
        Evaluate one pair.

        Args:
            transaction: Anchor or counterpart transaction
            receipt: Anchor or counterpart receipt
            config: Organization config snapshot
            deadline: time.monotonic() value after which scoring is abandoned

        Raises:
            ProcessingTimeoutError: deadline passed between criteria
        """
        stages = (
            ("amount", lambda: self.score_amount(transaction.amount, receipt.total_amount, config)),
            ("date", lambda: self.score_date(transaction, receipt, config)),
            ("merchant", lambda: self.score_merchant(transaction, receipt, config)),
            ("location", lambda: self.score_location(transaction, receipt, config)),
            ("user", lambda: self.score_user(transaction, receipt)),
            ("currency", lambda: self.score_currency(transaction.currency, receipt.currency)),
        )
        results = {}
        for stage, evaluate in stages:
            results[stage] = evaluate()
            if deadline is not None and time.monotonic() > deadline:
                raise ProcessingTimeoutError(
                    f"Scoring transaction {transaction.id} against receipt {receipt.id} "
                    f"exceeded its time budget at {stage}"
                )

        criteria = MatchCriteria(
            amount_match=results["amount"],
            date_match=results["date"],
            merchant_match=results["merchant"],
            location_match=results["location"],
            user_match=results["user"],
            currency_match=results["currency"],
        )
        confidence = self.combine(criteria, config)
        reasoning, warnings = self.explain(criteria, config)

        if not criteria.currency_match.matched:
            warnings.append(
                f"Currency mismatch: {criteria.currency_match.transaction_currency} vs "
                f"{criteria.currency_match.receipt_currency}, auto-match suppressed"
            )

        return MatchCandidate(
            transaction_id=transaction.id,
            receipt_id=receipt.id,
            confidence_score=confidence,
            match_criteria=criteria,
            reasoning=reasoning,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Criteria
    # ------------------------------------------------------------------

    def amount_tolerance(self, receipt_amount: Decimal, config: MatchingConfig) -> Decimal:
        percentage = Decimal(str(config.amount_tolerance_percentage)) * abs(Decimal(receipt_amount))
        return max(Decimal(str(config.amount_tolerance_fixed)), percentage)

    def score_amount(self, transaction_amount: Decimal, receipt_amount: Decimal, config: MatchingConfig) -> AmountMatch:
        """Linear decay from 1.0 at an exact match to 0 at the tolerance edge"""
        txn_abs = abs(Decimal(transaction_amount))
        receipt_abs = abs(Decimal(receipt_amount))
        difference = abs(txn_abs - receipt_abs)
        tolerance = self.amount_tolerance(receipt_abs, config)

        if difference == 0:
            score = 1.0
        elif tolerance > 0 and difference <= tolerance:
            score = 1.0 - float(difference / tolerance)
        else:
            score = 0.0

        if receipt_abs > 0:
            difference_percentage = float(difference / receipt_abs * 100)
        else:
            difference_percentage = 0.0 if difference == 0 else 100.0

        return AmountMatch(
            matched=difference <= tolerance,
            transaction_amount=float(txn_abs),
            receipt_amount=float(receipt_abs),
            difference=float(difference),
            difference_percentage=difference_percentage,
            tolerance_applied=float(tolerance),
            score=max(0.0, min(score, 1.0)),
        )

    def score_date(self, transaction: TransactionRecord, receipt: ReceiptRecord, config: MatchingConfig) -> DateMatch:
        days = abs((transaction.transaction_date - receipt.receipt_date).days)
        window = config.date_window_days
        if days == 0:
            score = 1.0
        elif window > 0 and days <= window:
            score = 1.0 - days / window
        else:
            score = 0.0
        return DateMatch(
            matched=days <= window,
            transaction_date=transaction.transaction_date,
            receipt_date=receipt.receipt_date,
            days_difference=days,
            score=score,
        )

    def score_merchant(self, transaction: TransactionRecord, receipt: ReceiptRecord, config: MatchingConfig) -> MerchantMatch:
        transaction_name = transaction.merchant_name or transaction.description or ""
        receipt_name = receipt.merchant_name or ""
        comparison = self.normalizer.compare(transaction_name, receipt_name, transaction.organization_id)
        matched = comparison.similarity >= config.merchant_similarity_threshold
        return MerchantMatch(
            matched=matched,
            transaction_merchant=transaction_name,
            receipt_merchant=receipt_name,
            similarity_score=comparison.similarity,
            canonical_name=comparison.canonical_name,
            score=comparison.similarity if matched else 0.0,
        )

    def score_location(self, transaction: TransactionRecord, receipt: ReceiptRecord, config: MatchingConfig) -> LocationMatch:
        t_loc, r_loc = transaction.location, receipt.location
        has_coordinates = location_is_valid(t_loc) and location_is_valid(r_loc)
        has_addresses = bool(t_loc and r_loc and t_loc.address and r_loc.address)
        if not has_coordinates and not has_addresses:
            return LocationMatch(available=False, matched=False, score=0.0)

        same_address = has_addresses and self.locations.addresses_match(t_loc.address, r_loc.address)
        distance = self.locations.distance_km(t_loc, r_loc) if has_coordinates else None
        radius = config.location_radius_km

        if same_address or (distance is not None and distance <= radius):
            score = 1.0
        elif distance is not None and distance < 2 * radius:
            score = 1.0 - (distance - radius) / radius
        else:
            score = 0.0

        return LocationMatch(
            available=True,
            matched=same_address or (distance is not None and distance <= radius),
            distance_km=distance if distance is not None and not math.isinf(distance) else None,
            same_address=same_address,
            score=max(0.0, min(score, 1.0)),
        )

    def score_user(self, transaction: TransactionRecord, receipt: ReceiptRecord) -> UserMatch:
        allowed = {transaction.user_id, *transaction.authorized_user_ids}
        matched = receipt.uploaded_by in allowed
        return UserMatch(
            matched=matched,
            transaction_user=transaction.user_id,
            receipt_user=receipt.uploaded_by,
            score=1.0 if matched else 0.0,
        )

    def score_currency(self, transaction_currency: str, receipt_currency: str) -> CurrencyMatch:
        matched = transaction_currency.upper() == receipt_currency.upper()
        return CurrencyMatch(
            matched=matched,
            transaction_currency=transaction_currency.upper(),
            receipt_currency=receipt_currency.upper(),
            score=1.0 if matched else 0.0,
        )

    # ------------------------------------------------------------------
    # Combination
    # ------------------------------------------------------------------

    def combine(self, criteria: MatchCriteria, config: MatchingConfig) -> float:
        """Weighted mean over available criteria, clamped, with the currency cap applied"""
        weights = config.confidence_weights
        sub_scores = criteria.sub_scores()
        weighted = 0.0
        total_weight = 0.0
        for name in CRITERIA:
            score = sub_scores[name]
            if score is None:
                continue
            weight = getattr(weights, name)
            weighted += weight * score
            total_weight += weight

        confidence = weighted / total_weight if total_weight > 0 else 0.0
        confidence = max(0.0, min(confidence, 1.0))

        if not criteria.currency_match.matched:
            cap = max(config.auto_match_threshold - self.currency_cap_margin, 0.0)
            confidence = min(confidence, cap)
        return confidence

    def explain(self, criteria: MatchCriteria, config: MatchingConfig) -> Tuple[List[str], List[str]]:
        reasoning: List[str] = []
        warnings: List[str] = []

        amount = criteria.amount_match
        if amount.matched:
            if amount.difference == 0:
                reasoning.append("Exact amount match")
            else:
                reasoning.append(f"Amount close match ({amount.difference_percentage:.1f}% difference)")
        else:
            warnings.append(f"Amount mismatch: ${amount.transaction_amount:.2f} vs ${amount.receipt_amount:.2f}")

        days = criteria.date_match.days_difference
        if criteria.date_match.matched:
            if days == 0:
                reasoning.append("Same date")
            else:
                reasoning.append(f"{days} day{'s' if days > 1 else ''} apart")
        else:
            warnings.append(f"Date too far apart: {days} days")

        merchant = criteria.merchant_match
        if merchant.matched:
            reasoning.append(f"Merchant match ({merchant.similarity_score * 100:.0f}% similar)")
            if merchant.canonical_name:
                reasoning.append(f"Canonical name: {merchant.canonical_name}")
        else:
            warnings.append("Merchant names don't match well")

        location = criteria.location_match
        if location.available:
            if location.same_address:
                reasoning.append("Same address")
            elif location.matched and location.distance_km is not None:
                category = self.locations.distance_category(location.distance_km)
                reasoning.append(f"Within {location.distance_km:.1f}km ({category})")
            elif location.distance_km is not None:
                warnings.append(f"Too far apart: {location.distance_km:.1f}km")
            else:
                warnings.append("Addresses don't match")

        if criteria.user_match.matched:
            reasoning.append("Same user")
        else:
            warnings.append("Different users")

        return reasoning, warnings

    def auto_blocked_reason(self, candidate: MatchCandidate) -> Optional[str]:
        """Hard rules that keep a candidate at suggestion level regardless of confidence"""
        criteria = candidate.match_criteria
        if criteria.currency_match.score == 0:
            return "Currency mismatch"
        if criteria.location_match.available and criteria.location_match.score == 0:
            return "Conflicting location evidence"
        return None


# Singleton instance
scoring_engine = ScoringEngine()
