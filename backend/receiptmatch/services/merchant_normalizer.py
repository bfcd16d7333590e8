"""
Merchant Normalizer Service

Canonicalizes raw merchant strings coming from bank feeds and OCR, and compares them.
Handles the usual noise:
- Payment processor prefixes (SQ *, TST*, PAYPAL *, POS ...)
- Corporate suffixes (Inc, LLC, Corp ...)
- Store numbers and recurring-billing markers
- Organization-specific aliases learned from user feedback
"""

import logging
import re
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, NamedTuple, FrozenSet
from sqlalchemy.orm import Session

from receiptmatch.models.merchant_mapping import MerchantMapping
from receiptmatch.schemas.matching import MerchantComparison

logger = logging.getLogger(__name__)


PROCESSOR_PREFIXES = {
    "sq", "tst", "ssp", "sp", "paypal", "pp", "venmo", "zelle", "stripe", "pos",
    "checkcard", "purchase", "debit", "credit", "visa", "mc", "mastercard", "amex",
    "ach", "dd", "card",
}
CORPORATE_SUFFIXES = {
    "inc", "incorporated", "llc", "ltd", "limited", "corp", "corporation",
    "company", "co", "plc", "gmbh", "lp", "llp",
}
BILLING_NOISE = {"recurring", "autopay", "payment", "pmt"}
LOCATION_MARKERS = {"store", "shop", "location", "loc", "branch", "unit"}
STOP_WORDS = {
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "store", "shop", "market", "restaurant", "cafe", "bar", "pub", "hotel", "motel",
    "branch",
}

# Weights of the five similarity metrics
METRIC_WEIGHTS = {
    "levenshtein": 0.30,
    "jaccard": 0.25,
    "substring": 0.20,
    "word_order": 0.15,
    "phonetic": 0.10,
}
CANONICAL_LOOKUP_THRESHOLD = 0.7

_PUNCTUATION = re.compile(r"[^\w\s]|_")
_PHONETIC_GROUPS = (
    ("aeiou", "0"),
    ("bp", "1"),
    ("fv", "2"),
    ("cgjkqsxz", "3"),
    ("dt", "4"),
    ("l", "5"),
    ("mn", "6"),
    ("r", "7"),
    ("hw", "8"),
    ("y", "9"),
)
_PHONETIC_TABLE = str.maketrans({ch: code for letters, code in _PHONETIC_GROUPS for ch in letters})


class MappingEntry(NamedTuple):
    """Read-only view of one MerchantMapping row"""
    canonical_name: str
    keys: FrozenSet[str]  # Normalized raw names, canonical name included
    confidence: float
    category: Optional[str]


def _filter_tokens(tokens: List[str]) -> List[str]:
    tokens = list(tokens)
    # Processor prefixes only count when a real name follows them
    while len(tokens) > 1 and tokens[0] in PROCESSOR_PREFIXES:
        tokens.pop(0)

    kept = []
    skip_next = False
    for index, token in enumerate(tokens):
        if skip_next:
            skip_next = False
            continue
        following = tokens[index + 1] if index + 1 < len(tokens) else None
        if token in LOCATION_MARKERS and following is not None and following.isdigit():
            skip_next = True
            continue
        if token in CORPORATE_SUFFIXES or token in BILLING_NOISE or token in STOP_WORDS:
            continue
        if token.isdigit() and len(token) >= 3:
            continue
        kept.append(token)
    return kept


def normalize(raw: Optional[str]) -> str:
    """
    Canonical comparison form of a merchant string.

    Idempotent: normalize(normalize(x)) == normalize(x).
    """
    if not raw:
        return ""
    text = _PUNCTUATION.sub(" ", raw.lower())
    tokens = text.split()
    while True:
        filtered = _filter_tokens(tokens)
        if filtered == tokens:
            break
        tokens = filtered
    return " ".join(tokens)


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def levenshtein_similarity(s1: str, s2: str) -> float:
    longest = max(len(s1), len(s2))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(s1, s2) / longest


def _bigrams(text: str) -> set:
    return {text[i:i + 2] for i in range(len(text) - 1)}


def jaccard_similarity(s1: str, s2: str) -> float:
    """Character-bigram Jaccard index"""
    grams1, grams2 = _bigrams(s1), _bigrams(s2)
    union = grams1 | grams2
    if not union:
        return 1.0 if s1 == s2 else 0.0
    return len(grams1 & grams2) / len(union)


def substring_similarity(s1: str, s2: str) -> float:
    """Share of words contained in (or containing) a word of the other name"""
    words1, words2 = s1.split(), s2.split()
    total = max(len(words1), len(words2))
    if total == 0:
        return 0.0
    matches = sum(1 for w1 in words1 if any(w1 in w2 or w2 in w1 for w2 in words2))
    return min(matches / total, 1.0)


def word_order_similarity(s1: str, s2: str) -> float:
    words1, words2 = s1.split(), s2.split()
    if not words1 and not words2:
        return 1.0
    if not words1 or not words2:
        return 0.0
    common = [word for word in words1 if word in words2]
    if not common:
        return 0.0
    position = sum(
        1 - abs(words1.index(word) / len(words1) - words2.index(word) / len(words2))
        for word in common
    ) / len(common)
    coverage = min(len(common) / max(len(words1), len(words2)), 1.0)
    return position * coverage


def phonetic_code(text: str) -> str:
    """Coarse sound-alike code: consonant classes, vowel runs collapsed, first six symbols"""
    code = text.translate(_PHONETIC_TABLE)
    code = re.sub(r"0+", "0", code)
    return code[:6]


def phonetic_similarity(s1: str, s2: str) -> float:
    return 1.0 if phonetic_code(s1) == phonetic_code(s2) else 0.0


def _variance(values: List[float]) -> float:
    if not values:
        return 1.0
    mean = sum(values) / len(values)
    return sum((value - mean) ** 2 for value in values) / len(values)


class MerchantNormalizer:
    """
    Merchant comparison with organization-scoped canonical-name mappings.

    Mappings are kept as one immutable tuple per organization; writers build a new
    tuple and swap it in under a lock, readers just take the current reference.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, Tuple[MappingEntry, ...]] = {}

    # ------------------------------------------------------------------
    # Snapshot registry
    # ------------------------------------------------------------------

    def snapshot(self, organization_id: Optional[str]) -> Tuple[MappingEntry, ...]:
        if not organization_id:
            return ()
        return self._snapshots.get(organization_id, ())

    def is_loaded(self, organization_id: str) -> bool:
        return organization_id in self._snapshots

    def ensure_loaded(self, db: Session, organization_id: str) -> Tuple[MappingEntry, ...]:
        """Load an organization's mappings on first use"""
        current = self._snapshots.get(organization_id)
        if current is not None:
            return current
        return self.reload(db, organization_id)

    def reload(self, db: Session, organization_id: str) -> Tuple[MappingEntry, ...]:
        rows = db.query(MerchantMapping).filter(
            MerchantMapping.organization_id == organization_id,
            MerchantMapping.active.is_(True)
        ).order_by(MerchantMapping.canonical_name).all()

        entries = tuple(self._entry(row) for row in rows)
        with self._lock:
            self._snapshots[organization_id] = entries
        logger.debug(f"Loaded {len(entries)} merchant mappings for organization {organization_id}")
        return entries

    def reset(self, organization_id: Optional[str] = None):
        with self._lock:
            if organization_id is None:
                self._snapshots = {}
            else:
                self._snapshots.pop(organization_id, None)

    @staticmethod
    def _entry(row: MerchantMapping) -> MappingEntry:
        keys = {normalize(name) for name in (row.raw_names or [])}
        keys.add(normalize(row.canonical_name))
        keys.discard("")
        return MappingEntry(
            canonical_name=row.canonical_name,
            keys=frozenset(keys),
            confidence=float(row.confidence) if row.confidence is not None else 0.8,
            category=row.category,
        )

    def resolve(self, normalized_name: str, organization_id: Optional[str]) -> Optional[MappingEntry]:
        """Mapping whose raw names include this normalized name, if any"""
        if not normalized_name:
            return None
        for entry in self.snapshot(organization_id):
            if normalized_name in entry.keys:
                return entry
        return None

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def compare(self, name1: Optional[str], name2: Optional[str], organization_id: Optional[str] = None) -> MerchantComparison:
        """
        Compare two raw merchant names.

        Returns:
            MerchantComparison with similarity in [0, 1], canonical name when one is known,
            and a confidence for the similarity itself
        """
        normalized1 = normalize(name1)
        normalized2 = normalize(name2)
        if not normalized1 or not normalized2:
            return MerchantComparison(similarity=0.0, confidence=0.0)

        entry1 = self.resolve(normalized1, organization_id)
        entry2 = self.resolve(normalized2, organization_id)

        if normalized1 == normalized2:
            return MerchantComparison(
                similarity=1.0,
                canonical_name=entry1.canonical_name if entry1 else None,
                confidence=1.0,
            )

        if entry1 is not None and entry2 is not None and entry1.canonical_name == entry2.canonical_name:
            return MerchantComparison(
                similarity=1.0,
                canonical_name=entry1.canonical_name,
                confidence=entry1.confidence,
            )

        metrics = {
            "levenshtein": levenshtein_similarity(normalized1, normalized2),
            "jaccard": jaccard_similarity(normalized1, normalized2),
            "substring": substring_similarity(normalized1, normalized2),
            "word_order": word_order_similarity(normalized1, normalized2),
            "phonetic": phonetic_similarity(normalized1, normalized2),
        }
        similarity = min(sum(METRIC_WEIGHTS[name] * value for name, value in metrics.items()), 1.0)

        canonical_name = None
        if similarity > CANONICAL_LOOKUP_THRESHOLD:
            entry = entry1 or entry2
            canonical_name = entry.canonical_name if entry else None

        length_factor = min(len(normalized1), len(normalized2)) / max(len(normalized1), len(normalized2))
        consistency_factor = 1 - min(_variance(list(metrics.values())), 1.0)

        return MerchantComparison(
            similarity=similarity,
            canonical_name=canonical_name,
            confidence=(length_factor + consistency_factor) / 2,
        )

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def learn(
        self,
        db: Session,
        organization_id: str,
        raw_name1: str,
        raw_name2: str,
        should_match: bool,
        canonical_name: Optional[str] = None,
        created_from: str = "learning"
    ) -> Optional[MerchantMapping]:
        """
        Fold a merchant pair into the organization's mappings.

        Negative feedback is only logged; mappings are never removed or down-weighted.

        Returns:
            The created or updated MerchantMapping, or None when nothing was learned
        """
        if not should_match:
            logger.info(f"Negative merchant feedback for '{raw_name1}' / '{raw_name2}' (org {organization_id}); mappings unchanged")
            return None

        normalized1, normalized2 = normalize(raw_name1), normalize(raw_name2)
        if not normalized1 or not normalized2:
            logger.info(f"Skipping merchant learning, empty name after normalization: '{raw_name1}' / '{raw_name2}'")
            return None

        self.ensure_loaded(db, organization_id)
        if canonical_name is None:
            existing = self.resolve(normalized1, organization_id) or self.resolve(normalized2, organization_id)
            canonical_name = existing.canonical_name if existing else raw_name2.strip()

        mapping = db.query(MerchantMapping).filter(
            MerchantMapping.organization_id == organization_id,
            MerchantMapping.canonical_name == canonical_name
        ).first()

        if mapping is None:
            mapping = MerchantMapping(
                organization_id=organization_id,
                canonical_name=canonical_name,
                raw_names=[],
                confidence=0.8,
                created_from=created_from,
                usage_count=0,
            )
            db.add(mapping)
            logger.info(f"Created merchant mapping '{canonical_name}' for organization {organization_id}")

        raw_names = list(mapping.raw_names or [])
        known = {normalize(name) for name in raw_names}
        for raw in (raw_name1, raw_name2):
            if normalize(raw) not in known:
                raw_names.append(raw)
                known.add(normalize(raw))
        # Reassign so the JSON column is flagged dirty
        mapping.raw_names = raw_names
        mapping.usage_count = (mapping.usage_count or 0) + 1
        mapping.last_used = datetime.now(timezone.utc)
        mapping.active = True

        db.commit()
        db.refresh(mapping)
        self.reload(db, organization_id)

        logger.info(f"Merchant mapping '{canonical_name}' now has {len(raw_names)} raw names (used {mapping.usage_count}x)")
        return mapping

    def list_mappings(self, db: Session, organization_id: str) -> List[MerchantMapping]:
        return db.query(MerchantMapping).filter(
            MerchantMapping.organization_id == organization_id
        ).order_by(MerchantMapping.usage_count.desc(), MerchantMapping.canonical_name).all()


# Singleton instance
merchant_normalizer = MerchantNormalizer()
