from receiptmatch.schemas.matching import TransactionRecord, ReceiptRecord, Location, MatchCandidate, MatchCriteria
from receiptmatch.schemas.config import MatchingConfig, ConfidenceWeights, MatchingConfigUpdate
from receiptmatch.schemas.match import MatchResponse, AutoMatchResult, MatchingMetrics
from receiptmatch.schemas.job import JobCreate, JobResponse

__all__ = [
    "TransactionRecord",
    "ReceiptRecord",
    "Location",
    "MatchCandidate",
    "MatchCriteria",
    "MatchingConfig",
    "ConfidenceWeights",
    "MatchingConfigUpdate",
    "MatchResponse",
    "AutoMatchResult",
    "MatchingMetrics",
    "JobCreate",
    "JobResponse",
]
