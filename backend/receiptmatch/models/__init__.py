from receiptmatch.models.transaction import Transaction
from receiptmatch.models.receipt import Receipt, ExtractedField
from receiptmatch.models.match import Match
from receiptmatch.models.matching_config import MatchingConfigVersion
from receiptmatch.models.merchant_mapping import MerchantMapping
from receiptmatch.models.learning_feedback import LearningFeedback
from receiptmatch.models.match_rejection import MatchRejection
from receiptmatch.models.matching_job import MatchingJob

__all__ = ["Transaction", "Receipt", "ExtractedField", "Match", "MatchingConfigVersion", "MerchantMapping", "LearningFeedback", "MatchRejection", "MatchingJob"]
