"""
Error taxonomy for the matching engine.

Validation and config errors surface synchronously to the caller.
Concurrency conflicts are resolved internally where possible.
Timeouts skip a single candidate, or fail a job that crossed its deadline.
"""
from typing import Optional


class MatchingError(Exception):
    """Base class for all matching engine errors"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MatchingError):
    """Malformed amount, date or currency on input"""
    status_code = 422

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(MatchingError):
    """Referenced transaction, receipt, match or job does not exist"""
    status_code = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class ConcurrencyConflictError(MatchingError):
    """Another writer changed the active match for a transaction first"""
    status_code = 409

    def __init__(self, transaction_id: str, message: Optional[str] = None):
        super().__init__(message or f"Concurrent activation conflict for transaction {transaction_id}")
        self.transaction_id = transaction_id


class ConfigInvalidError(MatchingError):
    """A matching config update failed validation; the prior version is kept"""
    status_code = 422

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field


class ProcessingTimeoutError(MatchingError):
    """Candidate scoring or a job exceeded its deadline"""
    status_code = 504


class JobCancelledError(MatchingError):
    """A running job observed a cancellation request between pairs"""
    status_code = 409
