"""
Conversions from collaborator-owned ORM rows to the immutable records the matching core scores.
"""
import logging
from typing import Callable, Iterable, List, Optional
from pydantic import ValidationError as PydanticValidationError

from receiptmatch.exceptions import ValidationError
from receiptmatch.models.transaction import Transaction
from receiptmatch.models.receipt import Receipt
from receiptmatch.schemas.matching import (
    TransactionRecord,
    ReceiptRecord,
    Location,
    ExtractedFieldRecord,
)

logger = logging.getLogger(__name__)


def _location(latitude, longitude, address) -> Optional[Location]:
    if latitude is None and longitude is None and not address:
        return None
    return Location(latitude=latitude, longitude=longitude, address=address)


def _first_error(exc: PydanticValidationError) -> tuple:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error.get("loc", ())) or None
    return field, error.get("msg", str(exc))


def transaction_record(row: Transaction) -> TransactionRecord:
    """
    Build a TransactionRecord from a stored transaction.

    Raises:
        ValidationError: amount, date or currency is malformed
    """
    try:
        return TransactionRecord(
            id=row.id,
            organization_id=row.organization_id,
            amount=row.amount,
            currency=row.currency,
            transaction_date=row.transaction_date,
            posted_date=row.posted_date,
            description=row.description or "",
            merchant_name=row.merchant_name,
            merchant_category=row.merchant_category,
            location=_location(row.latitude, row.longitude, row.address),
            user_id=row.user_id,
            authorized_user_ids=list(row.authorized_user_ids or []),
            account_id=row.account_id,
            status=row.status,
        )
    except PydanticValidationError as e:
        field, message = _first_error(e)
        raise ValidationError(f"Transaction {row.id}: {message}", field=field)


def receipt_record(row: Receipt) -> ReceiptRecord:
    """
    Build a ReceiptRecord from a stored receipt and its extracted fields.

    Raises:
        ValidationError: total, date or currency is malformed
    """
    try:
        return ReceiptRecord(
            id=row.id,
            organization_id=row.organization_id,
            total_amount=row.total_amount,
            currency=row.currency,
            receipt_date=row.receipt_date,
            merchant_name=row.merchant_name,
            merchant_id=row.merchant_id,
            location=_location(row.latitude, row.longitude, row.address),
            uploaded_by=row.uploaded_by,
            status=row.status,
            extracted_fields=[
                ExtractedFieldRecord.model_validate(field) for field in row.extracted_fields
            ],
        )
    except PydanticValidationError as e:
        field, message = _first_error(e)
        raise ValidationError(f"Receipt {row.id}: {message}", field=field)


def convert_rows(rows: Iterable, convert: Callable, warnings: Optional[List[str]] = None) -> list:
    """
    Convert stored rows one by one, skipping the malformed ones.

    A row that fails validation is logged and reported in ``warnings`` (once per row)
    and the remaining rows are still converted.
    """
    records = []
    for row in rows:
        try:
            records.append(convert(row))
        except ValidationError as e:
            message = f"Skipped malformed row: {e.message}"
            logger.warning(message)
            if warnings is not None and message not in warnings:
                warnings.append(message)
    return records
