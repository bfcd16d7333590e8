"""
Receipt Matching Test Configuration and Fixtures
================================================

Provides a throwaway SQLite database per test, record factories and resets of the
process-wide caches (merchant mappings, config snapshots).
"""

import os

# Must be set before receiptmatch.database builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import date
from decimal import Decimal
from typing import Optional, List
from sqlalchemy.orm import sessionmaker

from receiptmatch.database import Base, build_engine
import receiptmatch.models  # noqa: F401
from receiptmatch.models import Transaction, Receipt
from receiptmatch.schemas.config import MatchingConfig
from receiptmatch.schemas.matching import TransactionRecord, ReceiptRecord, Location
from receiptmatch.services.candidate_generator import CandidateGenerator
from receiptmatch.services.config_store import ConfigStore, config_store
from receiptmatch.services.job_processor import JobProcessor
from receiptmatch.services.learning_store import LearningStore
from receiptmatch.services.match_orchestrator import MatchOrchestrator
from receiptmatch.services.merchant_normalizer import MerchantNormalizer, merchant_normalizer
from receiptmatch.services.scoring_engine import ScoringEngine
from receiptmatch.utils.locks import KeyedLock


ORG_ID = "org_test"
USER_ID = "user_alice"


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads and concurrent sessions share one database."""
    engine = build_engine(f"sqlite:///{tmp_path / 'matching.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def reset_caches():
    merchant_normalizer.reset()
    config_store.reset()
    yield
    merchant_normalizer.reset()
    config_store.reset()


@pytest.fixture
def org_id() -> str:
    return ORG_ID


@pytest.fixture
def config() -> MatchingConfig:
    return MatchingConfig(organization_id=ORG_ID, version=1)


# =============================================================================
# SERVICE STACK (fresh instances, no shared caches)
# =============================================================================

@pytest.fixture
def normalizer() -> MerchantNormalizer:
    return MerchantNormalizer()


@pytest.fixture
def configs() -> ConfigStore:
    return ConfigStore()


@pytest.fixture
def generator(normalizer) -> CandidateGenerator:
    return CandidateGenerator(engine=ScoringEngine(normalizer=normalizer))


@pytest.fixture
def orchestrator(generator, configs) -> MatchOrchestrator:
    return MatchOrchestrator(generator=generator, configs=configs, locks=KeyedLock())


@pytest.fixture
def learning(orchestrator, configs, normalizer) -> LearningStore:
    return LearningStore(orchestrator=orchestrator, configs=configs, normalizer=normalizer)


@pytest.fixture
def processor(session_factory, orchestrator, configs) -> JobProcessor:
    return JobProcessor(
        session_factory=session_factory,
        orchestrator=orchestrator,
        configs=configs,
        worker_count=2,
        backoff_base_seconds=0,
        batch_size=2,
    )


# =============================================================================
# RECORD FACTORIES (no database)
# =============================================================================

def make_txn(
    id: str = "txn_1",
    amount: str = "-42.50",
    txn_date: date = date(2024, 1, 15),
    merchant: Optional[str] = "STARBUCKS #4521",
    currency: str = "USD",
    user_id: str = USER_ID,
    location: Optional[Location] = None,
    authorized_user_ids: Optional[List[str]] = None,
    organization_id: str = ORG_ID,
    description: str = "",
) -> TransactionRecord:
    return TransactionRecord(
        id=id,
        organization_id=organization_id,
        amount=Decimal(amount),
        currency=currency,
        transaction_date=txn_date,
        description=description,
        merchant_name=merchant,
        location=location,
        user_id=user_id,
        authorized_user_ids=authorized_user_ids or [],
        account_id="acct_1",
    )


def make_receipt(
    id: str = "rcpt_1",
    total: str = "42.50",
    receipt_date: date = date(2024, 1, 15),
    merchant: Optional[str] = "Starbucks",
    currency: str = "USD",
    uploaded_by: str = USER_ID,
    location: Optional[Location] = None,
    organization_id: str = ORG_ID,
) -> ReceiptRecord:
    return ReceiptRecord(
        id=id,
        organization_id=organization_id,
        total_amount=Decimal(total),
        currency=currency,
        receipt_date=receipt_date,
        merchant_name=merchant,
        location=location,
        uploaded_by=uploaded_by,
    )


# =============================================================================
# STORED ROW FACTORIES
# =============================================================================

def add_transaction(
    db,
    id: str,
    amount: str,
    txn_date: date,
    merchant: Optional[str] = "Blue Bottle Coffee",
    currency: str = "USD",
    user_id: str = USER_ID,
    organization_id: str = ORG_ID,
) -> Transaction:
    row = Transaction(
        id=id,
        organization_id=organization_id,
        account_id="acct_1",
        user_id=user_id,
        amount=Decimal(amount),
        currency=currency,
        transaction_date=txn_date,
        description=(merchant or "").upper(),
        merchant_name=merchant,
    )
    db.add(row)
    db.commit()
    return row


def add_receipt(
    db,
    id: str,
    total: str,
    receipt_date: date,
    merchant: Optional[str] = "Blue Bottle Coffee",
    currency: str = "USD",
    uploaded_by: str = USER_ID,
    organization_id: str = ORG_ID,
) -> Receipt:
    row = Receipt(
        id=id,
        organization_id=organization_id,
        uploaded_by=uploaded_by,
        total_amount=Decimal(total),
        currency=currency,
        receipt_date=receipt_date,
        merchant_name=merchant,
    )
    db.add(row)
    db.commit()
    return row
