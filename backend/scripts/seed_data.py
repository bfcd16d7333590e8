"""
Seed script to generate synthetic transactions and receipts for demo purposes
"""
import sys
import os
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Load environment variables from .env file if it exists
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env'))

from sqlalchemy.orm import Session
from receiptmatch.config import settings
from receiptmatch.database import SessionLocal, engine, Base
from receiptmatch.models import Transaction, Receipt, ExtractedField
from decimal import Decimal
from datetime import date, timedelta
from faker import Faker

fake = Faker()

# Bank feeds decorate merchant names; receipts carry the printed name
DESCRIPTOR_TEMPLATES = [
    "SQ *{name}",
    "TST* {name}",
    "{name} #{store}",
    "{name} {city} {state}",
    "PAYPAL *{name}",
]


def bank_descriptor(name: str) -> str:
    template = fake.random_element(elements=DESCRIPTOR_TEMPLATES)
    return template.format(
        name=name.upper(),
        store=fake.random_int(min=100, max=9999),
        city=fake.city().upper(),
        state=fake.state_abbr(),
    )


def make_transaction(organization_id: str, user_id: str, merchant: str, amount: Decimal, txn_date: date, currency: str = "USD") -> Transaction:
    lat, lng = fake.local_latlng(country_code="US", coords_only=True)
    return Transaction(
        id=f"txn_{fake.unique.bothify(text='##########')}",
        organization_id=organization_id,
        account_id=f"acct_{fake.bothify(text='####')}",
        user_id=user_id,
        amount=-amount,
        currency=currency,
        transaction_date=txn_date,
        posted_date=txn_date + timedelta(days=fake.random_int(min=0, max=2)),
        description=bank_descriptor(merchant),
        merchant_name=merchant,
        latitude=float(lat),
        longitude=float(lng),
        address=fake.street_address(),
    )


def make_receipt(organization_id: str, user_id: str, merchant: str, amount: Decimal, receipt_date: date, currency: str = "USD", near: Transaction = None) -> Receipt:
    receipt = Receipt(
        id=f"rcpt_{fake.unique.bothify(text='##########')}",
        organization_id=organization_id,
        uploaded_by=user_id,
        total_amount=amount,
        currency=currency,
        receipt_date=receipt_date,
        merchant_name=merchant,
        latitude=near.latitude + 0.001 if near is not None else None,
        longitude=near.longitude if near is not None else None,
        address=near.address if near is not None else fake.street_address(),
        metadata_json={"source": "seed"},
    )
    receipt.extracted_fields = [
        ExtractedField(field_name="total", field_value=str(amount), field_type="amount",
                       confidence_score=Decimal(str(round(fake.random.uniform(0.85, 0.99), 4)))),
        ExtractedField(field_name="merchant_name", field_value=merchant, field_type="text",
                       confidence_score=Decimal(str(round(fake.random.uniform(0.7, 0.99), 4)))),
    ]
    return receipt


def create_scenarios(db: Session, organization_id: str, users: list) -> dict:
    """Create transaction/receipt pairs covering the common matching outcomes"""
    counts = {"exact": 0, "near": 0, "currency_mismatch": 0, "unmatched_transactions": 0, "unmatched_receipts": 0}

    # Exact matches: same amount, same day, same user
    for _ in range(6):
        user = fake.random_element(elements=users)
        merchant = fake.company()
        amount = Decimal(str(round(fake.random.uniform(5.0, 250.0), 2)))
        txn_date = date.today() - timedelta(days=fake.random_int(min=1, max=30))
        txn = make_transaction(organization_id, user, merchant, amount, txn_date)
        db.add(txn)
        db.add(make_receipt(organization_id, user, merchant, amount, txn_date, near=txn))
        counts["exact"] += 1

    # Near matches: tip or rounding difference and a posting delay
    for _ in range(4):
        user = fake.random_element(elements=users)
        merchant = fake.company()
        amount = Decimal(str(round(fake.random.uniform(20.0, 120.0), 2)))
        txn_date = date.today() - timedelta(days=fake.random_int(min=3, max=30))
        txn = make_transaction(organization_id, user, merchant, amount + Decimal("0.75"), txn_date)
        db.add(txn)
        db.add(make_receipt(organization_id, user, merchant, amount, txn_date - timedelta(days=2)))
        counts["near"] += 1

    # Cross-currency purchases never auto-match
    for _ in range(2):
        user = fake.random_element(elements=users)
        merchant = fake.company()
        amount = Decimal(str(round(fake.random.uniform(10.0, 80.0), 2)))
        txn_date = date.today() - timedelta(days=fake.random_int(min=1, max=30))
        txn = make_transaction(organization_id, user, merchant, amount, txn_date, currency="USD")
        db.add(txn)
        db.add(make_receipt(organization_id, user, merchant, amount, txn_date, currency="EUR", near=txn))
        counts["currency_mismatch"] += 1

    # Orphans on both sides
    for _ in range(3):
        user = fake.random_element(elements=users)
        db.add(make_transaction(
            organization_id, user, fake.company(),
            Decimal(str(round(fake.random.uniform(300.0, 900.0), 2))),
            date.today() - timedelta(days=fake.random_int(min=1, max=30)),
        ))
        counts["unmatched_transactions"] += 1
    for _ in range(2):
        user = fake.random_element(elements=users)
        db.add(make_receipt(
            organization_id, user, fake.company(),
            Decimal(str(round(fake.random.uniform(1000.0, 2000.0), 2))),
            date.today() - timedelta(days=fake.random_int(min=1, max=30)),
        ))
        counts["unmatched_receipts"] += 1

    db.commit()
    return counts


def main():
    """Main seeding function"""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)

    organization_id = settings.seed_organization_id or f"org_{fake.bothify(text='??????').lower()}"
    users = [f"user_{fake.bothify(text='####')}" for _ in range(3)]

    db = SessionLocal()
    try:
        print(f"Seeding organization {organization_id}...")
        counts = create_scenarios(db, organization_id, users)

        print("\nSeeding complete!")
        print(f"Summary:")
        print(f"  - Organization: {organization_id}")
        print(f"  - Users: {', '.join(users)}")
        for scenario, count in counts.items():
            print(f"  - {scenario}: {count}")

    except Exception as e:
        print(f"Error during seeding: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
