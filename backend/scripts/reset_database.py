#!/usr/bin/env python3
"""
Reset the matching database.

Default mode clears only what the matching engine produced (matches, rejections,
feedback, learned merchant mappings, config versions, jobs) so a fresh bulk run
can be replayed over the same transactions and receipts. With --all every table
is dropped and recreated.

WARNING: deleted rows cannot be recovered!
"""

import sys
import os
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Load environment variables from .env file if it exists
from dotenv import load_dotenv
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env'))

from sqlalchemy import text, inspect
from receiptmatch.database import engine, Base, SessionLocal
from receiptmatch.models import (
    Match, MatchRejection, LearningFeedback, MerchantMapping,
    MatchingConfigVersion, MatchingJob
)
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Children before parents (feedback and superseded links point at matches)
MATCHING_STATE = [LearningFeedback, MatchRejection, Match, MerchantMapping, MatchingConfigVersion, MatchingJob]


def table_counts() -> dict:
    existing = set(inspect(engine).get_table_names())
    counts = {}
    with engine.connect() as conn:
        for table in Base.metadata.sorted_tables:
            if table.name in existing:
                counts[table.name] = conn.execute(text(f"SELECT COUNT(*) FROM {table.name}")).scalar()
    return counts


def clear_matching_state(organization_id: str = None):
    """Delete engine-produced rows, optionally for one organization only"""
    db = SessionLocal()
    try:
        if organization_id is None:
            # Break superseded_by self-references before the bulk delete
            db.query(Match).update({Match.superseded_by_id: None}, synchronize_session=False)
        else:
            db.query(Match).filter(Match.organization_id == organization_id).update(
                {Match.superseded_by_id: None}, synchronize_session=False
            )
        for model in MATCHING_STATE:
            query = db.query(model)
            if organization_id is not None:
                query = query.filter(model.organization_id == organization_id)
            removed = query.delete(synchronize_session=False)
            logger.info(f"  {model.__tablename__}: {removed} rows deleted")
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def recreate_schema():
    """Drop all tables, recreate them and forget the Alembic revision"""
    logger.info("Dropping all tables...")
    Base.metadata.drop_all(bind=engine)
    logger.info("Creating all tables...")
    Base.metadata.create_all(bind=engine)
    with engine.connect() as conn:
        conn.execute(text("DROP TABLE IF EXISTS alembic_version"))
        conn.commit()
    logger.info("Schema recreated. Run: alembic stamp head")


def reset_database(drop_all: bool = False, organization_id: str = None, assume_yes: bool = False):
    db_url = engine.url.render_as_string(hide_password=True)

    logger.warning("=" * 60)
    if drop_all:
        logger.warning("WARNING: This will DROP EVERY TABLE in the database!")
    elif organization_id:
        logger.warning(f"WARNING: This will delete all matching state of organization {organization_id}!")
    else:
        logger.warning("WARNING: This will delete all matching state (transactions and receipts are kept)!")
    logger.warning(f"Database URL: {db_url}")
    for name, count in table_counts().items():
        logger.warning(f"  {name}: {count} rows")
    logger.warning("=" * 60)

    if not assume_yes:
        response = input("Are you sure you want to continue? (yes/no): ")
        if response.lower() != "yes":
            logger.info("Aborted.")
            return

    try:
        if drop_all:
            recreate_schema()
        else:
            logger.info("Clearing matching state...")
            clear_matching_state(organization_id)
        logger.info("Reset complete!")
    except Exception as e:
        logger.error(f"Error resetting database: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Reset the receipt matching database")
    parser.add_argument("--all", dest="drop_all", action="store_true", help="Drop and recreate every table")
    parser.add_argument("--organization", help="Only clear matching state of this organization")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()
    reset_database(drop_all=args.drop_all, organization_id=args.organization, assume_yes=args.yes)
