"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create transactions table (written by the bank feed)
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('account_id', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('authorized_user_ids', postgresql.JSONB, nullable=True),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('transaction_date', sa.Date(), nullable=False),
        sa.Column('posted_date', sa.Date(), nullable=True),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('merchant_name', sa.String(255), nullable=True),
        sa.Column('merchant_category', sa.String(100), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='posted'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_transactions_organization_id'), 'transactions', ['organization_id'])
    op.create_index(op.f('ix_transactions_user_id'), 'transactions', ['user_id'])
    op.create_index(op.f('ix_transactions_transaction_date'), 'transactions', ['transaction_date'])
    op.create_index('idx_transactions_org_date', 'transactions', ['organization_id', 'transaction_date'])

    # Create receipts table (written by OCR)
    op.create_table(
        'receipts',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('uploaded_by', sa.String(64), nullable=False),
        sa.Column('total_amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('receipt_date', sa.Date(), nullable=False),
        sa.Column('merchant_id', sa.String(64), nullable=True),
        sa.Column('merchant_name', sa.String(255), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='processed'),
        sa.Column('metadata', postgresql.JSONB, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_receipts_organization_id'), 'receipts', ['organization_id'])
    op.create_index(op.f('ix_receipts_uploaded_by'), 'receipts', ['uploaded_by'])
    op.create_index(op.f('ix_receipts_receipt_date'), 'receipts', ['receipt_date'])
    op.create_index('idx_receipts_org_date', 'receipts', ['organization_id', 'receipt_date'])

    op.create_table(
        'extracted_fields',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('receipt_id', sa.String(64), nullable=False),
        sa.Column('field_name', sa.String(100), nullable=False),
        sa.Column('field_value', sa.Text(), nullable=False),
        sa.Column('field_type', sa.String(50), nullable=True),
        sa.Column('confidence_score', sa.Numeric(5, 4), nullable=True),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(['receipt_id'], ['receipts.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_extracted_fields_id'), 'extracted_fields', ['id'])
    op.create_index(op.f('ix_extracted_fields_receipt_id'), 'extracted_fields', ['receipt_id'])

    # Create matches table
    op.create_table(
        'matches',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('transaction_id', sa.String(64), nullable=False),
        sa.Column('receipt_id', sa.String(64), nullable=False),
        sa.Column('match_type', sa.String(20), nullable=False),
        sa.Column('confidence_score', sa.Numeric(5, 4), nullable=True),
        sa.Column('criteria', postgresql.JSONB, nullable=True),
        sa.Column('reasoning', postgresql.JSONB, nullable=True),
        sa.Column('warnings', postgresql.JSONB, nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('superseded_by_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('matched_by', sa.String(64), nullable=True),
        sa.Column('matched_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('reviewed_by', sa.String(64), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['superseded_by_id'], ['matches.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_matches_id'), 'matches', ['id'])
    op.create_index(op.f('ix_matches_organization_id'), 'matches', ['organization_id'])
    op.create_index(op.f('ix_matches_transaction_id'), 'matches', ['transaction_id'])
    op.create_index(op.f('ix_matches_receipt_id'), 'matches', ['receipt_id'])
    op.create_index(op.f('ix_matches_match_type'), 'matches', ['match_type'])
    op.create_index('idx_matches_pair', 'matches', ['transaction_id', 'receipt_id'])
    # At most one active match per transaction
    op.create_index(
        'uq_matches_active_transaction',
        'matches',
        ['transaction_id'],
        unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1'),
    )

    op.create_table(
        'match_rejections',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('transaction_id', sa.String(64), nullable=False),
        sa.Column('receipt_id', sa.String(64), nullable=False),
        sa.Column('original_confidence', sa.Numeric(5, 4), nullable=True),
        sa.Column('rejected_by', sa.String(64), nullable=False),
        sa.Column('rejected_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('correct_transaction_id', sa.String(64), nullable=True),
        sa.Column('correct_receipt_id', sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_match_rejections_id'), 'match_rejections', ['id'])
    op.create_index(op.f('ix_match_rejections_organization_id'), 'match_rejections', ['organization_id'])
    op.create_index(op.f('ix_match_rejections_transaction_id'), 'match_rejections', ['transaction_id'])
    op.create_index(op.f('ix_match_rejections_receipt_id'), 'match_rejections', ['receipt_id'])
    op.create_index('idx_match_rejections_pair', 'match_rejections', ['transaction_id', 'receipt_id'])

    # Create learning tables
    op.create_table(
        'learning_feedback',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('match_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('was_correct', sa.Boolean(), nullable=False),
        sa.Column('correct_transaction_id', sa.String(64), nullable=True),
        sa.Column('correct_receipt_id', sa.String(64), nullable=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('feedback_date', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(['match_id'], ['matches.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_learning_feedback_id'), 'learning_feedback', ['id'])
    op.create_index(op.f('ix_learning_feedback_organization_id'), 'learning_feedback', ['organization_id'])
    op.create_index(op.f('ix_learning_feedback_match_id'), 'learning_feedback', ['match_id'])
    op.create_index(op.f('ix_learning_feedback_was_correct'), 'learning_feedback', ['was_correct'])
    op.create_index(op.f('ix_learning_feedback_user_id'), 'learning_feedback', ['user_id'])
    op.create_index(op.f('ix_learning_feedback_feedback_date'), 'learning_feedback', ['feedback_date'])

    op.create_table(
        'merchant_mappings',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('raw_names', postgresql.JSONB, nullable=False),
        sa.Column('canonical_name', sa.String(255), nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('confidence', sa.Numeric(5, 4), nullable=False, server_default='0.8'),
        sa.Column('created_from', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_used', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'canonical_name', name='uq_merchant_mappings_org_canonical')
    )
    op.create_index(op.f('ix_merchant_mappings_id'), 'merchant_mappings', ['id'])
    op.create_index(op.f('ix_merchant_mappings_organization_id'), 'merchant_mappings', ['organization_id'])

    op.create_table(
        'matching_configs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('is_current', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('amount_tolerance_percentage', sa.Float(), nullable=False),
        sa.Column('amount_tolerance_fixed', sa.Float(), nullable=False),
        sa.Column('date_window_days', sa.Integer(), nullable=False),
        sa.Column('merchant_similarity_threshold', sa.Float(), nullable=False),
        sa.Column('location_radius_km', sa.Float(), nullable=False),
        sa.Column('auto_match_threshold', sa.Float(), nullable=False),
        sa.Column('suggest_threshold', sa.Float(), nullable=False),
        sa.Column('confidence_weights', postgresql.JSONB, nullable=False),
        sa.Column('max_candidates', sa.Integer(), nullable=False),
        sa.Column('enable_learning', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('updated_by', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_matching_configs_id'), 'matching_configs', ['id'])
    op.create_index(op.f('ix_matching_configs_organization_id'), 'matching_configs', ['organization_id'])
    op.create_index('uq_matching_configs_org_version', 'matching_configs', ['organization_id', 'version'], unique=True)

    # Create matching_jobs table
    op.create_table(
        'matching_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('scope', postgresql.JSONB, nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('deadline', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('progress_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_operation', sa.String(200), nullable=True),
        sa.Column('result', postgresql.JSONB, nullable=True),
        sa.Column('warnings', postgresql.JSONB, nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_matching_jobs_id'), 'matching_jobs', ['id'])
    op.create_index(op.f('ix_matching_jobs_organization_id'), 'matching_jobs', ['organization_id'])
    op.create_index(op.f('ix_matching_jobs_status'), 'matching_jobs', ['status'])


def downgrade() -> None:
    op.drop_table('matching_jobs')
    op.drop_table('matching_configs')
    op.drop_table('merchant_mappings')
    op.drop_table('learning_feedback')
    op.drop_table('match_rejections')
    op.drop_index('uq_matches_active_transaction', table_name='matches')
    op.drop_table('matches')
    op.drop_table('extracted_fields')
    op.drop_table('receipts')
    op.drop_table('transactions')
