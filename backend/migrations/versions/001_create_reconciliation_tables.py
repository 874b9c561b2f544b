"""Create reconciliation tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

Tables: org, bank_transaction, ledger_record, transaction_match,
matching_pattern, match_feedback_event
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.create_table(
        'org',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('slug', sa.Text(), nullable=False),
        sa.Column('settings_json', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug', name='uq_org_slug'),
    )

    op.create_table(
        'bank_transaction',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('currency', sa.Text(), server_default='SAR', nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('reference', sa.Text(), nullable=True),
        sa.Column('counterparty_name', sa.Text(), nullable=True),
        sa.Column('counterparty_account', sa.Text(), nullable=True),
        sa.Column('matched', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('matched_record_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('matched_record_type', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['org_id'], ['org.id'], ondelete='RESTRICT'),
    )
    op.create_index(
        'idx_bank_transaction_org_matched_date', 'bank_transaction', ['org_id', 'matched', 'date']
    )

    op.create_table(
        'ledger_record',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('record_type', sa.Text(), nullable=False),
        sa.Column('number', sa.Text(), nullable=True),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('currency', sa.Text(), server_default='SAR', nullable=False),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('counterparty_name', sa.Text(), nullable=True),
        sa.Column('counterparty_account', sa.Text(), nullable=True),
        sa.Column('reference', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['org_id'], ['org.id'], ondelete='RESTRICT'),
        sa.CheckConstraint(
            "record_type IN ('invoice', 'payment', 'bill', 'expense', 'expected_receipt')",
            name='ck_ledger_record_type'
        ),
    )
    op.create_index('idx_ledger_record_org_type_status', 'ledger_record', ['org_id', 'record_type', 'status'])
    op.create_index('idx_ledger_record_org_due_date', 'ledger_record', ['org_id', 'due_date'])

    op.create_table(
        'transaction_match',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bank_transaction_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('record_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('record_type', sa.Text(), nullable=False),
        sa.Column('score', sa.Integer(), server_default='0', nullable=False),
        sa.Column('confidence', sa.Text(), nullable=False),
        sa.Column('reasons', postgresql.JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('method', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('matched_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('matched_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('rejected_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('rejected_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('unmatched_by', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('unmatched_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['org_id'], ['org.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['bank_transaction_id'], ['bank_transaction.id'], ondelete='CASCADE'),
        # Upsert key: one match row per transaction
        sa.UniqueConstraint('bank_transaction_id', name='uq_transaction_match_bank_transaction'),
        sa.CheckConstraint('score >= 0 AND score <= 100', name='ck_transaction_match_score'),
        sa.CheckConstraint(
            "status IN ('suggested', 'confirmed', 'rejected', 'auto_confirmed', 'unmatched')",
            name='ck_transaction_match_status'
        ),
        sa.CheckConstraint("method IN ('ai_suggested', 'manual')", name='ck_transaction_match_method'),
    )
    op.create_index(
        'idx_transaction_match_org_status_score',
        'transaction_match',
        ['org_id', 'status', sa.text('score DESC')]
    )

    op.create_table(
        'matching_pattern',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('fingerprint', sa.Text(), nullable=False),
        sa.Column('counterparty_key', sa.Text(), nullable=False),
        sa.Column('record_type', sa.Text(), nullable=False),
        sa.Column('strength', sa.Float(), server_default='0', nullable=False),
        sa.Column('confirmations', sa.Integer(), server_default='0', nullable=False),
        sa.Column('rejections', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['org_id'], ['org.id'], ondelete='RESTRICT'),
        sa.CheckConstraint('strength >= 0', name='ck_matching_pattern_strength'),
    )
    op.create_index(
        'uq_matching_pattern_org_fingerprint', 'matching_pattern', ['org_id', 'fingerprint'], unique=True
    )
    op.create_index(
        'idx_matching_pattern_org_active_strength',
        'matching_pattern',
        ['org_id', 'is_active', sa.text('strength DESC')]
    )

    op.create_table(
        'match_feedback_event',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('org_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('bank_transaction_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('record_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('record_type', sa.Text(), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=False),
        sa.Column('fingerprint', sa.Text(), nullable=False),
        sa.Column('strength_delta', sa.Float(), server_default='0', nullable=False),
        sa.Column('meta_json', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['org_id'], ['org.id'], ondelete='RESTRICT'),
        sa.CheckConstraint(
            "event_type IN ('MATCH_CONFIRMED', 'MATCH_REJECTED')",
            name='ck_match_feedback_event_type'
        ),
    )
    op.create_index(
        'uq_match_feedback_event_pair',
        'match_feedback_event',
        ['org_id', 'bank_transaction_id', 'record_id', 'event_type'],
        unique=True
    )
    op.create_index(
        'idx_match_feedback_event_org_created',
        'match_feedback_event',
        ['org_id', sa.text('created_at DESC')]
    )


def downgrade():
    op.drop_index('idx_match_feedback_event_org_created', table_name='match_feedback_event')
    op.drop_index('uq_match_feedback_event_pair', table_name='match_feedback_event')
    op.drop_table('match_feedback_event')

    op.drop_index('idx_matching_pattern_org_active_strength', table_name='matching_pattern')
    op.drop_index('uq_matching_pattern_org_fingerprint', table_name='matching_pattern')
    op.drop_table('matching_pattern')

    op.drop_index('idx_transaction_match_org_status_score', table_name='transaction_match')
    op.drop_table('transaction_match')

    op.drop_index('idx_ledger_record_org_due_date', table_name='ledger_record')
    op.drop_index('idx_ledger_record_org_type_status', table_name='ledger_record')
    op.drop_table('ledger_record')

    op.drop_index('idx_bank_transaction_org_matched_date', table_name='bank_transaction')
    op.drop_table('bank_transaction')

    op.drop_table('org')
