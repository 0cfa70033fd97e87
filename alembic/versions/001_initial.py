"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates the documents, transactions, embeddings, match_suggestions,
audit_logs and tenant_match_calibration tables.
For databases created with ``inbox-matcher init-db``, use
`alembic stamp 001_initial` to mark this revision as applied.
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


DOCUMENT_STATUSES = (
    'new', 'processing', 'analyzing', 'pending', 'suggested_match',
    'no_match', 'done', 'archived', 'deleted',
)
SUGGESTION_STATUSES = ('pending', 'confirmed', 'declined', 'expired', 'unmatched')
MATCH_TYPES = ('auto_matched', 'high_confidence', 'suggested')
OWNER_TYPES = ('document', 'transaction')
AUDIT_ACTIONS = (
    'CONFIRM', 'DECLINE', 'AUTO_MATCH', 'ARCHIVE', 'DELETE', 'EXPIRE', 'RESCORE', 'CALIBRATE',
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    for name, values in (
        ('document_status', DOCUMENT_STATUSES),
        ('suggestion_status', SUGGESTION_STATUSES),
        ('match_type', MATCH_TYPES),
        ('embedding_owner_type', OWNER_TYPES),
        ('audit_action', AUDIT_ACTIONS),
    ):
        postgresql.ENUM(*values, name=name, create_type=True).create(op.get_bind(), checkfirst=True)

    # Ledger transactions
    op.create_table(
        'transactions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2)),
        sa.Column('currency', sa.String(3)),
        sa.Column('date', sa.Date),
        sa.Column('counterparty_name', sa.String(500)),
        sa.Column('description', sa.Text),
        *_timestamps()
    )
    op.create_index('ix_transactions_tenant_id', 'transactions', ['tenant_id'])
    op.create_index('ix_transaction_tenant_date', 'transactions', ['tenant_id', 'date'])
    op.create_index('ix_transaction_tenant_currency_date', 'transactions', ['tenant_id', 'currency', 'date'])

    # Inbox documents
    op.create_table(
        'documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('display_name', sa.String(500)),
        sa.Column('amount', sa.Numeric(14, 2)),
        sa.Column('currency', sa.String(3)),
        sa.Column('date', sa.Date),
        sa.Column('description', sa.Text),
        sa.Column('counterparty_name', sa.String(500)),
        sa.Column('website', sa.String(500)),
        sa.Column('status', postgresql.ENUM(*DOCUMENT_STATUSES, name='document_status', create_type=False),
                  nullable=False, server_default='new'),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('transactions.id', ondelete='SET NULL')),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps()
    )
    op.create_index('ix_documents_tenant_id', 'documents', ['tenant_id'])
    op.create_index('ix_documents_status', 'documents', ['status'])
    op.create_index('ix_documents_transaction_id', 'documents', ['transaction_id'])
    op.create_index('ix_document_tenant_status', 'documents', ['tenant_id', 'status'])
    op.create_index('ix_document_tenant_date', 'documents', ['tenant_id', 'date'])

    # One vector per document or transaction
    op.create_table(
        'embeddings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('owner_type', postgresql.ENUM(*OWNER_TYPES, name='embedding_owner_type', create_type=False),
                  nullable=False),
        sa.Column('owner_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('vector', sa.JSON, nullable=False),
        sa.Column('dimensions', sa.Integer, nullable=False),
        sa.Column('source_text', sa.Text),
        sa.Column('model', sa.String(100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('owner_type', 'owner_id', name='uq_embedding_owner')
    )
    op.create_index('ix_embeddings_tenant_id', 'embeddings', ['tenant_id'])
    op.create_index('ix_embedding_tenant_owner_type', 'embeddings', ['tenant_id', 'owner_type'])

    # Scored document/transaction pairs
    op.create_table(
        'match_suggestions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('document_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('transactions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('embedding_score', sa.Float),
        sa.Column('amount_score', sa.Float),
        sa.Column('currency_score', sa.Float),
        sa.Column('date_score', sa.Float),
        sa.Column('name_score', sa.Float),
        sa.Column('confidence', sa.Float, nullable=False),
        sa.Column('match_type', postgresql.ENUM(*MATCH_TYPES, name='match_type', create_type=False),
                  nullable=False),
        sa.Column('rank', sa.Integer, nullable=False, server_default='1'),
        sa.Column('status', postgresql.ENUM(*SUGGESTION_STATUSES, name='suggestion_status', create_type=False),
                  nullable=False, server_default='pending'),
        sa.Column('match_details', sa.JSON),
        sa.Column('decided_by', sa.String(100)),
        sa.Column('decided_at', sa.DateTime(timezone=True)),
        sa.Column('last_scored_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        *_timestamps(),
        sa.UniqueConstraint('document_id', 'transaction_id', name='uq_suggestion_document_transaction'),
        sa.CheckConstraint('confidence >= 0 AND confidence <= 1', name='ck_suggestion_confidence_range'),
        *[
            sa.CheckConstraint(
                f'{column} IS NULL OR ({column} >= 0 AND {column} <= 1)',
                name=f'ck_suggestion_{column.replace("_score", "")}_range'
            )
            for column in ('embedding_score', 'amount_score', 'currency_score', 'date_score', 'name_score')
        ]
    )
    op.create_index('ix_match_suggestions_tenant_id', 'match_suggestions', ['tenant_id'])
    op.create_index('ix_match_suggestions_document_id', 'match_suggestions', ['document_id'])
    op.create_index('ix_match_suggestions_transaction_id', 'match_suggestions', ['transaction_id'])
    op.create_index('ix_match_suggestions_status', 'match_suggestions', ['status'])
    op.create_index('ix_suggestion_document_status', 'match_suggestions', ['document_id', 'status'])
    op.create_index('ix_suggestion_tenant_status', 'match_suggestions', ['tenant_id', 'status'])

    # Immutable audit trail
    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('action', postgresql.ENUM(*AUDIT_ACTIONS, name='audit_action', create_type=False),
                  nullable=False),
        sa.Column('tenant_id', sa.String(64)),
        sa.Column('resource_type', sa.String(100), nullable=False),
        sa.Column('resource_id', sa.String(100)),
        sa.Column('actor_id', sa.String(100)),
        sa.Column('details', sa.JSON),
        sa.Column('success', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('error_message', sa.Text)
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_timestamp_action', 'audit_logs', ['timestamp', 'action'])
    op.create_index('ix_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])
    op.create_index('ix_audit_actor', 'audit_logs', ['actor_id', 'timestamp'])

    # Per-tenant calibrated thresholds
    op.create_table(
        'tenant_match_calibration',
        sa.Column('tenant_id', sa.String(64), primary_key=True),
        sa.Column('suggest_threshold', sa.Float, nullable=False),
        sa.Column('high_threshold', sa.Float, nullable=False),
        sa.Column('auto_threshold', sa.Float, nullable=False),
        sa.Column('total_feedback', sa.Integer, nullable=False, server_default='0'),
        sa.Column('confirmed_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('declined_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('unmatched_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('accuracy', sa.Float, nullable=False, server_default='0'),
        sa.Column('avg_confidence_confirmed', sa.Float),
        sa.Column('avg_confidence_negative', sa.Float),
        sa.Column('last_calibrated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        *_timestamps(),
        sa.CheckConstraint(
            'suggest_threshold <= high_threshold AND high_threshold <= auto_threshold',
            name='ck_calibration_threshold_order'
        )
    )


def downgrade() -> None:
    """Drop all tables and types."""
    op.drop_table('tenant_match_calibration')
    op.drop_table('audit_logs')
    op.drop_table('match_suggestions')
    op.drop_table('embeddings')
    op.drop_table('documents')
    op.drop_table('transactions')

    op.execute('DROP TYPE IF EXISTS audit_action')
    op.execute('DROP TYPE IF EXISTS embedding_owner_type')
    op.execute('DROP TYPE IF EXISTS match_type')
    op.execute('DROP TYPE IF EXISTS suggestion_status')
    op.execute('DROP TYPE IF EXISTS document_status')
