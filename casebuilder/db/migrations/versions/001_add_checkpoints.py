"""Add checkpoints and undo_log tables.

- checkpoints: one revertible group of row mutations per object/application
- undo_log: pre-image of every mutation made under a checkpoint, replayed
  newest-first (by seq) on rollback or restore

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    """Create checkpoints and undo_log tables."""

    # Create checkpoints table
    op.create_table(
        'checkpoints',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('objectid', sa.Integer, nullable=False),
        sa.Column('applicationid', sa.Integer, nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('user_command', sa.Text, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('source', sa.String(10), nullable=False, server_default='LLM'),
        sa.Column('tools_executed', JSON_TYPE, nullable=False,
                  server_default=sa.text("'[]'")),
        sa.Column('changes_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("status IN ('active', 'historical', 'rolled_back')",
                           name='ck_checkpoints_status'),
        sa.CheckConstraint("source IN ('LLM', 'MCP', 'API')",
                           name='ck_checkpoints_source'),
    )

    # Indexes for checkpoints
    op.create_index('ix_checkpoints_status', 'checkpoints', ['status'])
    op.create_index('ix_checkpoints_objectid_created', 'checkpoints', ['objectid', 'created_at'])
    op.create_index('ix_checkpoints_applicationid_created', 'checkpoints', ['applicationid', 'created_at'])

    # Create undo_log table
    op.create_table(
        'undo_log',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('checkpoint_id', sa.Uuid(as_uuid=True),
                  sa.ForeignKey('checkpoints.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('objectid', sa.Integer, nullable=False),
        sa.Column('seq', sa.Integer, nullable=False),
        sa.Column('operation', sa.String(10), nullable=False),  # insert, update, delete
        sa.Column('table_name', sa.String(100), nullable=False),
        sa.Column('primary_key', JSON_TYPE, nullable=False),
        sa.Column('previous_data', JSON_TYPE, nullable=True),  # null for inserts
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('applied_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('checkpoint_id', 'seq', name='uq_undo_log_checkpoint_seq'),
        sa.CheckConstraint("operation IN ('insert', 'update', 'delete')",
                           name='ck_undo_log_operation'),
    )

    # Indexes for undo_log
    op.create_index('ix_undo_log_checkpoint_id', 'undo_log', ['checkpoint_id'])
    op.create_index('ix_undo_log_objectid', 'undo_log', ['objectid'])


def downgrade() -> None:
    """Remove undo_log and checkpoints tables."""

    # Drop undo_log table
    op.drop_index('ix_undo_log_objectid', table_name='undo_log')
    op.drop_index('ix_undo_log_checkpoint_id', table_name='undo_log')
    op.drop_table('undo_log')

    # Drop checkpoints table
    op.drop_index('ix_checkpoints_applicationid_created', table_name='checkpoints')
    op.drop_index('ix_checkpoints_objectid_created', table_name='checkpoints')
    op.drop_index('ix_checkpoints_status', table_name='checkpoints')
    op.drop_table('checkpoints')
