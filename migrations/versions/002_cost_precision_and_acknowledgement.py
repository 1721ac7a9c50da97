"""
Migration 002: Unit cost precision and report acknowledgement

Revision ID: 002_cost_precision_and_acknowledgement
Revises: 001_ledger_schema
Create Date: 2024-06-03

Unit costs widen to 8 fractional digits so per-gram costs of cheap bulk
goods keep their value. Reconciliation reports gain a review status.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '002_cost_precision_and_acknowledgement'
down_revision: Union[str, None] = '001_ledger_schema'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

COST_TABLES = ('batches', 'stock_levels', 'movements', 'reconciliation_lines')


def upgrade() -> None:
    for table in COST_TABLES:
        with op.batch_alter_table(table) as batch_op:
            batch_op.alter_column(
                'unit_cost',
                existing_type=sa.Numeric(18, 4),
                type_=sa.Numeric(20, 8),
                existing_nullable=False,
            )

    op.add_column(
        'reconciliation_reports',
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
    )
    op.add_column('reconciliation_reports', sa.Column('acknowledged_by', sa.String(100)))
    op.add_column('reconciliation_reports', sa.Column('acknowledged_at', sa.DateTime))


def downgrade() -> None:
    with op.batch_alter_table('reconciliation_reports') as batch_op:
        batch_op.drop_column('acknowledged_at')
        batch_op.drop_column('acknowledged_by')
        batch_op.drop_column('status')

    for table in COST_TABLES:
        with op.batch_alter_table(table) as batch_op:
            batch_op.alter_column(
                'unit_cost',
                existing_type=sa.Numeric(20, 8),
                type_=sa.Numeric(18, 4),
                existing_nullable=False,
            )
