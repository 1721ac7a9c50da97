"""
Migration 001: Stock ledger schema

Locations, ingredients, recipes (products + BOM lines), the movement log
with its batch and stock-level caches, consumption events, reconciliation
reports and the manual review queue.
"""
from alembic import op
import sqlalchemy as sa

revision = '001_ledger_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Catalog
    op.create_table(
        'locations',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('kind', sa.String(20), nullable=False, server_default='store'),
        sa.Column('timezone', sa.String(64)),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        'ingredients',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('base_unit', sa.String(20), nullable=False),
        sa.Column('reorder_threshold', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    # Recipes
    op.create_table(
        'products',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('external_ref', sa.String(100), unique=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        'bom_lines',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('product_id', sa.Uuid, sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ingredient_id', sa.Uuid, sa.ForeignKey('ingredients.id'), nullable=False),
        sa.Column('line_type', sa.String(20), nullable=False, server_default='base'),
        sa.Column('modifier_id', sa.String(100)),
        sa.Column('quantity', sa.Numeric(18, 4), nullable=False),
        sa.Column('unit', sa.String(20), nullable=False),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.CheckConstraint(
            "line_type IN ('base', 'modifier_add', 'modifier_override')",
            name='ck_bom_lines_type',
        ),
        sa.CheckConstraint(
            "line_type = 'base' OR modifier_id IS NOT NULL",
            name='ck_bom_lines_modifier_required',
        ),
    )
    op.create_index('idx_bom_lines_product', 'bom_lines', ['product_id'])

    # Ledger
    op.create_table(
        'batches',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('ingredient_id', sa.Uuid, sa.ForeignKey('ingredients.id'), nullable=False),
        sa.Column('location_id', sa.Uuid, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('quantity_received', sa.Numeric(18, 4), nullable=False),
        sa.Column('unit_cost', sa.Numeric(18, 4), nullable=False),
        sa.Column('quantity_remaining', sa.Numeric(18, 4), nullable=False),
        sa.Column('received_at', sa.DateTime, nullable=False),
        sa.Column('source_ref', sa.String(100)),
        sa.CheckConstraint('quantity_remaining >= 0', name='ck_batches_remaining_non_negative'),
        sa.CheckConstraint('quantity_remaining <= quantity_received', name='ck_batches_remaining_le_received'),
    )
    op.create_index('idx_batches_ingredient_location', 'batches', ['ingredient_id', 'location_id'])

    op.create_table(
        'stock_levels',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('ingredient_id', sa.Uuid, sa.ForeignKey('ingredients.id'), nullable=False),
        sa.Column('location_id', sa.Uuid, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('unit_cost', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('ingredient_id', 'location_id', name='uq_stock_levels_ingredient_location'),
    )

    op.create_table(
        'consumption_events',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('sale_correlation_id', sa.String(100), nullable=False),
        sa.Column('line_number', sa.Integer, nullable=False, server_default='0'),
        sa.Column('product_id', sa.Uuid, sa.ForeignKey('products.id')),
        sa.Column('product_ref', sa.String(100), nullable=False),
        sa.Column('location_id', sa.Uuid, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('quantity_sold', sa.Numeric(18, 4), nullable=False),
        sa.Column('modifier_ids', sa.JSON),
        sa.Column('occurred_at', sa.DateTime, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('total_cost', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint('sale_correlation_id', 'line_number', name='uq_consumption_events_sale_line'),
    )
    op.create_index('idx_consumption_events_product_time', 'consumption_events', ['product_id', 'occurred_at'])

    op.create_table(
        'movements',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('ingredient_id', sa.Uuid, sa.ForeignKey('ingredients.id'), nullable=False),
        sa.Column('location_id', sa.Uuid, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('movement_type', sa.String(20), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 4), nullable=False),
        sa.Column('unit_cost', sa.Numeric(18, 4), nullable=False),
        sa.Column('occurred_at', sa.DateTime, nullable=False),
        sa.Column('recorded_at', sa.DateTime, nullable=False),
        sa.Column('correlation_id', sa.String(100)),
        sa.Column('batch_id', sa.Uuid, sa.ForeignKey('batches.id')),
        sa.Column('consumption_event_id', sa.Uuid, sa.ForeignKey('consumption_events.id')),
        sa.Column('reason', sa.Text),
        sa.CheckConstraint(
            "movement_type IN ('receipt', 'consumption', 'transfer_out', 'transfer_in', 'wastage', 'adjustment')",
            name='ck_movements_type',
        ),
    )
    op.create_index('idx_movements_key_time', 'movements', ['ingredient_id', 'location_id', 'occurred_at'])
    op.create_index('idx_movements_location_time', 'movements', ['location_id', 'occurred_at'])
    op.create_index('idx_movements_correlation', 'movements', ['correlation_id'])

    # Reconciliation
    op.create_table(
        'reconciliation_reports',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('location_id', sa.Uuid, sa.ForeignKey('locations.id'), nullable=False),
        sa.Column('business_date', sa.Date, nullable=False),
        sa.Column('period_start', sa.DateTime, nullable=False),
        sa.Column('period_end', sa.DateTime, nullable=False),
        sa.Column('generated_at', sa.DateTime, nullable=False),
        sa.Column('over_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('under_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('ok_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_variance_value', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('adjustments_applied', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('submitted_by', sa.String(100)),
    )
    op.create_index(
        'idx_reconciliation_location_date', 'reconciliation_reports',
        ['location_id', 'business_date', 'generated_at'],
    )

    op.create_table(
        'reconciliation_lines',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('report_id', sa.Uuid, sa.ForeignKey('reconciliation_reports.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ingredient_id', sa.Uuid, sa.ForeignKey('ingredients.id'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('opening', sa.Numeric(18, 4), nullable=False),
        sa.Column('inflow', sa.Numeric(18, 4), nullable=False),
        sa.Column('outflow', sa.Numeric(18, 4), nullable=False),
        sa.Column('expected', sa.Numeric(18, 4), nullable=False),
        sa.Column('actual', sa.Numeric(18, 4), nullable=False),
        sa.Column('variance', sa.Numeric(18, 4), nullable=False),
        sa.Column('variance_percentage', sa.Numeric(18, 2)),
        sa.Column('percentage_undefined', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('classification', sa.String(10), nullable=False),
        sa.Column('unit_cost', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('variance_value', sa.Numeric(18, 4), nullable=False, server_default='0'),
    )

    # Escalations
    op.create_table(
        'manual_review_items',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('correlation_id', sa.String(100)),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('error_kind', sa.String(50), nullable=False),
        sa.Column('message', sa.Text),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('resolved_at', sa.DateTime),
    )
    op.create_index('idx_manual_review_open', 'manual_review_items', ['resolved_at'])


def downgrade() -> None:
    op.drop_table('manual_review_items')
    op.drop_table('reconciliation_lines')
    op.drop_table('reconciliation_reports')
    op.drop_table('movements')
    op.drop_table('consumption_events')
    op.drop_table('stock_levels')
    op.drop_table('batches')
    op.drop_table('bom_lines')
    op.drop_table('products')
    op.drop_table('ingredients')
    op.drop_table('locations')
