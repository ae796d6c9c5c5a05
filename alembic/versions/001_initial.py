"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Brands table
    op.create_table(
        'brands',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('ean', sa.String(length=32), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('brand_id', sa.Integer(), nullable=True),
        sa.Column('list_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('promo_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['brand_id'], ['brands.id'], ),
        sa.UniqueConstraint('sku')
    )
    op.create_index('ix_products_ean', 'products', ['ean'])

    # Competitors table
    op.create_table(
        'competitors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('base_url', sa.Text(), nullable=True),
        sa.Column('adapter_id', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    # Competitor product mappings
    op.create_table(
        'competitor_products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('match_method', sa.String(length=32), nullable=True),
        sa.Column('match_score', sa.Numeric(precision=6, scale=4), nullable=True),
        sa.Column('last_matched_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ),
        sa.UniqueConstraint('product_id', 'competitor_id', name='uq_competitor_product')
    )

    # Daily price snapshots
    op.create_table(
        'price_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('snapshot_date', sa.Date(), nullable=False),
        sa.Column('list_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('promo_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ),
        sa.UniqueConstraint(
            'product_id', 'competitor_id', 'snapshot_date', name='uq_price_snapshot_day'
        )
    )

    # Cached competitor catalog
    op.create_table(
        'competitor_catalog',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('url', sa.String(length=1024), nullable=False),
        sa.Column('name', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('external_id', sa.String(length=64), nullable=True),
        sa.Column('competitor_sku', sa.String(length=128), nullable=True),
        sa.Column('brand', sa.String(length=128), nullable=True),
        sa.Column('categories', sa.Text(), nullable=True),
        sa.Column('list_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('promo_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('extracted_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ),
        sa.UniqueConstraint('competitor_id', 'url', name='uq_competitor_catalog_url')
    )

    # Alert rules
    op.create_table(
        'alert_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('brand_id', sa.Integer(), nullable=False),
        sa.Column('list_price_threshold_percent', sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column('promo_price_threshold_percent', sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['brand_id'], ['brands.id'], )
    )

    # Alerts
    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('alert_rule_id', sa.Integer(), nullable=True),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ),
        sa.ForeignKeyConstraint(['alert_rule_id'], ['alert_rules.id'], )
    )
    op.create_index('ix_alerts_created_at', 'alerts', ['created_at'])
    op.create_index('ix_alerts_competitor_created', 'alerts', ['competitor_id', 'created_at'])

    # Runs
    op.create_table(
        'scheduler_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('trigger_type', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    # Only one run may be Running at a time
    op.create_index(
        'uq_scheduler_runs_single_running',
        'scheduler_runs',
        ['status'],
        unique=True,
        postgresql_where=sa.text("status = 'Running'"),
    )

    # Calendar settings (single row)
    op.create_table(
        'scheduler_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('daily_time', sa.String(length=5), nullable=False),
        sa.Column('days_of_week_mask', sa.Integer(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )


def downgrade() -> None:
    op.drop_table('scheduler_settings')
    op.drop_index('uq_scheduler_runs_single_running', table_name='scheduler_runs')
    op.drop_table('scheduler_runs')
    op.drop_index('ix_alerts_competitor_created', table_name='alerts')
    op.drop_index('ix_alerts_created_at', table_name='alerts')
    op.drop_table('alerts')
    op.drop_table('alert_rules')
    op.drop_table('competitor_catalog')
    op.drop_table('price_snapshots')
    op.drop_table('competitor_products')
    op.drop_table('competitors')
    op.drop_index('ix_products_ean', table_name='products')
    op.drop_table('products')
    op.drop_table('brands')
