"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

LISTING_STATUSES = (
    'active', 'sold', 'cancelled', 'expired', 'manually_removed',
    'api_sync_removed', 'price_changed', 'manually_updated', 'unknown',
)


def upgrade() -> None:
    # Listings table
    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_order_id', sa.Text(), nullable=True),
        sa.Column('token_id', sa.Integer(), nullable=False),
        sa.Column('total_price', sa.Numeric(precision=24, scale=8), nullable=False),
        sa.Column('seller_address', sa.Text(), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('external_created_at', sa.DateTime(), nullable=True),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        sa.Column('deactivated_by', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('total_price >= 0', name='ck_listings_price_non_negative'),
        sa.CheckConstraint(
            'status IN (' + ', '.join(f"'{s}'" for s in LISTING_STATUSES) + ')',
            name='ck_listings_status',
        ),
        sa.CheckConstraint("source IN ('manual', 'external_feed')", name='ck_listings_source'),
        sa.CheckConstraint(
            "(status = 'active') = (deactivated_at IS NULL)",
            name='ck_listings_deactivated_iff_closed',
        ),
    )
    op.create_index('ix_listings_token_id', 'listings', ['token_id'])
    op.create_index('ix_listings_external_order_id', 'listings', ['external_order_id'])
    op.create_index(
        'uq_listings_active_token',
        'listings',
        ['token_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # Sales history table
    op.create_table(
        'sales_history',
        sa.Column('id', sa.Text(), nullable=False),
        sa.Column('token_id', sa.Integer(), nullable=False),
        sa.Column('sale_price', sa.Numeric(precision=24, scale=8), nullable=False),
        sa.Column('sale_date', sa.DateTime(), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listings.id']),
        sa.CheckConstraint('sale_price >= 0', name='ck_sales_price_non_negative'),
    )
    op.create_index('ix_sales_history_token_id', 'sales_history', ['token_id'])
    op.create_index('idx_sales_history_token_date', 'sales_history', ['token_id', 'sale_date'])

    # Token ownership table
    op.create_table(
        'token_ownership',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('token_id', sa.Integer(), nullable=False),
        sa.Column('wallet_address', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_id'),
    )
    op.create_index('ix_token_ownership_wallet_address', 'token_ownership', ['wallet_address'])

    # Collection stats table
    op.create_table(
        'collection_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('total_supply', sa.Integer(), nullable=False),
        sa.Column('total_minted', sa.Integer(), nullable=False),
        sa.Column('total_holders', sa.Integer(), nullable=False),
        sa.Column('average_holding', sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    # Token catalog tables
    op.create_table(
        'tokens',
        sa.Column('token_id', sa.Integer(), nullable=False),
        sa.Column('rarity_rank', sa.Integer(), nullable=True),
        sa.Column('mint_implied_value', sa.Numeric(precision=24, scale=8), nullable=True),
        sa.Column('is_legendary', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('token_id'),
    )

    op.create_table(
        'trait_data',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('token_id', sa.Integer(), nullable=False),
        sa.Column('trait_name', sa.String(length=64), nullable=False),
        sa.Column('trait_value', sa.Text(), nullable=True),
        sa.Column('rarity', sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['token_id'], ['tokens.token_id']),
    )
    op.create_index('ix_trait_data_token_id', 'trait_data', ['token_id'])

    # Sync runs table
    op.create_table(
        'sync_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('trigger', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('summary', sa.JSON(), nullable=True),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_sync_runs_run_id', 'sync_runs', ['run_id'])


def downgrade() -> None:
    op.drop_table('sync_runs')
    op.drop_table('trait_data')
    op.drop_table('tokens')
    op.drop_table('collection_stats')
    op.drop_table('token_ownership')
    op.drop_table('sales_history')
    op.drop_table('listings')
