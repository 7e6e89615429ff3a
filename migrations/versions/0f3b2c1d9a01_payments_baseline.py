"""payments baseline: users, creators, commissions, tiers, subscriptions, ledger

Revision ID: 0f3b2c1d9a01
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0f3b2c1d9a01'
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_operator', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'creators',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('processor_account_id', sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="RESTRICT"),
    )
    op.create_index('ix_creators_user_id', 'creators', ['user_id'], unique=True)

    op.create_table(
        'commission_types',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('max_revisions', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('price_per_revision', sa.Numeric(10, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(['creator_id'], ['creators.id'], ondelete="RESTRICT"),
        sa.CheckConstraint("base_price > 0", name="ck_commission_types_base_price_positive"),
        sa.CheckConstraint("max_revisions >= 0", name="ck_commission_types_max_revisions_nonneg"),
        sa.CheckConstraint(
            "price_per_revision IS NULL OR price_per_revision >= 0",
            name="ck_commission_types_price_per_revision_nonneg",
        ),
    )
    op.create_index('ix_commission_types_creator_id', 'commission_types', ['creator_id'])

    op.create_table(
        'commission_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('commission_type_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('reference_images', _JSON, nullable=False),
        sa.Column('agreed_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('processor_payment_intent_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('pending_action', sa.String(length=16), nullable=True),
        sa.Column('revision_count', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('creator_notes', sa.String(length=255), nullable=True),
        sa.Column('resubmitted_from_id', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['customer_id'], ['users.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['creator_id'], ['creators.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['commission_type_id'], ['commission_types.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['resubmitted_from_id'], ['commission_requests.id'], ondelete="SET NULL"),
        sa.CheckConstraint("agreed_price > 0", name="ck_commission_requests_agreed_price_positive"),
        sa.CheckConstraint("revision_count >= 0", name="ck_commission_requests_revision_count_nonneg"),
        sa.CheckConstraint(
            "status IN ('pending','payment_authorized','payment_failed','accepted','rejected','refunded')",
            name="ck_commission_requests_status_valid",
        ),
        sa.CheckConstraint(
            "status = 'pending' OR processor_payment_intent_id IS NOT NULL",
            name="ck_commission_requests_intent_before_leaving_pending",
        ),
    )
    op.create_index('ix_commission_requests_customer_id', 'commission_requests', ['customer_id'])
    op.create_index('ix_commission_requests_creator_id', 'commission_requests', ['creator_id'])
    op.create_index('ix_commission_requests_commission_type_id', 'commission_requests', ['commission_type_id'])
    op.create_index('ix_commission_requests_status', 'commission_requests', ['status'])
    op.create_index(
        'ix_commission_requests_processor_payment_intent_id', 'commission_requests',
        ['processor_payment_intent_id'], unique=True,
    )

    op.create_table(
        'commission_revisions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('commission_request_id', sa.Integer(), nullable=False),
        sa.Column('requester_id', sa.Integer(), nullable=False),
        sa.Column('revision_number', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=False),
        sa.Column('is_extra', sa.Boolean(), nullable=False),
        sa.Column('fee_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('processor_payment_intent_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['commission_request_id'], ['commission_requests.id'], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(['requester_id'], ['users.id'], ondelete="RESTRICT"),
        sa.CheckConstraint(
            "status IN ('requested','awaiting_payment','payment_failed','cancelled')",
            name="ck_commission_revisions_status_valid",
        ),
    )
    op.create_index('ix_commission_revisions_commission_request_id', 'commission_revisions', ['commission_request_id'])
    op.create_index(
        'ix_commission_revisions_processor_payment_intent_id', 'commission_revisions',
        ['processor_payment_intent_id'], unique=True,
    )

    op.create_table(
        'membership_tiers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('processor_price_id', sa.String(length=64), nullable=True),
        sa.Column('processor_product_id', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(['creator_id'], ['creators.id'], ondelete="RESTRICT"),
        sa.CheckConstraint("price > 0", name="ck_membership_tiers_price_positive"),
    )
    op.create_index('ix_membership_tiers_creator_id', 'membership_tiers', ['creator_id'])
    op.create_index('ix_membership_tiers_processor_price_id', 'membership_tiers', ['processor_price_id'], unique=True)
    op.create_index('ix_membership_tiers_processor_product_id', 'membership_tiers', ['processor_product_id'])

    op.create_table(
        'user_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('creator_id', sa.Integer(), nullable=False),
        sa.Column('tier_id', sa.Integer(), nullable=False),
        sa.Column('processor_subscription_id', sa.String(length=64), nullable=False),
        sa.Column('processor_customer_id', sa.String(length=64), nullable=True),
        sa.Column('processor_item_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['creator_id'], ['creators.id'], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(['tier_id'], ['membership_tiers.id'], ondelete="RESTRICT"),
        sa.CheckConstraint(
            "status IN ('pending','active','cancelled','expired')",
            name="ck_user_subscriptions_status_valid",
        ),
    )
    op.create_index('ix_user_subscriptions_user_id', 'user_subscriptions', ['user_id'])
    op.create_index('ix_user_subscriptions_creator_id', 'user_subscriptions', ['creator_id'])
    op.create_index('ix_user_subscriptions_tier_id', 'user_subscriptions', ['tier_id'])
    op.create_index('ix_user_subscriptions_status', 'user_subscriptions', ['status'])
    op.create_index('ix_user_subscriptions_current_period_end', 'user_subscriptions', ['current_period_end'])
    op.create_index('ix_user_subscriptions_processor_customer_id', 'user_subscriptions', ['processor_customer_id'])
    op.create_index(
        'ix_user_subscriptions_processor_subscription_id', 'user_subscriptions',
        ['processor_subscription_id'], unique=True,
    )
    # At most one active row per (user, creator, tier); the upsert conflict target
    op.create_index(
        'uq_user_subscriptions_active_triple', 'user_subscriptions',
        ['user_id', 'creator_id', 'tier_id'], unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'billing_customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('processor_customer_id', sa.String(length=64), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="RESTRICT"),
    )
    op.create_index('ix_billing_customers_user_id', 'billing_customers', ['user_id'], unique=True)
    op.create_index(
        'ix_billing_customers_processor_customer_id', 'billing_customers', ['processor_customer_id'], unique=True,
    )

    op.create_table(
        'payment_method_cache',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('processor_payment_method_id', sa.String(length=64), nullable=False),
        sa.Column('brand', sa.String(length=32), nullable=True),
        sa.Column('last4', sa.String(length=4), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('refreshed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
        sa.UniqueConstraint('user_id', 'processor_payment_method_id', name='uq_payment_method_cache_user_pm'),
    )
    op.create_index('ix_payment_method_cache_user_id', 'payment_method_cache', ['user_id'])

    op.create_table(
        'billing_event_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('processor_event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('payload', _JSON, nullable=False),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_billing_event_logs_processor_event_id', 'billing_event_logs', ['processor_event_id'], unique=True)
    op.create_index('ix_billing_event_logs_type', 'billing_event_logs', ['type'])

    op.create_table(
        'reconciliation_mismatches',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('local_id', sa.Integer(), nullable=True),
        sa.Column('processor_ref', sa.String(length=64), nullable=True),
        sa.Column('local_state', sa.String(length=32), nullable=True),
        sa.Column('processor_state', sa.String(length=32), nullable=True),
        sa.Column('detail', sa.String(length=255), nullable=True),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_reconciliation_mismatches_kind', 'reconciliation_mismatches', ['kind'])
    op.create_index('ix_reconciliation_mismatches_processor_ref', 'reconciliation_mismatches', ['processor_ref'])


def downgrade():
    op.drop_table('reconciliation_mismatches')
    op.drop_table('billing_event_logs')
    op.drop_table('payment_method_cache')
    op.drop_table('billing_customers')
    op.drop_index('uq_user_subscriptions_active_triple', table_name='user_subscriptions')
    op.drop_table('user_subscriptions')
    op.drop_table('membership_tiers')
    op.drop_table('commission_revisions')
    op.drop_table('commission_requests')
    op.drop_table('commission_types')
    op.drop_table('creators')
    op.drop_table('users')
