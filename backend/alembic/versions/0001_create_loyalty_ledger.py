"""Create loyalty ledger and redemption tables

Revision ID: 0001_loyalty_ledger
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_loyalty_ledger'
down_revision = None
branch_labels = None
depends_on = None


transaction_type = sa.Enum(
    'EARN', 'BONUS', 'REDEEM', 'ADJUSTMENT', 'REVERSAL', 'EXPIRATION',
    name='transactiontype',
)
transaction_direction = sa.Enum('CREDIT', 'DEBIT', name='transactiondirection')
transaction_status = sa.Enum('ACTIVE', 'REVERSED', 'EXPIRED', name='transactionstatus')
redemption_status = sa.Enum(
    'PENDING', 'APPROVED', 'COMPLETED', 'CANCELLED', name='redemptionstatus'
)
fulfillment_method = sa.Enum(
    'IN_STORE', 'SHIP', 'DIGITAL', 'EMAIL', 'SMS', name='fulfillmentmethod'
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade():
    # Program configuration
    op.create_table(
        'loyalty_programs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('points_per_currency_unit', sa.Numeric(10, 4), nullable=False),
        sa.Column('expiration_months', sa.Integer(), nullable=False),
        sa.Column('signup_bonus_points', sa.Integer(), nullable=False),
        sa.Column('birthday_bonus_points', sa.Integer(), nullable=False),
        sa.Column('anniversary_bonus_points', sa.Integer(), nullable=False),
        sa.Column('minimum_redemption_points', sa.Integer(), nullable=False),
        sa.Column('max_points_per_transaction', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('expiration_months >= 0', name='expiration_months_non_negative'),
        sa.CheckConstraint('signup_bonus_points >= 0', name='signup_bonus_non_negative'),
        sa.CheckConstraint('minimum_redemption_points >= 0', name='minimum_redemption_non_negative'),
    )
    op.create_index('ix_loyalty_programs_id', 'loyalty_programs', ['id'])
    op.create_index('ix_loyalty_programs_is_active', 'loyalty_programs', ['is_active'])

    op.create_table(
        'loyalty_tier_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tier_name', sa.String(length=50), nullable=False),
        sa.Column('tier_order', sa.Integer(), nullable=False),
        sa.Column('min_lifetime_points', sa.Integer(), nullable=False),
        sa.Column('benefits', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('display_name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_loyalty_tier_configs_id', 'loyalty_tier_configs', ['id'])
    op.create_index('ix_loyalty_tier_configs_tier_name', 'loyalty_tier_configs', ['tier_name'], unique=True)
    op.create_index('ix_loyalty_tier_configs_tier_order', 'loyalty_tier_configs', ['tier_order'])

    # Accounts
    op.create_table(
        'loyalty_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('tier', sa.String(length=50), nullable=False),
        sa.Column('available_points', sa.Integer(), nullable=False),
        sa.Column('pending_points', sa.Integer(), nullable=False),
        sa.Column('lifetime_earned', sa.Integer(), nullable=False),
        sa.Column('lifetime_redeemed', sa.Integer(), nullable=False),
        sa.Column('enrollment_date', sa.DateTime(), nullable=False),
        sa.Column('last_activity_at', sa.DateTime(), nullable=True),
        sa.Column('last_tier_change_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('deactivated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('available_points >= 0', name='available_points_non_negative'),
        sa.CheckConstraint('pending_points >= 0', name='pending_points_non_negative'),
        sa.CheckConstraint('lifetime_earned >= 0', name='lifetime_earned_non_negative'),
        sa.CheckConstraint('lifetime_redeemed >= 0', name='lifetime_redeemed_non_negative'),
    )
    op.create_index('ix_loyalty_accounts_id', 'loyalty_accounts', ['id'])
    op.create_index('ix_loyalty_accounts_customer_id', 'loyalty_accounts', ['customer_id'], unique=True)
    op.create_index('ix_loyalty_accounts_is_active', 'loyalty_accounts', ['is_active'])
    op.create_index('ix_loyalty_accounts_tier_active', 'loyalty_accounts', ['tier', 'is_active'])

    # Ledger
    op.create_table(
        'points_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('transaction_type', transaction_type, nullable=False),
        sa.Column('direction', transaction_direction, nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.String(length=50), nullable=True),
        sa.Column('reference_id', sa.String(length=100), nullable=True),
        sa.Column('related_transaction_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('expiration_date', sa.DateTime(), nullable=True),
        sa.Column('status', transaction_status, nullable=False),
        sa.Column('reversed_at', sa.DateTime(), nullable=True),
        sa.Column('reversal_reason', sa.String(length=255), nullable=True),
        sa.Column('transaction_data', sa.JSON(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['account_id'], ['loyalty_accounts.id'], ),
        sa.ForeignKeyConstraint(['related_transaction_id'], ['points_transactions.id'], ),
        sa.CheckConstraint('amount > 0', name='amount_positive'),
        sa.CheckConstraint('balance_before >= 0', name='balance_before_non_negative'),
        sa.CheckConstraint('balance_after >= 0', name='balance_after_non_negative'),
    )
    op.create_index('ix_points_transactions_id', 'points_transactions', ['id'])
    op.create_index('ix_points_transactions_account_id', 'points_transactions', ['account_id'])
    op.create_index('ix_points_transactions_transaction_type', 'points_transactions', ['transaction_type'])
    op.create_index('ix_points_transactions_related_transaction_id', 'points_transactions', ['related_transaction_id'])
    op.create_index('ix_points_transactions_account_type', 'points_transactions', ['account_id', 'transaction_type'])
    op.create_index('ix_points_transactions_reference', 'points_transactions', ['reference_type', 'reference_id'])
    op.create_index('ix_points_transactions_expiry', 'points_transactions', ['expiration_date', 'status'])

    op.create_table(
        'earning_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('rule_type', sa.String(length=50), nullable=False),
        sa.Column('points_multiplier', sa.Numeric(10, 4), nullable=False),
        sa.Column('fixed_points', sa.Integer(), nullable=False),
        sa.Column('minimum_purchase', sa.Numeric(12, 2), nullable=False),
        sa.Column('maximum_points_per_transaction', sa.Integer(), nullable=True),
        sa.Column('applicable_categories', sa.JSON(), nullable=True),
        sa.Column('applicable_products', sa.JSON(), nullable=True),
        sa.Column('excluded_products', sa.JSON(), nullable=True),
        sa.Column('applicable_tiers', sa.JSON(), nullable=True),
        sa.Column('valid_days', sa.JSON(), nullable=True),
        sa.Column('valid_period_start', sa.DateTime(), nullable=True),
        sa.Column('valid_period_end', sa.DateTime(), nullable=True),
        sa.Column('valid_time_start', sa.Time(), nullable=True),
        sa.Column('valid_time_end', sa.Time(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('is_exclusive', sa.Boolean(), nullable=False),
        sa.Column('require_coupon_code', sa.String(length=50), nullable=True),
        sa.Column('max_uses_per_customer', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('points_multiplier >= 0', name='points_multiplier_non_negative'),
        sa.CheckConstraint('fixed_points >= 0', name='fixed_points_non_negative'),
    )
    op.create_index('ix_earning_rules_id', 'earning_rules', ['id'])
    op.create_index('ix_earning_rules_is_active', 'earning_rules', ['is_active'])
    op.create_index('ix_earning_rules_active_priority', 'earning_rules', ['is_active', 'priority'])

    # Rewards
    op.create_table(
        'reward_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('points_cost', sa.Integer(), nullable=False),
        sa.Column('stock_quantity', sa.Integer(), nullable=False),
        sa.Column('eligible_tiers', sa.JSON(), nullable=False),
        sa.Column('min_points_balance', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('total_redemptions', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('points_cost > 0', name='points_cost_positive'),
        sa.CheckConstraint('stock_quantity >= -1', name='stock_quantity_valid'),
        sa.CheckConstraint('min_points_balance >= 0', name='min_points_balance_non_negative'),
    )
    op.create_index('ix_reward_items_id', 'reward_items', ['id'])
    op.create_index('ix_reward_items_name', 'reward_items', ['name'])
    op.create_index('ix_reward_items_is_active', 'reward_items', ['is_active'])

    op.create_table(
        'redemption_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('redemption_code', sa.String(length=20), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('reward_id', sa.Integer(), nullable=False),
        sa.Column('reward_name', sa.String(length=100), nullable=False),
        sa.Column('points_cost', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('status', redemption_status, nullable=False),
        sa.Column('fulfillment_method', fulfillment_method, nullable=False),
        sa.Column('points_transaction_id', sa.Integer(), nullable=False),
        sa.Column('approval_date', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.Integer(), nullable=True),
        sa.Column('fulfillment_date', sa.DateTime(), nullable=True),
        sa.Column('fulfilled_by', sa.Integer(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['account_id'], ['loyalty_accounts.id'], ),
        sa.ForeignKeyConstraint(['reward_id'], ['reward_items.id'], ),
        sa.ForeignKeyConstraint(['points_transaction_id'], ['points_transactions.id'], ),
        sa.CheckConstraint('quantity >= 1', name='quantity_positive'),
        sa.CheckConstraint('points_cost > 0', name='redemption_points_cost_positive'),
    )
    op.create_index('ix_redemption_records_id', 'redemption_records', ['id'])
    op.create_index('ix_redemption_records_redemption_code', 'redemption_records', ['redemption_code'], unique=True)
    op.create_index('ix_redemption_records_account_id', 'redemption_records', ['account_id'])
    op.create_index('ix_redemption_records_reward_id', 'redemption_records', ['reward_id'])
    op.create_index('ix_redemption_records_status', 'redemption_records', ['status'])
    op.create_index('ix_redemption_records_account_status', 'redemption_records', ['account_id', 'status'])

    # Audit
    op.create_table(
        'loyalty_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=True),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.String(length=100), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_loyalty_audit_logs_id', 'loyalty_audit_logs', ['id'])
    op.create_index('ix_loyalty_audit_logs_timestamp', 'loyalty_audit_logs', ['timestamp'])
    op.create_index('ix_loyalty_audit_logs_action', 'loyalty_audit_logs', ['action'])
    op.create_index('ix_loyalty_audit_logs_actor_id', 'loyalty_audit_logs', ['actor_id'])
    op.create_index('idx_loyalty_audit_entity', 'loyalty_audit_logs', ['entity_type', 'entity_id'])
    op.create_index('idx_loyalty_audit_timestamp_action', 'loyalty_audit_logs', ['timestamp', 'action'])


def downgrade():
    op.drop_table('loyalty_audit_logs')
    op.drop_table('redemption_records')
    op.drop_table('reward_items')
    op.drop_table('earning_rules')
    op.drop_table('points_transactions')
    op.drop_table('loyalty_accounts')
    op.drop_table('loyalty_tier_configs')
    op.drop_table('loyalty_programs')

    bind = op.get_bind()
    for enum in (fulfillment_method, redemption_status, transaction_status,
                 transaction_direction, transaction_type):
        enum.drop(bind, checkfirst=True)
