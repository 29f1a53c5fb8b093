"""Customers with loyalty ledger, and operating expenses

Revision ID: 20261020_customers
Revises: 20261019_initial
Create Date: 2026-10-20

This migration adds:
1. customers (per-business, unique phone) and loyalty_transactions
2. expenses (with recurring templates and generated occurrences)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261020_customers'
down_revision = '20261019_initial'
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. CUSTOMERS
    # ==========================================================================
    op.create_table('customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('first_name', sa.String(length=128), nullable=False),
        sa.Column('last_name', sa.String(length=128), nullable=True),
        sa.Column('phone', sa.String(length=64), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('street', sa.String(length=255), nullable=True),
        sa.Column('city', sa.String(length=128), nullable=True),
        sa.Column('state', sa.String(length=64), nullable=True),
        sa.Column('zip_code', sa.String(length=32), nullable=True),
        sa.Column('country', sa.String(length=64), nullable=False, server_default='US'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('loyalty_points', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_visits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_visit_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('business_id', 'phone', name='uq_customers_business_phone'),
        sa.CheckConstraint('loyalty_points >= 0', name='ck_customers_loyalty_points'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_customers_business_id', 'customers', ['business_id'])
    op.create_index('ix_customers_is_active', 'customers', ['is_active'])
    op.create_index('ix_customers_created_at', 'customers', ['created_at'])
    op.create_index('ix_customers_business_active', 'customers', ['business_id', 'is_active'])

    op.create_table('loyalty_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=16), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id']),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_id', 'transaction_type', name='uq_loyalty_txns_sale_type'),
        sa.CheckConstraint('balance_after >= 0', name='ck_loyalty_txns_balance'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_loyalty_transactions_business_id', 'loyalty_transactions', ['business_id'])
    op.create_index('ix_loyalty_transactions_customer_id', 'loyalty_transactions', ['customer_id'])
    op.create_index('ix_loyalty_transactions_transaction_type', 'loyalty_transactions', ['transaction_type'])
    op.create_index('ix_loyalty_transactions_sale_id', 'loyalty_transactions', ['sale_id'])
    op.create_index('ix_loyalty_transactions_user_id', 'loyalty_transactions', ['user_id'])
    op.create_index('ix_loyalty_transactions_occurred_at', 'loyalty_transactions', ['occurred_at'])
    op.create_index('ix_loyalty_txns_customer_occurred', 'loyalty_transactions', ['customer_id', 'occurred_at'])

    # ==========================================================================
    # 2. EXPENSES
    # ==========================================================================
    op.create_table('expenses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=True),
        sa.Column('category', sa.String(length=32), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False, server_default='cash'),
        sa.Column('receipt_number', sa.String(length=64), nullable=True),
        sa.Column('vendor_name', sa.String(length=255), nullable=True),
        sa.Column('vendor_contact', sa.String(length=255), nullable=True),
        sa.Column('expense_date', sa.Date(), nullable=False),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('frequency', sa.String(length=16), nullable=True),
        sa.Column('next_due', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('parent_expense_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='paid'),
        sa.Column('recorded_by_user_id', sa.Integer(), nullable=False),
        sa.Column('approved_by_user_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id']),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id']),
        sa.ForeignKeyConstraint(['parent_expense_id'], ['expenses.id']),
        sa.ForeignKeyConstraint(['recorded_by_user_id'], ['users.id']),
        sa.ForeignKeyConstraint(['approved_by_user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('parent_expense_id', 'expense_date', name='uq_expenses_parent_date'),
        sa.CheckConstraint('amount_cents > 0', name='ck_expenses_amount'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_expenses_business_id', 'expenses', ['business_id'])
    op.create_index('ix_expenses_location_id', 'expenses', ['location_id'])
    op.create_index('ix_expenses_parent_expense_id', 'expenses', ['parent_expense_id'])
    op.create_index('ix_expenses_status', 'expenses', ['status'])
    op.create_index('ix_expenses_business_date', 'expenses', ['business_id', 'expense_date'])
    op.create_index('ix_expenses_business_category', 'expenses', ['business_id', 'category'])


def downgrade():
    op.drop_table('expenses')
    op.drop_table('loyalty_transactions')
    op.drop_table('customers')
