"""initial ledger schema

Revision ID: c7e4a91b2d30
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the commerce ledger schema:
- products, stock_reservations, stock_movements: stock position and its log
- customers, store_credit_accounts, store_credit_transactions: store credit
- sales, sale_lines: immutable sale documents
- returns, return_lines, exchange_lines: return/exchange workflow
- import_records: fingerprints of accepted supplier imports

version_id columns back SQLAlchemy's optimistic locking (version_id_col).
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c7e4a91b2d30'
down_revision = None
branch_labels = None
depends_on = None


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    # ============================================================================
    # products: catalog entry plus signed stock position
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('barcode', sa.String(length=64), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('on_hand', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('is_placeholder', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('reserved >= 0', name='ck_products_reserved_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
        sa.UniqueConstraint('barcode'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_active_name', 'products', ['is_active', 'name'])
    op.create_index('ix_products_is_placeholder', 'products', ['is_placeholder'])

    op.create_table(
        'stock_reservations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation_id', sa.String(length=128), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('available_before', sa.Integer(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('operation_id', 'product_id', name='uq_reservation_operation_product'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_reservations_operation_id', 'stock_reservations', ['operation_id'])
    op.create_index('ix_stock_reservations_product_id', 'stock_reservations', ['product_id'])
    op.create_index('ix_stock_reservations_status', 'stock_reservations', ['status'])
    op.create_index('ix_reservations_status_expires', 'stock_reservations', ['status', 'expires_at'])

    # Append-only: never updated or deleted
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('operation_id', sa.String(length=128), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('on_hand_after', sa.Integer(), nullable=False),
        sa.Column('reserved_after', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('product_id', 'operation_id', 'movement_type',
                            name='uq_movement_product_operation_type'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_movements_product_id', 'stock_movements', ['product_id'])
    op.create_index('ix_stock_movements_movement_type', 'stock_movements', ['movement_type'])
    op.create_index('ix_stock_movements_occurred_at', 'stock_movements', ['occurred_at'])
    op.create_index('ix_movements_product_occurred', 'stock_movements', ['product_id', 'occurred_at'])

    # ============================================================================
    # customers and sales
    # ============================================================================
    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customers_is_active', 'customers', ['is_active'])
    op.create_index('ix_customers_active_name', 'customers', ['is_active', 'name'])

    op.create_table(
        'sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_number', sa.String(length=64), nullable=True),
        sa.Column('operation_id', sa.String(length=128), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False),
        sa.Column('discount_type', sa.String(length=16), nullable=True),
        sa.Column('discount_value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=True),
        sa.Column('cashier_id', sa.String(length=64), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_number', name='uq_sales_docnum'),
        sa.UniqueConstraint('operation_id', name='uq_sales_operation'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sales_customer_id', 'sales', ['customer_id'])
    op.create_index('ix_sales_payment_method', 'sales', ['payment_method'])
    op.create_index('ix_sales_created_at', 'sales', ['created_at'])
    op.create_index('ix_sales_customer_created', 'sales', ['customer_id', 'created_at'])
    op.create_index('ix_sales_seller_created', 'sales', ['seller_id', 'created_at'])

    op.create_table(
        'sale_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        _created_at(),
        sa.CheckConstraint('quantity > 0', name='ck_sale_lines_quantity_positive'),
        sa.CheckConstraint('unit_price_cents >= 0', name='ck_sale_lines_price_non_negative'),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sale_id', 'line_number', name='uq_sale_lines_sale_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sale_lines_sale_id', 'sale_lines', ['sale_id'])
    op.create_index('ix_sale_lines_product_id', 'sale_lines', ['product_id'])

    # ============================================================================
    # returns: pending -> approved -> completed, or pending -> rejected
    # ============================================================================
    op.create_table(
        'returns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_number', sa.String(length=64), nullable=True),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('return_type', sa.String(length=16), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('refund_method', sa.String(length=16), nullable=False),
        sa.Column('settlement_method', sa.String(length=16), nullable=True),
        sa.Column('restocking_fee_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refund_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_difference_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=False),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('completed_by', sa.String(length=64), nullable=True),
        sa.Column('rejected_by', sa.String(length=64), nullable=True),
        _created_at(),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('document_number', name='uq_returns_docnum'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_returns_sale_id', 'returns', ['sale_id'])
    op.create_index('ix_returns_customer_id', 'returns', ['customer_id'])
    op.create_index('ix_returns_return_type', 'returns', ['return_type'])
    op.create_index('ix_returns_status', 'returns', ['status'])
    op.create_index('ix_returns_created_at', 'returns', ['created_at'])
    op.create_index('ix_returns_status_created', 'returns', ['status', 'created_at'])
    op.create_index('ix_returns_customer_created', 'returns', ['customer_id', 'created_at'])

    op.create_table(
        'return_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_id', sa.Integer(), nullable=False),
        sa.Column('sale_line_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('original_price_cents', sa.Integer(), nullable=False),
        sa.Column('refund_price_cents', sa.Integer(), nullable=False),
        sa.Column('condition_description', sa.String(length=255), nullable=True),
        _created_at(),
        sa.CheckConstraint('quantity > 0', name='ck_return_lines_quantity_positive'),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id'], ),
        sa.ForeignKeyConstraint(['sale_line_id'], ['sale_lines.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_return_lines_return_id', 'return_lines', ['return_id'])
    op.create_index('ix_return_lines_sale_line_id', 'return_lines', ['sale_line_id'])

    op.create_table(
        'exchange_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_id', sa.Integer(), nullable=False),
        sa.Column('sale_line_id', sa.Integer(), nullable=False),
        sa.Column('original_product_id', sa.Integer(), nullable=False),
        sa.Column('replacement_product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price_difference_cents', sa.Integer(), nullable=False, server_default='0'),
        _created_at(),
        sa.CheckConstraint('quantity > 0', name='ck_exchange_lines_quantity_positive'),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id'], ),
        sa.ForeignKeyConstraint(['sale_line_id'], ['sale_lines.id'], ),
        sa.ForeignKeyConstraint(['original_product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['replacement_product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_exchange_lines_return_id', 'exchange_lines', ['return_id'])
    op.create_index('ix_exchange_lines_sale_line_id', 'exchange_lines', ['sale_line_id'])

    # ============================================================================
    # store credit: balance is the fold over transactions, never stored
    # ============================================================================
    op.create_table(
        'store_credit_accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('last_transaction_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('customer_id', name='uq_store_credit_accounts_customer'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_store_credit_accounts_customer_id', 'store_credit_accounts', ['customer_id'])

    op.create_table(
        'store_credit_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=8), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('sale_id', sa.Integer(), nullable=True),
        sa.Column('return_id', sa.Integer(), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('amount_cents > 0', name='ck_store_credit_txn_amount_positive'),
        sa.ForeignKeyConstraint(['account_id'], ['store_credit_accounts.id'], ),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'transaction_type', 'reference', name='uq_store_credit_txn_reference'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_store_credit_transactions_account_id', 'store_credit_transactions', ['account_id'])
    op.create_index('ix_store_credit_transactions_transaction_type', 'store_credit_transactions',
                    ['transaction_type'])
    op.create_index('ix_store_credit_transactions_sale_id', 'store_credit_transactions', ['sale_id'])
    op.create_index('ix_store_credit_transactions_return_id', 'store_credit_transactions', ['return_id'])
    op.create_index('ix_store_credit_transactions_occurred_at', 'store_credit_transactions', ['occurred_at'])
    op.create_index('ix_store_credit_txns_account_occurred', 'store_credit_transactions',
                    ['account_id', 'occurred_at'])

    # ============================================================================
    # import_records: one row per accepted supplier import fingerprint
    # ============================================================================
    op.create_table(
        'import_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('fingerprint', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('supplier_id', sa.String(length=64), nullable=True),
        sa.Column('document_number', sa.String(length=64), nullable=True),
        sa.Column('emission_date', sa.String(length=10), nullable=True),
        sa.Column('line_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('fingerprint', name='uq_import_records_fingerprint'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_import_records_supplier_document', 'import_records', ['supplier_id', 'document_number'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('import_records')
    op.drop_table('store_credit_transactions')
    op.drop_table('store_credit_accounts')
    op.drop_table('exchange_lines')
    op.drop_table('return_lines')
    op.drop_table('returns')
    op.drop_table('sale_lines')
    op.drop_table('sales')
    op.drop_table('customers')
    op.drop_table('stock_movements')
    op.drop_table('stock_reservations')
    op.drop_table('products')
