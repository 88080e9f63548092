"""Create orders table

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

INDEXES = {
    'ix_orders_id': ['id'],
    'ix_orders_session_id': ['session_id'],
    'ix_orders_status': ['status'],
    'ix_orders_email': ['email'],
    'ix_orders_user_id': ['user_id'],
}


def upgrade() -> None:
    # Check if table already exists (in case it was created by Base.metadata.create_all)
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'orders' not in existing_tables:
        op.create_table(
            'orders',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('session_id', sa.String(length=255), nullable=False),
            sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='stripe'),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
            sa.Column('total', sa.Numeric(12, 2), nullable=True),
            sa.Column('currency', sa.String(length=8), nullable=True),
            sa.Column('client_total', sa.Numeric(12, 2), nullable=True),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('user_id', sa.String(length=255), nullable=True),
            sa.Column('customer_name', sa.String(length=255), nullable=True),
            sa.Column('items', sa.JSON(none_as_null=True), nullable=True),
            sa.Column('location', sa.String(length=255), nullable=True),
            sa.Column('subtotal', sa.Numeric(12, 2), nullable=True),
            sa.Column('shipping', sa.Numeric(12, 2), nullable=True),
            sa.Column('tax', sa.Numeric(12, 2), nullable=True),
            sa.Column('discount_code', sa.String(length=64), nullable=True),
            sa.Column('discount_amount', sa.Numeric(12, 2), nullable=True),
            sa.Column('tip_amount', sa.Numeric(12, 2), nullable=True),
            sa.Column('error', sa.Text(), nullable=True),
            sa.Column('ipn_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('session_id', name='uq_orders_session_id'),
        )
        for name, columns in INDEXES.items():
            op.create_index(name, 'orders', columns)
    else:
        # Table exists, but check if indexes exist and create them if missing
        existing_indexes = [idx['name'] for idx in inspector.get_indexes('orders')]
        for name, columns in INDEXES.items():
            if name not in existing_indexes:
                op.create_index(name, 'orders', columns)


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    if 'orders' in inspector.get_table_names():
        for name in INDEXES:
            op.drop_index(name, table_name='orders')
        op.drop_table('orders')
