"""Add gateway_charges table

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade():
    # One row per gateway charge attempt for a booking
    op.create_table(
        'gateway_charges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('booking_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('gateway_reference', sa.String(), nullable=True),
        sa.Column('error_code', sa.String(), nullable=True),
        sa.Column('wallet_transaction_id', sa.Integer(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['wallet_transaction_id'], ['wallet_transactions.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_gateway_charges_id'), 'gateway_charges', ['id'], unique=False)
    op.create_index(op.f('ix_gateway_charges_booking_id'), 'gateway_charges', ['booking_id'], unique=False)
    op.create_index(op.f('ix_gateway_charges_user_id'), 'gateway_charges', ['user_id'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_gateway_charges_user_id'), table_name='gateway_charges')
    op.drop_index(op.f('ix_gateway_charges_booking_id'), table_name='gateway_charges')
    op.drop_index(op.f('ix_gateway_charges_id'), table_name='gateway_charges')
    op.drop_table('gateway_charges')
