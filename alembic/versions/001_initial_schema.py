"""Initial schema for the swap registry.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Swaps table (amounts are exact decimal strings)
    op.create_table(
        'swaps',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('hashlock', sa.String(64), nullable=False),
        sa.Column('secret', sa.String(64), nullable=True),
        sa.Column('source_chain', sa.String(20), nullable=False),
        sa.Column('destination_chain', sa.String(20), nullable=False),
        sa.Column('principal_amount', sa.String(80), nullable=False),
        sa.Column('counter_amount', sa.String(80), nullable=False),
        sa.Column('initiator_address', sa.String(128), nullable=False),
        sa.Column('beneficiary_address', sa.String(128), nullable=False),
        sa.Column('source_timelock', sa.BigInteger(), nullable=False),
        sa.Column('destination_timelock', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('rate_source', sa.String(50), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('hashlock')
    )
    op.create_index('ix_swaps_hashlock', 'swaps', ['hashlock'])
    op.create_index('ix_swaps_status', 'swaps', ['status'])
    op.create_index('ix_swaps_destination_timelock', 'swaps', ['destination_timelock'])

    # Partial fills table
    op.create_table(
        'partial_fills',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('swap_id', sa.String(32), nullable=False),
        sa.Column('escrow_reference', sa.String(255), nullable=False),
        sa.Column('amount', sa.String(80), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['swap_id'], ['swaps.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_partial_fills_swap_escrow', 'partial_fills', ['swap_id', 'escrow_reference'], unique=True
    )

    # Escrows table
    op.create_table(
        'escrows',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('swap_id', sa.String(32), nullable=False),
        sa.Column('chain', sa.String(20), nullable=False),
        sa.Column('side', sa.String(20), nullable=False),
        sa.Column('escrow_reference', sa.String(255), nullable=False),
        sa.Column('amount', sa.String(80), nullable=False),
        sa.Column('timelock', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('owned', sa.Boolean(), nullable=False, default=False),
        sa.Column('tx_ref', sa.String(255), nullable=True),
        sa.Column('refund_attempts', sa.Integer(), nullable=False, default=0),
        sa.Column('alerted', sa.Boolean(), nullable=False, default=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['swap_id'], ['swaps.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_escrows_swap_id', 'escrows', ['swap_id'])
    op.create_index('ix_escrows_chain_reference', 'escrows', ['chain', 'escrow_reference'], unique=True)

    # Swap intents table
    op.create_table(
        'swap_intents',
        sa.Column('id', sa.String(32), nullable=False),
        sa.Column('hashlock', sa.String(64), nullable=False),
        sa.Column('source_chain', sa.String(20), nullable=False),
        sa.Column('destination_chain', sa.String(20), nullable=False),
        sa.Column('amount', sa.String(80), nullable=False),
        sa.Column('beneficiary_address', sa.String(128), nullable=False),
        sa.Column('timelock', sa.BigInteger(), nullable=False),
        sa.Column('auction_start', sa.String(80), nullable=False),
        sa.Column('auction_floor', sa.String(80), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('hashlock')
    )
    op.create_index('ix_swap_intents_hashlock', 'swap_intents', ['hashlock'])

    # Chain cursors table
    op.create_table(
        'chain_cursors',
        sa.Column('chain', sa.String(20), nullable=False),
        sa.Column('sequence', sa.BigInteger(), nullable=False, default=0),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('chain')
    )

    # Operator alerts table
    op.create_table(
        'operator_alerts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('swap_id', sa.String(32), nullable=True),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_operator_alerts_swap_id', 'operator_alerts', ['swap_id'])


def downgrade() -> None:
    op.drop_table('operator_alerts')
    op.drop_table('chain_cursors')
    op.drop_table('swap_intents')
    op.drop_table('escrows')
    op.drop_table('partial_fills')
    op.drop_table('swaps')
