"""Count failed withdrawals per escrow.

Revision ID: 002_withdraw_attempts
Revises: 001_initial
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002_withdraw_attempts'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table('escrows') as batch_op:
        batch_op.add_column(
            sa.Column('withdraw_attempts', sa.Integer(), nullable=False, server_default='0')
        )


def downgrade() -> None:
    with op.batch_alter_table('escrows') as batch_op:
        batch_op.drop_column('withdraw_attempts')
