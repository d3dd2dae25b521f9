"""Add quoted_lamports to payments

Revision ID: 002_add_quoted_lamports
Revises: 001_create_payment_tables
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_add_quoted_lamports"
down_revision: str | None = "001_create_payment_tables"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("payments", sa.Column("quoted_lamports", sa.BigInteger(), nullable=True))


def downgrade() -> None:
    op.drop_column("payments", "quoted_lamports")
