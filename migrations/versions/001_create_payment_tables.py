"""Create payments and user_derivation_state tables

Revision ID: 001_create_payment_tables
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_create_payment_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

CURRENCIES = ("SOL", "USDC")
PAYMENT_STATUSES = ("pending", "confirmed", "expired", "failed")


def upgrade() -> None:
    """Create both tables with their indexes."""
    op.create_table(
        "user_derivation_state",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("counter", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("encrypted_seed", sa.LargeBinary(), nullable=False),
        sa.Column("total_payments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_user_derivation_state_user_id",
        "user_derivation_state",
        ["user_id"],
        unique=True,
    )

    op.create_table(
        "payments",
        sa.Column("reference", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("counter", sa.Integer(), nullable=True),
        sa.Column("derivation_path", sa.String(255), nullable=True),
        sa.Column("amount", sa.Numeric(20, 9), nullable=False),
        sa.Column("currency", sa.Enum(*CURRENCIES, name="currency"), nullable=False),
        sa.Column("recipient_address", sa.String(64), nullable=False),
        sa.Column("fee_amount", sa.Numeric(20, 9), nullable=False),
        sa.Column("total_amount_due", sa.Numeric(20, 9), nullable=False),
        sa.Column(
            "status", sa.Enum(*PAYMENT_STATUSES, name="payment_status"), nullable=False
        ),
        sa.Column("label", sa.String(255), nullable=True),
        sa.Column("message", sa.String(1024), nullable=True),
        sa.Column("memo", sa.String(566), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signature", sa.String(128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    # The monitor scans pending payments by age
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])
    op.create_index("ix_payments_user_id", "payments", ["user_id"])


def downgrade() -> None:
    """Drop both tables and their enum types."""
    op.drop_index("ix_payments_user_id", table_name="payments")
    op.drop_index("ix_payments_created_at", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_user_derivation_state_user_id", table_name="user_derivation_state")
    op.drop_table("user_derivation_state")
    sa.Enum(*PAYMENT_STATUSES, name="payment_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(*CURRENCIES, name="currency").drop(op.get_bind(), checkfirst=True)
