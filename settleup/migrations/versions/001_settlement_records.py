"""Settlement records — accepted settlements and their lifecycle.

Revision: 001_settlement_records
Created:  2026-10-18

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Both status columns are VARCHAR + CHECK rather than PostgreSQL enum types,
matching the models (native_enum=False), so no CREATE TYPE step is needed.
group_id / payer_id / payee_id reference entities owned by other services;
there are no foreign keys.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_settlement_records"
down_revision: str | None = None      # first migration — no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def upgrade() -> None:
    op.create_table(
        "settlement_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("group_id", sa.Integer(), nullable=False),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("payee_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "completed", "cancelled",
                name="settlement_status_enum",
                native_enum=False,
                length=16,
                create_constraint=True,
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "payment_status",
            sa.Enum(
                "pending", "processing", "completed", "failed",
                name="payment_status_enum",
                native_enum=False,
                length=16,
                create_constraint=True,
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_settlement_records"),
        sa.CheckConstraint("amount > 0", name="ck_settlement_records_amount_positive"),
        sa.CheckConstraint(
            "payer_id <> payee_id",
            name="ck_settlement_records_no_self_settlement",
        ),
    )

    op.create_index(
        "ix_settlement_records_group_id",
        "settlement_records",
        ["group_id"],
    )
    # Listing a group's open records filters on (group_id, status).
    op.create_index(
        "idx_settlement_records_group_status",
        "settlement_records",
        ["group_id", "status"],
    )


def downgrade() -> None:
    op.drop_index("idx_settlement_records_group_status", table_name="settlement_records")
    op.drop_index("ix_settlement_records_group_id", table_name="settlement_records")
    op.drop_table("settlement_records")
