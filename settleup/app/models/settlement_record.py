"""
models/settlement_record.py — Accepted settlement table definition.

A SettlementRecord is created when a user accepts one of the settlements
computed by the optimisation engine. The engine itself never reads or writes
this table; it only produces the {from, to, amount, currency} triples that
become new rows.

No business logic. Status transitions live in
services/settlement_record_service.py.

Key design points:
  - `amount` uses Numeric(12, 2), never Float.
  - CHECK(payer_id <> payee_id) mirrors the engine's Settlement invariant.
  - Both status columns are stored as VARCHAR + CHECK (native_enum=False)
    so the same model runs on PostgreSQL and on the SQLite test database.
  - group_id / payer_id / payee_id are external identifiers: groups and users
    are owned by other services, so there are no foreign keys here.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum, Index, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from settleup.app.extensions import db


class SettlementStatus(str, enum.Enum):
    PENDING   = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Ensure SQLAlchemy stores enum values (e.g., 'pending'), not names ('PENDING')."""
    return [member.value for member in enum_cls]


class SettlementRecord(db.Model):
    __tablename__ = "settlement_records"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_settlement_records_amount_positive"),
        CheckConstraint(
            "payer_id <> payee_id",
            name="ck_settlement_records_no_self_settlement",
        ),
        Index("idx_settlement_records_group_status", "group_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(nullable=False, index=True)

    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payee_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    # ISO 4217 code, upper case.
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[SettlementStatus] = mapped_column(
        Enum(
            SettlementStatus,
            name="settlement_status_enum",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
        default=SettlementStatus.PENDING,
    )

    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(
            PaymentStatus,
            name="payment_status_enum",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Set when status moves to COMPLETED.
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<SettlementRecord id={self.id} "
            f"group_id={self.group_id} "
            f"from={self.payer_id} "
            f"to={self.payee_id} "
            f"amount={self.amount} {self.currency} "
            f"status={self.status.value}/{self.payment_status.value}>"
        )
