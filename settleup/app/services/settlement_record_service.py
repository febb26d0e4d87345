"""
services/settlement_record_service.py — Lifecycle of accepted settlements.

This is the collaborator side of the engine: once a user accepts a computed
plan, each {from, to, amount, currency} triple becomes a SettlementRecord in
pending/pending. The optimisation engine never calls into this module.

Lifecycle rules:
  payment_status:  pending → processing → completed
                                        → failed → processing (retry)
  status:          pending → completed   only when payment_status is completed
                   pending → cancelled   terminal; not while a payment is processing

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility. Only flush here.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from settleup.app.errors import AppError, ErrorCode, InvalidDebtError, InvalidStatusTransitionError
from settleup.app.models.debt import Settlement
from settleup.app.models.settlement_record import PaymentStatus, SettlementRecord, SettlementStatus
from settleup.app.services.cache_service import OptimizationCache

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING:    frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.FAILED:     frozenset({PaymentStatus.PROCESSING}),
    PaymentStatus.COMPLETED:  frozenset(),
}


# ── Private helpers ────────────────────────────────────────────────────────

def _get_record(record_id: int, session: Session) -> SettlementRecord:
    record = session.get(SettlementRecord, record_id)
    if record is None:
        raise AppError(
            ErrorCode.SETTLEMENT_RECORD_NOT_FOUND,
            f"Settlement record {record_id} does not exist.",
            404,
        )
    return record


def _as_settlement(item) -> Settlement:
    if isinstance(item, Settlement):
        return item
    return Settlement(
        payer=item["from"],
        payee=item["to"],
        amount=Decimal(str(item["amount"])),
        currency=str(item["currency"]).upper(),
    )


# ── Public service functions ───────────────────────────────────────────────

def accept_settlements(
        group_id: int,
        settlements: Iterable,
        created_by: str,
        session: Session,
        notes: str | None = None,
        cache: OptimizationCache | None = None,
) -> list[SettlementRecord]:
    """
    Persists each computed settlement as a pending/pending record.

    The group's cached optimisation results are invalidated afterwards:
    once payments are in flight the group's debts are about to change.

    Raises:
        InvalidDebtError -- a settlement with payer == payee or amount <= 0.
    """
    records: list[SettlementRecord] = []
    for index, item in enumerate(settlements):
        settlement = _as_settlement(item)
        if settlement.payer == settlement.payee:
            raise InvalidDebtError(
                f"Settlement {index}: participant {settlement.payer!r} cannot pay themselves.",
                field="to",
            )
        if settlement.amount <= Decimal("0"):
            raise InvalidDebtError(
                f"Settlement {index} must have a positive amount.",
                field="amount",
            )

        record = SettlementRecord(
            group_id=group_id,
            payer_id=str(settlement.payer),
            payee_id=str(settlement.payee),
            amount=settlement.amount,
            currency=settlement.currency,
            status=SettlementStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            created_by=str(created_by),
            notes=notes,
        )
        session.add(record)
        records.append(record)

    session.flush()

    if cache is not None:
        cache.invalidate_group(group_id)

    logger.info("Accepted %d settlement(s) for group %s", len(records), group_id)
    return records


def list_settlement_records(
        group_id: int,
        session: Session,
        status: SettlementStatus | None = None,
) -> list[SettlementRecord]:
    """Returns a group's records, newest first, optionally filtered by status."""
    stmt = select(SettlementRecord).where(SettlementRecord.group_id == group_id)
    if status is not None:
        stmt = stmt.where(SettlementRecord.status == status)
    stmt = stmt.order_by(SettlementRecord.created_at.desc(), SettlementRecord.id.desc())
    return list(session.execute(stmt).scalars().all())


def update_payment_status(
        record_id: int,
        payment_status: PaymentStatus,
        session: Session,
) -> SettlementRecord:
    """
    Moves payment_status along PAYMENT_TRANSITIONS.

    Reaching COMPLETED also completes the record itself. Cancelled records
    accept no further payment updates.

    Raises:
        AppError(SETTLEMENT_RECORD_NOT_FOUND, 404)
        InvalidStatusTransitionError (409)
    """
    record = _get_record(record_id, session)

    if record.status is SettlementStatus.CANCELLED:
        raise InvalidStatusTransitionError(
            record_id, "payment_status", record.payment_status.value, payment_status.value,
        )
    if payment_status not in PAYMENT_TRANSITIONS[record.payment_status]:
        raise InvalidStatusTransitionError(
            record_id, "payment_status", record.payment_status.value, payment_status.value,
        )

    record.payment_status = payment_status
    if payment_status is PaymentStatus.COMPLETED:
        record.status = SettlementStatus.COMPLETED
        record.completed_at = datetime.now(timezone.utc)

    session.flush()
    return record


def cancel_settlement_record(record_id: int, session: Session) -> SettlementRecord:
    """
    Cancels a pending record. Terminal.

    Raises InvalidStatusTransitionError when the record is not pending or
    its payment is already processing.
    """
    record = _get_record(record_id, session)

    if record.status is not SettlementStatus.PENDING:
        raise InvalidStatusTransitionError(
            record_id, "status", record.status.value, SettlementStatus.CANCELLED.value,
        )
    if record.payment_status is PaymentStatus.PROCESSING:
        raise InvalidStatusTransitionError(
            record_id, "status", "pending (payment processing)", SettlementStatus.CANCELLED.value,
        )

    record.status = SettlementStatus.CANCELLED
    session.flush()
    return record
