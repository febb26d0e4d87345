"""
Unit tests for settlement_record_service lifecycle rules.

DB-free: the session is a MagicMock and records are real (transient)
SettlementRecord instances, so enum attributes behave as they do in the app.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from settleup.app.errors import AppError, ErrorCode, InvalidDebtError, InvalidStatusTransitionError
from settleup.app.models.debt import Settlement
from settleup.app.models.settlement_record import PaymentStatus, SettlementRecord, SettlementStatus
from settleup.app.services import settlement_record_service


def _record(
        status: SettlementStatus = SettlementStatus.PENDING,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
) -> SettlementRecord:
    return SettlementRecord(
        id=5,
        group_id=1,
        payer_id="a",
        payee_id="b",
        amount=Decimal("10.00"),
        currency="USD",
        status=status,
        payment_status=payment_status,
        created_by="a",
    )


def _session_returning(record) -> MagicMock:
    session = MagicMock()
    session.get.return_value = record
    return session


# ── accept_settlements ─────────────────────────────────────────────────────

def test_accept_creates_pending_records_and_flushes():
    session = MagicMock()
    cache = MagicMock()

    records = settlement_record_service.accept_settlements(
        group_id=3,
        settlements=[
            Settlement("a", "b", Decimal("10.00"), "USD"),
            {"from": 7, "to": 8, "amount": "2.50", "currency": "eur"},
        ],
        created_by="a",
        session=session,
        cache=cache,
    )

    assert [(r.payer_id, r.payee_id, r.amount, r.currency) for r in records] == [
        ("a", "b", Decimal("10.00"), "USD"),
        ("7", "8", Decimal("2.50"), "EUR"),
    ]
    assert all(r.status is SettlementStatus.PENDING for r in records)
    assert all(r.payment_status is PaymentStatus.PENDING for r in records)
    assert session.add.call_count == 2
    session.flush.assert_called_once()
    session.commit.assert_not_called()
    cache.invalidate_group.assert_called_once_with(3)


def test_accept_rejects_self_settlement():
    session = MagicMock()
    with pytest.raises(InvalidDebtError):
        settlement_record_service.accept_settlements(
            group_id=1,
            settlements=[Settlement("a", "a", Decimal("1"), "USD")],
            created_by="a",
            session=session,
        )
    session.flush.assert_not_called()


def test_accept_rejects_non_positive_amount():
    with pytest.raises(InvalidDebtError) as exc_info:
        settlement_record_service.accept_settlements(
            group_id=1,
            settlements=[Settlement("a", "b", Decimal("0"), "USD")],
            created_by="a",
            session=MagicMock(),
        )
    assert exc_info.value.field == "amount"


# ── update_payment_status ──────────────────────────────────────────────────

def test_update_raises_not_found():
    with pytest.raises(AppError) as exc_info:
        settlement_record_service.update_payment_status(404, PaymentStatus.PROCESSING, _session_returning(None))
    assert exc_info.value.code == ErrorCode.SETTLEMENT_RECORD_NOT_FOUND
    assert exc_info.value.http_status == 404


@pytest.mark.parametrize("current,target", [
    (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
    (PaymentStatus.PROCESSING, PaymentStatus.FAILED),
    (PaymentStatus.FAILED, PaymentStatus.PROCESSING),
])
def test_allowed_payment_transitions(current, target):
    record = _record(payment_status=current)
    session = _session_returning(record)

    result = settlement_record_service.update_payment_status(5, target, session)

    assert result.payment_status is target
    assert result.status is SettlementStatus.PENDING
    session.flush.assert_called_once()


def test_completing_payment_completes_record():
    record = _record(payment_status=PaymentStatus.PROCESSING)

    result = settlement_record_service.update_payment_status(
        5, PaymentStatus.COMPLETED, _session_returning(record),
    )

    assert result.status is SettlementStatus.COMPLETED
    assert result.completed_at is not None


@pytest.mark.parametrize("current,target", [
    (PaymentStatus.PENDING, PaymentStatus.COMPLETED),
    (PaymentStatus.PENDING, PaymentStatus.FAILED),
    (PaymentStatus.FAILED, PaymentStatus.COMPLETED),
    (PaymentStatus.COMPLETED, PaymentStatus.PROCESSING),
    (PaymentStatus.PROCESSING, PaymentStatus.PROCESSING),
])
def test_forbidden_payment_transitions(current, target):
    record = _record(payment_status=current)
    session = _session_returning(record)

    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        settlement_record_service.update_payment_status(5, target, session)

    assert exc_info.value.http_status == 409
    assert exc_info.value.field == "payment_status"
    assert record.payment_status is current
    session.flush.assert_not_called()


def test_cancelled_record_accepts_no_payment_updates():
    record = _record(status=SettlementStatus.CANCELLED)
    with pytest.raises(InvalidStatusTransitionError):
        settlement_record_service.update_payment_status(
            5, PaymentStatus.PROCESSING, _session_returning(record),
        )


# ── cancel_settlement_record ───────────────────────────────────────────────

@pytest.mark.parametrize("payment_status", [PaymentStatus.PENDING, PaymentStatus.FAILED])
def test_cancel_pending_record(payment_status):
    record = _record(payment_status=payment_status)
    result = settlement_record_service.cancel_settlement_record(5, _session_returning(record))
    assert result.status is SettlementStatus.CANCELLED


def test_cancel_refused_while_processing():
    record = _record(payment_status=PaymentStatus.PROCESSING)
    with pytest.raises(InvalidStatusTransitionError):
        settlement_record_service.cancel_settlement_record(5, _session_returning(record))
    assert record.status is SettlementStatus.PENDING


@pytest.mark.parametrize("status", [SettlementStatus.COMPLETED, SettlementStatus.CANCELLED])
def test_cancel_refused_for_terminal_records(status):
    record = _record(status=status)
    with pytest.raises(InvalidStatusTransitionError) as exc_info:
        settlement_record_service.cancel_settlement_record(5, _session_returning(record))
    assert exc_info.value.code == ErrorCode.INVALID_STATUS_TRANSITION


# ── list_settlement_records ────────────────────────────────────────────────

def test_list_returns_rows_from_query():
    session = MagicMock()
    rows = [_record(), _record()]
    session.execute.return_value.scalars.return_value.all.return_value = rows

    result = settlement_record_service.list_settlement_records(1, session, SettlementStatus.PENDING)

    assert result == rows
    session.execute.assert_called_once()
