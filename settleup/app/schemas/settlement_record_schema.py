"""
schemas/settlement_record_schema.py — Marshmallow schemas for the settlement
record lifecycle endpoints.

Transition rules (pending → processing → completed, etc.) are NOT checked
here; they need the record's current state and live in
services/settlement_record_service.py.

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
"""

from __future__ import annotations

from marshmallow import Schema, fields, validate

from settleup.app.errors import ErrorCode
from settleup.app.models.settlement_record import PaymentStatus, SettlementStatus
from settleup.app.schemas.optimization_schema import SettlementSchema


class AcceptSettlementsSchema(Schema):
    """
    POST /groups/:id/settlement-records

      settlements : required, at least one computed settlement
      created_by  : required, who accepted the plan
      notes       : optional free text, max 1000 chars
    """

    settlements = fields.List(
        fields.Nested(SettlementSchema),
        required=True,
        validate=validate.Length(min=1, error="At least one settlement is required."),
    )
    created_by = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=64),
    )
    notes = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=1000),
    )


class PaymentStatusSchema(Schema):
    """PATCH /settlement-records/:id/payment-status"""

    payment_status = fields.Enum(
        PaymentStatus,
        by_value=True,
        required=True,
        error_messages={"unknown": ErrorCode.INVALID_STATUS},
    )


class ListSettlementRecordsQuerySchema(Schema):
    """GET /groups/:id/settlement-records?status=..."""

    status = fields.Enum(
        SettlementStatus,
        by_value=True,
        load_default=None,
        error_messages={"unknown": ErrorCode.INVALID_STATUS},
    )
