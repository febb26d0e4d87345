"""
routes/settlement_records.py — Accepted settlement lifecycle handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries.

Registered at /api/v1 (not /api/v1/settlement-records) because it owns BOTH
the group-scoped paths and the record-scoped ones.

Endpoints:
  POST  /groups/:id/settlement-records              → 201  accept a plan
  GET   /groups/:id/settlement-records[?status=]    → 200  list a group's records
  PATCH /settlement-records/:id/payment-status      → 200  payment transition
  POST  /settlement-records/:id/cancel              → 200  cancel a pending record
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from settleup.app.extensions import CACHE_EXTENSION_KEY, db
from settleup.app.models.settlement_record import SettlementRecord
from settleup.app.schemas.optimization_schema import settlement_records
from settleup.app.schemas.settlement_record_schema import (
    AcceptSettlementsSchema,
    ListSettlementRecordsQuerySchema,
    PaymentStatusSchema,
)
from settleup.app.services import settlement_record_service

settlement_records_bp = Blueprint("settlement_records", __name__)


def _serialize_record(r: SettlementRecord) -> dict:
    return {
        "id": r.id,
        "group_id": r.group_id,
        "from": r.payer_id,
        "to": r.payee_id,
        "amount": str(r.amount),
        "currency": r.currency,
        "status": r.status.value,
        "payment_status": r.payment_status.value,
        "created_by": r.created_by,
        "notes": r.notes,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "updated_at": r.updated_at.isoformat() if r.updated_at else None,
        "completed_at": r.completed_at.isoformat() if r.completed_at else None,
    }


@settlement_records_bp.route("/groups/<int:group_id>/settlement-records", methods=["POST"])
def accept_settlements(group_id: int):
    """POST /groups/:id/settlement-records — Persist an accepted plan."""
    data = AcceptSettlementsSchema().load(request.get_json(force=True) or {})
    records = settlement_record_service.accept_settlements(
        group_id=group_id,
        settlements=settlement_records(data["settlements"]),
        created_by=data["created_by"],
        session=db.session,
        notes=data["notes"],
        cache=current_app.extensions.get(CACHE_EXTENSION_KEY),
    )
    db.session.commit()
    return jsonify({
        "data": [_serialize_record(r) for r in records],
        "warnings": [],
    }), 201


@settlement_records_bp.route("/groups/<int:group_id>/settlement-records", methods=["GET"])
def list_settlement_records(group_id: int):
    query = ListSettlementRecordsQuerySchema().load(request.args.to_dict())
    records = settlement_record_service.list_settlement_records(
        group_id=group_id,
        session=db.session,
        status=query["status"],
    )
    return jsonify({
        "data": [_serialize_record(r) for r in records],
        "warnings": [],
    }), 200


@settlement_records_bp.route("/settlement-records/<int:record_id>/payment-status", methods=["PATCH"])
def update_payment_status(record_id: int):
    """PATCH /settlement-records/:id/payment-status — Move the payment along."""
    data = PaymentStatusSchema().load(request.get_json(force=True) or {})
    record = settlement_record_service.update_payment_status(
        record_id=record_id,
        payment_status=data["payment_status"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_record(record), "warnings": []}), 200


@settlement_records_bp.route("/settlement-records/<int:record_id>/cancel", methods=["POST"])
def cancel_settlement_record(record_id: int):
    record = settlement_record_service.cancel_settlement_record(
        record_id=record_id,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_record(record), "warnings": []}), 200
