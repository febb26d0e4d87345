"""
routes/optimization.py — Settlement optimisation and explanation handlers.

Layer rules:
  - Parse, validate, call the engine, return envelope.
  - No business logic. No DB access: the engine is a pure computation over
    the debts in the request body.

Endpoints (base url_prefix=/api/v1/groups):
  POST /groups/:id/settlements/optimize  → 200  minimal settlement plan
  POST /groups/:id/settlements/explain   → 200  explanation bundle
"""

from __future__ import annotations

from decimal import Decimal

from flask import Blueprint, current_app, jsonify, request

from settleup.app.extensions import CACHE_EXTENSION_KEY
from settleup.app.schemas.optimization_schema import (
    ExplainRequestSchema,
    OptimizeRequestSchema,
    debt_records,
    preferred_currency_map,
    settlement_records,
)
from settleup.app.services import explanation_service, optimization_service

optimization_bp = Blueprint("optimization", __name__)


def _engine_options(group_id: int, reference_currency: str | None) -> dict:
    """Keyword arguments compute_settlements() takes from app config."""
    config = current_app.config
    return {
        "reference_currency": (reference_currency or config["REFERENCE_CURRENCY"]).upper(),
        "cache": current_app.extensions.get(CACHE_EXTENSION_KEY),
        "group_id": group_id,
        "tolerance": Decimal(str(config["BALANCE_TOLERANCE"])),
        "decimal_places": config["CURRENCY_DECIMAL_PLACES"],
    }


@optimization_bp.route("/<int:group_id>/settlements/optimize", methods=["POST"])
def optimize_settlements(group_id: int):
    """
    POST /groups/:id/settlements/optimize — Compute the settlement plan.

    Amounts in the response are strings. An empty `settlements` list means
    the group is already square.
    """
    data = OptimizeRequestSchema().load(request.get_json(force=True) or {})
    records = debt_records(data["debts"])
    options = _engine_options(group_id, data["reference_currency"])

    settlements = optimization_service.compute_settlements(
        records,
        data["strategy"],
        data["exchange_rates"],
        data["friendships"],
        currency_policy=data["currency_policy"],
        preferred_currencies=preferred_currency_map(data["preferred_currencies"], records),
        **options,
    )

    return jsonify({
        "data": {
            "group_id": group_id,
            "strategy": data["strategy"],
            "reference_currency": options["reference_currency"],
            "currency_policy": data["currency_policy"],
            "settlements": [s.to_dict() for s in settlements],
        },
        "warnings": [],
    }), 200


@optimization_bp.route("/<int:group_id>/settlements/explain", methods=["POST"])
def explain_settlements(group_id: int):
    """
    POST /groups/:id/settlements/explain — Explain a settlement plan.

    When the body carries no `settlements`, the plan is computed first with
    the requested strategy (reference-currency amounts).
    """
    data = ExplainRequestSchema().load(request.get_json(force=True) or {})
    records = debt_records(data["debts"])
    options = _engine_options(group_id, data["reference_currency"])

    if data["settlements"] is None:
        settlements = optimization_service.compute_settlements(
            records,
            data["strategy"],
            data["exchange_rates"],
            data["friendships"],
            **options,
        )
    else:
        settlements = settlement_records(data["settlements"])

    bundle = explanation_service.explain_settlements(
        records,
        settlements,
        data["strategy"],
        exchange_rates=data["exchange_rates"],
        reference_currency=options["reference_currency"],
    )
    return jsonify({"data": bundle, "warnings": []}), 200
