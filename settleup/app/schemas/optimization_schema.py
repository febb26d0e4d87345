"""
schemas/optimization_schema.py — Marshmallow schemas for the optimisation
and explanation endpoints.

Validation responsibility:
  - This file: request shape, field types, decimal precision, positive
    amounts, enum values, currency code format.
  - services/debt_graph_service.py: self-debts, merging, dropping
    non-positive amounts that reach the engine from other callers.
  - services/currency_service.py: missing exchange rates (UNKNOWN_CURRENCY).

IMPORTANT: Inherits from marshmallow.Schema directly — never ma.Schema.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    validate,
    validates,
    validates_schema,
)

from settleup.app.errors import ErrorCode
from settleup.app.models.debt import CurrencyPolicy, OptimizationStrategy

_CURRENCY_CODE = validate.Regexp(
    r"^[A-Za-z]{3}$",
    error="Currency must be a 3-letter ISO 4217 code.",
)


def _validate_monetary_amount(value: Decimal) -> None:
    """
    Strictly positive, at most 3 decimal places (the widest ISO minor unit).

    More precision is REJECTED with INVALID_AMOUNT_PRECISION, never rounded.
    """
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    if value.as_tuple().exponent < -3:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_rates(rates: dict) -> None:
    for code, rate in rates.items():
        if len(code) != 3 or not code.isalpha():
            raise ValidationError(f"'{code}' is not a 3-letter currency code.")
        if rate <= Decimal("0"):
            raise ValidationError(f"Exchange rate for {code} must be greater than zero.")


class ParticipantId(fields.Field):
    """A participant id: a non-empty string or an integer (never a bool)."""

    default_error_messages = {
        "invalid": "Participant id must be a non-empty string or an integer.",
    }

    def _deserialize(self, value, attr, data, **kwargs):
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise self.make_error("invalid")
        if isinstance(value, str) and not value.strip():
            raise self.make_error("invalid")
        return value


def _upper(code: str | None) -> str | None:
    return code.upper() if code else code


# ── Sub-schemas ────────────────────────────────────────────────────────────

class DebtRecordSchema(Schema):
    """One raw debt: `from` owes `to` `amount` in `currency`."""

    debtor = ParticipantId(required=True, data_key="from")
    creditor = ParticipantId(required=True, data_key="to")
    amount = fields.Decimal(required=True, validate=_validate_monetary_amount)
    currency = fields.Str(required=True, validate=_CURRENCY_CODE)

    @validates_schema
    def validate_not_self(self, data, **kwargs):
        if data.get("debtor") is not None and data.get("debtor") == data.get("creditor"):
            raise ValidationError("A participant cannot owe themselves.", field_name="to")


class FriendshipSchema(Schema):
    user_1 = ParticipantId(required=True)
    user_2 = ParticipantId(required=True)
    strength = fields.Decimal(
        required=True,
        validate=validate.Range(
            min=Decimal("0"),
            max=Decimal("1"),
            error="strength must be between 0 and 1.",
        ),
    )


class SettlementSchema(Schema):
    """A computed settlement as sent back by a client (explain / accept)."""

    payer = ParticipantId(required=True, data_key="from")
    payee = ParticipantId(required=True, data_key="to")
    amount = fields.Decimal(required=True, validate=_validate_monetary_amount)
    currency = fields.Str(required=True, validate=_CURRENCY_CODE)


# ── Request schemas ────────────────────────────────────────────────────────

class OptimizeRequestSchema(Schema):
    """
    POST /groups/:id/settlements/optimize

    Field rules:
      strategy             : greedy | minCashFlow | friendPreference (default greedy)
      debts                : list of DebtRecordSchema; may be empty
      exchange_rates       : {code: rate-to-reference}; reference may be omitted
      reference_currency   : defaults to the app's REFERENCE_CURRENCY
      friendships          : only read by friendPreference
      currency_policy      : reference | payer_preferred | original_debts
      preferred_currencies : {participant id: code}, used by payer_preferred
    """

    strategy = fields.Str(
        load_default=OptimizationStrategy.GREEDY.value,
        validate=validate.OneOf(
            [s.value for s in OptimizationStrategy],
            error=ErrorCode.INVALID_STRATEGY,
        ),
    )
    debts = fields.List(fields.Nested(DebtRecordSchema), required=True)
    exchange_rates = fields.Dict(
        keys=fields.Str(),
        values=fields.Decimal(),
        load_default=dict,
        validate=_validate_rates,
    )
    reference_currency = fields.Str(load_default=None, validate=_CURRENCY_CODE)
    friendships = fields.List(fields.Nested(FriendshipSchema), load_default=list)
    currency_policy = fields.Str(
        load_default=CurrencyPolicy.REFERENCE.value,
        validate=validate.OneOf(
            [p.value for p in CurrencyPolicy],
            error=ErrorCode.INVALID_CURRENCY_POLICY,
        ),
    )
    preferred_currencies = fields.Dict(
        keys=fields.Str(),
        values=fields.Str(validate=_CURRENCY_CODE),
        load_default=dict,
    )

    @validates("friendships")
    def validate_friendship_pairs(self, value, **kwargs):
        for row in value:
            if row["user_1"] == row["user_2"]:
                raise ValidationError("A friendship must name two different participants.")


class ExplainRequestSchema(Schema):
    """
    POST /groups/:id/settlements/explain

    `settlements` is the plan to explain. When omitted, the plan is computed
    first with `strategy`, so the response always describes a real result.
    """

    strategy = fields.Str(
        load_default=OptimizationStrategy.GREEDY.value,
        validate=validate.OneOf(
            [s.value for s in OptimizationStrategy],
            error=ErrorCode.INVALID_STRATEGY,
        ),
    )
    debts = fields.List(fields.Nested(DebtRecordSchema), required=True)
    settlements = fields.List(fields.Nested(SettlementSchema), load_default=None)
    exchange_rates = fields.Dict(
        keys=fields.Str(),
        values=fields.Decimal(),
        load_default=None,
        validate=_validate_rates,
    )
    reference_currency = fields.Str(load_default=None, validate=_CURRENCY_CODE)
    friendships = fields.List(fields.Nested(FriendshipSchema), load_default=list)


# ── Helpers used by routes ─────────────────────────────────────────────────

def debt_records(loaded: list[dict]) -> list[dict]:
    """Converts loaded DebtRecordSchema rows back to engine record mappings."""
    return [
        {
            "from": row["debtor"],
            "to": row["creditor"],
            "amount": row["amount"],
            "currency": _upper(row["currency"]),
        }
        for row in loaded
    ]


def preferred_currency_map(preferences: dict, records: list[dict]) -> dict:
    """
    Re-keys {participant id as JSON string: code} onto the participants'
    real ids, so integer ids match. Unknown keys are kept as strings.
    """
    by_text = {}
    for row in records:
        for pid in (row["from"], row["to"]):
            by_text.setdefault(str(pid), pid)
    return {by_text.get(key, key): code.upper() for key, code in preferences.items()}


def settlement_records(loaded: list[dict]) -> list[dict]:
    return [
        {
            "from": row["payer"],
            "to": row["payee"],
            "amount": row["amount"],
            "currency": _upper(row["currency"]),
        }
        for row in loaded
    ]
