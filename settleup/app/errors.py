"""
errors.py — AppError base class, engine error types and error code registry.

Every error surfaced by the settlement engine or its HTTP adapter must use a
code defined here. Do not raise strings or generic exceptions from service or
route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Engine errors are pure values: no partial settlement list is ever
    returned alongside one.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    INVALID_STRATEGY           = "INVALID_STRATEGY"
    INVALID_CURRENCY_POLICY    = "INVALID_CURRENCY_POLICY"
    INVALID_STATUS             = "INVALID_STATUS"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    SETTLEMENT_RECORD_NOT_FOUND = "SETTLEMENT_RECORD_NOT_FOUND"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    INVALID_STATUS_TRANSITION  = "INVALID_STATUS_TRANSITION"

    # ── Engine Input Errors (422) ──────────────────────────────────────────
    # Caller bugs: never retried, surfaced immediately.
    INVALID_DEBT               = "INVALID_DEBT"
    UNKNOWN_CURRENCY           = "UNKNOWN_CURRENCY"
    INVALID_FRIENDSHIP         = "INVALID_FRIENDSHIP"

    # ── Engine Integrity Errors (500) ──────────────────────────────────────
    # Upstream data corruption (builder or normaliser). Never masked.
    UNBALANCED_GRAPH           = "UNBALANCED_GRAPH"
    CURRENCY_MISMATCH          = "CURRENCY_MISMATCH"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"


# ── Engine error types ─────────────────────────────────────────────────────
#
# Thin AppError subclasses so callers can `except UnbalancedGraphError`
# while the Flask handler still renders them through AppError.to_dict().
# ──────────────────────────────────────────────────────────────────────────

class InvalidDebtError(AppError):
    """Malformed debt input, e.g. a self-debt or a non-numeric amount."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(ErrorCode.INVALID_DEBT, message, 422, field=field)


class UnbalancedGraphError(AppError):
    """Balances do not net to zero. Indicates upstream corruption."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.UNBALANCED_GRAPH, message, 500)


class UnknownCurrencyError(AppError):
    """An exchange rate is missing for a currency present in the input."""

    def __init__(self, currencies: list[str] | tuple[str, ...]) -> None:
        self.currencies = tuple(sorted(set(currencies)))
        super().__init__(
            ErrorCode.UNKNOWN_CURRENCY,
            "No exchange rate available for: "
            f"{', '.join(self.currencies)}.",
            422,
            field="exchange_rates",
        )


class CurrencyMismatchError(AppError):

    def __init__(self, currencies) -> None:
        self.currencies = tuple(sorted(set(currencies)))
        super().__init__(
            ErrorCode.CURRENCY_MISMATCH,
            "Expected a single-currency debt graph, found: "
            f"{', '.join(self.currencies)}.",
            500,
        )


class InvalidStatusTransitionError(AppError):

    def __init__(self, record_id: int, attribute: str, current: str, target: str) -> None:
        super().__init__(
            ErrorCode.INVALID_STATUS_TRANSITION,
            f"Settlement record {record_id} cannot move {attribute} "
            f"from '{current}' to '{target}'.",
            409,
            field=attribute,
        )

