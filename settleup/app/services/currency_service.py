"""
services/currency_service.py — Exchange-rate normalisation and settlement
re-denomination.

Numeric policy:
  amount_ref = amount × rate[currency] / rate[reference]
  rounded half-even to the target currency's minor-unit precision, so
  repeated conversions do not drift in one direction.

ExchangeRateTable is an immutable snapshot for one computation. Nothing in
this module caches rates across calls.

Layer rules:
  - No Flask imports. Pure functions over DebtGraph / Settlement values.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from types import MappingProxyType

from settleup.app.errors import AppError, ErrorCode, UnbalancedGraphError, UnknownCurrencyError
from settleup.app.models.debt import CurrencyPolicy, DebtGraph, Settlement
from settleup.app.services.debt_graph_service import graph_from_edges

logger = logging.getLogger(__name__)

DEFAULT_DECIMAL_PLACES = 2

# ISO 4217 minor units for currencies that do not use 2 decimal places.
MINOR_UNITS: Mapping[str, int] = MappingProxyType({
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "ISK": 0, "JPY": 0, "KMF": 0,
    "KRW": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "IQD": 3, "JOD": 3, "KWD": 3, "LYD": 3, "OMR": 3, "TND": 3,
})


def decimal_places(currency: str, default: int = DEFAULT_DECIMAL_PLACES) -> int:
    return MINOR_UNITS.get(currency.upper(), default)


def quantize(amount: Decimal, currency: str, default_places: int = DEFAULT_DECIMAL_PLACES) -> Decimal:
    """Rounds half-even to the currency's minor unit."""
    exponent = Decimal(1).scaleb(-decimal_places(currency, default_places))
    return amount.quantize(exponent, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class ExchangeRateTable:
    """
    Snapshot of `currency → rate-to-reference-currency`.

    The reference currency's own rate is 1 unless the table lists it
    explicitly (e.g. a table quoted against a different base).
    """
    reference_currency: str
    rates: Mapping[str, Decimal] = field(default_factory=dict)
    default_places: int = DEFAULT_DECIMAL_PLACES

    @classmethod
    def from_mapping(
            cls,
            rates: Mapping | None,
            reference_currency: str,
            default_places: int = DEFAULT_DECIMAL_PLACES,
    ) -> "ExchangeRateTable":
        """
        Validates and freezes a raw {code: rate} mapping.

        Rates must be strictly positive numbers; anything else is a caller
        bug and raises AppError(INVALID_FIELD, 422).
        """
        parsed: dict[str, Decimal] = {}
        for code, raw_rate in (rates or {}).items():
            try:
                rate = Decimal(str(raw_rate)) if isinstance(raw_rate, float) else Decimal(raw_rate)
            except (InvalidOperation, TypeError, ValueError) as exc:
                raise AppError(
                    ErrorCode.INVALID_FIELD,
                    f"Exchange rate for {code} is not a number: {raw_rate!r}.",
                    422,
                    field="exchange_rates",
                ) from exc
            if not rate.is_finite() or rate <= 0:
                raise AppError(
                    ErrorCode.INVALID_FIELD,
                    f"Exchange rate for {code} must be greater than zero.",
                    422,
                    field="exchange_rates",
                )
            parsed[str(code).upper()] = rate
        return cls(
            reference_currency=reference_currency.upper(),
            rates=MappingProxyType(parsed),
            default_places=default_places,
        )

    def knows(self, currency: str) -> bool:
        return currency == self.reference_currency or currency in self.rates

    def rate(self, currency: str) -> Decimal:
        if currency in self.rates:
            return self.rates[currency]
        if currency == self.reference_currency:
            return Decimal(1)
        raise UnknownCurrencyError([currency])

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        """Converts and rounds to the target currency's minor unit."""
        if from_currency == to_currency:
            return quantize(amount, to_currency, self.default_places)
        converted = amount * self.rate(from_currency) / self.rate(to_currency)
        return quantize(converted, to_currency, self.default_places)


def ensure_rates(currencies: Iterable[str], table: ExchangeRateTable) -> None:
    """
    Fails fast with UnknownCurrencyError naming EVERY missing currency.

    Called before any optimisation work so a missing rate never surfaces
    partway through a computation.
    """
    missing = sorted({c for c in currencies if not table.knows(c)})
    if missing:
        raise UnknownCurrencyError(missing)


def normalize_graph(graph: DebtGraph, table: ExchangeRateTable) -> DebtGraph:
    """
    Converts every edge into the table's reference currency.

    Edges that become duplicates after conversion (A→B in EUR and A→B in GBP)
    are re-merged. Participants are preserved even if a conversion rounds an
    edge to zero.
    """
    ensure_rates(graph.currencies, table)
    reference = table.reference_currency

    edges: dict[tuple, Decimal] = defaultdict(Decimal)
    for debt in graph.debts:
        amount = table.convert(debt.amount, debt.currency, reference)
        edges[(debt.debtor, debt.creditor, reference)] += amount

    normalized = graph_from_edges(edges)
    return DebtGraph(participants=graph.participants, debts=normalized.debts)


# ── Re-denomination ────────────────────────────────────────────────────────

def dominant_pair_currency(original: DebtGraph, default: str) -> Callable[[Settlement], str]:
    """
    Chooser: the currency used most often in the original debts between the
    settlement's two parties (either direction). Ties go to the
    alphabetically first code; pairs with no direct debt use `default`.
    """
    counts: dict[frozenset, Counter] = defaultdict(Counter)
    for debt in original.debts:
        counts[frozenset((debt.debtor, debt.creditor))][debt.currency] += 1

    def choose(settlement: Settlement) -> str:
        counter = counts.get(frozenset((settlement.payer, settlement.payee)))
        if not counter:
            return default
        return min(counter.items(), key=lambda item: (-item[1], item[0]))[0]

    return choose


def payer_preference(preferences: Mapping | None, default: str) -> Callable[[Settlement], str]:
    """Chooser: the payer's preferred currency, else `default`."""
    preferences = {pid: code.upper() for pid, code in (preferences or {}).items()}

    def choose(settlement: Settlement) -> str:
        return preferences.get(settlement.payer, default)

    return choose


def settlement_currency_chooser(
        policy: CurrencyPolicy,
        table: ExchangeRateTable,
        original: DebtGraph,
        preferred_currencies: Mapping | None = None,
) -> Callable[[Settlement], str] | None:
    """Returns the chooser for `policy`, or None when no conversion applies."""
    reference = table.reference_currency
    if policy is CurrencyPolicy.REFERENCE:
        return None
    if policy is CurrencyPolicy.PAYER_PREFERRED:
        return payer_preference(preferred_currencies, reference)
    if policy is CurrencyPolicy.ORIGINAL_DEBTS:
        return dominant_pair_currency(original, reference)
    raise AppError(
        ErrorCode.INVALID_CURRENCY_POLICY,
        f"Unknown currency policy {policy!r}.",
        400,
        field="currency_policy",
    )


def redenominate_settlements(
        settlements: Iterable[Settlement],
        table: ExchangeRateTable,
        choose_currency: Callable[[Settlement], str],
) -> list[Settlement]:
    """
    Converts each reference-currency settlement into the currency picked by
    `choose_currency`. Purely presentational: payer, payee and order never
    change. Every target currency is checked against the table before any
    conversion happens.
    """
    settlements = list(settlements)
    targets = [choose_currency(s).upper() for s in settlements]
    ensure_rates(targets, table)

    return [
        replace(
            settlement,
            amount=table.convert(settlement.amount, settlement.currency, target),
            currency=target,
        )
        for settlement, target in zip(settlements, targets)
    ]


def verify_redenomination(
        original: list[Settlement],
        converted: list[Settlement],
        table: ExchangeRateTable,
) -> None:
    """
    Converts `converted` back into the original currencies and checks that
    every settlement still connects the same pair and lands within rounding
    tolerance of its original amount.

    Re-denomination must never reintroduce non-zero net balances; a drift
    beyond rounding raises UnbalancedGraphError.
    """
    if len(original) != len(converted):
        raise UnbalancedGraphError(
            f"Re-denomination changed the settlement count "
            f"({len(original)} → {len(converted)})."
        )

    for before, after in zip(original, converted):
        if (before.payer, before.payee) != (after.payer, after.payee):
            raise UnbalancedGraphError(
                f"Re-denomination changed settlement pair "
                f"{before.payer}→{before.payee} to {after.payer}→{after.payee}."
            )
        back = table.convert(after.amount, after.currency, before.currency)
        tolerance = _round_trip_tolerance(after.currency, before.currency, table)
        if abs(back - before.amount) > tolerance:
            raise UnbalancedGraphError(
                f"Re-denominated settlement {before.payer}→{before.payee} drifted "
                f"from {before.amount} to {back} {before.currency}."
            )


def _round_trip_tolerance(via: str, base: str, table: ExchangeRateTable) -> Decimal:
    """Half a minor unit of `via` expressed in `base`, plus one minor unit of `base`."""
    half_via = Decimal(1).scaleb(-decimal_places(via, table.default_places)) / 2
    via_in_base = half_via * table.rate(via) / table.rate(base)
    return via_in_base + Decimal(1).scaleb(-decimal_places(base, table.default_places))
