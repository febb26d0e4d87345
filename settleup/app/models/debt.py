"""
models/debt.py — Value types flowing through the settlement engine.

These are plain frozen dataclasses, not ORM models: a DebtGraph is built fresh
per optimisation request and never persisted. Graph structure is expressed as
tuples of Debt values keyed by participant id, never as objects holding live
references to each other.

No business logic. Invariants (from != to, amount > 0) are enforced by the
builder in services/debt_graph_service.py, not by these constructors.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Hashable

ParticipantId = Hashable


class OptimizationStrategy(str, enum.Enum):
    """The closed set of settlement strategies. Values are the wire names."""
    GREEDY            = "greedy"
    MIN_CASH_FLOW     = "minCashFlow"
    FRIEND_PREFERENCE = "friendPreference"


class CurrencyPolicy(str, enum.Enum):
    """How settlements are re-denominated after optimisation."""
    REFERENCE       = "reference"
    PAYER_PREFERRED = "payer_preferred"
    ORIGINAL_DEBTS  = "original_debts"


@dataclass(frozen=True)
class Debt:
    """Directed edge: `debtor` owes `creditor` `amount` in `currency`."""
    debtor: ParticipantId
    creditor: ParticipantId
    amount: Decimal
    currency: str

    def to_dict(self) -> dict:
        return {
            "from": self.debtor,
            "to": self.creditor,
            "amount": str(self.amount),
            "currency": self.currency,
        }


@dataclass(frozen=True)
class DebtGraph:
    participants: frozenset = field(default_factory=frozenset)
    debts: tuple[Debt, ...] = ()

    @property
    def currencies(self) -> frozenset[str]:
        return frozenset(debt.currency for debt in self.debts)

    def sorted_participants(self) -> list:
        return sorted(self.participants, key=participant_sort_key)


@dataclass(frozen=True)
class Settlement:
    """One payment instruction: `payer` pays `payee` `amount` in `currency`."""
    payer: ParticipantId
    payee: ParticipantId
    amount: Decimal
    currency: str

    def to_dict(self) -> dict:
        return {
            "from": self.payer,
            "to": self.payee,
            "amount": str(self.amount),
            "currency": self.currency,
        }


def participant_sort_key(participant_id) -> tuple[str, str]:
    """
    Total order over participant ids of mixed types.

    Ids are normally all str or all int; keying on (type name, str value)
    keeps sorting deterministic if a caller mixes them.
    """
    if isinstance(participant_id, int):
        return ("int", f"{participant_id:020d}")
    return (type(participant_id).__name__, str(participant_id))
