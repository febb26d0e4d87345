"""
services/explanation_service.py — Read-only projections of a computed
settlement plan.

Given the (graph, settlements, strategy) triple that was already computed,
derive:
  - network_graph : participants with their net balance + one link per settlement
  - flow_diagram  : participants + links aggregated per (from, to) pair
  - narrative     : step-by-step natural-language breakdown
  - heatmap       : the input graph's non-zero (from, to) cells
  - stats         : totals and percentage reduction

No optimisation logic lives here. Net balances come from
debt_graph_service.compute_balances() so what is explained can never drift
from what was computed. Every function is pure: the same input always yields
byte-identical JSON. Amounts are rendered as strings.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal

from settleup.app.models.debt import DebtGraph, OptimizationStrategy, Settlement, participant_sort_key
from settleup.app.services import currency_service, debt_graph_service
from settleup.app.services.optimization_service import parse_strategy

ZERO = Decimal("0")

ALGORITHM_EXPLANATIONS = {
    OptimizationStrategy.GREEDY: (
        "The Greedy algorithm first calculates the net balance for each participant. "
        "It sorts participants who are owed money (creditors) and participants who owe "
        "money (debtors) by amount, then matches the largest debtor with the largest "
        "creditor until everyone is settled."
    ),
    OptimizationStrategy.MIN_CASH_FLOW: (
        "The Minimum Cash Flow algorithm calculates the net balance for each participant, "
        "then repeatedly finds the participant with the largest debt and the participant "
        "with the largest credit and settles as much as possible between them, until "
        "every balance is zero."
    ),
    OptimizationStrategy.FRIEND_PREFERENCE: (
        "The Friend Preference algorithm calculates net balances as usual, then scores "
        "each possible payment by its amount weighted by the friendship strength between "
        "payer and receiver, so friends settle directly with each other whenever possible."
    ),
}


def _coerce_settlement(item) -> Settlement:
    if isinstance(item, Settlement):
        return item
    return Settlement(
        payer=item["from"],
        payee=item["to"],
        amount=Decimal(str(item["amount"])),
        currency=str(item["currency"]).upper(),
    )


def _pair_key(pair: tuple) -> tuple:
    return participant_sort_key(pair[0]), participant_sort_key(pair[1])


def reduction_percentage(original_count: int, final_count: int) -> int:
    """Whole-percent reduction from `original_count` to `final_count`; negative when it grew."""
    if original_count == 0:
        return 0
    ratio = (Decimal(1) - Decimal(final_count) / Decimal(original_count)) * 100
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))


# ── Projections ────────────────────────────────────────────────────────────

def network_graph(balances: Mapping, settlements: list[Settlement]) -> dict:
    return {
        "nodes": [
            {"id": pid, "balance": str(amount)}
            for pid, amount in balances.items()
        ],
        "links": [
            {
                "source": s.payer,
                "target": s.payee,
                "amount": str(s.amount),
                "currency": s.currency,
            }
            for s in settlements
        ],
    }


def flow_diagram(participants: list, settlements: list[Settlement]) -> dict:
    """Participant nodes plus one link per directed pair, amounts summed."""
    totals: dict[tuple, Decimal] = defaultdict(Decimal)
    currencies: dict[tuple, set] = defaultdict(set)
    for s in settlements:
        totals[(s.payer, s.payee)] += s.amount
        currencies[(s.payer, s.payee)].add(s.currency)

    return {
        "nodes": [{"id": pid, "name": str(pid)} for pid in participants],
        "links": [
            {
                "source": source,
                "target": target,
                "value": str(totals[(source, target)]),
                "currency": "/".join(sorted(currencies[(source, target)])),
            }
            for source, target in sorted(totals, key=_pair_key)
        ],
    }


def debt_heatmap(graph: DebtGraph) -> dict:
    cells: dict[tuple, Decimal] = defaultdict(Decimal)
    for debt in graph.debts:
        cells[(debt.debtor, debt.creditor)] += debt.amount

    return {
        "participants": graph.sorted_participants(),
        "cells": [
            {"from": debtor, "to": creditor, "amount": str(amount)}
            for (debtor, creditor), amount in sorted(cells.items(), key=lambda kv: _pair_key(kv[0]))
            if amount != ZERO
        ],
    }


def settlement_stats(graph: DebtGraph, settlements: list[Settlement]) -> dict:
    totals: dict[str, Decimal] = defaultdict(Decimal)
    involved = set()
    for s in settlements:
        totals[s.currency] += s.amount
        involved.update((s.payer, s.payee))

    original = len(graph.debts)
    return {
        "original_debt_count": original,
        "transaction_count": len(settlements),
        "participant_count": len(graph.participants),
        "paying_participant_count": len(involved),
        "total_amount": {code: str(totals[code]) for code in sorted(totals)},
        "reduction_percentage": reduction_percentage(original, len(settlements)),
    }


def narrative(
        graph: DebtGraph,
        balances: Mapping,
        settlements: list[Settlement],
        strategy: OptimizationStrategy,
) -> dict:
    creditors = sum(1 for amount in balances.values() if amount > ZERO)
    debtors = sum(1 for amount in balances.values() if amount < ZERO)
    original = len(graph.debts)
    final = len(settlements)
    reduction = reduction_percentage(original, final)

    if reduction >= 0:
        change = f"a {reduction}% reduction"
    else:
        change = f"a {-reduction}% increase"

    steps = [
        f"The calculation started with {original} original debts "
        f"between {len(graph.participants)} participants.",
        f"After calculating net balances, {creditors} participants are owed money "
        f"and {debtors} participants owe money.",
        f"The {strategy.value} strategy was applied to find the settlement plan.",
        f"The plan needs {final} transactions.",
        f"Going from {original} debts to {final} transactions is {change}.",
    ]

    summary = (
        f"Using the {strategy.value} strategy, {original} original debts were "
        f"settled with {final} transactions ({change})."
    )

    return {
        "summary": summary,
        "algorithm_explanation": ALGORITHM_EXPLANATIONS[strategy],
        "steps": steps,
        "transaction_summary": [
            f"{s.payer} pays {s.amount} {s.currency} to {s.payee}"
            for s in settlements
        ],
    }


# ── Entry points ───────────────────────────────────────────────────────────

def explain(graph: DebtGraph, settlements: Iterable, strategy) -> dict:
    """
    Builds the full ExplanationBundle for an already single-currency graph.

    Raises CurrencyMismatchError (via compute_balances) if `graph` still
    mixes currencies.
    """
    strategy = parse_strategy(strategy)
    settlements = [_coerce_settlement(s) for s in settlements]
    balances = debt_graph_service.compute_balances(graph)

    return {
        "strategy": strategy.value,
        "network_graph": network_graph(balances, settlements),
        "flow_diagram": flow_diagram(graph.sorted_participants(), settlements),
        "narrative": narrative(graph, balances, settlements, strategy),
        "heatmap": debt_heatmap(graph),
        "stats": settlement_stats(graph, settlements),
    }


def explain_settlements(
        group_debts: Iterable,
        settlements: Iterable,
        strategy,
        exchange_rates=None,
        reference_currency: str = "USD",
) -> dict:
    """
    Explains a settlement plan starting from the raw debt records.

    Multi-currency input is normalised with `exchange_rates` first (the
    same way compute_settlements() does). Single-currency input needs no
    rates. Never mutates anything.
    """
    graph = debt_graph_service.build_debt_graph(group_debts)
    if len(graph.currencies) > 1 or exchange_rates is not None:
        if isinstance(exchange_rates, currency_service.ExchangeRateTable):
            table = exchange_rates
        else:
            table = currency_service.ExchangeRateTable.from_mapping(exchange_rates, reference_currency)
        graph = currency_service.normalize_graph(graph, table)
    return explain(graph, settlements, strategy)
