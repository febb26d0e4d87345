"""
services/debt_graph_service.py — Debt graph construction, cycle cancellation
and balance computation.

This file is the SINGLE SOURCE OF TRUTH for how net balances are computed.
The explanation generator and every strategy consume compute_balances();
the formula must not be reimplemented elsewhere.

Layer rules:
  - No Flask imports. No current_app, request, g, or HTTP knowledge.
  - Receives plain records / DebtGraph values, returns new values.
  - A DebtGraph is never mutated in place.

Pipeline position:
  raw records → build_debt_graph() → (currency_service.normalize_graph())
              → simplify_cycles() → compute_balances() → strategies
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from decimal import Decimal, InvalidOperation

from settleup.app.errors import CurrencyMismatchError, InvalidDebtError, UnbalancedGraphError
from settleup.app.models.debt import Debt, DebtGraph, participant_sort_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


# ── Builder ────────────────────────────────────────────────────────────────

def _coerce_record(record, index: int) -> tuple:
    """
    Returns (debtor, creditor, amount, currency) for one raw record.

    Accepts a mapping with from/to/amount/currency keys, a Debt, or a
    4-item sequence in that order.
    """
    if isinstance(record, Debt):
        return record.debtor, record.creditor, record.amount, record.currency

    if isinstance(record, Mapping):
        try:
            return record["from"], record["to"], record["amount"], record["currency"]
        except KeyError as exc:
            raise InvalidDebtError(
                f"Debt record {index} is missing '{exc.args[0]}'.",
                field=exc.args[0],
            ) from exc

    try:
        debtor, creditor, amount, currency = record
    except (TypeError, ValueError) as exc:
        raise InvalidDebtError(
            f"Debt record {index} must be a mapping or a (from, to, amount, currency) tuple."
        ) from exc
    return debtor, creditor, amount, currency


def _to_decimal(value, index: int) -> Decimal:
    if isinstance(value, float):
        # str() first so 10.1 becomes Decimal("10.1"), not its binary expansion.
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidDebtError(
            f"Debt record {index} has a non-numeric amount {value!r}.",
            field="amount",
        ) from exc
    if not amount.is_finite():
        raise InvalidDebtError(
            f"Debt record {index} has a non-finite amount {value!r}.",
            field="amount",
        )
    return amount


def build_debt_graph(records: Iterable) -> DebtGraph:
    """
    Builds a DebtGraph from raw pairwise debt records.

    Rules:
      - from == to on ANY record raises InvalidDebtError (never dropped).
      - Zero / negative amounts are dropped and logged; upstream should never
        produce them but they must not propagate.
      - Duplicate (from, to, currency) edges are merged by summation.
      - Currency codes are upper-cased; debts come out in canonical order.

    Participants include everyone named on a kept edge.
    """
    merged: dict[tuple, Decimal] = defaultdict(Decimal)
    dropped = 0

    for index, record in enumerate(records):
        debtor, creditor, raw_amount, currency = _coerce_record(record, index)

        if debtor is None or creditor is None or debtor == "" or creditor == "":
            raise InvalidDebtError(f"Debt record {index} has an empty participant id.")
        if debtor == creditor:
            raise InvalidDebtError(
                f"Debt record {index}: participant {debtor!r} cannot owe themselves.",
                field="to",
            )
        if not isinstance(currency, str) or not currency.strip():
            raise InvalidDebtError(
                f"Debt record {index} has no currency.",
                field="currency",
            )

        amount = _to_decimal(raw_amount, index)
        if amount <= ZERO:
            dropped += 1
            continue

        merged[(debtor, creditor, currency.strip().upper())] += amount

    if dropped:
        logger.warning("Dropped %d debt record(s) with non-positive amounts", dropped)

    return graph_from_edges(merged)


def graph_from_edges(edges: Mapping[tuple, Decimal]) -> DebtGraph:
    """
    Builds a DebtGraph from {(debtor, creditor, currency): amount}.

    Edges with a non-positive amount are omitted. Used by the builder, the
    cycle simplifier and the currency normaliser so all three agree on
    canonical edge order.
    """
    debts = [
        Debt(debtor=debtor, creditor=creditor, amount=amount, currency=currency)
        for (debtor, creditor, currency), amount in edges.items()
        if amount > ZERO
    ]
    debts.sort(key=_edge_sort_key)

    participants = frozenset(
        pid for debt in debts for pid in (debt.debtor, debt.creditor)
    )
    return DebtGraph(participants=participants, debts=tuple(debts))


def _edge_sort_key(debt: Debt) -> tuple:
    return (
        participant_sort_key(debt.debtor),
        participant_sort_key(debt.creditor),
        debt.currency,
    )


def single_currency(graph: DebtGraph) -> str | None:
    """
    Returns the one currency every edge shares, or None for an empty graph.

    Raises CurrencyMismatchError when edges disagree.
    """
    currencies = graph.currencies
    if len(currencies) > 1:
        raise CurrencyMismatchError(currencies)
    return next(iter(currencies), None)


# ── Cycle simplifier ───────────────────────────────────────────────────────

def find_cycle(edges: Mapping[tuple, Decimal]) -> list | None:
    """
    Depth-first search for one directed cycle over {(debtor, creditor): amount}.

    Nodes and neighbours are visited in sorted order, so the first cycle
    discovered is deterministic. Returns the cycle as a node list
    [n0, n1, ..., nk] meaning n0→n1→...→nk→n0, or None when acyclic.
    """
    adjacency: dict = defaultdict(list)
    for debtor, creditor in edges:
        adjacency[debtor].append(creditor)
    for neighbours in adjacency.values():
        neighbours.sort(key=participant_sort_key)

    visited: set = set()
    on_stack: set = set()
    path: list = []

    def visit(node) -> list | None:
        visited.add(node)
        on_stack.add(node)
        path.append(node)

        for neighbour in adjacency.get(node, ()):
            if neighbour in on_stack:
                return path[path.index(neighbour):]
            if neighbour not in visited:
                cycle = visit(neighbour)
                if cycle is not None:
                    return cycle

        on_stack.discard(node)
        path.pop()
        return None

    for start in sorted(adjacency, key=participant_sort_key):
        if start not in visited:
            cycle = visit(start)
            if cycle is not None:
                return list(cycle)
    return None


def simplify_cycles(graph: DebtGraph) -> DebtGraph:
    """
    Cancels circular debt chains (A owes B owes C owes A).

    Repeatedly finds a cycle, subtracts its minimum edge weight from every
    edge on it and removes edges that reach zero. Each pass removes at least
    one edge, so the loop runs at most len(graph.debts) times.

    The graph must be single-currency (normalise first). Net balances are
    identical before and after; only the edge set shrinks.
    """
    currency = single_currency(graph)
    if currency is None:
        return graph

    edges: dict[tuple, Decimal] = {
        (debt.debtor, debt.creditor): debt.amount for debt in graph.debts
    }

    passes = 0
    while (cycle := find_cycle(edges)) is not None:
        pairs = list(zip(cycle, cycle[1:] + cycle[:1]))
        smallest = min(edges[pair] for pair in pairs)
        for pair in pairs:
            remaining = edges[pair] - smallest
            if remaining > ZERO:
                edges[pair] = remaining
            else:
                del edges[pair]
        passes += 1

    if passes:
        logger.debug(
            "Cancelled %d debt cycle(s): %d → %d edges",
            passes, len(graph.debts), len(edges),
        )

    simplified = graph_from_edges(
        {(debtor, creditor, currency): amount for (debtor, creditor), amount in edges.items()}
    )
    # Participants whose every edge was cancelled still belong to the group.
    return DebtGraph(participants=graph.participants, debts=simplified.debts)


# ── Balance calculator ─────────────────────────────────────────────────────

def compute_balances(graph: DebtGraph) -> dict:
    """
    Canonical net balance computation.

    Returns {participant: net_balance} for every participant in the graph,
    in sorted participant order. Negative means "owes", positive means
    "is owed". For each edge the debtor is debited and the creditor credited
    by the edge amount, so the sum is exactly zero for any single-currency
    graph.

    Raises CurrencyMismatchError if the edges do not share one currency.
    """
    single_currency(graph)

    balances: dict = {pid: ZERO for pid in graph.sorted_participants()}
    for debt in graph.debts:
        balances[debt.debtor] -= debt.amount
        balances[debt.creditor] += debt.amount
    return balances


def assert_balanced(balances: Mapping, tolerance: Decimal) -> None:
    """
    Raises UnbalancedGraphError if |sum(balances)| exceeds `tolerance`.

    A failure here means the builder or normaliser produced corrupt data.
    It is surfaced, never silently corrected.
    """
    total = sum(balances.values(), ZERO)
    if abs(total) > tolerance:
        raise UnbalancedGraphError(
            f"Balance integrity check failed: sum was {total} "
            f"(tolerance {tolerance})."
        )
