"""
tests/unit/test_optimization_strategies.py — Unit tests for the three
settlement strategies.

What this file proves:
  - Greedy and Min Cash Flow produce the documented plans for known inputs
    and never need more than n-1 transactions.
  - Every strategy's output, replayed against the balances, settles everyone.
  - Friend preference routes money between friends when it can, falls back
    to the greedy order without friendship data and honours a custom scorer.
  - Unbalanced input is rejected, never silently corrected.

Strategies take plain {participant: Decimal} balances — no mocking required.
"""

from __future__ import annotations

import random
from collections import defaultdict
from decimal import Decimal

import pytest

from settleup.app.errors import AppError, ErrorCode, UnbalancedGraphError
from settleup.app.models.debt import OptimizationStrategy, Settlement
from settleup.app.services.debt_graph_service import build_debt_graph, compute_balances
from settleup.app.services.optimization_service import (
    STRATEGIES,
    OptimizationContext,
    friend_preference_settlements,
    greedy_settlements,
    min_cash_flow_settlements,
    normalize_friendships,
    optimize_balances,
    parse_strategy,
)

ALL_STRATEGIES = list(OptimizationStrategy)


# ── Helpers ────────────────────────────────────────────────────────────────

def _replay(balances: dict, settlements: list[Settlement]) -> dict:
    """Applies every payment to a copy of `balances` and returns the result."""
    remaining = defaultdict(Decimal, balances)
    for s in settlements:
        remaining[s.payer] += s.amount
        remaining[s.payee] -= s.amount
    return dict(remaining)


def _random_balances(seed: int, people: int = 7, debts: int = 25) -> dict:
    rng = random.Random(seed)
    names = [f"P{i}" for i in range(people)]
    records = []
    for _ in range(debts):
        frm, to = rng.sample(names, 2)
        records.append({
            "from": frm,
            "to": to,
            "amount": f"{rng.randint(1, 50000) / 100:.2f}",
            "currency": "USD",
        })
    return compute_balances(build_debt_graph(records))


def _assert_valid_plan(balances: dict, settlements: list[Settlement]) -> None:
    for s in settlements:
        assert s.amount > Decimal("0")
        assert s.payer != s.payee
        assert isinstance(s.amount, Decimal)
    for pid, amount in _replay(balances, settlements).items():
        assert abs(amount) <= Decimal("0.01"), f"{pid} left with {amount}"


CONTEXT = OptimizationContext()


# ═══════════════════════════════════════════════════════════════════════════
# Greedy
# ═══════════════════════════════════════════════════════════════════════════

def test_greedy_documented_example():
    balances = {"A": Decimal("-30"), "B": Decimal("-20"), "C": Decimal("50")}
    assert greedy_settlements(balances, CONTEXT) == [
        Settlement("A", "C", Decimal("30"), "USD"),
        Settlement("B", "C", Decimal("20"), "USD"),
    ]


def test_greedy_settles_one_cent():
    balances = {"A": Decimal("-0.01"), "B": Decimal("0.01")}
    assert greedy_settlements(balances, CONTEXT) == [
        Settlement("A", "B", Decimal("0.01"), "USD"),
    ]


def test_greedy_breaks_equal_amount_ties_by_id():
    balances = {
        "D": Decimal("-10"), "B": Decimal("-10"),
        "C": Decimal("10"), "A": Decimal("10"),
    }
    assert greedy_settlements(balances, CONTEXT) == [
        Settlement("B", "A", Decimal("10"), "USD"),
        Settlement("D", "C", Decimal("10"), "USD"),
    ]


def test_greedy_all_zero_returns_empty():
    assert greedy_settlements({"A": Decimal("0"), "B": Decimal("0")}, CONTEXT) == []


def test_greedy_uses_context_currency():
    context = OptimizationContext(currency="EUR")
    settlements = greedy_settlements({"A": Decimal("-5"), "B": Decimal("5")}, context)
    assert settlements[0].currency == "EUR"


# ═══════════════════════════════════════════════════════════════════════════
# Min Cash Flow
# ═══════════════════════════════════════════════════════════════════════════

def test_min_cash_flow_documented_example():
    balances = {"A": Decimal("-30"), "B": Decimal("-20"), "C": Decimal("50")}
    assert min_cash_flow_settlements(balances, CONTEXT) == [
        Settlement("A", "C", Decimal("30"), "USD"),
        Settlement("B", "C", Decimal("20"), "USD"),
    ]


def test_min_cash_flow_rescans_after_each_step():
    balances = {
        "A": Decimal("-60"), "B": Decimal("-40"),
        "C": Decimal("70"), "D": Decimal("30"),
    }
    # A→C 60, then C has 10 left but B (-40) now pairs with D (30).
    assert min_cash_flow_settlements(balances, CONTEXT) == [
        Settlement("A", "C", Decimal("60"), "USD"),
        Settlement("B", "D", Decimal("30"), "USD"),
        Settlement("B", "C", Decimal("10"), "USD"),
    ]


def test_min_cash_flow_handles_groups_deeper_than_the_recursion_limit():
    balances = {f"P{i:04d}": Decimal("-1") for i in range(1100)}
    balances["Z"] = Decimal("1100")

    settlements = min_cash_flow_settlements(balances, CONTEXT)

    assert len(settlements) == 1100
    assert settlements[0] == Settlement("P0000", "Z", Decimal("1"), "USD")
    assert all(s.payee == "Z" for s in settlements)


def test_min_cash_flow_all_zero_returns_empty():
    assert min_cash_flow_settlements({"A": Decimal("0")}, CONTEXT) == []


# ═══════════════════════════════════════════════════════════════════════════
# Friend preference
# ═══════════════════════════════════════════════════════════════════════════

FOUR_WAY = {
    "A": Decimal("-50"), "B": Decimal("-50"),
    "C": Decimal("50"), "D": Decimal("50"),
}


def test_friend_preference_routes_between_friends():
    context = OptimizationContext(
        friendships=normalize_friendships({("A", "D"): 1, ("B", "C"): 1}),
    )
    assert friend_preference_settlements(FOUR_WAY, context) == [
        Settlement("A", "D", Decimal("50"), "USD"),
        Settlement("B", "C", Decimal("50"), "USD"),
    ]


def test_friend_preference_without_friendships_matches_greedy():
    assert friend_preference_settlements(FOUR_WAY, CONTEXT) == greedy_settlements(FOUR_WAY, CONTEXT)


SPLIT = {
    "A": Decimal("-10"), "B": Decimal("-5"), "C": Decimal("-5"),
    "D": Decimal("12"), "E": Decimal("8"),
}


def test_friend_preference_without_friendships_matches_greedy_when_debtors_split():
    greedy = greedy_settlements(SPLIT, CONTEXT)
    assert greedy == [
        Settlement("A", "D", Decimal("10"), "USD"),
        Settlement("B", "D", Decimal("2"), "USD"),
        Settlement("B", "E", Decimal("3"), "USD"),
        Settlement("C", "E", Decimal("5"), "USD"),
    ]
    assert friend_preference_settlements(SPLIT, CONTEXT) == greedy


def test_friend_preference_settles_friends_then_walks_the_rest_greedily():
    context = OptimizationContext(friendships=normalize_friendships({("B", "E"): 1}))
    assert friend_preference_settlements(SPLIT, context) == [
        Settlement("B", "E", Decimal("5"), "USD"),
        Settlement("A", "D", Decimal("10"), "USD"),
        Settlement("C", "D", Decimal("2"), "USD"),
        Settlement("C", "E", Decimal("3"), "USD"),
    ]


def test_friend_preference_uses_custom_scorer():
    # Prefer strangers: score by the complement of affinity.
    context = OptimizationContext(
        friendships=normalize_friendships({("A", "D"): 1, ("B", "C"): 1}),
        scorer=lambda transfer, affinity: Decimal("1") - affinity,
    )
    assert friend_preference_settlements(FOUR_WAY, context) == [
        Settlement("A", "C", Decimal("50"), "USD"),
        Settlement("B", "D", Decimal("50"), "USD"),
    ]


def test_friend_preference_weights_amount_by_affinity():
    balances = {"A": Decimal("-30"), "B": Decimal("-20"), "C": Decimal("50")}
    context = OptimizationContext(
        friendships=normalize_friendships([
            {"user_1": "B", "user_2": "C", "strength": "0.9"},
            {"user_1": "A", "user_2": "C", "strength": "0.1"},
        ]),
    )
    # B→C scores 18, A→C scores 3.
    assert friend_preference_settlements(balances, context) == [
        Settlement("B", "C", Decimal("20"), "USD"),
        Settlement("A", "C", Decimal("30"), "USD"),
    ]


# ═══════════════════════════════════════════════════════════════════════════
# Shared contract
# ═══════════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
def test_every_strategy_replays_to_zero(strategy, seed):
    balances = _random_balances(seed)
    settlements = optimize_balances(balances, strategy, CONTEXT)
    _assert_valid_plan(balances, settlements)


@pytest.mark.parametrize("strategy", [OptimizationStrategy.GREEDY, OptimizationStrategy.MIN_CASH_FLOW])
@pytest.mark.parametrize("seed", [11, 12, 13])
def test_at_most_n_minus_one_transactions(strategy, seed):
    balances = _random_balances(seed, people=9, debts=40)
    nonzero = sum(1 for amount in balances.values() if amount != 0)
    settlements = optimize_balances(balances, strategy, CONTEXT)
    assert len(settlements) <= max(nonzero - 1, 0)


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
def test_strategies_are_deterministic(strategy):
    balances = _random_balances(99)
    reordered = dict(reversed(list(balances.items())))
    assert optimize_balances(balances, strategy, CONTEXT) == optimize_balances(reordered, strategy, CONTEXT)


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
def test_strategies_reject_unbalanced_input(strategy):
    balances = {"A": Decimal("-10"), "B": Decimal("12")}
    with pytest.raises(UnbalancedGraphError):
        optimize_balances(balances, strategy, CONTEXT)


@pytest.mark.parametrize("strategy", ALL_STRATEGIES)
def test_strategies_accept_integer_participant_ids(strategy):
    balances = {1: Decimal("-15"), 2: Decimal("5"), 10: Decimal("10")}
    settlements = optimize_balances(balances, strategy, CONTEXT)
    _assert_valid_plan(balances, settlements)


def test_strategy_table_is_closed():
    assert set(STRATEGIES) == set(OptimizationStrategy)


# ═══════════════════════════════════════════════════════════════════════════
# Input helpers
# ═══════════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("value,expected", [
    ("greedy", OptimizationStrategy.GREEDY),
    ("minCashFlow", OptimizationStrategy.MIN_CASH_FLOW),
    ("friendPreference", OptimizationStrategy.FRIEND_PREFERENCE),
    (OptimizationStrategy.GREEDY, OptimizationStrategy.GREEDY),
])
def test_parse_strategy_accepts_wire_names(value, expected):
    assert parse_strategy(value) is expected


def test_parse_strategy_rejects_unknown_name():
    with pytest.raises(AppError) as exc_info:
        parse_strategy("fastest")
    assert exc_info.value.code == ErrorCode.INVALID_STRATEGY
    assert exc_info.value.http_status == 400


def test_normalize_friendships_is_unordered():
    friendships = normalize_friendships([{"user_1": "B", "user_2": "A", "strength": 0.5}])
    assert friendships == {frozenset({"A", "B"}): Decimal("0.5")}


@pytest.mark.parametrize("rows", [
    [{"user_1": "A", "user_2": "B", "strength": "1.5"}],
    [{"user_1": "A", "user_2": "B", "strength": "-0.1"}],
    [{"user_1": "A", "user_2": "A", "strength": "0.5"}],
    [{"user_1": "A", "user_2": "B", "strength": "high"}],
    [{"user_1": "A", "user_2": "B", "strength": None}],
    [{"user_1": "A", "user_2": "B", "strength": "NaN"}],
    [{"user_1": "A", "user_2": "B", "strength": float("inf")}],
])
def test_normalize_friendships_rejects_bad_rows(rows):
    with pytest.raises(AppError) as exc_info:
        normalize_friendships(rows)
    assert exc_info.value.code == ErrorCode.INVALID_FRIENDSHIP
