"""
services/optimization_service.py — Settlement optimisation strategies and the
compute_settlements() entry point.

Three strategies share one contract:

    strategy(balances, context) -> list[Settlement]

  - deterministic for a given input (ties broken by participant id),
  - raise UnbalancedGraphError when |sum(balances)| > context.tolerance,
  - every Settlement has amount > 0 and payer != payee,
  - replaying the result against `balances` drives every balance to ~0.

The set of strategies is closed: STRATEGIES maps each OptimizationStrategy
member to exactly one function. There is no registration hook.

Layer rules:
  - No Flask imports. The cache is passed in, never looked up globally.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from settleup.app.errors import AppError, ErrorCode
from settleup.app.models.debt import (
    CurrencyPolicy,
    OptimizationStrategy,
    Settlement,
    participant_sort_key,
)
from settleup.app.services import currency_service, debt_graph_service
from settleup.app.services.cache_service import OptimizationCache, build_cache_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
DEFAULT_TOLERANCE = Decimal("0.01")
# Remaining balances at or below this are settled. Far below one minor unit,
# so a genuine one-cent debt still produces a settlement.
SETTLED_EPSILON = Decimal("0.000001")
DEFAULT_REFERENCE_CURRENCY = "USD"

Scorer = Callable[[Decimal, Decimal], Decimal]


def amount_times_affinity(transfer: Decimal, affinity: Decimal) -> Decimal:
    """Default friend-preference score: settle-able amount weighted by affinity."""
    return transfer * affinity


@dataclass(frozen=True)
class OptimizationContext:
    currency: str = DEFAULT_REFERENCE_CURRENCY
    tolerance: Decimal = DEFAULT_TOLERANCE
    epsilon: Decimal = SETTLED_EPSILON
    # frozenset({a, b}) -> affinity in [0, 1]
    friendships: Mapping[frozenset, Decimal] = field(default_factory=dict)
    scorer: Scorer = amount_times_affinity


# ── Input helpers ──────────────────────────────────────────────────────────

def parse_strategy(value) -> OptimizationStrategy:
    if isinstance(value, OptimizationStrategy):
        return value
    try:
        return OptimizationStrategy(value)
    except ValueError:
        raise AppError(
            ErrorCode.INVALID_STRATEGY,
            f"'{value}' is not a valid strategy. "
            f"Valid values: {', '.join(s.value for s in OptimizationStrategy)}.",
            400,
            field="strategy",
        ) from None


def normalize_friendships(data) -> dict[frozenset, Decimal]:
    """
    Accepts either {(a, b): strength} / {frozenset({a, b}): strength} or a
    list of {"user_1", "user_2", "strength"} rows, and returns an unordered
    pair map. Strengths must lie in [0, 1].
    """
    if not data:
        return {}

    if isinstance(data, Mapping):
        items = [(tuple(pair), strength) for pair, strength in data.items()]
    else:
        items = [((row["user_1"], row["user_2"]), row["strength"]) for row in data]

    friendships: dict[frozenset, Decimal] = {}
    for pair, raw_strength in items:
        if len(pair) != 2 or pair[0] == pair[1]:
            raise AppError(
                ErrorCode.INVALID_FRIENDSHIP,
                f"Friendship {pair!r} must name two different participants.",
                422,
                field="friendships",
            )
        try:
            strength = Decimal(str(raw_strength))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise AppError(
                ErrorCode.INVALID_FRIENDSHIP,
                f"Friendship strength for {pair!r} is not a number: {raw_strength!r}.",
                422,
                field="friendships",
            ) from exc
        if not strength.is_finite() or not Decimal("0") <= strength <= Decimal("1"):
            raise AppError(
                ErrorCode.INVALID_FRIENDSHIP,
                f"Friendship strength {strength} for {pair!r} is outside [0, 1].",
                422,
                field="friendships",
            )
        friendships[frozenset(pair)] = strength
    return friendships


def _by_amount_then_id(entry):
    return (-entry[1], participant_sort_key(entry[0]))


def _split_balances(balances: Mapping, epsilon: Decimal) -> tuple[list, list]:
    """
    Returns (debtors, creditors) as [participant, |amount|] lists, each
    sorted by amount descending then participant id ascending.

    Balances within `epsilon` of zero are treated as settled.
    """
    debtors = [[pid, -amount] for pid, amount in balances.items() if amount < -epsilon]
    creditors = [[pid, amount] for pid, amount in balances.items() if amount > epsilon]

    debtors.sort(key=_by_amount_then_id)
    creditors.sort(key=_by_amount_then_id)
    return debtors, creditors


def _greedy_walk(
        debtors: list,
        creditors: list,
        context: OptimizationContext,
        settlements: list[Settlement],
) -> list[Settlement]:
    """
    Walks two pre-sorted lists: settle min(debtor, creditor) between the
    current heads and advance past whichever side reaches zero.
    """
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor_id, debt = debtors[i]
        creditor_id, credit = creditors[j]

        transfer = min(debt, credit)
        settlements.append(Settlement(debtor_id, creditor_id, transfer, context.currency))

        debtors[i][1] = debt - transfer
        creditors[j][1] = credit - transfer

        if debtors[i][1] <= context.epsilon:
            i += 1
        if creditors[j][1] <= context.epsilon:
            j += 1

    return settlements


# ── Strategies ─────────────────────────────────────────────────────────────

def greedy_settlements(balances: Mapping, context: OptimizationContext) -> list[Settlement]:
    """
    Greedy matching.

    Sorts debtors and creditors once (largest first, then id), then walks
    both lists pairing the heads. For n participants with a non-zero
    balance this yields at most n-1 transactions.

    Example: {A: -30, B: -20, C: 50} → [A→C 30, B→C 20].
    """
    debt_graph_service.assert_balanced(balances, context.tolerance)
    debtors, creditors = _split_balances(balances, context.epsilon)
    return _greedy_walk(debtors, creditors, context, [])


def min_cash_flow_settlements(balances: Mapping, context: OptimizationContext) -> list[Settlement]:
    """
    Minimum cash flow.

    At every step re-scan for the current largest creditor and largest
    debtor (ties → lowest participant id) and settle as much as possible
    between them. Stops once every remaining balance is within
    `context.epsilon` of zero. Each step zeroes at least one participant,
    so the result has at most n-1 entries.
    """
    debt_graph_service.assert_balanced(balances, context.tolerance)

    participants = sorted(balances, key=participant_sort_key)
    amounts = [balances[pid] for pid in participants]

    settlements: list[Settlement] = []
    while amounts:
        # First index wins ties; participants are pre-sorted by id.
        max_creditor = max(range(len(amounts)), key=lambda k: (amounts[k], -k))
        max_debtor = min(range(len(amounts)), key=lambda k: (amounts[k], k))

        credit = amounts[max_creditor]
        debt = -amounts[max_debtor]
        if credit <= context.epsilon or debt <= context.epsilon:
            break

        transfer = min(credit, debt)
        amounts[max_creditor] -= transfer
        amounts[max_debtor] += transfer
        settlements.append(
            Settlement(participants[max_debtor], participants[max_creditor], transfer, context.currency)
        )

    return settlements


def friend_preference_settlements(balances: Mapping, context: OptimizationContext) -> list[Settlement]:
    """
    Friend-preference weighted matching.

    Phase 1: every open (debtor, creditor) pair is scored with
    context.scorer(min(|debtor|, creditor), affinity); the best pair
    settles first, then scores are recomputed. Missing affinity counts
    as 0. Equal scores break by larger debtor, lower debtor id, larger
    creditor, lower creditor id.

    Phase 2: once no pair scores above zero, whatever is left is settled
    with the greedy walk. With no friendship data phase 1 is empty and
    the result is exactly the greedy plan.
    """
    debt_graph_service.assert_balanced(balances, context.tolerance)
    debtors, creditors = _split_balances(balances, context.epsilon)
    friendships = context.friendships

    settlements: list[Settlement] = []
    while debtors and creditors:
        best_key = None
        best = None
        for debtor in debtors:
            for creditor in creditors:
                transfer = min(debtor[1], creditor[1])
                affinity = friendships.get(frozenset((debtor[0], creditor[0])), ZERO)
                key = (
                    -context.scorer(transfer, affinity),
                    -debtor[1],
                    participant_sort_key(debtor[0]),
                    -creditor[1],
                    participant_sort_key(creditor[0]),
                )
                if best_key is None or key < best_key:
                    best_key, best = key, (debtor, creditor, transfer)

        if -best_key[0] <= ZERO:
            break

        debtor, creditor, transfer = best
        settlements.append(Settlement(debtor[0], creditor[0], transfer, context.currency))
        debtor[1] -= transfer
        creditor[1] -= transfer

        debtors = [d for d in debtors if d[1] > context.epsilon]
        creditors = [c for c in creditors if c[1] > context.epsilon]

    debtors.sort(key=_by_amount_then_id)
    creditors.sort(key=_by_amount_then_id)
    return _greedy_walk(debtors, creditors, context, settlements)


STRATEGIES: Mapping[OptimizationStrategy, Callable[[Mapping, OptimizationContext], list[Settlement]]] = {
    OptimizationStrategy.GREEDY:            greedy_settlements,
    OptimizationStrategy.MIN_CASH_FLOW:     min_cash_flow_settlements,
    OptimizationStrategy.FRIEND_PREFERENCE: friend_preference_settlements,
}


def optimize_balances(
        balances: Mapping,
        strategy: OptimizationStrategy,
        context: OptimizationContext,
) -> list[Settlement]:
    return STRATEGIES[parse_strategy(strategy)](balances, context)


# ── Entry point ────────────────────────────────────────────────────────────

def compute_settlements(
        group_debts: Iterable,
        strategy,
        exchange_rates,
        friendship_data=None,
        *,
        reference_currency: str = DEFAULT_REFERENCE_CURRENCY,
        cache: OptimizationCache | None = None,
        group_id: int | None = None,
        currency_policy: CurrencyPolicy = CurrencyPolicy.REFERENCE,
        preferred_currencies: Mapping | None = None,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        scorer: Scorer = amount_times_affinity,
        decimal_places: int = currency_service.DEFAULT_DECIMAL_PLACES,
) -> list[Settlement]:
    """
    Computes the settlement list for a group's raw debts.

    Pipeline:
      1. build the graph (InvalidDebtError on self-debt / malformed records)
      2. check every rate up front (UnknownCurrencyError, before any work)
      3. normalise to the reference currency
      4. cache lookup keyed on the normalised graph
      5. cancel cycles, reduce to balances, assert the balance-sum invariant
      6. run the selected strategy
      7. optionally re-denominate, then verify the round trip

    Args:
        group_debts:    raw debt records (see debt_graph_service.build_debt_graph).
        strategy:       OptimizationStrategy or its wire name.
        exchange_rates: ExchangeRateTable or a {code: rate} mapping.
        friendship_data: pair → affinity, only read by friendPreference.
        cache:          injected OptimizationCache; None disables caching.
        group_id:       namespaces cache keys so a group can be invalidated.

    Returns:
        Settlements in the order the strategy produced them. Empty when
        everyone is already square. Never a partial list: any error aborts.
    """
    strategy = parse_strategy(strategy)
    currency_policy = CurrencyPolicy(currency_policy)

    if isinstance(exchange_rates, currency_service.ExchangeRateTable):
        table = exchange_rates
    else:
        table = currency_service.ExchangeRateTable.from_mapping(
            exchange_rates, reference_currency, decimal_places,
        )

    graph = debt_graph_service.build_debt_graph(group_debts)

    # Fail fast: every rate the computation could need is checked now.
    currency_service.ensure_rates(graph.currencies, table)
    if currency_policy is CurrencyPolicy.PAYER_PREFERRED and preferred_currencies:
        currency_service.ensure_rates(
            (code.upper() for code in preferred_currencies.values()), table,
        )

    friendships = (
        normalize_friendships(friendship_data)
        if strategy is OptimizationStrategy.FRIEND_PREFERENCE
        else {}
    )

    normalized = currency_service.normalize_graph(graph, table)
    context = OptimizationContext(
        currency=table.reference_currency,
        tolerance=tolerance,
        friendships=friendships,
        scorer=scorer,
    )

    def run() -> list[Settlement]:
        simplified = debt_graph_service.simplify_cycles(normalized)
        balances = debt_graph_service.compute_balances(simplified)
        debt_graph_service.assert_balanced(balances, tolerance)
        return optimize_balances(balances, strategy, context)

    if cache is None:
        settlements = run()
    else:
        key = build_cache_key(
            strategy, normalized, table.reference_currency, friendships, group_id,
        )
        settlements = cache.get_or_compute(key, run)

    logger.info(
        "Computed %d settlement(s) for %d debt(s) with %s",
        len(settlements), len(graph.debts), strategy.value,
    )

    chooser = currency_service.settlement_currency_chooser(
        currency_policy, table, graph, preferred_currencies,
    )
    if chooser is None:
        return settlements

    converted = currency_service.redenominate_settlements(settlements, table, chooser)
    currency_service.verify_redenomination(settlements, converted, table)
    return converted
