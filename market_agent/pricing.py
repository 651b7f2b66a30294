from __future__ import annotations

from market_agent.config import BidStrategy

FLOOR_PRICE = 0.10
DEFAULT_BID = 0.80
DEFAULT_MULTIPLIER = 0.40

STRATEGY_FACTORS: dict[BidStrategy, float] = {
    BidStrategy.AGGRESSIVE: 0.75,
    BidStrategy.BALANCED: 1.0,
    BidStrategy.CONSERVATIVE: 1.35,
}


def strategy_factor(strategy: BidStrategy | str) -> float:
    try:
        return STRATEGY_FACTORS[BidStrategy(strategy)]
    except ValueError:
        return 1.0


def compute_bid_amount(
    budget: float | None,
    *,
    multiplier: float,
    strategy: BidStrategy | str,
    floor: float = FLOOR_PRICE,
) -> float:
    """max(budget * multiplier * strategy factor, floor), rounded to cents.

    Jobs without a positive budget get the flat default bid.
    """
    if budget is None or budget <= 0:
        return DEFAULT_BID
    raw = budget * multiplier * strategy_factor(strategy)
    return round(max(raw, floor), 2)
