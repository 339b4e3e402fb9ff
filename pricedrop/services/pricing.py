"""
Price strategy engine.

Pure computation: given a listing's prices, its strategy parameters, the
current time and (for market pricing) a snapshot of comparable prices, decide
the next price and when the listing may be reduced again.

All money is Decimal rounded to the cent; binary floats are never accepted.
A computed price is clamped to the floor, and a result that would not lower
the price is reported as NoChange rather than raising the price.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from pricedrop.core.enums import ReductionStrategy
from pricedrop.core.exceptions import StrategyConfigError
from pricedrop.models.types import CENT, to_money

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class StrategyParams:
    """Reduction parameters for one listing, defaults already applied."""
    percentage: Decimal
    interval_days: int
    amount: Optional[Decimal] = None
    tiers: Tuple[Tuple[int, Decimal], ...] = ()
    target_percentile: Decimal = Decimal("25")
    move_fraction: Decimal = Decimal("0.5")
    max_step_percent: Decimal = Decimal("10")
    min_comparables: int = 3


@dataclass(frozen=True)
class PricingInput:
    current_price: Decimal
    floor_price: Decimal
    strategy: ReductionStrategy
    params: StrategyParams
    listed_at: Optional[datetime] = None


@dataclass(frozen=True)
class PriceChange:
    new_price: Decimal
    next_eligible_at: datetime
    reason: str

    @property
    def is_change(self) -> bool:
        return True


@dataclass(frozen=True)
class NoChange:
    reason: str
    next_eligible_at: datetime

    @property
    def is_change(self) -> bool:
        return False


PricingResult = Union[PriceChange, NoChange]


def _decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, float):
        value = str(value)
    try:
        number = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise StrategyConfigError(f"{name} is not a number: {value!r}")
    if not number.is_finite():
        raise StrategyConfigError(f"{name} is not a number: {value!r}")
    return number


def _integer(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise StrategyConfigError(f"{name} is not an integer: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise StrategyConfigError(f"{name} is not an integer: {value!r}")


def _parse_tiers(tier_source: Any) -> Tuple[Tuple[int, Decimal], ...]:
    if not isinstance(tier_source, (list, tuple)):
        raise StrategyConfigError(f"tiers must be a list of [age_days, percentage] pairs, got {tier_source!r}")

    tiers = []
    for tier in tier_source:
        if not isinstance(tier, (list, tuple)) or len(tier) != 2:
            raise StrategyConfigError(f"tier must be an [age_days, percentage] pair, got {tier!r}")
        age_days = _integer(tier[0], "tier age_days")
        if age_days < 0:
            raise StrategyConfigError("tier age_days must not be negative")
        tier_pct = _decimal(tier[1], "tier percentage")
        if tier_pct <= 0 or tier_pct >= HUNDRED:
            raise StrategyConfigError(f"tier percentage must be between 0 and 100, got {tier_pct}")
        tiers.append((age_days, tier_pct))
    tiers.sort(key=lambda tier: tier[0])
    return tuple(tiers)


def build_strategy_params(
    raw: Optional[Dict[str, Any]],
    *,
    default_percentage: str = "5",
    default_interval_days: int = 7,
    default_tiers: Sequence[Tuple[int, str]] = (),
    target_percentile: str = "25",
    move_fraction: str = "0.5",
    max_step_percent: str = "10",
    min_comparables: int = 3,
) -> StrategyParams:
    """
    Turn a listing's stored JSON parameters into StrategyParams.

    Keys a listing does not set fall back to the configured defaults.
    """
    raw = raw or {}

    percentage = _decimal(raw.get("percentage", default_percentage), "percentage")
    if percentage <= 0 or percentage >= HUNDRED:
        raise StrategyConfigError(f"percentage must be between 0 and 100, got {percentage}")

    interval_days = _integer(raw.get("interval_days", default_interval_days), "interval_days")
    if interval_days <= 0:
        raise StrategyConfigError("interval_days must be positive")

    amount = None
    if raw.get("amount") is not None:
        amount = _decimal(raw["amount"], "amount")
        if amount <= 0:
            raise StrategyConfigError("amount must be positive")

    tiers = _parse_tiers(raw.get("tiers", default_tiers))

    fraction = _decimal(raw.get("move_fraction", move_fraction), "move_fraction")
    if fraction <= 0 or fraction > 1:
        raise StrategyConfigError("move_fraction must be in (0, 1]")

    pct_target = _decimal(raw.get("target_percentile", target_percentile), "target_percentile")
    if pct_target < 0 or pct_target > HUNDRED:
        raise StrategyConfigError(f"target_percentile must be in [0, 100], got {pct_target}")

    max_step = _decimal(raw.get("max_step_percent", max_step_percent), "max_step_percent")
    if max_step <= 0 or max_step > HUNDRED:
        raise StrategyConfigError(f"max_step_percent must be in (0, 100], got {max_step}")

    comparables_needed = _integer(raw.get("min_comparables", min_comparables), "min_comparables")
    if comparables_needed < 1:
        raise StrategyConfigError("min_comparables must be at least 1")

    return StrategyParams(
        percentage=percentage,
        interval_days=interval_days,
        amount=amount,
        tiers=tiers,
        target_percentile=pct_target,
        move_fraction=fraction,
        max_step_percent=max_step,
        min_comparables=comparables_needed,
    )


def percentile(values: Sequence[Decimal], pct: Decimal) -> Decimal:
    """Linear-interpolated percentile of a non-empty sequence"""
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    rank = (Decimal(len(ordered) - 1) * pct) / HUNDRED
    lower = int(rank)
    upper = min(lower + 1, len(ordered) - 1)
    weight = rank - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * weight


def _round(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _time_based_percentage(params: StrategyParams, listed_at: Optional[datetime], now: datetime) -> Tuple[Decimal, int]:
    """Pick the deepest tier the listing's age has reached."""
    if not params.tiers:
        return params.percentage, 0
    age_days = (now - listed_at).days if listed_at else 0
    chosen = params.tiers[0]
    for tier in params.tiers:
        if age_days >= tier[0]:
            chosen = tier
    return chosen[1], age_days


def _market_target(
    current: Decimal, params: StrategyParams, comparables: Sequence[Decimal]
) -> Tuple[Optional[Decimal], str]:
    prices = [to_money(p) for p in comparables if p is not None and Decimal(p) > 0]
    if len(prices) < params.min_comparables:
        return None, f"insufficient_comparables:{len(prices)}"

    target = _round(percentile(prices, params.target_percentile))
    if target >= current:
        return None, f"market_at_or_above_price:{target}"

    step = (current - target) * params.move_fraction
    max_step = current * params.max_step_percent / HUNDRED
    step = min(step, max_step)
    return current - step, f"market_based:p{params.target_percentile}={target},n={len(prices)}"


def compute_next_price(
    listing: PricingInput,
    now: datetime,
    market_data: Optional[Sequence[Decimal]] = None,
) -> PricingResult:
    """
    Compute the next price for a listing.

    Returns PriceChange with 0 < new_price < current_price and
    new_price >= floor_price, or NoChange. Both carry the next eligible time.
    """
    current = to_money(listing.current_price)
    floor = to_money(listing.floor_price)
    params = listing.params
    next_eligible_at = now + timedelta(days=params.interval_days)

    if current <= floor:
        return NoChange(reason="at_floor", next_eligible_at=next_eligible_at)

    strategy = ReductionStrategy(listing.strategy)
    if strategy == ReductionStrategy.FIXED_PERCENTAGE:
        raw_price = current * (HUNDRED - params.percentage) / HUNDRED
        reason = f"fixed_percentage:{params.percentage}%"

    elif strategy == ReductionStrategy.FIXED_AMOUNT:
        if params.amount is None:
            raise StrategyConfigError("fixed_amount strategy requires an amount")
        raw_price = current - params.amount
        reason = f"fixed_amount:{to_money(params.amount)}"

    elif strategy == ReductionStrategy.TIME_BASED:
        pct, age_days = _time_based_percentage(params, listing.listed_at, now)
        raw_price = current * (HUNDRED - pct) / HUNDRED
        reason = f"time_based:age={age_days}d,{pct}%"

    elif strategy == ReductionStrategy.MARKET_BASED:
        raw_price, reason = _market_target(current, params, market_data or [])
        if raw_price is None:
            return NoChange(reason=reason, next_eligible_at=next_eligible_at)

    else:  # pragma: no cover - enum is exhaustive
        raise StrategyConfigError(f"Unknown strategy {strategy}")

    new_price = _round(raw_price)
    if new_price < floor:
        new_price = floor
        reason = f"{reason},clamped_to_floor"

    if new_price <= 0 or new_price >= current:
        return NoChange(reason="no_reduction", next_eligible_at=next_eligible_at)

    return PriceChange(new_price=new_price, next_eligible_at=next_eligible_at, reason=reason)
