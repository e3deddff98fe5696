from __future__ import annotations

from dataclasses import dataclass

from .types import (
    REJECT_REASON_LIMIT_PRICE,
    REJECT_REASON_LIQUIDITY,
    REJECT_REASON_PRICE_IMPACT,
    REJECT_REASON_SLIPPAGE,
    Route,
    TradeConfig,
)


@dataclass(slots=True, frozen=True)
class RouteVerdict:
    ok: bool
    reason: str | None = None
    detail: str = ""


ACCEPTED = RouteVerdict(ok=True)


def route_shortfall(route: Route) -> int:
    worst_case = min(route.out_amount, max(0, route.worst_case_out_amount))
    return route.out_amount - worst_case


def max_shortfall(out_amount: int, max_slippage_bps: int) -> int:
    # Aggregators floor the minimum-out amount, so the tolerated shortfall is rounded up.
    return -(-out_amount * max_slippage_bps // 10_000)


def validate_route(
    route: Route,
    config: TradeConfig,
    *,
    limit_price: float | None = None,
) -> RouteVerdict:
    """Check a candidate route against the risk envelope.

    Checks run in a fixed order (liquidity, price impact, slippage, then the
    limit price when one is given) and the first failure is reported.
    """
    if route.liquidity < config.min_liquidity:
        return RouteVerdict(
            ok=False,
            reason=REJECT_REASON_LIQUIDITY,
            detail=f"liquidity={route.liquidity} min={config.min_liquidity}",
        )

    if route.price_impact > config.max_price_impact:
        return RouteVerdict(
            ok=False,
            reason=REJECT_REASON_PRICE_IMPACT,
            detail=f"price_impact={route.price_impact:.6f} max={config.max_price_impact:.6f}",
        )

    if route.out_amount <= 0 or route_shortfall(route) > max_shortfall(route.out_amount, config.max_slippage_bps):
        return RouteVerdict(
            ok=False,
            reason=REJECT_REASON_SLIPPAGE,
            detail=f"slippage_bps={route.slippage_bps:.2f} max={config.max_slippage_bps}",
        )

    if limit_price is not None and route.implied_price < limit_price:
        return RouteVerdict(
            ok=False,
            reason=REJECT_REASON_LIMIT_PRICE,
            detail=f"price={route.implied_price:.12g} limit={limit_price:.12g}",
        )

    return ACCEPTED
