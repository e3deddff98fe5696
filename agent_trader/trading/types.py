from __future__ import annotations

import math
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

OrderType = Literal["market", "limit"]
TradeSide = Literal["buy", "sell"]
Urgency = Literal["low", "medium", "high"]

REJECT_REASON_LIQUIDITY = "LIQUIDITY"
REJECT_REASON_PRICE_IMPACT = "PRICE_IMPACT"
REJECT_REASON_SLIPPAGE = "SLIPPAGE"
REJECT_REASON_LIMIT_PRICE = "LIMIT_PRICE"

REJECTION_REASONS = (
    REJECT_REASON_LIQUIDITY,
    REJECT_REASON_PRICE_IMPACT,
    REJECT_REASON_SLIPPAGE,
    REJECT_REASON_LIMIT_PRICE,
)


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) else default


def now_epoch() -> float:
    return time.time()


def make_trade_id() -> str:
    return f"trd-{uuid.uuid4().hex[:24]}"


@dataclass(slots=True, frozen=True)
class TradeParams:
    input_token: str
    output_token: str
    amount: int
    order_type: OrderType = "market"
    limit_price: float | None = None
    slippage_bps: int | None = None
    deadline: float | None = None
    priority_fee_micro_lamports: int | None = None
    strategy_id: str | None = None

    def deadline_passed(self, *, now: float | None = None) -> bool:
        if self.deadline is None:
            return False
        current = now_epoch() if now is None else now
        return current >= self.deadline

    def seconds_until_deadline(self, *, now: float | None = None) -> float | None:
        if self.deadline is None:
            return None
        current = now_epoch() if now is None else now
        return max(0.0, self.deadline - current)


@dataclass(slots=True, frozen=True)
class Route:
    input_token: str
    output_token: str
    in_amount: int
    out_amount: int
    worst_case_out_amount: int
    hops: tuple[str, ...]
    price_impact: float
    liquidity: float
    fee: int = 0
    quoted_at: float = 0.0
    expires_at: float | None = None
    quote: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def implied_price(self) -> float:
        if self.in_amount <= 0:
            return 0.0
        return self.out_amount / self.in_amount

    @property
    def slippage_bps(self) -> float:
        if self.out_amount <= 0:
            return math.inf
        worst_case = min(self.out_amount, max(0, self.worst_case_out_amount))
        return ((self.out_amount - worst_case) / self.out_amount) * 10_000

    def is_expired(self, *, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now_epoch() if now is None else now
        return current >= self.expires_at


@dataclass(slots=True, frozen=True)
class TransactionReceipt:
    signature: str
    confirmed: bool
    output_amount: int | None = None
    fee: int | None = None
    bundle_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class SignerContext:
    trade_id: str
    priority_fee_micro_lamports: int
    use_priority_bundling: bool
    tip_lamports: int


@dataclass(slots=True, frozen=True)
class TradeResult:
    id: str
    input_token: str
    output_token: str
    input_amount: int
    output_amount: int
    execution_price: float
    slippage: float
    price_impact: float
    fee: int
    route: tuple[str, ...]
    timestamp: float
    tx_signature: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["route"] = list(self.route)
        return payload


@dataclass(slots=True, frozen=True)
class TradeConfig:
    """Risk envelope for one trade; thresholds are upper bounds, never targets."""

    max_slippage_bps: int = 100
    max_price_impact: float = 0.01
    min_liquidity: float = 0.0
    retry_attempts: int = 3
    use_priority_bundling: bool = False
    quote_ttl_seconds: float = 20.0
    retry_backoff_seconds: float = 0.8
    priority_fee_micro_lamports: int = 10_000
    priority_tip_lamports: int = 10_000

    def __post_init__(self) -> None:
        numeric = {
            "max_slippage_bps": self.max_slippage_bps,
            "max_price_impact": self.max_price_impact,
            "min_liquidity": self.min_liquidity,
            "retry_attempts": self.retry_attempts,
            "quote_ttl_seconds": self.quote_ttl_seconds,
            "retry_backoff_seconds": self.retry_backoff_seconds,
            "priority_fee_micro_lamports": self.priority_fee_micro_lamports,
            "priority_tip_lamports": self.priority_tip_lamports,
        }
        for name, value in numeric.items():
            if value < 0:
                raise ValueError(f"TradeConfig.{name} must be non-negative, got {value}")

    @classmethod
    def from_env_defaults(cls) -> "TradeConfig":
        return cls(
            max_slippage_bps=max(0, to_int(os.getenv("MAX_SLIPPAGE_BPS"), 100)),
            max_price_impact=max(0.0, to_float(os.getenv("MAX_PRICE_IMPACT"), 0.01)),
            min_liquidity=max(0.0, to_float(os.getenv("MIN_LIQUIDITY"), 0.0)),
            retry_attempts=max(0, to_int(os.getenv("RETRY_ATTEMPTS"), 3)),
            use_priority_bundling=to_bool(os.getenv("USE_PRIORITY_BUNDLING"), False),
            quote_ttl_seconds=max(0.0, to_float(os.getenv("QUOTE_TTL_SECONDS"), 20.0)),
            retry_backoff_seconds=max(0.0, to_float(os.getenv("RETRY_BACKOFF_SECONDS"), 0.8)),
            priority_fee_micro_lamports=max(0, to_int(os.getenv("PRIORITY_FEE_MICRO_LAMPORTS"), 10_000)),
            priority_tip_lamports=max(0, to_int(os.getenv("PRIORITY_TIP_LAMPORTS"), 10_000)),
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any], defaults: "TradeConfig") -> "TradeConfig":
        return cls(
            max_slippage_bps=max(
                0,
                to_int(raw.get("max_slippage_bps") or raw.get("max_slippage"), defaults.max_slippage_bps),
            ),
            max_price_impact=max(0.0, to_float(raw.get("max_price_impact"), defaults.max_price_impact)),
            min_liquidity=max(0.0, to_float(raw.get("min_liquidity"), defaults.min_liquidity)),
            retry_attempts=max(0, to_int(raw.get("retry_attempts"), defaults.retry_attempts)),
            use_priority_bundling=to_bool(raw.get("use_priority_bundling"), defaults.use_priority_bundling),
            quote_ttl_seconds=max(0.0, to_float(raw.get("quote_ttl_seconds"), defaults.quote_ttl_seconds)),
            retry_backoff_seconds=max(
                0.0,
                to_float(raw.get("retry_backoff_seconds"), defaults.retry_backoff_seconds),
            ),
            priority_fee_micro_lamports=max(
                0,
                to_int(raw.get("priority_fee_micro_lamports"), defaults.priority_fee_micro_lamports),
            ),
            priority_tip_lamports=max(
                0,
                to_int(raw.get("priority_tip_lamports"), defaults.priority_tip_lamports),
            ),
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "TradeConfig") -> "TradeConfig":
        return cls.from_dict(dict(redis_config), defaults)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
