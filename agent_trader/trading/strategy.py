from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal, Protocol

from agent_trader.common import log_event

from .errors import TradeError
from .signals import MarketSignal
from .types import SOL_MINT, TradeConfig, TradeParams, TradeResult, Urgency, now_epoch, to_float, to_int

SignalKind = Literal["price", "volume", "momentum", "signal"]
Operator = Literal[">", "<", "==", "between"]
StrategyStatus = Literal["active", "paused"]

SIGNAL_KINDS = ("price", "volume", "momentum", "signal")
OPERATORS = (">", "<", "==", "between")
AMOUNT_ALL = "all"


@dataclass(slots=True, frozen=True)
class UrgencyProfile:
    slippage_fraction: float
    priority_fee_multiplier: float
    deadline_seconds: float


URGENCY_PROFILES: dict[str, UrgencyProfile] = {
    "low": UrgencyProfile(slippage_fraction=0.5, priority_fee_multiplier=0.5, deadline_seconds=120.0),
    "medium": UrgencyProfile(slippage_fraction=0.75, priority_fee_multiplier=1.0, deadline_seconds=60.0),
    "high": UrgencyProfile(slippage_fraction=1.0, priority_fee_multiplier=3.0, deadline_seconds=20.0),
}


class BalanceProvider(Protocol):
    async def balance(self, token: str) -> int:
        ...


class TradeExecutorLike(Protocol):
    async def execute_trade(self, params: TradeParams, *, config: TradeConfig | None = None) -> TradeResult:
        ...


@dataclass(slots=True, frozen=True)
class RuleCondition:
    kind: SignalKind
    operator: Operator
    value: float | tuple[float, float]

    def __post_init__(self) -> None:
        if self.kind not in SIGNAL_KINDS:
            raise ValueError(f"Unsupported signal type: {self.kind!r}")
        if self.operator not in OPERATORS:
            raise ValueError(f"Unsupported operator: {self.operator!r}")

        if self.operator == "between":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("'between' requires a [lo, hi] pair")
            lo, hi = float(self.value[0]), float(self.value[1])
            if lo > hi:
                raise ValueError(f"'between' bounds are inverted: [{lo}, {hi}]")
            object.__setattr__(self, "value", (lo, hi))
        else:
            if isinstance(self.value, (list, tuple)):
                raise ValueError(f"Operator {self.operator!r} requires a single number")
            threshold = float(self.value)
            if not math.isfinite(threshold):
                raise ValueError(f"Condition threshold must be a finite number, got {self.value!r}")
            object.__setattr__(self, "value", threshold)

    def matches(self, observed: float | None) -> bool:
        if observed is None or not math.isfinite(observed):
            return False
        if self.operator == "between":
            lo, hi = self.value  # type: ignore[misc]
            return lo <= observed <= hi
        threshold = float(self.value)  # type: ignore[arg-type]
        if self.operator == ">":
            return observed > threshold
        if self.operator == "<":
            return observed < threshold
        return math.isclose(observed, threshold, rel_tol=1e-9, abs_tol=1e-12)


@dataclass(slots=True, frozen=True)
class RuleAction:
    side: Literal["buy", "sell"]
    amount: int | Literal["all"]
    urgency: Urgency = "medium"

    def __post_init__(self) -> None:
        if self.side not in {"buy", "sell"}:
            raise ValueError(f"Unsupported action side: {self.side!r}")
        if self.urgency not in URGENCY_PROFILES:
            raise ValueError(f"Unsupported urgency: {self.urgency!r}")
        if self.amount != AMOUNT_ALL and (isinstance(self.amount, bool) or int(self.amount) <= 0):
            raise ValueError(f"Action amount must be positive or 'all', got {self.amount!r}")


@dataclass(slots=True, frozen=True)
class TradeRule:
    condition: RuleCondition
    action: RuleAction
    priority: int = 0
    sequence: int = field(default=0, compare=False)


@dataclass(slots=True, frozen=True)
class TradingStrategy:
    id: str
    name: str
    tokens: tuple[str, ...]
    rules: tuple[TradeRule, ...] = ()
    config: TradeConfig | None = None
    status: StrategyStatus = "active"
    quote_token: str = SOL_MINT

    @property
    def active(self) -> bool:
        return self.status == "active"

    def watches(self, token: str) -> bool:
        return not self.tokens or token in self.tokens


@dataclass(slots=True, frozen=True)
class FireOutcome:
    strategy_id: str
    rule: TradeRule
    params: TradeParams | None
    result: TradeResult | None = None
    error: BaseException | None = None
    skipped_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None


def sort_rules(rules: list[TradeRule] | tuple[TradeRule, ...]) -> tuple[TradeRule, ...]:
    sequenced = [replace(rule, sequence=index) for index, rule in enumerate(rules)]
    return tuple(sorted(sequenced, key=lambda rule: rule.priority))


class StrategyRuleEngine:
    """Evaluates strategies against market signals and fires trades.

    Strategies are immutable; every mutation swaps in a new object with its
    rules already sorted, so an evaluation pass always reads a consistent
    snapshot. Evaluation is first-match-wins per strategy.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        executor: TradeExecutorLike,
        balance_provider: BalanceProvider | None = None,
    ) -> None:
        self._logger = logger
        self._executor = executor
        self._balance_provider = balance_provider
        self._strategies: dict[str, TradingStrategy] = {}

    def add_strategy(self, strategy: TradingStrategy) -> TradingStrategy:
        if strategy.id in self._strategies:
            raise ValueError(f"Strategy already registered: {strategy.id}")
        stored = replace(strategy, tokens=tuple(strategy.tokens), rules=sort_rules(strategy.rules))
        self._strategies[stored.id] = stored
        log_event(
            self._logger,
            level="info",
            event="strategy_added",
            message="Strategy registered",
            strategy_id=stored.id,
            rules=len(stored.rules),
            status=stored.status,
        )
        return stored

    def remove_strategy(self, strategy_id: str) -> bool:
        removed = self._strategies.pop(strategy_id, None)
        return removed is not None

    def get_strategy(self, strategy_id: str) -> TradingStrategy:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise KeyError(f"Unknown strategy: {strategy_id}")
        return strategy

    def strategies(self) -> list[TradingStrategy]:
        return list(self._strategies.values())

    def set_rules(self, strategy_id: str, rules: list[TradeRule]) -> TradingStrategy:
        strategy = self.get_strategy(strategy_id)
        updated = replace(strategy, rules=sort_rules(rules))
        self._strategies[strategy_id] = updated
        return updated

    def pause(self, strategy_id: str) -> TradingStrategy:
        return self._set_status(strategy_id, "paused")

    def resume(self, strategy_id: str) -> TradingStrategy:
        return self._set_status(strategy_id, "active")

    def _set_status(self, strategy_id: str, status: StrategyStatus) -> TradingStrategy:
        strategy = self.get_strategy(strategy_id)
        if strategy.status == status:
            return strategy
        updated = replace(strategy, status=status)
        self._strategies[strategy_id] = updated
        log_event(
            self._logger,
            level="info",
            event="strategy_status_changed",
            message="Strategy status changed",
            strategy_id=strategy_id,
            status=status,
        )
        return updated

    def evaluate(self, strategy_id: str, signal: MarketSignal) -> TradeRule | None:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise KeyError(f"Unknown strategy: {strategy_id}")
        return self._first_match(strategy, signal)

    @staticmethod
    def _first_match(strategy: TradingStrategy, signal: MarketSignal) -> TradeRule | None:
        if not strategy.active or not strategy.watches(signal.token):
            return None

        sampled = signal.values()
        for rule in strategy.rules:
            if rule.condition.matches(sampled.get(rule.condition.kind)):
                return rule
        return None

    async def on_signal(self, signal: MarketSignal) -> list[FireOutcome]:
        snapshot = list(self._strategies.values())
        fires: list[tuple[TradingStrategy, TradeRule]] = []
        for strategy in snapshot:
            rule = self._first_match(strategy, signal)
            if rule is not None:
                fires.append((strategy, rule))

        if not fires:
            return []

        return list(
            await asyncio.gather(*(self._fire(strategy, rule, signal) for strategy, rule in fires))
        )

    async def _fire(self, strategy: TradingStrategy, rule: TradeRule, signal: MarketSignal) -> FireOutcome:
        try:
            return await self._fire_rule(strategy, rule, signal)
        except Exception as error:
            # Contained per strategy; the other fires for this signal still report.
            log_event(
                self._logger,
                level="error",
                event="strategy_fire_failed",
                message="Strategy rule could not be executed",
                strategy_id=strategy.id,
                token=signal.token,
                error_type=type(error).__name__,
                error=str(error),
            )
            return FireOutcome(strategy_id=strategy.id, rule=rule, params=None, error=error)

    async def _fire_rule(self, strategy: TradingStrategy, rule: TradeRule, signal: MarketSignal) -> FireOutcome:
        params = await self.build_params(strategy, rule, signal)
        if params is None:
            log_event(
                self._logger,
                level="info",
                event="strategy_fire_skipped",
                message="Rule matched but the trade amount resolved to zero",
                strategy_id=strategy.id,
                token=signal.token,
                side=rule.action.side,
            )
            return FireOutcome(strategy_id=strategy.id, rule=rule, params=None, skipped_reason="ZERO_AMOUNT")

        log_event(
            self._logger,
            level="info",
            event="strategy_fired",
            message="Strategy rule matched; executing trade",
            strategy_id=strategy.id,
            token=signal.token,
            side=rule.action.side,
            urgency=rule.action.urgency,
            priority=rule.priority,
            amount=params.amount,
        )
        try:
            result = await self._executor.execute_trade(params, config=strategy.config)
        except TradeError as error:
            log_event(
                self._logger,
                level="warning",
                event="strategy_fire_failed",
                message="Strategy trade failed; next tick re-evaluates",
                strategy_id=strategy.id,
                token=signal.token,
                error_kind=error.kind,
                error=str(error),
            )
            return FireOutcome(strategy_id=strategy.id, rule=rule, params=params, error=error)

        return FireOutcome(strategy_id=strategy.id, rule=rule, params=params, result=result)

    async def build_params(
        self,
        strategy: TradingStrategy,
        rule: TradeRule,
        signal: MarketSignal,
    ) -> TradeParams | None:
        action = rule.action
        if action.side == "buy":
            input_token, output_token = strategy.quote_token, signal.token
        else:
            input_token, output_token = signal.token, strategy.quote_token

        if action.amount == AMOUNT_ALL:
            if self._balance_provider is None:
                return None
            amount = int(await self._balance_provider.balance(input_token))
        else:
            amount = int(action.amount)
        if amount <= 0:
            return None

        config = strategy.config or self._executor_config()
        profile = URGENCY_PROFILES[action.urgency]
        return TradeParams(
            input_token=input_token,
            output_token=output_token,
            amount=amount,
            slippage_bps=int(config.max_slippage_bps * profile.slippage_fraction),
            deadline=now_epoch() + profile.deadline_seconds,
            priority_fee_micro_lamports=int(config.priority_fee_micro_lamports * profile.priority_fee_multiplier),
            strategy_id=strategy.id,
        )

    def _executor_config(self) -> TradeConfig:
        config = getattr(self._executor, "config", None)
        return config if isinstance(config, TradeConfig) else TradeConfig()


def _rule_from_dict(raw: dict[str, Any]) -> TradeRule:
    condition_raw = raw.get("condition") or {}
    action_raw = raw.get("action") or {}

    value = condition_raw.get("value")
    condition = RuleCondition(
        kind=str(condition_raw.get("type") or condition_raw.get("kind") or ""),  # type: ignore[arg-type]
        operator=str(condition_raw.get("operator") or ""),  # type: ignore[arg-type]
        value=tuple(value) if isinstance(value, list) else to_float(value, math.nan),
    )

    amount_raw = action_raw.get("amount")
    amount: int | str = AMOUNT_ALL if amount_raw == AMOUNT_ALL else to_int(amount_raw, 0)
    action = RuleAction(
        side=str(action_raw.get("type") or action_raw.get("side") or ""),  # type: ignore[arg-type]
        amount=amount,  # type: ignore[arg-type]
        urgency=str(action_raw.get("urgency") or "medium"),  # type: ignore[arg-type]
    )
    return TradeRule(condition=condition, action=action, priority=to_int(raw.get("priority"), 0))


def strategy_from_dict(raw: dict[str, Any], *, defaults: TradeConfig | None = None) -> TradingStrategy:
    strategy_id = str(raw.get("id") or "").strip()
    if not strategy_id:
        raise ValueError("Strategy id is required")

    config_raw = raw.get("config")
    config = None
    if isinstance(config_raw, dict):
        config = TradeConfig.from_dict(config_raw, defaults or TradeConfig())

    status = str(raw.get("status") or "active")
    if status not in {"active", "paused"}:
        raise ValueError(f"Unsupported strategy status: {status!r}")

    return TradingStrategy(
        id=strategy_id,
        name=str(raw.get("name") or strategy_id),
        tokens=tuple(str(token) for token in raw.get("tokens") or ()),
        rules=tuple(_rule_from_dict(item) for item in raw.get("rules") or () if isinstance(item, dict)),
        config=config,
        status=status,  # type: ignore[arg-type]
        quote_token=str(raw.get("quote_token") or SOL_MINT),
    )


def load_strategies(path: str | Path, *, defaults: TradeConfig | None = None) -> list[TradingStrategy]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("strategies") or []
    if not isinstance(payload, list):
        raise ValueError(f"Strategies file must hold a list: {path}")
    return [strategy_from_dict(item, defaults=defaults) for item in payload if isinstance(item, dict)]
