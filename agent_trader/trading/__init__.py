from .balances import RpcBalanceProvider
from .errors import (
    DeadlineExceededError,
    ExecutionFailedError,
    InvalidParamsError,
    NoRouteError,
    QuoteRequestError,
    RouteRejectedError,
    RpcMethodError,
    TradeError,
    TradeNotFoundError,
    TransientSubmissionError,
)
from .events import EVENT_TRADE_EXECUTED, EVENT_TRADE_FAILED, EventChannel, TradeEvent
from .executor import TradeExecutor
from .history import DEFAULT_MAX_HISTORY, TradeHistoryStore
from .routes import JupiterRouteProvider, RouteProvider
from .signals import AdvisoryProvider, HttpAdvisoryProvider, MarketSignal, SignalFeed
from .strategy import (
    BalanceProvider,
    FireOutcome,
    RuleAction,
    RuleCondition,
    StrategyRuleEngine,
    TradeRule,
    TradingStrategy,
    load_strategies,
)
from .submitters import (
    DryRunSubmitter,
    LiveSwapSubmitter,
    Submitter,
    TransactionPendingConfirmationError,
    parse_keypair,
)
from .types import (
    REJECT_REASON_LIMIT_PRICE,
    REJECT_REASON_LIQUIDITY,
    REJECT_REASON_PRICE_IMPACT,
    REJECT_REASON_SLIPPAGE,
    Route,
    SignerContext,
    TradeConfig,
    TradeParams,
    TradeResult,
    TransactionReceipt,
)
from .validator import RouteVerdict, validate_route

__all__ = [
    "AdvisoryProvider",
    "BalanceProvider",
    "DEFAULT_MAX_HISTORY",
    "DeadlineExceededError",
    "DryRunSubmitter",
    "EVENT_TRADE_EXECUTED",
    "EVENT_TRADE_FAILED",
    "EventChannel",
    "ExecutionFailedError",
    "FireOutcome",
    "HttpAdvisoryProvider",
    "InvalidParamsError",
    "JupiterRouteProvider",
    "LiveSwapSubmitter",
    "MarketSignal",
    "NoRouteError",
    "QuoteRequestError",
    "REJECT_REASON_LIMIT_PRICE",
    "REJECT_REASON_LIQUIDITY",
    "REJECT_REASON_PRICE_IMPACT",
    "REJECT_REASON_SLIPPAGE",
    "Route",
    "RouteProvider",
    "RouteRejectedError",
    "RouteVerdict",
    "RpcBalanceProvider",
    "RpcMethodError",
    "RuleAction",
    "RuleCondition",
    "SignalFeed",
    "SignerContext",
    "StrategyRuleEngine",
    "Submitter",
    "TradeConfig",
    "TradeError",
    "TradeEvent",
    "TradeExecutor",
    "TradeHistoryStore",
    "TradeNotFoundError",
    "TradeParams",
    "TradeResult",
    "TradeRule",
    "TradingStrategy",
    "TransactionPendingConfirmationError",
    "TransactionReceipt",
    "TransientSubmissionError",
    "load_strategies",
    "parse_keypair",
    "validate_route",
]
