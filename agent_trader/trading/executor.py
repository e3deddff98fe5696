from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from agent_trader.common import guarded_call, log_event, retry_delay

from .errors import (
    DeadlineExceededError,
    ExecutionFailedError,
    InvalidParamsError,
    NoRouteError,
    RouteRejectedError,
    TradeError,
    TransientSubmissionError,
)
from .events import EventChannel, TradeEvent
from .history import TradeHistoryStore
from .routes import RouteProvider
from .submitters import Submitter
from .types import (
    Route,
    SignerContext,
    TradeConfig,
    TradeParams,
    TradeResult,
    TransactionReceipt,
    make_trade_id,
    now_epoch,
)
from .validator import validate_route

TRANSIENT_SUBMIT_ERRORS = (TransientSubmissionError, aiohttp.ClientError, asyncio.TimeoutError)
MAX_RETRY_DELAY_SECONDS = 3.0


def validate_params(params: TradeParams) -> None:
    if not params.input_token or not params.output_token:
        raise InvalidParamsError("input_token and output_token are required")
    if params.input_token == params.output_token:
        raise InvalidParamsError("input_token and output_token must differ")
    if isinstance(params.amount, bool) or not isinstance(params.amount, int) or params.amount <= 0:
        raise InvalidParamsError(f"amount must be a positive integer, got {params.amount!r}")
    if params.order_type not in {"market", "limit"}:
        raise InvalidParamsError(f"Unsupported order_type: {params.order_type!r}")
    if params.order_type == "limit":
        if params.limit_price is None or params.limit_price <= 0:
            raise InvalidParamsError("limit orders require a positive limit_price")
    elif params.limit_price is not None:
        raise InvalidParamsError("limit_price is only valid for limit orders")
    if params.slippage_bps is not None and params.slippage_bps < 0:
        raise InvalidParamsError("slippage_bps must be non-negative")


def route_expired(route: Route, config: TradeConfig, *, now: float | None = None) -> bool:
    current = now_epoch() if now is None else now
    if route.expires_at is not None:
        return route.is_expired(now=current)
    if config.quote_ttl_seconds <= 0 or route.quoted_at <= 0:
        return False
    return current >= route.quoted_at + config.quote_ttl_seconds


def normalize_result(
    *,
    trade_id: str,
    route: Route,
    receipt: TransactionReceipt,
    timestamp: float | None = None,
) -> TradeResult:
    output_amount = route.out_amount
    if receipt.output_amount is not None and receipt.output_amount > 0:
        output_amount = receipt.output_amount

    slippage = 0.0
    if route.out_amount > 0:
        slippage = max(0.0, (route.out_amount - output_amount) / route.out_amount)

    fee = receipt.fee if receipt.fee is not None else route.fee
    return TradeResult(
        id=trade_id,
        input_token=route.input_token,
        output_token=route.output_token,
        input_amount=route.in_amount,
        output_amount=output_amount,
        execution_price=output_amount / route.in_amount,
        slippage=slippage,
        price_impact=route.price_impact,
        fee=max(0, int(fee)),
        route=route.hops,
        timestamp=now_epoch() if timestamp is None else timestamp,
        tx_signature=receipt.signature or None,
    )


class TradeExecutor:
    """Quote, validate, submit and record a single swap.

    The executor is the only writer of the trade history. Every terminal
    outcome is published on the event channel; callers get either a
    ``TradeResult`` or a ``TradeError`` subclass.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        route_provider: RouteProvider,
        submitter: Submitter,
        history: TradeHistoryStore,
        events: EventChannel,
        config: TradeConfig | None = None,
    ) -> None:
        self._logger = logger
        self._route_provider = route_provider
        self._submitter = submitter
        self._history = history
        self._events = events
        self._config = config or TradeConfig()

    @property
    def config(self) -> TradeConfig:
        return self._config

    @property
    def history(self) -> TradeHistoryStore:
        return self._history

    def update_config(self, config: TradeConfig) -> None:
        # In-flight trades keep the snapshot they started with.
        self._config = config

    async def execute_trade(self, params: TradeParams, *, config: TradeConfig | None = None) -> TradeResult:
        active_config = config or self._config
        trade_id = make_trade_id()

        try:
            result = await self._execute(params, active_config, trade_id)
        except asyncio.CancelledError:
            raise
        except TradeError as error:
            await self._publish_failure(params, error, trade_id=trade_id)
            raise
        except Exception as error:
            wrapped = ExecutionFailedError(f"Unexpected execution error: {error}", last_error=error)
            await self._publish_failure(params, wrapped, trade_id=trade_id)
            raise wrapped from error

        self._history.record(result)
        log_event(
            self._logger,
            level="info",
            event="trade_executed",
            message="Trade executed",
            trade_id=result.id,
            input_token=result.input_token,
            output_token=result.output_token,
            input_amount=result.input_amount,
            output_amount=result.output_amount,
            execution_price=result.execution_price,
            slippage=result.slippage,
            price_impact=result.price_impact,
            route=list(result.route),
            tx_signature=result.tx_signature,
            strategy_id=params.strategy_id,
        )
        await guarded_call(
            lambda: self._events.publish(TradeEvent.executed(result, params=params)),
            logger=self._logger,
            event="event_publish_failed",
            message="Failed to publish trade_executed event",
            trade_id=result.id,
        )
        return result

    async def _execute(self, params: TradeParams, config: TradeConfig, trade_id: str) -> TradeResult:
        validate_params(params)
        slippage_bps = params.slippage_bps if params.slippage_bps is not None else config.max_slippage_bps

        route = await self._select_route(params, config, slippage_bps=slippage_bps, trade_id=trade_id)

        attempts = max(1, config.retry_attempts)
        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            self._check_deadline(params, stage="submit")

            if attempt > 1 and route_expired(route, config):
                log_event(
                    self._logger,
                    level="info",
                    event="route_expired_requote",
                    message="Accepted route expired before retry; fetching a fresh quote",
                    trade_id=trade_id,
                    attempt=attempt,
                )
                route = await self._select_route(params, config, slippage_bps=slippage_bps, trade_id=trade_id)

            signer_context = SignerContext(
                trade_id=trade_id,
                priority_fee_micro_lamports=(
                    params.priority_fee_micro_lamports
                    if params.priority_fee_micro_lamports is not None
                    else config.priority_fee_micro_lamports
                ),
                use_priority_bundling=config.use_priority_bundling,
                tip_lamports=config.priority_tip_lamports,
            )

            try:
                receipt = await self._submitter.submit(route, signer_context)
            except asyncio.CancelledError:
                raise
            except TRANSIENT_SUBMIT_ERRORS as error:
                last_error = error
                if attempt >= attempts:
                    break
                await self._backoff_before_retry(params, config, attempt=attempt, error=error, trade_id=trade_id)
                continue
            except TradeError:
                raise
            except Exception as error:
                raise ExecutionFailedError(
                    f"Submission failed: {error}",
                    last_error=error,
                    attempts=attempt,
                ) from error

            if not receipt.confirmed:
                raise ExecutionFailedError(
                    f"Submission was not confirmed: signature={receipt.signature}",
                    attempts=attempt,
                )
            return normalize_result(trade_id=trade_id, route=route, receipt=receipt)

        raise ExecutionFailedError(
            f"Submission failed after {attempts} attempt(s): {last_error}",
            last_error=last_error,
            attempts=attempts,
        ) from last_error

    async def _select_route(
        self,
        params: TradeParams,
        config: TradeConfig,
        *,
        slippage_bps: int,
        trade_id: str,
    ) -> Route:
        self._check_deadline(params, stage="quote")

        async def fetch_routes() -> list[Route]:
            # Provider timeouts are quote failures; only wait_for below signals the deadline.
            try:
                return await self._route_provider.quote(
                    input_token=params.input_token,
                    output_token=params.output_token,
                    amount=params.amount,
                    slippage_bps=slippage_bps,
                )
            except asyncio.TimeoutError as error:
                raise NoRouteError(f"Route provider timed out: {error}") from error

        try:
            routes = await asyncio.wait_for(fetch_routes(), timeout=params.seconds_until_deadline())
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as error:
            raise DeadlineExceededError("Deadline passed while quoting", stage="quote") from error
        except TradeError:
            raise
        except Exception as error:
            raise NoRouteError(f"Route provider failed: {error}") from error

        if not routes:
            raise NoRouteError(
                f"No route for {params.input_token} -> {params.output_token} amount={params.amount}"
            )

        route = routes[0]
        limit_price = params.limit_price if params.order_type == "limit" else None
        verdict = validate_route(route, config, limit_price=limit_price)
        if not verdict.ok:
            log_event(
                self._logger,
                level="info",
                event="route_rejected",
                message="Route rejected by trade constraints",
                trade_id=trade_id,
                reason=verdict.reason,
                detail=verdict.detail,
                hops=list(route.hops),
            )
            raise RouteRejectedError(verdict.reason or "UNKNOWN", detail=verdict.detail)
        return route

    async def _backoff_before_retry(
        self,
        params: TradeParams,
        config: TradeConfig,
        *,
        attempt: int,
        error: BaseException,
        trade_id: str,
    ) -> None:
        delay = retry_delay(attempt, base_seconds=config.retry_backoff_seconds, max_seconds=MAX_RETRY_DELAY_SECONDS)
        remaining = params.seconds_until_deadline()
        deadline_reached = remaining is not None and remaining <= delay
        if deadline_reached:
            delay = remaining

        log_event(
            self._logger,
            level="warning",
            event="trade_submit_retry",
            message="Transient submission failure; retrying",
            trade_id=trade_id,
            attempt=attempt,
            delay_seconds=round(delay, 3),
            error=str(error),
            error_type=type(error).__name__,
        )
        if delay > 0:
            await asyncio.sleep(delay)
        if deadline_reached:
            raise DeadlineExceededError("Trade deadline passed during retry backoff", stage="submit")

    @staticmethod
    def _check_deadline(params: TradeParams, *, stage: str) -> None:
        if params.deadline_passed():
            raise DeadlineExceededError(f"Trade deadline passed before {stage}", stage=stage)

    async def _publish_failure(self, params: TradeParams, error: TradeError, *, trade_id: str) -> None:
        details: dict[str, Any] = error.to_dict()
        details["trade_id"] = trade_id
        reason = getattr(error, "reason", None) or error.kind

        log_event(
            self._logger,
            level="warning",
            event="trade_failed",
            message="Trade failed",
            trade_id=trade_id,
            error_kind=error.kind,
            reason=reason,
            error=str(error),
            input_token=params.input_token,
            output_token=params.output_token,
            amount=params.amount,
            strategy_id=params.strategy_id,
        )
        await guarded_call(
            lambda: self._events.publish(
                TradeEvent.failed(reason=reason, error_kind=error.kind, params=params, details=details)
            ),
            logger=self._logger,
            event="event_publish_failed",
            message="Failed to publish trade_failed event",
            trade_id=trade_id,
        )
