from __future__ import annotations

from typing import Any


class TradeError(RuntimeError):
    """Base of the typed failures surfaced by ``TradeExecutor.execute_trade``."""

    kind = "TRADE_ERROR"
    retryable = False

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": str(self)}


class InvalidParamsError(TradeError):
    kind = "INVALID_PARAMS"


class NoRouteError(TradeError):
    kind = "NO_ROUTE"


class RouteRejectedError(TradeError):
    kind = "ROUTE_REJECTED"

    def __init__(self, reason: str, *, detail: str = "") -> None:
        message = f"Route rejected: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.reason = reason
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["reason"] = self.reason
        return payload


class ExecutionFailedError(TradeError):
    kind = "EXECUTION_FAILED"

    def __init__(self, message: str, *, last_error: BaseException | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["attempts"] = self.attempts
        if self.last_error is not None:
            payload["last_error"] = str(self.last_error)
            payload["last_error_type"] = type(self.last_error).__name__
        return payload


class DeadlineExceededError(TradeError):
    kind = "DEADLINE_EXCEEDED"

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["stage"] = self.stage
        return payload


class TransientSubmissionError(RuntimeError):
    """Raised by submitters for network or timeout failures worth retrying."""


class QuoteRequestError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after_seconds = retry_after_seconds


class RpcMethodError(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        message: str,
        status: int | None = None,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.status = status
        self.code = code
        self.data = data


class TradeNotFoundError(KeyError):
    def __init__(self, trade_id: str) -> None:
        super().__init__(trade_id)
        self.trade_id = trade_id

    def __str__(self) -> str:
        return f"Trade not found: {self.trade_id}"
