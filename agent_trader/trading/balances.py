from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from agent_trader.common import log_event

from .errors import RpcMethodError
from .types import SOL_MINT, to_int

DEFAULT_SOL_RESERVE_LAMPORTS = 10_000_000


class RpcBalanceProvider:
    """Wallet balances in raw units, read over Solana JSON-RPC.

    SOL is reported net of a fee reserve so that selling "all" leaves enough
    lamports to pay for the transaction itself.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        owner: str,
        sol_reserve_lamports: int = DEFAULT_SOL_RESERVE_LAMPORTS,
        timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._owner = owner
        self._sol_reserve_lamports = max(0, sol_reserve_lamports)
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    @property
    def owner(self) -> str:
        return self._owner

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required for balance lookups.")
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def balance(self, token: str) -> int:
        if token == SOL_MINT:
            result = await self._rpc_call("getBalance", [self._owner, {"commitment": "confirmed"}])
            lamports = to_int(result.get("value") if isinstance(result, dict) else None, 0)
            amount = max(0, lamports - self._sol_reserve_lamports)
        else:
            result = await self._rpc_call(
                "getTokenAccountsByOwner",
                [self._owner, {"mint": token}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
            )
            accounts = result.get("value") if isinstance(result, dict) else None
            amount = sum(_token_account_amount(account) for account in accounts or [])

        log_event(
            self._logger,
            level="debug",
            event="wallet_balance_read",
            message="Wallet balance read",
            token=token,
            amount=amount,
        )
        return amount

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Balance RPC session is not initialized.")

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            async with self._session.post(self._rpc_url, json=payload) as response:
                status = response.status
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise RpcMethodError(method=method, message=f"RPC request failed for {method}: {error}") from error

        if status >= 400 or not isinstance(body, dict):
            raise RpcMethodError(
                method=method,
                status=status,
                data=body,
                message=f"RPC call failed: method={method} status={status}",
            )
        if body.get("error"):
            raise RpcMethodError(method=method, data=body, message=f"RPC error for {method}: {body['error']}")
        return body.get("result")


def _token_account_amount(account: Any) -> int:
    if not isinstance(account, dict):
        return 0
    try:
        token_amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
    except (KeyError, TypeError):
        return 0
    if not isinstance(token_amount, dict):
        return 0
    return max(0, to_int(token_amount.get("amount"), 0))
