from __future__ import annotations

import asyncio
import base64
import contextlib
import hashlib
import json
import logging
from typing import Any, Protocol

import aiohttp
from solana.rpc.async_api import AsyncClient
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from agent_trader.common import log_event

from .errors import RpcMethodError, TransientSubmissionError
from .types import Route, SignerContext, TransactionReceipt

DEFAULT_JUPITER_SWAP_ENDPOINT = "https://api.jup.ag/swap/v1/swap"
_RETRYABLE_HTTP_STATUSES = {408, 425, 429, 500, 502, 503, 504}
_BASE58_ALPHABET = frozenset("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")
_BASE58_KEYPAIR_LENGTHS = (80, 88)
_RETRYABLE_RPC_MARKERS = (
    "blockhash not found",
    "node is behind",
    "too many requests",
    "rate limit",
    "timed out",
    "connection reset",
)


class Submitter(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def healthcheck(self) -> None:
        ...

    async def submit(self, route: Route, signer_context: SignerContext) -> TransactionReceipt:
        ...


class TransactionPendingConfirmationError(RuntimeError):
    def __init__(self, message: str, *, tx_signature: str) -> None:
        super().__init__(message)
        self.tx_signature = tx_signature


def _error_payload_to_message(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
        details = payload.get("details")
        if details:
            return str(details)
    return str(payload)


def _is_retryable_rpc_error(error: RpcMethodError) -> bool:
    if error.status is not None and error.status in _RETRYABLE_HTTP_STATUSES:
        return True
    lowered = str(error).lower()
    return any(marker in lowered for marker in _RETRYABLE_RPC_MARKERS)


def parse_keypair(raw: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    # from_base58_string panics on malformed input, so screen the text first.
    if _BASE58_KEYPAIR_LENGTHS[0] <= len(value) <= _BASE58_KEYPAIR_LENGTHS[1] and set(value) <= _BASE58_ALPHABET:
        with contextlib.suppress(Exception):
            return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


class DryRunSubmitter:
    """Confirms every route immediately at its quoted output."""

    def __init__(self, *, logger: logging.Logger) -> None:
        self._logger = logger
        self.submissions: list[str] = []

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    async def submit(self, route: Route, signer_context: SignerContext) -> TransactionReceipt:
        signature = f"dryrun-{signer_context.trade_id}"
        self.submissions.append(signature)
        log_event(
            self._logger,
            level="info",
            event="trade_dry_run",
            message="Dry-run submission",
            trade_id=signer_context.trade_id,
            input_token=route.input_token,
            output_token=route.output_token,
            in_amount=route.in_amount,
            out_amount=route.out_amount,
            hops=list(route.hops),
            priority_fee_micro_lamports=signer_context.priority_fee_micro_lamports,
            use_priority_bundling=signer_context.use_priority_bundling,
        )
        return TransactionReceipt(
            signature=signature,
            confirmed=True,
            output_amount=route.out_amount,
            fee=0,
            metadata={"mode": "dry_run"},
        )


class JitoBundleClient:
    def __init__(self, *, logger: logging.Logger, block_engine_url: str) -> None:
        self._logger = logger
        self._block_engine_url = block_engine_url.strip()
        self._tip_accounts_cache: list[str] = []

    @property
    def enabled(self) -> bool:
        return bool(self._block_engine_url)

    async def _post(self, session: aiohttp.ClientSession, *, method: str, params: list[Any]) -> Any:
        if not self._block_engine_url:
            raise RuntimeError("JITO_BLOCK_ENGINE_URL is required for priority bundling.")

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with session.post(self._block_engine_url, json=payload) as response:
            status = response.status
            raw_text = await response.text()

        parsed: Any = None
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}

        if status >= 400:
            raise RpcMethodError(
                method=method,
                status=status,
                data=parsed,
                message=f"Jito {method} failed: status={status} body={str(raw_text)[:240]!r}",
            )
        if isinstance(parsed, dict) and parsed.get("error"):
            raise RpcMethodError(
                method=method,
                data=parsed,
                message=f"Jito {method} failed: {_error_payload_to_message(parsed['error'])}",
            )
        return parsed.get("result") if isinstance(parsed, dict) else None

    async def select_tip_account(self, *, session: aiohttp.ClientSession, trade_id: str) -> str:
        if not self._tip_accounts_cache:
            result = await self._post(session, method="getTipAccounts", params=[])
            if not isinstance(result, list):
                raise RuntimeError(f"Unexpected getTipAccounts response: {result}")
            tip_accounts = [str(item).strip() for item in result if str(item).strip()]
            if not tip_accounts:
                raise RuntimeError("Jito getTipAccounts returned no tip accounts.")
            self._tip_accounts_cache = tip_accounts

        accounts = self._tip_accounts_cache
        index = int(hashlib.sha256(trade_id.encode("utf-8")).hexdigest(), 16) % len(accounts)
        return accounts[index]

    async def send_bundle(
        self,
        *,
        session: aiohttp.ClientSession,
        signed_transactions: list[str],
        trade_id: str,
    ) -> str | None:
        result = await self._post(
            session,
            method="sendBundle",
            params=[signed_transactions, {"encoding": "base64"}],
        )
        bundle_id = None
        if isinstance(result, str):
            bundle_id = result
        elif isinstance(result, dict):
            bundle_id = str(result.get("bundleId") or result.get("id") or "") or None

        log_event(
            self._logger,
            level="info",
            event="jito_bundle_submitted",
            message="Swap bundle submitted to Jito block engine",
            trade_id=trade_id,
            tx_count=len(signed_transactions),
            bundle_id=bundle_id,
        )
        return bundle_id


class LiveSwapSubmitter:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        private_key: str,
        swap_api_url: str = DEFAULT_JUPITER_SWAP_ENDPOINT,
        jupiter_api_key: str = "",
        jito_block_engine_url: str = "",
        confirm_timeout_seconds: float = 45.0,
        confirm_poll_interval_seconds: float = 1.0,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._private_key = private_key
        self._swap_api_url = swap_api_url.strip() or DEFAULT_JUPITER_SWAP_ENDPOINT
        self._jupiter_api_key = jupiter_api_key.strip()
        self._confirm_timeout_seconds = max(1.0, confirm_timeout_seconds)
        self._confirm_poll_interval_seconds = max(0.1, confirm_poll_interval_seconds)
        self._jito = JitoBundleClient(logger=logger, block_engine_url=jito_block_engine_url)
        self._rpc_client: AsyncClient | None = None
        self._signer: Keypair | None = None
        self._http_session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required when DRY_RUN is false.")
        if not self._private_key:
            raise ValueError("PRIVATE_KEY is required when DRY_RUN is false.")

        if self._rpc_client is None:
            self._rpc_client = AsyncClient(self._rpc_url)
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=8)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

        self._signer = parse_keypair(self._private_key)

    async def close(self) -> None:
        if self._rpc_client is not None:
            await self._rpc_client.close()
            self._rpc_client = None

        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        if self._rpc_client is None:
            await self.connect()
        if self._rpc_client is None or not await self._rpc_client.is_connected():
            raise RuntimeError("Solana RPC is not reachable.")

    async def submit(self, route: Route, signer_context: SignerContext) -> TransactionReceipt:
        try:
            return await self._submit(route, signer_context)
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise TransientSubmissionError(f"Network error during submission: {error}") from error
        except RpcMethodError as error:
            if _is_retryable_rpc_error(error):
                raise TransientSubmissionError(str(error)) from error
            raise

    async def _submit(self, route: Route, signer_context: SignerContext) -> TransactionReceipt:
        if self._signer is None or self._http_session is None:
            await self.connect()
        if self._signer is None or self._http_session is None:
            raise RuntimeError("Signer is not initialized.")

        signed_tx = await self._build_signed_swap_transaction(route, signer_context)
        tx_signature = str(signed_tx.signatures[0])
        signed_tx_base64 = base64.b64encode(bytes(signed_tx)).decode("ascii")

        bundle_id = None
        if signer_context.use_priority_bundling and self._jito.enabled:
            tip_tx_base64 = await self._build_tip_transaction(
                tip_lamports=signer_context.tip_lamports,
                trade_id=signer_context.trade_id,
            )
            bundle_id = await self._jito.send_bundle(
                session=self._http_session,
                signed_transactions=[signed_tx_base64, tip_tx_base64],
                trade_id=signer_context.trade_id,
            )
        else:
            if signer_context.use_priority_bundling:
                log_event(
                    self._logger,
                    level="warning",
                    event="priority_bundling_unavailable",
                    message="Priority bundling requested without a Jito endpoint; sending directly",
                    trade_id=signer_context.trade_id,
                )
            await self._rpc_call(
                "sendTransaction",
                [signed_tx_base64, {"encoding": "base64", "skipPreflight": True, "maxRetries": 0}],
            )

        log_event(
            self._logger,
            level="info",
            event="swap_transaction_sent",
            message="Swap transaction sent; waiting for confirmation",
            trade_id=signer_context.trade_id,
            tx_signature=tx_signature,
            bundle_id=bundle_id,
        )

        status = await self._wait_for_confirmation(tx_signature)
        return TransactionReceipt(
            signature=tx_signature,
            confirmed=True,
            bundle_id=bundle_id,
            metadata={
                "slot": status.get("slot"),
                "confirmation_status": status.get("confirmationStatus"),
            },
        )

    async def _build_signed_swap_transaction(
        self,
        route: Route,
        signer_context: SignerContext,
    ) -> VersionedTransaction:
        if self._signer is None or self._http_session is None:
            raise RuntimeError("Signer is not initialized.")
        headers = {"Content-Type": "application/json"}
        if self._jupiter_api_key:
            headers["x-api-key"] = self._jupiter_api_key

        payload = {
            "quoteResponse": route.quote,
            "userPublicKey": str(self._signer.pubkey()),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "computeUnitPriceMicroLamports": max(0, int(signer_context.priority_fee_micro_lamports)),
        }
        async with self._http_session.post(self._swap_api_url, json=payload, headers=headers) as response:
            status = response.status
            body = await response.json(content_type=None)

        if status >= 400 or not isinstance(body, dict):
            raise RpcMethodError(
                method="swap",
                status=status,
                data=body,
                message=f"Swap API request failed: status={status} body={str(body)[:240]!r}",
            )

        raw_tx = body.get("swapTransaction")
        if not isinstance(raw_tx, str) or not raw_tx:
            raise RuntimeError(f"swapTransaction is missing in swap response: {body}")

        unsigned = VersionedTransaction.from_bytes(base64.b64decode(raw_tx))
        signed = VersionedTransaction(unsigned.message, [self._signer])
        if not signed.signatures:
            raise RuntimeError("Signed swap transaction has no signatures.")
        return signed

    async def _build_tip_transaction(self, *, tip_lamports: int, trade_id: str) -> str:
        if self._signer is None or self._http_session is None:
            raise RuntimeError("Signer is not initialized.")
        if tip_lamports <= 0:
            raise RuntimeError("tip_lamports must be greater than zero for priority bundling.")

        tip_account_raw = await self._jito.select_tip_account(session=self._http_session, trade_id=trade_id)
        try:
            tip_account = Pubkey.from_string(tip_account_raw)
        except Exception as error:
            raise RuntimeError(f"Invalid Jito tip account returned: {tip_account_raw}") from error

        latest_blockhash = await self._fetch_latest_blockhash()
        instruction = transfer(
            TransferParams(
                from_pubkey=self._signer.pubkey(),
                to_pubkey=tip_account,
                lamports=int(tip_lamports),
            )
        )
        message = MessageV0.try_compile(
            self._signer.pubkey(),
            [instruction],
            [],
            Hash.from_string(latest_blockhash),
        )
        signed_tip_tx = VersionedTransaction(message, [self._signer])
        return base64.b64encode(bytes(signed_tip_tx)).decode("ascii")

    async def _wait_for_confirmation(self, tx_signature: str) -> dict[str, Any]:
        # The transaction is already broadcast, so poll failures are never reported as transient.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._confirm_timeout_seconds
        last_error: BaseException | None = None

        while loop.time() < deadline:
            try:
                result = await self._rpc_call(
                    "getSignatureStatuses",
                    [[tx_signature], {"searchTransactionHistory": False}],
                )
            except (aiohttp.ClientError, asyncio.TimeoutError, RpcMethodError) as error:
                last_error = error
                log_event(
                    self._logger,
                    level="warning",
                    event="confirmation_poll_failed",
                    message="Signature status poll failed; still waiting for confirmation",
                    tx_signature=tx_signature,
                    error=str(error),
                )
                result = None
            value = result.get("value") if isinstance(result, dict) else None
            status = value[0] if isinstance(value, list) and value else None
            if isinstance(status, dict):
                if status.get("err") is not None:
                    raise RuntimeError(f"Swap transaction failed on-chain: {status.get('err')}")
                if str(status.get("confirmationStatus") or "") in {"confirmed", "finalized"}:
                    return status
            await asyncio.sleep(self._confirm_poll_interval_seconds)

        message = f"Swap transaction was not confirmed within {self._confirm_timeout_seconds:.0f}s"
        if last_error is not None:
            message = f"{message}; last poll error: {last_error}"
        raise TransactionPendingConfirmationError(message, tx_signature=tx_signature)

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            status = response.status
            body = await response.json(content_type=None)

        if status >= 400:
            raise RpcMethodError(
                method=method,
                status=status,
                data=body,
                message=f"RPC call failed: method={method} status={status}",
            )
        if not isinstance(body, dict):
            raise RpcMethodError(method=method, data=body, message=f"Invalid RPC response for {method}")
        if body.get("error"):
            error_payload = body["error"]
            code = error_payload.get("code") if isinstance(error_payload, dict) else None
            raise RpcMethodError(
                method=method,
                code=code if isinstance(code, int) else None,
                data=body,
                message=f"RPC error for {method}: {_error_payload_to_message(error_payload)}",
            )

        return body.get("result")

    async def _fetch_latest_blockhash(self) -> str:
        result = await self._rpc_call("getLatestBlockhash", [{"commitment": "processed"}])
        value = result.get("value") if isinstance(result, dict) else None
        blockhash = value.get("blockhash") if isinstance(value, dict) else None
        if not isinstance(blockhash, str) or not blockhash:
            raise RuntimeError(f"Missing blockhash in RPC response: {result}")
        return blockhash
