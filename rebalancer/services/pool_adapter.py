"""DLMM pool adapter.

Unsigned transactions come from an HTTP transaction-builder gateway that
wraps the pool program; they are signed locally with solders and submitted
through a solana-py RPC client. Confirmation polls signature status and
re-broadcasts the same signed bytes until the transaction lands, fails, or
its blockhash expires.
"""

import asyncio
import base64
import logging
import math
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from rebalancer.engine.errors import (
    ConfirmationUnknownError,
    PartialCloseError,
    PoolAdapterError,
    PositionNotFoundError,
    TransactionExpiredError,
    TransactionFailedError,
)
from rebalancer.schemas.pool import (
    ActiveBin,
    AddLiquidityResponse,
    CreatedPosition,
    PositionSnapshot,
    RemoveLiquidityResponse,
)
from rebalancer.utils.constants import FULL_WITHDRAW_BPS
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)

_LANDED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


class DlmmPoolAdapter:
    """One pool, one gateway, one RPC node."""

    def __init__(
        self,
        rpc: AsyncClient,
        api_url: str,
        pool_address: str,
        base_decimals: int = 8,
        quote_decimals: int = 9,
        slippage_bps: int = 1000,
        timeout: float = 10.0,
        resend_interval: float = 2.0,
        max_rpc_errors: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rpc = rpc
        self.api_url = api_url.rstrip("/")
        self.pool_address = pool_address
        self.base_decimals = base_decimals
        self.quote_decimals = quote_decimals
        self.slippage_bps = slippage_bps
        self.timeout = timeout
        self.resend_interval = resend_interval
        self.max_rpc_errors = max_rpc_errors
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    async def _request(self, method: str, path: str, payload: dict | None = None) -> httpx.Response:
        client = await self._get_client()
        try:
            resp = await client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise PoolAdapterError(f"Gateway {method} {path} failed: {e}") from e
        if resp.status_code >= 400 and resp.status_code != 404:
            raise self._gateway_error(resp, f"{method} {path}")
        return resp

    @staticmethod
    def _gateway_error(resp: httpx.Response, what: str) -> PoolAdapterError:
        try:
            body = resp.json()
        except ValueError:
            return PoolAdapterError(f"{what}: HTTP {resp.status_code} {resp.text[:200]}")
        message = body.get("error") or f"HTTP {resp.status_code}"
        return PoolAdapterError(f"{what}: {message}", logs=body.get("logs") or [])

    @staticmethod
    def _parse(model, resp: httpx.Response, what: str):
        try:
            return model.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise PoolAdapterError(f"{what}: malformed gateway response: {e}") from e

    async def get_active_bin(self) -> ActiveBin:
        path = f"/pools/{self.pool_address}/active-bin"
        resp = await self._request("GET", path)
        if resp.status_code == 404:
            raise PoolAdapterError(f"Pool {self.pool_address} not found")
        return self._parse(ActiveBin, resp, "active-bin")

    async def get_position(self, address: str) -> PositionSnapshot | None:
        """Per-bin holdings of a position, or None if the account no longer exists."""
        resp = await self._request("GET", f"/positions/{address}")
        if resp.status_code == 404:
            return None
        return self._parse(PositionSnapshot, resp, "position")

    # ------------------------------------------------------------------
    # Signing and submission
    # ------------------------------------------------------------------

    async def _latest_blockhash(self) -> tuple[str, int]:
        try:
            resp = await self.rpc.get_latest_blockhash(Confirmed)
        except Exception as e:
            raise PoolAdapterError(f"get_latest_blockhash failed: {e}") from e
        return str(resp.value.blockhash), resp.value.last_valid_block_height

    @staticmethod
    def _sign(tx_b64: str, signers: list[Keypair]) -> VersionedTransaction:
        unsigned = VersionedTransaction.from_bytes(base64.b64decode(tx_b64))
        return VersionedTransaction(unsigned.message, signers)

    async def _submit(self, tx: VersionedTransaction, last_valid_block_height: int) -> str:
        raw = bytes(tx)
        try:
            resp = await self.rpc.send_raw_transaction(
                raw, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=0)
            )
        except Exception as e:
            raise PoolAdapterError(f"send_transaction failed: {e}") from e
        signature = str(resp.value)
        logger.info(f"Submitted {short_id(signature, 16)}")
        return await self.confirm(signature, raw, last_valid_block_height)

    async def confirm(self, signature: str, raw_tx: bytes, last_valid_block_height: int) -> str:
        """Poll until landed, re-sending ``raw_tx`` between polls.

        Raises TransactionFailedError if it lands with an error and
        TransactionExpiredError once the chain passes ``last_valid_block_height``.
        ConfirmationUnknownError means the outcome is unknown, not that it failed.
        """
        sig = Signature.from_string(signature)
        rpc_errors = 0
        while True:
            try:
                statuses = await self.rpc.get_signature_statuses([sig])
                status = statuses.value[0] if statuses.value else None
                height = None
                if status is None or status.confirmation_status not in _LANDED:
                    height = (await self.rpc.get_block_height(Confirmed)).value
            except Exception as e:
                rpc_errors += 1
                if rpc_errors >= self.max_rpc_errors:
                    raise ConfirmationUnknownError(signature, e) from e
                logger.warning(f"Status poll failed for {short_id(signature, 16)} ({rpc_errors}): {e}")
            else:
                rpc_errors = 0
                if status is not None and status.err is not None:
                    raise TransactionFailedError(f"Transaction {signature} failed: {status.err}")
                if status is not None and status.confirmation_status in _LANDED:
                    logger.info(f"Confirmed {short_id(signature, 16)}")
                    return signature
                if height is not None and height > last_valid_block_height:
                    raise TransactionExpiredError(signature, last_valid_block_height)

            await self._sleep(self.resend_interval)
            try:
                await self.rpc.send_raw_transaction(
                    raw_tx, opts=TxOpts(skip_preflight=True, max_retries=0)
                )
            except Exception as e:
                logger.warning(f"Resend of {short_id(signature, 16)} rejected: {e}")

    # ------------------------------------------------------------------
    # Liquidity operations
    # ------------------------------------------------------------------

    async def remove_liquidity_and_close(self, owner: Keypair, snapshot: PositionSnapshot) -> list[str]:
        """Withdraw 100%, claim fees and close the position account.

        Raises PartialCloseError when a later transaction fails after earlier
        ones have already withdrawn liquidity.
        """
        if not snapshot.bins:
            logger.info(f"Position {short_id(snapshot.address)} holds no bins, nothing to withdraw")
            return []
        blockhash, last_valid = await self._latest_blockhash()
        payload: dict[str, Any] = {
            "position": snapshot.address,
            "user": str(owner.pubkey()),
            "fromBinId": snapshot.min_bin,
            "toBinId": snapshot.max_bin,
            "bps": FULL_WITHDRAW_BPS,
            "shouldClaimAndClose": True,
            "recentBlockhash": blockhash,
        }
        resp = await self._request("POST", f"/pools/{self.pool_address}/remove-liquidity", payload)
        if resp.status_code == 404:
            raise PositionNotFoundError(f"Position {snapshot.address} not found at close")
        built = self._parse(RemoveLiquidityResponse, resp, "remove-liquidity")

        signatures: list[str] = []
        for tx_b64 in built.transactions:
            tx = self._sign(tx_b64, [owner])
            try:
                signatures.append(await self._submit(tx, last_valid))
            except PoolAdapterError as e:
                if signatures:
                    raise PartialCloseError(snapshot.address, signatures, len(built.transactions), e) from e
                raise
        logger.info(f"Closed position {short_id(snapshot.address)} in {len(signatures)} tx(s)")
        return signatures

    async def add_liquidity(
        self, owner: Keypair, base_amount: float, min_bin: int, max_bin: int
    ) -> CreatedPosition:
        """Open a fresh position over [min_bin, max_bin] funded with base token only."""
        position = Keypair()
        blockhash, last_valid = await self._latest_blockhash()
        payload = {
            "position": str(position.pubkey()),
            "user": str(owner.pubkey()),
            "totalXAmount": str(math.floor(base_amount * 10 ** self.base_decimals)),
            "totalYAmount": "0",
            "minBinId": min_bin,
            "maxBinId": max_bin,
            "strategyType": "BidAsk",
            "slippageBps": self.slippage_bps,
            "recentBlockhash": blockhash,
        }
        resp = await self._request("POST", f"/pools/{self.pool_address}/add-liquidity", payload)
        if resp.status_code == 404:
            raise PoolAdapterError(f"Pool {self.pool_address} not found")
        built = self._parse(AddLiquidityResponse, resp, "add-liquidity")

        tx = self._sign(built.transaction, [owner, position])
        signature = await self._submit(tx, last_valid)
        return CreatedPosition(
            address=str(position.pubkey()),
            signature=signature,
            min_bin=min_bin,
            max_bin=max_bin,
            base_amount=base_amount,
        )
