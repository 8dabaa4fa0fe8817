"""JSON-RPC escrow gateway adapter.

Talks to a per-chain escrow gateway that wraps the HTLC contract and its
event index. Amounts cross the wire as integer strings in the chain's base
unit (wei, sun, yoctoNEAR). Live events are polled from the index.
"""

import asyncio
import itertools
import logging
from decimal import Decimal
from typing import Any, AsyncIterator, Optional

import httpx

from swaprelay.adapters.base import (
    AlreadyRefunded,
    AlreadyWithdrawn,
    ChainAdapter,
    EscrowInfo,
    EscrowNotFound,
    EscrowState,
    RawChainEvent,
    SecretMismatch,
    TimelockNotExpired,
)
from swaprelay.chains import require_chain
from swaprelay.errors import IrrecoverableLedgerError, TransientInfrastructureError

logger = logging.getLogger(__name__)

# Gateway error codes
ERROR_CODES: dict[int, type[Exception]] = {
    -32001: SecretMismatch,
    -32002: EscrowNotFound,
    -32003: AlreadyWithdrawn,
    -32004: TimelockNotExpired,
    -32005: AlreadyRefunded,
    -32010: IrrecoverableLedgerError,  # contract revert
    -32011: IrrecoverableLedgerError,  # insufficient liquidity
    -32012: IrrecoverableLedgerError,  # nonce conflict
}


class JsonRpcChainAdapter(ChainAdapter):
    """Escrow gateway client for one chain."""

    def __init__(
        self,
        chain: str,
        rpc_url: str,
        contract: str = "",
        api_key: str = "",
        timeout: float = 20.0,
        poll_interval: float = 3.0,
        page_size: int = 200,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._chain = chain
        self._config = require_chain(chain)
        self.rpc_url = rpc_url
        self.contract = contract
        self.api_key = api_key
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.page_size = page_size
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)

    @property
    def chain(self) -> str:
        return self._chain

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _to_base_units(self, amount: Decimal) -> str:
        return str(int(Decimal(amount).scaleb(self._config.decimals)))

    def _from_base_units(self, value: Any) -> Decimal:
        return Decimal(str(value)).scaleb(-self._config.decimals)

    async def _call(self, method: str, params: dict) -> Any:
        """Perform one JSON-RPC call, mapping gateway errors to typed exceptions."""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": {"contract": self.contract, **params},
            "id": next(self._ids),
        }
        try:
            response = await self._get_client().post(self.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientInfrastructureError(f"{self._chain} {method} timed out: {e}")
        except httpx.HTTPError as e:
            raise TransientInfrastructureError(f"{self._chain} {method} failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientInfrastructureError(
                f"{self._chain} {method} returned HTTP {response.status_code}"
            )
        if response.status_code != 200:
            raise IrrecoverableLedgerError(
                f"{self._chain} {method} returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransientInfrastructureError(f"{self._chain} {method} returned invalid JSON: {e}")

        if not isinstance(data, dict):
            raise TransientInfrastructureError(
                f"{self._chain} {method} returned a non-object body: {type(data).__name__}"
            )

        error = data.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            code = error.get("code")
            message = f"{self._chain} {method}: {error.get('message', 'unknown error')}"
            error_class = ERROR_CODES.get(code, TransientInfrastructureError)
            raise error_class(message)

        return data.get("result")

    def _require(self, result: Any, method: str, key: str) -> Any:
        """Pull a mandatory field out of a call result."""
        if not isinstance(result, dict) or result.get(key) is None:
            raise TransientInfrastructureError(f"{self._chain} {method} result has no {key}: {result!r}")
        return result[key]

    async def create_escrow(
        self,
        hashlock: str,
        timelock: int,
        beneficiary: str,
        amount: Decimal,
    ) -> str:
        result = await self._call(
            "escrow_create",
            {
                "hashlock": f"0x{hashlock}",
                "timelock": int(timelock),
                "beneficiary": beneficiary,
                "amount": self._to_base_units(amount),
            },
        )
        escrow_ref = self._require(result, "escrow_create", "escrow_id")
        logger.info(f"{self._chain} escrow {escrow_ref} created in tx {result.get('tx_hash')}")
        return escrow_ref

    async def withdraw(self, escrow_ref: str, secret: str) -> str:
        result = await self._call(
            "escrow_withdraw", {"escrow_id": escrow_ref, "preimage": f"0x{secret}"}
        )
        return self._require(result, "escrow_withdraw", "tx_hash")

    async def refund(self, escrow_ref: str) -> str:
        result = await self._call("escrow_refund", {"escrow_id": escrow_ref})
        return self._require(result, "escrow_refund", "tx_hash")

    async def get_escrow(self, escrow_ref: str) -> EscrowInfo:
        result = await self._call("escrow_get", {"escrow_id": escrow_ref})
        if result is None:
            raise EscrowNotFound(f"{self._chain}: escrow {escrow_ref} not found")
        if not isinstance(result, dict):
            raise TransientInfrastructureError(f"{self._chain} escrow_get returned {result!r}")
        return self._to_info(escrow_ref, result)

    async def find_escrows(self, hashlock: str) -> list[EscrowInfo]:
        result = await self._call("escrow_find", {"hashlock": f"0x{hashlock}"})
        if result is not None and not isinstance(result, list):
            raise TransientInfrastructureError(f"{self._chain} escrow_find returned {result!r}")
        return [self._to_info(str(entry["escrow_id"]), entry) for entry in result or []]

    def _to_info(self, escrow_ref: str, result: dict) -> EscrowInfo:
        hashlock = str(result["hashlock"]).lower()
        return EscrowInfo(
            escrow_ref=escrow_ref,
            amount=self._from_base_units(result["amount"]),
            hashlock=hashlock[2:] if hashlock.startswith("0x") else hashlock,
            timelock=int(result["timelock"]),
            status=EscrowState(result.get("status", "open")),
            initiator=result.get("sender", ""),
            beneficiary=result.get("receiver", ""),
        )

    async def head_sequence(self) -> int:
        result = await self._call("events_head", {})
        return int(result)

    def _to_event(self, entry: dict) -> RawChainEvent:
        payload = dict(entry.get("data", {}))
        if "amount" in payload:
            payload["amount"] = str(self._from_base_units(payload["amount"]))
        return RawChainEvent(
            chain=self._chain,
            kind=entry["event"],
            sequence=int(entry["sequence"]),
            tx_ref=entry.get("tx_hash", ""),
            payload=payload,
        )

    async def backfill(self, after: int, until: Optional[int] = None) -> list[RawChainEvent]:
        events: list[RawChainEvent] = []
        cursor = after
        while True:
            result = await self._call(
                "events_range",
                {"after": cursor, "until": until, "limit": self.page_size},
            )
            page = [self._to_event(entry) for entry in result or []]
            if not page:
                break
            events.extend(page)
            cursor = page[-1].sequence
            if len(page) < self.page_size:
                break
        return events

    async def subscribe(self, after: int) -> AsyncIterator[RawChainEvent]:
        position = after
        while True:
            for event in await self.backfill(position):
                position = event.sequence
                yield event
            await asyncio.sleep(self.poll_interval)
