"""Upstream entry point for swap requests.

Callers register a swap before locking funds: the service generates the
secret and hashlock, quotes the counter leg and opens the auction window.
The swap itself is created by the relayer once the source escrow shows up
on chain; until then its status is reported as awaiting_source_escrow.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from swaprelay.chains import require_chain, validate_address
from swaprelay.config import Settings, get_settings
from swaprelay.crypto import SecretCommitmentGenerator, normalize_hex
from swaprelay.errors import ConsistencyViolation, SwapNotFoundError, ValidationError
from swaprelay.ledger.registry import SwapRegistry
from swaprelay.ledger.snapshots import IntentSnapshot, SwapSnapshot
from swaprelay.pricing.auction import DutchAuctionPricer
from swaprelay.pricing.oracle import PriceOracle

logger = logging.getLogger(__name__)

AWAITING_SOURCE_ESCROW = "awaiting_source_escrow"


@dataclass(frozen=True)
class SubmittedSwap:
    """Everything the initiator needs to lock the source leg."""

    swap_id: str
    hashlock: str
    secret: str
    timelock: int
    source_chain: str
    destination_chain: str
    amount: Decimal
    auction_start: Decimal
    auction_floor: Decimal


@dataclass(frozen=True)
class SwapStatusView:
    swap_id: str
    status: str
    hashlock: str
    source_chain: str
    destination_chain: str
    principal_amount: Decimal
    counter_amount: Optional[Decimal] = None
    filled_amount: Decimal = Decimal("0")
    source_timelock: Optional[int] = None
    destination_timelock: Optional[int] = None
    rate_source: Optional[str] = None
    failure_reason: Optional[str] = None
    fills: list[dict] = field(default_factory=list)
    escrows: list[dict] = field(default_factory=list)

    @classmethod
    def from_swap(cls, swap: SwapSnapshot) -> "SwapStatusView":
        return cls(
            swap_id=swap.id,
            status=swap.status.value,
            hashlock=swap.hashlock,
            source_chain=swap.source_chain,
            destination_chain=swap.destination_chain,
            principal_amount=swap.principal_amount,
            counter_amount=swap.counter_amount,
            filled_amount=swap.filled_amount,
            source_timelock=swap.source_timelock,
            destination_timelock=swap.destination_timelock,
            rate_source=swap.rate_source,
            failure_reason=swap.failure_reason,
            fills=[
                {"escrow_reference": f.escrow_reference, "amount": str(f.amount)}
                for f in swap.fills
            ],
            escrows=[
                {
                    "chain": e.chain,
                    "side": e.side.value,
                    "escrow_reference": e.escrow_reference,
                    "amount": str(e.amount),
                    "timelock": e.timelock,
                    "status": e.status.value,
                }
                for e in swap.escrows
            ],
        )

    @classmethod
    def from_intent(cls, intent: IntentSnapshot) -> "SwapStatusView":
        return cls(
            swap_id=intent.id,
            status=AWAITING_SOURCE_ESCROW,
            hashlock=intent.hashlock,
            source_chain=intent.source_chain,
            destination_chain=intent.destination_chain,
            principal_amount=intent.amount,
            source_timelock=intent.timelock,
        )


@dataclass(frozen=True)
class QuoteView:
    source_chain: str
    destination_chain: str
    amount: Decimal
    counter_amount: Decimal
    rate: Decimal
    fee: Decimal
    estimated_gas: Decimal
    gas_asset: str
    rate_source: str
    auction_start: Decimal
    auction_floor: Decimal


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be positive")
    return value


class BridgeService:
    """Swap submission, status, secret reveal and quoting."""

    def __init__(
        self,
        registry: SwapRegistry,
        oracle: PriceOracle,
        auction: DutchAuctionPricer,
        orchestrator=None,
        settings: Optional[Settings] = None,
        generator: Optional[SecretCommitmentGenerator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.oracle = oracle
        self.auction = auction
        self.orchestrator = orchestrator
        self.generator = generator or SecretCommitmentGenerator(
            min_duration=self.settings.min_timelock_seconds,
            max_duration=self.settings.max_timelock_seconds,
        )
        self._clock = clock

    def _validate_route(self, source_chain: str, destination_chain: str) -> tuple[str, str]:
        source = require_chain(source_chain).name
        destination = require_chain(destination_chain).name
        if source == destination:
            raise ValidationError("Source and destination chains must differ")
        return source, destination

    async def submit_swap(
        self,
        source_chain: str,
        destination_chain: str,
        amount,
        beneficiary_address: str,
        duration: Optional[int] = None,
    ) -> SubmittedSwap:
        """Register a swap intent.

        Args:
            source_chain: Chain the initiator locks funds on
            destination_chain: Chain the beneficiary is paid on
            amount: Principal in the source asset
            beneficiary_address: Destination-chain address receiving the counter leg
            duration: Requested source timelock in seconds (clamped to the allowed window)

        Returns:
            SubmittedSwap with the secret the initiator must keep private

        Raises:
            ValidationError: Bad chain, amount, address or duration
        """
        source, destination = self._validate_route(source_chain, destination_chain)
        amount = _parse_amount(amount)
        beneficiary_address = validate_address(destination, beneficiary_address)

        now = self._clock()
        duration = self.settings.default_timelock_seconds if duration is None else int(duration)
        timelock = self.generator.derive_deadline(duration, now=now)
        if timelock - int(now) <= self.settings.destination_timelock_margin_seconds:
            raise ValidationError(
                f"Timelock must leave more than {self.settings.destination_timelock_margin_seconds}s "
                f"for the destination leg"
            )

        quote = await self.oracle.quote(amount, source, destination)
        decimals = require_chain(destination).decimals
        auction_start = self.auction.start_price_for(quote.net_amount, decimals)
        auction_floor = self.auction.floor_price_for(auction_start, decimals)

        commitment = self.generator.generate()
        intent = await self.registry.create_intent(
            hashlock=commitment.hashlock,
            source_chain=source,
            destination_chain=destination,
            amount=amount,
            beneficiary_address=beneficiary_address,
            timelock=timelock,
            auction_start=auction_start,
            auction_floor=auction_floor,
        )
        logger.info(
            f"Swap {intent.id} submitted: {amount} {source} -> {destination} "
            f"(auction {auction_start} .. {auction_floor})"
        )
        return SubmittedSwap(
            swap_id=intent.id,
            hashlock=commitment.hashlock,
            secret=commitment.secret,
            timelock=timelock,
            source_chain=source,
            destination_chain=destination,
            amount=amount,
            auction_start=auction_start,
            auction_floor=auction_floor,
        )

    async def get_swap_status(self, swap_id: str) -> SwapStatusView:
        swap = await self.registry.get(swap_id)
        if swap is not None:
            return SwapStatusView.from_swap(swap)
        intent = await self.registry.get_intent(swap_id)
        if intent is not None:
            return SwapStatusView.from_intent(intent)
        raise SwapNotFoundError(f"Swap {swap_id} not found")

    async def reveal_secret(self, swap_id: str, secret: str) -> SwapStatusView:
        """Accept the secret for a swap and settle it when possible.

        Raises:
            ValidationError: Malformed secret, or it does not match the hashlock
            SwapNotFoundError: Unknown swap
        """
        secret = normalize_hex(secret)
        try:
            if self.orchestrator is not None:
                swap = await self.orchestrator.reveal_secret(swap_id, secret)
            else:
                swap = await self.registry.reveal_secret(swap_id, secret)
        except ConsistencyViolation:
            raise ValidationError("Secret does not match the swap hashlock")
        return SwapStatusView.from_swap(swap)

    async def get_quote(self, source_chain: str, destination_chain: str, amount) -> QuoteView:
        source, destination = self._validate_route(source_chain, destination_chain)
        amount = _parse_amount(amount)
        quote = await self.oracle.quote(amount, source, destination)

        chain = require_chain(destination)
        auction_start = self.auction.start_price_for(quote.net_amount, chain.decimals)
        return QuoteView(
            source_chain=source,
            destination_chain=destination,
            amount=amount,
            counter_amount=quote.net_amount,
            rate=quote.conversion.rate,
            fee=quote.fee.fee,
            estimated_gas=chain.gas_create_escrow + chain.gas_withdraw,
            gas_asset=chain.asset,
            rate_source=quote.source,
            auction_start=auction_start,
            auction_floor=self.auction.floor_price_for(auction_start, chain.decimals),
        )
