"""Swap submission, status and secret endpoints."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from swaprelay.services.bridge_service import BridgeService, SwapStatusView

logger = logging.getLogger(__name__)

router = APIRouter()


def _validate_amount(v: str) -> str:
    try:
        amount = Decimal(v)
    except InvalidOperation:
        raise ValueError(f"Invalid amount format: {v}")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be positive")
    return str(amount)


# Request/Response models
class QuoteRequest(BaseModel):
    """Request for a counter-leg quote."""

    source_chain: str = Field(..., description="Chain the principal is locked on")
    destination_chain: str = Field(..., description="Chain the counter leg is paid on")
    amount: str = Field(..., description="Principal as a decimal string")

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _validate_amount(v)


class QuoteResponse(BaseModel):
    source_chain: str
    destination_chain: str
    amount: str
    counter_amount: str
    rate: str
    fee: str
    estimated_gas: str
    gas_asset: str
    rate_source: str
    auction_start: str
    auction_floor: str


class SwapRequest(BaseModel):
    """Request to register a swap."""

    source_chain: str
    destination_chain: str
    amount: str  # Decimal as string
    beneficiary_address: str = Field(..., min_length=2, max_length=128)
    duration_seconds: Optional[int] = Field(None, gt=0, description="Source timelock duration")

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: str) -> str:
        return _validate_amount(v)


class SwapResponse(BaseModel):
    swap_id: str
    hashlock: str
    secret: str
    timelock: int
    source_chain: str
    destination_chain: str
    amount: str
    auction_start: str
    auction_floor: str


class SecretRequest(BaseModel):
    secret: str = Field(..., min_length=64, max_length=66, description="32-byte preimage as hex")


class SwapStatusResponse(BaseModel):
    swap_id: str
    status: str
    hashlock: str
    source_chain: str
    destination_chain: str
    principal_amount: str
    counter_amount: Optional[str] = None
    filled_amount: str
    source_timelock: Optional[int] = None
    destination_timelock: Optional[int] = None
    rate_source: Optional[str] = None
    failure_reason: Optional[str] = None
    fills: list[dict] = []
    escrows: list[dict] = []


def get_service(request: Request) -> BridgeService:
    relayer = getattr(request.app.state, "relayer", None)
    if relayer is None:
        raise HTTPException(status_code=503, detail="Relayer not ready")
    return relayer.service


def _status_response(view: SwapStatusView) -> SwapStatusResponse:
    return SwapStatusResponse(
        swap_id=view.swap_id,
        status=view.status,
        hashlock=view.hashlock,
        source_chain=view.source_chain,
        destination_chain=view.destination_chain,
        principal_amount=str(view.principal_amount),
        counter_amount=str(view.counter_amount) if view.counter_amount is not None else None,
        filled_amount=str(view.filled_amount),
        source_timelock=view.source_timelock,
        destination_timelock=view.destination_timelock,
        rate_source=view.rate_source,
        failure_reason=view.failure_reason,
        fills=view.fills,
        escrows=view.escrows,
    )


@router.post("/quotes", response_model=QuoteResponse)
async def get_quote(payload: QuoteRequest, request: Request) -> QuoteResponse:
    """Quote the counter leg for a principal amount."""
    quote = await get_service(request).get_quote(
        payload.source_chain, payload.destination_chain, payload.amount
    )
    return QuoteResponse(
        source_chain=quote.source_chain,
        destination_chain=quote.destination_chain,
        amount=str(quote.amount),
        counter_amount=str(quote.counter_amount),
        rate=str(quote.rate),
        fee=str(quote.fee),
        estimated_gas=str(quote.estimated_gas),
        gas_asset=quote.gas_asset,
        rate_source=quote.rate_source,
        auction_start=str(quote.auction_start),
        auction_floor=str(quote.auction_floor),
    )


@router.post("/swaps", response_model=SwapResponse, status_code=201)
async def submit_swap(payload: SwapRequest, request: Request) -> SwapResponse:
    """Register a swap and hand back the secret and hashlock."""
    submitted = await get_service(request).submit_swap(
        payload.source_chain,
        payload.destination_chain,
        payload.amount,
        payload.beneficiary_address,
        duration=payload.duration_seconds,
    )
    return SwapResponse(
        swap_id=submitted.swap_id,
        hashlock=submitted.hashlock,
        secret=submitted.secret,
        timelock=submitted.timelock,
        source_chain=submitted.source_chain,
        destination_chain=submitted.destination_chain,
        amount=str(submitted.amount),
        auction_start=str(submitted.auction_start),
        auction_floor=str(submitted.auction_floor),
    )


@router.get("/swaps/{swap_id}", response_model=SwapStatusResponse)
async def get_swap(swap_id: str, request: Request) -> SwapStatusResponse:
    """Get the status of a swap or a pending intent."""
    return _status_response(await get_service(request).get_swap_status(swap_id))


@router.post("/swaps/{swap_id}/secret", response_model=SwapStatusResponse)
async def reveal_secret(swap_id: str, payload: SecretRequest, request: Request) -> SwapStatusResponse:
    """Hand the secret to the relayer so it can settle the swap."""
    view = await get_service(request).reveal_secret(swap_id, payload.secret)
    logger.info(f"Secret accepted for swap {swap_id} via API")
    return _status_response(view)
