"""Tests for the bridge service."""

import hashlib
from decimal import Decimal

import pytest

from conftest import ETH_ADDRESS, NOW, TRON_ADDRESS
from swaprelay.errors import SwapNotFoundError, ValidationError
from swaprelay.monitor.normalize import normalize
from swaprelay.services.bridge_service import AWAITING_SOURCE_ESCROW


class TestSubmitSwap:
    """Tests for swap submission."""

    @pytest.mark.asyncio
    async def test_submit_returns_secret_and_auction(self, service, registry):
        """Submission generates the commitment and opens the auction window."""
        submitted = await service.submit_swap("ethereum", "tron", "1", TRON_ADDRESS, duration=3600)

        assert hashlib.sha256(bytes.fromhex(submitted.secret)).hexdigest() == submitted.hashlock
        assert submitted.timelock == NOW + 3600
        assert submitted.auction_start == Decimal("11964")
        assert submitted.auction_floor == Decimal("11844.36")

        intent = await registry.get_intent(submitted.swap_id)
        assert intent.hashlock == submitted.hashlock
        assert intent.beneficiary_address == TRON_ADDRESS

    @pytest.mark.asyncio
    async def test_default_duration(self, service, settings):
        submitted = await service.submit_swap("near", "ethereum", "10", ETH_ADDRESS)

        assert submitted.timelock == NOW + settings.default_timelock_seconds

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "args",
        [
            ("ethereum", "ethereum", "1", ETH_ADDRESS),
            ("bitcoin", "tron", "1", TRON_ADDRESS),
            ("ethereum", "tron", "0", TRON_ADDRESS),
            ("ethereum", "tron", "abc", TRON_ADDRESS),
            ("ethereum", "tron", "1", ETH_ADDRESS),
            ("ethereum", "near", "1", "Not A Near Account"),
        ],
    )
    async def test_invalid_requests_rejected(self, service, args):
        with pytest.raises(ValidationError):
            await service.submit_swap(*args)

    @pytest.mark.asyncio
    async def test_duration_must_leave_room_for_destination_leg(self, service):
        """A timelock inside the destination margin is refused, even after clamping."""
        with pytest.raises(ValidationError):
            await service.submit_swap("ethereum", "tron", "1", TRON_ADDRESS, duration=60)

    @pytest.mark.asyncio
    async def test_long_duration_clamped_to_maximum(self, service, settings):
        submitted = await service.submit_swap("ethereum", "tron", "1", TRON_ADDRESS, duration=30 * 86400)

        assert submitted.timelock == NOW + settings.max_timelock_seconds
        assert (await service.registry.get_intent(submitted.swap_id)).timelock == submitted.timelock


class TestSwapStatus:
    """Tests for status lookups and secret submission."""

    @pytest.mark.asyncio
    async def test_intent_reported_until_escrow_seen(self, service, orchestrator, adapters):
        submitted = await service.submit_swap("ethereum", "tron", "1", TRON_ADDRESS, duration=3600)

        view = await service.get_swap_status(submitted.swap_id)
        assert view.status == AWAITING_SOURCE_ESCROW
        assert view.counter_amount is None

        raw = await adapters["ethereum"].open_escrow(
            submitted.hashlock, submitted.timelock, ETH_ADDRESS, "relayer", Decimal("1")
        )
        for event in normalize(raw):
            await orchestrator.handle_event(event)

        view = await service.get_swap_status(submitted.swap_id)
        assert view.status == "locked"
        assert view.counter_amount == Decimal("11964")
        assert [e["side"] for e in view.escrows] == ["source", "destination"]

        view = await service.reveal_secret(submitted.swap_id, submitted.secret)
        assert view.status == "completed"
        assert view.filled_amount == Decimal("11964")
        assert len(view.fills) == 1

    @pytest.mark.asyncio
    async def test_unknown_swap(self, service):
        with pytest.raises(SwapNotFoundError):
            await service.get_swap_status("missing")

    @pytest.mark.asyncio
    async def test_wrong_secret_is_validation_error(self, service, orchestrator, adapters):
        submitted = await service.submit_swap("ethereum", "tron", "1", TRON_ADDRESS, duration=3600)
        raw = await adapters["ethereum"].open_escrow(
            submitted.hashlock, submitted.timelock, ETH_ADDRESS, "relayer", Decimal("1")
        )
        for event in normalize(raw):
            await orchestrator.handle_event(event)

        with pytest.raises(ValidationError):
            await service.reveal_secret(submitted.swap_id, "ab" * 32)
        with pytest.raises(ValidationError):
            await service.reveal_secret(submitted.swap_id, "not-hex")


class TestQuotes:
    """Tests for quoting."""

    @pytest.mark.asyncio
    async def test_quote_includes_fee_and_gas(self, service):
        quote = await service.get_quote("ethereum", "near", "1")

        assert quote.rate == Decimal("600")
        assert quote.fee == Decimal("1.8")
        assert quote.counter_amount == Decimal("598.2")
        assert quote.estimated_gas == Decimal("0.005")
        assert quote.gas_asset == "NEAR"
        assert quote.rate_source == "static"
        assert quote.auction_floor < quote.auction_start

    @pytest.mark.asyncio
    async def test_quote_rejects_same_chain(self, service):
        with pytest.raises(ValidationError):
            await service.get_quote("tron", "tron", "5")
