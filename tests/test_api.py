"""Tests for the FastAPI endpoints."""

import hashlib
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import ETH_ADDRESS, TRON_ADDRESS
from swaprelay.api.app import create_app
from swaprelay.monitor.normalize import normalize
from swaprelay.runtime import build_relayer


@pytest.fixture
def relayer(settings, session_factory, adapters, oracle, clock):
    """Relayer wired to the test database, simulated chains and static prices."""
    return build_relayer(
        settings, session_factory=session_factory, adapters=adapters, oracle=oracle, clock=clock
    )


@pytest_asyncio.fixture
async def client(relayer):
    """Create async test client."""
    transport = ASGITransport(app=create_app(relayer))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def lock_source(relayer, submitted: dict) -> None:
    raw = await relayer.adapters[submitted["source_chain"]].open_escrow(
        submitted["hashlock"],
        submitted["timelock"],
        ETH_ADDRESS,
        "relayer",
        Decimal(submitted["amount"]),
    )
    for event in normalize(raw):
        await relayer.orchestrator.handle_event(event)


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test basic health check."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "swaprelay"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        """Test detailed health check."""
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert "environment" in data["config"]
        assert data["relayer"]["running"] is False
        assert set(data["relayer"]["monitor"]) == {"ethereum", "tron", "near"}


class TestQuoteEndpoints:
    """Tests for quoting."""

    @pytest.mark.asyncio
    async def test_quote(self, client):
        response = await client.post(
            "/api/v1/quotes",
            json={"source_chain": "ethereum", "destination_chain": "tron", "amount": "1"},
        )

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["counter_amount"]) == Decimal("11964")
        assert Decimal(data["fee"]) == Decimal("36")
        assert data["gas_asset"] == "TRX"

    @pytest.mark.asyncio
    async def test_quote_invalid_amount(self, client):
        response = await client.post(
            "/api/v1/quotes",
            json={"source_chain": "ethereum", "destination_chain": "tron", "amount": "-1"},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_quote_unsupported_chain(self, client):
        response = await client.post(
            "/api/v1/quotes",
            json={"source_chain": "solana", "destination_chain": "tron", "amount": "1"},
        )

        assert response.status_code == 400
        assert "solana" in response.json()["detail"]


class TestSwapEndpoints:
    """Tests for swap submission, status and secrets."""

    @pytest.mark.asyncio
    async def test_submit_and_poll(self, client):
        response = await client.post(
            "/api/v1/swaps",
            json={
                "source_chain": "ethereum",
                "destination_chain": "tron",
                "amount": "1",
                "beneficiary_address": TRON_ADDRESS,
                "duration_seconds": 3600,
            },
        )

        assert response.status_code == 201
        submitted = response.json()
        assert hashlib.sha256(bytes.fromhex(submitted["secret"])).hexdigest() == submitted["hashlock"]

        response = await client.get(f"/api/v1/swaps/{submitted['swap_id']}")
        assert response.status_code == 200
        assert response.json()["status"] == "awaiting_source_escrow"

    @pytest.mark.asyncio
    async def test_submit_bad_address(self, client):
        response = await client.post(
            "/api/v1/swaps",
            json={
                "source_chain": "ethereum",
                "destination_chain": "tron",
                "amount": "1",
                "beneficiary_address": ETH_ADDRESS,
            },
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_swap(self, client):
        response = await client.get("/api/v1/swaps/doesnotexist")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_secret_completes_swap(self, client, relayer):
        response = await client.post(
            "/api/v1/swaps",
            json={
                "source_chain": "ethereum",
                "destination_chain": "tron",
                "amount": "1",
                "beneficiary_address": TRON_ADDRESS,
                "duration_seconds": 7200,
            },
        )
        submitted = response.json()
        await lock_source(relayer, submitted)

        response = await client.get(f"/api/v1/swaps/{submitted['swap_id']}")
        assert response.json()["status"] == "locked"

        response = await client.post(
            f"/api/v1/swaps/{submitted['swap_id']}/secret", json={"secret": submitted["secret"]}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert Decimal(data["filled_amount"]) == Decimal(data["counter_amount"])

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, client, relayer):
        response = await client.post(
            "/api/v1/swaps",
            json={
                "source_chain": "ethereum",
                "destination_chain": "tron",
                "amount": "1",
                "beneficiary_address": TRON_ADDRESS,
                "duration_seconds": 7200,
            },
        )
        submitted = response.json()
        await lock_source(relayer, submitted)

        response = await client.post(
            f"/api/v1/swaps/{submitted['swap_id']}/secret", json={"secret": "cd" * 32}
        )

        assert response.status_code == 400
        status = await client.get(f"/api/v1/swaps/{submitted['swap_id']}")
        assert status.json()["status"] == "locked"
