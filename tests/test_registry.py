"""Tests for the durable swap registry."""

from decimal import Decimal

import pytest

from conftest import ETH_ADDRESS, NOW, TRON_ADDRESS
from swaprelay.crypto import SecretCommitmentGenerator
from swaprelay.errors import (
    ConsistencyViolation,
    DuplicateSwapError,
    IllegalTransitionError,
    SwapNotFoundError,
    ValidationError,
)
from swaprelay.ledger.models import EscrowSide, EscrowStatus, SwapStatus
from swaprelay.ledger.registry import NewSwap
from swaprelay.ledger.state import ALLOWED_TRANSITIONS, can_transition, is_terminal

generator = SecretCommitmentGenerator()


def new_swap(hashlock: str = None, **overrides) -> NewSwap:
    hashlock = hashlock or generator.generate().hashlock
    values = dict(
        hashlock=hashlock,
        source_chain="ethereum",
        destination_chain="tron",
        principal_amount=Decimal("1"),
        counter_amount=Decimal("12000"),
        initiator_address=ETH_ADDRESS,
        beneficiary_address=TRON_ADDRESS,
        source_timelock=NOW + 7200,
        destination_timelock=NOW + 3600,
        source_escrow_reference="0x" + hashlock[-16:],
        rate_source="static",
    )
    values.update(overrides)
    return NewSwap(**values)


async def locked_swap(registry, counter_amount=Decimal("12000")):
    commitment = generator.generate()
    swap = await registry.create(new_swap(commitment.hashlock, counter_amount=counter_amount))
    swap = await registry.transition(swap.id, SwapStatus.CREATED, SwapStatus.LOCKED)
    return swap, commitment


class TestStateMachine:
    """Tests for allowed status transitions."""

    def test_allowed_transitions(self):
        assert can_transition(SwapStatus.CREATED, SwapStatus.LOCKED)
        assert can_transition(SwapStatus.LOCKED, SwapStatus.EXPIRED)
        assert can_transition(SwapStatus.EXPIRED, SwapStatus.REFUNDED)
        assert not can_transition(SwapStatus.CREATED, SwapStatus.COMPLETED)
        assert not can_transition(SwapStatus.EXPIRED, SwapStatus.COMPLETED)

    def test_terminal_statuses_have_no_exit(self):
        for status in (SwapStatus.COMPLETED, SwapStatus.FAILED, SwapStatus.REFUNDED):
            assert is_terminal(status)
            assert not ALLOWED_TRANSITIONS[status]


class TestSwapCreation:
    """Tests for registering swaps."""

    @pytest.mark.asyncio
    async def test_create_registers_source_escrow(self, registry):
        swap = await registry.create(new_swap())

        assert swap.status == SwapStatus.CREATED
        assert swap.secret is None
        assert len(swap.source_escrows) == 1
        assert swap.source_escrows[0].amount == Decimal("1")
        assert swap.source_escrows[0].status == EscrowStatus.OPEN
        assert swap.destination_escrows == []

    @pytest.mark.asyncio
    async def test_hashlock_normalized(self, registry):
        hashlock = generator.generate().hashlock
        swap = await registry.create(new_swap("0x" + hashlock.upper()))

        assert swap.hashlock == hashlock
        assert (await registry.get_by_hashlock(hashlock)).id == swap.id

    @pytest.mark.asyncio
    async def test_duplicate_hashlock_rejected(self, registry):
        hashlock = generator.generate().hashlock
        await registry.create(new_swap(hashlock))

        with pytest.raises(DuplicateSwapError):
            await registry.create(new_swap(hashlock, source_escrow_reference="0xother"))

        assert len(await registry.list_swaps()) == 1

    @pytest.mark.asyncio
    async def test_explicit_id_kept(self, registry):
        swap = await registry.create(new_swap(id="intent123"))

        assert swap.id == "intent123"
        assert (await registry.get("intent123")) is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"destination_chain": "ethereum"},
            {"source_chain": "bitcoin"},
            {"principal_amount": Decimal("0")},
            {"counter_amount": Decimal("-1")},
            {"destination_timelock": NOW + 7200},
            {"hashlock": "not-a-hashlock"},
        ],
    )
    async def test_invalid_swap_rejected(self, registry, overrides):
        with pytest.raises(ValidationError):
            await registry.create(new_swap(**overrides))

    @pytest.mark.asyncio
    async def test_near_precision_survives_round_trip(self, registry):
        amount = Decimal("1.000000000000000000000001")
        swap = await registry.create(
            new_swap(destination_chain="near", beneficiary_address="bob.near", counter_amount=amount)
        )

        assert (await registry.get(swap.id)).counter_amount == amount


class TestTransitions:
    """Tests for compare-and-set transitions."""

    @pytest.mark.asyncio
    async def test_transition_with_failure_reason(self, registry):
        swap = await registry.create(new_swap())

        failed = await registry.transition(
            swap.id, SwapStatus.CREATED, SwapStatus.FAILED, {"failure_reason": "no liquidity"}
        )

        assert failed.status == SwapStatus.FAILED
        assert failed.failure_reason == "no liquidity"

    @pytest.mark.asyncio
    async def test_stale_expected_status_rejected(self, registry):
        swap = await registry.create(new_swap())
        await registry.transition(swap.id, SwapStatus.CREATED, SwapStatus.LOCKED)

        with pytest.raises(IllegalTransitionError) as exc_info:
            await registry.transition(swap.id, SwapStatus.CREATED, SwapStatus.FAILED)

        assert exc_info.value.current_status == SwapStatus.LOCKED
        assert (await registry.get(swap.id)).status == SwapStatus.LOCKED

    @pytest.mark.asyncio
    async def test_every_forbidden_transition_rejected(self, registry):
        swap = await registry.create(new_swap())

        for from_status in SwapStatus:
            for to_status in SwapStatus:
                if can_transition(from_status, to_status):
                    continue
                with pytest.raises(IllegalTransitionError):
                    await registry.transition(swap.id, from_status, to_status)

        assert (await registry.get(swap.id)).status == SwapStatus.CREATED

    @pytest.mark.asyncio
    async def test_immutable_fields_protected(self, registry):
        swap = await registry.create(new_swap())

        with pytest.raises(ConsistencyViolation):
            await registry.transition(
                swap.id, SwapStatus.CREATED, SwapStatus.LOCKED, {"counter_amount": Decimal("1")}
            )

    @pytest.mark.asyncio
    async def test_unknown_swap(self, registry):
        with pytest.raises(SwapNotFoundError):
            await registry.transition("missing", SwapStatus.CREATED, SwapStatus.LOCKED)


class TestSecretsAndFills:
    """Tests for secret recording and partial fills."""

    @pytest.mark.asyncio
    async def test_reveal_secret(self, registry):
        swap, commitment = await locked_swap(registry)

        updated = await registry.reveal_secret(swap.id, commitment.secret)
        again = await registry.reveal_secret(swap.id, commitment.secret)

        assert updated.secret == commitment.secret
        assert again.secret == commitment.secret

    @pytest.mark.asyncio
    async def test_mismatched_secret_leaves_swap_untouched(self, registry):
        swap, _ = await locked_swap(registry)

        with pytest.raises(ConsistencyViolation):
            await registry.reveal_secret(swap.id, generator.generate().secret)

        stored = await registry.get(swap.id)
        assert stored.secret is None
        assert stored.status == SwapStatus.LOCKED

    @pytest.mark.asyncio
    async def test_partial_fills_complete_swap(self, registry):
        swap, _ = await locked_swap(registry, counter_amount=Decimal("1.0"))

        swap = await registry.record_fill(swap.id, "f1", Decimal("0.3"))
        assert swap.status == SwapStatus.LOCKED
        swap = await registry.record_fill(swap.id, "f2", Decimal("0.3"))
        assert swap.filled_amount == Decimal("0.6")
        swap = await registry.record_fill(swap.id, "f3", Decimal("0.4"))

        assert swap.status == SwapStatus.COMPLETED
        assert swap.filled_amount == Decimal("1.0")
        assert [f.escrow_reference for f in swap.fills] == ["f1", "f2", "f3"]

    @pytest.mark.asyncio
    async def test_overfill_rejected(self, registry):
        swap, _ = await locked_swap(registry, counter_amount=Decimal("1.0"))
        await registry.record_fill(swap.id, "f1", Decimal("0.6"))

        with pytest.raises(ConsistencyViolation):
            await registry.record_fill(swap.id, "f2", Decimal("0.5"))

        stored = await registry.get(swap.id)
        assert stored.filled_amount == Decimal("0.6")
        assert stored.status == SwapStatus.LOCKED

    @pytest.mark.asyncio
    async def test_fill_idempotent_per_escrow(self, registry):
        swap, _ = await locked_swap(registry, counter_amount=Decimal("1.0"))
        await registry.record_fill(swap.id, "f1", Decimal("0.5"))

        again = await registry.record_fill(swap.id, "f1", Decimal("0.5"))
        assert again.filled_amount == Decimal("0.5")

        with pytest.raises(ConsistencyViolation):
            await registry.record_fill(swap.id, "f1", Decimal("0.4"))

    @pytest.mark.asyncio
    async def test_fill_requires_locked(self, registry):
        swap = await registry.create(new_swap())

        with pytest.raises(ConsistencyViolation):
            await registry.record_fill(swap.id, "f1", Decimal("1"))

    @pytest.mark.asyncio
    async def test_non_positive_fill_rejected(self, registry):
        swap, _ = await locked_swap(registry)

        with pytest.raises(ValidationError):
            await registry.record_fill(swap.id, "f1", Decimal("0"))


class TestEscrows:
    """Tests for escrow bookkeeping."""

    @pytest.mark.asyncio
    async def test_destination_coverage_bounded(self, registry):
        swap = await registry.create(new_swap(counter_amount=Decimal("100")))

        swap = await registry.add_escrow(
            swap.id, "tron", EscrowSide.DESTINATION, "d1", Decimal("60"), NOW + 3600, owned=True
        )
        assert swap.destination_coverage == Decimal("60")

        with pytest.raises(ConsistencyViolation):
            await registry.add_escrow(
                swap.id, "tron", EscrowSide.DESTINATION, "d2", Decimal("41"), NOW + 3600
            )

    @pytest.mark.asyncio
    async def test_destination_escrow_must_expire_first(self, registry):
        swap = await registry.create(new_swap())

        with pytest.raises(ConsistencyViolation):
            await registry.add_escrow(
                swap.id, "tron", EscrowSide.DESTINATION, "d1", Decimal("1"), NOW + 7200
            )

    @pytest.mark.asyncio
    async def test_destination_escrow_on_wrong_chain(self, registry):
        swap = await registry.create(new_swap())

        with pytest.raises(ConsistencyViolation):
            await registry.add_escrow(
                swap.id, "near", EscrowSide.DESTINATION, "d1", Decimal("1"), NOW + 3600
            )

    @pytest.mark.asyncio
    async def test_add_escrow_idempotent(self, registry):
        swap = await registry.create(new_swap())
        await registry.add_escrow(swap.id, "tron", EscrowSide.DESTINATION, "d1", Decimal("5"), NOW + 3600)

        swap = await registry.add_escrow(
            swap.id, "tron", EscrowSide.DESTINATION, "d1", Decimal("5"), NOW + 3600
        )

        assert len(swap.destination_escrows) == 1

    @pytest.mark.asyncio
    async def test_mark_escrow(self, registry):
        swap = await registry.create(new_swap(source_escrow_reference="0xsource"))

        updated = await registry.mark_escrow("ethereum", "0xsource", EscrowStatus.REFUNDED, "0xtx")

        escrow = updated.escrow("ethereum", "0xsource")
        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.tx_ref == "0xtx"
        assert updated.open_escrows == []
        assert await registry.mark_escrow("ethereum", "unknown", EscrowStatus.REFUNDED) is None

        with pytest.raises(ConsistencyViolation):
            await registry.mark_escrow("ethereum", "0xsource", EscrowStatus.WITHDRAWN)

    @pytest.mark.asyncio
    async def test_refund_attempts_and_alert_flag(self, registry):
        swap = await registry.create(new_swap())
        escrow_id = swap.source_escrows[0].id

        await registry.bump_refund_attempts(escrow_id)
        escrow = await registry.bump_refund_attempts(escrow_id)
        assert escrow.refund_attempts == 2

        escrow = await registry.mark_alerted(escrow_id)
        assert escrow.alerted

    @pytest.mark.asyncio
    async def test_withdraw_attempts_counted_separately(self, registry):
        swap = await registry.create(new_swap())
        escrow_id = swap.source_escrows[0].id
        assert swap.source_escrows[0].withdraw_attempts == 0

        escrow = await registry.bump_withdraw_attempts(escrow_id)
        assert escrow.withdraw_attempts == 1
        assert escrow.refund_attempts == 0
        assert not escrow.alerted

        with pytest.raises(SwapNotFoundError):
            await registry.bump_withdraw_attempts(999)


class TestQueries:
    """Tests for sweeps, purging, intents, cursors and alerts."""

    @pytest.mark.asyncio
    async def test_sweep_expired(self, registry):
        expired = await registry.create(new_swap(destination_timelock=NOW - 1, source_timelock=NOW + 10))
        await registry.create(new_swap(source_escrow_reference="0xlater"))

        swept = await registry.sweep_expired(now=NOW)

        assert [s.id for s in swept] == [expired.id]

    @pytest.mark.asyncio
    async def test_pending_refunds_and_settlements(self, registry):
        failed = await registry.create(new_swap())
        await registry.transition(failed.id, SwapStatus.CREATED, SwapStatus.FAILED)
        locked, commitment = await locked_swap(registry)
        await registry.reveal_secret(locked.id, commitment.secret)

        assert [s.id for s in await registry.pending_refunds()] == [failed.id]
        assert [s.id for s in await registry.pending_settlements()] == [locked.id]

    @pytest.mark.asyncio
    async def test_purge_keeps_recent_and_open(self, registry, clock):
        closed = await registry.create(new_swap(source_escrow_reference="0xsource"))
        await registry.transition(closed.id, SwapStatus.CREATED, SwapStatus.FAILED)
        await registry.mark_escrow("ethereum", "0xsource", EscrowStatus.REFUNDED)
        still_open = await registry.create(new_swap(source_escrow_reference="0xopen"))
        await registry.transition(still_open.id, SwapStatus.CREATED, SwapStatus.FAILED)

        assert await registry.purge(retention_seconds=3600, now=clock() + 60) == 0
        assert await registry.purge(retention_seconds=3600, now=clock() + 7200) == 1

        assert await registry.get(closed.id) is None
        assert await registry.get(still_open.id) is not None

    @pytest.mark.asyncio
    async def test_intents(self, registry):
        hashlock = generator.generate().hashlock
        intent = await registry.create_intent(
            hashlock, "ethereum", "tron", Decimal("1"), TRON_ADDRESS, NOW + 7200,
            Decimal("11964"), Decimal("11844.36"),
        )

        assert (await registry.get_intent(intent.id)).hashlock == hashlock
        assert (await registry.get_intent_by_hashlock("0x" + hashlock)).id == intent.id
        with pytest.raises(DuplicateSwapError):
            await registry.create_intent(
                hashlock, "ethereum", "tron", Decimal("1"), TRON_ADDRESS, NOW + 7200,
                Decimal("1"), Decimal("1"),
            )

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, registry):
        assert await registry.get_cursor("tron") is None

        await registry.set_cursor("tron", 10)
        await registry.set_cursor("tron", 4)

        assert await registry.get_cursor("tron") == 10

    @pytest.mark.asyncio
    async def test_alerts(self, registry):
        swap = await registry.create(new_swap())
        await registry.add_alert("refund_exhausted", "manual refund needed", swap.id)
        await registry.add_alert("consistency_violation", "global")

        assert len(await registry.list_alerts()) == 2
        alerts = await registry.list_alerts(swap.id)
        assert [a.kind for a in alerts] == ["refund_exhausted"]
