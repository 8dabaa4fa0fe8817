"""Tests for locks, retries, scheduling, settlement helpers, alerts and config."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import fast_sleep, make_settings
from swaprelay.adapters.base import AdapterTimeout
from swaprelay.errors import IrrecoverableLedgerError, TransientInfrastructureError
from swaprelay.relayer.scheduler import PeriodicTask, Scheduler
from swaprelay.relayer.settlement import split_amount
from swaprelay.utils.locks import LockTimeoutError, SwapLockRegistry
from swaprelay.utils.retry import RetryPolicy, retry_async


class TestSwapLocks:
    """Tests for per-hashlock locking."""

    @pytest.mark.asyncio
    async def test_lock_serializes_same_key(self):
        """Handlers for one hashlock never overlap."""
        locks = SwapLockRegistry()
        order = []

        async def handler(name):
            async with locks.hold("hash-a", operation=name):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(handler("first"), handler("second"))

        assert order == ["first-start", "first-end", "second-start", "second-end"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = SwapLockRegistry()

        async with locks.hold("hash-a"):
            async with locks.hold("hash-b"):
                assert locks.is_locked("hash-a")
                assert locks.is_locked("hash-b")

    @pytest.mark.asyncio
    async def test_lock_timeout_raises_error(self):
        """Test that lock timeout raises LockTimeoutError."""
        locks = SwapLockRegistry()

        async with locks.hold("hash-a"):
            with pytest.raises(LockTimeoutError):
                async with locks.hold("hash-a", timeout=0.05):
                    pass

        assert not locks.is_locked("hash-a")


class TestRetry:
    """Tests for bounded retries."""

    @pytest.mark.asyncio
    async def test_transient_failures_retried(self):
        delays = []
        calls = AsyncMock(side_effect=[TransientInfrastructureError("a"), TransientInfrastructureError("b"), "ok"])

        async def sleep(seconds):
            delays.append(seconds)

        result = await retry_async(calls, RetryPolicy(attempts=3, base_delay=1, max_delay=30), sleep=sleep)

        assert result == "ok"
        assert delays == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        calls = AsyncMock(side_effect=TransientInfrastructureError("down"))

        with pytest.raises(TransientInfrastructureError):
            await retry_async(calls, RetryPolicy(attempts=3, base_delay=0), sleep=fast_sleep)

        assert calls.await_count == 3

    @pytest.mark.asyncio
    async def test_irrecoverable_not_retried(self):
        calls = AsyncMock(side_effect=IrrecoverableLedgerError("revert"))

        with pytest.raises(IrrecoverableLedgerError):
            await retry_async(calls, RetryPolicy(attempts=5), sleep=fast_sleep)

        assert calls.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(AdapterTimeout):
            await retry_async(slow, RetryPolicy(attempts=2, base_delay=0, timeout=0.01), sleep=fast_sleep)

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay=1, max_delay=5)

        assert [policy.delay_for(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]


class TestScheduler:
    """Tests for periodic jobs."""

    @pytest.mark.asyncio
    async def test_failing_job_keeps_schedule(self):
        calls = []

        async def job():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        task = PeriodicTask("sweep", 0.01, job, run_immediately=True)

        task.start()
        for _ in range(100):
            if task.runs >= 3:
                break
            await asyncio.sleep(0.01)
        await task.stop()

        assert task.runs >= 3
        assert task.failures == 1
        assert not task.running

    @pytest.mark.asyncio
    async def test_scheduler_restartable(self):
        scheduler = Scheduler()
        scheduler.every("purge", 3600, AsyncMock())

        scheduler.start()
        assert scheduler.running
        await scheduler.stop()
        assert not scheduler.running
        scheduler.start()
        assert scheduler.running
        await scheduler.stop()

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, AsyncMock())


class TestSplitAmount:
    """Tests for splitting a counter leg into escrows."""

    def test_no_cap(self):
        assert split_amount(Decimal("10"), None, 6) == [Decimal("10")]

    def test_chunks_sum_to_total(self):
        chunks = split_amount(Decimal("1.0000005"), Decimal("0.3333333"), 6)

        assert chunks[:3] == [Decimal("0.333333")] * 3
        assert sum(chunks) == Decimal("1.0000005")
        assert all(c <= Decimal("0.333333") for c in chunks)

    def test_non_positive_total(self):
        assert split_amount(Decimal("0"), Decimal("1"), 6) == []


class TestOperatorAlerts:
    """Tests for alert delivery."""

    @pytest.mark.asyncio
    async def test_alert_persisted_and_broadcast(self, registry):
        from swaprelay.notifications.alerts import REFUND_EXHAUSTED, OperatorAlerter
        from swaprelay.notifications.telegram import TelegramNotifier

        mock_bot = AsyncMock()
        mock_bot.send_message = AsyncMock(return_value=True)
        notifier = TelegramNotifier(bot=mock_bot, chat_ids=[1, 2])

        await OperatorAlerter(registry, notifier).alert(
            REFUND_EXHAUSTED, "refund <stuck>", swap_id="abc", chain="tron"
        )

        [alert] = await registry.list_alerts("abc")
        assert alert.kind == REFUND_EXHAUSTED
        assert mock_bot.send_message.await_count == 2
        message = mock_bot.send_message.call_args.kwargs["text"]
        assert "<b>Refund retries exhausted</b>" in message
        assert "Chain: tron" in message
        assert "refund &lt;stuck&gt;" in message

    @pytest.mark.asyncio
    async def test_alert_survives_notifier_failure(self, registry):
        from swaprelay.notifications.alerts import WITHDRAW_FAILED, OperatorAlerter

        notifier = MagicMock()
        notifier.notify_alert = AsyncMock(side_effect=RuntimeError("telegram down"))

        await OperatorAlerter(registry, notifier).alert(WITHDRAW_FAILED, "withdraw failed")

        assert len(await registry.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_notifier_handles_blocked_chat(self):
        """Test that notifier handles blocked chats gracefully."""
        from aiogram.exceptions import TelegramForbiddenError
        from swaprelay.notifications.telegram import TelegramNotifier

        mock_bot = AsyncMock()
        mock_bot.send_message = AsyncMock(
            side_effect=TelegramForbiddenError(
                method=MagicMock(),
                message="Forbidden: bot was kicked from the group chat"
            )
        )
        notifier = TelegramNotifier(bot=mock_bot, chat_ids=[123456789])

        assert await notifier.broadcast("Test message") == 0

    @pytest.mark.asyncio
    async def test_notifier_no_bot_configured(self):
        """Test that notifier handles missing bot gracefully."""
        from swaprelay.notifications.telegram import TelegramNotifier

        notifier = TelegramNotifier(bot=None, chat_ids=[1])

        with patch("swaprelay.notifications.telegram.get_bot", new=AsyncMock(return_value=None)):
            result = await notifier.send_message(1, "Test message")

        assert result is False


class TestConfig:
    """Tests for configuration."""

    def test_safe_dict_redacts_secrets(self):
        settings = make_settings(
            telegram_bot_token="123:abc",
            eth_api_key="secret",
            database_url="postgresql+asyncpg://relayer:hunter2@db/swaps",
        )

        data = settings.get_safe_dict()

        assert data["telegram_bot_token"] == "***"
        assert data["chains"]["ethereum"]["api_key"] == "***"
        assert "hunter2" not in data["database_url"]

    def test_parsed_lists(self):
        settings = make_settings(alert_chat_ids="1, 2", price_feeds="Binance, coingecko")

        assert settings.alert_chats == [1, 2]
        assert settings.feed_names == ["binance", "coingecko"]
        assert settings.audit_retention_seconds == 7 * 86400

    def test_max_escrow_amounts(self):
        settings = make_settings(max_escrow_amounts={"tron": "5000"})

        assert settings.get_max_escrow_amount("TRON") == Decimal("5000")
        assert settings.get_max_escrow_amount("near") is None
