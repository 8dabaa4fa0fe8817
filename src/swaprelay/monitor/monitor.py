"""Cross-chain event monitor.

Runs one listening task per chain adapter. Each task backfills from the last
durable cursor to the chain head, then follows the live stream. On any
stream error it waits with capped exponential backoff and starts over with
another backfill, so events missed while disconnected are recovered.

The monitor holds no swap state. Normalized events go onto a shared queue;
the consumer acknowledges each one when handled, and only then does the
durable per-chain cursor move past it.
"""

import asyncio
import logging
from collections import Counter
from typing import Awaitable, Callable, Iterable, Optional

from swaprelay.adapters.base import ChainAdapter, RawChainEvent
from swaprelay.errors import ValidationError
from swaprelay.ledger.registry import SwapRegistry
from swaprelay.monitor.events import MonitorEvent
from swaprelay.monitor.normalize import normalize

logger = logging.getLogger(__name__)


class CursorTracker:
    """Durable position for one chain.

    The durable cursor is the highest sequence below every event still
    awaiting acknowledgement.
    """

    def __init__(self, start: int):
        self.committed = start
        self._highest = start
        self._pending: Counter[int] = Counter()

    def track(self, sequence: int, count: int) -> None:
        """Register a raw event that produced `count` canonical events."""
        self._highest = max(self._highest, sequence)
        if count > 0:
            self._pending[sequence] += count

    def ack(self, sequence: int) -> None:
        if self._pending[sequence] <= 1:
            self._pending.pop(sequence, None)
        else:
            self._pending[sequence] -= 1

    @property
    def durable(self) -> int:
        if self._pending:
            return min(self._pending) - 1
        return self._highest

    @property
    def in_flight(self) -> int:
        return sum(self._pending.values())


class CrossChainEventMonitor:
    """Subscribes to every adapter and republishes canonical events."""

    def __init__(
        self,
        adapters: Iterable[ChainAdapter],
        registry: SwapRegistry,
        queue: Optional[asyncio.Queue] = None,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        start_at_head: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the monitor.

        Args:
            adapters: One adapter per chain
            registry: Registry persisting per-chain cursors
            queue: Outbound queue of canonical events (created if omitted)
            backoff_base: First resubscribe delay in seconds
            backoff_max: Resubscribe delay cap in seconds
            start_at_head: With no stored cursor, start from the chain head
                instead of replaying the whole history
            sleep: Sleep function (injectable for tests)
        """
        self.adapters = {adapter.chain: adapter for adapter in adapters}
        self.registry = registry
        self.events: asyncio.Queue = queue if queue is not None else asyncio.Queue()
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.start_at_head = start_at_head
        self._sleep = sleep
        self._trackers: dict[str, CursorTracker] = {}
        self._last_seen: dict[str, int] = {}
        self._delivered: Counter[str] = Counter()
        self._reconnects: Counter[str] = Counter()
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start one listening task per chain."""
        if self._tasks:
            return
        for chain, adapter in self.adapters.items():
            self._tasks.append(asyncio.create_task(self._watch(adapter), name=f"monitor-{chain}"))
        logger.info(f"Event monitor started for {', '.join(self.adapters)}")

    async def stop(self) -> None:
        """Cancel listening tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Event monitor stopped")

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _initial_position(self, adapter: ChainAdapter) -> int:
        stored = await self.registry.get_cursor(adapter.chain)
        if stored is not None:
            logger.info(f"{adapter.chain}: resuming after sequence {stored}")
            return stored
        if self.start_at_head:
            head = await adapter.head_sequence()
            await self.registry.set_cursor(adapter.chain, head)
            logger.info(f"{adapter.chain}: no cursor stored, starting at head {head}")
            return head
        return 0

    async def _watch(self, adapter: ChainAdapter) -> None:
        chain = adapter.chain
        delay = self.backoff_base

        while True:
            try:
                if chain not in self._last_seen:
                    position = await self._initial_position(adapter)
                    self._last_seen[chain] = position
                    self._trackers[chain] = CursorTracker(position)

                head = await adapter.head_sequence()
                missed = await adapter.backfill(self._last_seen[chain], head)
                if missed:
                    logger.info(f"{chain}: backfilling {len(missed)} event(s) up to {head}")
                for raw in missed:
                    await self._ingest(raw)

                async for raw in adapter.subscribe(self._last_seen[chain]):
                    await self._ingest(raw)
                    delay = self.backoff_base

                logger.warning(f"{chain}: event stream ended, resubscribing")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{chain}: event stream error: {e}; resubscribing in {delay:.1f}s")

            self._reconnects[chain] += 1
            await self._sleep(delay)
            delay = min(delay * 2, self.backoff_max)

    async def _ingest(self, raw: RawChainEvent) -> None:
        chain = raw.chain
        if raw.sequence <= self._last_seen[chain]:
            logger.debug(f"{chain}: dropping already-seen sequence {raw.sequence}")
            return
        self._last_seen[chain] = raw.sequence

        try:
            events = normalize(raw)
        except ValidationError as e:
            logger.warning(f"{chain}: skipping malformed {raw.kind} at {raw.sequence}: {e}")
            events = []

        tracker = self._trackers[chain]
        tracker.track(raw.sequence, len(events))
        for event in events:
            self._delivered[chain] += 1
            await self.events.put(event)
        if not events:
            await self._persist(chain)

    async def acknowledge(self, event: MonitorEvent) -> None:
        """Mark a canonical event as handled so the cursor can advance past it."""
        tracker = self._trackers.get(event.chain)
        if tracker is None:
            return
        tracker.ack(event.sequence)
        await self._persist(event.chain)

    async def _persist(self, chain: str) -> None:
        tracker = self._trackers[chain]
        durable = tracker.durable
        if durable <= tracker.committed:
            return
        try:
            await self.registry.set_cursor(chain, durable)
            tracker.committed = durable
        except Exception as e:
            logger.error(f"{chain}: failed to persist cursor {durable}: {e}")

    def stats(self) -> dict:
        """Per-chain delivery counters for health reporting."""
        return {
            chain: {
                "last_seen": self._last_seen.get(chain),
                "cursor": self._trackers[chain].committed if chain in self._trackers else None,
                "in_flight": self._trackers[chain].in_flight if chain in self._trackers else 0,
                "delivered": self._delivered[chain],
                "reconnects": self._reconnects[chain],
            }
            for chain in self.adapters
        }
