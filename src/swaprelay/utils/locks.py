"""Per-swap locking.

Every mutation of a swap, whether from an event worker or the expiry sweep,
runs under the lock for its hashlock, so two handlers never act on the same
swap at once.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class SwapLockRegistry:
    """Owns one asyncio.Lock per key, dropping locks nobody holds or waits for."""

    def __init__(self, default_timeout: Optional[float] = 60.0):
        self.default_timeout = default_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _checkin(self, key: str) -> None:
        remaining = self._users.get(key, 1) - 1
        if remaining <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._users[key] = remaining

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        timeout: Optional[float] = None,
        operation: str = "swap_operation",
    ) -> AsyncGenerator[None, None]:
        """Hold the lock for a key.

        Args:
            key: Hashlock (or other partition key) of the swap
            timeout: Maximum time to wait (None uses the registry default)
            operation: Description of the operation for logging

        Example:
            async with locks.hold(swap.hashlock, operation="sweep"):
                swap = await registry.get(swap.id)
                ...
        """
        timeout = self.default_timeout if timeout is None else timeout
        lock = self._checkout(key)
        try:
            try:
                if timeout:
                    await asyncio.wait_for(lock.acquire(), timeout=timeout)
                else:
                    await lock.acquire()
            except asyncio.TimeoutError:
                logger.warning(f"Lock timeout for {key[:12]} after {timeout}s: {operation}")
                raise LockTimeoutError(f"Could not acquire lock for {key} within {timeout}s")

            logger.debug(f"Lock acquired for {key[:12]}: {operation}")
            try:
                yield
            finally:
                lock.release()
                logger.debug(f"Lock released for {key[:12]}: {operation}")
        finally:
            self._checkin(key)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
