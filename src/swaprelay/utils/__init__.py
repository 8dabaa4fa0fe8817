"""Utility modules for Swaprelay."""

from swaprelay.utils.locks import LockTimeoutError, SwapLockRegistry
from swaprelay.utils.retry import RetryPolicy, retry_async

__all__ = ["LockTimeoutError", "RetryPolicy", "SwapLockRegistry", "retry_async"]
