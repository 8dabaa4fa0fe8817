"""Operator alerts.

An alert is logged at ERROR, stored as a queryable OperatorAlert row and,
when a bot is configured, pushed to the operator Telegram chats. Alerting
never raises into the caller.
"""

import logging
from typing import Optional

from swaprelay.ledger.registry import SwapRegistry
from swaprelay.notifications.telegram import TelegramNotifier

logger = logging.getLogger(__name__)

# Alert kinds
COUNTER_LEG_FAILED = "counter_leg_failed"
WITHDRAW_FAILED = "withdraw_failed"
REFUND_EXHAUSTED = "refund_exhausted"
CONSISTENCY_VIOLATION = "consistency_violation"


class OperatorAlerter:
    """Raises durable, operator-visible alerts."""

    def __init__(self, registry: SwapRegistry, notifier: Optional[TelegramNotifier] = None):
        self.registry = registry
        self.notifier = notifier

    async def alert(
        self,
        kind: str,
        message: str,
        swap_id: Optional[str] = None,
        chain: Optional[str] = None,
    ) -> None:
        logger.error(f"OPERATOR ALERT [{kind}] swap={swap_id}: {message}")

        try:
            await self.registry.add_alert(kind, message, swap_id=swap_id)
        except Exception as e:
            logger.error(f"Failed to persist alert for swap {swap_id}: {e}")

        if self.notifier is not None:
            try:
                await self.notifier.notify_alert(kind, message, swap_id=swap_id, chain=chain)
            except Exception as e:
                logger.error(f"Failed to send Telegram alert for swap {swap_id}: {e}")
