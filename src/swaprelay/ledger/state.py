"""Swap state machine."""

from swaprelay.ledger.models import EscrowStatus, SwapStatus

ALLOWED_TRANSITIONS: dict[SwapStatus, frozenset[SwapStatus]] = {
    SwapStatus.CREATED: frozenset({SwapStatus.LOCKED, SwapStatus.FAILED}),
    SwapStatus.LOCKED: frozenset({SwapStatus.COMPLETED, SwapStatus.EXPIRED, SwapStatus.FAILED}),
    SwapStatus.EXPIRED: frozenset({SwapStatus.REFUNDED}),
    SwapStatus.COMPLETED: frozenset(),
    SwapStatus.FAILED: frozenset(),
    SwapStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.FAILED, SwapStatus.REFUNDED})

# Statuses the expiry sweep looks at
ACTIVE_STATUSES = frozenset({SwapStatus.CREATED, SwapStatus.LOCKED})

CLOSED_ESCROW_STATUSES = frozenset({EscrowStatus.WITHDRAWN, EscrowStatus.REFUNDED})


def can_transition(from_status: SwapStatus, to_status: SwapStatus) -> bool:
    """Check whether the state machine allows moving between two statuses."""
    return to_status in ALLOWED_TRANSITIONS.get(SwapStatus(from_status), frozenset())


def is_terminal(status: SwapStatus) -> bool:
    return SwapStatus(status) in TERMINAL_STATUSES
