"""Error taxonomy shared by the relayer components.

Transient infrastructure errors are retried internally. Validation and
consistency errors go straight back to the caller. Irrecoverable ledger errors
end in a FAILED swap or an operator alert.
"""

from typing import Optional


class SwapRelayError(Exception):
    """Base class for all relayer errors."""


class ValidationError(SwapRelayError):
    """Malformed input: bad address, non-future timelock, unknown chain."""


class TransientInfrastructureError(SwapRelayError):
    """RPC timeout, feed throttling or any other retryable failure."""


class IrrecoverableLedgerError(SwapRelayError):
    """Contract revert, insufficient liquidity, nonce conflict."""


class ConsistencyViolation(SwapRelayError):
    """Security-relevant mismatch such as a wrong secret or an overfilled swap."""


class SwapNotFoundError(SwapRelayError):
    """No swap (or intent) with the requested id or hashlock."""


class DuplicateSwapError(SwapRelayError):
    """A swap for this hashlock already exists."""

    def __init__(self, hashlock: str):
        self.hashlock = hashlock
        super().__init__(f"Swap with hashlock {hashlock} already exists")


class IllegalTransitionError(SwapRelayError):
    """Rejected status transition.

    Raised both for transitions the state machine never allows and for a
    compare-and-set whose expected status no longer matches.
    """

    def __init__(self, swap_id: str, from_status, to_status, current_status: Optional[object] = None):
        self.swap_id = swap_id
        self.from_status = from_status
        self.to_status = to_status
        self.current_status = current_status
        detail = f" (current status: {current_status.value})" if current_status is not None else ""
        super().__init__(
            f"Illegal transition {from_status.value} -> {to_status.value} for swap {swap_id}{detail}"
        )
