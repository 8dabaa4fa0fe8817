"""Normalization of heterogeneous native events.

Each chain's contract names its events and fields differently. The alias
tables below map them onto the canonical event types.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from swaprelay.adapters.base import RawChainEvent
from swaprelay.chains import CHAINS
from swaprelay.crypto import hash_secret, normalize_hex
from swaprelay.errors import ValidationError
from swaprelay.monitor.events import (
    EscrowCompleted,
    EscrowCreated,
    EscrowRefunded,
    MonitorEvent,
    SecretRevealed,
)

logger = logging.getLogger(__name__)

CREATED = "created"
WITHDRAWN = "withdrawn"
REVEALED = "revealed"
REFUNDED = "refunded"

EVENT_ALIASES: dict[str, dict[str, str]] = {
    "ethereum": {
        "HTLCCreated": CREATED,
        "EscrowCreated": CREATED,
        "HTLCWithdrawn": WITHDRAWN,
        "Withdrawn": WITHDRAWN,
        "SecretRevealed": REVEALED,
        "HTLCRefunded": REFUNDED,
        "Refunded": REFUNDED,
    },
    "tron": {
        "EscrowCreated": CREATED,
        "HTLCCreated": CREATED,
        "SwapCompleted": WITHDRAWN,
        "Withdrawn": WITHDRAWN,
        "SecretRevealed": REVEALED,
        "SwapRefunded": REFUNDED,
        "Refunded": REFUNDED,
    },
    "near": {
        "htlc_created": CREATED,
        "escrow_created": CREATED,
        "htlc_withdrawn": WITHDRAWN,
        "secret_revealed": REVEALED,
        "htlc_refunded": REFUNDED,
    },
}

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "escrow_ref": ("escrow_id", "escrowId", "contractId", "htlc_id", "swap_id"),
    "hashlock": ("hashlock", "hashLock", "hash_lock"),
    "secret": ("preimage", "secret"),
    "amount": ("amount", "value"),
    "timelock": ("timelock", "timeLock", "time_lock", "expiry"),
    "initiator": ("sender", "initiator", "from"),
    "beneficiary": ("receiver", "beneficiary", "recipient", "to"),
    "destination_chain": ("dst_chain", "destination_chain", "targetChain"),
    "destination_beneficiary": ("dst_address", "destination_address", "targetAddress"),
}


def _field(payload: dict, name: str, required: bool = True) -> Any:
    for alias in FIELD_ALIASES[name]:
        value = payload.get(alias)
        if value is not None and value != "":
            return value
    if required:
        raise ValidationError(f"Event payload missing {name}")
    return None


def _hashlock(payload: dict, secret: Optional[str] = None) -> Optional[str]:
    value = _field(payload, "hashlock", required=False)
    if value is not None:
        return normalize_hex(str(value))
    if secret is not None:
        return hash_secret(secret)
    return None


def normalize(raw: RawChainEvent) -> list[MonitorEvent]:
    """Translate one native event into canonical events.

    A withdrawal that carries the secret yields SecretRevealed followed by
    EscrowCompleted. Unknown event kinds yield nothing.

    Raises:
        ValidationError: The payload is missing or has malformed fields
    """
    kind = EVENT_ALIASES.get(raw.chain, {}).get(raw.kind)
    if kind is None:
        logger.debug(f"Ignoring unknown {raw.chain} event {raw.kind!r} (seq {raw.sequence})")
        return []

    payload = raw.payload or {}
    escrow_ref = str(_field(payload, "escrow_ref"))
    common = dict(chain=raw.chain, tx_ref=raw.tx_ref, sequence=raw.sequence, escrow_ref=escrow_ref)

    if kind == CREATED:
        try:
            amount = Decimal(str(_field(payload, "amount")))
            timelock = int(_field(payload, "timelock"))
        except (InvalidOperation, ValueError, TypeError) as e:
            raise ValidationError(f"Malformed {raw.chain} escrow payload: {e}")
        if not amount.is_finite():
            raise ValidationError(f"Non-finite escrow amount on {raw.chain}: {amount}")
        if amount <= 0:
            raise ValidationError(f"Non-positive escrow amount on {raw.chain}: {amount}")
        hashlock = _hashlock(payload)
        if hashlock is None:
            raise ValidationError(f"{raw.chain} escrow {escrow_ref} has no hashlock")
        destination_chain = _field(payload, "destination_chain", required=False)
        if destination_chain is not None:
            destination_chain = str(destination_chain).lower()
            if destination_chain not in CHAINS:
                raise ValidationError(f"Unknown destination chain {destination_chain!r}")
        return [
            EscrowCreated(
                **common,
                hashlock=hashlock,
                amount=amount,
                timelock=timelock,
                initiator=str(_field(payload, "initiator", required=False) or ""),
                beneficiary=str(_field(payload, "beneficiary", required=False) or ""),
                destination_chain=destination_chain,
                destination_beneficiary=_field(payload, "destination_beneficiary", required=False),
            )
        ]

    if kind in (WITHDRAWN, REVEALED):
        secret = _field(payload, "secret", required=(kind == REVEALED))
        if secret is not None:
            secret = normalize_hex(str(secret))
        hashlock = _hashlock(payload, secret)
        events: list[MonitorEvent] = []
        if secret is not None:
            events.append(SecretRevealed(**common, hashlock=hashlock, secret=secret))
        if kind == WITHDRAWN:
            events.append(EscrowCompleted(**common, hashlock=hashlock))
        return events

    return [EscrowRefunded(**common, hashlock=_hashlock(payload))]
