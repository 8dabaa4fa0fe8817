"""Secret and hashlock generation for HTLC escrows.

A swap is bound to SHA-256(secret). The relayer hands the secret to the
initiator and only ever stores the hashlock until the secret is revealed
on-chain. All values are lowercase hex without a 0x prefix.
"""

import hashlib
import hmac
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Optional

from swaprelay.errors import ValidationError

logger = logging.getLogger(__name__)

SECRET_BYTES = 32
HASHLOCK_HEX_LENGTH = 64


@dataclass(frozen=True)
class SecretCommitment:
    """A freshly generated preimage and its commitment."""

    secret: str
    hashlock: str


def normalize_hex(value: str, length: Optional[int] = HASHLOCK_HEX_LENGTH) -> str:
    """Strip an optional 0x prefix and lowercase a hex string.

    Args:
        value: Hex string as reported by any chain
        length: Expected number of hex characters (None to skip the check)

    Returns:
        Normalized hex string

    Raises:
        ValidationError: If the value is not hex or has the wrong length
    """
    if not isinstance(value, str):
        raise ValidationError(f"Expected hex string, got {type(value).__name__}")
    normalized = value.strip().lower()
    if normalized.startswith("0x"):
        normalized = normalized[2:]
    if length is not None and len(normalized) != length:
        raise ValidationError(f"Expected {length} hex characters, got {len(normalized)}")
    try:
        bytes.fromhex(normalized)
    except ValueError:
        raise ValidationError(f"Invalid hex value: {value!r}")
    return normalized


def hash_secret(secret: str) -> str:
    """Compute the hashlock for a hex-encoded secret."""
    raw = bytes.fromhex(normalize_hex(secret, length=None))
    return hashlib.sha256(raw).hexdigest()


def verify_secret(secret: str, hashlock: str) -> bool:
    """Check that sha256(secret) matches the hashlock."""
    try:
        candidate = hash_secret(secret)
        expected = normalize_hex(hashlock)
    except ValidationError:
        return False
    return hmac.compare_digest(candidate, expected)


class SecretCommitmentGenerator:
    """Produces secrets, hashlocks and bounded deadlines."""

    def __init__(self, min_duration: int = 600, max_duration: int = 172800):
        if min_duration <= 0 or max_duration < min_duration:
            raise ValueError("Timelock window must satisfy 0 < min <= max")
        self.min_duration = min_duration
        self.max_duration = max_duration

    def generate(self) -> SecretCommitment:
        """Generate a 32-byte secret from the OS CSPRNG and its SHA-256 hashlock."""
        raw = secrets.token_bytes(SECRET_BYTES)
        return SecretCommitment(
            secret=raw.hex(),
            hashlock=hashlib.sha256(raw).hexdigest(),
        )

    def derive_deadline(self, duration: int, now: Optional[float] = None) -> int:
        """Absolute deadline now + duration, clamped to the allowed window.

        Args:
            duration: Requested lifetime in seconds
            now: Current unix time (defaults to time.time())

        Returns:
            Unix timestamp in whole seconds
        """
        if now is None:
            now = time.time()
        clamped = min(max(int(duration), self.min_duration), self.max_duration)
        if clamped != duration:
            logger.debug(f"Clamped timelock duration {duration}s to {clamped}s")
        return int(now) + clamped
