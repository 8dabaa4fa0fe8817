"""Swaprelay - cross-chain HTLC atomic swap relayer."""

__version__ = "0.1.0"
