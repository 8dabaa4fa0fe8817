"""Configuration for the ledgers the relayer bridges.

Three chains are supported:
- ethereum (EVM HTLC contract, ETH)
- tron (TVM HTLC contract, TRX)
- near (NEAR HTLC contract account, NEAR)
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from swaprelay.errors import ValidationError


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for a blockchain."""

    name: str
    display_name: str
    asset: str
    decimals: int  # native base units (wei, sun, yoctoNEAR)
    coingecko_id: str
    binance_symbol: str
    address_pattern: str
    explorer_url: str

    # Gas estimates in native asset, per escrow operation
    gas_create_escrow: Decimal = Decimal("0")
    gas_withdraw: Decimal = Decimal("0")
    gas_refund: Decimal = Decimal("0")

    def quantum(self) -> Decimal:
        """Smallest representable amount on this chain."""
        return Decimal(1).scaleb(-self.decimals)

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and re.fullmatch(self.address_pattern, address) is not None


# ======================
# Chain Configurations
# ======================

CHAINS: dict[str, ChainConfig] = {
    "ethereum": ChainConfig(
        name="ethereum",
        display_name="Ethereum",
        asset="ETH",
        decimals=18,
        coingecko_id="ethereum",
        binance_symbol="ETHUSDT",
        address_pattern=r"0x[0-9a-fA-F]{40}",
        explorer_url="https://etherscan.io",
        gas_create_escrow=Decimal("0.004"),
        gas_withdraw=Decimal("0.002"),
        gas_refund=Decimal("0.0015"),
    ),
    "tron": ChainConfig(
        name="tron",
        display_name="Tron",
        asset="TRX",
        decimals=6,
        coingecko_id="tron",
        binance_symbol="TRXUSDT",
        address_pattern=r"T[1-9A-HJ-NP-Za-km-z]{33}",
        explorer_url="https://tronscan.org",
        gas_create_escrow=Decimal("15"),
        gas_withdraw=Decimal("8"),
        gas_refund=Decimal("6"),
    ),
    "near": ChainConfig(
        name="near",
        display_name="NEAR",
        asset="NEAR",
        decimals=24,
        coingecko_id="near",
        binance_symbol="NEARUSDT",
        # named accounts (alice.near) or 64-hex implicit accounts
        address_pattern=r"([a-z0-9_-]+\.)*[a-z0-9_-]+\.(near|testnet)|[0-9a-f]{64}",
        explorer_url="https://nearblocks.io",
        gas_create_escrow=Decimal("0.003"),
        gas_withdraw=Decimal("0.002"),
        gas_refund=Decimal("0.002"),
    ),
}

ASSET_TO_CHAIN: dict[str, str] = {cfg.asset: name for name, cfg in CHAINS.items()}


def get_chain(name: str) -> Optional[ChainConfig]:
    """Get chain configuration by name."""
    return CHAINS.get(name.lower())


def require_chain(name: str) -> ChainConfig:
    """Get chain configuration or raise ValidationError."""
    chain = get_chain(name) if name else None
    if chain is None:
        raise ValidationError(f"Unsupported chain: {name!r}")
    return chain


def get_all_chains() -> list[ChainConfig]:
    """Get all supported chains."""
    return list(CHAINS.values())


def chain_for_asset(asset: str) -> Optional[ChainConfig]:
    """Find the chain whose native asset is the given symbol."""
    name = ASSET_TO_CHAIN.get(asset.upper())
    return CHAINS.get(name) if name else None


def validate_address(chain_name: str, address: str) -> str:
    """Validate an address for a chain, returning it unchanged.

    Raises:
        ValidationError: If the address is malformed for that chain
    """
    chain = require_chain(chain_name)
    if not chain.is_valid_address(address):
        raise ValidationError(f"Malformed {chain.display_name} address: {address!r}")
    return address
