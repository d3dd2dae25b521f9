"""Ledger, key derivation, encryption and pricing primitives."""

from .encryption import SeedEncryption, generate_encryption_key
from .interfaces import (
    LedgerClient,
    Notifier,
    PaymentStore,
    PriceOracle,
    UserTrackingStore,
)
from .pricing import CoinGeckoPriceOracle, PriceCache, calculate_fees
from .solana_client import SolanaLedgerClient

__all__ = [
    "CoinGeckoPriceOracle",
    "LedgerClient",
    "Notifier",
    "PaymentStore",
    "PriceCache",
    "PriceOracle",
    "SeedEncryption",
    "SolanaLedgerClient",
    "UserTrackingStore",
    "calculate_fees",
    "generate_encryption_key",
]
