"""
Protocol-based interfaces for the collaborators the payment core calls into.

Concrete implementations live in ``refpay.store`` (SQLAlchemy),
``refpay.crypto.solana_client`` (Solana JSON-RPC),
``refpay.crypto.pricing`` (CoinGecko) and ``refpay.services.notifier``.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

from refpay.models import (
    LedgerTransaction,
    PaymentRecord,
    PaymentStatus,
    UserDerivationState,
)


class PaymentStore(Protocol):
    """
    Payment records. Status changes only go through ``conditional_transition``.
    """

    def insert(self, record: PaymentRecord) -> PaymentRecord: ...

    def get(self, reference: str) -> PaymentRecord | None: ...

    def get_pending(
        self,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int | None = None,
        cursor: tuple[datetime, str] | None = None,
    ) -> list[PaymentRecord]:
        """
        Returns pending payments ordered by ``(created_at, reference)``,
        optionally bounded by creation time. ``cursor`` resumes strictly after
        the given ``(created_at, reference)`` pair.
        """
        ...

    def record_quote(self, reference: str, lamports: int) -> bool:
        """
        Fixes the native lamport amount of a pending payment.

        Returns:
            True if this call stored the quote, False if one was already stored
            or the payment is no longer pending.
        """
        ...

    def conditional_transition(
        self,
        reference: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        """
        Moves a payment from ``from_status`` to ``to_status`` and sets ``fields``.

        Returns:
            True if exactly this call performed the transition, False if the
            record was missing or no longer in ``from_status``.
        """
        ...


class UserTrackingStore(Protocol):
    """Per-user derivation state; the only row with a locking discipline."""

    def get(self, user_id: str) -> UserDerivationState | None: ...

    def get_or_init(
        self, user_id: str, seed_factory: Callable[[], bytes]
    ) -> UserDerivationState:
        """
        Returns the user's state, creating it with counter 0 and the encrypted
        seed produced by ``seed_factory`` if missing. A concurrent initializer
        winning the race is not an error: its row is returned.
        """
        ...

    def increment_counter(self, user_id: str, expected_counter: int) -> int:
        """
        Atomically sets ``counter = expected_counter + 1`` and bumps
        ``total_payments``.

        Raises:
            ConflictError: The stored counter no longer equals ``expected_counter``
            NotFoundError: No state exists for the user
        """
        ...


class LedgerClient(Protocol):
    """
    Read access to the ledger. Every method raises ``LedgerError`` on
    transport or RPC failures.
    """

    async def get_latest_blockhash(self) -> str: ...

    async def find_transaction_by_reference(
        self, reference: str
    ) -> LedgerTransaction | None:
        """
        Returns the earliest transaction whose account keys include
        ``reference``, or None if the ledger has none yet.
        """
        ...

    async def get_token_mint_decimals(self, mint: str) -> int: ...

    async def resolve_associated_account(self, owner: str, mint: str) -> str: ...

    async def close(self) -> None: ...


class PriceOracle(Protocol):
    async def get_price(self, asset: str) -> Decimal:
        """
        USD price of one unit of ``asset``. Never raises for upstream failures:
        falls back to the last cached or the static fallback price.
        """
        ...


class Notifier(Protocol):
    async def on_confirmed(self, payment: PaymentRecord) -> None: ...
