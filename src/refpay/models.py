"""
Domain types shared by the stores, the core services and the API layer.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any


class Currency(str, enum.Enum):
    """
    Closed set of asset kinds a payment can settle in.

    NATIVE is priced in USD and converted to lamports when the transaction
    is built; TOKEN is a USD stablecoin transferred 1:1.
    """

    NATIVE = "SOL"
    TOKEN = "USDC"

    @classmethod
    def parse(cls, value: str) -> "Currency":
        normalized = value.strip().upper()
        if normalized in ("NATIVE", "SOL"):
            return cls.NATIVE
        if normalized in ("TOKEN", "USDC"):
            return cls.TOKEN
        raise ValueError(f"Unsupported currency: {value}")


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


@dataclass
class PaymentRecord:
    """A payment request and, once settled, its on-chain proof."""

    reference: str  # Base58 public key embedded in the transfer instruction
    user_id: str
    amount: Decimal  # What the merchant receives (USD)
    currency: Currency
    recipient_address: str
    fee_amount: Decimal
    total_amount_due: Decimal  # What the payer sends (USD)
    created_at: datetime
    status: PaymentStatus = PaymentStatus.PENDING
    counter: int | None = None
    derivation_path: str | None = None
    label: str | None = None
    message: str | None = None
    memo: str | None = None
    confirmed_at: datetime | None = None
    signature: str | None = None
    quoted_lamports: int | None = None  # Native amount fixed by the first built transaction

    def to_dict(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "user_id": self.user_id,
            "amount": str(self.amount),
            "currency": self.currency.value,
            "recipient_address": self.recipient_address,
            "fee_amount": str(self.fee_amount),
            "total_amount_due": str(self.total_amount_due),
            "status": self.status.value,
            "counter": self.counter,
            "derivation_path": self.derivation_path,
            "label": self.label,
            "message": self.message,
            "memo": self.memo,
            "created_at": self.created_at.isoformat(),
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "signature": self.signature,
            "quoted_lamports": self.quoted_lamports,
        }


@dataclass
class UserDerivationState:
    user_id: str
    counter: int
    encrypted_seed: bytes
    total_payments: int = 0


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    counter: int
    derivation_path: str


@dataclass
class TokenBalance:
    """Post/pre token balance entry of a parsed transaction."""

    account_index: int
    mint: str
    owner: str | None
    amount: int  # Base units


@dataclass
class LedgerTransaction:
    """
    Subset of a parsed ledger transaction needed to validate a transfer.
    """

    signature: str
    slot: int
    block_time: datetime | None
    account_keys: list[str]
    pre_balances: list[int]
    post_balances: list[int]
    pre_token_balances: list[TokenBalance] = field(default_factory=list)
    post_token_balances: list[TokenBalance] = field(default_factory=list)
    succeeded: bool = True

    def lamport_delta(self, address: str) -> int:
        """Net lamports received by address (0 if it is not in the transaction)."""
        try:
            idx = self.account_keys.index(address)
        except ValueError:
            return 0
        return self.post_balances[idx] - self.pre_balances[idx]

    def token_delta(self, owner: str, mint: str) -> int:
        """Net base units of mint received by token accounts owned by owner."""

        def total(balances: list[TokenBalance]) -> int:
            return sum(b.amount for b in balances if b.owner == owner and b.mint == mint)

        return total(self.post_token_balances) - total(self.pre_token_balances)
