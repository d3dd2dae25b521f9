"""Pytest configuration and shared fixtures."""

import asyncio
import dataclasses
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from solders.hash import Hash  # type: ignore
from solders.keypair import Keypair  # type: ignore
from solders.pubkey import Pubkey  # type: ignore
from spl.token.instructions import get_associated_token_address

from refpay.crypto.encryption import SeedEncryption
from refpay.crypto.pricing import calculate_fees
from refpay.errors import ConflictError, LedgerError, NotFoundError
from refpay.models import (
    Currency,
    LedgerTransaction,
    PaymentRecord,
    PaymentStatus,
    TokenBalance,
    UserDerivationState,
)
from refpay.services.addresses import AddressDeriver
from refpay.services.reconciliation import (
    PaymentConfirmer,
    ReconciliationMonitor,
    TransferValidator,
)
from refpay.services.transactions import TransactionBuilder

TOKEN_MINT = "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr"
SOL_PRICE = Decimal("100")
NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


def new_address() -> str:
    return str(Keypair().pubkey())


class MockPaymentStore:
    """In-memory payment store with the same compare-and-swap semantics as SQL."""

    def __init__(self):
        self.records: dict[str, PaymentRecord] = {}
        self.steal_transitions = False  # Simulates another worker winning every race

    def insert(self, record: PaymentRecord) -> PaymentRecord:
        if record.reference in self.records:
            raise ConflictError(f"Duplicate payment reference {record.reference}")
        self.records[record.reference] = dataclasses.replace(record)
        return record

    def get(self, reference: str) -> PaymentRecord | None:
        record = self.records.get(reference)
        return dataclasses.replace(record) if record else None

    def get_pending(self, created_after=None, created_before=None, limit=None, cursor=None):
        pending = [
            r
            for r in self.records.values()
            if r.status is PaymentStatus.PENDING
            and (created_after is None or r.created_at >= created_after)
            and (created_before is None or r.created_at < created_before)
            and (cursor is None or (r.created_at, r.reference) > cursor)
        ]
        pending.sort(key=lambda r: (r.created_at, r.reference))
        if limit is not None:
            pending = pending[:limit]
        return [dataclasses.replace(r) for r in pending]

    def record_quote(self, reference, lamports):
        record = self.records.get(reference)
        if (
            record is None
            or record.status is not PaymentStatus.PENDING
            or record.quoted_lamports is not None
        ):
            return False
        record.quoted_lamports = lamports
        return True

    def conditional_transition(self, reference, from_status, to_status, fields=None):
        record = self.records.get(reference)
        if record is None or record.status is not from_status:
            return False
        if self.steal_transitions:
            record.status = to_status
            return False
        record.status = to_status
        for key, value in (fields or {}).items():
            setattr(record, key, value)
        return True


class MockUserTrackingStore:
    """In-memory user tracking store; can inject counter races."""

    def __init__(self):
        self.states: dict[str, UserDerivationState] = {}
        self.races_to_lose = 0
        self.increment_calls = 0

    def get(self, user_id: str) -> UserDerivationState | None:
        state = self.states.get(user_id)
        return dataclasses.replace(state) if state else None

    def get_or_init(self, user_id: str, seed_factory: Callable[[], bytes]):
        if user_id not in self.states:
            self.states[user_id] = UserDerivationState(
                user_id=user_id, counter=0, encrypted_seed=seed_factory()
            )
        return self.get(user_id)

    def increment_counter(self, user_id: str, expected_counter: int) -> int:
        self.increment_calls += 1
        state = self.states.get(user_id)
        if state is None:
            raise NotFoundError(f"No derivation state for user {user_id}")
        if self.races_to_lose:
            # Another worker reserves the counter first
            self.races_to_lose -= 1
            state.counter += 1
            state.total_payments += 1
        if state.counter != expected_counter:
            raise ConflictError(f"Counter moved for {user_id}")
        state.counter += 1
        state.total_payments += 1
        return state.counter


class MockLedger:
    """Ledger double keyed by payment reference."""

    def __init__(self, decimals: int = 6):
        self.blockhash = str(Hash.default())
        self.decimals = decimals
        self.transactions: dict[str, LedgerTransaction | Exception] = {}
        self.lookups: list[str] = []
        self.blockhash_error: Exception | None = None
        self.lookup_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self.gate: asyncio.Event | None = None
        self.closed = False

    async def get_latest_blockhash(self) -> str:
        if self.blockhash_error:
            raise self.blockhash_error
        return self.blockhash

    async def find_transaction_by_reference(self, reference: str):
        self.lookups.append(reference)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.lookup_delay:
                await asyncio.sleep(self.lookup_delay)
            result = self.transactions.get(reference)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            self.in_flight -= 1

    async def get_token_mint_decimals(self, mint: str) -> int:
        return self.decimals

    async def resolve_associated_account(self, owner: str, mint: str) -> str:
        try:
            return str(
                get_associated_token_address(
                    Pubkey.from_string(owner), Pubkey.from_string(mint)
                )
            )
        except ValueError as e:
            raise LedgerError(f"Invalid owner or mint address: {e}") from e

    async def close(self) -> None:
        self.closed = True


class MockPriceOracle:
    def __init__(self, price: Decimal = SOL_PRICE):
        self.price = price
        self.error: Exception | None = None

    async def get_price(self, asset: str) -> Decimal:
        if self.error:
            raise self.error
        return self.price


class RecordingNotifier:
    def __init__(self):
        self.confirmed: list[PaymentRecord] = []
        self.error: Exception | None = None
        self.delay = 0.0

    async def on_confirmed(self, payment: PaymentRecord) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.confirmed.append(dataclasses.replace(payment))


def native_transfer_tx(
    payment: PaymentRecord, lamports: int, succeeded: bool = True
) -> LedgerTransaction:
    """A parsed SOL transfer from a fresh payer to the payment's recipient."""
    payer = new_address()
    return LedgerTransaction(
        signature=f"sig-{payment.reference[:8]}",
        slot=1234,
        block_time=NOW,
        account_keys=[
            payer,
            payment.recipient_address,
            "11111111111111111111111111111111",
            payment.reference,
        ],
        pre_balances=[10_000_000_000, 0, 1, 0],
        post_balances=[10_000_000_000 - lamports - 5000, lamports, 1, 0],
        succeeded=succeeded,
    )


def token_transfer_tx(payment: PaymentRecord, base_units: int) -> LedgerTransaction:
    """A parsed token transfer crediting the recipient's associated account."""
    payer = new_address()
    return LedgerTransaction(
        signature=f"sig-{payment.reference[:8]}",
        slot=1234,
        block_time=NOW,
        account_keys=[payer, new_address(), new_address(), TOKEN_MINT, payment.reference],
        pre_balances=[1_000_000_000, 2_039_280, 2_039_280, 1, 0],
        post_balances=[999_995_000, 2_039_280, 2_039_280, 1, 0],
        pre_token_balances=[
            TokenBalance(account_index=1, mint=TOKEN_MINT, owner=payer, amount=100_000_000),
            TokenBalance(
                account_index=2, mint=TOKEN_MINT, owner=payment.recipient_address, amount=0
            ),
        ],
        post_token_balances=[
            TokenBalance(
                account_index=1, mint=TOKEN_MINT, owner=payer, amount=100_000_000 - base_units
            ),
            TokenBalance(
                account_index=2,
                mint=TOKEN_MINT,
                owner=payment.recipient_address,
                amount=base_units,
            ),
        ],
    )


@pytest.fixture
def payment_store():
    return MockPaymentStore()


@pytest.fixture
def user_store():
    return MockUserTrackingStore()


@pytest.fixture
def ledger():
    return MockLedger()


@pytest.fixture
def price_oracle():
    return MockPriceOracle()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def encryption():
    return SeedEncryption("test-encryption-secret")


@pytest.fixture
def deriver(user_store, encryption):
    return AddressDeriver(
        store=user_store,
        encryption=encryption,
        master_seed_secret="test-master-secret",
    )


@pytest.fixture
def make_payment(payment_store):
    """Factory inserting a pending payment (5.00 USD -> 5.445 due)."""

    def _make(
        currency: Currency = Currency.NATIVE,
        amount: str = "5.00",
        created_at: datetime | None = None,
        memo: str | None = None,
        status: PaymentStatus = PaymentStatus.PENDING,
    ) -> PaymentRecord:
        fees = calculate_fees(Decimal(amount), Decimal("0.029"), Decimal("0.30"))
        record = PaymentRecord(
            reference=new_address(),
            user_id="merchant-1",
            amount=fees.amount,
            currency=currency,
            recipient_address=new_address(),
            fee_amount=fees.fee_amount,
            total_amount_due=fees.total_amount_due,
            created_at=created_at or NOW - timedelta(minutes=5),
            status=status,
            memo=memo,
        )
        payment_store.insert(record)
        return record

    return _make


@pytest.fixture
def validator(ledger, price_oracle):
    return TransferValidator(ledger, price_oracle, token_mint=TOKEN_MINT)


@pytest.fixture
def confirmer(payment_store, notifier):
    return PaymentConfirmer(
        payment_store, notifier, notifier_timeout=0.5, clock=lambda: NOW
    )


@pytest.fixture
def monitor(payment_store, ledger, validator, confirmer):
    return ReconciliationMonitor(
        payment_store,
        ledger,
        validator,
        confirmer,
        interval_seconds=0.01,
        payment_ttl_seconds=3600,
        max_concurrency=5,
        clock=lambda: NOW,
    )


@pytest.fixture
def builder(payment_store, ledger, price_oracle):
    return TransactionBuilder(payment_store, ledger, price_oracle, token_mint=TOKEN_MINT)
