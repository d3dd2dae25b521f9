"""
Payment service for issuing payment requests and confirming them manually.
Handles recipient resolution, fee calculation and reference generation.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from solders.keypair import Keypair  # type: ignore

from refpay.crypto.interfaces import LedgerClient, PaymentStore
from refpay.crypto.pricing import calculate_fees
from refpay.errors import ExpiredError, NotFoundError, ValidationError
from refpay.logging_config import get_logger
from refpay.models import Currency, PaymentRecord, PaymentStatus
from refpay.services.addresses import AddressDeriver
from refpay.services.reconciliation import PaymentConfirmer, TransferValidator
from refpay.services.transactions import parse_address

logger = get_logger("payments")

# Memo program rejects larger payloads in a single instruction
MAX_MEMO_BYTES = 566


class PaymentService:
    """
    Service for managing payment requests.

    Responsibilities:
    - Resolving the recipient (explicit merchant wallet, derived address or default)
    - Generating a fresh reference key per payment
    - Computing platform fees with exact decimal arithmetic
    - Confirming payments on demand (the monitor does it in the background)
    """

    def __init__(
        self,
        store: PaymentStore,
        ledger: LedgerClient,
        validator: TransferValidator,
        confirmer: PaymentConfirmer,
        deriver: AddressDeriver | None = None,
        fee_rate: Decimal = Decimal("0.029"),
        fixed_fee: Decimal = Decimal("0.30"),
        default_merchant_wallet: str | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.ledger = ledger
        self.validator = validator
        self.confirmer = confirmer
        self.deriver = deriver
        self.fee_rate = fee_rate
        self.fixed_fee = fixed_fee
        self.default_merchant_wallet = default_merchant_wallet
        self.clock = clock

    def create_payment(
        self,
        user_id: str,
        amount: Decimal | str | float,
        currency: Currency | str = Currency.NATIVE,
        merchant_wallet: str | None = None,
        label: str | None = None,
        message: str | None = None,
        memo: str | None = None,
    ) -> PaymentRecord:
        """
        Creates a pending payment.

        Recipient precedence: ``merchant_wallet``, then a freshly derived
        address (when derivation is enabled), then the default merchant wallet.

        Raises:
            ValidationError: Invalid amount, currency, wallet or memo
            DerivationError: The user's seed is unusable
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        base_amount = self._parse_amount(amount)
        try:
            currency = currency if isinstance(currency, Currency) else Currency.parse(currency)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if memo is not None and len(memo.encode("utf-8")) > MAX_MEMO_BYTES:
            raise ValidationError(f"memo exceeds {MAX_MEMO_BYTES} bytes")

        counter = None
        derivation_path = None
        if merchant_wallet:
            recipient = str(parse_address(merchant_wallet, "merchant_wallet"))
        elif self.deriver is not None:
            derived = self.deriver.derive_next(user_id)
            recipient = derived.address
            counter = derived.counter
            derivation_path = derived.derivation_path
        elif self.default_merchant_wallet:
            recipient = self.default_merchant_wallet
        else:
            raise ValidationError("merchant_wallet is required")

        fees = calculate_fees(base_amount, self.fee_rate, self.fixed_fee)
        record = PaymentRecord(
            reference=str(Keypair().pubkey()),
            user_id=user_id,
            amount=fees.amount,
            currency=currency,
            recipient_address=recipient,
            fee_amount=fees.fee_amount,
            total_amount_due=fees.total_amount_due,
            created_at=self.clock(),
            counter=counter,
            derivation_path=derivation_path,
            label=label,
            message=message,
            memo=memo,
        )
        self.store.insert(record)

        logger.info(
            "payment_created",
            reference=record.reference,
            user_id=user_id,
            amount=str(record.amount),
            fee_amount=str(record.fee_amount),
            total_amount_due=str(record.total_amount_due),
            currency=currency.value,
            recipient=recipient,
            derived=counter is not None,
        )
        return record

    def get_payment(self, reference: str) -> PaymentRecord:
        """
        Raises:
            NotFoundError: Unknown reference
            ExpiredError: The payment aged out before it was paid
        """
        payment = self.store.get(reference)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status is PaymentStatus.EXPIRED:
            raise ExpiredError(f"Payment {reference} expired before confirmation")
        return payment

    async def confirm_payment(
        self, reference: str, signature: str | None = None
    ) -> PaymentRecord:
        """
        Confirms a payment on demand by looking its reference up on the ledger.

        Idempotent: an already confirmed payment is returned unchanged.

        Raises:
            NotFoundError: Unknown reference, or no transaction on the ledger yet
            ExpiredError: The payment already expired
            ValidationError: The transaction does not pay this payment
            LedgerError: Ledger lookup failed; retry later
        """
        payment = self.get_payment(reference)
        if payment.status is PaymentStatus.CONFIRMED:
            logger.info("payment_already_confirmed", reference=reference)
            return payment
        if payment.status is not PaymentStatus.PENDING:
            raise ValidationError(f"Payment {reference} is {payment.status.value}")

        tx = await self.ledger.find_transaction_by_reference(reference)
        if tx is None:
            raise NotFoundError("Transaction not found on ledger")
        if signature and tx.signature != signature:
            raise ValidationError("Signature does not match the payment reference")

        mismatch = await self.validator.validate(payment, tx)
        if mismatch:
            logger.warning(
                "manual_confirmation_rejected",
                reference=reference,
                signature=tx.signature,
                reason=mismatch,
            )
            raise ValidationError(f"Transfer does not match payment: {mismatch}")

        await self.confirmer.confirm(payment, tx, source="manual")
        return self.get_payment(reference)

    @staticmethod
    def _parse_amount(amount: Decimal | str | float) -> Decimal:
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid amount: {amount}") from e
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be positive")
        return value
