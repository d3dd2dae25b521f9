"""
Unsigned transfer transactions for the Solana Pay transaction request flow.

The wallet supplies the payer; the payment record supplies the recipient,
amount and reference. The reference rides on the transfer instruction as a
read-only, non-signing account so the reconciliation monitor can find the
transaction later.
"""

from collections.abc import Awaitable, Callable

from solders.hash import Hash  # type: ignore
from solders.instruction import AccountMeta, Instruction  # type: ignore
from solders.message import Message  # type: ignore
from solders.pubkey import Pubkey  # type: ignore
from solders.system_program import TransferParams, transfer  # type: ignore
from solders.transaction import Transaction  # type: ignore
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import TransferCheckedParams, transfer_checked

from refpay.crypto.interfaces import LedgerClient, PaymentStore, PriceOracle
from refpay.crypto.pricing import to_base_units, usd_to_lamports
from refpay.errors import LedgerError, NotFoundError, ValidationError
from refpay.logging_config import get_logger
from refpay.models import Currency, PaymentRecord, PaymentStatus

logger = get_logger("transaction_builder")

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")


def parse_address(value: str, field: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {field}: {value}") from e


def memo_instruction(memo: str, signer: Pubkey) -> Instruction:
    return Instruction(
        MEMO_PROGRAM_ID,
        memo.encode("utf-8"),
        [AccountMeta(signer, is_signer=True, is_writable=False)],
    )


def with_reference(instruction: Instruction, reference: Pubkey) -> Instruction:
    """Returns a copy of instruction with reference appended as its last account."""
    accounts = list(instruction.accounts)
    accounts.append(AccountMeta(reference, is_signer=False, is_writable=False))
    return Instruction(instruction.program_id, instruction.data, accounts)


class TransactionBuilder:
    """
    Builds unsigned transfer transactions for pending payments.

    Stateless between calls; safe to share across concurrent requests.
    """

    def __init__(
        self,
        store: PaymentStore,
        ledger: LedgerClient,
        price_oracle: PriceOracle,
        token_mint: str,
    ):
        self.store = store
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.token_mint = token_mint
        # One builder per asset kind; new kinds are new entries here
        self._transfer_builders: dict[
            Currency, Callable[[PaymentRecord, Pubkey], Awaitable[Instruction]]
        ] = {
            Currency.NATIVE: self._native_transfer,
            Currency.TOKEN: self._token_transfer,
        }

    def load_pending(self, reference: str) -> PaymentRecord:
        payment = self.store.get(reference)
        if payment is None:
            raise NotFoundError("Transaction request not found")
        if payment.status is not PaymentStatus.PENDING:
            raise NotFoundError("Transaction request already processed")
        return payment

    async def build(self, reference: str, payer: str) -> bytes:
        """
        Builds and serializes the unsigned transaction paying ``reference``.

        Raises:
            NotFoundError: Unknown or non-pending payment
            ValidationError: payer is not a valid address
            LedgerError: Mint, account, price or blockhash lookup failed
        """
        payment = self.load_pending(reference)
        payer_key = parse_address(payer, "account")

        instructions = await self.build_instructions(payment, payer_key)
        blockhash = await self.ledger.get_latest_blockhash()

        message = Message.new_with_blockhash(
            instructions, payer_key, Hash.from_string(blockhash)
        )
        raw = bytes(Transaction.new_unsigned(message))

        logger.info(
            "transaction_built",
            reference=reference,
            payer=payer,
            currency=payment.currency.value,
            instructions=len(instructions),
            size_bytes=len(raw),
        )
        return raw

    async def build_instructions(
        self, payment: PaymentRecord, payer: Pubkey
    ) -> list[Instruction]:
        instructions: list[Instruction] = []
        if payment.memo:
            instructions.append(memo_instruction(payment.memo, payer))

        transfer_ix = await self._transfer_builders[payment.currency](payment, payer)
        reference = parse_address(payment.reference, "reference")
        instructions.append(with_reference(transfer_ix, reference))
        return instructions

    async def _token_transfer(self, payment: PaymentRecord, payer: Pubkey) -> Instruction:
        mint = self.token_mint
        payer_account = await self.ledger.resolve_associated_account(str(payer), mint)
        recipient_account = await self.ledger.resolve_associated_account(
            payment.recipient_address, mint
        )
        decimals = await self.ledger.get_token_mint_decimals(mint)

        amount = to_base_units(payment.total_amount_due, decimals)
        if amount <= 0:
            raise ValidationError(f"Payment amount too small: {payment.total_amount_due}")

        return transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=Pubkey.from_string(payer_account),
                mint=Pubkey.from_string(mint),
                dest=Pubkey.from_string(recipient_account),
                owner=payer,
                amount=amount,
                decimals=decimals,
            )
        )

    async def _native_transfer(self, payment: PaymentRecord, payer: Pubkey) -> Instruction:
        lamports = payment.quoted_lamports
        if lamports is None:
            lamports = await self._quote_lamports(payment)

        return transfer(
            TransferParams(
                from_pubkey=payer,
                to_pubkey=parse_address(payment.recipient_address, "recipient"),
                lamports=lamports,
            )
        )

    async def _quote_lamports(self, payment: PaymentRecord) -> int:
        """
        Prices the payment in lamports and stores the quote. Every later build
        and the reconciliation check use the stored figure.
        """
        try:
            price = await self.price_oracle.get_price(Currency.NATIVE.value)
        except ValueError as e:
            raise LedgerError(f"No SOL price available: {e}") from e

        lamports = usd_to_lamports(payment.total_amount_due, price)
        if lamports <= 0:
            raise ValidationError(f"Payment amount too small: {payment.total_amount_due}")

        if self.store.record_quote(payment.reference, lamports):
            logger.info(
                "native_amount_quoted",
                reference=payment.reference,
                lamports=lamports,
                price=str(price),
            )
            return lamports

        # A concurrent request quoted first
        current = self.store.get(payment.reference)
        if current is None or current.quoted_lamports is None:
            raise NotFoundError("Transaction request already processed")
        return current.quoted_lamports

    @staticmethod
    def describe(payment: PaymentRecord) -> str:
        """Wallet-facing message for the transaction request response."""
        if payment.message:
            return payment.message
        return f"Pay {payment.total_amount_due} USD in {payment.currency.value}"
