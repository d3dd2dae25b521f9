"""
Background reconciliation of pending payments against the ledger.

Each tick pages through every pending payment, looks it up by its reference
key, validates the transfer and confirms it with a compare-and-swap status
update. Payments past the TTL are expired only when the ledger has no
transaction for them. Only the caller whose update lands sends the
confirmation notification.
"""

import asyncio
import enum
from collections.abc import Callable
from contextlib import suppress
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta

from opentelemetry import trace

from refpay.crypto.interfaces import LedgerClient, Notifier, PaymentStore, PriceOracle
from refpay.crypto.pricing import to_base_units, usd_to_lamports
from refpay.errors import LedgerError
from refpay.logging_config import get_logger
from refpay.models import Currency, LedgerTransaction, PaymentRecord, PaymentStatus

logger = get_logger("reconciliation")
tracer = trace.get_tracer(__name__)


class TransferValidator:
    """
    Checks that a ledger transaction actually pays a payment record.

    Token transfers must credit the recipient's token accounts with the due
    amount to within one base unit. Native transfers must match the lamports
    quoted when the transaction was built, to within one lamport. Payments
    never built here carry no quote; they are re-priced and allowed
    ``native_tolerance_bps`` of slack.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        price_oracle: PriceOracle,
        token_mint: str,
        native_tolerance_bps: int = 100,
    ):
        self.ledger = ledger
        self.price_oracle = price_oracle
        self.token_mint = token_mint
        self.native_tolerance_bps = native_tolerance_bps
        self._checks = {
            Currency.NATIVE: self._check_native,
            Currency.TOKEN: self._check_token,
        }

    async def validate(self, payment: PaymentRecord, tx: LedgerTransaction) -> str | None:
        """
        Returns:
            None if the transaction pays the payment, otherwise the mismatch reason

        Raises:
            LedgerError: Mint metadata or price could not be resolved
        """
        if not tx.succeeded:
            return "transaction failed on-chain"
        if payment.reference not in tx.account_keys:
            return "reference key missing from transaction"
        return await self._checks[payment.currency](payment, tx)

    async def _check_token(self, payment: PaymentRecord, tx: LedgerTransaction) -> str | None:
        decimals = await self.ledger.get_token_mint_decimals(self.token_mint)
        expected = to_base_units(payment.total_amount_due, decimals)
        received = tx.token_delta(payment.recipient_address, self.token_mint)
        if received <= 0:
            return "recipient token account not credited"
        if abs(received - expected) > 1:
            return f"token amount mismatch: expected {expected}, received {received}"
        return None

    async def _check_native(self, payment: PaymentRecord, tx: LedgerTransaction) -> str | None:
        received = tx.lamport_delta(payment.recipient_address)
        if received <= 0:
            return "recipient not credited"

        if payment.quoted_lamports is not None:
            expected = payment.quoted_lamports
            if abs(received - expected) > 1:
                return f"lamport amount mismatch: quoted {expected}, received {received}"
            return None

        try:
            price = await self.price_oracle.get_price(Currency.NATIVE.value)
        except ValueError as e:
            raise LedgerError(f"No SOL price available: {e}") from e

        expected = usd_to_lamports(payment.total_amount_due, price)
        tolerance = expected * self.native_tolerance_bps // 10_000 + 1
        if abs(received - expected) > tolerance:
            return f"lamport amount mismatch: expected {expected}±{tolerance}, received {received}"
        return None


class PaymentConfirmer:
    """Applies the pending -> confirmed transition and notifies exactly once."""

    def __init__(
        self,
        store: PaymentStore,
        notifier: Notifier,
        notifier_timeout: float = 5.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.notifier = notifier
        self.notifier_timeout = notifier_timeout
        self.clock = clock

    async def confirm(
        self, payment: PaymentRecord, tx: LedgerTransaction, source: str
    ) -> bool:
        """
        Returns:
            True if this call moved the payment to confirmed, False if another
            path (manual confirmation, an earlier tick) got there first
        """
        confirmed_at = tx.block_time or self.clock()
        won = self.store.conditional_transition(
            payment.reference,
            PaymentStatus.PENDING,
            PaymentStatus.CONFIRMED,
            {"signature": tx.signature, "confirmed_at": confirmed_at},
        )
        if not won:
            logger.info(
                "payment_confirmation_race_lost",
                reference=payment.reference,
                signature=tx.signature,
                source=source,
            )
            return False

        payment.status = PaymentStatus.CONFIRMED
        payment.signature = tx.signature
        payment.confirmed_at = confirmed_at
        logger.info(
            "payment_confirmed",
            reference=payment.reference,
            signature=tx.signature,
            amount=str(payment.total_amount_due),
            currency=payment.currency.value,
            source=source,
        )

        await self._notify(payment)
        return True

    async def _notify(self, payment: PaymentRecord) -> None:
        # The confirmation is committed; notifier problems are only logged
        try:
            await asyncio.wait_for(
                self.notifier.on_confirmed(payment), timeout=self.notifier_timeout
            )
        except TimeoutError:
            logger.warning(
                "confirmation_notification_timeout",
                reference=payment.reference,
                timeout_seconds=self.notifier_timeout,
            )
        except Exception as e:
            logger.warning(
                "confirmation_notification_failed",
                reference=payment.reference,
                error=str(e),
            )


class CheckOutcome(enum.Enum):
    NOT_FOUND = "not_found"
    CONFIRMED = "confirmed"
    MISMATCHED = "mismatched"
    LOST_RACE = "lost_race"
    LOOKUP_FAILED = "lookup_failed"


@dataclass
class TickReport:
    checked: int = 0
    confirmed: int = 0
    expired: int = 0
    mismatched: int = 0
    lost_races: int = 0
    failed_lookups: int = 0


class ReconciliationMonitor:
    """
    Periodic sweep of pending payments.

    Ticks never overlap: a tick requested while another is running is
    skipped. Within a tick, ledger lookups run concurrently up to
    ``max_concurrency`` and pending payments are read in pages of
    ``batch_limit``. A payment past the TTL is expired only after its lookup
    finds nothing. Nothing is retained between ticks; failed lookups are
    simply retried on the next one.
    """

    def __init__(
        self,
        store: PaymentStore,
        ledger: LedgerClient,
        validator: TransferValidator,
        confirmer: PaymentConfirmer,
        interval_seconds: float = 15.0,
        payment_ttl_seconds: float = 3600,
        max_concurrency: int = 5,
        batch_limit: int = 50,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.ledger = ledger
        self.validator = validator
        self.confirmer = confirmer
        self.interval_seconds = interval_seconds
        self.payment_ttl = timedelta(seconds=payment_ttl_seconds)
        self.max_concurrency = max_concurrency
        self.batch_limit = batch_limit
        self.clock = clock

        self._tick_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run_loop(), name="reconciliation-monitor")
        logger.info(
            "reconciliation_started",
            interval_seconds=self.interval_seconds,
            max_concurrency=self.max_concurrency,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Lets the in-flight tick finish (up to ``timeout``), then cancels it."""
        if self._task is None:
            return
        self._stopping.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except TimeoutError:
            logger.warning("reconciliation_stop_timeout", timeout_seconds=timeout)
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        finally:
            self._task = None
        logger.info("reconciliation_stopped")

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stopping.is_set():
            started = loop.time()
            try:
                await self.run_once()
            except Exception as e:
                # Store outages and the like; the next tick starts from scratch
                logger.error("reconciliation_tick_failed", error=str(e), exc_info=True)

            delay = max(0.0, self.interval_seconds - (loop.time() - started))
            with suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)

    async def run_once(self) -> TickReport | None:
        """
        Runs one reconciliation pass.

        Returns:
            The tick's report, or None if another tick was already running
        """
        if self._tick_lock.locked():
            logger.info("reconciliation_tick_skipped", reason="previous tick running")
            return None

        async with self._tick_lock:
            with tracer.start_as_current_span("reconciliation.tick") as span:
                report = await self._tick()
                for key, value in asdict(report).items():
                    span.set_attribute(f"reconciliation.{key}", value)

        if report.checked or report.expired:
            logger.info("reconciliation_tick_complete", **asdict(report))
        return report

    async def _tick(self) -> TickReport:
        report = TickReport()
        cutoff = self.clock() - self.payment_ttl
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(payment: PaymentRecord) -> CheckOutcome:
            async with semaphore:
                return await self.check_payment(payment)

        # Keyset paging so every pending payment is looked up each tick
        cursor: tuple[datetime, str] | None = None
        while True:
            page = self.store.get_pending(limit=self.batch_limit, cursor=cursor)
            if not page:
                break
            report.checked += len(page)

            results = await asyncio.gather(
                *(bounded(p) for p in page), return_exceptions=True
            )
            for payment, result in zip(page, results, strict=True):
                self._record(report, payment, result, stale=payment.created_at < cutoff)

            if len(page) < self.batch_limit:
                break
            cursor = (page[-1].created_at, page[-1].reference)

        return report

    def _record(
        self,
        report: TickReport,
        payment: PaymentRecord,
        result: CheckOutcome | BaseException,
        stale: bool,
    ) -> None:
        if isinstance(result, BaseException):
            logger.error(
                "payment_check_crashed",
                reference=payment.reference,
                error=repr(result),
            )
            report.failed_lookups += 1
        elif result is CheckOutcome.CONFIRMED:
            report.confirmed += 1
        elif result is CheckOutcome.MISMATCHED:
            report.mismatched += 1
        elif result is CheckOutcome.LOST_RACE:
            report.lost_races += 1
        elif result is CheckOutcome.LOOKUP_FAILED:
            report.failed_lookups += 1
        elif result is CheckOutcome.NOT_FOUND and stale:
            if self.store.conditional_transition(
                payment.reference, PaymentStatus.PENDING, PaymentStatus.EXPIRED
            ):
                report.expired += 1
                logger.info(
                    "payment_expired",
                    reference=payment.reference,
                    created_at=payment.created_at.isoformat(),
                )

    async def check_payment(self, payment: PaymentRecord) -> CheckOutcome:
        try:
            tx = await self.ledger.find_transaction_by_reference(payment.reference)
            if tx is None:
                return CheckOutcome.NOT_FOUND
            mismatch = await self.validator.validate(payment, tx)
        except LedgerError as e:
            logger.warning(
                "payment_lookup_failed", reference=payment.reference, error=str(e)
            )
            return CheckOutcome.LOOKUP_FAILED

        if mismatch:
            logger.warning(
                "payment_transfer_mismatch",
                reference=payment.reference,
                signature=tx.signature,
                reason=mismatch,
            )
            return CheckOutcome.MISMATCHED

        if await self.confirmer.confirm(payment, tx, source="monitor"):
            return CheckOutcome.CONFIRMED
        return CheckOutcome.LOST_RACE
