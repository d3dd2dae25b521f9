"""
SQLAlchemy implementations of the payment and user-tracking stores.

All status changes are compare-and-swap updates; the derivation counter is
advanced under a row lock plus a counter-equality condition.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from refpay.db import PaymentRow, UserDerivationRow
from refpay.errors import ConflictError, NotFoundError
from refpay.logging_config import get_logger
from refpay.models import PaymentRecord, PaymentStatus, UserDerivationState

logger = get_logger("store")

# Columns a status transition may set alongside the status itself
TRANSITION_FIELDS = frozenset({"signature", "confirmed_at"})


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; every stored timestamp is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _to_state(row: UserDerivationRow) -> UserDerivationState:
    return UserDerivationState(
        user_id=row.user_id,
        counter=row.counter,
        encrypted_seed=row.encrypted_seed,
        total_payments=row.total_payments,
    )


def _to_record(row: PaymentRow) -> PaymentRecord:
    return PaymentRecord(
        reference=row.reference,
        user_id=row.user_id,
        amount=row.amount,
        currency=row.currency,
        recipient_address=row.recipient_address,
        fee_amount=row.fee_amount,
        total_amount_due=row.total_amount_due,
        created_at=_as_utc(row.created_at),
        status=row.status,
        counter=row.counter,
        derivation_path=row.derivation_path,
        label=row.label,
        message=row.message,
        memo=row.memo,
        confirmed_at=_as_utc(row.confirmed_at),
        signature=row.signature,
        quoted_lamports=row.quoted_lamports,
    )


class SqlUserTrackingStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def get(self, user_id: str) -> UserDerivationState | None:
        with self.session_factory() as session:
            row = session.scalars(
                select(UserDerivationRow).where(UserDerivationRow.user_id == user_id)
            ).first()
            return _to_state(row) if row else None

    def get_or_init(
        self, user_id: str, seed_factory: Callable[[], bytes]
    ) -> UserDerivationState:
        existing = self.get(user_id)
        if existing:
            return existing

        with self.session_factory() as session:
            row = UserDerivationRow(
                user_id=user_id,
                counter=0,
                encrypted_seed=seed_factory(),
                total_payments=0,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # Concurrent initializer won; its row (and seed) is authoritative
                session.rollback()
                logger.info("user_tracking_init_race_lost", user_id=user_id)
                winner = self.get(user_id)
                if winner is None:
                    raise
                return winner

            logger.info("user_tracking_initialized", user_id=user_id)
            return _to_state(row)

    def increment_counter(self, user_id: str, expected_counter: int) -> int:
        with self.session_factory() as session, session.begin():
            row = session.scalars(
                select(UserDerivationRow)
                .where(UserDerivationRow.user_id == user_id)
                .with_for_update()
            ).first()
            if row is None:
                raise NotFoundError(f"No derivation state for user {user_id}")
            if row.counter != expected_counter:
                raise ConflictError(
                    f"Counter moved for {user_id}: expected {expected_counter}, found {row.counter}"
                )

            new_counter = expected_counter + 1
            result = session.execute(
                update(UserDerivationRow)
                .where(
                    UserDerivationRow.user_id == user_id,
                    UserDerivationRow.counter == expected_counter,
                )
                .values(
                    counter=new_counter,
                    total_payments=UserDerivationRow.total_payments + 1,
                    updated_at=datetime.now(UTC),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Counter moved for {user_id} during update")

        return new_counter


class SqlPaymentStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def insert(self, record: PaymentRecord) -> PaymentRecord:
        with self.session_factory() as session:
            session.add(
                PaymentRow(
                    reference=record.reference,
                    user_id=record.user_id,
                    counter=record.counter,
                    derivation_path=record.derivation_path,
                    amount=record.amount,
                    currency=record.currency,
                    recipient_address=record.recipient_address,
                    fee_amount=record.fee_amount,
                    total_amount_due=record.total_amount_due,
                    status=record.status,
                    label=record.label,
                    message=record.message,
                    memo=record.memo,
                    created_at=record.created_at,
                    confirmed_at=record.confirmed_at,
                    signature=record.signature,
                    quoted_lamports=record.quoted_lamports,
                )
            )
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ConflictError(f"Duplicate payment reference {record.reference}") from e
        return record

    def get(self, reference: str) -> PaymentRecord | None:
        with self.session_factory() as session:
            row = session.get(PaymentRow, reference)
            return _to_record(row) if row else None

    def get_pending(
        self,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int | None = None,
        cursor: tuple[datetime, str] | None = None,
    ) -> list[PaymentRecord]:
        stmt = select(PaymentRow).where(PaymentRow.status == PaymentStatus.PENDING)
        if created_after is not None:
            stmt = stmt.where(PaymentRow.created_at >= created_after)
        if created_before is not None:
            stmt = stmt.where(PaymentRow.created_at < created_before)
        if cursor is not None:
            cursor_at, cursor_reference = cursor
            stmt = stmt.where(
                or_(
                    PaymentRow.created_at > cursor_at,
                    and_(
                        PaymentRow.created_at == cursor_at,
                        PaymentRow.reference > cursor_reference,
                    ),
                )
            )
        stmt = stmt.order_by(PaymentRow.created_at.asc(), PaymentRow.reference.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        with self.session_factory() as session:
            return [_to_record(row) for row in session.scalars(stmt)]

    def record_quote(self, reference: str, lamports: int) -> bool:
        """Stores the native quote once; later quotes never replace it."""
        with self.session_factory() as session:
            result = session.execute(
                update(PaymentRow)
                .where(
                    PaymentRow.reference == reference,
                    PaymentRow.status == PaymentStatus.PENDING,
                    PaymentRow.quoted_lamports.is_(None),
                )
                .values(quoted_lamports=lamports, updated_at=datetime.now(UTC))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def conditional_transition(
        self,
        reference: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        fields: dict[str, Any] | None = None,
    ) -> bool:
        if from_status.is_terminal:
            raise ValueError(f"Cannot transition out of terminal status {from_status.value}")
        fields = fields or {}
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported transition fields: {sorted(unknown)}")

        with self.session_factory() as session:
            result = session.execute(
                update(PaymentRow)
                .where(PaymentRow.reference == reference, PaymentRow.status == from_status)
                .values(status=to_status, updated_at=datetime.now(UTC), **fields)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1
