"""
Payment record store

Relational access for the verification pipeline. Every write is a
single-record update keyed by primary id; state rules live in
payment_state.apply_update.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainverify.models.crypto_payment import CryptoPayment, CryptoPaymentVerification
from chainverify.schemas.payment import ACTIVE_STATUSES, PaymentStatus
from chainverify.services.payment_state import apply_update

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [s.value for s in ACTIVE_STATUSES]


class PaymentNotFoundError(Exception):
    """No payment with that id"""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class DuplicateReferenceError(Exception):
    """Another payment already confirmed the same transaction"""

    def __init__(self, payment_id: str, holder_ids: List[str]):
        self.payment_id = payment_id
        self.holder_ids = holder_ids
        super().__init__(f"Transaction of payment {payment_id} already confirmed for {holder_ids}")


class PaymentRecordStore:
    """
    Async SQLAlchemy implementation of the store contract

    Each call opens its own short session so concurrent verification passes
    never share one.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(self, payment: CryptoPayment) -> CryptoPayment:
        async with self.session_factory() as session:
            session.add(payment)
            await session.commit()
            await session.refresh(payment)
            return payment

    async def get(self, payment_id: str) -> Optional[CryptoPayment]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment).where(CryptoPayment.id == payment_id)
            )
            return result.scalar_one_or_none()

    async def read_batch(self, now: datetime, max_attempts: int, limit: int) -> List[CryptoPayment]:
        """
        Payments due for a verification pass, oldest first

        Args:
            now: naive UTC reference time
            max_attempts: retry budget; exhausted payments are skipped
            limit: batch size cap

        Returns:
            at most `limit` pending/verifying, unexpired payments (no expiry never expires)
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment)
                .where(
                    CryptoPayment.status.in_(_ACTIVE_VALUES),
                    CryptoPayment.verification_attempts < max_attempts,
                    or_(CryptoPayment.expires_at.is_(None), CryptoPayment.expires_at > now),
                )
                .order_by(CryptoPayment.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def read_overdue(self, now: datetime, limit: int) -> List[CryptoPayment]:
        """Non-terminal payments whose expiry passed"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment)
                .where(
                    CryptoPayment.status.in_(_ACTIVE_VALUES),
                    CryptoPayment.expires_at <= now,
                )
                .order_by(CryptoPayment.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def read_exhausted(self, max_attempts: int, limit: int) -> List[CryptoPayment]:
        """Active payments whose retry budget is already spent"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment)
                .where(
                    CryptoPayment.status.in_(_ACTIVE_VALUES),
                    CryptoPayment.verification_attempts >= max_attempts,
                )
                .order_by(CryptoPayment.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def claim(self, payment_id: str, now: datetime) -> CryptoPayment:
        """
        Mark a payment `verifying` and count the attempt, under a row lock

        Raises:
            PaymentNotFoundError: unknown id
            PaymentStateError: payment is terminal
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment)
                .where(CryptoPayment.id == payment_id)
                .with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            try:
                apply_update(payment, {
                    "status": PaymentStatus.VERIFYING,
                    "verification_attempts": (payment.verification_attempts or 0) + 1,
                    "last_verification_at": now,
                })
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            return payment

    async def update(self, payment_id: str, fields: Dict[str, Any], admin: bool = False) -> CryptoPayment:
        """
        Row-locked partial update

        Raises:
            PaymentNotFoundError: unknown id
            PaymentStateError: rejected by the state machine
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment)
                .where(CryptoPayment.id == payment_id)
                .with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            try:
                apply_update(payment, fields, admin=admin)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            return payment

    async def confirm(self, payment_id: str, fields: Dict[str, Any]) -> CryptoPayment:
        """
        Confirm a payment unless its transaction is already confirmed elsewhere

        Every row claiming the same transaction is locked in id order, so
        two passes over the same reference cannot both confirm it.

        Raises:
            PaymentNotFoundError: unknown id
            DuplicateReferenceError: another payment holds the confirmation
            PaymentStateError: rejected by the state machine
        """
        reference = select(CryptoPayment.tx_id).where(CryptoPayment.id == payment_id).scalar_subquery()
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPayment)
                .where(CryptoPayment.tx_id == reference)
                .order_by(CryptoPayment.id)
                .with_for_update()
            )
            rows = list(result.scalars().all())
            payment = next((p for p in rows if p.id == payment_id), None)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            holders = [
                p.id for p in rows
                if p.id != payment_id and p.status == PaymentStatus.CONFIRMED.value
            ]
            try:
                if holders:
                    raise DuplicateReferenceError(payment_id, holders)
                apply_update(payment, {**fields, "status": PaymentStatus.CONFIRMED})
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            return payment

    async def append_attempt(self, attempt: CryptoPaymentVerification) -> None:
        async with self.session_factory() as session:
            session.add(attempt)
            await session.commit()

    async def list_attempts(self, payment_id: str) -> List[CryptoPaymentVerification]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CryptoPaymentVerification)
                .where(CryptoPaymentVerification.payment_id == payment_id)
                .order_by(CryptoPaymentVerification.created_at.asc())
            )
            return list(result.scalars().all())

    async def find_duplicate_image(self, image_hash: str, exclude_id: Optional[str] = None) -> List[str]:
        """Ids of other payments carrying the same proof image"""
        query = select(CryptoPayment.id).where(CryptoPayment.image_hash == image_hash)
        if exclude_id:
            query = query.where(CryptoPayment.id != exclude_id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_duplicate_reference(self, tx_id: str, exclude_id: Optional[str] = None) -> List[str]:
        """Ids of other payments claiming the same transaction reference"""
        query = select(CryptoPayment.id).where(CryptoPayment.tx_id == tx_id)
        if exclude_id:
            query = query.where(CryptoPayment.id != exclude_id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_confirmed_reference(self, tx_id: str, exclude_id: Optional[str] = None) -> List[str]:
        """Ids of other confirmed payments for the same transaction reference"""
        query = select(CryptoPayment.id).where(
            CryptoPayment.tx_id == tx_id,
            CryptoPayment.status == PaymentStatus.CONFIRMED.value,
        )
        if exclude_id:
            query = query.where(CryptoPayment.id != exclude_id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def stats(self, since: datetime) -> Dict[str, Any]:
        """Status counts and attempt totals for payments created after `since`"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    CryptoPayment.status,
                    func.count(CryptoPayment.id),
                    func.coalesce(func.sum(CryptoPayment.verification_attempts), 0),
                )
                .where(CryptoPayment.created_at >= since)
                .group_by(CryptoPayment.status)
            )
            rows = result.all()

        breakdown = {status: int(count) for status, count, _ in rows}
        total = sum(breakdown.values())
        attempts = sum(int(attempt_sum) for _, _, attempt_sum in rows)
        return {
            "total_payments": total,
            "status_breakdown": breakdown,
            "average_attempts": attempts / total if total else 0.0,
        }
