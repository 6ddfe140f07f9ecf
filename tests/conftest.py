import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from chainverify.models.crypto_payment import CryptoPayment, CryptoPaymentVerification
from chainverify.schemas.payment import ACTIVE_STATUSES, PaymentStatus
from chainverify.services.payment_state import apply_update
from chainverify.services.payment_store import DuplicateReferenceError, PaymentNotFoundError

NOW = datetime(2026, 3, 1, 12, 0, 0)

BTC_ADDRESS = "bc1qdeposit0000000000000000000000000000000"
ETH_ADDRESS = "0x1111111111111111111111111111111111111111"


@pytest.fixture
def anyio_backend():
    return "asyncio"


def make_payment(**overrides) -> CryptoPayment:
    """Transient payment with every column set (ORM defaults only apply on flush)"""
    fields: Dict[str, Any] = dict(
        id=str(uuid.uuid4()),
        user_id="user-1",
        plan_id="plan-pro",
        payment_method="BTC",
        tx_id=uuid.uuid4().hex,
        from_address=None,
        to_address=BTC_ADDRESS,
        amount=0.01,
        currency="BTC",
        status=PaymentStatus.PENDING.value,
        confirmation_count=0,
        required_confirmations=3,
        block_height=None,
        block_hash=None,
        network_fee=None,
        verification_attempts=0,
        last_verification_at=None,
        verified_at=None,
        expires_at=NOW + timedelta(hours=24),
        proof_url=None,
        image_hash=None,
        validation_status="valid",
        admin_override=False,
        admin_notes=None,
        reviewed_by=None,
        created_at=NOW - timedelta(minutes=10),
    )
    fields.update(overrides)
    return CryptoPayment(**fields)


class FakeStore:
    """In-memory store applying the same update rules as PaymentRecordStore"""

    def __init__(self, payments: Optional[List[CryptoPayment]] = None) -> None:
        self.payments: Dict[str, CryptoPayment] = {p.id: p for p in payments or []}
        self.attempts: List[CryptoPaymentVerification] = []
        self.updates: List[Dict[str, Any]] = []

    async def create(self, payment: CryptoPayment) -> CryptoPayment:
        if payment.id is None:
            payment.id = str(uuid.uuid4())
        self.payments[payment.id] = payment
        return payment

    async def get(self, payment_id: str) -> Optional[CryptoPayment]:
        return self.payments.get(payment_id)

    def _active(self):
        active = [p for p in self.payments.values() if PaymentStatus(p.status) in ACTIVE_STATUSES]
        return sorted(active, key=lambda p: p.created_at)

    async def read_batch(self, now: datetime, max_attempts: int, limit: int) -> List[CryptoPayment]:
        due = [
            p for p in self._active()
            if p.verification_attempts < max_attempts and (p.expires_at is None or p.expires_at > now)
        ]
        return due[:limit]

    async def read_overdue(self, now: datetime, limit: int) -> List[CryptoPayment]:
        return [p for p in self._active() if p.expires_at is not None and p.expires_at <= now][:limit]

    async def read_exhausted(self, max_attempts: int, limit: int) -> List[CryptoPayment]:
        return [p for p in self._active() if p.verification_attempts >= max_attempts][:limit]

    async def claim(self, payment_id: str, now: datetime) -> CryptoPayment:
        return await self.update(payment_id, {
            "status": PaymentStatus.VERIFYING,
            "verification_attempts": self.payments[payment_id].verification_attempts + 1,
            "last_verification_at": now,
        })

    async def update(self, payment_id: str, fields: Dict[str, Any], admin: bool = False) -> CryptoPayment:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        apply_update(payment, fields, admin=admin)
        self.updates.append({"id": payment_id, **fields})
        return payment

    async def confirm(self, payment_id: str, fields: Dict[str, Any]) -> CryptoPayment:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        holders = [
            p.id for p in self.payments.values()
            if p.tx_id == payment.tx_id and p.id != payment_id and p.status == PaymentStatus.CONFIRMED.value
        ]
        if holders:
            raise DuplicateReferenceError(payment_id, holders)
        return await self.update(payment_id, {**fields, "status": PaymentStatus.CONFIRMED})

    async def append_attempt(self, attempt: CryptoPaymentVerification) -> None:
        if attempt.id is None:
            attempt.id = str(uuid.uuid4())
        self.attempts.append(attempt)

    async def list_attempts(self, payment_id: str) -> List[CryptoPaymentVerification]:
        return [a for a in self.attempts if a.payment_id == payment_id]

    async def find_duplicate_image(self, image_hash: str, exclude_id: Optional[str] = None) -> List[str]:
        return [
            p.id for p in self.payments.values()
            if p.image_hash == image_hash and p.id != exclude_id
        ]

    async def find_duplicate_reference(self, tx_id: str, exclude_id: Optional[str] = None) -> List[str]:
        return [p.id for p in self.payments.values() if p.tx_id == tx_id and p.id != exclude_id]

    async def find_confirmed_reference(self, tx_id: str, exclude_id: Optional[str] = None) -> List[str]:
        return [
            p_id for p_id in await self.find_duplicate_reference(tx_id, exclude_id)
            if self.payments[p_id].status == PaymentStatus.CONFIRMED.value
        ]

    async def stats(self, since: datetime) -> Dict[str, Any]:
        rows = [p for p in self.payments.values() if p.created_at >= since]
        breakdown: Dict[str, int] = {}
        for p in rows:
            breakdown[p.status] = breakdown.get(p.status, 0) + 1
        total = len(rows)
        attempts = sum(p.verification_attempts for p in rows)
        return {
            "total_payments": total,
            "status_breakdown": breakdown,
            "average_attempts": attempts / total if total else 0.0,
        }


class FakeActivator:
    def __init__(self, fail: bool = False) -> None:
        self.calls = []
        self.fail = fail

    async def activate(self, user_id, plan_id, payment_id=None, now=None):
        self.calls.append((user_id, plan_id, payment_id))
        if self.fail:
            raise RuntimeError("subscription store down")
        return {"user_id": user_id, "plan_id": plan_id}


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def activator():
    return FakeActivator()
