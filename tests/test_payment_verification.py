import asyncio
from datetime import timedelta

import pytest

from chainverify.schemas.payment import PaymentStatus, VerificationResult, VerificationType
from chainverify.services.payment_state import PaymentStateError
from chainverify.services.payment_store import DuplicateReferenceError, PaymentNotFoundError
from chainverify.services.payment_verification import PaymentVerificationService

from conftest import NOW, FakeActivator, FakeStore, make_payment


class FakeChainService:
    """Scripted explorer answers keyed by tx_id; a list is consumed one per call"""

    def __init__(self, answers=None, default=None):
        self.answers = answers or {}
        self.default = default
        self.calls = []
        self.closed = False

    async def verify(self, symbol, tx_id, expected_to_address, expected_amount=None):
        self.calls.append((symbol, tx_id, expected_to_address, expected_amount))
        answer = self.answers.get(tx_id, self.default)
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def aclose(self):
        self.closed = True


def awaiting(count, required=3):
    return VerificationResult(
        success=True, found=True, valid=True, confirmation_count=count, required_confirmations=required
    )


def confirmed(count=5, required=3):
    return VerificationResult(
        success=True, found=True, valid=True, confirmed=True,
        confirmation_count=count, required_confirmations=required,
        block_height=800_000, block_hash="00000000abc", network_fee=0.00001,
    )


def mismatch():
    return VerificationResult(
        success=True, found=True, valid=False, confirmation_count=7,
        required_confirmations=3, error="no output pays the deposit address",
    )


def build(store, chain, activator=None, **kwargs):
    return PaymentVerificationService(
        store=store,
        chain_service=chain,
        activator=activator or FakeActivator(),
        clock=lambda: NOW,
        **kwargs,
    )


@pytest.mark.anyio
async def test_unconfirmed_payment_returns_to_pending():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    service = build(store, FakeChainService({"tx-a": awaiting(0)}))

    summary = await service.run_once()

    assert payment.status == PaymentStatus.PENDING.value
    assert payment.verification_attempts == 1
    assert payment.last_verification_at == NOW
    assert summary["processed"] == 1
    assert summary["statuses"] == {"pending": 1}
    assert [a.outcome for a in store.attempts] == ["awaiting_confirmations"]


@pytest.mark.anyio
async def test_confirmed_payment_activates_subscription_once():
    payment = make_payment(tx_id="tx-a", plan_id="plan-pro")
    store = FakeStore([payment])
    activator = FakeActivator()
    service = build(store, FakeChainService({"tx-a": confirmed()}), activator)

    await service.run_once()
    await service.run_once()

    assert payment.status == PaymentStatus.CONFIRMED.value
    assert payment.confirmation_count == 5
    assert payment.block_height == 800_000
    assert payment.verified_at == NOW
    assert activator.calls == [("user-1", "plan-pro", payment.id)]
    assert payment.verification_attempts == 1


@pytest.mark.anyio
async def test_mismatch_fails_immediately():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    activator = FakeActivator()
    service = build(store, FakeChainService({"tx-a": mismatch()}), activator, max_attempts=5)

    await service.run_once()

    assert payment.status == PaymentStatus.FAILED.value
    assert payment.verification_attempts == 1
    assert store.attempts[0].outcome == "mismatch"
    assert activator.calls == []


@pytest.mark.anyio
async def test_attempts_grow_by_one_per_pass_until_exhausted():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    chain = FakeChainService(default=VerificationResult.transient(3, "explorer down"))
    service = build(store, chain, max_attempts=3)

    seen = []
    for _ in range(4):
        await service.run_once()
        seen.append((payment.verification_attempts, payment.status))

    assert seen == [
        (1, "pending"),
        (2, "pending"),
        (3, "failed"),
        (3, "failed"),
    ]
    assert len(chain.calls) == 3


@pytest.mark.anyio
async def test_confirmation_count_is_monotonic():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    chain = FakeChainService({"tx-a": [awaiting(2), awaiting(1), awaiting(2)]})
    service = build(store, chain, max_attempts=5)

    counts = []
    for _ in range(3):
        await service.run_once()
        counts.append(payment.confirmation_count)

    assert counts == [2, 2, 2]


@pytest.mark.anyio
async def test_one_crashing_record_does_not_abort_the_batch():
    broken = make_payment(tx_id="tx-broken", created_at=NOW - timedelta(minutes=30))
    healthy = make_payment(tx_id="tx-ok")
    store = FakeStore([broken, healthy])
    chain = FakeChainService({"tx-broken": RuntimeError("boom"), "tx-ok": confirmed()})
    service = build(store, chain)

    summary = await service.run_once()

    assert healthy.status == PaymentStatus.CONFIRMED.value
    assert broken.status == PaymentStatus.PENDING.value
    assert broken.verification_attempts == 1
    errors = [a for a in store.attempts if a.payment_id == broken.id]
    assert errors[0].outcome == "error"
    assert "boom" in errors[0].error_message
    assert summary["processed"] == 2


@pytest.mark.anyio
async def test_batch_size_caps_each_tick():
    payments = [make_payment(tx_id=f"tx-{i}", created_at=NOW - timedelta(minutes=60 - i)) for i in range(5)]
    store = FakeStore(payments)
    chain = FakeChainService(default=awaiting(0))
    service = build(store, chain, batch_size=2)

    summary = await service.run_once()

    assert summary["processed"] == 2
    assert [call[1] for call in chain.calls] == ["tx-0", "tx-1"]


@pytest.mark.anyio
async def test_overdue_payments_expire_without_explorer_calls():
    overdue = make_payment(tx_id="tx-old", expires_at=NOW - timedelta(minutes=1), verification_attempts=1)
    store = FakeStore([overdue])
    chain = FakeChainService(default=confirmed())
    service = build(store, chain)

    summary = await service.run_once()

    assert overdue.status == PaymentStatus.EXPIRED.value
    assert summary["expired"] == 1
    assert summary["processed"] == 0
    assert chain.calls == []


@pytest.mark.anyio
async def test_stranded_exhausted_payment_is_failed():
    stranded = make_payment(tx_id="tx-a", verification_attempts=5)
    store = FakeStore([stranded])
    service = build(store, FakeChainService(default=confirmed()), max_attempts=5)

    summary = await service.run_once()

    assert stranded.status == PaymentStatus.FAILED.value
    assert summary["exhausted"] == 1


@pytest.mark.anyio
async def test_amount_checked_only_in_the_paid_asset():
    in_asset = make_payment(tx_id="tx-a", amount=0.01, currency="BTC")
    in_fiat = make_payment(tx_id="tx-b", amount=650, currency="USD")
    chain = FakeChainService(default=awaiting(0))
    service = build(FakeStore([in_asset, in_fiat]), chain)

    await service.run_once()

    expected = {call[1]: call[3] for call in chain.calls}
    assert expected == {"tx-a": 0.01, "tx-b": None}


@pytest.mark.anyio
async def test_same_payment_is_never_verified_twice_at_once():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    release = asyncio.Event()

    class BlockingChain(FakeChainService):
        async def verify(self, *args):
            self.calls.append(args)
            await release.wait()
            return awaiting(0)

    chain = BlockingChain()
    service = build(store, chain)

    first = asyncio.create_task(service.verify_payment(payment))
    await asyncio.sleep(0)
    second = await service.verify_payment(payment, VerificationType.MANUAL)
    release.set()
    await first

    assert second is None
    assert len(chain.calls) == 1


@pytest.mark.anyio
async def test_activation_failure_keeps_payment_confirmed():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    service = build(store, FakeChainService({"tx-a": confirmed()}), FakeActivator(fail=True))

    await service.run_once()

    assert payment.status == PaymentStatus.CONFIRMED.value


@pytest.mark.anyio
async def test_verify_now_records_manual_attempt():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    service = build(store, FakeChainService({"tx-a": awaiting(1)}))

    assert await service.verify_now(payment.id) is True
    assert store.attempts[0].verification_type == "manual"
    assert await service.verify_now("unknown") is False


@pytest.mark.anyio
async def test_verify_now_skips_terminal_payments():
    payment = make_payment(tx_id="tx-a", status=PaymentStatus.CONFIRMED.value)
    chain = FakeChainService(default=confirmed())
    service = build(FakeStore([payment]), chain)

    assert await service.verify_now(payment.id) is False
    assert chain.calls == []


@pytest.mark.anyio
async def test_admin_can_force_confirm_a_failed_payment():
    payment = make_payment(status=PaymentStatus.FAILED.value)
    activator = FakeActivator()
    service = build(FakeStore([payment]), FakeChainService(), activator)

    await service.override(payment.id, "confirm", notes="paid by bank transfer", admin_id="admin-1")

    assert payment.status == PaymentStatus.CONFIRMED.value
    assert payment.admin_override is True
    assert payment.reviewed_by == "admin-1"
    assert activator.calls == [("user-1", "plan-pro", payment.id)]


@pytest.mark.anyio
async def test_admin_can_reject_a_confirmed_payment():
    payment = make_payment(status=PaymentStatus.CONFIRMED.value)
    activator = FakeActivator()
    service = build(FakeStore([payment]), FakeChainService(), activator)

    await service.override(payment.id, "reject", notes="chargeback")

    assert payment.status == PaymentStatus.REJECTED.value
    assert activator.calls == []


@pytest.mark.anyio
async def test_override_errors():
    payment = make_payment(status=PaymentStatus.REJECTED.value)
    service = build(FakeStore([payment]), FakeChainService())

    with pytest.raises(PaymentNotFoundError):
        await service.override("unknown", "reject")
    with pytest.raises(PaymentStateError):
        await service.override(payment.id, "confirm")


@pytest.mark.anyio
async def test_stats_window():
    recent = make_payment(status=PaymentStatus.CONFIRMED.value, verification_attempts=2)
    pending = make_payment(verification_attempts=1)
    old = make_payment(created_at=NOW - timedelta(days=3))
    service = build(FakeStore([recent, pending, old]), FakeChainService())

    stats = await service.get_stats(24)

    assert stats["window_hours"] == 24
    assert stats["total_payments"] == 2
    assert stats["status_breakdown"] == {"confirmed": 1, "pending": 1}
    assert stats["average_attempts"] == 1.5


@pytest.mark.anyio
async def test_stop_waits_for_running_tick():
    payment = make_payment(tx_id="tx-a")
    store = FakeStore([payment])
    service = build(store, FakeChainService({"tx-a": awaiting(0)}), interval_seconds=60)

    service.start()
    assert service.is_running
    await asyncio.sleep(0.05)
    await service.stop()

    assert not service.is_running
    assert payment.verification_attempts == 1
    assert payment.status == PaymentStatus.PENDING.value


@pytest.mark.anyio
async def test_reused_reference_activates_only_the_first_claim():
    alice = make_payment(tx_id="same-tx", user_id="alice", created_at=NOW - timedelta(minutes=20))
    mallory = make_payment(
        tx_id="same-tx", user_id="mallory", fraud_score=0.5, validation_status="invalid",
        created_at=NOW - timedelta(minutes=5),
    )
    store = FakeStore([alice, mallory])
    activator = FakeActivator()
    service = build(store, FakeChainService({"same-tx": [confirmed(), confirmed()]}), activator)

    summary = await service.run_once()

    assert activator.calls == [("alice", "plan-pro", alice.id)]
    assert alice.status == PaymentStatus.CONFIRMED.value
    assert mallory.status == PaymentStatus.FAILED.value
    assert summary["statuses"] == {"confirmed": 1, "failed": 1}
    rejected = [a for a in store.attempts if a.payment_id == mallory.id]
    assert rejected[0].outcome == "mismatch"
    assert "duplicate reference" in rejected[0].error_message


@pytest.mark.anyio
async def test_confirmation_without_valid_receipt_waits_for_admin():
    payment = make_payment(tx_id="tx-a", validation_status="unclear")
    store = FakeStore([payment])
    activator = FakeActivator()
    service = build(store, FakeChainService({"tx-a": confirmed()}), activator)

    await service.run_once()

    assert payment.status == PaymentStatus.CONFIRMED.value
    assert activator.calls == []

    await service.override(payment.id, "confirm", notes="receipt checked", admin_id="admin-1")

    assert activator.calls == [("user-1", "plan-pro", payment.id)]


@pytest.mark.anyio
async def test_unscreened_payment_is_not_activated_automatically():
    payment = make_payment(tx_id="tx-a", validation_status=None)
    activator = FakeActivator()
    service = build(FakeStore([payment]), FakeChainService({"tx-a": confirmed()}), activator)

    await service.run_once()

    assert payment.status == PaymentStatus.CONFIRMED.value
    assert activator.calls == []


@pytest.mark.anyio
async def test_lost_confirmation_race_is_retried_with_one_attempt_row():
    holder = make_payment(tx_id="same-tx", status=PaymentStatus.CONFIRMED.value)
    payment = make_payment(tx_id="same-tx", user_id="user-2")

    class RacingStore(FakeStore):
        async def find_confirmed_reference(self, tx_id, exclude_id=None):
            return []

    store = RacingStore([holder, payment])
    activator = FakeActivator()
    service = build(store, FakeChainService({"same-tx": confirmed()}), activator)

    await service.run_once()

    assert payment.status == PaymentStatus.PENDING.value
    assert activator.calls == []
    assert len(await store.list_attempts(payment.id)) == 1
    with pytest.raises(DuplicateReferenceError):
        await store.confirm(payment.id, {})


@pytest.mark.anyio
async def test_failed_status_write_records_a_single_attempt():
    payment = make_payment(tx_id="tx-a")

    class FlakyStore(FakeStore):
        failed = False

        async def update(self, payment_id, fields, admin=False):
            status = PaymentStatus(fields.get("status", PaymentStatus.VERIFYING))
            if status == PaymentStatus.FAILED and not self.failed:
                self.failed = True
                raise RuntimeError("database went away")
            return await super().update(payment_id, fields, admin)

    store = FlakyStore([payment])
    service = build(store, FakeChainService({"tx-a": mismatch()}))

    status = await service.verify_payment(payment)

    assert status == PaymentStatus.PENDING
    assert payment.status == PaymentStatus.PENDING.value
    assert len(store.attempts) == 1
    assert store.attempts[0].outcome == "mismatch"


@pytest.mark.anyio
async def test_payment_without_expiry_is_still_verified():
    payment = make_payment(tx_id="tx-a", expires_at=None)
    store = FakeStore([payment])
    service = build(store, FakeChainService({"tx-a": awaiting(1)}))

    summary = await service.run_once()

    assert summary["expired"] == 0
    assert summary["processed"] == 1
    assert payment.verification_attempts == 1
