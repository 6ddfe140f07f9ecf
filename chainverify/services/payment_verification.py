"""
Payment verification scheduler

Drives pending payments through chain verification:
- an expiry sweep and an exhausted-retry sweep at the start of every tick
- a bounded batch of due payments, verified concurrently, one pass per payment
- a manual re-check entry point sharing the same per-payment routine
- admin overrides and statistics

The loop is an explicitly constructed object: nothing runs until start()
is awaited from the process bootstrap, and stop() lets the in-flight batch
finish.
"""
import asyncio
import logging
import time
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainverify.config import Settings
from chainverify.models.crypto_payment import CryptoPayment, CryptoPaymentVerification
from chainverify.schemas.fraud import ValidationStatus
from chainverify.schemas.payment import (
    AttemptOutcome,
    PaymentMethodConfig,
    PaymentStatus,
    VerificationResult,
    VerificationType,
)
from chainverify.services.chain_adapters import ChainVerificationService
from chainverify.services.payment_methods import build_payment_methods
from chainverify.services.payment_state import (
    PassDecision,
    PaymentStateError,
    decide_transition,
    is_expired,
)
from chainverify.services.payment_store import PaymentNotFoundError, PaymentRecordStore
from chainverify.services.subscription_service import SubscriptionActivator
from chainverify.utils.metrics import (
    PAYMENT_TRANSITIONS,
    VERIFICATION_ATTEMPTS,
    VERIFICATION_TICK_DURATION,
)
from chainverify.utils.timezone import hours_ago, utc_now_naive

logger = logging.getLogger(__name__)

SWEEP_LIMIT = 100


class PaymentVerificationService:
    """
    Verification scheduler and shared per-payment routine

    Usage:
        service = build_verification_service(settings, AsyncSessionLocal)
        service.start()
        ...
        await service.stop()
    """

    def __init__(
        self,
        store,
        chain_service: ChainVerificationService,
        activator: SubscriptionActivator,
        max_attempts: int = 5,
        batch_size: int = 10,
        interval_seconds: float = 120,
        not_found_grace_attempts: int = 3,
        clock: Callable[[], datetime] = utc_now_naive,
    ):
        self.store = store
        self.chain_service = chain_service
        self.activator = activator
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.not_found_grace_attempts = not_found_grace_attempts
        self.clock = clock

        self._in_flight: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # ========== loop ==========

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Run one tick now, then one every interval_seconds"""
        if self.is_running:
            logger.warning("Payment verification service already running")
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="payment-verification")
        logger.info(f"Payment verification service started (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the timer and wait for the in-flight batch"""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("Payment verification service stopped")

    async def aclose(self) -> None:
        await self.stop()
        await self.chain_service.aclose()

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in payment verification tick: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> Dict[str, Any]:
        """
        One scheduler tick

        Returns:
            counts of expired, exhausted and processed payments plus resulting statuses
        """
        start = time.perf_counter()
        now = self.clock()

        expired = await self.expire_overdue(now)
        exhausted = await self.fail_exhausted()

        batch = await self.store.read_batch(now, self.max_attempts, self.batch_size)
        if batch:
            logger.info(f"Processing {len(batch)} payments for verification")

        statuses = await asyncio.gather(
            *(self.verify_payment(payment, VerificationType.AUTOMATIC) for payment in batch)
        )
        VERIFICATION_TICK_DURATION.observe(time.perf_counter() - start)

        return {
            "expired": expired,
            "exhausted": exhausted,
            "processed": len(batch),
            "statuses": dict(Counter(s.value for s in statuses if s is not None)),
        }

    async def expire_overdue(self, now: datetime) -> int:
        """Move non-terminal payments past expires_at to `expired`"""
        count = 0
        for payment in await self.store.read_overdue(now, SWEEP_LIMIT):
            if payment.id in self._in_flight:
                continue
            try:
                await self.store.update(payment.id, {"status": PaymentStatus.EXPIRED})
            except (PaymentStateError, PaymentNotFoundError) as e:
                logger.warning(f"Could not expire payment {payment.id}: {e}")
                continue
            PAYMENT_TRANSITIONS.labels(PaymentStatus.EXPIRED.value).inc()
            logger.info(f"Payment {payment.id} expired")
            count += 1
        return count

    async def fail_exhausted(self) -> int:
        """Fail active payments stranded with a spent retry budget"""
        count = 0
        for payment in await self.store.read_exhausted(self.max_attempts, SWEEP_LIMIT):
            if payment.id in self._in_flight:
                continue
            try:
                if payment.status == PaymentStatus.PENDING.value:
                    await self.store.update(payment.id, {"status": PaymentStatus.VERIFYING})
                await self.store.update(payment.id, {"status": PaymentStatus.FAILED})
            except (PaymentStateError, PaymentNotFoundError) as e:
                logger.warning(f"Could not fail exhausted payment {payment.id}: {e}")
                continue
            PAYMENT_TRANSITIONS.labels(PaymentStatus.FAILED.value).inc()
            logger.info(f"Payment {payment.id} failed after {payment.verification_attempts} attempts")
            count += 1
        return count

    # ========== per-payment routine ==========

    async def verify_payment(
        self,
        payment: CryptoPayment,
        verification_type: VerificationType = VerificationType.AUTOMATIC,
    ) -> Optional[PaymentStatus]:
        """
        One verification pass over one payment

        Never raises: an unexpected error counts as a failed attempt for
        this payment only.

        Returns:
            the status the payment was left in, or None if the pass was skipped
        """
        if payment.id in self._in_flight:
            logger.info(f"Payment {payment.id} is already being verified; skipping")
            return None

        self._in_flight.add(payment.id)
        try:
            claimed = await self._claim(payment)
            if claimed is None or claimed.status != PaymentStatus.VERIFYING.value:
                return PaymentStatus(claimed.status) if claimed is not None else None
            recorded = False
            try:
                result, decision = await self._check(claimed)
                await self._record_attempt(
                    claimed,
                    verification_type,
                    decision.outcome.value,
                    result.confirmation_count,
                    result.raw_response,
                    decision.reason if decision.status == PaymentStatus.FAILED else result.error,
                )
                recorded = True
                VERIFICATION_ATTEMPTS.labels(claimed.payment_method, decision.outcome.value).inc()
                return await self._complete(claimed, result, decision)
            except Exception as e:
                logger.error(f"Error verifying payment {payment.id}: {e}", exc_info=True)
                return await self._fail_pass(claimed, verification_type, e, record=not recorded)
        except Exception as e:
            logger.error(f"Could not claim payment {payment.id}: {e}", exc_info=True)
            return None
        finally:
            self._in_flight.discard(payment.id)

    async def _claim(self, payment: CryptoPayment) -> Optional[CryptoPayment]:
        if payment.is_terminal:
            return None
        now = self.clock()
        if is_expired(payment.expires_at, now):
            updated = await self.store.update(payment.id, {"status": PaymentStatus.EXPIRED})
            PAYMENT_TRANSITIONS.labels(PaymentStatus.EXPIRED.value).inc()
            logger.info(f"Payment {payment.id} expired")
            return updated
        return await self.store.claim(payment.id, now)

    def _expected_amount(self, payment: CryptoPayment) -> Optional[float]:
        """Declared amount, only when it is denominated in the paid asset"""
        if payment.amount is None:
            return None
        currency = (payment.currency or payment.payment_method or "").upper()
        if currency != (payment.payment_method or "").upper():
            return None
        return float(payment.amount)

    async def _check(self, payment: CryptoPayment) -> Tuple[VerificationResult, PassDecision]:
        logger.info(f"Verifying payment {payment.id} ({payment.tx_id}), attempt {payment.verification_attempts}")

        result = await self.chain_service.verify(
            payment.payment_method,
            payment.tx_id,
            payment.to_address,
            self._expected_amount(payment),
        )
        decision = decide_transition(
            result,
            attempts=payment.verification_attempts,
            max_attempts=self.max_attempts,
            not_found_grace_attempts=self.not_found_grace_attempts,
        )
        if decision.status == PaymentStatus.CONFIRMED:
            holders = await self.store.find_confirmed_reference(payment.tx_id, exclude_id=payment.id)
            if holders:
                decision = PassDecision(
                    PaymentStatus.FAILED,
                    AttemptOutcome.MISMATCH,
                    f"duplicate reference: transaction already confirmed for payment {holders[0]}",
                )
        return result, decision

    async def _complete(
        self,
        payment: CryptoPayment,
        result: VerificationResult,
        decision: PassDecision,
    ) -> PaymentStatus:
        fields: Dict[str, Any] = {"status": decision.status}
        if result.success and result.found:
            fields["confirmation_count"] = result.confirmation_count
            for key in ("block_height", "block_hash", "network_fee"):
                value = getattr(result, key)
                if value is not None:
                    fields[key] = value

        if decision.status == PaymentStatus.CONFIRMED:
            fields["verified_at"] = self.clock()
            # losing a race on the same reference raises DuplicateReferenceError; the next pass fails it
            updated = await self.store.confirm(payment.id, fields)
        else:
            updated = await self.store.update(payment.id, fields)
        PAYMENT_TRANSITIONS.labels(decision.status.value).inc()

        if decision.status == PaymentStatus.CONFIRMED:
            logger.info(f"Payment {payment.id} confirmed successfully")
            if updated.validation_status == ValidationStatus.VALID.value:
                await self._activate(updated)
            else:
                logger.warning(
                    f"Payment {payment.id} receipt screened as {updated.validation_status}; "
                    f"subscription held for admin review"
                )
        elif decision.status == PaymentStatus.FAILED:
            logger.warning(f"Payment {payment.id} failed: {decision.reason}")
        else:
            logger.info(f"Payment {payment.id} back to pending: {decision.reason}")
        return decision.status

    async def _fail_pass(
        self,
        payment: CryptoPayment,
        verification_type: VerificationType,
        error: Exception,
        record: bool = True,
    ) -> Optional[PaymentStatus]:
        """Count a crashed pass as a transient failure; `record` is False once its attempt row exists"""
        decision = decide_transition(
            VerificationResult.transient(payment.required_confirmations, f"unexpected error: {error}"),
            attempts=payment.verification_attempts,
            max_attempts=self.max_attempts,
            not_found_grace_attempts=self.not_found_grace_attempts,
        )
        try:
            if record:
                await self._record_attempt(
                    payment, verification_type, decision.outcome.value, 0, None, f"unexpected error: {error}"
                )
                VERIFICATION_ATTEMPTS.labels(payment.payment_method, decision.outcome.value).inc()
            await self.store.update(payment.id, {"status": decision.status})
        except Exception as e:
            logger.error(f"Could not record failed pass for payment {payment.id}: {e}", exc_info=True)
            return None
        PAYMENT_TRANSITIONS.labels(decision.status.value).inc()
        return decision.status

    async def _record_attempt(
        self,
        payment: CryptoPayment,
        verification_type: VerificationType,
        outcome: str,
        confirmation_count: int,
        raw_response: Any,
        error_message: Optional[str],
    ) -> None:
        await self.store.append_attempt(CryptoPaymentVerification(
            payment_id=payment.id,
            verification_type=verification_type.value,
            outcome=outcome,
            attempt_number=payment.verification_attempts,
            confirmation_count=confirmation_count,
            explorer_response=raw_response,
            error_message=error_message,
            created_at=self.clock(),
        ))

    async def _activate(self, payment: CryptoPayment) -> None:
        if not payment.plan_id:
            return
        try:
            await self.activator.activate(payment.user_id, payment.plan_id, payment_id=payment.id)
        except Exception as e:
            logger.error(f"Error activating subscription for payment {payment.id}: {e}", exc_info=True)

    # ========== admin ==========

    async def verify_now(self, payment_id: str) -> bool:
        """
        Admin-triggered re-check through the shared routine

        Returns:
            True if a pass ran, False for unknown, terminal or busy payments
        """
        payment = await self.store.get(payment_id)
        if payment is None:
            logger.warning(f"Manual verification: payment {payment_id} not found")
            return False
        if payment.is_terminal:
            logger.info(f"Manual verification: payment {payment_id} already {payment.status}")
            return False
        status = await self.verify_payment(payment, VerificationType.MANUAL)
        return status is not None

    async def override(
        self,
        payment_id: str,
        decision: str,
        notes: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> CryptoPayment:
        """
        Admin rejection or forced confirmation

        Raises:
            PaymentNotFoundError: unknown id
            PaymentStateError: forced confirmation of a rejected payment
        """
        payment = await self.store.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)

        if decision == "reject":
            target = PaymentStatus.REJECTED
        elif decision == "confirm":
            target = PaymentStatus.CONFIRMED
        else:
            raise ValueError(f"unknown override decision: {decision}")

        fields: Dict[str, Any] = {
            "status": target,
            "admin_override": True,
            "admin_notes": notes,
            "reviewed_by": admin_id,
        }
        if target == PaymentStatus.CONFIRMED:
            fields["verified_at"] = self.clock()

        updated = await self.store.update(payment_id, fields, admin=True)
        PAYMENT_TRANSITIONS.labels(target.value).inc()
        logger.info(f"Payment {payment_id} {target.value} by admin {admin_id or '-'}")

        if target == PaymentStatus.CONFIRMED:
            await self._activate(updated)
        return updated

    async def get_stats(self, window_hours: int = 24) -> Dict[str, Any]:
        """Status breakdown and average attempts over the trailing window"""
        stats = await self.store.stats(hours_ago(window_hours, self.clock()))
        stats["window_hours"] = window_hours
        return stats


def build_verification_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    methods: Optional[Mapping[str, PaymentMethodConfig]] = None,
) -> PaymentVerificationService:
    """Wire store, adapters and activator from settings"""
    methods = methods or build_payment_methods(settings)
    return PaymentVerificationService(
        store=PaymentRecordStore(session_factory),
        chain_service=ChainVerificationService(methods, timeout=settings.verification_call_timeout_seconds),
        activator=SubscriptionActivator(session_factory, period_days=settings.subscription_period_days),
        max_attempts=settings.verification_max_attempts,
        batch_size=settings.verification_batch_size,
        interval_seconds=settings.verification_interval_seconds,
        not_found_grace_attempts=settings.not_found_grace_attempts,
    )
