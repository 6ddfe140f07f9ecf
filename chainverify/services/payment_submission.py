"""
Payment submission

Creates the pending payment record and screens its receipt. Once the
record exists submission succeeds whatever the fraud score; rejection is
decided later through the payment status.
"""
import logging
from datetime import timedelta
from typing import Mapping, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chainverify.config import Settings
from chainverify.models.crypto_payment import CryptoPayment
from chainverify.schemas.fraud import FraudAssessment
from chainverify.schemas.payment import PaymentMethodConfig, PaymentStatus
from chainverify.services.payment_methods import build_payment_methods, get_payment_method
from chainverify.services.payment_store import PaymentRecordStore
from chainverify.services.receipt_analysis import ReceiptAnalyzer
from chainverify.services.receipt_screening import ReceiptScreeningService
from chainverify.utils.timezone import utc_now_naive

logger = logging.getLogger(__name__)


class PaymentSubmissionError(Exception):
    """Submission refused before a record was created"""
    pass


class PaymentSubmissionService:

    def __init__(
        self,
        store,
        methods: Mapping[str, PaymentMethodConfig],
        screening: ReceiptScreeningService,
        expiry_hours: int = 24,
    ):
        self.store = store
        self.methods = methods
        self.screening = screening
        self.expiry_hours = expiry_hours

    async def submit(
        self,
        user_id: str,
        symbol: str,
        tx_id: str,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
        plan_id: Optional[str] = None,
        from_address: Optional[str] = None,
        proof_url: Optional[str] = None,
        proof_bytes: Optional[bytes] = None,
    ) -> Tuple[CryptoPayment, Optional[FraudAssessment]]:
        """
        Record a payment claim

        Raises:
            UnsupportedPaymentMethodError: unknown symbol
            PaymentSubmissionError: empty reference or no deposit address configured

        Returns:
            (payment, assessment); assessment is None if screening itself crashed
        """
        config = get_payment_method(self.methods, symbol)
        tx_id = (tx_id or "").strip()
        if not tx_id:
            raise PaymentSubmissionError("transaction reference is required")
        if not config.deposit_address:
            raise PaymentSubmissionError(f"deposit address for {config.symbol} is not configured")

        now = utc_now_naive()
        payment = await self.store.create(CryptoPayment(
            user_id=user_id,
            plan_id=plan_id,
            payment_method=config.symbol,
            tx_id=tx_id,
            from_address=from_address,
            to_address=config.deposit_address,
            amount=amount,
            currency=(currency or config.symbol).upper(),
            status=PaymentStatus.PENDING.value,
            confirmation_count=0,
            required_confirmations=config.required_confirmations,
            verification_attempts=0,
            proof_url=proof_url,
            expires_at=now + timedelta(hours=self.expiry_hours),
            created_at=now,
        ))
        logger.info(f"Payment {payment.id} created for user {user_id}: {config.symbol} {tx_id}")

        try:
            assessment = await self.screening.screen(payment, proof_bytes)
        except Exception as e:
            logger.error(f"Screening of payment {payment.id} crashed: {e}", exc_info=True)
            assessment = None
        return payment, assessment


def build_submission_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    methods: Optional[Mapping[str, PaymentMethodConfig]] = None,
) -> PaymentSubmissionService:
    store = PaymentRecordStore(session_factory)
    analyzer = ReceiptAnalyzer(
        api_key=settings.ai_api_key,
        base_url=settings.ai_base_url,
        model=settings.ai_receipt_model,
        timeout=settings.ai_timeout_seconds,
    )
    return PaymentSubmissionService(
        store=store,
        methods=methods or build_payment_methods(settings),
        screening=ReceiptScreeningService(store, analyzer, timeout=settings.ai_timeout_seconds),
        expiry_hours=settings.payment_expiry_hours,
    )
