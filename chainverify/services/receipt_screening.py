"""
Submission-time receipt screening

Hashes the proof image, looks for reused images and transaction
references, asks the extractor for receipt fields and stores the fraud
assessment on the payment. Duplicate lookups never depend on the
extractor being available.
"""
import asyncio
import logging
from typing import Optional

from chainverify.models.crypto_payment import CryptoPayment
from chainverify.schemas.fraud import DeclaredPayment, FraudAssessment, ReceiptAnalysis
from chainverify.services.fraud_scoring import score_payment
from chainverify.services.receipt_analysis import ReceiptAnalysisError, ReceiptAnalyzer, hash_proof_image
from chainverify.utils.metrics import FRAUD_SCORE

logger = logging.getLogger(__name__)


class ReceiptScreeningService:

    def __init__(self, store, analyzer: ReceiptAnalyzer, timeout: float = 15.0):
        self.store = store
        self.analyzer = analyzer
        self.timeout = timeout

    async def _analyze(self, payment: CryptoPayment, declared: DeclaredPayment) -> Optional[ReceiptAnalysis]:
        if not payment.proof_url:
            logger.info(f"Payment {payment.id} has no proof image; scoring without analysis")
            return None
        try:
            return await asyncio.wait_for(
                self.analyzer.extract(payment.proof_url, declared),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Receipt analysis for payment {payment.id} timed out after {self.timeout}s")
        except ReceiptAnalysisError as e:
            logger.warning(f"Receipt analysis for payment {payment.id} failed: {e}")
        return None

    async def screen(self, payment: CryptoPayment, image_bytes: Optional[bytes] = None) -> FraudAssessment:
        """
        Score a freshly submitted payment and persist the result

        Args:
            payment: the pending payment
            image_bytes: raw proof image, used for the duplicate-image check

        Returns:
            FraudAssessment written to the payment
        """
        image_hash = hash_proof_image(image_bytes) if image_bytes else None
        duplicate_images = (
            await self.store.find_duplicate_image(image_hash, exclude_id=payment.id) if image_hash else []
        )
        duplicate_references = await self.store.find_duplicate_reference(payment.tx_id, exclude_id=payment.id)

        declared = DeclaredPayment(
            amount=float(payment.amount) if payment.amount is not None else None,
            currency=payment.currency,
            payment_method=payment.payment_method,
        )
        analysis = await self._analyze(payment, declared)
        assessment = score_payment(analysis, duplicate_images, duplicate_references, declared)

        if duplicate_images or duplicate_references:
            logger.warning(
                f"Payment {payment.id} reuses proof of {duplicate_images} / reference of {duplicate_references}"
            )
        FRAUD_SCORE.observe(assessment.fraud_score)

        await self.store.update(payment.id, {
            "image_hash": image_hash,
            "ai_extracted": analysis.model_dump(mode="json") if analysis else None,
            "ai_confidence": assessment.confidence,
            "fraud_score": assessment.fraud_score,
            "fraud_signals": assessment.signals,
            "recommendations": assessment.recommendations,
            "validation_status": assessment.validation_status.value,
            "auto_approved": assessment.auto_approved,
            "needs_review": assessment.needs_review,
            "low_confidence": assessment.low_confidence,
        })
        logger.info(
            f"Payment {payment.id} screened: score={assessment.fraud_score} "
            f"confidence={assessment.confidence} status={assessment.validation_status.value}"
        )
        return assessment
