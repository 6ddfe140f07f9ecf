"""
Crypto payment models
"""
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import String, Integer, Boolean, DateTime, Float, Numeric, ForeignKey, Text, JSON, BigInteger
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chainverify.database import Base
from chainverify.schemas.payment import PaymentStatus, TERMINAL_STATUSES
from chainverify.utils.timezone import utc_now_naive


class CryptoPayment(Base):
    """Crypto payment table - one row per submitted transaction reference"""
    __tablename__ = "crypto_payments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(String(36), index=True)
    plan_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # claim
    payment_method: Mapped[str] = mapped_column(String(16))  # asset symbol: BTC, ETH, USDT...
    tx_id: Mapped[str] = mapped_column(String(128), index=True)
    from_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    to_address: Mapped[str] = mapped_column(String(128))
    amount: Mapped[Optional[float]] = mapped_column(Numeric(36, 18), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    # verification state
    status: Mapped[str] = mapped_column(
        String(16), default=PaymentStatus.PENDING.value, index=True
    )
    confirmation_count: Mapped[int] = mapped_column(Integer, default=0)
    required_confirmations: Mapped[int] = mapped_column(Integer, default=1)
    block_height: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    block_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    network_fee: Mapped[Optional[float]] = mapped_column(Numeric(36, 18), nullable=True)
    verification_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_verification_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    # fraud state
    proof_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    image_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    ai_extracted: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    ai_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fraud_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    fraud_signals: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    recommendations: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)
    validation_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    auto_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    low_confidence: Mapped[bool] = mapped_column(Boolean, default=False)

    # admin
    admin_override: Mapped[bool] = mapped_column(Boolean, default=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    verifications = relationship(
        "CryptoPaymentVerification",
        back_populates="payment",
        order_by="CryptoPaymentVerification.created_at",
    )

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.payment_status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<CryptoPayment {self.id} {self.payment_method}:{self.tx_id} {self.status}>"


class CryptoPaymentVerification(Base):
    """Append-only audit row, one per verification pass"""
    __tablename__ = "crypto_payment_verifications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    payment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("crypto_payments.id"), index=True
    )
    verification_type: Mapped[str] = mapped_column(String(16))  # automatic, manual
    outcome: Mapped[str] = mapped_column(String(32))
    attempt_number: Mapped[int] = mapped_column(Integer, default=0)
    confirmation_count: Mapped[int] = mapped_column(Integer, default=0)
    explorer_response: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    payment = relationship("CryptoPayment", back_populates="verifications")

    def __repr__(self):
        return f"<CryptoPaymentVerification {self.payment_id}#{self.attempt_number}: {self.outcome}>"
