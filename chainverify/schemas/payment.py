"""
Crypto payment schemas
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Literal

from pydantic import BaseModel, ConfigDict, Field


class PaymentStatus(str, Enum):
    """Payment lifecycle status"""
    PENDING = "pending"  # waiting for the next verification pass
    VERIFYING = "verifying"  # claimed by a verification pass
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REJECTED = "rejected"  # admin decision
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.CONFIRMED,
    PaymentStatus.FAILED,
    PaymentStatus.REJECTED,
    PaymentStatus.EXPIRED,
})

ACTIVE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.VERIFYING})


class VerificationType(str, Enum):
    """Who triggered a verification pass"""
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class AttemptOutcome(str, Enum):
    """Outcome recorded on each verification attempt row"""
    CONFIRMED = "confirmed"
    AWAITING_CONFIRMATIONS = "awaiting_confirmations"
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"
    ERROR = "error"


class ChainFamily(str, Enum):
    """Ledger model of a supported asset"""
    UTXO = "utxo"
    ACCOUNT = "account"


class PaymentMethodConfig(BaseModel):
    """Static per-asset configuration, immutable once loaded"""
    model_config = ConfigDict(frozen=True)

    symbol: str
    name: str
    family: ChainFamily
    explorer_api_url: str
    api_key: Optional[str] = None
    contract_address: Optional[str] = None  # ERC-20 token contract
    chain_id: Optional[int] = None  # EVM chain id for multichain explorers
    decimals: int = Field(..., ge=0)
    required_confirmations: int = Field(..., ge=1)
    deposit_address: str = ""

    @property
    def is_token(self) -> bool:
        return bool(self.contract_address)


class VerificationResult(BaseModel):
    """
    Chain-agnostic outcome of one explorer lookup

    success=False means the explorer could not answer (network, rate limit,
    malformed payload, timeout). It never means the transaction is invalid.
    confirmed, found and valid are only meaningful when success=True.
    """
    success: bool
    confirmed: bool = False
    confirmation_count: int = Field(0, ge=0)
    required_confirmations: int = 0
    found: bool = True
    valid: Optional[bool] = None  # None: could not be evaluated yet
    block_height: Optional[int] = None
    block_hash: Optional[str] = None
    network_fee: Optional[float] = None
    actual_amount: Optional[float] = None
    error: Optional[str] = None
    raw_response: Optional[Any] = None

    @classmethod
    def transient(cls, required_confirmations: int, error: str, raw_response: Any = None) -> "VerificationResult":
        return cls(
            success=False,
            required_confirmations=required_confirmations,
            error=error,
            raw_response=raw_response,
        )

    @property
    def is_mismatch(self) -> bool:
        """Definitive on-chain mismatch: wrong recipient, amount or a reverted transfer"""
        return self.success and self.found and self.valid is False


# ========== Admin API ==========

class OverrideRequest(BaseModel):
    """Admin override of a payment"""
    decision: Literal["reject", "confirm"]
    notes: Optional[str] = Field(None, max_length=2000)
    admin_id: Optional[str] = Field(None, max_length=64)


class VerifyNowResponse(BaseModel):
    payment_id: str
    triggered: bool
    status: Optional[PaymentStatus] = None


class PaymentResponse(BaseModel):
    """Payment record as seen by admins"""
    id: str
    user_id: str
    plan_id: Optional[str]
    payment_method: str
    tx_id: str
    to_address: str
    amount: Optional[float]
    currency: Optional[str]
    status: PaymentStatus
    confirmation_count: int
    required_confirmations: int
    verification_attempts: int
    fraud_score: Optional[float]
    validation_status: Optional[str]
    admin_override: bool
    admin_notes: Optional[str]
    verified_at: Optional[datetime]
    expires_at: Optional[datetime]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VerificationAttemptResponse(BaseModel):
    id: str
    payment_id: str
    verification_type: VerificationType
    outcome: AttemptOutcome
    confirmation_count: int
    error_message: Optional[str]
    explorer_response: Optional[Any]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VerificationStatsResponse(BaseModel):
    """Verification statistics over a trailing window"""
    window_hours: int
    total_payments: int
    status_breakdown: Dict[str, int]
    average_attempts: float
