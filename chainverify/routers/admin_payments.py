"""
Crypto payment routes - admin
"""
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from chainverify.config import get_settings
from chainverify.schemas.payment import (
    OverrideRequest,
    PaymentResponse,
    PaymentStatus,
    VerificationAttemptResponse,
    VerificationStatsResponse,
    VerifyNowResponse,
)
from chainverify.services.payment_store import PaymentNotFoundError
from chainverify.services.payment_verification import PaymentVerificationService

router = APIRouter()


async def require_admin_token(x_admin_token: Optional[str] = Header(None)) -> None:
    """Constant-time check of the X-Admin-Token header"""
    expected = get_settings().admin_api_token
    if not x_admin_token or not expected or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
        )


def get_verification_service(request: Request) -> PaymentVerificationService:
    service = getattr(request.app.state, "verification_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Verification service not initialised",
        )
    return service


# ========== statistics ==========

@router.get("/stats", response_model=VerificationStatsResponse, dependencies=[Depends(require_admin_token)])
async def get_verification_stats(
    window_hours: int = Query(24, ge=1, le=24 * 90),
    service: PaymentVerificationService = Depends(get_verification_service),
):
    """Status breakdown and average attempts over the trailing window"""
    return await service.get_stats(window_hours)


# ========== single payment ==========

@router.post("/{payment_id}/verify", response_model=VerifyNowResponse, dependencies=[Depends(require_admin_token)])
async def verify_payment_now(
    payment_id: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    """Run one verification pass now"""
    triggered = await service.verify_now(payment_id)
    payment = await service.store.get(payment_id)
    if payment is None:
        raise PaymentNotFoundError(payment_id)
    return VerifyNowResponse(
        payment_id=payment_id,
        triggered=triggered,
        status=PaymentStatus(payment.status),
    )


@router.post("/{payment_id}/override", response_model=PaymentResponse, dependencies=[Depends(require_admin_token)])
async def override_payment(
    payment_id: str,
    data: OverrideRequest,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    """Reject a payment or force its confirmation"""
    return await service.override(payment_id, data.decision, notes=data.notes, admin_id=data.admin_id)


@router.get(
    "/{payment_id}/verifications",
    response_model=List[VerificationAttemptResponse],
    dependencies=[Depends(require_admin_token)],
)
async def list_payment_verifications(
    payment_id: str,
    service: PaymentVerificationService = Depends(get_verification_service),
):
    """Verification audit trail, oldest first"""
    if await service.store.get(payment_id) is None:
        raise PaymentNotFoundError(payment_id)
    return await service.store.list_attempts(payment_id)
