"""
Payment state machine

pending -> verifying -> confirmed | failed | expired
verifying -> pending on a recoverable failure
any state -> rejected by an admin; confirmed can also be forced by an admin
Terminal records only accept admin override fields.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from chainverify.schemas.payment import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AttemptOutcome,
    PaymentStatus,
    VerificationResult,
)

AUTOMATIC_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.VERIFYING, PaymentStatus.EXPIRED},
    PaymentStatus.VERIFYING: {
        PaymentStatus.CONFIRMED,
        PaymentStatus.PENDING,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
    },
}

ADMIN_CONFIRMABLE = {
    PaymentStatus.PENDING,
    PaymentStatus.VERIFYING,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
}

ADMIN_OVERRIDE_FIELDS = frozenset({
    "status",
    "admin_override",
    "admin_notes",
    "reviewed_by",
    "verified_at",
})


class PaymentStateError(Exception):
    """Illegal transition or write to a terminal payment"""

    def __init__(self, message: str, error_code: str = "INVALID_STATE"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


def is_terminal(status: PaymentStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    return expires_at is not None and expires_at <= now


def can_transition(current: PaymentStatus, target: PaymentStatus, admin: bool = False) -> bool:
    if current == target:
        return not is_terminal(current) or admin
    if admin:
        if target == PaymentStatus.REJECTED:
            return True
        if target == PaymentStatus.CONFIRMED:
            return current in ADMIN_CONFIRMABLE
    return target in AUTOMATIC_TRANSITIONS.get(current, set())


def ensure_transition(current: PaymentStatus, target: PaymentStatus, admin: bool = False) -> None:
    if not can_transition(current, target, admin):
        raise PaymentStateError(
            f"transition {current.value} -> {target.value} not allowed",
            "INVALID_TRANSITION",
        )


def apply_update(payment: Any, fields: Dict[str, Any], admin: bool = False) -> Dict[str, Any]:
    """
    Apply a partial update to a payment in place

    Args:
        payment: CryptoPayment (or any object with the same attributes)
        fields: column -> new value
        admin: whether the write comes from an admin override

    Returns:
        the fields actually written

    Raises:
        PaymentStateError: illegal transition, terminal record, or a counter going backwards
    """
    current = PaymentStatus(payment.status)
    changes = dict(fields)

    if current in TERMINAL_STATUSES:
        if not admin:
            raise PaymentStateError(f"payment {payment.id} is {current.value} and read-only", "TERMINAL")
        extra = set(changes) - ADMIN_OVERRIDE_FIELDS
        if extra:
            raise PaymentStateError(
                f"payment {payment.id} is {current.value}; cannot change {sorted(extra)}", "TERMINAL"
            )

    if "status" in changes:
        target = PaymentStatus(changes["status"])
        ensure_transition(current, target, admin)
        changes["status"] = target.value

    if "verification_attempts" in changes:
        if changes["verification_attempts"] < (payment.verification_attempts or 0):
            raise PaymentStateError("verification_attempts cannot decrease", "COUNTER")

    if "confirmation_count" in changes and current in ACTIVE_STATUSES:
        changes["confirmation_count"] = max(payment.confirmation_count or 0, changes["confirmation_count"] or 0)

    for key, value in changes.items():
        setattr(payment, key, value)
    return changes


@dataclass(frozen=True)
class PassDecision:
    """Where one verification pass leaves a payment"""
    status: PaymentStatus
    outcome: AttemptOutcome
    reason: str = ""


def decide_transition(
    result: VerificationResult,
    attempts: int,
    max_attempts: int,
    not_found_grace_attempts: int,
) -> PassDecision:
    """
    Map a verification result onto the next status of a `verifying` payment

    Args:
        result: adapter output
        attempts: attempt counter after this pass was claimed
        max_attempts: retry budget
        not_found_grace_attempts: passes during which an unknown transaction is still retried

    Returns:
        PassDecision
    """
    exhausted = attempts >= max_attempts

    if not result.success:
        reason = result.error or "explorer error"
        if exhausted:
            return PassDecision(PaymentStatus.FAILED, AttemptOutcome.ERROR, f"retries exhausted: {reason}")
        return PassDecision(PaymentStatus.PENDING, AttemptOutcome.ERROR, reason)

    if not result.found:
        if exhausted or attempts > not_found_grace_attempts:
            return PassDecision(PaymentStatus.FAILED, AttemptOutcome.NOT_FOUND, "transaction never appeared on chain")
        return PassDecision(PaymentStatus.PENDING, AttemptOutcome.NOT_FOUND, "transaction not propagated yet")

    if result.is_mismatch:
        return PassDecision(PaymentStatus.FAILED, AttemptOutcome.MISMATCH, result.error or "on-chain mismatch")

    if result.confirmed:
        return PassDecision(PaymentStatus.CONFIRMED, AttemptOutcome.CONFIRMED)

    progress = f"{result.confirmation_count}/{result.required_confirmations} confirmations"
    if exhausted:
        return PassDecision(PaymentStatus.FAILED, AttemptOutcome.AWAITING_CONFIRMATIONS, f"retries exhausted at {progress}")
    return PassDecision(PaymentStatus.PENDING, AttemptOutcome.AWAITING_CONFIRMATIONS, progress)
