"""
Receipt fraud scoring

Weighted additive model over independent signals. The score is a fold of
fixed (signal, weight) pairs clamped to [0, 1]; disposition comes from the
AI confidence band and the score.
"""
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from chainverify.schemas.fraud import (
    DeclaredPayment,
    FraudAssessment,
    ReceiptAnalysis,
    ValidationStatus,
)


class FraudSignal(str, Enum):
    IMAGE_MANIPULATION = "image_manipulation"
    INCONSISTENT_FONTS = "inconsistent_fonts"
    BLURRED_REGIONS = "blurred_regions"
    WATERMARK_ANOMALY = "watermark_anomaly"
    EXIF_INCONSISTENCY = "exif_inconsistency"
    DUPLICATE_IMAGE = "duplicate_image"
    DUPLICATE_REFERENCE = "duplicate_reference"
    FORMAT_INCONSISTENT = "format_inconsistent"
    INSTITUTION_MISMATCH = "institution_mismatch"
    RECEIPT_AMOUNT_INCONSISTENT = "receipt_amount_inconsistent"
    EXTRACTED_AMOUNT_DEVIATION = "extracted_amount_deviation"


SIGNAL_WEIGHTS: Tuple[Tuple[FraudSignal, float], ...] = (
    (FraudSignal.IMAGE_MANIPULATION, 0.30),
    (FraudSignal.INCONSISTENT_FONTS, 0.20),
    (FraudSignal.BLURRED_REGIONS, 0.20),
    (FraudSignal.WATERMARK_ANOMALY, 0.30),
    (FraudSignal.EXIF_INCONSISTENCY, 0.20),
    (FraudSignal.DUPLICATE_IMAGE, 0.40),
    (FraudSignal.DUPLICATE_REFERENCE, 0.50),
    (FraudSignal.FORMAT_INCONSISTENT, 0.10),
    (FraudSignal.INSTITUTION_MISMATCH, 0.20),
    (FraudSignal.RECEIPT_AMOUNT_INCONSISTENT, 0.30),
    (FraudSignal.EXTRACTED_AMOUNT_DEVIATION, 0.20),
)

# confidence bands
AUTO_APPROVE_CONFIDENCE = 0.85
AUTO_APPROVE_MAX_SCORE = 0.3
REVIEW_MIN_CONFIDENCE = 0.6

AMOUNT_DEVIATION_RATIO = 0.05
AMOUNT_DEVIATION_FLOOR = 0.01

MANUAL_REVIEW_REQUIRED = "manual review required"

_RECOMMENDATIONS = {
    FraudSignal.IMAGE_MANIPULATION: "Image shows signs of editing; compare against the original statement",
    FraudSignal.INCONSISTENT_FONTS: "Fonts differ across receipt fields",
    FraudSignal.BLURRED_REGIONS: "Blurred regions cover receipt details",
    FraudSignal.WATERMARK_ANOMALY: "Watermark does not match the issuer template",
    FraudSignal.EXIF_INCONSISTENCY: "Image metadata is inconsistent with a device capture",
    FraudSignal.DUPLICATE_IMAGE: "Proof image was already used by another payment",
    FraudSignal.DUPLICATE_REFERENCE: "Transaction reference was already submitted by another payment",
    FraudSignal.FORMAT_INCONSISTENT: "Receipt layout does not match known templates",
    FraudSignal.INSTITUTION_MISMATCH: "Bank or exchange on the receipt does not match the declared method",
    FraudSignal.RECEIPT_AMOUNT_INCONSISTENT: "Receipt amount is inconsistent with the declared amount",
    FraudSignal.EXTRACTED_AMOUNT_DEVIATION: "Extracted amount deviates from the expected amount",
}


def amount_deviates(extracted: float, expected: float) -> bool:
    """More than 5% or 0.01 absolute away, whichever is larger"""
    tolerance = max(abs(expected) * AMOUNT_DEVIATION_RATIO, AMOUNT_DEVIATION_FLOOR)
    return abs(extracted - expected) > tolerance


def duplicate_signals(duplicate_image_matches: Sequence[str], duplicate_reference_matches: Sequence[str]) -> List[FraudSignal]:
    signals = []
    if duplicate_image_matches:
        signals.append(FraudSignal.DUPLICATE_IMAGE)
    if duplicate_reference_matches:
        signals.append(FraudSignal.DUPLICATE_REFERENCE)
    return signals


def detect_signals(
    analysis: ReceiptAnalysis,
    duplicate_image_matches: Sequence[str],
    duplicate_reference_matches: Sequence[str],
    declared: DeclaredPayment,
) -> List[FraudSignal]:
    indicators = analysis.fraud_indicators
    authenticity = analysis.receipt_authenticity
    flags = {
        FraudSignal.IMAGE_MANIPULATION: indicators.image_manipulation,
        FraudSignal.INCONSISTENT_FONTS: indicators.inconsistent_fonts,
        FraudSignal.BLURRED_REGIONS: indicators.blurred_regions,
        FraudSignal.WATERMARK_ANOMALY: indicators.watermark_anomaly,
        FraudSignal.EXIF_INCONSISTENCY: indicators.exif_inconsistency,
        FraudSignal.FORMAT_INCONSISTENT: not authenticity.format_consistent,
        FraudSignal.INSTITUTION_MISMATCH: not authenticity.institution_matches_method,
        FraudSignal.RECEIPT_AMOUNT_INCONSISTENT: not authenticity.amount_consistent,
    }
    extracted_amount = analysis.extracted_fields.amount
    flags[FraudSignal.EXTRACTED_AMOUNT_DEVIATION] = (
        extracted_amount is not None
        and declared.amount is not None
        and amount_deviates(extracted_amount, declared.amount)
    )

    signals = [signal for signal, fired in flags.items() if fired]
    signals.extend(duplicate_signals(duplicate_image_matches, duplicate_reference_matches))
    return signals


def fold_score(signals: Iterable[FraudSignal]) -> float:
    """Sum of the weights of the distinct signals, clamped to [0, 1]"""
    fired = set(signals)
    total = sum(weight for signal, weight in SIGNAL_WEIGHTS if signal in fired)
    return round(min(max(total, 0.0), 1.0), 6)


def disposition(confidence: float, fraud_score: float) -> Tuple[bool, bool, bool, ValidationStatus]:
    """
    Returns:
        (auto_approved, needs_review, low_confidence, validation_status)
    """
    auto_approved = confidence > AUTO_APPROVE_CONFIDENCE and fraud_score < AUTO_APPROVE_MAX_SCORE
    needs_review = REVIEW_MIN_CONFIDENCE <= confidence <= AUTO_APPROVE_CONFIDENCE
    low_confidence = confidence < REVIEW_MIN_CONFIDENCE

    if auto_approved:
        status = ValidationStatus.VALID
    elif low_confidence:
        status = ValidationStatus.INVALID
    else:
        status = ValidationStatus.UNCLEAR
    return auto_approved, needs_review, low_confidence, status


def degraded_assessment(signals: Sequence[FraudSignal] = ()) -> FraudAssessment:
    """Result used when the receipt extraction call is unavailable"""
    recommendations = [MANUAL_REVIEW_REQUIRED]
    recommendations.extend(_RECOMMENDATIONS[s] for s in signals)
    return FraudAssessment(
        fraud_score=1.0,
        confidence=0.0,
        auto_approved=False,
        needs_review=False,
        low_confidence=True,
        validation_status=ValidationStatus.INVALID,
        signals=[s.value for s in signals],
        recommendations=recommendations,
        degraded=True,
    )


def score_payment(
    analysis: Optional[ReceiptAnalysis],
    duplicate_image_matches: Sequence[str],
    duplicate_reference_matches: Sequence[str],
    declared: DeclaredPayment,
) -> FraudAssessment:
    """
    Score one submitted payment

    Args:
        analysis: extraction result, None when the AI call failed
        duplicate_image_matches: other payment ids sharing the proof image hash
        duplicate_reference_matches: other payment ids sharing the transaction reference
        declared: what the user claimed

    Returns:
        FraudAssessment; never raises for a missing analysis
    """
    if analysis is None:
        return degraded_assessment(duplicate_signals(duplicate_image_matches, duplicate_reference_matches))

    signals = detect_signals(analysis, duplicate_image_matches, duplicate_reference_matches, declared)
    score = fold_score(signals)
    auto_approved, needs_review, low_confidence, status = disposition(analysis.confidence, score)

    recommendations = [_RECOMMENDATIONS[s] for s in signals]
    if status == ValidationStatus.VALID:
        recommendations.append("Receipt appears valid; eligible for auto-approval")
    elif status == ValidationStatus.UNCLEAR:
        recommendations.append("Queue for human review")
    else:
        recommendations.append(MANUAL_REVIEW_REQUIRED)

    return FraudAssessment(
        fraud_score=score,
        confidence=analysis.confidence,
        auto_approved=auto_approved,
        needs_review=needs_review,
        low_confidence=low_confidence,
        validation_status=status,
        signals=[s.value for s in signals],
        recommendations=recommendations,
    )
