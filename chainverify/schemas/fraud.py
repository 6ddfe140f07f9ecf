"""
Receipt analysis and fraud assessment schemas
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ValidationStatus(str, Enum):
    """Single UI-facing disposition of a receipt"""
    VALID = "valid"  # auto-approved
    UNCLEAR = "unclear"  # needs review
    INVALID = "invalid"  # low confidence


class ExtractedReceiptFields(BaseModel):
    """Fields the vision model read off the proof image"""
    model_config = ConfigDict(extra="ignore")

    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    transaction_reference: Optional[str] = None
    institution: Optional[str] = None  # bank or exchange name


class FraudIndicators(BaseModel):
    """Image forensics flags"""
    model_config = ConfigDict(extra="ignore")

    image_manipulation: bool = False
    inconsistent_fonts: bool = False
    blurred_regions: bool = False
    watermark_anomaly: bool = False
    exif_inconsistency: bool = False


class ReceiptAuthenticity(BaseModel):
    """Template and content consistency checks"""
    model_config = ConfigDict(extra="ignore")

    format_consistent: bool = True
    institution_matches_method: bool = True
    amount_consistent: bool = True


class ReceiptAnalysis(BaseModel):
    """Structured answer of the receipt extraction call"""
    model_config = ConfigDict(extra="ignore")

    extracted_fields: ExtractedReceiptFields = Field(default_factory=ExtractedReceiptFields)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    fraud_indicators: FraudIndicators = Field(default_factory=FraudIndicators)
    receipt_authenticity: ReceiptAuthenticity = Field(default_factory=ReceiptAuthenticity)
    risk_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    analysis_text: str = ""


class DeclaredPayment(BaseModel):
    """What the user claimed when submitting"""
    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_method: Optional[str] = None


class FraudAssessment(BaseModel):
    """Bounded fraud score and the disposition derived from it"""
    fraud_score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    auto_approved: bool
    needs_review: bool
    low_confidence: bool
    validation_status: ValidationStatus
    signals: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    degraded: bool = False
