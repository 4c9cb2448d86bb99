"""
Data model for the KYC verification workflow.

Every value produced by a workflow step is a frozen pydantic model so a result,
once handed to the next stage, cannot be changed under it.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field

from config import settings

# A document image: raw bytes, a data URL, an http(s) URL or a local path
ImageInput = Union[bytes, str]


class DocumentType(str, Enum):
    PASSPORT = "passport"
    DRIVERS_LICENSE = "drivers_license"
    ID_CARD = "id_card"


class DocumentSide(str, Enum):
    FRONT = "front"
    BACK = "back"


class StepName(str, Enum):
    """Pipeline stages, in execution order"""
    OCR_EXTRACTION = "OCR Extraction"
    DOCUMENT_VERIFICATION = "Document Verification"
    FACE_MATCHING = "Face Matching"
    LIVENESS_DETECTION = "Liveness Detection"
    ADDRESS_VERIFICATION = "Address Verification"
    COMPLIANCE_CHECKS = "Compliance Checks"
    RISK_ASSESSMENT = "Risk Assessment"
    FINAL_REVIEW = "Final Review"


WORKFLOW_STEPS: Tuple[StepName, ...] = tuple(StepName)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class WorkflowStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_RETRY = "requires_retry"
    REQUIRES_MANUAL_REVIEW = "requires_manual_review"
    ABANDONED = "abandoned"


class VerificationStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_REVIEW = "pending_review"
    REQUIRES_ADDITIONAL_DOCS = "requires_additional_docs"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SpoofingRisk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChallengeType(str, Enum):
    BLINK = "blink"
    SMILE = "smile"
    TURN_HEAD = "turn_head"
    OPEN_MOUTH = "open_mouth"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskImpact(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# ------------------------
# Extraction
# ------------------------
class Address(FrozenModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    full_address: Optional[str] = None

    def as_text(self) -> str:
        if self.full_address:
            return self.full_address
        parts = [self.street, self.city, self.state, self.postal_code, self.country]
        return ", ".join(p for p in parts if p)


class ExtractedDocumentData(FrozenModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    nationality: Optional[str] = None

    document_number: Optional[str] = None
    document_type: DocumentType
    issuing_country: Optional[str] = None
    issuing_authority: Optional[str] = None
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None

    address: Optional[Address] = None

    mrz_data: Optional[str] = None
    license_class: Optional[str] = None
    restrictions: List[str] = Field(default_factory=list)

    field_confidence: Dict[str, float] = Field(default_factory=dict)

    @property
    def display_name(self) -> Optional[str]:
        if self.full_name:
            return self.full_name
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None

    def age(self, on: Optional[date] = None) -> Optional[int]:
        """Age in whole years, or None when the date of birth is unknown"""
        if not self.date_of_birth:
            return None
        on = on or date.today()
        dob = self.date_of_birth
        return on.year - dob.year - ((on.month, on.day) < (dob.month, dob.day))


class OCRError(FrozenModel):
    code: str
    message: str
    field: Optional[str] = None
    severity: ErrorSeverity = ErrorSeverity.MEDIUM


class OCRResult(FrozenModel):
    success: bool
    confidence: float = Field(ge=0, le=100)
    processing_time: float = 0.0  # milliseconds
    extracted_data: Optional[ExtractedDocumentData] = None
    errors: List[OCRError] = Field(default_factory=list)
    raw_text: Optional[str] = None
    requires_manual_review: bool = False


class ValidationResult(FrozenModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)


# ------------------------
# Verification cluster
# ------------------------
class SecurityFeatureCheck(FrozenModel):
    feature: str
    detected: bool
    confidence: float


class TamperingCheck(FrozenModel):
    detected: bool
    confidence: float
    suspicious_areas: List[str] = Field(default_factory=list)


class DocumentAgeCheck(FrozenModel):
    is_valid: bool
    issue_date: Optional[date] = None
    expiry_date: Optional[date] = None
    remaining_validity: Optional[int] = None  # days


class DocumentAuthenticityResult(FrozenModel):
    is_authentic: bool
    confidence: float
    security_features: List[SecurityFeatureCheck] = Field(default_factory=list)
    tampering: TamperingCheck
    document_age: Optional[DocumentAgeCheck] = None
    issues: List[str] = Field(default_factory=list)


class FacialFeatures(FrozenModel):
    face_detected: bool
    quality: float
    landmarks: int = 0


class FaceMatchResult(FrozenModel):
    match: bool
    confidence: float
    liveness_score: float = 0.0
    facial_features: FacialFeatures = FacialFeatures(face_detected=False, quality=0.0)
    issues: List[str] = Field(default_factory=list)


class LivenessChallenge(FrozenModel):
    type: ChallengeType
    passed: bool
    confidence: float


class LivenessCapture(FrozenModel):
    """Frames from the capture session and/or challenge outcomes reported by the client"""
    frames: List[bytes] = Field(default_factory=list)
    challenges: List[LivenessChallenge] = Field(default_factory=list)


class LivenessResult(FrozenModel):
    is_live: bool
    confidence: float
    challenges: List[LivenessChallenge] = Field(default_factory=list)
    spoofing_risk: SpoofingRisk = SpoofingRisk.HIGH


class AddressDocument(FrozenModel):
    image: ImageInput
    type: str = "proof_of_address"
    # Address the applicant declared; falls back to the one on the identity document
    claimed_address: Optional[Address] = None


class AddressDocumentReading(FrozenModel):
    """What an address reader found on a proof-of-address document"""
    document_type: str
    address: Optional[Address] = None
    issue_date: Optional[date] = None
    confidence: float = 0.0


class AddressProofResult(FrozenModel):
    verified: bool
    confidence: float
    document_type: str
    address_match: bool
    issue_date: Optional[date] = None
    issues: List[str] = Field(default_factory=list)


# ------------------------
# Compliance & risk
# ------------------------
class IdentityAttributes(FrozenModel):
    full_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    nationality: Optional[str] = None


class AMLCheckResult(FrozenModel):
    passed: bool
    match_found: bool
    confidence: float
    matched_lists: List[str] = Field(default_factory=list)


class SanctionsCheckResult(FrozenModel):
    passed: bool
    match_found: bool
    lists: List[str] = Field(default_factory=list)
    match_details: List[Dict[str, Any]] = Field(default_factory=list)


class PEPCheckResult(FrozenModel):
    is_pep: bool
    confidence: float
    positions: List[str] = Field(default_factory=list)
    last_updated: Optional[datetime] = None


class ComplianceResult(FrozenModel):
    aml_check: AMLCheckResult
    sanctions_check: SanctionsCheckResult
    pep_check: PEPCheckResult

    @computed_field
    @property
    def overall_compliance(self) -> bool:
        # PEP status is carried into review but does not fail compliance on its own
        return self.aml_check.passed and self.sanctions_check.passed


class RiskFactor(FrozenModel):
    factor: str
    impact: RiskImpact
    weight: float
    description: str


class RiskAssessment(FrozenModel):
    score: int = Field(ge=0, le=100)
    level: RiskLevel
    factors: List[RiskFactor] = Field(default_factory=list)
    recommendation: str


class VerificationResult(FrozenModel):
    success: bool
    timestamp: datetime
    verification_id: str
    document_verification: Optional[DocumentAuthenticityResult] = None
    face_match: Optional[FaceMatchResult] = None
    liveness_check: Optional[LivenessResult] = None
    address_proof: Optional[AddressProofResult] = None
    compliance_check: Optional[ComplianceResult] = None
    risk_assessment: RiskAssessment
    overall_status: VerificationStatus
    requires_manual_review: bool
    review_notes: List[str] = Field(default_factory=list)


# ------------------------
# Workflow
# ------------------------
class WorkflowStep(FrozenModel):
    name: StepName
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None  # milliseconds
    result: Optional[Any] = None
    error: Optional[str] = None


class WorkflowError(FrozenModel):
    step: str
    code: str
    message: str
    timestamp: datetime
    recoverable: bool = True


class DocumentSubmission(FrozenModel):
    type: DocumentType
    front_image: ImageInput
    back_image: Optional[ImageInput] = None
    # Used as the canonical data when extraction is disabled
    extracted_data: Optional[ExtractedDocumentData] = None


class WorkflowOptions(FrozenModel):
    enable_ocr: bool = True
    enable_document_verification: bool = True
    enable_face_match: bool = True
    enable_liveness: bool = True
    enable_address_proof: bool = True
    enable_compliance_checks: bool = True
    max_retries: int = Field(default_factory=lambda: settings.MAX_RETRIES, ge=0)
    auto_retry_on_low_quality: bool = Field(default_factory=lambda: settings.AUTO_RETRY_ON_LOW_QUALITY)

    def is_enabled(self, step: StepName) -> bool:
        toggles = {
            StepName.OCR_EXTRACTION: self.enable_ocr,
            StepName.DOCUMENT_VERIFICATION: self.enable_document_verification,
            StepName.FACE_MATCHING: self.enable_face_match,
            StepName.LIVENESS_DETECTION: self.enable_liveness,
            StepName.ADDRESS_VERIFICATION: self.enable_address_proof,
            StepName.COMPLIANCE_CHECKS: self.enable_compliance_checks,
        }
        return toggles.get(step, True)


class KYCWorkflowResult(FrozenModel):
    success: bool
    status: WorkflowStatus
    verification_id: str
    start_time: datetime
    end_time: datetime
    duration: float  # milliseconds
    steps: List[WorkflowStep]
    ocr_results: Optional[Dict[str, OCRResult]] = None
    validation: Dict[str, ValidationResult] = Field(default_factory=dict)
    verification_result: Optional[VerificationResult] = None
    report: Optional[str] = None
    retry_count: int = 0
    retry_recommended: bool = False
    errors: List[WorkflowError] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class RetryContext(FrozenModel):
    """Bookkeeping carried from one attempt into the next"""
    retry_count: int = 0
    failed_steps: Tuple[StepName, ...] = ()
    previous_status: Optional[WorkflowStatus] = None
    previous_result: Optional[KYCWorkflowResult] = None

    @classmethod
    def from_result(cls, result: KYCWorkflowResult) -> "RetryContext":
        return cls(
            retry_count=result.retry_count,
            failed_steps=tuple(s.name for s in result.steps if s.status == StepStatus.FAILED),
            previous_status=result.status,
            previous_result=result,
        )
