from pydantic_settings import BaseSettings
from typing import Dict, Any, Optional

class Settings(BaseSettings):
    # OpenAI Configuration
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4.1-mini"
    # Model used specifically for face similarity scoring
    FACE_MODEL: str = "gpt-4.1-mini"

    # Image Quality Thresholds
    MIN_IMAGE_WIDTH: int = 800
    MIN_IMAGE_HEIGHT: int = 600
    BLUR_THRESHOLD: float = 100
    MIN_BRIGHTNESS: int = 50
    MAX_BRIGHTNESS: int = 200
    MIN_CONTRAST: int = 30

    # Extraction Thresholds (0-100)
    OCR_MANUAL_REVIEW_CONFIDENCE: float = 75
    MIN_EXTRACTION_CONFIDENCE: float = 70
    MIN_FIELD_CONFIDENCE: float = 60

    # Verification Thresholds (0-100)
    # Face-match confidence below which a match is never reported
    FACE_MIN_CONFIDENCE: float = 60
    # Authenticity / face-match confidence below which a human takes a look
    REVIEW_CONFIDENCE_THRESHOLD: float = 80
    LIVENESS_MIN_CONFIDENCE: float = 70
    ADDRESS_MIN_CONFIDENCE: float = 70
    ADDRESS_PROOF_MAX_AGE_DAYS: int = 90

    # Workflow
    MAX_RETRIES: int = 3
    AUTO_RETRY_ON_LOW_QUALITY: bool = True
    # Deadline for every call to an external collaborator
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 30.0
    AVERAGE_STEP_DURATION_MS: int = 3000

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"

settings = Settings()

# Document type configurations
DOCUMENT_CONFIGS: Dict[str, Dict[str, Any]] = {
    "passport": {
        "required_fields": ["document_number", "full_name", "date_of_birth", "expiry_date"],
        "requires_back": False,
    },
    "drivers_license": {
        "required_fields": ["document_number", "full_name", "date_of_birth", "expiry_date"],
        "requires_back": True,
    },
    "id_card": {
        "required_fields": ["document_number", "full_name", "date_of_birth", "expiry_date"],
        "requires_back": True,
    },
}

# Risk scoring: points added when a factor is unfavourable (lower total is better)
RISK_WEIGHTS = {
    "document_authenticity": 30,
    "biometric": 25,
    "liveness": 20,
    "address": 10,
    "age": 10,
}

# Upper bounds (exclusive) for each level; anything above is critical
RISK_LEVEL_THRESHOLDS = {
    "low": 20,
    "medium": 50,
    "high": 75,
}

RISK_RECOMMENDATIONS = {
    "low": "Approve - Low risk profile",
    "medium": "Approve with enhanced monitoring",
    "high": "Manual review recommended",
    "critical": "Reject or require additional verification",
}

MIN_ONBOARDING_AGE = 18
MAX_TYPICAL_AGE = 80
# Used for the age factor when the date of birth could not be read
DEFAULT_APPLICANT_AGE = 30

SANCTIONS_LISTS = ["OFAC SDN", "UN Consolidated", "EU Sanctions", "UK HM Treasury"]

ADDRESS_DOCUMENT_TYPES = ["Utility Bill", "Bank Statement", "Lease Agreement", "Tax Document"]
