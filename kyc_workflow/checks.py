from datetime import date
from typing import Iterable, List, Optional

from config import settings, DOCUMENT_CONFIGS
from .models import DocumentSide, DocumentType, OCRResult, ValidationResult


class ExtractionValidator:
    """
    Gates extracted document data before any verification step consumes it
    """

    def __init__(self):
        self.min_confidence = settings.MIN_EXTRACTION_CONFIDENCE
        self.min_field_confidence = settings.MIN_FIELD_CONFIDENCE

    def required_field_checks(self, result: OCRResult) -> List[str]:
        """Check that every field downstream steps rely on was read"""
        issues = []
        data = result.extracted_data

        if not data.document_number:
            issues.append("Document number is missing")

        if not data.first_name and not data.full_name:
            issues.append("Name information is missing")

        if not data.date_of_birth:
            issues.append("Date of birth is missing")

        if not data.expiry_date:
            issues.append("Expiry date is missing")

        return issues

    def expiry_checks(self, result: OCRResult, today: Optional[date] = None) -> List[str]:
        """Check if the document is expired"""
        expiry = result.extracted_data.expiry_date
        today = today or date.today()
        if expiry and expiry < today:
            return ["Document has expired"]
        return []

    def confidence_checks(self, result: OCRResult) -> List[str]:
        """Check overall and per-field extraction confidence"""
        issues = []

        if result.confidence < self.min_confidence:
            issues.append("Overall confidence is too low")

        low_fields = [
            field for field, confidence in result.extracted_data.field_confidence.items()
            if confidence < self.min_field_confidence
        ]
        if low_fields:
            issues.append(f"Low confidence in fields: {', '.join(low_fields)}")

        return issues

    def validate(self, result: OCRResult, today: Optional[date] = None) -> ValidationResult:
        if not result.success or not result.extracted_data:
            return ValidationResult(is_valid=False, issues=["OCR extraction failed"])

        issues = (
            self.required_field_checks(result)
            + self.expiry_checks(result, today)
            + self.confidence_checks(result)
        )
        return ValidationResult(is_valid=not issues, issues=issues)


def requires_back(document_type: DocumentType) -> bool:
    return DOCUMENT_CONFIGS[DocumentType(document_type).value]["requires_back"]


def document_upload_progress(document_type: DocumentType, uploaded_sides: Iterable[DocumentSide]) -> int:
    """
    Upload progress (0-100) for the selected document type.

    A passport only needs its photo page; the other types need both sides.
    """
    required = {DocumentSide.FRONT, DocumentSide.BACK} if requires_back(document_type) else {DocumentSide.FRONT}
    uploaded = {DocumentSide(side) for side in uploaded_sides} & required
    return round(len(uploaded) / len(required) * 100)
