from typing import Dict, List, Optional, Tuple

from config import settings
from .models import (
    ComplianceResult, DocumentAuthenticityResult, FaceMatchResult, LivenessResult, OCRResult,
    RiskAssessment, RiskLevel, ValidationResult, VerificationResult, VerificationStatus, WorkflowStatus,
)

MANUAL_REVIEW_RECOMMENDATION = "Manual review required - automated verification failed"

STATUS_MAP = {
    VerificationStatus.APPROVED: WorkflowStatus.COMPLETED,
    VerificationStatus.REJECTED: WorkflowStatus.FAILED,
    VerificationStatus.PENDING_REVIEW: WorkflowStatus.REQUIRES_MANUAL_REVIEW,
    VerificationStatus.REQUIRES_ADDITIONAL_DOCS: WorkflowStatus.REQUIRES_RETRY,
}


class DecisionEngine:
    """
    Makes final verification decisions based on all checks
    """

    def __init__(self):
        self.review_confidence = settings.REVIEW_CONFIDENCE_THRESHOLD
        self.min_extraction_confidence = settings.MIN_EXTRACTION_CONFIDENCE

    def mask_document_number(self, number: Optional[str]) -> Optional[str]:
        """Show first 2 and last 4 characters"""
        if not number:
            return None
        if len(number) > 6:
            return f"{number[:2]}XXXX{number[-4:]}"
        return "XXXX"

    def mask_name(self, name: Optional[str]) -> Optional[str]:
        """Mask name showing only first character and last name"""
        if not name:
            return None
        parts = name.strip().split()
        if len(parts) == 1:
            return f"{parts[0][0]}XXXX"
        return f"{parts[0][0]}XXXX {parts[-1]}"

    def make_decision(self,
                      document_verification: Optional[DocumentAuthenticityResult],
                      face_match: Optional[FaceMatchResult],
                      liveness_check: Optional[LivenessResult],
                      compliance_check: Optional[ComplianceResult],
                      risk_assessment: RiskAssessment) -> Tuple[VerificationStatus, bool, List[str]]:
        """
        Derive the overall status; the most severe outcome wins.

        Rules:
        - authenticity, face match or liveness failed → REJECTED
        - compliance failed or risk high/critical → PENDING_REVIEW
        - authenticity or face-match confidence below review threshold → PENDING_REVIEW
        - all good → APPROVED
        """
        notes: List[str] = []

        if compliance_check is None:
            notes.append("Compliance screening was not performed")
        elif compliance_check.pep_check.is_pep:
            notes.append("Politically exposed person - enhanced due diligence required")

        failed = []
        if document_verification is not None and not document_verification.is_authentic:
            failed.append("document authenticity")
        if face_match is not None and not face_match.match:
            failed.append("face match")
        if liveness_check is not None and not liveness_check.is_live:
            failed.append("liveness")

        if failed:
            notes.insert(0, f"Failed primary verification checks: {', '.join(failed)}")
            return VerificationStatus.REJECTED, False, notes

        if compliance_check is not None and not compliance_check.overall_compliance:
            notes.insert(0, "Compliance check requires manual review")
            return VerificationStatus.PENDING_REVIEW, True, notes

        if risk_assessment.level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            notes.insert(0, f"Risk level: {risk_assessment.level.value}")
            return VerificationStatus.PENDING_REVIEW, True, notes

        low_confidence = (
            (document_verification is not None and document_verification.confidence < self.review_confidence)
            or (face_match is not None and face_match.confidence < self.review_confidence)
        )
        if low_confidence:
            notes.insert(0, "Low confidence scores detected")
            return VerificationStatus.PENDING_REVIEW, True, notes

        return VerificationStatus.APPROVED, False, notes

    def workflow_status(self, verification_status: VerificationStatus, retry_flagged: bool) -> WorkflowStatus:
        """A low-quality extraction only holds back a run that would otherwise complete"""
        status = STATUS_MAP[verification_status]
        if status == WorkflowStatus.COMPLETED and retry_flagged:
            return WorkflowStatus.REQUIRES_RETRY
        return status

    def recommendations(self,
                        ocr_results: Dict[str, OCRResult],
                        validation: Dict[str, ValidationResult],
                        verification_result: Optional[VerificationResult],
                        status: WorkflowStatus) -> List[str]:
        recommendations: List[str] = []

        for key, result in ocr_results.items():
            label = key.replace("_", " ")
            if result.requires_manual_review:
                recommendations.append(f"Re-upload {label} with better quality")
            if result.confidence < self.min_extraction_confidence:
                recommendations.append(f"Ensure {label} is clearly visible and well-lit")

        for key, check in validation.items():
            if "Document has expired" in check.issues:
                recommendations.append("Provide a valid, unexpired identity document")
            if any(issue.endswith("is missing") for issue in check.issues):
                recommendations.append(f"Make sure all details on {key.replace('_', ' ')} are readable")

        if verification_result:
            dv = verification_result.document_verification
            if dv is not None and not dv.is_authentic:
                recommendations.append("Upload a genuine government-issued document")

            fm = verification_result.face_match
            if fm is not None and not fm.match:
                recommendations.append("Ensure selfie clearly shows your face matching the document photo")

            lc = verification_result.liveness_check
            if lc is not None and not lc.is_live:
                recommendations.append("Complete liveness check with better lighting and stable camera")

            ap = verification_result.address_proof
            if ap is not None and not ap.verified:
                recommendations.append(
                    f"Upload a proof of address issued within the last {settings.ADDRESS_PROOF_MAX_AGE_DAYS} days"
                )

            if verification_result.risk_assessment.level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                recommendations.append("Additional documentation may be required for verification")

            cc = verification_result.compliance_check
            if cc is not None and not cc.overall_compliance:
                recommendations.append("Manual review required for compliance verification")

        if status == WorkflowStatus.REQUIRES_RETRY:
            recommendations.append("Please retry with higher quality images")
        elif status == WorkflowStatus.REQUIRES_MANUAL_REVIEW:
            recommendations.append("Your application will be reviewed by our compliance team")
        elif status == WorkflowStatus.FAILED:
            recommendations.append("Contact support for assistance with verification")
        elif status == WorkflowStatus.ABANDONED:
            recommendations.append(MANUAL_REVIEW_RECOMMENDATION)

        # Remove duplicates, keep order
        return list(dict.fromkeys(recommendations))
