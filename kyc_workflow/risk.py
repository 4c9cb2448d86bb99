from typing import List, Optional

from config import (
    RISK_WEIGHTS, RISK_LEVEL_THRESHOLDS, RISK_RECOMMENDATIONS,
    MIN_ONBOARDING_AGE, MAX_TYPICAL_AGE, DEFAULT_APPLICANT_AGE,
)
from .models import (
    AddressProofResult, DocumentAuthenticityResult, FaceMatchResult, LivenessResult, PEPCheckResult,
    RiskAssessment, RiskFactor, RiskImpact, RiskLevel,
)


class RiskAssessmentEngine:
    """
    Combines verification outcomes into a 0-100 risk score (lower is better)
    """

    def __init__(self):
        self.weights = RISK_WEIGHTS
        self.thresholds = RISK_LEVEL_THRESHOLDS

    def level_for(self, score: int) -> RiskLevel:
        if score < self.thresholds["low"]:
            return RiskLevel.LOW
        if score < self.thresholds["medium"]:
            return RiskLevel.MEDIUM
        if score < self.thresholds["high"]:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL

    def _factor(self, name: str, key: str, favourable: bool, good: str, bad: str,
                bad_impact: RiskImpact = RiskImpact.NEGATIVE) -> RiskFactor:
        return RiskFactor(
            factor=name,
            impact=RiskImpact.POSITIVE if favourable else bad_impact,
            weight=self.weights[key] / 100,
            description=good if favourable else bad,
        )

    def assess(self,
               age: Optional[int],
               document_verification: Optional[DocumentAuthenticityResult],
               face_match: Optional[FaceMatchResult],
               liveness_check: Optional[LivenessResult],
               address_proof: Optional[AddressProofResult],
               pep_check: Optional[PEPCheckResult] = None) -> RiskAssessment:
        """
        Absent checks count against the applicant exactly like failed ones.

        PEP status is listed as a factor for the reviewer but adds no points.
        """
        age = DEFAULT_APPLICANT_AGE if age is None else age

        outcomes = [
            ("Document Authenticity", "document_authenticity",
             bool(document_verification and document_verification.is_authentic),
             "Document passed authenticity checks", "Document failed authenticity checks",
             RiskImpact.NEGATIVE),
            ("Biometric Verification", "biometric",
             bool(face_match and face_match.match),
             "Face match successful", "Face match failed or not performed",
             RiskImpact.NEGATIVE),
            ("Liveness Detection", "liveness",
             bool(liveness_check and liveness_check.is_live),
             "User passed liveness check", "Liveness check failed or suspicious",
             RiskImpact.NEGATIVE),
            ("Address Verification", "address",
             bool(address_proof and address_proof.verified),
             "Address successfully verified", "Address verification pending",
             RiskImpact.NEUTRAL),
            ("Age Risk", "age",
             MIN_ONBOARDING_AGE <= age <= MAX_TYPICAL_AGE,
             "Age within normal range", "Age outside typical range",
             RiskImpact.NEGATIVE),
        ]

        factors: List[RiskFactor] = []
        score = 0
        for name, key, favourable, good, bad, bad_impact in outcomes:
            factors.append(self._factor(name, key, favourable, good, bad, bad_impact))
            if not favourable:
                score += self.weights[key]

        if pep_check is not None and pep_check.is_pep:
            factors.append(RiskFactor(
                factor="PEP Status",
                impact=RiskImpact.NEGATIVE,
                weight=0.0,
                description="Politically exposed person - enhanced due diligence required",
            ))

        level = self.level_for(score)
        return RiskAssessment(
            score=score,
            level=level,
            factors=factors,
            recommendation=RISK_RECOMMENDATIONS[level.value],
        )
