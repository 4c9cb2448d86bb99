from typing import Dict, List, Optional

from .models import ValidationResult, VerificationResult


def _yes_no(value: bool) -> str:
    return "Yes" if value else "No"


def _passed(value: bool) -> str:
    return "Passed" if value else "Failed"


def generate_verification_report(result: VerificationResult,
                                  validation: Optional[Dict[str, ValidationResult]] = None) -> str:
    """
    Render a human-readable markdown report of one verification attempt.

    Sections for checks that did not run are left out.
    """
    lines: List[str] = [
        "# KYC Verification Report",
        "## Summary",
        f"- **Verification ID**: {result.verification_id}",
        f"- **Date**: {result.timestamp.date().isoformat()}",
        f"- **Status**: {result.overall_status.value.upper()}",
        f"- **Manual Review Required**: {_yes_no(result.requires_manual_review)}",
        "",
    ]

    dv = result.document_verification
    if dv:
        detected = sum(1 for f in dv.security_features if f.detected)
        lines += [
            "## Document Verification",
            f"- **Authentic**: {_yes_no(dv.is_authentic)}",
            f"- **Confidence**: {dv.confidence:.1f}%",
            f"- **Security Features**: {detected}/{len(dv.security_features)} detected",
            f"- **Tampering**: {'Detected' if dv.tampering.detected else 'Not detected'}",
        ]
        if dv.document_age:
            lines.append(f"- **Document Valid**: {_yes_no(dv.document_age.is_valid)}")
        lines.append("")

    if result.face_match:
        fm = result.face_match
        lines += [
            "## Biometric Verification",
            f"- **Face Match**: {'Success' if fm.match else 'Failed'}",
            f"- **Confidence**: {fm.confidence:.1f}%",
            f"- **Liveness Score**: {fm.liveness_score:.1f}%",
            "",
        ]

    if result.liveness_check:
        lc = result.liveness_check
        lines += [
            "## Liveness Detection",
            f"- **Live Person**: {_yes_no(lc.is_live)}",
            f"- **Confidence**: {lc.confidence:.1f}%",
            f"- **Spoofing Risk**: {lc.spoofing_risk.value}",
            "",
        ]

    if result.address_proof:
        ap = result.address_proof
        lines += [
            "## Address Verification",
            f"- **Verified**: {_yes_no(ap.verified)}",
            f"- **Document Type**: {ap.document_type}",
            f"- **Address Match**: {_yes_no(ap.address_match)}",
            "",
        ]

    ra = result.risk_assessment
    lines += [
        "## Risk Assessment",
        f"- **Risk Score**: {ra.score}/100",
        f"- **Risk Level**: {ra.level.value.upper()}",
        f"- **Recommendation**: {ra.recommendation}",
        "",
    ]

    if result.compliance_check:
        cc = result.compliance_check
        lines += [
            "## Compliance Checks",
            f"- **AML Check**: {_passed(cc.aml_check.passed)}",
            f"- **Sanctions Check**: {_passed(cc.sanctions_check.passed)}",
            f"- **PEP Status**: {_yes_no(cc.pep_check.is_pep)}",
            "",
        ]

    issues = [
        f"{key.replace('_', ' ')}: {issue}"
        for key, check in (validation or {}).items()
        for issue in check.issues
    ]
    if issues:
        lines += ["## Extraction Issues", *[f"- {i}" for i in issues], ""]

    if result.review_notes:
        lines += ["## Review Notes", *[f"- {n}" for n in result.review_notes], ""]

    return "\n".join(lines)
