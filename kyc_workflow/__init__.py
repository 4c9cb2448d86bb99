"""
KYC Verification Workflow

This package contains the complete workflow for KYC identity verification:
- Text extraction from identity documents using OpenAI Vision
- Extraction validation (completeness, expiry, confidence)
- Document authenticity, face matching, liveness and proof of address
- AML / sanctions / PEP screening and risk scoring
- Final decision, recommendations and audit records
"""

from .models import (
    DocumentSubmission,
    DocumentType,
    KYCWorkflowResult,
    RetryContext,
    WorkflowOptions,
    WorkflowStatus,
)
from .workflow import KYCVerificationWorkflow, quick_verify

__version__ = "1.0.0"

__all__ = [
    "DocumentSubmission",
    "DocumentType",
    "KYCVerificationWorkflow",
    "KYCWorkflowResult",
    "RetryContext",
    "WorkflowOptions",
    "WorkflowStatus",
    "quick_verify",
]
