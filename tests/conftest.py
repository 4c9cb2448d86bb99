"""
Shared fixtures and fake collaborators for the KYC workflow tests
"""

from datetime import date
from typing import List, Optional

import cv2
import numpy as np
import pytest

from kyc_workflow.address import AddressProofVerifier
from kyc_workflow.audit import AuditStore, InMemoryAuditStore
from kyc_workflow.authenticity import AuthenticityProvider, DocumentAuthenticityChecker
from kyc_workflow.compliance import ComplianceDataProvider, ComplianceScreeningService
from kyc_workflow.extractor import AddressReader, DocumentExtractionService, ExtractionProvider
from kyc_workflow.face_match import BiometricMatcher, FaceMatchProvider
from kyc_workflow.liveness import ChallengeLivenessProvider, LivenessDetector
from kyc_workflow.models import (
    Address, AddressDocumentReading, AMLCheckResult, ComplianceResult, DocumentAuthenticityResult,
    DocumentType, ExtractedDocumentData, FaceMatchResult, OCRResult, PEPCheckResult,
    SanctionsCheckResult, SecurityFeatureCheck, TamperingCheck, WorkflowOptions,
)
from kyc_workflow.workflow import KYCVerificationWorkflow


def make_image(width: int = 640, height: int = 400, seed: int = 0) -> bytes:
    """Encode a noisy synthetic image as JPEG bytes"""
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 255, size=(height, width, 3), dtype=np.uint8)
    cv2.rectangle(img, (40, 40), (width // 3, height - 40), (20, 20, 20), 3)
    ok, buffer = cv2.imencode(".jpg", img)
    assert ok
    return buffer.tobytes()


def blank_image(width: int = 480, height: int = 480, shade: int = 128) -> bytes:
    """A flat grey image with no face in it"""
    img = np.full((height, width, 3), shade, dtype=np.uint8)
    ok, buffer = cv2.imencode(".jpg", img)
    assert ok
    return buffer.tobytes()


def passport_data(**overrides) -> ExtractedDocumentData:
    values = dict(
        document_type=DocumentType.PASSPORT,
        first_name="Jane",
        last_name="Doe",
        full_name="Jane Doe",
        date_of_birth=date(1990, 5, 17),
        nationality="GBR",
        document_number="P12345678",
        issuing_country="GBR",
        issue_date=date(2020, 1, 10),
        expiry_date=date(2035, 1, 9),
        address=Address(street="10 Downing Street", city="London", postal_code="SW1A 2AA", country="UK"),
        field_confidence={"document_number": 97.0, "full_name": 96.0, "date_of_birth": 95.0},
    )
    values.update(overrides)
    return ExtractedDocumentData(**values)


def ocr_result(confidence: float = 95.0, success: bool = True, **data_overrides) -> OCRResult:
    return OCRResult(
        success=success,
        confidence=confidence,
        extracted_data=passport_data(**data_overrides) if success else None,
    )


def authenticity_result(is_authentic: bool = True, confidence: float = 90.0,
                        tampering: bool = False) -> DocumentAuthenticityResult:
    return DocumentAuthenticityResult(
        is_authentic=is_authentic,
        confidence=confidence,
        security_features=[
            SecurityFeatureCheck(feature="Hologram", detected=True, confidence=92.0),
            SecurityFeatureCheck(feature="Microprint", detected=True, confidence=88.0),
        ],
        tampering=TamperingCheck(detected=tampering, confidence=80.0 if tampering else 5.0),
    )


def compliance_result(aml: bool = True, sanctions: bool = True, pep: bool = False) -> ComplianceResult:
    return ComplianceResult(
        aml_check=AMLCheckResult(passed=aml, match_found=not aml, confidence=99.0),
        sanctions_check=SanctionsCheckResult(passed=sanctions, match_found=not sanctions),
        pep_check=PEPCheckResult(is_pep=pep, confidence=95.0),
    )


class FakeExtractionProvider(ExtractionProvider):
    """Returns canned OCR results per call, keyed by call order"""

    def __init__(self, results: Optional[List] = None, default: Optional[OCRResult] = None):
        self.results = list(results or [])
        self.default = default or ocr_result()
        self.calls: List[DocumentType] = []

    async def extract(self, document_type, image):
        self.calls.append(document_type)
        outcome = self.results.pop(0) if self.results else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeAuthenticityProvider(AuthenticityProvider):
    def __init__(self, result: Optional[DocumentAuthenticityResult] = None, error: Exception = None):
        self.result = result or authenticity_result()
        self.error = error
        self.calls = 0

    async def inspect(self, document_type, document_data, image):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


class FakeFaceMatchProvider(FaceMatchProvider):
    def __init__(self, match: bool = True, confidence: float = 92.0, error: Exception = None):
        self.result = FaceMatchResult(match=match, confidence=confidence, liveness_score=90.0)
        self.error = error
        self.calls = 0

    async def compare(self, document_image, selfie_image):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


class FakeAddressReader(AddressReader):
    def __init__(self, reading: Optional[AddressDocumentReading] = None):
        self.reading = reading or AddressDocumentReading(
            document_type="Utility Bill",
            address=Address(street="10 Downing Street", city="London", postal_code="SW1A 2AA", country="UK"),
            issue_date=date.today(),
            confidence=90.0,
        )

    async def read(self, image):
        return self.reading


class FakeComplianceProvider(ComplianceDataProvider):
    def __init__(self, result: Optional[ComplianceResult] = None):
        self.result = result or compliance_result()
        self.calls = 0

    async def screen(self, identity):
        self.calls += 1
        return self.result


class FailingAuditStore(InMemoryAuditStore):
    async def store(self, record):
        raise RuntimeError("audit database unavailable")


@pytest.fixture
def document_image() -> bytes:
    return make_image(seed=1)


@pytest.fixture
def selfie_image() -> bytes:
    return blank_image()


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def make_workflow(audit_store):
    """Build a workflow wired to fake collaborators; keyword arguments replace the fakes"""

    def factory(options: Optional[WorkflowOptions] = None,
                extraction: Optional[ExtractionProvider] = None,
                authenticity: Optional[AuthenticityProvider] = None,
                face: Optional[FaceMatchProvider] = None,
                address_reader: Optional[AddressReader] = None,
                compliance: Optional[ComplianceDataProvider] = None,
                store: Optional[AuditStore] = None) -> KYCVerificationWorkflow:
        return KYCVerificationWorkflow(
            options=options or WorkflowOptions(),
            extraction_service=DocumentExtractionService(extraction or FakeExtractionProvider(), timeout=1),
            authenticity_checker=DocumentAuthenticityChecker(authenticity or FakeAuthenticityProvider(), timeout=1),
            biometric_matcher=BiometricMatcher(face or FakeFaceMatchProvider(), timeout=1),
            liveness_detector=LivenessDetector(ChallengeLivenessProvider(), timeout=1),
            address_verifier=AddressProofVerifier(address_reader or FakeAddressReader(), timeout=1),
            compliance_service=ComplianceScreeningService(compliance or FakeComplianceProvider(), timeout=1),
            audit_store=store or audit_store,
        )

    return factory
