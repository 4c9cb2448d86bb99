"""
End-to-end tests for the KYC verification workflow orchestrator
"""

import pytest

from kyc_workflow.address import AddressProofVerifier
from kyc_workflow.authenticity import DocumentAuthenticityChecker
from kyc_workflow.compliance import ComplianceScreeningService
from kyc_workflow.exceptions import InfrastructureError
from kyc_workflow.extractor import DocumentExtractionService
from kyc_workflow.face_match import BiometricMatcher
from kyc_workflow.liveness import ChallengeLivenessProvider, LivenessDetector
from kyc_workflow.models import (
    AddressDocument, DocumentSubmission, DocumentType, RetryContext, StepName, StepStatus,
    VerificationStatus, WorkflowOptions, WorkflowStatus,
)
from kyc_workflow.workflow import quick_verify

from conftest import (
    FailingAuditStore, FakeAddressReader, FakeAuthenticityProvider, FakeComplianceProvider,
    FakeExtractionProvider, FakeFaceMatchProvider, authenticity_result, compliance_result,
    ocr_result, passport_data,
)


def passport(image: bytes) -> DocumentSubmission:
    return DocumentSubmission(type=DocumentType.PASSPORT, front_image=image)


def step(result, name: StepName):
    return next(s for s in result.steps if s.name == name)


class TestScenarios:

    @pytest.mark.asyncio
    async def test_scenario_a_clean_passport_is_approved(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow()
        result = await workflow.execute_workflow(
            [passport(document_image)], selfie_image, address_document=AddressDocument(image=document_image),
        )

        assert result.success
        assert result.status == WorkflowStatus.COMPLETED
        assert result.verification_result.overall_status == VerificationStatus.APPROVED
        assert result.verification_result.risk_assessment.score == 0
        assert not result.verification_result.requires_manual_review
        assert result.errors == []
        assert all(s.status == StepStatus.COMPLETED for s in result.steps)
        assert result.report.startswith("# KYC Verification Report")
        assert result.verification_id.startswith("KYC-")

    @pytest.mark.asyncio
    async def test_scenario_b_sanctions_hit_goes_to_review(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(compliance=FakeComplianceProvider(compliance_result(sanctions=False)))
        result = await workflow.execute_workflow(
            [passport(document_image)], selfie_image, address_document=AddressDocument(image=document_image),
        )

        assert result.status == WorkflowStatus.REQUIRES_MANUAL_REVIEW
        assert result.verification_result.overall_status == VerificationStatus.PENDING_REVIEW
        assert result.verification_result.requires_manual_review
        assert "Manual review required for compliance verification" in result.recommendations
        assert step(result, StepName.COMPLIANCE_CHECKS).status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_scenario_c_low_ocr_confidence_requests_retry(self, make_workflow, document_image,
                                                                selfie_image):
        extraction = FakeExtractionProvider(default=ocr_result(confidence=60))
        workflow = make_workflow(extraction=extraction)
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        assert result.ocr_results["passport_front"].requires_manual_review
        assert result.status == WorkflowStatus.REQUIRES_RETRY
        assert result.retry_recommended
        assert any(e.code == "LOW_QUALITY" and e.recoverable for e in result.errors)
        assert "Overall confidence is too low" in result.validation["passport_front"].issues
        # Advisory only: the rest of the pipeline still ran
        assert result.verification_result is not None

    @pytest.mark.asyncio
    async def test_scenario_c_without_auto_retry(self, make_workflow, document_image, selfie_image):
        extraction = FakeExtractionProvider(default=ocr_result(confidence=60))
        workflow = make_workflow(options=WorkflowOptions(auto_retry_on_low_quality=False), extraction=extraction)
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        assert result.ocr_results["passport_front"].requires_manual_review
        assert result.status != WorkflowStatus.REQUIRES_RETRY
        assert not result.retry_recommended

    @pytest.mark.asyncio
    async def test_scenario_d_tampering_is_rejected(self, make_workflow, document_image, selfie_image):
        authenticity = FakeAuthenticityProvider(authenticity_result(tampering=True))
        workflow = make_workflow(authenticity=authenticity)
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        dv = result.verification_result.document_verification
        assert dv.tampering.detected
        assert not dv.is_authentic
        assert result.verification_result.overall_status == VerificationStatus.REJECTED
        assert result.status == WorkflowStatus.FAILED
        assert "Upload a genuine government-issued document" in result.recommendations

    @pytest.mark.asyncio
    async def test_face_mismatch_is_rejected(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(face=FakeFaceMatchProvider(match=False, confidence=95))
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        assert result.verification_result.overall_status == VerificationStatus.REJECTED
        assert result.status == WorkflowStatus.FAILED
        assert step(result, StepName.FACE_MATCHING).status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_compliance_hit_with_weak_document_goes_to_review(self, make_workflow, document_image,
                                                                    selfie_image):
        workflow = make_workflow(
            authenticity=FakeAuthenticityProvider(authenticity_result(confidence=65)),
            compliance=FakeComplianceProvider(compliance_result(aml=False)),
        )
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        verification = result.verification_result
        assert verification.overall_status == VerificationStatus.PENDING_REVIEW
        assert verification.requires_manual_review
        assert verification.review_notes[0] == "Compliance check requires manual review"
        assert result.status == WorkflowStatus.REQUIRES_MANUAL_REVIEW

    @pytest.mark.asyncio
    async def test_face_mismatch_outranks_compliance_hit(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(
            face=FakeFaceMatchProvider(match=False, confidence=95),
            compliance=FakeComplianceProvider(compliance_result(sanctions=False)),
        )
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        assert result.verification_result.overall_status == VerificationStatus.REJECTED
        assert not result.verification_result.requires_manual_review
        assert result.status == WorkflowStatus.FAILED


class TestExtractionStage:

    @pytest.mark.asyncio
    async def test_every_side_is_extracted(self, make_workflow, document_image, selfie_image):
        extraction = FakeExtractionProvider()
        workflow = make_workflow(extraction=extraction)
        documents = [
            DocumentSubmission(type=DocumentType.DRIVERS_LICENSE, front_image=document_image,
                               back_image=document_image),
            passport(document_image),
        ]
        result = await workflow.execute_workflow(documents, selfie_image)

        assert list(result.ocr_results) == ["drivers_license_front", "drivers_license_back", "passport_front"]
        assert len(extraction.calls) == 3

    @pytest.mark.asyncio
    async def test_first_successful_extraction_is_canonical(self, make_workflow, document_image, selfie_image):
        extraction = FakeExtractionProvider(results=[
            ocr_result(success=False, confidence=0),
            ocr_result(document_number="X9876543"),
        ])
        workflow = make_workflow(extraction=extraction)
        documents = [
            DocumentSubmission(type=DocumentType.ID_CARD, front_image=document_image),
            passport(document_image),
        ]
        result = await workflow.execute_workflow(documents, selfie_image)

        assert step(result, StepName.OCR_EXTRACTION).status == StepStatus.COMPLETED
        assert workflow.state.extracted_data.document_number == "X9876543"
        ocr_errors = [e for e in result.errors if e.code == "OCR_FAILED"]
        assert len(ocr_errors) == 1
        assert ocr_errors[0].recoverable
        assert result.verification_result is not None

    @pytest.mark.asyncio
    async def test_all_extractions_failing_aborts(self, make_workflow, document_image, selfie_image):
        authenticity = FakeAuthenticityProvider()
        workflow = make_workflow(
            extraction=FakeExtractionProvider(default=ocr_result(success=False, confidence=0)),
            authenticity=authenticity,
        )
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        assert result.status == WorkflowStatus.FAILED
        assert not result.success
        assert result.verification_result is None
        assert result.report is None
        fatal = [e for e in result.errors if not e.recoverable]
        assert [e.code for e in fatal] == ["OCR_FAILED_ALL"]
        assert authenticity.calls == 0
        assert step(result, StepName.RISK_ASSESSMENT).status == StepStatus.PENDING
        assert "Contact support for assistance with verification" in result.recommendations

    @pytest.mark.asyncio
    async def test_ocr_disabled_uses_supplied_data(self, make_workflow, document_image, selfie_image):
        extraction = FakeExtractionProvider()
        workflow = make_workflow(options=WorkflowOptions(enable_ocr=False), extraction=extraction)
        document = DocumentSubmission(type=DocumentType.PASSPORT, front_image=document_image,
                                      extracted_data=passport_data())
        result = await workflow.execute_workflow([document], selfie_image)

        assert extraction.calls == []
        assert step(result, StepName.OCR_EXTRACTION).status == StepStatus.SKIPPED
        assert result.ocr_results is None
        assert result.verification_result.overall_status == VerificationStatus.APPROVED

    @pytest.mark.asyncio
    async def test_ocr_disabled_without_data_fails(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(options=WorkflowOptions(enable_ocr=False))
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        assert result.status == WorkflowStatus.FAILED
        assert result.errors[0].code == "NO_EXTRACTED_DATA"


class TestVerificationStage:

    @pytest.mark.asyncio
    async def test_infrastructure_failure_aborts_run(self, make_workflow, document_image, selfie_image):
        face = FakeFaceMatchProvider(error=InfrastructureError("Face service unreachable"))
        workflow = make_workflow(face=face)
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        assert result.status == WorkflowStatus.FAILED
        error = next(e for e in result.errors if e.code == "INFRASTRUCTURE_ERROR")
        assert error.message == "Face service unreachable"
        assert error.step == StepName.FACE_MATCHING.value
        assert not error.recoverable
        assert step(result, StepName.FACE_MATCHING).status == StepStatus.FAILED
        assert step(result, StepName.DOCUMENT_VERIFICATION).status == StepStatus.COMPLETED
        assert step(result, StepName.RISK_ASSESSMENT).status == StepStatus.PENDING
        assert result.verification_result is None

    @pytest.mark.asyncio
    async def test_missing_address_document_fails_step(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow()
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        address_step = step(result, StepName.ADDRESS_VERIFICATION)
        assert address_step.status == StepStatus.FAILED
        assert address_step.error == "No proof-of-address document was submitted"
        assert result.verification_result.address_proof is None
        assert result.verification_result.risk_assessment.score == 10
        assert result.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unreadable_address_document_fails_only_its_check(self, make_workflow, document_image,
                                                                    selfie_image):
        workflow = make_workflow()
        result = await workflow.execute_workflow(
            [passport(document_image)], selfie_image, address_document=AddressDocument(image="/no/such/bill.jpg"),
        )

        assert step(result, StepName.ADDRESS_VERIFICATION).status == StepStatus.FAILED
        address = result.verification_result.address_proof
        assert not address.verified
        assert address.confidence == 0.0
        assert address.issues == ["Address document could not be loaded"]
        assert result.errors == []
        assert step(result, StepName.FINAL_REVIEW).status == StepStatus.COMPLETED
        assert result.verification_result.risk_assessment.score == 10
        assert result.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unreadable_selfie_fails_biometric_checks(self, make_workflow, document_image):
        face = FakeFaceMatchProvider()
        workflow = make_workflow(face=face)
        result = await workflow.execute_workflow([passport(document_image)], "/no/such/selfie.jpg")

        assert face.calls == 0
        assert result.verification_result.face_match.issues == ["Selfie could not be loaded"]
        assert not result.verification_result.liveness_check.is_live
        assert step(result, StepName.DOCUMENT_VERIFICATION).status == StepStatus.COMPLETED
        assert step(result, StepName.FACE_MATCHING).status == StepStatus.FAILED
        assert step(result, StepName.LIVENESS_DETECTION).status == StepStatus.FAILED
        assert not any(e.code in ("WORKFLOW_ERROR", "INFRASTRUCTURE_ERROR") for e in result.errors)
        assert result.verification_result.overall_status == VerificationStatus.REJECTED

    @pytest.mark.asyncio
    async def test_unreadable_document_image_fails_document_checks(self, make_workflow, selfie_image):
        workflow = make_workflow(options=WorkflowOptions(enable_ocr=False))
        document = DocumentSubmission(type=DocumentType.PASSPORT, front_image="/no/such/front.jpg",
                                      extracted_data=passport_data())
        result = await workflow.execute_workflow([document], selfie_image)

        verification = result.verification_result
        assert not verification.document_verification.is_authentic
        assert "Document image could not be loaded" in verification.document_verification.issues[0]
        assert not verification.face_match.match
        assert step(result, StepName.RISK_ASSESSMENT).status == StepStatus.COMPLETED
        assert result.errors == []
        assert verification.overall_status == VerificationStatus.REJECTED

    @pytest.mark.asyncio
    async def test_disabled_steps_are_skipped(self, make_workflow, document_image, selfie_image):
        compliance = FakeComplianceProvider()
        options = WorkflowOptions(enable_liveness=False, enable_address_proof=False,
                                  enable_compliance_checks=False)
        workflow = make_workflow(options=options, compliance=compliance)
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        skipped = {s.name for s in result.steps if s.status == StepStatus.SKIPPED}
        assert skipped == {StepName.LIVENESS_DETECTION, StepName.ADDRESS_VERIFICATION, StepName.COMPLIANCE_CHECKS}
        assert compliance.calls == 0
        assert result.verification_result.compliance_check is None
        assert "Compliance screening was not performed" in result.verification_result.review_notes
        # Liveness and address count as unverified
        assert result.verification_result.risk_assessment.score == 30
        assert workflow.get_progress() == 100


class TestRetries:

    @pytest.mark.asyncio
    async def test_retry_increments_count(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(extraction=FakeExtractionProvider(default=ocr_result(confidence=60)))
        first = await workflow.execute_workflow([passport(document_image)], selfie_image)
        second = await workflow.retry_workflow(first, [passport(document_image)], selfie_image)

        assert first.retry_count == 0
        assert second.retry_count == 1
        assert second.verification_id != first.verification_id

    @pytest.mark.asyncio
    async def test_retry_budget_exhaustion_abandons(self, make_workflow, document_image, selfie_image):
        extraction = FakeExtractionProvider(default=ocr_result(confidence=60))
        workflow = make_workflow(options=WorkflowOptions(max_retries=3), extraction=extraction)
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        counts = [result.retry_count]
        for _ in range(3):
            result = await workflow.retry_workflow(result, [passport(document_image)], selfie_image)
            counts.append(result.retry_count)
        assert counts == [0, 1, 2, 3]
        # Budget spent: no more low-quality retry requests
        assert result.status != WorkflowStatus.REQUIRES_RETRY

        calls_before = len(extraction.calls)
        abandoned = await workflow.retry_workflow(result, [passport(document_image)], selfie_image)

        assert abandoned.status == WorkflowStatus.ABANDONED
        assert not abandoned.success
        assert abandoned.retry_count == 3
        assert abandoned.errors[-1].code == "MAX_RETRIES_EXCEEDED"
        assert not abandoned.errors[-1].recoverable
        assert abandoned.recommendations == ["Manual review required - automated verification failed"]
        assert len(extraction.calls) == calls_before

        again = await workflow.retry_workflow(abandoned, [passport(document_image)], selfie_image)
        assert again.status == WorkflowStatus.ABANDONED
        assert len(extraction.calls) == calls_before

    @pytest.mark.asyncio
    async def test_retry_with_explicit_context(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(options=WorkflowOptions(max_retries=1))
        context = RetryContext(retry_count=1, failed_steps=(StepName.FACE_MATCHING,))
        result = await workflow.retry_workflow(context, [passport(document_image)], selfie_image)

        assert result.status == WorkflowStatus.ABANDONED
        assert result.retry_count == 1
        assert result.errors[-1].code == "MAX_RETRIES_EXCEEDED"


class TestProgress:

    @pytest.mark.asyncio
    async def test_progress_before_and_after_run(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow()
        assert workflow.get_progress() == 0
        assert workflow.get_estimated_time_remaining() == 8 * 3000

        await workflow.execute_workflow(
            [passport(document_image)], selfie_image, address_document=AddressDocument(image=document_image),
        )
        assert workflow.get_progress() == 100
        assert workflow.get_estimated_time_remaining() == 0

    @pytest.mark.asyncio
    async def test_progress_is_idempotent(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(face=FakeFaceMatchProvider(error=InfrastructureError("down")))
        await workflow.execute_workflow([passport(document_image)], selfie_image)

        first = workflow.get_progress()
        assert workflow.get_progress() == first
        assert workflow.get_estimated_time_remaining() == workflow.get_estimated_time_remaining()
        # Risk assessment and final review never ran
        assert workflow.get_estimated_time_remaining() == 2 * 3000

    def test_skipped_steps_are_excluded(self, make_workflow):
        workflow = make_workflow(options=WorkflowOptions(enable_liveness=False, enable_address_proof=False))
        assert workflow.get_estimated_time_remaining() == 6 * 3000


class TestAuditEmission:

    @pytest.mark.asyncio
    async def test_decision_record_is_stored(self, make_workflow, audit_store, document_image, selfie_image):
        workflow = make_workflow()
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        records = await audit_store.retrieve()
        assert len(records) == 1
        record = records[0]
        assert record.verification_id == result.verification_id
        assert record.masked_name == "JXXXX Doe"
        assert record.masked_document_number == "P1XXXX5678"
        assert record.verify_checksum()

    @pytest.mark.asyncio
    async def test_store_failure_is_recoverable(self, make_workflow, document_image, selfie_image):
        workflow = make_workflow(store=FailingAuditStore())
        result = await workflow.execute_workflow([passport(document_image)], selfie_image)

        error = result.errors[-1]
        assert error.code == "AUDIT_STORE_FAILED"
        assert error.recoverable
        assert result.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_quick_verify(document_image, selfie_image):
    result = await quick_verify(
        DocumentType.PASSPORT, document_image, None, selfie_image,
        extraction_service=DocumentExtractionService(FakeExtractionProvider()),
        authenticity_checker=DocumentAuthenticityChecker(FakeAuthenticityProvider()),
        biometric_matcher=BiometricMatcher(FakeFaceMatchProvider()),
        liveness_detector=LivenessDetector(ChallengeLivenessProvider()),
        address_verifier=AddressProofVerifier(FakeAddressReader()),
        compliance_service=ComplianceScreeningService(FakeComplianceProvider()),
    )
    assert result.verification_result.overall_status == VerificationStatus.APPROVED
    assert list(result.ocr_results) == ["passport_front"]
