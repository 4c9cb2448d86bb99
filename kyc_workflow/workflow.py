"""
KYC verification workflow orchestrator.

One attempt runs the fixed step sequence

    OCR Extraction -> Document Verification -> Face Matching -> Liveness Detection
    -> Address Verification -> Compliance Checks -> Risk Assessment -> Final Review

over an immutable ``WorkflowState``. Each stage takes the current state and
returns a new one; the orchestrator only keeps a reference to the latest
snapshot so progress can be reported while a run is in flight.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from config import settings
from .address import AddressProofVerifier
from .audit import AuditStore, DecisionRecord
from .authenticity import DocumentAuthenticityChecker, ImageForensicsProvider
from .checks import ExtractionValidator
from .compliance import ComplianceScreeningService, WatchlistComplianceProvider
from .decision import MANUAL_REVIEW_RECOMMENDATION, DecisionEngine
from .exceptions import INFRASTRUCTURE_ERRORS
from .extractor import DocumentExtractionService, OpenAIAddressReader, OpenAIExtractionProvider
from .face_match import BiometricMatcher, OpenAIFaceMatchProvider
from .liveness import ChallengeLivenessProvider, LivenessDetector
from .models import (
    WORKFLOW_STEPS, AddressDocument, AddressProofResult, ComplianceResult, DocumentAuthenticityResult,
    DocumentSubmission, DocumentType, ExtractedDocumentData, FaceMatchResult, IdentityAttributes,
    ImageInput, KYCWorkflowResult, LivenessCapture, LivenessResult, OCRResult, RetryContext,
    RiskAssessment, SpoofingRisk, StepName, StepStatus, ValidationResult, VerificationResult,
    VerificationStatus, WorkflowError, WorkflowOptions, WorkflowStatus, WorkflowStep,
)
from .report import generate_verification_report
from .risk import RiskAssessmentEngine
from .utils import elapsed_ms, load_image_bytes

logger = logging.getLogger(__name__)

WORKFLOW = "Workflow"
WORKFLOW_ERROR_CODE = "WORKFLOW_ERROR"

# Steps run together in the fan-out, and the boolean outcome that marks each one completed
CLUSTER_OUTCOMES = {
    StepName.DOCUMENT_VERIFICATION: lambda r: r.is_authentic,
    StepName.FACE_MATCHING: lambda r: r.match,
    StepName.LIVENESS_DETECTION: lambda r: r.is_live,
    StepName.ADDRESS_VERIFICATION: lambda r: r.verified,
    StepName.COMPLIANCE_CHECKS: lambda r: r.overall_compliance,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _settled(result):
    return result


def new_verification_id() -> str:
    return f"KYC-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class WorkflowState:
    """Everything one attempt has produced so far"""
    verification_id: str
    start_time: datetime
    steps: Tuple[WorkflowStep, ...]
    retry_count: int = 0
    errors: Tuple[WorkflowError, ...] = ()
    ocr_results: Dict[str, OCRResult] = field(default_factory=dict)
    validation: Dict[str, ValidationResult] = field(default_factory=dict)
    primary_document: Optional[DocumentSubmission] = None
    extracted_data: Optional[ExtractedDocumentData] = None
    retry_flagged: bool = False
    document_verification: Optional[DocumentAuthenticityResult] = None
    face_match: Optional[FaceMatchResult] = None
    liveness_check: Optional[LivenessResult] = None
    address_proof: Optional[AddressProofResult] = None
    compliance_check: Optional[ComplianceResult] = None
    risk_assessment: Optional[RiskAssessment] = None
    verification_result: Optional[VerificationResult] = None

    @property
    def aborted(self) -> bool:
        return any(not e.recoverable for e in self.errors)

    def step(self, name: StepName) -> WorkflowStep:
        return next(s for s in self.steps if s.name == name)

    def with_step(self, name: StepName, **changes: Any) -> "WorkflowState":
        steps = tuple(s.model_copy(update=changes) if s.name == name else s for s in self.steps)
        return replace(self, steps=steps)

    def with_error(self, step: str, code: str, message: str, recoverable: bool = True) -> "WorkflowState":
        error = WorkflowError(step=step, code=code, message=message, timestamp=_now(), recoverable=recoverable)
        return replace(self, errors=self.errors + (error,))

    def started(self, name: StepName, at: Optional[datetime] = None) -> "WorkflowState":
        return self.with_step(name, status=StepStatus.IN_PROGRESS, start_time=at or _now())

    def finished(self, name: StepName, ok: bool, result: Any = None, error: Optional[str] = None,
                 at: Optional[datetime] = None) -> "WorkflowState":
        end = at or _now()
        start = self.step(name).start_time or end
        return self.with_step(
            name,
            status=StepStatus.COMPLETED if ok else StepStatus.FAILED,
            end_time=end,
            duration=elapsed_ms(start, end),
            result=result,
            error=error,
        )

    def running_step(self) -> str:
        running = [s.name.value for s in self.steps if s.status == StepStatus.IN_PROGRESS]
        return running[0] if running else WORKFLOW


class KYCVerificationWorkflow:
    """
    Orchestrates one KYC verification attempt at a time.

    Collaborators that are not passed in are built from the reference
    implementations. Use one instance per applicant; the instance only keeps
    the latest state snapshot for progress reporting.
    """

    def __init__(self,
                 options: Optional[WorkflowOptions] = None,
                 extraction_service: Optional[DocumentExtractionService] = None,
                 authenticity_checker: Optional[DocumentAuthenticityChecker] = None,
                 biometric_matcher: Optional[BiometricMatcher] = None,
                 liveness_detector: Optional[LivenessDetector] = None,
                 address_verifier: Optional[AddressProofVerifier] = None,
                 compliance_service: Optional[ComplianceScreeningService] = None,
                 risk_engine: Optional[RiskAssessmentEngine] = None,
                 decision_engine: Optional[DecisionEngine] = None,
                 audit_store: Optional[AuditStore] = None):
        self.options = options or WorkflowOptions()
        self.validator = ExtractionValidator()
        self.extraction_service = extraction_service or DocumentExtractionService(OpenAIExtractionProvider())
        self.authenticity_checker = authenticity_checker or DocumentAuthenticityChecker(ImageForensicsProvider())
        self.biometric_matcher = biometric_matcher or BiometricMatcher(OpenAIFaceMatchProvider())
        self.liveness_detector = liveness_detector or LivenessDetector(ChallengeLivenessProvider())
        self.address_verifier = address_verifier or AddressProofVerifier(OpenAIAddressReader())
        self.compliance_service = compliance_service or ComplianceScreeningService(WatchlistComplianceProvider())
        self.risk_engine = risk_engine or RiskAssessmentEngine()
        self.decision_engine = decision_engine or DecisionEngine()
        self.audit_store = audit_store
        self._state = self._initial_state(retry_count=0)

    # ------------------------
    # State
    # ------------------------
    def _initial_state(self, retry_count: int) -> WorkflowState:
        steps = tuple(
            WorkflowStep(
                name=name,
                status=StepStatus.PENDING if self.options.is_enabled(name) else StepStatus.SKIPPED,
            )
            for name in WORKFLOW_STEPS
        )
        return WorkflowState(
            verification_id=new_verification_id(),
            start_time=_now(),
            steps=steps,
            retry_count=retry_count,
        )

    def _publish(self, state: WorkflowState) -> WorkflowState:
        self._state = state
        return state

    @property
    def state(self) -> WorkflowState:
        return self._state

    def get_progress(self) -> int:
        """Percentage of non-skipped steps that have completed"""
        active = [s for s in self._state.steps if s.status != StepStatus.SKIPPED]
        if not active:
            return 100
        completed = sum(1 for s in active if s.status == StepStatus.COMPLETED)
        return round(completed / len(active) * 100)

    def get_estimated_time_remaining(self) -> int:
        """Milliseconds, assuming every pending step takes the average duration"""
        pending = sum(1 for s in self._state.steps if s.status == StepStatus.PENDING)
        return pending * settings.AVERAGE_STEP_DURATION_MS

    # ------------------------
    # Stages
    # ------------------------
    async def _extraction_stage(self, state: WorkflowState,
                                documents: List[DocumentSubmission]) -> WorkflowState:
        if not self.options.enable_ocr:
            supplied = next((d for d in documents if d.extracted_data is not None), None)
            if supplied is None:
                return state.with_error(
                    StepName.OCR_EXTRACTION.value, "NO_EXTRACTED_DATA",
                    "Extraction is disabled and no document carries extracted data",
                    recoverable=False,
                )
            return replace(state, primary_document=supplied, extracted_data=supplied.extracted_data)

        state = self._publish(state.started(StepName.OCR_EXTRACTION))

        jobs: List[Tuple[str, DocumentSubmission, ImageInput]] = []
        for doc in documents:
            jobs.append((f"{doc.type.value}_front", doc, doc.front_image))
            if doc.back_image is not None:
                jobs.append((f"{doc.type.value}_back", doc, doc.back_image))

        outcomes = await asyncio.gather(
            *(self.extraction_service.extract(doc.type, image) for _, doc, image in jobs),
            return_exceptions=True,
        )

        failure = next((o for o in outcomes if isinstance(o, BaseException)), None)
        if failure is not None:
            return self._stage_exception(state, StepName.OCR_EXTRACTION, failure)

        ocr_results: Dict[str, OCRResult] = {}
        validation: Dict[str, ValidationResult] = {}
        primary: Optional[DocumentSubmission] = None
        extracted: Optional[ExtractedDocumentData] = None
        # Fronts are preferred as the canonical source, in submission order
        ordered = sorted(zip(jobs, outcomes), key=lambda item: not item[0][0].endswith("_front"))

        for (key, doc, _), result in ordered:
            ocr_results[key] = result
            validation[key] = self.validator.validate(result)

            if not result.success:
                state = state.with_error(
                    StepName.OCR_EXTRACTION.value, "OCR_FAILED", f"Failed to extract data from {key}",
                )
            elif extracted is None and result.extracted_data is not None:
                primary, extracted = doc, result.extracted_data

            if (result.requires_manual_review and self.options.auto_retry_on_low_quality
                    and state.retry_count < self.options.max_retries):
                state = replace(state, retry_flagged=True).with_error(
                    StepName.OCR_EXTRACTION.value, "LOW_QUALITY", "OCR quality too low, retry recommended",
                )

        # Keep the caller's document order in the results map
        ocr_results = {key: ocr_results[key] for key, _, _ in jobs}
        validation = {key: validation[key] for key, _, _ in jobs}
        state = replace(state, ocr_results=ocr_results, validation=validation,
                        primary_document=primary, extracted_data=extracted)

        summary = {"extracted_count": len(ocr_results), "success": extracted is not None}
        if extracted is None:
            state = state.finished(StepName.OCR_EXTRACTION, ok=False, result=summary,
                                   error="OCR extraction failed for all documents")
            return state.with_error(
                StepName.OCR_EXTRACTION.value, "OCR_FAILED_ALL",
                "OCR extraction failed for all documents", recoverable=False,
            )
        return state.finished(StepName.OCR_EXTRACTION, ok=True, result=summary)

    def _stage_exception(self, state: WorkflowState, step: StepName, exc: BaseException) -> WorkflowState:
        code = "INFRASTRUCTURE_ERROR" if isinstance(exc, INFRASTRUCTURE_ERRORS) else WORKFLOW_ERROR_CODE
        logger.error("%s failed with %s: %s", step.value, type(exc).__name__, exc)
        state = state.finished(step, ok=False, error=str(exc))
        return state.with_error(step.value, code, str(exc), recoverable=False)

    async def _timed(self, coro):
        result = await coro
        return result, _now()

    async def _resolve_image(self, image: ImageInput, label: str) -> Tuple[Optional[bytes], Optional[str]]:
        """Load a check's image; an unusable payload comes back as an issue"""
        try:
            return await load_image_bytes(image, timeout=settings.EXTERNAL_CALL_TIMEOUT_SECONDS), None
        except INFRASTRUCTURE_ERRORS:
            raise
        except (ValueError, OSError) as e:
            logger.warning("%s could not be loaded: %s", label, e)
            return None, f"{label} could not be loaded"

    async def _check_address(self, address_document: AddressDocument,
                             extracted: ExtractedDocumentData) -> AddressProofResult:
        image, issue = await self._resolve_image(address_document.image, "Address document")
        if issue:
            return AddressProofResult(verified=False, confidence=0.0, document_type="Unknown",
                                      address_match=False, issues=[issue])
        claimed = address_document.claimed_address or extracted.address
        return await self.address_verifier.verify(image, claimed)

    async def _verification_stage(self, state: WorkflowState, selfie_image: ImageInput,
                                  address_document: Optional[AddressDocument],
                                  liveness_capture: Optional[LivenessCapture]) -> WorkflowState:
        """Verification cluster and compliance screening, joined once"""
        data = state.extracted_data
        (document_image, document_issue), (selfie, selfie_issue) = await asyncio.gather(
            self._resolve_image(state.primary_document.front_image, "Document image"),
            self._resolve_image(selfie_image, "Selfie"),
        )

        calls = {}
        if self.options.enable_document_verification:
            if document_issue:
                calls[StepName.DOCUMENT_VERIFICATION] = _settled(
                    self.authenticity_checker.unverified(document_issue))
            else:
                calls[StepName.DOCUMENT_VERIFICATION] = self.authenticity_checker.check(
                    state.primary_document.type, data, document_image)
        if self.options.enable_face_match:
            issue = document_issue or selfie_issue
            if issue:
                calls[StepName.FACE_MATCHING] = _settled(self.biometric_matcher.no_match(issue))
            else:
                calls[StepName.FACE_MATCHING] = self.biometric_matcher.match(document_image, selfie)
        if self.options.enable_liveness:
            if selfie_issue:
                calls[StepName.LIVENESS_DETECTION] = _settled(
                    LivenessResult(is_live=False, confidence=0.0, spoofing_risk=SpoofingRisk.HIGH))
            else:
                calls[StepName.LIVENESS_DETECTION] = self.liveness_detector.detect(liveness_capture, selfie)
        if self.options.enable_address_proof and address_document is not None:
            calls[StepName.ADDRESS_VERIFICATION] = self._check_address(address_document, data)
        if self.options.enable_compliance_checks:
            identity = IdentityAttributes(
                full_name=data.display_name,
                date_of_birth=data.date_of_birth,
                nationality=data.nationality,
            )
            calls[StepName.COMPLIANCE_CHECKS] = self.compliance_service.screen(identity)

        started_at = _now()
        for name in calls:
            state = state.started(name, at=started_at)
        if self.options.enable_address_proof and address_document is None:
            state = state.started(StepName.ADDRESS_VERIFICATION, at=started_at).finished(
                StepName.ADDRESS_VERIFICATION, ok=False, error="No proof-of-address document was submitted",
            )
        state = self._publish(state)

        outcomes = await asyncio.gather(*(self._timed(c) for c in calls.values()), return_exceptions=True)

        results = {}
        for name, outcome in zip(calls, outcomes):
            if isinstance(outcome, BaseException):
                state = self._stage_exception(state, name, outcome)
                continue
            result, finished_at = outcome
            results[name] = result
            state = state.finished(name, ok=CLUSTER_OUTCOMES[name](result), result=result, at=finished_at)

        return replace(
            state,
            document_verification=results.get(StepName.DOCUMENT_VERIFICATION),
            face_match=results.get(StepName.FACE_MATCHING),
            liveness_check=results.get(StepName.LIVENESS_DETECTION),
            address_proof=results.get(StepName.ADDRESS_VERIFICATION),
            compliance_check=results.get(StepName.COMPLIANCE_CHECKS),
        )

    def _risk_stage(self, state: WorkflowState) -> WorkflowState:
        state = state.started(StepName.RISK_ASSESSMENT)
        risk = self.risk_engine.assess(
            age=state.extracted_data.age(),
            document_verification=state.document_verification,
            face_match=state.face_match,
            liveness_check=state.liveness_check,
            address_proof=state.address_proof,
            pep_check=state.compliance_check.pep_check if state.compliance_check else None,
        )
        state = replace(state, risk_assessment=risk)
        return state.finished(StepName.RISK_ASSESSMENT, ok=True, result=risk)

    def _final_review(self, state: WorkflowState) -> WorkflowState:
        state = state.started(StepName.FINAL_REVIEW)
        status, manual_review, notes = self.decision_engine.make_decision(
            document_verification=state.document_verification,
            face_match=state.face_match,
            liveness_check=state.liveness_check,
            compliance_check=state.compliance_check,
            risk_assessment=state.risk_assessment,
        )
        verification = VerificationResult(
            success=status != VerificationStatus.REJECTED,
            timestamp=_now(),
            verification_id=state.verification_id,
            document_verification=state.document_verification,
            face_match=state.face_match,
            liveness_check=state.liveness_check,
            address_proof=state.address_proof,
            compliance_check=state.compliance_check,
            risk_assessment=state.risk_assessment,
            overall_status=status,
            requires_manual_review=manual_review,
            review_notes=notes,
        )
        state = replace(state, verification_result=verification)
        final = self.decision_engine.workflow_status(status, state.retry_flagged)
        return state.finished(StepName.FINAL_REVIEW, ok=True, result={"final_status": final.value})

    # ------------------------
    # Result
    # ------------------------
    def _workflow_status(self, state: WorkflowState) -> WorkflowStatus:
        if state.aborted or state.verification_result is None:
            return WorkflowStatus.FAILED
        return self.decision_engine.workflow_status(
            state.verification_result.overall_status, state.retry_flagged,
        )

    def _build_result(self, state: WorkflowState) -> KYCWorkflowResult:
        status = self._workflow_status(state)
        end_time = _now()
        verification = state.verification_result
        return KYCWorkflowResult(
            success=status == WorkflowStatus.COMPLETED,
            status=status,
            verification_id=state.verification_id,
            start_time=state.start_time,
            end_time=end_time,
            duration=elapsed_ms(state.start_time, end_time),
            steps=list(state.steps),
            ocr_results=state.ocr_results or None,
            validation=state.validation,
            verification_result=verification,
            report=generate_verification_report(verification, state.validation) if verification else None,
            retry_count=state.retry_count,
            retry_recommended=state.retry_flagged,
            errors=list(state.errors),
            recommendations=self.decision_engine.recommendations(
                state.ocr_results, state.validation, verification, status,
            ),
        )

    def _decision_record(self, result: KYCWorkflowResult,
                         extracted: Optional[ExtractedDocumentData]) -> DecisionRecord:
        verification = result.verification_result
        risk = verification.risk_assessment if verification else None
        return DecisionRecord(
            verification_id=result.verification_id,
            created_at=result.end_time,
            workflow_status=result.status,
            verification_status=verification.overall_status if verification else None,
            requires_manual_review=verification.requires_manual_review if verification else False,
            risk_score=risk.score if risk else None,
            risk_level=risk.level if risk else None,
            document_type=extracted.document_type if extracted else None,
            masked_name=self.decision_engine.mask_name(extracted.display_name) if extracted else None,
            masked_document_number=(
                self.decision_engine.mask_document_number(extracted.document_number) if extracted else None
            ),
            retry_count=result.retry_count,
            error_codes=[e.code for e in result.errors],
            review_notes=verification.review_notes if verification else [],
        ).sealed()

    async def _emit(self, result: KYCWorkflowResult,
                    extracted: Optional[ExtractedDocumentData]) -> KYCWorkflowResult:
        if self.audit_store is None:
            return result
        try:
            await self.audit_store.store(self._decision_record(result, extracted))
        except Exception as e:
            logger.error("Failed to store decision record for %s: %s", result.verification_id, e)
            error = WorkflowError(step=WORKFLOW, code="AUDIT_STORE_FAILED", message=str(e),
                                  timestamp=_now(), recoverable=True)
            return result.model_copy(update={"errors": result.errors + [error]})
        return result

    # ------------------------
    # Entry points
    # ------------------------
    async def _run(self, state: WorkflowState, documents: List[DocumentSubmission], selfie_image: ImageInput,
                   address_document: Optional[AddressDocument],
                   liveness_capture: Optional[LivenessCapture]) -> KYCWorkflowResult:
        state = self._publish(state)
        logger.info("Starting KYC workflow %s (attempt %d)", state.verification_id, state.retry_count + 1)

        try:
            if not documents:
                raise ValueError("At least one identity document is required")

            state = self._publish(await self._extraction_stage(state, documents))
            if not state.aborted:
                state = self._publish(
                    await self._verification_stage(state, selfie_image, address_document, liveness_capture)
                )
            if not state.aborted:
                state = self._publish(self._risk_stage(state))
                state = self._publish(self._final_review(state))
        except Exception as e:
            code = "INFRASTRUCTURE_ERROR" if isinstance(e, INFRASTRUCTURE_ERRORS) else WORKFLOW_ERROR_CODE
            logger.exception("KYC workflow %s failed", state.verification_id)
            state = state.with_error(state.running_step(), code, str(e), recoverable=False)

        result = self._build_result(self._publish(state))
        logger.info("KYC workflow %s finished with status %s in %.0fms",
                    result.verification_id, result.status.value, result.duration)
        return await self._emit(result, state.extracted_data)

    async def execute_workflow(self, documents: List[DocumentSubmission], selfie_image: ImageInput,
                               address_document: Optional[AddressDocument] = None,
                               liveness_capture: Optional[LivenessCapture] = None) -> KYCWorkflowResult:
        """Run one full verification attempt"""
        return await self._run(self._initial_state(retry_count=0), documents, selfie_image,
                               address_document, liveness_capture)

    async def retry_workflow(self, previous: Union[KYCWorkflowResult, RetryContext],
                             documents: List[DocumentSubmission], selfie_image: ImageInput,
                             address_document: Optional[AddressDocument] = None,
                             liveness_capture: Optional[LivenessCapture] = None) -> KYCWorkflowResult:
        """
        Re-attempt verification with fresh per-attempt state.

        Only the retry count is carried forward. Once it would exceed
        ``max_retries`` the previous result comes back ``abandoned`` and no
        collaborator is called.
        """
        context = previous if isinstance(previous, RetryContext) else RetryContext.from_result(previous)
        retry_count = context.retry_count + 1

        if retry_count > self.options.max_retries or context.previous_status == WorkflowStatus.ABANDONED:
            logger.warning("Retry budget exhausted after %d retries", context.retry_count)
            return await self._abandon(context)

        if context.failed_steps:
            logger.info("Retrying failed steps: %s", ", ".join(s.value for s in context.failed_steps))

        return await self._run(self._initial_state(retry_count=retry_count), documents, selfie_image,
                               address_document, liveness_capture)

    async def _abandon(self, context: RetryContext) -> KYCWorkflowResult:
        error = WorkflowError(
            step=WORKFLOW,
            code="MAX_RETRIES_EXCEEDED",
            message=f"Maximum retry attempts ({self.options.max_retries}) exceeded",
            timestamp=_now(),
            recoverable=False,
        )
        previous = context.previous_result
        if previous is None:
            state = self._initial_state(retry_count=context.retry_count)
            previous = self._build_result(state)
        result = previous.model_copy(update={
            "success": False,
            "status": WorkflowStatus.ABANDONED,
            "retry_recommended": False,
            "errors": previous.errors + [error],
            "recommendations": [MANUAL_REVIEW_RECOMMENDATION],
        })
        return await self._emit(result, None)


async def quick_verify(document_type: DocumentType, front_image: ImageInput, back_image: Optional[ImageInput],
                       selfie_image: ImageInput, options: Optional[WorkflowOptions] = None,
                       **collaborators: Any) -> KYCWorkflowResult:
    """Single-document convenience wrapper around ``execute_workflow``"""
    workflow = KYCVerificationWorkflow(options=options, **collaborators)
    document = DocumentSubmission(type=document_type, front_image=front_image, back_image=back_image)
    return await workflow.execute_workflow([document], selfie_image)
