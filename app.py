from fastapi import Depends, FastAPI, File, UploadFile, Form, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

import asyncio
import logging
from typing import Optional, Dict, Any

from kyc_workflow.audit import InMemoryAuditStore
from kyc_workflow.exceptions import UnsupportedFileError
from kyc_workflow.file_converter import convert_to_images
from kyc_workflow.models import (
    Address, AddressDocument, DocumentSubmission, DocumentType, KYCWorkflowResult, WorkflowOptions,
)
from kyc_workflow.workflow import KYCVerificationWorkflow
from config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="KYC Verification Service",
    description="Automated KYC identity verification with AI-powered extraction",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

audit_store = InMemoryAuditStore()


def get_workflow() -> KYCVerificationWorkflow:
    """A fresh workflow per request; runs never share state"""
    return KYCVerificationWorkflow(options=WorkflowOptions(), audit_store=audit_store)


async def read_upload(upload: UploadFile, field: str) -> bytes:
    """Save + convert an upload, keeping the FIRST page/image"""
    content = await upload.read()
    images = await asyncio.to_thread(convert_to_images, upload.filename, content)
    if not images:
        raise UnsupportedFileError(f"No images produced for {field}")
    return images[0]


async def collect_inputs(document_type: str,
                         document_front: UploadFile,
                         document_back: Optional[UploadFile],
                         selfie: UploadFile,
                         address_document: Optional[UploadFile],
                         address_document_type: Optional[str],
                         claimed_address: Optional[str]):
    try:
        doc_type = DocumentType(document_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported document type: {document_type}")

    front = await read_upload(document_front, "document_front")
    back = await read_upload(document_back, "document_back") if document_back and document_back.filename else None
    selfie_image = await read_upload(selfie, "selfie")

    address = None
    if address_document and address_document.filename:
        claimed = Address(full_address=claimed_address) if claimed_address else None
        address = AddressDocument(
            image=await read_upload(address_document, "address_document"),
            type=address_document_type or "proof_of_address",
            claimed_address=claimed,
        )

    documents = [DocumentSubmission(type=doc_type, front_image=front, back_image=back)]
    return documents, selfie_image, address


def to_response(result: KYCWorkflowResult, applicant_id: Optional[str]) -> Dict[str, Any]:
    response = result.model_dump(mode="json")
    response["metadata"] = {"applicant_id": applicant_id}
    return response


# ------------------------
# KYC Verification API
# ------------------------
@app.post("/kyc/verify")
async def verify_kyc(
    document_type: str = Form(...),
    document_front: UploadFile = File(...),
    selfie: UploadFile = File(...),
    document_back: Optional[UploadFile] = File(None),
    address_document: Optional[UploadFile] = File(None),
    address_document_type: Optional[str] = Form(None),
    claimed_address: Optional[str] = Form(None),
    applicant_id: Optional[str] = Form(None),
    workflow: KYCVerificationWorkflow = Depends(get_workflow),
):
    """
    Verify an identity document (passport, driver's license or ID card) against a selfie.
    Supports JPG / PNG / HEIC / PDF uploads.
    """
    try:
        documents, selfie_image, address = await collect_inputs(
            document_type, document_front, document_back, selfie,
            address_document, address_document_type, claimed_address,
        )
        result = await workflow.execute_workflow(documents, selfie_image, address_document=address)
        return to_response(result, applicant_id)

    except HTTPException:
        raise
    except UnsupportedFileError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except Exception as e:
        logger.exception("KYC verification failed")
        raise HTTPException(
            status_code=500,
            detail=f"KYC verification failed: {str(e)}"
        )


@app.post("/kyc/retry")
async def retry_kyc(
    previous_result: str = Form(...),
    document_type: str = Form(...),
    document_front: UploadFile = File(...),
    selfie: UploadFile = File(...),
    document_back: Optional[UploadFile] = File(None),
    address_document: Optional[UploadFile] = File(None),
    address_document_type: Optional[str] = Form(None),
    claimed_address: Optional[str] = Form(None),
    applicant_id: Optional[str] = Form(None),
    workflow: KYCVerificationWorkflow = Depends(get_workflow),
):
    """
    Retry a previous verification. `previous_result` is the JSON returned by /kyc/verify or /kyc/retry.
    """
    try:
        try:
            previous = KYCWorkflowResult.model_validate_json(previous_result)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid previous_result: {e.error_count()} errors")

        documents, selfie_image, address = await collect_inputs(
            document_type, document_front, document_back, selfie,
            address_document, address_document_type, claimed_address,
        )
        result = await workflow.retry_workflow(previous, documents, selfie_image, address_document=address)
        return to_response(result, applicant_id)

    except HTTPException:
        raise
    except UnsupportedFileError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except Exception as e:
        logger.exception("KYC retry failed")
        raise HTTPException(
            status_code=500,
            detail=f"KYC retry failed: {str(e)}"
        )


# ------------------------
# Health Check
# ------------------------
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "kyc-verification"
    }


# ------------------------
# Local Dev Entry
# ------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
