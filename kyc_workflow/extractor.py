import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from config import settings, DOCUMENT_CONFIGS
from .exceptions import INFRASTRUCTURE_ERRORS, InfrastructureError, ProviderResponseError
from .models import (
    Address, AddressDocumentReading, DocumentType, ErrorSeverity, ExtractedDocumentData,
    ImageInput, OCRError, OCRResult,
)
from .utils import encode_image, load_image_bytes, parse_date, safe_json_parse, to_confidence

logger = logging.getLogger(__name__)

BASE_EXTRACTION_PROMPT = """
You are an identity document extraction system.

Extract ALL readable information from this {label}.
Even if text is blurry or partially visible, infer carefully.

IMPORTANT DATE RULES:
- Return every full date in YYYY-MM-DD format
- If a date is not fully visible, return null
- DO NOT guess day or month if they are not visible

Return STRICT JSON only.

Expected format:
{{
  "first_name": "string or null",
  "last_name": "string or null",
  "full_name": "string or null",
  "date_of_birth": "string or null",
  "gender": "M" | "F" | "X" | null,
  "nationality": "string or null",
  "document_number": "string or null",
  "issuing_country": "string or null",
  "issuing_authority": "string or null",
  "issue_date": "string or null",
  "expiry_date": "string or null",
{extra_fields}  "image_quality": "good" | "poor",
  "confidence": {{
    "<field name>": 0.0-1.0
  }},
  "overall_confidence": 0.0-1.0
}}

Rules:
- Confidence values between 0 and 1, one entry per field you returned
- If field not visible, return null
{extra_rules}"""

DOCUMENT_PROMPT_DETAILS = {
    DocumentType.PASSPORT: {
        "label": "passport photo page",
        "extra_fields": '  "mrz_data": "string or null",\n',
        "extra_rules": "- Copy both machine-readable zone lines into mrz_data, separated by a newline\n"
                       "- Prefer the MRZ when it disagrees with the visual zone\n",
    },
    DocumentType.DRIVERS_LICENSE: {
        "label": "driver's license",
        "extra_fields": '  "address": {"street": "...", "city": "...", "state": "...", '
                        '"postal_code": "...", "country": "...", "full_address": "..."} or null,\n'
                        '  "license_class": "string or null",\n'
                        '  "restrictions": ["string"],\n',
        "extra_rules": "- Check expiry dates carefully\n",
    },
    DocumentType.ID_CARD: {
        "label": "national identity card",
        "extra_fields": '  "address": {"street": "...", "city": "...", "state": "...", '
                        '"postal_code": "...", "country": "...", "full_address": "..."} or null,\n',
        "extra_rules": "- The back of the card usually carries the address\n",
    },
}

ADDRESS_DOCUMENT_PROMPT = """
You are a proof-of-address document reader.

Identify the kind of document (Utility Bill, Bank Statement, Lease Agreement,
Tax Document or Other) and extract the postal address of the account holder
and the date the document was issued.

Return STRICT JSON only.

Expected format:
{
  "document_type": "string",
  "address": {"street": "...", "city": "...", "state": "...", "postal_code": "...",
              "country": "...", "full_address": "..."} or null,
  "issue_date": "YYYY-MM-DD or null",
  "confidence": 0.0-1.0
}
"""

DATA_FIELDS = (
    "first_name", "last_name", "full_name", "gender", "nationality", "document_number",
    "issuing_country", "issuing_authority", "mrz_data", "license_class",
)
DATE_FIELDS = ("date_of_birth", "issue_date", "expiry_date")


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    # Keep only the first line to avoid trailing model commentary
    text = text.splitlines()[0].strip() if text else text
    return text or None


def _build_address(raw: Any) -> Optional[Address]:
    if isinstance(raw, str):
        raw = {"full_address": raw}
    if not isinstance(raw, dict):
        return None
    address = Address(**{k: _clean(raw.get(k)) for k in Address.model_fields})
    return address if address.as_text() else None


class ExtractionProvider(ABC):
    """Reads structured fields off a document image"""

    @abstractmethod
    async def extract(self, document_type: DocumentType, image: bytes) -> OCRResult:
        pass


class AddressReader(ABC):
    """Reads a proof-of-address document"""

    @abstractmethod
    async def read(self, image: bytes) -> AddressDocumentReading:
        pass


class OpenAIExtractionProvider(ExtractionProvider):
    """
    Extracts structured information from document images using OpenAI Vision API
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.model = model or settings.OPENAI_MODEL

    def get_extraction_prompt(self, document_type: DocumentType) -> str:
        """Generate extraction prompt based on document type"""
        details = DOCUMENT_PROMPT_DETAILS.get(DocumentType(document_type))
        if not details:
            return ""
        return BASE_EXTRACTION_PROMPT.format(**details)

    async def complete(self, prompt: str, image: bytes) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": encode_image(image)}},
                        ],
                    }
                ],
                max_tokens=800,
                temperature=0,
            )
        except openai.APIConnectionError as e:
            raise InfrastructureError(f"OpenAI API unreachable: {e}", service="openai") from e
        return response.choices[0].message.content

    def build_result(self, document_type: DocumentType, parsed: Dict[str, Any], raw_text: str) -> OCRResult:
        values: Dict[str, Any] = {field: _clean(parsed.get(field)) for field in DATA_FIELDS}
        values.update({field: parse_date(parsed.get(field)) for field in DATE_FIELDS})
        if parsed.get("mrz_data"):
            # The MRZ spans two lines
            values["mrz_data"] = str(parsed["mrz_data"]).strip()
        values["address"] = _build_address(parsed.get("address"))
        restrictions = parsed.get("restrictions") or []
        values["restrictions"] = [str(r) for r in restrictions] if isinstance(restrictions, list) else []

        raw_conf = parsed.get("confidence")
        field_confidence = {
            str(k): to_confidence(v) for k, v in raw_conf.items()
        } if isinstance(raw_conf, dict) else {}
        values["field_confidence"] = field_confidence

        data = ExtractedDocumentData(document_type=document_type, **values)

        if parsed.get("overall_confidence") is not None:
            confidence = to_confidence(parsed.get("overall_confidence"))
        elif field_confidence:
            confidence = sum(field_confidence.values()) / len(field_confidence)
        else:
            confidence = 0.0

        errors: List[OCRError] = []
        if str(parsed.get("image_quality", "")).lower() == "poor":
            errors.append(OCRError(
                code="LOW_QUALITY_IMAGE",
                message="Image quality is below optimal threshold",
                severity=ErrorSeverity.MEDIUM,
            ))
        for field, field_conf in field_confidence.items():
            if field_conf < settings.MIN_FIELD_CONFIDENCE:
                errors.append(OCRError(
                    code="LOW_CONFIDENCE_FIELD",
                    message=f"Low confidence in {field} extraction",
                    field=field,
                    severity=ErrorSeverity.LOW,
                ))

        required = DOCUMENT_CONFIGS[DocumentType(document_type).value]["required_fields"]
        readable = any(getattr(data, f, None) for f in required)
        if not readable:
            errors.append(OCRError(
                code="OCR_NO_DATA",
                message="No identity fields could be read from the document",
                severity=ErrorSeverity.HIGH,
            ))

        return OCRResult(
            success=readable,
            confidence=round(confidence, 2) if readable else 0.0,
            extracted_data=data if readable else None,
            errors=errors,
            raw_text=raw_text,
        )

    async def extract(self, document_type: DocumentType, image: bytes) -> OCRResult:
        """Extract information from document image"""
        prompt = self.get_extraction_prompt(document_type)
        if not prompt:
            raise ValueError(f"Unknown document type: {document_type}")

        text = await self.complete(prompt, image)
        parsed = safe_json_parse(text)
        return self.build_result(DocumentType(document_type), parsed, text)


class OpenAIAddressReader(AddressReader):
    """Reads proof-of-address documents with the same vision model"""

    def __init__(self, provider: Optional[OpenAIExtractionProvider] = None):
        self.provider = provider or OpenAIExtractionProvider()

    async def read(self, image: bytes) -> AddressDocumentReading:
        text = await self.provider.complete(ADDRESS_DOCUMENT_PROMPT, image)
        parsed = safe_json_parse(text)
        return AddressDocumentReading(
            document_type=_clean(parsed.get("document_type")) or "Other",
            address=_build_address(parsed.get("address")),
            issue_date=parse_date(parsed.get("issue_date")),
            confidence=to_confidence(parsed.get("confidence")),
        )


class DocumentExtractionService:
    """
    Runs an extraction provider for one document side.

    Never raises for a readable image: provider failures, unusable output and
    deadline expiry come back as ``success=False``. Only infrastructure
    failures propagate.
    """

    def __init__(self, provider: ExtractionProvider, timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.review_threshold = settings.OCR_MANUAL_REVIEW_CONFIDENCE

    def _failure(self, code: str, message: str) -> OCRResult:
        return OCRResult(
            success=False,
            confidence=0,
            extracted_data=None,
            errors=[OCRError(code=code, message=message, severity=ErrorSeverity.HIGH)],
        )

    def requires_manual_review(self, result: OCRResult) -> bool:
        low_quality = any(e.code == "LOW_QUALITY_IMAGE" for e in result.errors)
        return low_quality or result.confidence < self.review_threshold

    async def extract(self, document_type: DocumentType, image: ImageInput) -> OCRResult:
        started = time.perf_counter()
        try:
            image_bytes = await load_image_bytes(image, timeout=self.timeout)
            result = await asyncio.wait_for(
                self.provider.extract(document_type, image_bytes), timeout=self.timeout
            )
        except INFRASTRUCTURE_ERRORS:
            raise
        except asyncio.TimeoutError:
            logger.warning("Extraction of %s timed out after %ss", document_type, self.timeout)
            result = self._failure("OCR_TIMEOUT", "Document extraction timed out")
        except ProviderResponseError as e:
            logger.warning("Extraction provider returned unusable output: %s", e)
            result = self._failure("OCR_PARSE_ERROR", e.message)
        except Exception as e:
            logger.error("Extraction of %s failed: %s", document_type, e)
            result = self._failure("OCR_FAILED", "Failed to extract text from document")

        confidence = max(0.0, min(100.0, result.confidence))
        result = result.model_copy(update={
            "confidence": confidence,
            "processing_time": round((time.perf_counter() - started) * 1000, 3),
        })
        return result.model_copy(update={"requires_manual_review": self.requires_manual_review(result)})
