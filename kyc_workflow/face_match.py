import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import openai
from openai import AsyncOpenAI

from config import settings
from .exceptions import INFRASTRUCTURE_ERRORS, InfrastructureError
from .models import FaceMatchResult, FacialFeatures
from .quality import ImageQualityGate
from .utils import encode_image, safe_json_parse, to_bool, to_confidence

logger = logging.getLogger(__name__)

FACE_MATCH_PROMPT = """
You are an identity verification assistant.

You will be given two images:
1. The photo from a government-issued identity document
2. A selfie taken by a user

Task:
Determine whether both images appear to show the SAME PERSON, and whether the
selfie looks like a live capture rather than a photo of a photo or a screen.

Consider:
- Facial structure
- Eyes, nose, mouth
- Face shape
- Relative age
- Hairline (ignore hairstyle differences)
- Ignore lighting, image quality, or background differences

Return STRICT JSON ONLY.

Format:
{
  "same_person": true/false,
  "confidence": 0.0-1.0,
  "live_capture_confidence": 0.0-1.0,
  "risk_level": "low" | "medium" | "high",
  "reasoning_summary": "short explanation"
}
"""


class FaceMatchProvider(ABC):
    """Compares the document photo with a selfie"""

    @abstractmethod
    async def compare(self, document_image: bytes, selfie_image: bytes) -> FaceMatchResult:
        pass


class OpenAIFaceMatchProvider(FaceMatchProvider):
    """Run an LLM-based face similarity check between document photo and selfie."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.model = model or settings.FACE_MODEL

    async def compare(self, document_image: bytes, selfie_image: bytes) -> FaceMatchResult:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": FACE_MATCH_PROMPT},
                            {"type": "image_url", "image_url": {"url": encode_image(document_image)}},
                            {"type": "image_url", "image_url": {"url": encode_image(selfie_image)}}
                        ]
                    }
                ],
                max_tokens=600,
                temperature=0
            )
        except openai.APIConnectionError as e:
            raise InfrastructureError(f"OpenAI API unreachable: {e}", service="openai") from e

        parsed = safe_json_parse(response.choices[0].message.content)

        same_person = to_bool(parsed.get("same_person"))
        issues = []
        if same_person is None:
            issues.append("Face comparison was inconclusive")
        elif not same_person:
            issues.append("Possible different person")
        if parsed.get("reasoning_summary"):
            logger.debug("Face match reasoning: %s", parsed.get("reasoning_summary"))

        return FaceMatchResult(
            match=bool(same_person),
            confidence=to_confidence(parsed.get("confidence")),
            liveness_score=to_confidence(parsed.get("live_capture_confidence")),
            issues=issues,
        )


class BiometricMatcher:
    """
    Compares a selfie against the document photo and scores the capture
    """

    def __init__(self, provider: FaceMatchProvider, quality_gate: Optional[ImageQualityGate] = None,
                 timeout: Optional[float] = None):
        self.provider = provider
        self.quality_gate = quality_gate or ImageQualityGate()
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.min_confidence = settings.FACE_MIN_CONFIDENCE

    def no_match(self, reason: str) -> FaceMatchResult:
        return FaceMatchResult(match=False, confidence=0.0, issues=[reason])

    async def match(self, document_image: bytes, selfie_image: bytes) -> FaceMatchResult:
        try:
            result = await asyncio.wait_for(
                self.provider.compare(document_image, selfie_image), timeout=self.timeout
            )
        except INFRASTRUCTURE_ERRORS:
            raise
        except asyncio.TimeoutError:
            logger.warning("Face match timed out after %ss", self.timeout)
            result = self.no_match("Face match timed out")
        except Exception as e:
            logger.error("Face matching failed: %s", e)
            result = self.no_match(f"Face match could not be completed: {e}")

        issues = list(result.issues)
        try:
            features = await asyncio.to_thread(self.quality_gate.face_metrics, selfie_image)
        except Exception as e:
            logger.error("Selfie analysis failed: %s", e)
            features = FacialFeatures(face_detected=False, quality=0.0)
            issues.append("Selfie could not be analysed")
        if not features.face_detected:
            issues.append("No face detected in selfie")

        match = result.match
        if match and result.confidence < self.min_confidence:
            match = False
            issues.append("Face match confidence too low")

        return result.model_copy(update={
            "match": match,
            "facial_features": features,
            "issues": issues,
        })
