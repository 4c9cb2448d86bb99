"""
Document authenticity checking.

The checker owns the invariants (document age, tampering means not
authentic, deadline handling); providers only report what they saw.
"""

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Tuple

import cv2
import numpy as np
from PIL import ExifTags, Image, UnidentifiedImageError

from config import settings
from .exceptions import INFRASTRUCTURE_ERRORS
from .models import (
    DocumentAgeCheck, DocumentAuthenticityResult, DocumentType, ExtractedDocumentData,
    SecurityFeatureCheck, TamperingCheck,
)
from .quality import ImageQualityGate

logger = logging.getLogger(__name__)

SUSPICIOUS_SOFTWARE = ["photoshop", "gimp", "paint.net", "pixlr", "snapseed", "lightroom"]
MIN_EDGE_DENSITY = 0.03
MOIRE_THRESHOLD = 2000
MIN_HISTOGRAM_STD = 50
# Width / height of ID-1 cards (1.59) and passport data pages (1.42), with margin
ASPECT_RATIO_RANGE = (1.2, 1.8)
MIN_AUTHENTIC_FEATURES = 3


class AuthenticityProvider(ABC):
    """Inspects a document image for security features and tampering"""

    @abstractmethod
    async def inspect(self, document_type: DocumentType, document_data: ExtractedDocumentData,
                      image: bytes) -> DocumentAuthenticityResult:
        pass


class ImageForensicsProvider(AuthenticityProvider):
    """
    Heuristic forensic analysis with OpenCV and Pillow.

    Reports print sharpness, microprint detail, absence of screen patterns,
    colour depth and document proportions as security-feature signals, and
    flags editing software metadata and screen re-capture as tampering.
    """

    def __init__(self, quality_gate: Optional[ImageQualityGate] = None):
        self.quality_gate = quality_gate or ImageQualityGate()

    def exif_editing_software(self, image_bytes: bytes) -> Optional[str]:
        """Return the editing software recorded in EXIF, if it is a known editor"""
        try:
            exif = Image.open(io.BytesIO(image_bytes)).getexif()
        except (UnidentifiedImageError, OSError):
            return None
        for tag_id, value in exif.items():
            tag = ExifTags.TAGS.get(tag_id, tag_id)
            if tag in ("Software", "ProcessingSoftware"):
                if any(s in str(value).lower() for s in SUSPICIOUS_SOFTWARE):
                    return str(value)
        return None

    def moire_score(self, gray: np.ndarray) -> int:
        """Count high-frequency spectral peaks; screens photographed show many"""
        f = np.fft.fftshift(np.fft.fft2(gray))
        magnitude = 20 * np.log(np.abs(f) + 1)
        threshold = magnitude.mean() + 2 * magnitude.std()
        return int(np.sum(magnitude > threshold))

    def security_features(self, img: np.ndarray) -> Tuple[List[SecurityFeatureCheck], int]:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        h, w = gray.shape[:2]

        sharpness = cv2.Laplacian(gray, cv2.CV_64F).var()
        edges = cv2.Canny(gray, 50, 150)
        edge_density = float(np.sum(edges > 0) / edges.size)
        moire = self.moire_score(gray)
        hist = cv2.calcHist([gray], [0], None, [256], [0, 256])
        hist_std = float(np.std(hist))
        aspect = w / h if h else 0.0
        low, high = ASPECT_RATIO_RANGE

        blur_threshold = self.quality_gate.blur_threshold
        features = [
            SecurityFeatureCheck(
                feature="Print Sharpness",
                detected=sharpness >= blur_threshold,
                confidence=round(min(100.0, sharpness / (2 * blur_threshold) * 100), 1),
            ),
            SecurityFeatureCheck(
                feature="Microprint Detail",
                detected=edge_density >= MIN_EDGE_DENSITY,
                confidence=round(min(100.0, edge_density / (2 * MIN_EDGE_DENSITY) * 100), 1),
            ),
            SecurityFeatureCheck(
                feature="Screen Pattern Absence",
                detected=moire <= MOIRE_THRESHOLD,
                confidence=round(max(0.0, 100.0 - moire / (2 * MOIRE_THRESHOLD) * 100), 1),
            ),
            SecurityFeatureCheck(
                feature="Colour Depth",
                detected=hist_std >= MIN_HISTOGRAM_STD,
                confidence=round(min(100.0, hist_std / (2 * MIN_HISTOGRAM_STD) * 100), 1),
            ),
            SecurityFeatureCheck(
                feature="Document Proportions",
                detected=low <= aspect <= high,
                confidence=90.0 if low <= aspect <= high else 30.0,
            ),
        ]
        return features, moire

    async def inspect(self, document_type: DocumentType, document_data: ExtractedDocumentData,
                      image: bytes) -> DocumentAuthenticityResult:
        img, failures = self.quality_gate.load_image(image)
        if img is None:
            return DocumentAuthenticityResult(
                is_authentic=False,
                confidence=0.0,
                tampering=TamperingCheck(detected=False, confidence=0.0),
                issues=failures,
            )

        features, moire = await asyncio.to_thread(self.security_features, img)
        software = self.exif_editing_software(image)

        suspicious_areas = []
        issues = []
        if software:
            suspicious_areas.append("Image metadata")
            issues.append(f"Image edited with {software}")
        if moire > MOIRE_THRESHOLD:
            suspicious_areas.append("Whole document (screen re-capture)")
            issues.append("Moire patterns detected (photo of screen)")

        detected = [f for f in features if f.detected]
        missing = [f.feature for f in features if not f.detected]
        if missing:
            issues.append(f"Security features not verified: {', '.join(missing)}")

        confidence = sum(f.confidence for f in features) / len(features)
        tampering = TamperingCheck(
            detected=bool(suspicious_areas),
            confidence=85.0 if suspicious_areas else round(confidence, 1),
            suspicious_areas=suspicious_areas,
        )
        return DocumentAuthenticityResult(
            is_authentic=len(detected) >= MIN_AUTHENTIC_FEATURES,
            confidence=round(confidence, 1),
            security_features=features,
            tampering=tampering,
            issues=issues,
        )


class DocumentAuthenticityChecker:
    """
    Checks a document for security features and tampering signals
    """

    def __init__(self, provider: AuthenticityProvider, timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    def document_age(self, document_data: ExtractedDocumentData, today: Optional[date] = None) -> DocumentAgeCheck:
        """Validity window computed from the document's expiry date"""
        today = today or date.today()
        expiry = document_data.expiry_date
        remaining = (expiry - today).days if expiry else None
        return DocumentAgeCheck(
            is_valid=remaining is not None and remaining >= 0,
            issue_date=document_data.issue_date,
            expiry_date=expiry,
            remaining_validity=remaining,
        )

    def unverified(self, reason: str) -> DocumentAuthenticityResult:
        return DocumentAuthenticityResult(
            is_authentic=False,
            confidence=0.0,
            tampering=TamperingCheck(detected=False, confidence=0.0),
            issues=[f"Document authenticity could not be verified: {reason}"],
        )

    async def check(self, document_type: DocumentType, document_data: ExtractedDocumentData,
                    image: bytes) -> DocumentAuthenticityResult:
        try:
            result = await asyncio.wait_for(
                self.provider.inspect(document_type, document_data, image), timeout=self.timeout
            )
        except INFRASTRUCTURE_ERRORS:
            raise
        except asyncio.TimeoutError:
            logger.warning("Authenticity check timed out after %ss", self.timeout)
            result = self.unverified("check timed out")
        except Exception as e:
            logger.error("Authenticity check failed: %s", e)
            result = self.unverified(str(e))

        updates = {"document_age": self.document_age(document_data)}
        if not updates["document_age"].is_valid:
            updates["issues"] = result.issues + ["Document is outside its validity period"]
        if result.tampering.detected:
            updates["is_authentic"] = False
            updates["confidence"] = min(result.confidence, 100 - result.tampering.confidence)
            issues = updates.get("issues", result.issues)
            if "Possible tampering detected" not in issues:
                updates["issues"] = issues + ["Possible tampering detected"]
        return result.model_copy(update=updates)
