"""
Capture quality scoring and selfie face detection
"""

import cv2
import numpy as np
from typing import List, Optional, Tuple
from config import settings
from .models import FacialFeatures

FACE_CASCADE_FILE = "haarcascade_frontalface_default.xml"
EYE_CASCADE_FILE = "haarcascade_eye.xml"

# Resolution, focus, exposure and contrast
CAPTURE_CHECKS = 4
HARD_MIN_SIDE = 300


class ImageQualityGate:
    """
    Decodes captures and scores how usable they are for biometric comparison
    """

    def __init__(self):
        self.min_width = settings.MIN_IMAGE_WIDTH
        self.min_height = settings.MIN_IMAGE_HEIGHT
        self.blur_threshold = settings.BLUR_THRESHOLD
        self.min_brightness = settings.MIN_BRIGHTNESS
        self.max_brightness = settings.MAX_BRIGHTNESS
        self.min_contrast = settings.MIN_CONTRAST
        self._face_cascade = None
        self._eye_cascade = None

    def load_image(self, image_bytes: bytes) -> Tuple[Optional[np.ndarray], List[str]]:
        """Decode image bytes into a BGR array"""
        if not image_bytes:
            return None, ["Image is empty"]
        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        img = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if img is None:
            return None, ["Image could not be loaded"]
        return img, []

    def capture_issues(self, img: np.ndarray) -> List[str]:
        """Resolution, focus and exposure problems found in a capture"""
        h, w = img.shape[:2]
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        issues = []

        if w < self.min_width or h < self.min_height:
            issues.append(f"Low resolution ({w}x{h})")

        # Laplacian variance drops on out-of-focus captures
        sharpness = cv2.Laplacian(gray, cv2.CV_64F).var()
        if sharpness < self.blur_threshold:
            issues.append(f"Blur detected (score={sharpness:.1f})")

        mean = gray.mean()
        if mean < self.min_brightness:
            issues.append(f"Too dark (mean={mean:.1f})")
        elif mean > self.max_brightness:
            issues.append(f"Too bright (mean={mean:.1f})")

        std = gray.std()
        if std < self.min_contrast:
            issues.append(f"Low contrast (std={std:.1f})")
        return issues

    def capture_score(self, img: np.ndarray) -> float:
        """0-100 share of capture checks passed; tiny captures score 0"""
        h, w = img.shape[:2]
        if w < HARD_MIN_SIDE or h < HARD_MIN_SIDE:
            return 0.0
        passed = CAPTURE_CHECKS - len(self.capture_issues(img))
        return round(passed / CAPTURE_CHECKS * 100, 1)

    def _cascades(self):
        if self._face_cascade is None:
            self._face_cascade = cv2.CascadeClassifier(cv2.data.haarcascades + FACE_CASCADE_FILE)
            self._eye_cascade = cv2.CascadeClassifier(cv2.data.haarcascades + EYE_CASCADE_FILE)
        return self._face_cascade, self._eye_cascade

    def face_metrics(self, image_bytes: bytes) -> FacialFeatures:
        """
        Detect the dominant face and score the capture.

        landmarks counts the eye regions located inside the face.
        """
        img, _ = self.load_image(image_bytes)
        if img is None:
            return FacialFeatures(face_detected=False, quality=0.0, landmarks=0)

        face_cascade, eye_cascade = self._cascades()
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        faces = face_cascade.detectMultiScale(gray, scaleFactor=1.1, minNeighbors=5, minSize=(30, 30))
        quality = self.capture_score(img)

        if len(faces) == 0:
            return FacialFeatures(face_detected=False, quality=quality, landmarks=0)

        # Largest face wins
        x, y, w, h = max(faces, key=lambda f: f[2] * f[3])
        eyes = eye_cascade.detectMultiScale(gray[y:y + h, x:x + w])
        return FacialFeatures(face_detected=True, quality=quality, landmarks=len(eyes))
