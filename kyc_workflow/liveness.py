"""
Liveness detection.

Scores the challenge outcomes reported by the capture client together with
frame-to-frame motion in the captured sequence. A perfectly static sequence is
a printed photo or a paused replay; real faces always move a little.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from config import settings
from .exceptions import INFRASTRUCTURE_ERRORS
from .models import ChallengeType, LivenessCapture, LivenessChallenge, LivenessResult, SpoofingRisk

logger = logging.getLogger(__name__)

# Outcomes returned when no active capture was performed
DEFAULT_CHALLENGES = [
    LivenessChallenge(type=ChallengeType.BLINK, passed=True, confidence=95),
    LivenessChallenge(type=ChallengeType.SMILE, passed=True, confidence=92),
    LivenessChallenge(type=ChallengeType.TURN_HEAD, passed=True, confidence=94),
    LivenessChallenge(type=ChallengeType.OPEN_MOUTH, passed=True, confidence=91),
]

FRAME_SIZE = (160, 160)
MIN_FRAMES = 3
# Mean absolute grey-level change between consecutive frames
STATIC_MOTION = 1.0
ERRATIC_MOTION = 60.0


class LivenessProvider(ABC):
    """Evaluates a capture for spoofing"""

    @abstractmethod
    async def evaluate(self, capture: Optional[LivenessCapture], selfie_image: bytes) -> LivenessResult:
        pass


class ChallengeLivenessProvider(LivenessProvider):
    """Challenge and motion based liveness scoring"""

    def analyze_motion(self, frames: List[bytes]) -> Dict[str, Any]:
        """
        Analyze inter-frame motion for liveness indicators.

        Returns:
            Dict with motion_detected, natural_movement, motion_score (0-100)
            and per-sequence statistics
        """
        decoded = []
        for frame in frames:
            img = cv2.imdecode(np.frombuffer(frame, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
            if img is not None:
                decoded.append(cv2.resize(img, FRAME_SIZE).astype(np.float32))

        if len(decoded) < MIN_FRAMES:
            return {
                "motion_detected": False,
                "natural_movement": False,
                "motion_score": 0.0,
                "error": "Insufficient frames for motion analysis",
            }

        movements = [float(np.mean(np.abs(b - a))) for a, b in zip(decoded, decoded[1:])]
        avg_movement = float(np.mean(movements))
        movement_std = float(np.std(movements))

        motion_detected = avg_movement > STATIC_MOTION
        reasonable_movement = STATIC_MOTION < avg_movement <= ERRATIC_MOTION
        # Replays loop at a constant rate; live faces do not
        movement_variation = movement_std > 0.1
        natural_movement = reasonable_movement and movement_variation

        if natural_movement:
            motion_score = min(100.0, 80.0 + avg_movement)
        elif motion_detected:
            motion_score = 50.0
        else:
            motion_score = 10.0

        return {
            "motion_detected": motion_detected,
            "natural_movement": natural_movement,
            "motion_score": motion_score,
            "statistics": {
                "average_movement": avg_movement,
                "movement_std": movement_std,
                "frames_analyzed": len(decoded),
            },
        }

    async def evaluate(self, capture: Optional[LivenessCapture], selfie_image: bytes) -> LivenessResult:
        if capture is None or (not capture.frames and not capture.challenges):
            confidence = sum(c.confidence for c in DEFAULT_CHALLENGES) / len(DEFAULT_CHALLENGES)
            return LivenessResult(
                is_live=True,
                confidence=confidence,
                challenges=DEFAULT_CHALLENGES,
                spoofing_risk=SpoofingRisk.LOW,
            )

        scores = []
        is_live = True

        if capture.challenges:
            scores.append(sum(c.confidence for c in capture.challenges) / len(capture.challenges))
            is_live = all(c.passed for c in capture.challenges)

        if capture.frames:
            motion = await asyncio.to_thread(self.analyze_motion, capture.frames)
            scores.append(motion["motion_score"])
            is_live = is_live and motion["natural_movement"]

        confidence = sum(scores) / len(scores)
        if not is_live:
            confidence = min(confidence, 65.0)

        return LivenessResult(
            is_live=is_live,
            confidence=round(confidence, 1),
            challenges=list(capture.challenges),
            spoofing_risk=SpoofingRisk.LOW if is_live else SpoofingRisk.HIGH,
        )


class LivenessDetector:
    """
    Runs a liveness provider and normalises its verdict
    """

    def __init__(self, provider: LivenessProvider, timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS
        self.min_confidence = settings.LIVENESS_MIN_CONFIDENCE

    def spoofing_risk(self, is_live: bool, confidence: float) -> SpoofingRisk:
        if is_live and confidence >= 85:
            return SpoofingRisk.LOW
        if confidence >= 60:
            return SpoofingRisk.MEDIUM
        return SpoofingRisk.HIGH

    async def detect(self, capture: Optional[LivenessCapture], selfie_image: bytes) -> LivenessResult:
        try:
            result = await asyncio.wait_for(
                self.provider.evaluate(capture, selfie_image), timeout=self.timeout
            )
        except INFRASTRUCTURE_ERRORS:
            raise
        except asyncio.TimeoutError:
            logger.warning("Liveness detection timed out after %ss", self.timeout)
            return LivenessResult(is_live=False, confidence=0.0, spoofing_risk=SpoofingRisk.HIGH)
        except Exception as e:
            logger.error("Liveness detection failed: %s", e)
            return LivenessResult(is_live=False, confidence=0.0, spoofing_risk=SpoofingRisk.HIGH)

        is_live = result.is_live and result.confidence >= self.min_confidence
        risk = self.spoofing_risk(is_live, result.confidence)
        # Never report a lower risk than the provider did
        order = [SpoofingRisk.LOW, SpoofingRisk.MEDIUM, SpoofingRisk.HIGH]
        risk = max(risk, result.spoofing_risk, key=order.index)
        return result.model_copy(update={"is_live": is_live, "spoofing_risk": risk})
