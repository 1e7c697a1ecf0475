"""ORB/AKAZE keypoint detection producing LandscapeLandmarks."""

import logging

import cv2
import numpy as np

import config
from alignment.landmarks import FeatureDetectorType, FeatureKeypoint, LandscapeLandmarks
from geometry.primitives import BoundingBox

logger = logging.getLogger(__name__)


def quality_score(keypoints: list[FeatureKeypoint]) -> float:
    """0..1 score from keypoint count and mean detector response."""
    if not keypoints:
        return 0.0
    count_score = min(len(keypoints) / config.RECOMMENDED_KEYPOINTS, 1.0)
    mean_response = sum(k.response for k in keypoints) / len(keypoints)
    response_score = min(mean_response / config.MAX_EXPECTED_RESPONSE, 1.0)
    score = (count_score * config.QUALITY_COUNT_WEIGHT
             + response_score * config.QUALITY_RESPONSE_WEIGHT)
    return min(max(score, 0.0), 1.0)


class FeatureDetector:
    """Wraps a cv2 feature detector behind the Detector contract."""

    def __init__(self, detector_type: FeatureDetectorType = FeatureDetectorType.ORB,
                 max_keypoints: int = config.MAX_KEYPOINTS):
        self.detector_type = detector_type
        self.max_keypoints = max_keypoints
        if detector_type is FeatureDetectorType.AKAZE:
            self._detector = cv2.AKAZE_create()
        else:
            self._detector = cv2.ORB_create(nfeatures=max_keypoints)
        logger.info(f"Feature detector: {detector_type.display_name}, "
                    f"max {max_keypoints} keypoints")

    def detect(self, image: np.ndarray) -> LandscapeLandmarks | None:
        """Detect and describe keypoints.

        Args:
            image: BGR or grayscale frame.

        Returns:
            LandscapeLandmarks with normalized positions and the descriptor
            matrix, or None if the image produced no descriptors.
        """
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        h, w = gray.shape[:2]

        raw = self._detector.detect(gray, None)
        # Strongest first so truncation keeps the most repeatable points.
        raw = sorted(raw, key=lambda k: k.response, reverse=True)[:self.max_keypoints]
        raw, descriptors = self._detector.compute(gray, raw)
        if descriptors is None or len(raw) == 0:
            logger.debug("No descriptors computed")
            return None

        keypoints = tuple(
            FeatureKeypoint.from_pixel(k.pt[0], k.pt[1], w, h, response=float(k.response),
                                       size=float(k.size), angle=float(k.angle),
                                       octave=int(k.octave))
            for k in raw
        )
        bbox = BoundingBox.from_points([k.position for k in keypoints])
        bbox = BoundingBox(max(bbox.left, 0.0), max(bbox.top, 0.0),
                           min(bbox.right, 1.0), min(bbox.bottom, 1.0))
        return LandscapeLandmarks(
            keypoints=keypoints,
            detector_type=self.detector_type,
            bounding_box=bbox,
            quality_score=quality_score(list(keypoints)),
            descriptors=descriptors,
            image_width=w,
            image_height=h,
        )
