"""Body stabilization followed by a square muscle-region crop."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading

import numpy as np

from alignment.errors import DetectionError
from alignment.landmarks import BodyLandmarks, ReferenceLandmarks
from alignment.muscle import MuscleRegion, crop_matrix, muscle_region_bounds
from geometry.primitives import AffineMatrix, BoundingBox, Point2D
from pipeline.interfaces import Detector, ImageTransformer
from pipeline.progress import ProgressCallback, StabilizationResult
from pipeline.settings import MuscleAlignmentSettings
from pipeline.stabilizer import MultiPassStabilizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MuscleAlignmentResult:
    stabilization: StabilizationResult
    region: MuscleRegion
    bounds: BoundingBox          # normalized, on the aligned canvas
    matrix: AffineMatrix         # source pixels -> crop pixels
    landmarks: BodyLandmarks     # landmarks the bounds were computed from
    image: np.ndarray


class MuscleAligner:
    """Aligns a body frame, then crops it to one muscle region.

    The crop is folded into the alignment matrix so the source frame is
    warped once, straight into the output square.
    """

    def __init__(self, detector: Detector, transformer: ImageTransformer,
                 on_progress: ProgressCallback | None = None):
        self._detector = detector
        self._transformer = transformer
        self._stabilizer = MultiPassStabilizer(detector, transformer, on_progress)

    def align(self, image: np.ndarray, detection: BodyLandmarks,
              settings: MuscleAlignmentSettings,
              goal: ReferenceLandmarks | tuple[Point2D, Point2D] | None = None,
              reference_frame_id: str | None = None,
              cancel_event: threading.Event | None = None) -> MuscleAlignmentResult:
        """Stabilize `image` on the shoulders and crop to `settings.region`.

        Raises:
            DetectionError: No usable body landmarks on the aligned canvas.
            Anything `MultiPassStabilizer.stabilize` raises.
        """
        result = self._stabilizer.stabilize(image, detection, settings.body, goal,
                                            reference_frame_id, cancel_event)
        size = settings.body.output_size
        body = self._canvas_landmarks(image, result, settings)

        bounds = muscle_region_bounds(body, settings.region, settings.region_padding)
        crop = crop_matrix(bounds, size, size, settings.output_size)
        full = crop.compose(result.matrix)
        cropped = self._transformer.apply_affine(
            image, full, (settings.output_size, settings.output_size))
        logger.info(f"{settings.region.display_name} crop "
                    f"({bounds.left:.3f}, {bounds.top:.3f}, {bounds.right:.3f}, "
                    f"{bounds.bottom:.3f}) -> {settings.output_size}px")
        return MuscleAlignmentResult(result, settings.region, bounds, full, body, cropped)

    def _canvas_landmarks(self, image: np.ndarray, result: StabilizationResult,
                          settings: MuscleAlignmentSettings) -> BodyLandmarks:
        """Landmarks from the last pass, or a fresh detection on the canvas."""
        landmarks = result.landmarks
        if isinstance(landmarks, BodyLandmarks) \
                and landmarks.confidence >= settings.min_confidence:
            return landmarks

        size = settings.body.output_size
        canvas = result.image
        if canvas is None:
            canvas = self._transformer.apply_affine(image, result.matrix, (size, size))
        logger.debug("Re-detecting body on the aligned canvas for cropping")
        landmarks = self._detector.detect(canvas)
        if not isinstance(landmarks, BodyLandmarks):
            raise DetectionError("no body landmarks for muscle region cropping")
        if landmarks.confidence < settings.min_confidence:
            raise DetectionError(
                f"body confidence {landmarks.confidence:.2f} "
                f"< {settings.min_confidence:.2f}"
            )
        return landmarks
