"""Multi-pass landscape stabilization with homographies.

Landscape frames are not re-detected between passes: refinement works on
the match set of the INITIAL estimate, and the chosen homography is applied
to the frame exactly once at the end.

    FAST: INITIAL                                                   (1 pass)
    SLOW: INITIAL -> MATCH_QUALITY_REFINE -> RANSAC_THRESHOLD_REFINE
                  -> PERSPECTIVE_STABILITY_REFINE                  (<= 10 passes)
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time

import numpy as np

import config
from alignment.errors import (
    AlignmentInputError,
    DegenerateHomographyError,
    StabilizationCancelled,
)
from alignment.homography import (
    FeatureMatch,
    estimate_homography,
    image_size,
    refine_match_quality,
    refine_perspective_stability,
    refine_ransac_threshold,
    reprojection_error,
)
from alignment.landmarks import LandscapeLandmarks
from geometry.primitives import HomographyMatrix
from pipeline.interfaces import ImageTransformer
from pipeline.progress import (
    AlignmentDiagnostics,
    EarlyStopReason,
    ProgressCallback,
    StabilizationPass,
    StabilizationProgress,
    StabilizationResult,
    StabilizationStage,
)
from pipeline.settings import LandscapeAlignmentSettings, StabilizationMode

logger = logging.getLogger(__name__)

Stage = StabilizationStage

_NEXT_STAGE = {
    Stage.INITIAL: Stage.MATCH_QUALITY_REFINE,
    Stage.MATCH_QUALITY_REFINE: Stage.RANSAC_THRESHOLD_REFINE,
    Stage.RANSAC_THRESHOLD_REFINE: Stage.PERSPECTIVE_STABILITY_REFINE,
    Stage.PERSPECTIVE_STABILITY_REFINE: None,
}

_STAGE_BUDGET = config.STAGE_PASS_BUDGET

_CONVERGED_REASONS = {
    Stage.MATCH_QUALITY_REFINE: EarlyStopReason.INLIER_RATIO_CONVERGED,
    Stage.RANSAC_THRESHOLD_REFINE: EarlyStopReason.REPROJECTION_ERROR_CONVERGED,
    Stage.PERSPECTIVE_STABILITY_REFINE: EarlyStopReason.PERSPECTIVE_CONVERGED,
}


@dataclass(frozen=True)
class _State:
    homography: HomographyMatrix
    matches: tuple[FeatureMatch, ...]
    inlier_count: int
    ransac_threshold: float

    @property
    def inlier_ratio(self) -> float:
        return self.inlier_count / len(self.matches) if self.matches else 0.0

    @property
    def score(self) -> float:
        """Outlier percentage; lower is better."""
        return (1.0 - self.inlier_ratio) * 100.0


class LandscapeStabilizer:
    """Aligns a landscape frame onto a reference frame's keypoints."""

    def __init__(self, transformer: ImageTransformer,
                 on_progress: ProgressCallback | None = None):
        self._transformer = transformer
        self._on_progress = on_progress

    def stabilize(self, image: np.ndarray, source: LandscapeLandmarks,
                  reference: LandscapeLandmarks, settings: LandscapeAlignmentSettings,
                  reference_frame_id: str | None = None,
                  cancel_event: threading.Event | None = None) -> StabilizationResult:
        """Estimate, refine and apply a source -> reference homography.

        Raises:
            InsufficientKeypointsError, InsufficientMatchesError,
            DegenerateHomographyError: The INITIAL estimate failed.
            StabilizationCancelled: `cancel_event` was set.
        """
        start = time.time()
        stab = settings.stabilization
        mode = stab.mode
        max_passes = stab.max_passes
        width, height = image_size(reference, settings.output_size)
        src_width, src_height = image_size(source, settings.output_size)

        self._emit(StabilizationProgress.initial(mode, max_passes))
        self._check_cancel(cancel_event, 1)

        pass_start = time.time()
        estimate = estimate_homography(source, reference, settings)
        current = _State(estimate.matrix, estimate.matches, estimate.inlier_count,
                         settings.ransac_reproj_threshold)
        best = current
        initial_score = 100.0
        passes = [StabilizationPass(1, Stage.INITIAL, initial_score, current.score, False,
                                    (time.time() - pass_start) * 1000.0)]
        self._emit_pass(passes[-1], max_passes, mode)
        logger.info(f"Initial homography: {len(current.matches)} matches, "
                    f"inlier ratio {current.inlier_ratio:.2f}")

        pass_errors: list[str] = []
        reason = None
        previous_determinant = None
        stage = _NEXT_STAGE[Stage.INITIAL] if mode is StabilizationMode.SLOW else None
        stage_passes = 0

        while stage is not None and len(passes) < max_passes:
            if stage_passes >= _STAGE_BUDGET:
                stage, stage_passes = _NEXT_STAGE[stage], 0
                reason = None
                continue

            self._check_cancel(cancel_event, len(passes) + 1)
            pass_start = time.time()
            stage_passes += 1
            converged = False
            plausible = True
            try:
                if stage is Stage.MATCH_QUALITY_REFINE:
                    refined = refine_match_quality(
                        source, reference, list(current.matches), current.inlier_ratio,
                        stage_passes + 1, stab, settings.output_size)
                    candidate = _State(refined.homography, refined.matches,
                                       refined.inlier_count, stab.initial_ransac_threshold)
                    converged = refined.converged
                elif stage is Stage.RANSAC_THRESHOLD_REFINE:
                    refined = refine_ransac_threshold(
                        source, reference, list(current.matches), current.ransac_threshold,
                        stab, settings.output_size)
                    candidate = _State(refined.homography, current.matches,
                                       refined.inlier_count, refined.threshold)
                    converged = refined.converged
                else:
                    refined = refine_perspective_stability(
                        current.homography, previous_determinant, stab,
                        src_width, src_height)
                    error = reprojection_error(refined.homography, source, reference,
                                               list(current.matches), current.ransac_threshold,
                                               settings.output_size)
                    candidate = _State(refined.homography, current.matches,
                                       error.inlier_count, current.ransac_threshold)
                    previous_determinant = refined.determinant
                    converged = refined.converged
                    plausible = refined.valid
            except AlignmentInputError as e:
                logger.warning(f"{stage.value} failed: {e}")
                pass_errors.append(f"{stage.value}: {e}")
                passes.append(StabilizationPass(len(passes) + 1, stage, current.score,
                                                current.score, False,
                                                (time.time() - pass_start) * 1000.0))
                self._emit_pass(passes[-1], max_passes, mode)
                if isinstance(e, DegenerateHomographyError):
                    reason = EarlyStopReason.HOMOGRAPHY_INVALID
                    break
                stage, stage_passes = _NEXT_STAGE[stage], 0
                continue

            passes.append(StabilizationPass(len(passes) + 1, stage, current.score,
                                            candidate.score, converged,
                                            (time.time() - pass_start) * 1000.0))
            self._emit_pass(passes[-1], max_passes, mode)
            logger.debug(f"Pass {len(passes)} [{stage.value}]: "
                         f"{current.score:.2f} -> {candidate.score:.2f}")

            current = candidate
            # A blended (implausible) perspective pass keeps refining but never wins.
            if plausible and candidate.score <= best.score:
                best = candidate

            if converged:
                logger.info(f"{stage.value} converged")
                reason = _CONVERGED_REASONS[stage]
                stage, stage_passes = _NEXT_STAGE[stage], 0

        if len(passes) >= max_passes and reason is None and mode is StabilizationMode.SLOW:
            reason = EarlyStopReason.MAX_PASSES_REACHED

        confidence = best.inlier_ratio
        threshold = (stab.success_confidence_threshold if mode is StabilizationMode.SLOW
                     else settings.min_confidence)
        success = confidence >= threshold
        aligned = self._transformer.apply_homography(image, best.homography, (width, height))

        result = StabilizationResult(
            success=success,
            final_score=best.score,
            passes=tuple(passes),
            mode=mode,
            matrix=best.homography,
            early_stop_reason=reason,
            total_duration_ms=(time.time() - start) * 1000.0,
            initial_score=initial_score,
            diagnostics=AlignmentDiagnostics(reference_frame_id=reference_frame_id,
                                             pass_errors=tuple(pass_errors)),
            landmarks=source,
            confidence=confidence,
            image=aligned,
        )
        logger.info(f"Landscape aligned in {result.passes_executed} passes, "
                    f"confidence {confidence:.2f}")
        self._emit(StabilizationProgress.completed(best.score, result.passes_executed,
                                                   mode, success))
        return result

    @staticmethod
    def _check_cancel(cancel_event: threading.Event | None, pass_number: int):
        if cancel_event is not None and cancel_event.is_set():
            raise StabilizationCancelled(f"cancelled before pass {pass_number}")

    def _emit_pass(self, record: StabilizationPass, max_passes: int,
                   mode: StabilizationMode):
        self._emit(StabilizationProgress.for_pass(record.pass_number, max_passes,
                                                  record.stage, record.score_after, mode))

    def _emit(self, progress: StabilizationProgress):
        if self._on_progress is None:
            return
        try:
            self._on_progress(progress)
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")
