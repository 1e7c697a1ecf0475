"""Multi-pass face/body stabilization.

One loop drives an explicit stage machine. Every pass composes a candidate
source -> canvas matrix, renders the ORIGINAL frame with it, asks the
detector for fresh landmarks and scores them against the goal pair. A pass
either yields a new (matrix, detection, score) triple or leaves the previous
one untouched.

    FAST: INITIAL -> TRANSLATION_REFINE                            (<= 4 passes)
    SLOW: INITIAL -> ROTATION_REFINE -> SCALE_REFINE
                  -> TRANSLATION_REFINE -> CLEANUP                 (<= 11 passes)
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time

import numpy as np

import config
from alignment.affine import (
    RefinementStep,
    calculate_alignment_matrix,
    refine_rotation,
    refine_scale,
    refine_translation,
)
from alignment.errors import (
    AlignmentInputError,
    DegenerateMatrixError,
    DetectionError,
    DetectionLostError,
    StabilizationCancelled,
)
from alignment.landmarks import (
    BodyLandmarks,
    FaceLandmarks,
    ReferenceLandmarks,
    default_goal_points,
    fallback_landmarks,
    landmark_confidence,
)
from alignment.scoring import OvershootCorrection, StabilizationScore, confidence_from_score
from geometry.primitives import AffineMatrix, Point2D
from pipeline.interfaces import Detector, ImageTransformer
from pipeline.progress import (
    AlignmentDiagnostics,
    EarlyStopReason,
    ProgressCallback,
    StabilizationPass,
    StabilizationProgress,
    StabilizationResult,
    StabilizationStage,
)
from pipeline.settings import AlignmentSettings, StabilizationMode

logger = logging.getLogger(__name__)

Stage = StabilizationStage

_TRANSITIONS = {
    (StabilizationMode.FAST, Stage.INITIAL): Stage.TRANSLATION_REFINE,
    (StabilizationMode.FAST, Stage.TRANSLATION_REFINE): None,
    (StabilizationMode.SLOW, Stage.INITIAL): Stage.ROTATION_REFINE,
    (StabilizationMode.SLOW, Stage.ROTATION_REFINE): Stage.SCALE_REFINE,
    (StabilizationMode.SLOW, Stage.SCALE_REFINE): Stage.TRANSLATION_REFINE,
    (StabilizationMode.SLOW, Stage.TRANSLATION_REFINE): Stage.CLEANUP,
    (StabilizationMode.SLOW, Stage.CLEANUP): None,
}

_STAGE_BUDGETS = {
    Stage.INITIAL: 1,
    Stage.ROTATION_REFINE: config.STAGE_PASS_BUDGET,
    Stage.SCALE_REFINE: config.STAGE_PASS_BUDGET,
    Stage.TRANSLATION_REFINE: config.STAGE_PASS_BUDGET,
    Stage.CLEANUP: 1,
}

_CONVERGED_REASONS = {
    Stage.ROTATION_REFINE: EarlyStopReason.ROTATION_CONVERGED,
    Stage.SCALE_REFINE: EarlyStopReason.SCALE_CONVERGED,
    Stage.TRANSLATION_REFINE: EarlyStopReason.TRANSLATION_CONVERGED,
}


@dataclass(frozen=True)
class _Snapshot:
    """Accepted state after a successful pass. Points are canvas pixels."""
    matrix: AffineMatrix
    landmarks: ReferenceLandmarks
    left: Point2D
    right: Point2D
    score: float
    image: np.ndarray | None
    measured: bool = True


def goal_pair(goal: ReferenceLandmarks | tuple[Point2D, Point2D] | None,
              settings: AlignmentSettings) -> tuple[Point2D, Point2D]:
    """Goal reference points in canvas pixels.

    `goal` may be the landmarks of an aligned reference frame (normalized
    canvas coordinates), an explicit pixel pair, or None for the default
    centered pair.
    """
    size = settings.output_size
    if goal is None:
        return default_goal_points(size, settings.target_eye_distance, settings.vertical_offset)
    if isinstance(goal, tuple):
        return goal
    return goal.reference_left().scaled(size), goal.reference_right().scaled(size)


class MultiPassStabilizer:
    """Aligns one face/body frame onto a goal reference pair.

    Instances keep no state between calls; independent frames may use
    independent instances concurrently.
    """

    def __init__(self, detector: Detector, transformer: ImageTransformer,
                 on_progress: ProgressCallback | None = None):
        self._detector = detector
        self._transformer = transformer
        self._on_progress = on_progress

    def stabilize(self, image: np.ndarray, detection: ReferenceLandmarks,
                  settings: AlignmentSettings,
                  goal: ReferenceLandmarks | tuple[Point2D, Point2D] | None = None,
                  reference_frame_id: str | None = None,
                  cancel_event: threading.Event | None = None) -> StabilizationResult:
        """Run the pass loop for one frame.

        Args:
            image: Original frame; every pass renders from it.
            detection: Landmarks detected on `image` (normalized).
            settings: Canvas geometry and stabilization strategy.
            goal: Goal landmarks, an explicit pixel pair, or None.
            reference_frame_id: Recorded in the diagnostics.
            cancel_event: Checked before every pass.

        Returns:
            StabilizationResult whose `matrix` maps source pixels to canvas
            pixels. A result with `success=False` still carries the best
            matrix found.

        Raises:
            AlignmentInputError: The initial alignment could not be computed.
            DetectionError: `detection` itself is missing or unusable.
            DetectionLostError: Re-detection failed and
                `settings.fail_on_detection_loss` is set.
            StabilizationCancelled: `cancel_event` was set.
        """
        start = time.time()
        stab = settings.stabilization
        mode = stab.mode
        size = settings.output_size
        canvas = (size, size)
        goal_left, goal_right = goal_pair(goal, settings)
        goal_distance = goal_left.distance_to(goal_right)

        if detection is None:
            raise DetectionError("no landmarks for the source frame")
        if landmark_confidence(detection) < settings.min_confidence:
            raise DetectionError(
                f"source confidence {landmark_confidence(detection):.2f} "
                f"< {settings.min_confidence:.2f}"
            )

        h, w = image.shape[:2]
        src_left = detection.reference_left().scaled(w, h)
        src_right = detection.reference_right().scaled(w, h)
        initial_score = StabilizationScore.from_points(
            src_left, src_right, goal_left, goal_right, size).value

        self._emit(StabilizationProgress.initial(mode, mode.max_passes))

        if initial_score < stab.no_action_score_threshold:
            logger.info(f"Score {initial_score:.3f} below no-action threshold, skipping")
            result = StabilizationResult(
                success=True,
                final_score=initial_score,
                passes=(),
                mode=mode,
                matrix=AffineMatrix.IDENTITY,
                early_stop_reason=EarlyStopReason.SCORE_BELOW_THRESHOLD,
                total_duration_ms=(time.time() - start) * 1000.0,
                initial_score=initial_score,
                final_eye_delta_y=abs(src_right.y - src_left.y),
                final_eye_distance=src_left.distance_to(src_right),
                goal_eye_distance=goal_distance,
                diagnostics=AlignmentDiagnostics(reference_frame_id=reference_frame_id),
                landmarks=detection,
                confidence=confidence_from_score(initial_score),
            )
            self._emit(StabilizationProgress.completed(initial_score, 0, mode, True))
            return result

        passes: list[StabilizationPass] = []
        pass_errors: list[str] = []
        current: _Snapshot | None = None
        best: _Snapshot | None = None
        detection_error = None
        reason = None
        stage = Stage.INITIAL
        stage_passes = 0

        while stage is not None and len(passes) < mode.max_passes:
            if stage_passes >= _STAGE_BUDGETS[stage]:
                logger.debug(f"{stage.value}: pass budget exhausted")
                if stage is not Stage.INITIAL:
                    reason = None
                stage, stage_passes = _TRANSITIONS[(mode, stage)], 0
                continue

            if stage is Stage.CLEANUP and best.score < stab.success_score_threshold:
                stage = _TRANSITIONS[(mode, stage)]
                continue

            if cancel_event is not None and cancel_event.is_set():
                raise StabilizationCancelled(f"cancelled before pass {len(passes) + 1}")

            score_before = initial_score if current is None else current.score
            try:
                if current is None:
                    step = RefinementStep(
                        calculate_alignment_matrix(src_left, src_right, goal_left, goal_right),
                        False, score_before)
                else:
                    step = self._plan(stage, current, goal_left, goal_right, settings)
                if not step.matrix.is_invertible():
                    raise DegenerateMatrixError(f"{stage.value}: degenerate candidate matrix")
            except AlignmentInputError as e:
                if current is None:
                    raise
                logger.warning(f"{stage.value} skipped: {e}")
                pass_errors.append(f"{stage.value}: {e}")
                stage, stage_passes = _TRANSITIONS[(mode, stage)], 0
                continue

            if step.converged:
                logger.info(f"{stage.value} converged (error {step.error:.3f})")
                reason = _CONVERGED_REASONS.get(stage, reason)
                stage, stage_passes = _TRANSITIONS[(mode, stage)], 0
                continue

            pass_start = time.time()
            stage_passes += 1
            rendered = self._transformer.apply_affine(image, step.matrix, canvas)
            landmarks, detection_error = self._redetect(rendered, settings, goal_distance)

            if landmarks is None:
                passes.append(StabilizationPass(len(passes) + 1, stage, score_before,
                                                score_before, False,
                                                (time.time() - pass_start) * 1000.0))
                logger.warning(f"Re-detection failed on pass {len(passes)}: {detection_error}")
                if settings.fail_on_detection_loss:
                    raise DetectionLostError(detection_error)
                if best is None:
                    best = _Snapshot(step.matrix, detection, src_left, src_right,
                                     _predicted_score(step.matrix, src_left, src_right,
                                                      goal_left, goal_right, size),
                                     rendered, measured=False)
                reason = EarlyStopReason.FACE_DETECTION_FAILED
                self._emit_pass(passes[-1], mode)
                break

            left = landmarks.reference_left().scaled(size)
            right = landmarks.reference_right().scaled(size)
            score = StabilizationScore.from_points(left, right, goal_left, goal_right, size).value
            converged = (stage is Stage.TRANSLATION_REFINE
                         and abs(score - score_before) < stab.convergence_threshold)
            passes.append(StabilizationPass(len(passes) + 1, stage, score_before, score,
                                            converged, (time.time() - pass_start) * 1000.0))
            self._emit_pass(passes[-1], mode)
            logger.debug(f"Pass {len(passes)} [{stage.value}]: "
                         f"{score_before:.3f} -> {score:.3f}")

            candidate = _Snapshot(step.matrix, landmarks, left, right, score, rendered)
            if stage is Stage.TRANSLATION_REFINE and current is not None \
                    and score > current.score:
                logger.info(f"Score diverged ({current.score:.3f} -> {score:.3f}), "
                            f"reverting to best")
                reason = EarlyStopReason.NO_IMPROVEMENT
                break

            current = candidate
            if best is None or score < best.score:
                best = candidate

            if score < stab.no_action_score_threshold:
                reason = EarlyStopReason.SCORE_BELOW_THRESHOLD
                break
            if converged:
                logger.info(f"Translation converged at {score:.3f}")
                reason = EarlyStopReason.TRANSLATION_CONVERGED
                stage, stage_passes = _TRANSITIONS[(mode, stage)], 0

        if len(passes) >= mode.max_passes and reason is None:
            reason = EarlyStopReason.MAX_PASSES_REACHED

        diagnostics = AlignmentDiagnostics(
            aligned_landmarks_detected=detection_error is None,
            aligned_landmarks_error=detection_error,
            fallback_landmarks_generated=detection_error is not None,
            reference_frame_id=reference_frame_id,
            pass_errors=tuple(pass_errors),
        )
        if detection_error is not None:
            final_landmarks = fallback_landmarks(goal_left, goal_right, size,
                                                 "body" if isinstance(detection, BodyLandmarks)
                                                 else "face")
            final_left, final_right = goal_left, goal_right
        else:
            final_landmarks = best.landmarks
            final_left, final_right = best.left, best.right

        success = best.measured and best.score < stab.success_score_threshold
        result = StabilizationResult(
            success=success,
            final_score=best.score,
            passes=tuple(passes),
            mode=mode,
            matrix=best.matrix,
            early_stop_reason=reason,
            total_duration_ms=(time.time() - start) * 1000.0,
            initial_score=initial_score,
            final_eye_delta_y=abs(final_right.y - final_left.y),
            final_eye_distance=final_left.distance_to(final_right),
            goal_eye_distance=goal_distance,
            diagnostics=diagnostics,
            landmarks=final_landmarks,
            confidence=confidence_from_score(best.score) if best.measured else 0.0,
            image=best.image,
        )
        logger.info(f"Stabilized in {result.passes_executed} passes: "
                    f"{initial_score:.2f} -> {best.score:.2f} "
                    f"({reason.value if reason else 'completed'})")
        self._emit(StabilizationProgress.completed(best.score, result.passes_executed,
                                                   mode, success))
        return result

    def _plan(self, stage: Stage, current: _Snapshot, goal_left: Point2D,
              goal_right: Point2D, settings: AlignmentSettings) -> RefinementStep:
        """Candidate matrix for one refinement pass, composed in canvas space."""
        stab = settings.stabilization
        if stage is Stage.ROTATION_REFINE:
            return refine_rotation(current.matrix, current.left, current.right,
                                   stab.rotation_stop_threshold)
        if stage is Stage.SCALE_REFINE:
            return refine_scale(current.matrix, current.left, current.right,
                                goal_left.distance_to(goal_right), stab.scale_error_threshold)
        if stage is Stage.TRANSLATION_REFINE:
            overshoot = OvershootCorrection.calculate(
                current.left, current.right, goal_left, goal_right, current.score,
                stab.no_action_score_threshold)
            return refine_translation(current.matrix, overshoot)
        if stage is Stage.CLEANUP:
            correction = calculate_alignment_matrix(current.left, current.right,
                                                    goal_left, goal_right,
                                                    stab.eye_validity_ratio)
            return RefinementStep(correction.compose(current.matrix), False, current.score)
        raise ValueError(f"No refinement for stage {stage}")

    def _redetect(self, rendered: np.ndarray, settings: AlignmentSettings,
                  goal_distance: float) -> tuple[ReferenceLandmarks | None, str | None]:
        """Detect on the rendered canvas; (landmarks, None) or (None, reason)."""
        try:
            landmarks = self._detector.detect(rendered)
        except DetectionError as e:
            return None, str(e) or "detector failed"
        if landmarks is None:
            return None, "no landmarks detected"

        stab = settings.stabilization
        confidence = landmark_confidence(landmarks)
        if confidence < settings.min_confidence:
            return None, f"confidence {confidence:.2f} below {settings.min_confidence:.2f}"
        if isinstance(landmarks, FaceLandmarks) \
                and landmarks.bounding_box.width < stab.min_face_size_ratio:
            return None, (f"face width {landmarks.bounding_box.width:.3f} "
                          f"below {stab.min_face_size_ratio:.3f}")
        left = landmarks.reference_left().scaled(settings.output_size)
        right = landmarks.reference_right().scaled(settings.output_size)
        if not (left.is_finite() and right.is_finite()):
            return None, "non-finite landmarks"
        if right.x <= left.x:
            return None, (f"reference pair reversed: right x {right.x:.1f} "
                          f"<= left x {left.x:.1f}")
        if left.distance_to(right) < stab.eye_validity_ratio * goal_distance:
            return None, (f"reference distance {left.distance_to(right):.1f}px below "
                          f"{stab.eye_validity_ratio:.2f} x goal")
        return landmarks, None

    def _emit_pass(self, record: StabilizationPass, mode: StabilizationMode):
        self._emit(StabilizationProgress.for_pass(record.pass_number, mode.max_passes,
                                                  record.stage, record.score_after, mode))

    def _emit(self, progress: StabilizationProgress):
        if self._on_progress is None:
            return
        try:
            self._on_progress(progress)
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")


def _predicted_score(matrix: AffineMatrix, left: Point2D, right: Point2D,
                     goal_left: Point2D, goal_right: Point2D, size: int) -> float:
    """Score the source points would get if the matrix were exact."""
    return StabilizationScore.from_points(matrix.transform_point(left),
                                          matrix.transform_point(right),
                                          goal_left, goal_right, size).value
